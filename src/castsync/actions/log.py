"""Append-only action log backed by the catalog database."""

import logging
from dataclasses import replace
from typing import Iterator, List, Optional, Sequence, Tuple

from ..db.models import ActionOrigin, Episode
from ..db.repository import CatalogRepositoryInterface
from .models import ActionKind, EpisodeAction, now_timestamp

logger = logging.getLogger(__name__)


class ActionLog:
    """Records local user actions and pulled remote actions.

    Recording never touches the network. Entries are immutable apart from
    their pushed flag, and `seq` gives their recording order.

    Example:
        log = ActionLog(repository, device="laptop")
        log.record(ActionKind.PLAY, podcast_url, episode_url, position=120, total=3600)
        pending = log.pending_since(cursor.last_pushed_seq)
    """

    REPLAY_PAGE_SIZE = 500

    def __init__(self, repository: CatalogRepositoryInterface, device: Optional[str] = None):
        self.repository = repository
        self.device = device

    def _append(self, action: EpisodeAction) -> EpisodeAction:
        record = self.repository.append_action(**action.to_record_fields())
        return EpisodeAction.from_record(record)

    def record(
        self,
        kind: str,
        podcast_url: str,
        episode_url: Optional[str] = None,
        episode_id: Optional[str] = None,
        episode_guid: Optional[str] = None,
        position: Optional[int] = None,
        total: Optional[int] = None,
        started: Optional[int] = None,
        timestamp: Optional[int] = None,
    ) -> EpisodeAction:
        """Append a local action and return it with its sequence number."""
        action = EpisodeAction(
            kind=kind,
            podcast_url=podcast_url,
            episode_url=episode_url,
            episode_id=episode_id,
            episode_guid=episode_guid,
            position=position,
            total=total,
            started=started,
            timestamp=timestamp if timestamp is not None else now_timestamp(),
            origin=ActionOrigin.LOCAL,
            device=self.device,
        )
        recorded = self._append(action)
        logger.debug(f"Recorded {kind} action #{recorded.seq} for {episode_url or podcast_url}")
        return recorded

    def record_for_episode(
        self,
        episode: Episode,
        kind: str,
        position: Optional[int] = None,
        total: Optional[int] = None,
        started: Optional[int] = None,
        timestamp: Optional[int] = None,
    ) -> Optional[EpisodeAction]:
        """Record a local action about a catalog episode. Returns None if its podcast is gone."""
        podcast = self.repository.get_podcast(episode.podcast_id)
        if podcast is None:
            logger.warning(f"Not recording {kind} for {episode.id}: podcast missing")
            return None
        return self.record(
            kind,
            podcast.feed_url,
            episode_url=episode.enclosure_url,
            episode_id=episode.id,
            episode_guid=episode.feed_guid,
            position=position,
            total=total,
            started=started,
            timestamp=timestamp,
        )

    def record_remote(self, action: EpisodeAction) -> Tuple[EpisodeAction, bool]:
        """
        Store a pulled action unless an identical one is already logged.

        Returns:
            Tuple[EpisodeAction, bool]: The stored (or existing) action and whether it was new.
        """
        existing = self.repository.find_action(*action.identity())
        if existing is not None:
            return EpisodeAction.from_record(existing), False

        # Remote actions came from the server; never push them back
        remote = replace(action, origin=ActionOrigin.REMOTE, pushed=True, seq=None)
        return self._append(remote), True

    def pending_since(
        self,
        cursor: int,
        kinds: Optional[Sequence[str]] = None,
        unpushed_only: bool = False,
    ) -> List[EpisodeAction]:
        """Local actions recorded after `cursor`, in recording order."""
        records = self.repository.list_actions(
            after_seq=cursor,
            origin=ActionOrigin.LOCAL,
            kinds=kinds,
            unpushed_only=unpushed_only,
        )
        return [EpisodeAction.from_record(r) for r in records]

    def pending_episode_actions(self, cursor: int) -> List[EpisodeAction]:
        return self.pending_since(cursor, kinds=ActionKind.EPISODE_KINDS, unpushed_only=True)

    def pending_subscription_actions(self, cursor: int) -> List[EpisodeAction]:
        return self.pending_since(cursor, kinds=ActionKind.SUBSCRIPTION_KINDS, unpushed_only=True)

    def mark_pushed(self, actions: Sequence[EpisodeAction]) -> int:
        seqs = [a.seq for a in actions if a.seq is not None]
        return self.repository.mark_actions_pushed(seqs)

    def replay(self, since: int = 0, origin: Optional[str] = None) -> Iterator[EpisodeAction]:
        """Iterate over the log in order, starting after `since`."""
        cursor = since
        while True:
            records = self.repository.list_actions(
                after_seq=cursor, origin=origin, limit=self.REPLAY_PAGE_SIZE
            )
            if not records:
                return
            for record in records:
                yield EpisodeAction.from_record(record)
            cursor = records[-1].seq
