"""Single merge path for local and remote episode actions."""

import logging
from dataclasses import dataclass
from typing import Optional

from ..db.models import Episode
from ..db.repository import CatalogRepositoryInterface
from ..events import EpisodeStateChanged, EventBus, QueueChanged
from .models import ActionKind, EpisodeAction

logger = logging.getLogger(__name__)


@dataclass
class ApplyOutcome:
    """What applying one action did to the catalog."""

    action: EpisodeAction
    episode_id: Optional[str] = None
    applied: bool = False
    position_changed: bool = False
    played_changed: bool = False
    dequeued: bool = False
    reason: Optional[str] = None

    @property
    def changed(self) -> bool:
        return self.position_changed or self.played_changed or self.dequeued


class ActionMerger:
    """Applies episode actions to the catalog, whatever their origin.

    Applying is idempotent: the same action applied twice leaves the
    episode exactly as after the first application.
    """

    def __init__(self, repository: CatalogRepositoryInterface, events: Optional[EventBus] = None):
        self.repository = repository
        self.events = events

    def resolve_episode(self, action: EpisodeAction) -> Optional[Episode]:
        if action.episode_id:
            episode = self.repository.get_episode(action.episode_id)
            if episode is not None:
                return episode
        return self.repository.find_episode(
            action.podcast_url, episode_url=action.episode_url, guid=action.episode_guid
        )

    def apply(self, action: EpisodeAction) -> ApplyOutcome:
        """
        Merge one action into the catalog.

        Play actions update position and played with last-writer-wins on the
        action timestamp. Download, delete and new actions only describe
        what another device did and leave the catalog unchanged.

        Returns:
            ApplyOutcome: Whether the action matched an episode and what changed.
        """
        outcome = ApplyOutcome(action=action)
        if action.kind != ActionKind.PLAY:
            outcome.reason = "informational"
            return outcome
        if action.position is None:
            outcome.reason = "missing position"
            return outcome

        episode = self.resolve_episode(action)
        if episode is None:
            logger.debug(
                f"Ignoring {action.origin} play for unknown episode {action.episode_url}"
            )
            outcome.reason = "unknown episode"
            return outcome

        outcome.episode_id = episode.id
        play = self.repository.apply_play(
            episode.id,
            position=action.position,
            total=action.total,
            timestamp=action.timestamp,
            origin=action.origin,
        )
        if play is None:
            outcome.reason = "unknown episode"
            return outcome

        outcome.applied = True
        outcome.position_changed = play.position_changed
        outcome.played_changed = play.played_changed
        outcome.dequeued = play.dequeued
        self._publish(outcome)
        return outcome

    def _publish(self, outcome: ApplyOutcome) -> None:
        if self.events is None or not outcome.changed:
            return
        fields = []
        if outcome.position_changed:
            fields.append("position")
        if outcome.played_changed:
            fields.append("played")
        if fields:
            self.events.publish(EpisodeStateChanged(outcome.episode_id, tuple(fields)))
        if outcome.dequeued:
            self.events.publish(QueueChanged(tuple(self.repository.queue_list())))
