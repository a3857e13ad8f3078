"""Sync run state machine.

One run pushes local episode actions, exchanges subscription changes,
pulls remote episode actions and merges them into the catalog. The stored
cursor only moves after every phase has succeeded, so an interrupted run
is simply repeated from the same starting point.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Dict, List, Optional

from ..actions.log import ActionLog
from ..actions.merge import ActionMerger
from ..actions.models import ActionKind, EpisodeAction
from ..db.models import SyncCursor
from ..db.repository import CatalogRepositoryInterface
from ..errors import SyncError, SyncInProgressError
from ..events import EventBus, SyncCompleted
from .gpodder import GpodderClient, SubscriptionChanges

logger = logging.getLogger(__name__)


class SyncPhase:
    """Phases of a sync run, in execution order."""

    IDLE = "idle"
    PUSHING_ACTIONS = "pushing_actions"
    PULLING_SUBSCRIPTIONS = "pulling_subscriptions"
    PULLING_ACTIONS = "pulling_actions"
    MERGING = "merging"


@dataclass
class SyncRunResult:
    """Outcome of one sync run.

    On failure `phase` names the phase that failed; on success it is IDLE.
    """

    success: bool = False
    phase: str = SyncPhase.IDLE
    error: Optional[str] = None
    retryable: bool = False

    pushed_actions: int = 0
    pulled_actions: int = 0
    applied_actions: int = 0
    subscriptions_added: List[str] = field(default_factory=list)
    subscriptions_removed: List[str] = field(default_factory=list)
    # Podcasts created or restored from remote subscriptions, still unfetched
    refresh_podcast_ids: List[str] = field(default_factory=list)

    generation: int = 0
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    finished_at: Optional[datetime] = None

    @property
    def duration_seconds(self) -> float:
        end = self.finished_at or datetime.now(UTC)
        return (end - self.started_at).total_seconds()


def cursor_key_for(client: GpodderClient) -> str:
    return f"{client.server}|{client.username}|{client.device_id}"


class SyncService:
    """Runs sync cycles against one gpodder account.

    Example:
        service = SyncService(repository, client, action_log, merger)
        result = service.run()
        if not result.success:
            print(f"Sync failed in {result.phase}: {result.error}")
    """

    def __init__(
        self,
        repository: CatalogRepositoryInterface,
        client: GpodderClient,
        action_log: ActionLog,
        merger: ActionMerger,
        events: Optional[EventBus] = None,
        batch_size: int = 30,
        cursor_key: Optional[str] = None,
    ):
        if batch_size < 1:
            raise ValueError(f"batch_size must be at least 1, got {batch_size}")
        self.repository = repository
        self.client = client
        self.action_log = action_log
        self.merger = merger
        self.events = events
        self.batch_size = batch_size
        self.cursor_key = cursor_key or cursor_key_for(client)

        self._run_lock = threading.Lock()
        self._phase = SyncPhase.IDLE
        self._last_result: Optional[SyncRunResult] = None

    @property
    def phase(self) -> str:
        return self._phase

    @property
    def is_running(self) -> bool:
        return self._run_lock.locked()

    @property
    def last_result(self) -> Optional[SyncRunResult]:
        return self._last_result

    def run(self) -> SyncRunResult:
        """
        Execute one full sync run.

        Failures do not raise: they are reported in the returned result and
        leave the stored cursor untouched.

        Raises:
            SyncInProgressError: If another run is already in progress.
        """
        if not self._run_lock.acquire(blocking=False):
            raise SyncInProgressError("A sync run is already in progress", phase=self._phase)

        result = SyncRunResult()
        try:
            self._run(result)
        except SyncError as e:
            e.phase = e.phase or self._phase
            result.phase = e.phase
            result.error = str(e)
            result.retryable = e.retryable
            logger.error(f"Sync failed during {result.phase}: {e}")
        except Exception as e:
            result.phase = self._phase
            result.error = f"{type(e).__name__}: {e}"
            result.retryable = False
            logger.exception(f"Unexpected error during sync phase {result.phase}")
        finally:
            self._phase = SyncPhase.IDLE
            result.finished_at = datetime.now(UTC)
            self._last_result = result
            self._run_lock.release()

        if self.events is not None:
            self.events.publish(SyncCompleted(result))
        return result

    def _run(self, result: SyncRunResult) -> None:
        cursor = self.repository.get_sync_cursor(self.cursor_key)
        logger.info(
            f"Starting sync run (generation {cursor.generation}, "
            f"actions since {cursor.actions_since})"
        )

        self._phase = SyncPhase.PUSHING_ACTIONS
        self.client.ensure_device()
        pushed_max = self._push_episode_actions(cursor, result)

        self._phase = SyncPhase.PULLING_SUBSCRIPTIONS
        pushed_max = max(pushed_max, self._push_subscription_actions(cursor))
        changes = self.client.get_subscription_changes(cursor.subscriptions_since)
        self._apply_subscription_changes(changes, result)

        self._phase = SyncPhase.PULLING_ACTIONS
        pulled = self.client.get_episode_actions(cursor.actions_since)
        stored = []
        for action in pulled.actions:
            entry, _ = self.action_log.record_remote(action)
            stored.append(entry)
        result.pulled_actions = len(stored)

        self._phase = SyncPhase.MERGING
        for action in stored:
            outcome = self.merger.apply(action)
            if outcome.applied:
                result.applied_actions += 1

        saved = self.repository.save_sync_cursor(
            self.cursor_key,
            actions_since=pulled.timestamp,
            subscriptions_since=changes.timestamp,
            last_pushed_seq=self._next_pushed_seq(cursor.last_pushed_seq, pushed_max),
        )
        result.generation = saved.generation
        result.success = True
        logger.info(
            f"Sync complete: pushed {result.pushed_actions}, pulled {result.pulled_actions}, "
            f"applied {result.applied_actions} (generation {saved.generation})"
        )

    def _push_episode_actions(self, cursor: SyncCursor, result: SyncRunResult) -> int:
        """Upload pending local episode actions in batches. Returns the highest pushed seq."""
        pending = self.action_log.pending_episode_actions(cursor.last_pushed_seq)
        pushed_max = 0
        for start in range(0, len(pending), self.batch_size):
            batch = pending[start:start + self.batch_size]
            self.client.upload_episode_actions(batch)
            # Flag each accepted batch so a retry after a later failure skips it
            self.action_log.mark_pushed(batch)
            result.pushed_actions += len(batch)
            pushed_max = max(pushed_max, batch[-1].seq or 0)
        if pending:
            logger.debug(f"Pushed {len(pending)} episode actions")
        return pushed_max

    def _push_subscription_actions(self, cursor: SyncCursor) -> int:
        pending = self.action_log.pending_subscription_actions(cursor.last_pushed_seq)
        if not pending:
            return 0

        # The latest action per feed decides whether it is an add or a remove
        latest: Dict[str, EpisodeAction] = {}
        for action in pending:
            latest[action.podcast_url] = action
        add = [url for url, a in latest.items() if a.kind == ActionKind.SUBSCRIBE]
        remove = [url for url, a in latest.items() if a.kind == ActionKind.UNSUBSCRIBE]

        upload = self.client.upload_subscription_changes(add=add, remove=remove)
        self.action_log.mark_pushed(pending)
        self._apply_url_updates(upload.update_urls)
        logger.info(f"Uploaded subscription changes: {len(add)} added, {len(remove)} removed")
        return max(a.seq or 0 for a in pending)

    def _apply_subscription_changes(
        self, changes: SubscriptionChanges, result: SyncRunResult
    ) -> None:
        self._apply_url_updates(changes.update_urls)

        for url in changes.add:
            podcast = self.repository.get_podcast_by_feed_url(url)
            if podcast is None:
                podcast = self.repository.create_podcast(
                    feed_url=url, title=url, needs_refresh=True
                )
            elif podcast.is_deleted:
                self.repository.restore_podcast(podcast.id)
                self.repository.update_podcast(podcast.id, needs_refresh=True)
            else:
                continue
            result.subscriptions_added.append(url)
            result.refresh_podcast_ids.append(podcast.id)

        for url in changes.remove:
            podcast = self.repository.get_podcast_by_feed_url(url)
            if podcast is None or podcast.is_deleted:
                continue
            self.repository.tombstone_podcast(podcast.id)
            result.subscriptions_removed.append(url)

    def _apply_url_updates(self, update_urls) -> None:
        """Follow feed URLs the server rewrote, unless the new URL is already known."""
        for old, new in update_urls:
            podcast = self.repository.get_podcast_by_feed_url(old)
            if podcast is None or self.repository.get_podcast_by_feed_url(new) is not None:
                continue
            self.repository.update_podcast(podcast.id, feed_url=new)
            logger.info(f"Feed URL of '{podcast.title}' changed to {new}")

    def _next_pushed_seq(self, previous: int, pushed_max: int) -> int:
        """Advance the push cursor, but never past a local action that is still unpushed."""
        candidate = max(previous, pushed_max)
        unpushed = self.action_log.pending_since(previous, unpushed_only=True)
        if unpushed and unpushed[0].seq is not None:
            candidate = min(candidate, unpushed[0].seq - 1)
        return max(previous, candidate)
