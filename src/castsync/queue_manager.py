"""Persistent play queue.

The queue lives in the catalog database so it survives restarts. Every path
that marks an episode played removes it from the queue in the same
transaction, so the queue never holds a played episode.
"""

import logging
from typing import List, Optional

from .db.repository import CatalogRepositoryInterface
from .events import EventBus, QueueChanged

logger = logging.getLogger(__name__)


class QueueManager:
    """Ordered list of episode ids to play next."""

    def __init__(self, repository: CatalogRepositoryInterface, events: Optional[EventBus] = None):
        self.repository = repository
        self.events = events

    def push(self, episode_id: str) -> bool:
        """
        Append an episode to the end of the queue.

        Returns:
            bool: `False` when the episode is already queued, unknown or played.
        """
        added = self.repository.queue_push(episode_id)
        if added:
            logger.debug(f"Queued episode {episode_id}")
            self._changed()
        return added

    def remove(self, episode_id: str) -> bool:
        removed = self.repository.queue_remove(episode_id)
        if removed:
            logger.debug(f"Dequeued episode {episode_id}")
            self._changed()
        return removed

    def reorder(self, from_index: int, to_index: int) -> bool:
        """Move the entry at `from_index` so it ends up at `to_index`."""
        moved = self.repository.queue_move(from_index, to_index)
        if moved and from_index != to_index:
            self._changed()
        return moved

    def next(self) -> Optional[str]:
        """Return the episode that plays next without removing it."""
        entries = self.repository.queue_list()
        return entries[0] if entries else None

    def list(self) -> List[str]:
        return self.repository.queue_list()

    def clear(self) -> int:
        removed = self.repository.queue_clear()
        if removed:
            logger.info(f"Cleared {removed} episodes from the queue")
            self._changed()
        return removed

    def __len__(self) -> int:
        return len(self.repository.queue_list())

    def __contains__(self, episode_id: str) -> bool:
        return episode_id in self.repository.queue_list()

    def _changed(self) -> None:
        if self.events is not None:
            self.events.publish(QueueChanged(tuple(self.repository.queue_list())))
