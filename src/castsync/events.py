"""Outward-facing engine events.

The UI collaborator subscribes to these instead of polling the catalog.
Callbacks run on the thread that published the event (often a download
worker), so they should hand work off rather than block.
"""

import logging
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple, Type

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EpisodeStateChanged:
    """Played, position or download state of an episode changed."""

    episode_id: str
    fields: Tuple[str, ...] = ()


@dataclass(frozen=True)
class DownloadProgress:
    episode_id: str
    downloaded: int
    total: Optional[int] = None


@dataclass(frozen=True)
class DownloadFinished:
    episode_id: str
    success: bool
    error: Optional[str] = None


@dataclass(frozen=True)
class QueueChanged:
    episode_ids: Tuple[str, ...] = ()


@dataclass(frozen=True)
class NewEpisodesFound:
    """A feed refresh found episodes the download policy wants confirmed."""

    podcast_id: str
    prompt: Tuple[Tuple[str, bool], ...] = ()


@dataclass(frozen=True)
class SyncCompleted:
    result: Any = None


class EventBus:
    """Minimal thread-safe publish/subscribe hub."""

    def __init__(self):
        self._lock = threading.Lock()
        self._subscribers: Dict[Type, List[Callable[[Any], None]]] = defaultdict(list)
        self._any: List[Callable[[Any], None]] = []

    def subscribe(self, event_type: Optional[Type], callback: Callable[[Any], None]) -> None:
        """Register `callback` for `event_type`, or for every event when it is None."""
        with self._lock:
            if event_type is None:
                self._any.append(callback)
            else:
                self._subscribers[event_type].append(callback)

    def unsubscribe(self, event_type: Optional[Type], callback: Callable[[Any], None]) -> None:
        with self._lock:
            callbacks = self._any if event_type is None else self._subscribers.get(event_type, [])
            if callback in callbacks:
                callbacks.remove(callback)

    def publish(self, event: Any) -> None:
        with self._lock:
            callbacks = list(self._subscribers.get(type(event), [])) + list(self._any)

        for callback in callbacks:
            try:
                callback(event)
            except Exception:
                # Subscriber bugs must not take down a worker thread
                logger.exception(f"Event subscriber failed for {type(event).__name__}")


@dataclass
class EventRecorder:
    """Collects published events; handy for tests and debugging sessions."""

    events: List[Any] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def __call__(self, event: Any) -> None:
        with self._lock:
            self.events.append(event)

    def of_type(self, event_type: Type) -> List[Any]:
        with self._lock:
            return [e for e in self.events if isinstance(e, event_type)]
