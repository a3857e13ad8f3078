"""Keyed lock registry used to serialize catalog writes per entity."""

import threading
from contextlib import contextmanager
from typing import Dict, Iterator


class KeyedLocks:
    """One reentrant lock per key, created on first use.

    Writers touching different episodes proceed in parallel; writers touching
    the same episode run one at a time.

    Example:
        locks = KeyedLocks()
        with locks.hold(episode_id):
            ...
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.RLock] = {}

    def _lock_for(self, key: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        lock = self._lock_for(key)
        with lock:
            yield

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
