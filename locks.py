"""Per-show mutual exclusion for inventory mutations."""

from contextlib import contextmanager
from typing import Dict
import threading


class ShowLockRegistry:
    """Hands out one exclusive lock per show id.

    Locks are created lazily and never removed, so two callers asking for the
    same show always get the same lock object. Callers for different shows
    never contend beyond the brief registry lookup.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    def lock_for(self, show_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(show_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[show_id] = lock
            return lock

    @contextmanager
    def hold(self, show_id: str):
        """Run the enclosed block inside the show's critical section."""
        lock = self.lock_for(show_id)
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
