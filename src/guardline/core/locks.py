"""
Per-key locking for Guardline stores

Serializes check-then-write sequences that must be atomic for a single key
(one user id) while letting different keys proceed in parallel.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Dict, Hashable, Optional


class LockTimeoutError(Exception):
    """Raised when a keyed lock cannot be acquired in time"""
    pass


class _Entry:
    __slots__ = ("lock", "refs")

    def __init__(self):
        self.lock = threading.Lock()
        self.refs = 0


class KeyedLock:
    """
    A family of mutexes addressed by key.

    Entries are reference counted and dropped once no thread holds or waits
    on them, so the table only grows with the number of keys in flight.
    """

    def __init__(self, name: str = "keyed"):
        self.name = name
        self._entries: Dict[Hashable, _Entry] = {}
        self._guard = threading.Lock()
        self.logger = logging.getLogger(__name__)

    def _checkout(self, key: Hashable) -> _Entry:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = _Entry()
                self._entries[key] = entry
            entry.refs += 1
            return entry

    def _release(self, key: Hashable, entry: _Entry) -> None:
        with self._guard:
            entry.refs -= 1
            if entry.refs == 0:
                del self._entries[key]

    @contextmanager
    def hold(self, key: Hashable, timeout: Optional[float] = None):
        """
        Hold the lock for ``key`` for the duration of the block

        Args:
            key: Lock key, typically a user id
            timeout: Seconds to wait; None waits forever

        Raises:
            LockTimeoutError: If the lock could not be acquired in time
        """
        entry = self._checkout(key)
        acquired = entry.lock.acquire(timeout=-1 if timeout is None else timeout)
        if not acquired:
            self._release(key, entry)
            self.logger.warning(f"Timed out waiting for {self.name} lock on {key}")
            raise LockTimeoutError(f"Timed out waiting for {self.name} lock")
        try:
            yield
        finally:
            entry.lock.release()
            self._release(key, entry)

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)
