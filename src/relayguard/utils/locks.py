"""
Per-user lock registry.

Spam checks read a record, decide, and write it back. Two messages from
the same user handled at once would lose updates, so every read-modify-write
sequence for a user runs under that user's lock. Different users never
share a lock.

Locks are re-entrant (a full check/handle/track sequence can nest the
individual operations) and are dropped from the registry once nobody
holds or waits on them.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Generator, Optional


class LockTimeout(Exception):
    """Raised when a user's lock could not be acquired in time."""

    def __init__(self, user_id: str, timeout: Optional[float]) -> None:
        super().__init__(f"Timed out after {timeout}s waiting for lock of user {user_id}")
        self.user_id = user_id
        self.timeout = timeout


class _UserLock:
    __slots__ = ("lock", "refs")

    def __init__(self) -> None:
        self.lock = threading.RLock()
        self.refs = 0


class UserLockRegistry:
    """Hands out one re-entrant lock per user ID."""

    def __init__(self, timeout: Optional[float] = None) -> None:
        """
        Args:
            timeout: Default seconds to wait for a lock; None waits forever
        """
        self.timeout = timeout
        self._locks: dict[str, _UserLock] = {}
        self._guard = threading.Lock()

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    def _checkout(self, user_id: str) -> _UserLock:
        with self._guard:
            entry = self._locks.get(user_id)
            if entry is None:
                entry = self._locks[user_id] = _UserLock()
            entry.refs += 1
            return entry

    def _checkin(self, user_id: str, entry: _UserLock) -> None:
        with self._guard:
            entry.refs -= 1
            if entry.refs == 0:
                self._locks.pop(user_id, None)

    @contextmanager
    def hold(self, user_id: str, timeout: Optional[float] = None) -> Generator[None, None, None]:
        """
        Hold the lock of ``user_id`` for the duration of the block.

        Raises:
            LockTimeout: If the lock is not acquired within the timeout
        """
        wait = self.timeout if timeout is None else timeout
        entry = self._checkout(user_id)
        try:
            acquired = entry.lock.acquire(timeout=wait) if wait is not None else entry.lock.acquire()
            if not acquired:
                raise LockTimeout(user_id, wait)
            try:
                yield
            finally:
                entry.lock.release()
        finally:
            self._checkin(user_id, entry)
