from __future__ import annotations

from contextlib import contextmanager
from threading import Lock, RLock
from typing import Iterator


class KeyedLock:
    """One re-entrant lock per key, dropped once nobody holds or waits on it."""

    def __init__(self) -> None:
        self._guard = Lock()
        self._locks: dict[str, RLock] = {}
        self._waiters: dict[str, int] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(key, RLock())
            self._waiters[key] = self._waiters.get(key, 0) + 1
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                remaining = self._waiters.get(key, 1) - 1
                if remaining <= 0:
                    self._waiters.pop(key, None)
                    self._locks.pop(key, None)
                else:
                    self._waiters[key] = remaining

    def active_keys(self) -> int:
        with self._guard:
            return len(self._locks)


customer_locks = KeyedLock()
