from __future__ import annotations

import asyncio
import logging
from collections import deque
from threading import Lock
from typing import Any

logger = logging.getLogger(__name__)

RECENT_EVENTS_LIMIT = 100


class AdminBroadcaster:
    """Pushes admin events to connected dashboards and keeps a short history.

    Events are published from worker threads; each subscriber owns an asyncio
    queue bound to the loop that created it.
    """

    def __init__(self, *, history: int = RECENT_EVENTS_LIMIT) -> None:
        self._lock = Lock()
        self._recent: deque[dict[str, Any]] = deque(maxlen=history)
        self._subscribers: list[tuple[asyncio.AbstractEventLoop, asyncio.Queue]] = []

    def publish(self, payload: dict[str, Any]) -> None:
        with self._lock:
            self._recent.append(payload)
            subscribers = list(self._subscribers)
        for loop, queue in subscribers:
            try:
                loop.call_soon_threadsafe(queue.put_nowait, payload)
            except RuntimeError:
                # loop already closed; the socket handler will unsubscribe
                logger.debug("Dropping admin event for closed subscriber loop")

    def subscribe(self) -> asyncio.Queue:
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue()
        with self._lock:
            self._subscribers.append((loop, queue))
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        with self._lock:
            self._subscribers = [entry for entry in self._subscribers if entry[1] is not queue]

    def recent(self, limit: int | None = None) -> list[dict[str, Any]]:
        with self._lock:
            events = list(self._recent)
        if limit is not None:
            events = events[-limit:] if limit > 0 else []
        return events

    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def clear(self) -> None:
        with self._lock:
            self._recent.clear()


admin_broadcaster = AdminBroadcaster()
