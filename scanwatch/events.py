"""
Observer Bus
============
Best-effort fan-out of status and scan notifications (toasts, haptics,
audio, websocket pushes). An observer that fails never fails the caller.
"""

import asyncio
import inspect
import logging
import threading
from collections import defaultdict
from typing import Any, Callable

logger = logging.getLogger(__name__)

DEVICE_STATUS_CHANGED = "device-status-changed"
SCAN_PROCESSED = "scan-processed"
SCAN_REJECTED = "scan-rejected"
POLLER_STATE_CHANGED = "poller-state-changed"


class EventBus:
    def __init__(self):
        self._observers: dict[str, list[Callable]] = defaultdict(list)
        self._lock = threading.Lock()
        self._pending: set[asyncio.Task] = set()

    def subscribe(self, topic: str, callback: Callable[[Any], Any]) -> Callable[[], None]:
        """Register `callback` for `topic`. Returns a handle that unsubscribes."""
        with self._lock:
            self._observers[topic].append(callback)

        def unsubscribe():
            with self._lock:
                if callback in self._observers[topic]:
                    self._observers[topic].remove(callback)

        return unsubscribe

    def publish(self, topic: str, payload: Any) -> None:
        with self._lock:
            observers = list(self._observers.get(topic, ()))

        for callback in observers:
            try:
                result = callback(payload)
                if inspect.isawaitable(result):
                    task = asyncio.ensure_future(result)
                    self._pending.add(task)
                    task.add_done_callback(self._finish)
            except Exception:
                logger.exception(f"Observer {callback!r} failed on {topic}")

    def _finish(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Async observer failed: {exc!r}")

    async def drain(self) -> None:
        """Wait for async observers still running (used on shutdown and in tests)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
