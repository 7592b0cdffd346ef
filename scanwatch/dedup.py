"""
Scan Deduplication
==================
Self-expiring "recently seen" keys plus a short debounce gate.

DedupCache blocks reprocessing of a key for DUPLICATE_WINDOW_MS.
Debouncer blocks immediate re-triggers of the same payload while a
previous attempt may still be in flight.
"""

import asyncio
import logging
import threading
from typing import Callable, Optional

from cachetools import TTLCache

from scanwatch.config import (
    DEBOUNCE_WINDOW_MS,
    DEDUP_MAX_ENTRIES,
    DEDUP_SWEEP_INTERVAL_MS,
    DUPLICATE_WINDOW_MS,
)
from scanwatch.timeutil import now_ms

logger = logging.getLogger(__name__)


class DedupCache:
    """Mutex-guarded map of key -> inserted_at_ms.

    A key is live while `now - inserted_at < window`. Expired keys are
    purged by `sweep`, which must be scheduled independently of traffic
    (see `run_sweeper`) so the map stays bounded when lookups stop.
    """

    def __init__(self, window_ms: int = DUPLICATE_WINDOW_MS, clock: Callable[[], int] = now_ms):
        self.window_ms = window_ms
        self._clock = clock
        self._entries: dict[str, int] = {}
        self._lock = threading.Lock()

    def _live(self, key: str, now: int) -> bool:
        inserted = self._entries.get(key)
        return inserted is not None and now - inserted < self.window_ms

    def seen(self, key: str) -> bool:
        with self._lock:
            return self._live(key, self._clock())

    def mark(self, key: str) -> None:
        with self._lock:
            self._entries[key] = self._clock()

    def claim(self, key: str) -> bool:
        """Atomically mark `key` unless it is live. True if this caller now owns it."""
        with self._lock:
            now = self._clock()
            if self._live(key, now):
                return False
            self._entries[key] = now
            return True

    def release(self, key: str) -> None:
        """Forget `key` so a legitimate retry is not treated as a duplicate."""
        with self._lock:
            self._entries.pop(key, None)

    def sweep(self, now: Optional[int] = None) -> int:
        """Remove entries older than the window. Returns how many were purged."""
        with self._lock:
            now = self._clock() if now is None else now
            expired = [k for k, ts in self._entries.items() if now - ts > self.window_ms]
            for key in expired:
                del self._entries[key]
            return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._entries


class Debouncer:
    """Gates an immediate repeat of the last committed payload.

    Only the most recent key debounces; earlier keys stay in the TTL cache
    until they expire but no longer block.
    """

    def __init__(
        self,
        window_ms: int = DEBOUNCE_WINDOW_MS,
        clock: Callable[[], int] = now_ms,
        maxsize: int = DEDUP_MAX_ENTRIES,
    ):
        self.window_ms = window_ms
        self._cache: TTLCache = TTLCache(maxsize=maxsize, ttl=window_ms, timer=clock)
        self._lock = threading.Lock()
        self.last_key: Optional[str] = None

    def is_debounced(self, key: str) -> bool:
        with self._lock:
            return key == self.last_key and key in self._cache

    def touch(self, key: str) -> None:
        with self._lock:
            self._cache[key] = True
            self.last_key = key

    def clear(self, key: str) -> None:
        with self._lock:
            self._cache.pop(key, None)


async def run_sweeper(cache: DedupCache, interval_ms: int = DEDUP_SWEEP_INTERVAL_MS):
    """Purge the cache every `interval_ms` until cancelled."""
    while True:
        await asyncio.sleep(interval_ms / 1000)
        purged = cache.sweep()
        if purged:
            logger.debug(f"Dedup sweep purged {purged} keys, {len(cache)} live")
