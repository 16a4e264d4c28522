"""Process-wide TTL cache used to bound recomputation against venue rate limits."""

from __future__ import annotations

import threading
import time
from typing import Any, Callable, Hashable, TypeVar

from cachetools import TLRUCache
from loguru import logger

T = TypeVar("T")


def _expires_at(_key: Hashable, entry: tuple[float, Any], now: float) -> float:
    ttl_seconds, _value = entry
    return now + ttl_seconds


class TTLCache:
    """Get-or-compute cache with a per-entry time to live.

    ``cachetools`` caches are not thread-safe, so reads and writes happen under
    a lock. The compute function runs outside the lock: two callers missing the
    same key may both compute, and the last writer wins.
    """

    def __init__(self, maxsize: int = 256, timer: Callable[[], float] = time.monotonic) -> None:
        self._entries: TLRUCache[Hashable, tuple[float, Any]] = TLRUCache(
            maxsize=maxsize, ttu=_expires_at, timer=timer
        )
        self._lock = threading.Lock()

    def get(self, key: Hashable) -> Any | None:
        with self._lock:
            entry = self._entries.get(key)
        return entry[1] if entry is not None else None

    def set(self, key: Hashable, value: Any, ttl_seconds: float) -> None:
        with self._lock:
            self._entries[key] = (ttl_seconds, value)

    def get_or_set(self, key: Hashable, compute_fn: Callable[[], T], ttl_seconds: float) -> T:
        with self._lock:
            entry = self._entries.get(key)
        if entry is not None:
            logger.debug("Cache hit for {}", key)
            return entry[1]

        logger.debug("Cache miss for {}; recomputing", key)
        value = compute_fn()
        self.set(key, value, ttl_seconds)
        return value

    def invalidate(self, key: Hashable) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            self._entries.expire()
            return len(self._entries)


market_data_cache = TTLCache()
