"""In-memory caches backing the session controller.

Two stores live here:
- the volatile run-slot store (thread id -> last known run id), shared by
  every controller in the process so a rebuilt controller can still find the
  run it has to cancel;
- the per-thread source cache, restored when a thread becomes active again.

Entries expire after a TTL and the oldest entry is evicted at capacity.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar

from loguru import logger

from threadstream.core.settings import settings

V = TypeVar("V")

DEFAULT_MAX_SIZE = 1000
DEFAULT_TTL_SECONDS = 86400  # one day
SOURCE_CACHE_TTL = 3600


@dataclass
class CacheEntry(Generic[V]):
    value: V
    timestamp: float
    hits: int = 0


@dataclass
class CacheStats:
    """Counters for cache behaviour, exposed for debugging."""

    hits: int = 0
    misses: int = 0
    evictions: int = 0
    expirations: int = 0
    size: int = 0

    def copy(self) -> "CacheStats":
        return CacheStats(
            hits=self.hits,
            misses=self.misses,
            evictions=self.evictions,
            expirations=self.expirations,
            size=self.size,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
            "expirations": self.expirations,
            "size": self.size,
        }


class ThreadSafeCache(Generic[V]):
    """Lock-guarded key/value cache with TTL and a size bound.

    Usage:
        cache = ThreadSafeCache[str](maxsize=100, ttl=3600)
        cache.set("lg:stream:t1", "r1")
        cache.get("lg:stream:t1")  # "r1", or None once expired
    """

    def __init__(
        self,
        maxsize: int = DEFAULT_MAX_SIZE,
        ttl: float = DEFAULT_TTL_SECONDS,
        *,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize the cache.

        Args:
            maxsize: Maximum number of entries; 0 disables storage.
            ttl: Time-to-live in seconds.
            clock: Time source, injectable for tests.
        """
        self.maxsize = maxsize
        self.ttl = ttl
        self._clock = clock
        self._cache: Dict[str, CacheEntry[V]] = {}
        self._lock = threading.Lock()
        self._stats = CacheStats()

    def get(self, key: str) -> Optional[V]:
        with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                self._stats.misses += 1
                return None

            if self._clock() - entry.timestamp > self.ttl:
                del self._cache[key]
                self._stats.misses += 1
                self._stats.expirations += 1
                return None

            entry.hits += 1
            self._stats.hits += 1
            return entry.value

    def set(self, key: str, value: V) -> None:
        with self._lock:
            if self.maxsize <= 0:
                return
            if len(self._cache) >= self.maxsize and key not in self._cache:
                self._evict_oldest()
            self._cache[key] = CacheEntry(value=value, timestamp=self._clock())

    def delete(self, key: str) -> bool:
        """Delete a key; return True if it was present."""
        with self._lock:
            return self._cache.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()

    def _evict_oldest(self) -> None:
        if not self._cache:
            return
        oldest_key = min(self._cache.keys(), key=lambda k: self._cache[k].timestamp)
        del self._cache[oldest_key]
        self._stats.evictions += 1
        logger.debug("cache_entry_evicted", key=oldest_key)

    def prune_expired(self) -> int:
        """Remove all expired entries and return how many were removed."""
        with self._lock:
            now = self._clock()
            expired = [key for key, entry in self._cache.items() if now - entry.timestamp > self.ttl]
            for key in expired:
                del self._cache[key]
            self._stats.expirations += len(expired)
            return len(expired)

    def size(self) -> int:
        with self._lock:
            return len(self._cache)

    def get_stats(self) -> CacheStats:
        with self._lock:
            self._stats.size = len(self._cache)
            return self._stats.copy()


class SourceCache:
    """Per-thread snapshot of the source list.

    Stored and returned lists are copied so later sink mutations never leak
    into the cache.
    """

    def __init__(
        self,
        max_threads: Optional[int] = None,
        ttl: float = SOURCE_CACHE_TTL,
        *,
        clock: Callable[[], float] = time.time,
    ):
        if max_threads is None:
            max_threads = settings.source_cache_max_threads
        self._cache: ThreadSafeCache[List[Dict[str, Any]]] = ThreadSafeCache(
            maxsize=max_threads,
            ttl=ttl,
            clock=clock,
        )

    def store(self, thread_id: Optional[str], sources: List[Any]) -> None:
        if not thread_id:
            return
        self._cache.set(thread_id, [dict(entry) for entry in sources if isinstance(entry, Mapping)])

    def restore(self, thread_id: Optional[str]) -> List[Dict[str, Any]]:
        """Return the cached sources for *thread_id*, or an empty list."""
        if not thread_id:
            return []
        cached = self._cache.get(thread_id)
        if cached is None:
            return []
        return [dict(entry) for entry in cached]

    def size(self) -> int:
        return self._cache.size()


# Process-wide run-slot store, the analogue of per-browser-session storage.
_run_slot_cache: Optional[ThreadSafeCache[str]] = None
_run_slot_cache_lock = threading.Lock()


def get_run_slot_cache() -> ThreadSafeCache[str]:
    """Return the shared run-slot cache (thread-safe singleton)."""
    global _run_slot_cache
    if _run_slot_cache is not None:
        return _run_slot_cache

    with _run_slot_cache_lock:
        if _run_slot_cache is None:
            _run_slot_cache = ThreadSafeCache(ttl=settings.run_slot_ttl_sec)
        return _run_slot_cache


def reset_run_slot_cache() -> None:
    """Drop the shared run-slot cache (used by tests)."""
    global _run_slot_cache
    with _run_slot_cache_lock:
        _run_slot_cache = None
