"""
Result Cache
------------
TTL-bounded, thread-safe store for successful tool outputs.

Only successes are ever written. Expired entries are dropped lazily on
read and in bulk by purge_expired().
"""

from dataclasses import dataclass
from threading import Lock
from typing import Any, Callable, Dict, Optional, Tuple
import logging
import time


@dataclass
class CacheEntry:
    value: Any
    expires_at: float


class ResultCache:
    """
    Key/value cache with per-entry TTL.

    Thread-safe; the clock is injectable for tests.
    """

    def __init__(
        self,
        max_entries: int = 1024,
        clock: Callable[[], float] = time.monotonic
    ):
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = Lock()
        self._clock = clock
        self._max_entries = max_entries
        self._hits = 0
        self._misses = 0
        self._logger = logging.getLogger("toolgate.tools.cache")

    def get(self, key: str) -> Tuple[bool, Any]:
        """Return (hit, value). A stored None is still a hit."""
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return False, None
            if entry.expires_at <= now:
                del self._entries[key]
                self._misses += 1
                return False, None
            self._hits += 1
            return True, entry.value

    def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        if ttl_seconds <= 0:
            return
        with self._lock:
            if key not in self._entries and len(self._entries) >= self._max_entries:
                self._evict_one()
            self._entries[key] = CacheEntry(value=value, expires_at=self._clock() + ttl_seconds)

    def _evict_one(self) -> None:
        # Caller holds the lock. Drop the entry closest to expiry.
        oldest = min(self._entries, key=lambda k: self._entries[k].expires_at)
        del self._entries[oldest]
        self._logger.debug(f"Evicted cache entry {oldest}")

    def invalidate(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def invalidate_tool(self, tool_name: str) -> int:
        """Drop every entry whose key was built for this tool."""
        prefix = f"{tool_name}:"
        with self._lock:
            doomed = [k for k in self._entries if k.startswith(prefix)]
            for key in doomed:
                del self._entries[key]
        return len(doomed)

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [k for k, e in self._entries.items() if e.expires_at <= now]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            total = self._hits + self._misses
            return {
                "entries": len(self._entries),
                "hits": self._hits,
                "misses": self._misses,
                "hit_rate": (self._hits / total) if total else 0.0,
            }

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
