"""
Query Result Cache

TTL- and size-bounded cache of classification results keyed by a
normalized form of the query text, so that trivially different phrasings
("高风险商户有几个" / "高风险商户有几个？") share an entry.

Writes are serialized with a lock; entries are immutable once stored.
Expired entries are purged lazily on lookup and by an optional periodic
cleanup task controlled with start() / stop().
"""

import asyncio
import re
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

import structlog

_PUNCTUATION = re.compile(r"[，。！？；：“”‘’（）【】《》\"'()\[\]{}<>,.!?;:~`@#$%^&*+=|\\/_-]")
_WHITESPACE = re.compile(r"\s+")


def normalize_key(query: str) -> str:
    """Lowercase, trim, collapse whitespace and drop punctuation."""
    key = _PUNCTUATION.sub("", query.lower())
    return _WHITESPACE.sub(" ", key).strip()


@dataclass(frozen=True)
class CacheEntry:
    key: str
    value: Any
    timestamp: float
    ttl: float

    def expired(self, now: float) -> bool:
        return now - self.timestamp > self.ttl


class QueryCache:
    """
    In-process result cache.

    Args:
        ttl: Entry lifetime in seconds
        max_size: Maximum number of entries; the oldest entry by insertion
            time is evicted to make room
        cleanup_interval: Seconds between periodic cleanups once started
        clock: Monotonic time source (injectable for tests)
    """

    def __init__(
        self,
        ttl: float = 3600,
        max_size: int = 1000,
        cleanup_interval: float = 300,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl = ttl
        self.max_size = max_size
        self.cleanup_interval = cleanup_interval
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._lock = threading.RLock()
        self._hits = 0
        self._misses = 0
        self._cleanup_task: Optional[asyncio.Task] = None
        self.logger = structlog.get_logger().bind(component="query_cache")

    def get(self, query: str) -> Any | None:
        key = normalize_key(query)
        entry = self._entries.get(key)

        if entry is None:
            self._count(hit=False)
            return None

        if entry.expired(self._clock()):
            with self._lock:
                # Only drop the entry we saw; a concurrent set may have replaced it.
                if self._entries.get(key) is entry:
                    del self._entries[key]
            self._count(hit=False)
            return None

        self._count(hit=True)
        self.logger.debug("cache.hit", key=key)
        return entry.value

    def set(self, query: str, value: Any) -> None:
        key = normalize_key(query)
        with self._lock:
            if key not in self._entries and len(self._entries) >= self.max_size:
                self._evict_oldest()
            self._entries[key] = CacheEntry(key=key, value=value, timestamp=self._clock(), ttl=self.ttl)

    def _evict_oldest(self) -> None:
        oldest = min(self._entries.values(), key=lambda entry: entry.timestamp, default=None)
        if oldest is not None:
            del self._entries[oldest.key]
            self.logger.debug("cache.evicted", key=oldest.key)

    def _count(self, hit: bool) -> None:
        with self._lock:
            if hit:
                self._hits += 1
            else:
                self._misses += 1

    def cleanup(self) -> int:
        """Remove every expired entry; returns the number removed."""
        now = self._clock()
        with self._lock:
            expired = [key for key, entry in self._entries.items() if entry.expired(now)]
            for key in expired:
                del self._entries[key]
        if expired:
            self.logger.info("cache.cleanup", removed=len(expired), remaining=len(self._entries))
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._hits = 0
            self._misses = 0

    def stats(self) -> dict[str, Any]:
        now = self._clock()
        with self._lock:
            entries = list(self._entries.values())
            hits, misses = self._hits, self._misses
        lookups = hits + misses
        return {
            "size": len(entries),
            "valid_entries": sum(1 for entry in entries if not entry.expired(now)),
            "max_size": self.max_size,
            "ttl": self.ttl,
            "hits": hits,
            "misses": misses,
            "hit_rate": hits / lookups if lookups else 0.0,
        }

    def __len__(self) -> int:
        return len(self._entries)

    # Lifecycle

    def start(self) -> None:
        """Start periodic cleanup on the running event loop."""
        if self._cleanup_task is not None and not self._cleanup_task.done():
            return
        self._cleanup_task = asyncio.get_running_loop().create_task(self._cleanup_loop())
        self.logger.debug("cache.cleanup.started", interval=self.cleanup_interval)

    async def stop(self) -> None:
        task, self._cleanup_task = self._cleanup_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        self.logger.debug("cache.cleanup.stopped")

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self.cleanup_interval)
            self.cleanup()
