"""In-process query result cache with per-entry TTL.

Entries are keyed by a SHA-256 of the query text and its parameters, evicted
oldest-first when the cache is full, and expired either on access or by a
periodic background sweep. The sweep is an asyncio task that callers start
and stop explicitly (the API does it in its lifespan).
"""
from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Mapping

from .config import CacheSettings

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    """Single cached result."""
    key: str
    query: str
    data: Any
    timestamp: float
    ttl: float

    def age(self, now: float) -> float:
        return now - self.timestamp

    def is_expired(self, now: float) -> bool:
        return self.age(now) > self.ttl


def make_cache_key(query: str, params: Mapping[str, Any] | None = None) -> str:
    """Deterministic key for a (query, params) pair.

    Parameters are serialized with sorted keys, so ``{"a": 1, "b": 2}`` and
    ``{"b": 2, "a": 1}`` produce the same key.
    """
    content = json.dumps(
        {"query": query, "params": params},
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def _payload_table(data: Any) -> str | None:
    """Read ``metadata.table`` from a cached payload, if it declares one."""
    metadata = data.get("metadata") if isinstance(data, Mapping) else getattr(data, "metadata", None)
    if isinstance(metadata, Mapping):
        return metadata.get("table")
    return getattr(metadata, "table", None)


class QueryCache:
    """Bounded TTL cache for query results.

    Not thread-safe: meant to be shared by handlers running on one event loop.
    """

    def __init__(
        self,
        max_size: int = 100,
        default_ttl: float = 300.0,
        sweep_interval: float = 60.0,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.max_size = max_size
        self.default_ttl = default_ttl
        self.sweep_interval = sweep_interval
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._sweep_task: asyncio.Task | None = None
        self.hits = 0
        self.misses = 0

    @classmethod
    def from_settings(cls, config: CacheSettings) -> QueryCache:
        return cls(
            max_size=config.max_size,
            default_ttl=config.default_ttl,
            sweep_interval=config.sweep_interval,
        )

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def set(
        self,
        query: str,
        data: Any,
        ttl: float | None = None,
        params: Mapping[str, Any] | None = None,
    ) -> str:
        """Store a result and return its key."""
        key = make_cache_key(query, params)

        # Re-setting a key moves it to the back of the eviction order
        if self._entries.pop(key, None) is None and len(self._entries) >= self.max_size:
            oldest = min(self._entries.values(), key=lambda e: e.timestamp)
            del self._entries[oldest.key]
            logger.debug(f"Evicted cache entry {oldest.key[:12]} (capacity {self.max_size})")

        self._entries[key] = CacheEntry(
            key=key,
            query=query,
            data=data,
            timestamp=self._clock(),
            ttl=self.default_ttl if ttl is None else ttl,
        )
        return key

    def get(self, query: str, params: Mapping[str, Any] | None = None) -> Any | None:
        """Return cached data, or ``None`` on a miss or an expired entry."""
        key = make_cache_key(query, params)
        entry = self._entries.get(key)

        if entry is None:
            self.misses += 1
            return None

        if entry.is_expired(self._clock()):
            del self._entries[key]
            self.misses += 1
            return None

        self.hits += 1
        return entry.data

    def has(self, query: str, params: Mapping[str, Any] | None = None) -> bool:
        """True if a live entry exists. Does not count as a lookup."""
        entry = self._entries.get(make_cache_key(query, params))
        return entry is not None and not entry.is_expired(self._clock())

    def invalidate(self, pattern: str | None = None) -> int:
        """Drop everything, or entries whose key or query matches ``pattern``.

        The pattern is a case-insensitive regular expression.
        """
        if not pattern:
            removed = len(self._entries)
            self._entries.clear()
            return removed

        regex = re.compile(pattern, re.IGNORECASE)
        stale = [
            key for key, entry in self._entries.items()
            if regex.search(key) or regex.search(entry.query)
        ]
        for key in stale:
            del self._entries[key]
        return len(stale)

    def invalidate_by_table(self, table_name: str) -> int:
        """Drop entries whose payload declares ``metadata.table == table_name``."""
        stale = [key for key, entry in self._entries.items() if _payload_table(entry.data) == table_name]
        for key in stale:
            del self._entries[key]
        if stale:
            logger.info(f"Invalidated {len(stale)} cache entries for table {table_name}")
        return len(stale)

    def sweep(self) -> int:
        """Remove every expired entry, accessed or not."""
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.debug(f"Swept {len(expired)} expired cache entries")
        return len(expired)

    @property
    def running(self) -> bool:
        return self._sweep_task is not None and not self._sweep_task.done()

    def start(self) -> None:
        """Start the background sweep on the running event loop."""
        if self.running:
            return
        self._sweep_task = asyncio.get_running_loop().create_task(self._sweep_loop())
        logger.info(f"Cache sweep started (every {self.sweep_interval}s)")

    async def stop(self) -> None:
        """Cancel the background sweep and wait for it to finish."""
        task, self._sweep_task = self._sweep_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Cache sweep stopped")

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            self.sweep()

    def stats(self) -> dict[str, Any]:
        now = self._clock()
        lookups = self.hits + self.misses
        return {
            "size": len(self._entries),
            "max_size": self.max_size,
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": round(self.hits / lookups, 4) if lookups else 0.0,
            "entries": [
                {"key": entry.key, "age": round(entry.age(now), 3), "ttl": entry.ttl}
                for entry in self._entries.values()
            ],
        }
