"""
Process-local ephemeral cache for aggregated search results.

Entries hold the full sorted result list of a query so any page can be
served by slicing. Keys cover every flag that changes what adapters return,
but never the page window (offset/limit).
"""

import asyncio
import hashlib
import json
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional

from aggregator.models.schemas import AggregateMeta, AggregateQuery, ExternalListing

CACHE_KEY_VERSION = 3


# =============================================================================
# Key helpers
# =============================================================================

def _hash_identity(data: dict[str, Any]) -> str:
    key_str = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(key_str.encode()).hexdigest()[:32]


def _platform_token(query: AggregateQuery) -> str:
    return query.platform if query.is_all else query.platform.value


def query_cache_key(query: AggregateQuery) -> str:
    """Ephemeral key: logical identity plus mode flags."""
    return _hash_identity({
        "v": CACHE_KEY_VERSION,
        "q": query.q.strip().lower(),
        "platform": _platform_token(query),
        "filters": query.filters.model_dump(),
        "headless": query.headless,
        "force_headless": query.force_headless,
        "prefetch": query.prefetch,
        "debug": query.debug,
    })


def snapshot_key(query: AggregateQuery) -> str:
    """Durable snapshot key: logical identity only."""
    return _hash_identity({
        "q": query.q.strip().lower(),
        "platform": _platform_token(query),
        "filters": query.filters.model_dump(),
    })


# =============================================================================
# Cache Implementation
# =============================================================================

Producer = Callable[[], Awaitable[tuple[list[ExternalListing], AggregateMeta]]]


@dataclass
class CachedResult:
    """Full sorted result list of one query with TTL tracking."""
    items: list[ExternalListing]
    meta: AggregateMeta
    stored_at: datetime
    ttl_seconds: int
    hits: int = 0

    @property
    def total(self) -> int:
        return len(self.items)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return now - self.stored_at > timedelta(seconds=self.ttl_seconds)


class SearchCache:
    """
    Bounded async TTL cache of aggregated results.

    Full caches drop expired entries first, then the least recently read
    one. ``get_or_run`` lets identical queries that arrive while a fan-out
    is in flight wait for that fan-out instead of starting their own.
    """

    def __init__(self, max_size: int = 500, default_ttl: int = 300):
        self.max_size = max(1, max_size)
        self.default_ttl = default_ttl
        self._entries: OrderedDict[str, CachedResult] = OrderedDict()
        self._inflight: dict[str, asyncio.Future] = {}
        self._lock = asyncio.Lock()
        self._hits = 0
        self._misses = 0
        self._coalesced = 0
        self._evictions = 0

    def _live(self, key: str) -> Optional[CachedResult]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.is_expired():
            del self._entries[key]
            return None
        self._entries.move_to_end(key)
        entry.hits += 1
        return entry

    async def lookup(self, key: str) -> Optional[CachedResult]:
        """Unexpired entry for ``key``; counts a hit or a miss."""
        async with self._lock:
            entry = self._live(key)
            if entry is None:
                self._misses += 1
            else:
                self._hits += 1
            return entry

    async def put(
        self,
        key: str,
        items: list[ExternalListing],
        meta: AggregateMeta,
        ttl: Optional[int] = None,
    ) -> None:
        async with self._lock:
            self._entries.pop(key, None)
            if len(self._entries) >= self.max_size:
                self._evict()
            self._entries[key] = CachedResult(
                items=list(items),
                meta=meta,
                stored_at=datetime.now(timezone.utc),
                ttl_seconds=ttl or self.default_ttl,
            )

    def _evict(self) -> None:
        now = datetime.now(timezone.utc)
        expired = [k for k, e in self._entries.items() if e.is_expired(now)]
        for key in expired:
            del self._entries[key]
        self._evictions += len(expired)
        while len(self._entries) >= self.max_size:
            self._entries.popitem(last=False)
            self._evictions += 1

    async def get_or_run(self, key: str, producer: Producer) -> tuple[list[ExternalListing], AggregateMeta]:
        """
        Cached items and meta for ``key``, running ``producer`` at most once
        per key at a time. Failures are not cached; every waiter sees them.
        """
        async with self._lock:
            entry = self._live(key)
            if entry is not None:
                self._hits += 1
                return entry.items, entry.meta
            pending = self._inflight.get(key)
            owner = pending is None
            if owner:
                pending = asyncio.ensure_future(producer())
                self._inflight[key] = pending
            else:
                self._coalesced += 1

        try:
            items, meta = await asyncio.shield(pending)
        finally:
            if owner:
                async with self._lock:
                    self._inflight.pop(key, None)

        if owner:
            await self.put(key, items, meta)
        return items, meta

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._entries.pop(key, None)

    async def clear(self) -> None:
        async with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def get_stats(self) -> dict[str, Any]:
        """Get cache statistics."""
        now = datetime.now(timezone.utc)
        return {
            "size": len(self._entries),
            "max_size": self.max_size,
            "hits": self._hits,
            "misses": self._misses,
            "coalesced": self._coalesced,
            "evictions": self._evictions,
            "in_flight": len(self._inflight),
            "expired_entries": sum(1 for e in self._entries.values() if e.is_expired(now)),
        }


__all__ = [
    "CACHE_KEY_VERSION",
    "CachedResult",
    "SearchCache",
    "query_cache_key",
    "snapshot_key",
]
