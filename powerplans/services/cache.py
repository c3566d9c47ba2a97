"""
MemoryCache - bounded in-process cache tier with TTL and LRU eviction.

Features:
- Fixed capacity; the least recently used entry is evicted first
- TTL per entry, expired entries are dropped on access
- Tag index so related entries can be invalidated together
- Async-safe operations (one asyncio.Lock, last writer wins)
"""

import asyncio
import hashlib
import time
from collections import OrderedDict
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from loguru import logger


class TierOrigin(str, Enum):
    MEMORY = "memory"
    DISTRIBUTED = "distributed"


@dataclass
class CacheEntry:
    """A single cache entry with metadata."""

    key: str
    value: Any
    written_at: float
    ttl: float
    tier_origin: TierOrigin = TierOrigin.MEMORY
    tags: frozenset[str] = field(default_factory=frozenset)

    @property
    def expires_at(self) -> float:
        return self.written_at + self.ttl

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def remaining_ttl(self, now: float) -> float:
        return max(0.0, self.expires_at - now)


def make_cache_key(prefix: str, params: dict[str, Any] | None = None) -> str:
    """Deterministic key from a prefix and params (sorted, None values dropped)."""
    if params:
        parts = "&".join(
            f"{k}={v}" for k, v in sorted(params.items()) if v is not None
        )
        full_key = f"{prefix}?{parts}" if parts else prefix
    else:
        full_key = prefix

    # Hash long keys
    if len(full_key) > 200:
        hash_val = hashlib.md5(full_key.encode()).hexdigest()[:16]
        return f"{prefix}#{hash_val}"

    return full_key


class MemoryCache:
    """
    In-process LRU cache with TTL.

    Capacity is a hard bound: inserting a new key into a full cache evicts
    the least recently used entry (reads and writes both count as use).

    Usage:
        cache = MemoryCache(max_size=1000, default_ttl=1800)

        entry = await cache.get("plans:tdsp=...")
        if entry:
            return entry.value

        await cache.set("plans:tdsp=...", plans, ttl=600, tags=["plans"])
    """

    def __init__(
        self,
        max_size: int = 1000,
        default_ttl: float = 1800.0,
        clock: Callable[[], float] = time.monotonic,
        debug: bool = False,
    ):
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self._memory: OrderedDict[str, CacheEntry] = OrderedDict()
        self._tags: dict[str, set[str]] = {}
        self._max_size = max_size
        self._default_ttl = default_ttl
        self._clock = clock
        self._debug = debug
        self._lock = asyncio.Lock()
        self._stats = CacheStats(max_size=max_size)

    @property
    def max_size(self) -> int:
        return self._max_size

    def __len__(self) -> int:
        return len(self._memory)

    async def get(self, key: str) -> CacheEntry | None:
        """Return the live entry for key, or None on miss/expiry."""
        async with self._lock:
            entry = self._memory.get(key)
            if entry is None:
                self._stats.misses += 1
                self._log(f"MISS: {key[:50]}")
                return None

            if entry.is_expired(self._clock()):
                self._remove(key)
                self._stats.misses += 1
                self._stats.expirations += 1
                self._log(f"EXPIRED: {key[:50]}")
                return None

            self._memory.move_to_end(key)
            self._stats.hits += 1
            self._log(f"HIT: {key[:50]}")
            return entry

    async def set(
        self,
        key: str,
        value: Any,
        ttl: float | None = None,
        tags: Iterable[str] = (),
        tier_origin: TierOrigin = TierOrigin.MEMORY,
    ) -> CacheEntry:
        """
        Store value under key.

        Args:
            key: Cache key
            value: Data to cache
            ttl: Seconds to live (uses default if not specified)
            tags: Labels for group invalidation
            tier_origin: Tier the value was first written to
        """
        ttl = self._default_ttl if ttl is None else ttl
        entry = CacheEntry(
            key=key,
            value=value,
            written_at=self._clock(),
            ttl=ttl,
            tier_origin=tier_origin,
            tags=frozenset(tags),
        )

        async with self._lock:
            if key in self._memory:
                self._remove(key)
            elif len(self._memory) >= self._max_size:
                self._evict_lru()

            self._memory[key] = entry
            for tag in entry.tags:
                self._tags.setdefault(tag, set()).add(key)
            self._stats.sets += 1
            self._log(f"SET: {key[:50]} (TTL: {ttl}s)")
        return entry

    async def delete(self, key: str) -> bool:
        """Delete a specific key from cache."""
        async with self._lock:
            if key in self._memory:
                self._remove(key)
                self._log(f"DELETE: {key[:50]}")
                return True
            return False

    async def invalidate(self, tag_or_key: str) -> int:
        """
        Drop every entry carrying the tag, or the entry with that exact key.

        Returns:
            Number of entries invalidated
        """
        async with self._lock:
            keys = set(self._tags.get(tag_or_key, ()))
            if tag_or_key in self._memory:
                keys.add(tag_or_key)
            for key in keys:
                self._remove(key)

            if keys:
                self._log(f"INVALIDATE: {len(keys)} entries for '{tag_or_key}'")
            return len(keys)

    async def clear(self) -> int:
        """Clear all cache entries."""
        async with self._lock:
            count = len(self._memory)
            self._memory.clear()
            self._tags.clear()
            self._log(f"CLEAR: {count} entries removed")
            return count

    async def cleanup_expired(self) -> int:
        """Remove all expired entries. Returns count of removed entries."""
        async with self._lock:
            now = self._clock()
            expired_keys = [k for k, v in self._memory.items() if v.is_expired(now)]
            for key in expired_keys:
                self._remove(key)
            self._stats.expirations += len(expired_keys)

            if expired_keys:
                self._log(f"CLEANUP: {len(expired_keys)} expired entries removed")
            return len(expired_keys)

    def keys(self) -> list[str]:
        """Keys from least to most recently used."""
        return list(self._memory.keys())

    def _remove(self, key: str) -> None:
        entry = self._memory.pop(key)
        for tag in entry.tags:
            members = self._tags.get(tag)
            if members is not None:
                members.discard(key)
                if not members:
                    del self._tags[tag]

    def _evict_lru(self) -> None:
        oldest_key = next(iter(self._memory))
        self._remove(oldest_key)
        self._stats.evictions += 1
        self._log(f"EVICT: {oldest_key[:50]}")

    def get_stats(self) -> "CacheStats":
        """Get cache statistics."""
        self._stats.size = len(self._memory)
        return self._stats

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[MemoryCache] {message}")


@dataclass
class CacheStats:
    """Cache statistics."""

    hits: int = 0
    misses: int = 0
    sets: int = 0
    evictions: int = 0
    expirations: int = 0
    size: int = 0
    max_size: int = 0

    @property
    def hit_rate(self) -> float:
        """Calculate cache hit rate."""
        total = self.hits + self.misses
        if total == 0:
            return 0.0
        return self.hits / total

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "hits": self.hits,
            "misses": self.misses,
            "sets": self.sets,
            "evictions": self.evictions,
            "expirations": self.expirations,
            "size": self.size,
            "max_size": self.max_size,
            "hit_rate": round(self.hit_rate, 4),
        }
