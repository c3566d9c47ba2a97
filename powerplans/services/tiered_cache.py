"""
CacheTierManager - memory tier in front of an optional Redis tier.

Lookup order is memory, then Redis, then miss. A Redis hit is promoted into
memory for its remaining TTL. Writes go to both tiers. Redis being absent or
unhealthy only lowers the hit rate; it never fails a lookup.
"""

from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from powerplans.services.cache import MemoryCache, TierOrigin
from powerplans.services.redis_tier import RedisCacheTier


class ContentType(str, Enum):
    """Content classes with their own freshness policy."""

    PLANS = "plans"
    RESOLUTION = "resolution"
    REFERENCE = "reference"


@dataclass
class CacheTTLPolicy:
    plans: float = 1800.0
    resolution: float = 3600.0
    reference: float = 86400.0

    def ttl_for(self, content: ContentType) -> float:
        return getattr(self, content.value)


class CacheTierManager:
    """
    Usage:
        cache = CacheTierManager(MemoryCache(max_size=1000), redis_tier)

        value, hit = await cache.get(key)
        if not hit:
            value = await load()
            await cache.set(key, value, content=ContentType.PLANS, tags=["plans"])
    """

    def __init__(
        self,
        memory: MemoryCache,
        distributed: RedisCacheTier | None = None,
        ttl_policy: CacheTTLPolicy | None = None,
    ):
        self.memory = memory
        self.distributed = distributed
        self.ttl_policy = ttl_policy or CacheTTLPolicy()
        self._hits = 0
        self._misses = 0

    async def get(self, key: str) -> tuple[Any, bool]:
        """Return (value, hit). A miss returns (None, False)."""
        entry = await self.memory.get(key)
        if entry is not None:
            self._hits += 1
            return entry.value, True

        if self.distributed is not None:
            entry = await self.distributed.get(key)
            if entry is not None:
                remaining = entry.remaining_ttl(self.distributed.now())
                if remaining > 0:
                    await self.memory.set(
                        key,
                        entry.value,
                        ttl=remaining,
                        tags=entry.tags,
                        tier_origin=TierOrigin.DISTRIBUTED,
                    )
                self._hits += 1
                return entry.value, True

        self._misses += 1
        return None, False

    async def set(
        self,
        key: str,
        value: Any,
        ttl: float | None = None,
        tags: Iterable[str] = (),
        content: ContentType = ContentType.PLANS,
    ) -> None:
        ttl = self.ttl_policy.ttl_for(content) if ttl is None else ttl
        tags = tuple(tags)
        await self.memory.set(key, value, ttl=ttl, tags=tags)
        if self.distributed is not None:
            await self.distributed.set(key, value, ttl=ttl, tags=tags)

    async def invalidate(self, tag_or_key: str) -> int:
        """Invalidate by tag or exact key on every tier. Returns entries removed."""
        removed = await self.memory.invalidate(tag_or_key)
        if self.distributed is not None:
            removed = max(removed, await self.distributed.invalidate(tag_or_key))
        return removed

    async def clear(self) -> int:
        removed = await self.memory.clear()
        if self.distributed is not None:
            removed = max(removed, await self.distributed.clear())
        return removed

    def stats(self) -> dict[str, Any]:
        total = self._hits + self._misses
        memory_stats = self.memory.get_stats()
        per_tier = {"memory": round(memory_stats.hit_rate, 4)}
        result: dict[str, Any] = {
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": round(self._hits / total, 4) if total else 0.0,
            "memory": memory_stats.to_dict(),
            "distributed": None,
        }
        if self.distributed is not None:
            redis_stats = self.distributed.get_stats()
            per_tier["distributed"] = round(redis_stats.hit_rate, 4)
            result["distributed"] = redis_stats.to_dict()
        result["per_tier_hit_rate"] = per_tier
        return result
