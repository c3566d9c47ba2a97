"""Tests for the memory tier, the Redis tier and the tier manager.

Tests cover:
- LRU eviction at capacity and TTL expiry
- Tag and exact-key invalidation
- Redis envelopes, tag sets and failure degradation
- Lookup order and promotion of Redis hits into memory
"""

import json

import pytest

from conftest import FailingRedis
from powerplans.services.cache import MemoryCache, TierOrigin, make_cache_key
from powerplans.services.redis_tier import RedisCacheTier
from powerplans.services.tiered_cache import (
    CacheTierManager,
    CacheTTLPolicy,
    ContentType,
)


@pytest.fixture
def memory(clock) -> MemoryCache:
    return MemoryCache(max_size=3, default_ttl=60.0, clock=clock)


@pytest.fixture
def redis_tier(fake_redis, clock) -> RedisCacheTier:
    return RedisCacheTier(fake_redis, prefix="test:", clock=clock)


class TestMakeCacheKey:
    def test_params_sorted_and_none_dropped(self):
        key = make_cache_key("plans", {"usage": 1000, "tdsp": "X", "term": None})
        assert key == "plans?tdsp=X&usage=1000"

    def test_order_independent(self):
        assert make_cache_key("p", {"a": 1, "b": 2}) == make_cache_key("p", {"b": 2, "a": 1})

    def test_long_keys_are_hashed(self):
        key = make_cache_key("plans", {"q": "x" * 300})
        assert key.startswith("plans#")
        assert len(key) < 40


class TestMemoryCache:
    async def test_set_and_get(self, memory):
        await memory.set("k", {"v": 1}, tags=["plans"])
        entry = await memory.get("k")

        assert entry.value == {"v": 1}
        assert entry.tier_origin == TierOrigin.MEMORY
        assert entry.tags == frozenset({"plans"})

    async def test_expired_entry_is_a_miss(self, memory, clock):
        await memory.set("k", 1, ttl=10)
        clock.advance(10)

        assert await memory.get("k") is None
        stats = memory.get_stats()
        assert stats.expirations == 1
        assert stats.size == 0

    async def test_evicts_least_recently_used(self, memory):
        for key in ("a", "b", "c"):
            await memory.set(key, key)
        await memory.get("a")  # b is now least recently used

        await memory.set("d", "d")

        assert memory.keys() == ["c", "a", "d"]
        assert memory.get_stats().evictions == 1

    async def test_never_exceeds_capacity(self, memory):
        for i in range(20):
            await memory.set(f"k{i}", i)
            assert len(memory) <= memory.max_size

    async def test_overwrite_does_not_evict(self, memory):
        for key in ("a", "b", "c"):
            await memory.set(key, key)
        await memory.set("a", "again")

        assert len(memory) == 3
        assert (await memory.get("a")).value == "again"
        assert memory.get_stats().evictions == 0

    async def test_invalidate_by_tag(self, memory):
        await memory.set("a", 1, tags=["territory:1"])
        await memory.set("b", 2, tags=["territory:1", "plans"])
        await memory.set("c", 3, tags=["territory:2"])

        assert await memory.invalidate("territory:1") == 2
        assert memory.keys() == ["c"]

    async def test_invalidate_by_exact_key(self, memory):
        await memory.set("a", 1)
        assert await memory.invalidate("a") == 1
        assert await memory.invalidate("a") == 0

    async def test_cleanup_expired(self, memory, clock):
        await memory.set("short", 1, ttl=5)
        await memory.set("long", 2, ttl=500)
        clock.advance(10)

        assert await memory.cleanup_expired() == 1
        assert memory.keys() == ["long"]

    async def test_hit_rate(self, memory):
        await memory.set("a", 1)
        await memory.get("a")
        await memory.get("missing")

        assert memory.get_stats().to_dict()["hit_rate"] == 0.5

    def test_rejects_zero_capacity(self):
        with pytest.raises(ValueError):
            MemoryCache(max_size=0)


class TestRedisCacheTier:
    async def test_round_trip_and_tags(self, redis_tier, fake_redis):
        assert await redis_tier.set("k", [1, 2], ttl=120, tags=["plans"])

        stored = json.loads(fake_redis.values["test:k"])
        assert stored["ttl"] == 120
        assert fake_redis.ttls["test:k"] == 120
        assert fake_redis.sets["test:tag:plans"] == {"k"}

        entry = await redis_tier.get("k")
        assert entry.value == [1, 2]
        assert entry.tier_origin == TierOrigin.DISTRIBUTED

    async def test_invalidate_tag(self, redis_tier, fake_redis):
        await redis_tier.set("a", 1, ttl=60, tags=["territory:1"])
        await redis_tier.set("b", 2, ttl=60, tags=["territory:1"])

        assert await redis_tier.invalidate("territory:1") == 2
        assert await redis_tier.get("a") is None
        assert "test:tag:territory:1" not in fake_redis.sets

    async def test_corrupt_payload_is_a_miss(self, redis_tier, fake_redis):
        fake_redis.values["test:k"] = "{not json"

        assert await redis_tier.get("k") is None
        assert redis_tier.get_stats().errors == 1

    async def test_failures_degrade_silently(self, clock):
        tier = RedisCacheTier(FailingRedis(), clock=clock)

        assert await tier.get("k") is None
        assert not await tier.set("k", 1, ttl=60)
        assert await tier.invalidate("plans") == 0
        assert not await tier.ping()
        assert tier.get_stats().errors == 3


class TestCacheTierManager:
    async def test_miss_on_both_tiers(self, memory, redis_tier):
        cache = CacheTierManager(memory, redis_tier)
        assert await cache.get("k") == (None, False)

    async def test_set_writes_both_tiers_with_content_ttl(self, memory, redis_tier, fake_redis):
        cache = CacheTierManager(memory, redis_tier, CacheTTLPolicy(resolution=900))
        await cache.set("k", "v", content=ContentType.RESOLUTION)

        assert (await memory.get("k")).ttl == 900
        assert fake_redis.ttls["test:k"] == 900

    async def test_redis_hit_is_promoted_with_remaining_ttl(
        self, memory, redis_tier, clock
    ):
        await redis_tier.set("k", "v", ttl=100)
        clock.advance(40)
        cache = CacheTierManager(memory, redis_tier)

        assert await cache.get("k") == ("v", True)

        promoted = await memory.get("k")
        assert promoted.tier_origin == TierOrigin.DISTRIBUTED
        assert promoted.ttl == pytest.approx(60)

    async def test_memory_hit_skips_redis(self, memory, redis_tier):
        cache = CacheTierManager(memory, redis_tier)
        await memory.set("k", "v")

        assert await cache.get("k") == ("v", True)
        assert redis_tier.get_stats().hits == 0
        assert redis_tier.get_stats().misses == 0

    async def test_works_without_redis(self, memory):
        cache = CacheTierManager(memory)
        await cache.set("k", "v", tags=["plans"])

        assert await cache.get("k") == ("v", True)
        assert await cache.invalidate("plans") == 1
        assert cache.stats()["distributed"] is None

    async def test_unhealthy_redis_only_lowers_hit_rate(self, memory, clock):
        cache = CacheTierManager(memory, RedisCacheTier(FailingRedis(), clock=clock))

        await cache.set("k", "v")
        assert await cache.get("k") == ("v", True)
        assert await cache.get("other") == (None, False)

    async def test_stats(self, memory, redis_tier):
        cache = CacheTierManager(memory, redis_tier)
        await cache.set("k", "v")
        await cache.get("k")
        await cache.get("missing")

        stats = cache.stats()
        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["hit_rate"] == 0.5
        assert set(stats["per_tier_hit_rate"]) == {"memory", "distributed"}

    async def test_clear(self, memory, redis_tier, fake_redis):
        cache = CacheTierManager(memory, redis_tier)
        await cache.set("a", 1, tags=["plans"])
        await cache.set("b", 2)

        assert await cache.clear() >= 2
        assert len(memory) == 0
        assert fake_redis.values == {}
