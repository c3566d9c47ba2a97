"""
Distributed cache tier backed by Redis.

Entries are stored as JSON envelopes with SETEX so Redis expires them on its
own. Tags are kept as Redis sets of member keys. The tier never raises on
connectivity or payload problems: the failure is logged, counted and the
call behaves like a miss (reads) or a no-op (writes).
"""

import json
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

from loguru import logger
from redis.asyncio import Redis
from redis.exceptions import RedisError

from powerplans.services.cache import CacheEntry, TierOrigin

TIER_ERRORS = (RedisError, OSError, ValueError, TypeError)


@dataclass
class RedisTierStats:
    hits: int = 0
    misses: int = 0
    sets: int = 0
    errors: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        if total == 0:
            return 0.0
        return self.hits / total

    def to_dict(self) -> dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "sets": self.sets,
            "errors": self.errors,
            "hit_rate": round(self.hit_rate, 4),
        }


class RedisCacheTier:
    """Redis tier for the cache manager. Values must be JSON-serializable."""

    def __init__(
        self,
        client: Redis,
        prefix: str = "cmp:plans:",
        clock: Callable[[], float] = time.time,
        debug: bool = False,
    ):
        self._client = client
        self._prefix = prefix
        self._clock = clock
        self._debug = debug
        self._stats = RedisTierStats()

    @classmethod
    def from_url(cls, url: str, **kwargs: Any) -> "RedisCacheTier":
        client = Redis.from_url(url, decode_responses=True)
        return cls(client, **kwargs)

    def now(self) -> float:
        return self._clock()

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    def _tag_key(self, tag: str) -> str:
        return f"{self._prefix}tag:{tag}"

    async def get(self, key: str) -> CacheEntry | None:
        try:
            raw = await self._client.get(self._key(key))
            if raw is None:
                self._stats.misses += 1
                return None
            envelope = json.loads(raw)
            entry = CacheEntry(
                key=key,
                value=envelope["value"],
                written_at=float(envelope["written_at"]),
                ttl=float(envelope["ttl"]),
                tier_origin=TierOrigin.DISTRIBUTED,
                tags=frozenset(envelope.get("tags", [])),
            )
        except (*TIER_ERRORS, KeyError) as e:
            self._stats.errors += 1
            self._stats.misses += 1
            logger.warning(f"[RedisCacheTier] get failed for {key[:50]}: {e}")
            return None

        if entry.is_expired(self._clock()):
            self._stats.misses += 1
            return None

        self._stats.hits += 1
        self._log(f"HIT: {key[:50]}")
        return entry

    async def set(
        self, key: str, value: Any, ttl: float, tags: Iterable[str] = ()
    ) -> bool:
        tags = sorted(set(tags))
        seconds = max(1, int(ttl))
        try:
            payload = json.dumps(
                {
                    "value": value,
                    "written_at": self._clock(),
                    "ttl": ttl,
                    "tags": tags,
                }
            )
            await self._client.setex(self._key(key), seconds, payload)
            for tag in tags:
                await self._client.sadd(self._tag_key(tag), key)
                await self._client.expire(self._tag_key(tag), seconds)
        except TIER_ERRORS as e:
            self._stats.errors += 1
            logger.warning(f"[RedisCacheTier] set failed for {key[:50]}: {e}")
            return False

        self._stats.sets += 1
        self._log(f"SET: {key[:50]} (TTL: {seconds}s)")
        return True

    async def invalidate(self, tag_or_key: str) -> int:
        try:
            members = await self._client.smembers(self._tag_key(tag_or_key))
            keys = {self._key(member) for member in members}
            keys.add(self._key(tag_or_key))
            removed = await self._client.delete(*keys)
            await self._client.delete(self._tag_key(tag_or_key))
        except TIER_ERRORS as e:
            self._stats.errors += 1
            logger.warning(f"[RedisCacheTier] invalidate failed for '{tag_or_key}': {e}")
            return 0
        return int(removed)

    async def clear(self) -> int:
        removed = 0
        try:
            async for redis_key in self._client.scan_iter(match=f"{self._prefix}*"):
                removed += int(await self._client.delete(redis_key))
        except TIER_ERRORS as e:
            self._stats.errors += 1
            logger.warning(f"[RedisCacheTier] clear failed: {e}")
        return removed

    async def ping(self) -> bool:
        try:
            return bool(await self._client.ping())
        except TIER_ERRORS as e:
            logger.warning(f"[RedisCacheTier] ping failed: {e}")
            return False

    async def close(self) -> None:
        await self._client.aclose()

    def get_stats(self) -> RedisTierStats:
        return self._stats

    def _log(self, message: str) -> None:
        if self._debug:
            logger.debug(f"[RedisCacheTier] {message}")
