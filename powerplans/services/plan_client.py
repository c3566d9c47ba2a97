"""
PlanDataClient - resilient access to plan listings.

Order of operations for fetch_plans(query):
1. Cache tiers (memory, then Redis). A hit never touches the upstream.
2. Identical concurrent misses are coalesced into one load.
3. The load takes an upstream rate-limit slot (backing off briefly while
   denied), passes the circuit breaker, and calls the pricing API with
   retry/backoff. Success is written through to the cache tiers and the
   snapshot store.
4. Any non-fatal failure (denied slot, open breaker, exhausted retries)
   is answered from the newest persisted snapshot, flagged degraded.
   Authorization and configuration errors are raised as-is.
"""

import asyncio
import time
from collections.abc import Iterable
from datetime import datetime
from typing import Any

from loguru import logger
from pydantic import TypeAdapter, ValidationError

from powerplans.datasource.pricing import PricingSource
from powerplans.datastore.snapshots import SnapshotStore
from powerplans.models import PlanFetchResult, PlanQuery, PlanRecord, PlanSource
from powerplans.services.circuit_breaker import CircuitBreaker, CircuitState
from powerplans.services.deduplicator import RequestDeduplicator
from powerplans.services.errors import (
    CircuitOpenError,
    ServiceError,
    SnapshotUnavailable,
    is_fatal,
)
from powerplans.services.rate_limiter import SlidingWindowRateLimiter
from powerplans.services.retry import RetryPolicy, Sleep, call_through_breaker
from powerplans.services.tiered_cache import CacheTierManager, ContentType

_plans_adapter = TypeAdapter(list[PlanRecord])

UPSTREAM_LIMIT_KEY = "upstream"


class PlanDataClient:
    """
    Usage:
        client = PlanDataClient(source, cache, breaker, limiter, snapshots)
        result = await client.fetch_plans(PlanQuery(territory_id="1039940674000"))
        if result.degraded:
            ...  # show result.warnings
    """

    def __init__(
        self,
        source: PricingSource,
        cache: CacheTierManager,
        breaker: CircuitBreaker,
        limiter: SlidingWindowRateLimiter,
        snapshots: SnapshotStore | None = None,
        retry_policy: RetryPolicy | None = None,
        rate_limit_backoff: RetryPolicy | None = None,
        deduplicator: RequestDeduplicator | None = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self.source = source
        self.cache = cache
        self.breaker = breaker
        self.limiter = limiter
        self.snapshots = snapshots
        self._retry_policy = retry_policy or RetryPolicy()
        self._rate_limit_backoff = rate_limit_backoff or RetryPolicy(
            max_retries=3, base_delay=0.25, max_delay=2.0
        )
        self._dedup = deduplicator or RequestDeduplicator()
        self._sleep = sleep
        self._background: set[asyncio.Task[Any]] = set()

        self._upstream_calls = 0
        self._snapshot_fallbacks = 0
        self._last_response_ms: float | None = None
        self._last_success_at: datetime | None = None
        self._last_error: str | None = None

    @property
    def service_id(self) -> str:
        return self.source.service_id

    async def fetch_plans(self, query: PlanQuery) -> PlanFetchResult:
        """
        Fetch plans for query through cache, limiter, breaker and upstream.

        Raises:
            ApiUnauthorized / ConfigurationMissing: Fatal, never masked
            SnapshotUnavailable: Upstream unusable and nothing persisted
        """
        key = query.cache_key()
        cached, hit = await self.cache.get(key)
        if hit:
            try:
                plans = _plans_adapter.validate_python(cached)
            except ValidationError as e:
                logger.warning(f"Dropping unreadable cache entry {key[:50]}: {e}")
                await self.cache.invalidate(key)
            else:
                return PlanFetchResult(query=query, plans=plans, source=PlanSource.CACHE)

        return await self._dedup.dedupe(key, lambda: self._load(query))

    async def _load(self, query: PlanQuery) -> PlanFetchResult:
        try:
            await self._acquire_upstream_slot()
            plans = await call_through_breaker(
                self.breaker,
                lambda: self._call_upstream(query),
                self._retry_policy,
                operation_name=f"fetch_plans[{query.territory_id}]",
                sleep=self._sleep,
            )
        except CircuitOpenError as e:
            return await self._from_snapshot(
                query, e, "Live pricing is paused after repeated upstream failures."
            )
        except ServiceError as e:
            if is_fatal(e):
                logger.error(f"[{self.service_id}] Fatal upstream error: {e}")
                raise
            self._last_error = f"{e.code}: {e}"
            return await self._from_snapshot(
                query, e, "Live pricing is temporarily unavailable."
            )

        await self.cache.set(
            query.cache_key(),
            [plan.model_dump(mode="json") for plan in plans],
            tags=query.tags(),
            content=ContentType.PLANS,
        )
        if self.snapshots is not None:
            await self.snapshots.save(query, plans)

        return PlanFetchResult(query=query, plans=plans, source=PlanSource.UPSTREAM)

    async def _call_upstream(self, query: PlanQuery) -> list[PlanRecord]:
        self._upstream_calls += 1
        started = time.perf_counter()
        plans = await self.source.fetch_plans(query)
        self._last_response_ms = round((time.perf_counter() - started) * 1000, 2)
        self._last_success_at = datetime.utcnow()
        return plans

    async def _acquire_upstream_slot(self) -> None:
        """Take a limiter slot, backing off a bounded number of times."""
        policy = self._rate_limit_backoff
        for attempt in range(policy.max_retries):
            if self.limiter.try_acquire(UPSTREAM_LIMIT_KEY):
                return
            await self._sleep(policy.delay_for(attempt))
        self.limiter.acquire(UPSTREAM_LIMIT_KEY)

    async def _from_snapshot(
        self, query: PlanQuery, cause: ServiceError, reason: str
    ) -> PlanFetchResult:
        self._snapshot_fallbacks += 1
        snapshot = await self.snapshots.load(query) if self.snapshots else None
        if snapshot is None:
            raise SnapshotUnavailable(
                f"No plan snapshot for territory {query.territory_id} "
                f"after upstream failure ({cause.code})",
                service_id=self.service_id,
            ) from cause

        warnings = [reason, f"Showing saved plans from {snapshot.captured_at:%Y-%m-%d %H:%M} UTC."]
        if not snapshot.exact:
            warnings.append("Saved plans are from a similar search in your area.")
        logger.warning(
            f"[{self.service_id}] Serving snapshot for {query.territory_id} "
            f"({len(snapshot.plans)} plans): {cause.code}"
        )
        return PlanFetchResult(
            query=query,
            plans=snapshot.plans,
            source=PlanSource.SNAPSHOT,
            degraded=True,
            warnings=warnings,
            captured_at=snapshot.captured_at,
        )

    async def count_plans(self, query: PlanQuery, timeout: float) -> int | None:
        """
        Plan count within timeout, or None.

        The fetch keeps running after a timeout so its result still lands in
        the cache for the next request.
        """
        task = asyncio.ensure_future(self.fetch_plans(query))
        self._background.add(task)
        task.add_done_callback(self._forget_background)
        try:
            result = await asyncio.wait_for(asyncio.shield(task), timeout)
        except asyncio.TimeoutError:
            return None
        except ServiceError as e:
            logger.debug(f"Plan count unavailable for {query.territory_id}: {e.code}")
            return None
        return result.plan_count

    def _forget_background(self, task: asyncio.Task[Any]) -> None:
        self._background.discard(task)
        if not task.cancelled():
            task.exception()

    async def warm_cache(self, queries: Iterable[PlanQuery]) -> int:
        """Fetch queries that are not cached yet. Returns how many were loaded."""
        warmed = 0
        for query in queries:
            try:
                result = await self.fetch_plans(query)
            except ServiceError as e:
                logger.warning(f"Cache warming skipped {query.territory_id}: {e.code}")
                continue
            if result.source == PlanSource.UPSTREAM:
                warmed += 1
        logger.info(f"Cache warming loaded {warmed} queries")
        return warmed

    async def clear_cache(self, tag: str | None = None) -> int:
        """Invalidate one tag/key, or everything when tag is None."""
        if tag:
            return await self.cache.invalidate(tag)
        return await self.cache.clear()

    def get_cache_stats(self) -> dict[str, Any]:
        return self.cache.stats()

    def health_check(self) -> dict[str, Any]:
        breaker_status = self.breaker.get_status()
        state = self.breaker.state
        if state == CircuitState.OPEN:
            status = "unhealthy"
        elif state == CircuitState.HALF_OPEN or not self.source.is_configured():
            status = "degraded"
        else:
            status = "healthy"

        limiter_info = self.limiter.info(UPSTREAM_LIMIT_KEY)
        return {
            "service_id": self.service_id,
            "status": status,
            "configured": self.source.is_configured(),
            "circuit_breaker": breaker_status,
            "rate_limiter": {
                "limit": limiter_info.limit,
                "remaining": limiter_info.remaining,
                **self.limiter.get_stats(),
            },
            "last_response_ms": self._last_response_ms,
            "last_success_at": (
                self._last_success_at.isoformat() if self._last_success_at else None
            ),
            "last_error": self._last_error,
            "upstream_calls": self._upstream_calls,
            "snapshot_fallbacks": self._snapshot_fallbacks,
            "coalescing": self._dedup.get_stats().to_dict(),
            "cache": self.cache.stats(),
        }

    async def close(self) -> None:
        for task in list(self._background):
            task.cancel()
        self._dedup.cancel_all()
        await self.source.close()
