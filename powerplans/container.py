"""
ServiceContainer - builds and owns every long-lived service.

Nothing in the package keeps module-level singletons; the HTTP app, the
CLI entry point and the tests each build a container from Settings and
pass it where it is needed.
"""

from datetime import timedelta
from typing import Any

import httpx
from loguru import logger
from redis.asyncio import Redis

from powerplans.datasource.esiid import EsiidSource
from powerplans.datasource.pricing import PricingSource
from powerplans.datastore.engine import Database
from powerplans.datastore.snapshots import SnapshotStore
from powerplans.models import PlanQuery
from powerplans.resolver.fallback import TerritoryFallbackChain
from powerplans.resolver.reference import TerritoryReference
from powerplans.resolver.resolver import TerritoryResolver
from powerplans.services.cache import MemoryCache
from powerplans.services.circuit_breaker import CircuitBreakerConfig, CircuitBreakerRegistry
from powerplans.services.client import UpstreamClient, UpstreamConfig
from powerplans.services.plan_client import PlanDataClient
from powerplans.services.rate_limiter import SlidingWindowRateLimiter
from powerplans.services.redis_tier import RedisCacheTier
from powerplans.services.retry import RetryPolicy
from powerplans.services.tiered_cache import CacheTierManager, CacheTTLPolicy
from powerplans.settings import Settings

PRICING_SERVICE_ID = "pricing"
ESIID_SERVICE_ID = "esiid"

# Territories and filters warmed at startup
WARM_TERRITORY_CODES = ["ONCOR", "CENTERPOINT", "AEP_CENTRAL", "AEP_NORTH"]
WARM_FILTERS: list[dict[str, Any]] = [{}, {"term_months": 12}, {"green_percent": 100}]


class ServiceContainer:
    def __init__(
        self,
        settings: Settings,
        reference: TerritoryReference,
        database: Database,
        cache: CacheTierManager,
        breakers: CircuitBreakerRegistry,
        plans: PlanDataClient,
        resolver: TerritoryResolver,
        zip_limiter: SlidingWindowRateLimiter,
        redis_tier: RedisCacheTier | None = None,
    ):
        self.settings = settings
        self.reference = reference
        self.database = database
        self.cache = cache
        self.breakers = breakers
        self.plans = plans
        self.resolver = resolver
        self.zip_limiter = zip_limiter
        self.redis_tier = redis_tier

    @classmethod
    def build(
        cls,
        settings: Settings,
        *,
        reference: TerritoryReference | None = None,
        pricing_http: httpx.AsyncClient | None = None,
        esiid_http: httpx.AsyncClient | None = None,
        redis_client: Redis | None = None,
    ) -> "ServiceContainer":
        """Wire services from settings. Injected clients replace the defaults."""
        reference = reference or TerritoryReference.load()
        database = Database(settings.database_url, echo=settings.database_echo)

        redis_tier = None
        if redis_client is not None:
            redis_tier = RedisCacheTier(
                redis_client, prefix=settings.redis_key_prefix, debug=settings.cache_debug
            )
        elif settings.redis_url:
            redis_tier = RedisCacheTier.from_url(
                settings.redis_url,
                prefix=settings.redis_key_prefix,
                debug=settings.cache_debug,
            )

        cache = CacheTierManager(
            MemoryCache(
                max_size=settings.cache_max_entries,
                default_ttl=settings.cache_ttl_plans,
                debug=settings.cache_debug,
            ),
            redis_tier,
            CacheTTLPolicy(
                plans=settings.cache_ttl_plans,
                resolution=settings.cache_ttl_resolution,
                reference=settings.cache_ttl_reference,
            ),
        )

        breakers = CircuitBreakerRegistry(
            CircuitBreakerConfig(
                failure_threshold=settings.breaker_failure_threshold,
                reset_timeout=timedelta(seconds=settings.breaker_reset_timeout),
            )
        )
        retry_policy = RetryPolicy(
            max_retries=settings.upstream_max_retries,
            base_delay=settings.retry_base_delay,
            max_delay=settings.retry_max_delay,
        )

        pricing = PricingSource(
            UpstreamClient(
                UpstreamConfig(
                    service_id=PRICING_SERVICE_ID,
                    base_url=settings.pricing_api_url,
                    timeout=settings.pricing_api_timeout,
                    api_key=settings.pricing_api_key,
                ),
                http_client=pricing_http,
            )
        )
        plans = PlanDataClient(
            source=pricing,
            cache=cache,
            breaker=breakers.get(PRICING_SERVICE_ID),
            limiter=SlidingWindowRateLimiter(
                settings.upstream_rate_limit,
                settings.upstream_rate_window,
                name=PRICING_SERVICE_ID,
            ),
            snapshots=SnapshotStore(database),
            retry_policy=retry_policy,
            rate_limit_backoff=RetryPolicy(
                max_retries=settings.rate_limit_backoff_attempts,
                base_delay=min(0.25, settings.retry_base_delay),
                max_delay=settings.retry_max_delay,
            ),
        )

        esiid = EsiidSource(
            UpstreamClient(
                UpstreamConfig(
                    service_id=ESIID_SERVICE_ID,
                    base_url=settings.esiid_api_url,
                    timeout=settings.esiid_api_timeout,
                    api_key=settings.esiid_api_key,
                ),
                http_client=esiid_http,
            )
        )
        resolver = TerritoryResolver(
            reference=reference,
            esiid=esiid,
            breaker=breakers.get(ESIID_SERVICE_ID),
            fallback=TerritoryFallbackChain(reference, settings.default_territory_duns),
            cache=cache,
            retry_policy=RetryPolicy(
                max_retries=1,
                base_delay=settings.retry_base_delay,
                max_delay=settings.retry_max_delay,
            ),
            lookup_timeout=settings.resolution_timeout,
        )

        return cls(
            settings=settings,
            reference=reference,
            database=database,
            cache=cache,
            breakers=breakers,
            plans=plans,
            resolver=resolver,
            zip_limiter=SlidingWindowRateLimiter(
                settings.zip_validation_rate_limit,
                settings.zip_validation_rate_window,
                name="zip_validation",
            ),
            redis_tier=redis_tier,
        )

    async def start(self) -> None:
        await self.database.init()
        if self.redis_tier is not None and not await self.redis_tier.ping():
            logger.warning("Redis unreachable at startup, running on memory cache only")
        await self.plans.snapshots.cleanup(self.settings.snapshot_retention_days)

    def popular_queries(self) -> list[PlanQuery]:
        queries = []
        for code in WARM_TERRITORY_CODES:
            tdsp = self.reference.tdsp(code)
            for filters in WARM_FILTERS:
                queries.append(
                    PlanQuery(
                        territory_id=tdsp.duns,
                        usage=self.settings.default_usage,
                        **filters,
                    )
                )
        return queries

    async def warm_cache(self) -> int:
        return await self.plans.warm_cache(self.popular_queries())

    async def health(self) -> dict[str, Any]:
        plans_health = self.plans.health_check()
        redis_ok = await self.redis_tier.ping() if self.redis_tier is not None else None
        open_circuits = self.breakers.get_open_circuits()
        status = "healthy"
        if open_circuits or redis_ok is False:
            status = "degraded"
        return {
            "status": status,
            "plans": plans_health,
            "circuit_breakers": self.breakers.get_all_status(),
            "open_circuits": open_circuits,
            "rate_limiters": {
                "upstream": plans_health["rate_limiter"],
                "zip_validation": self.zip_limiter.get_stats(),
            },
            "cache": self.cache.stats(),
            "redis": {"configured": self.redis_tier is not None, "reachable": redis_ok},
            "snapshots": await self.plans.snapshots.get_stats(),
            "snapshot_fallbacks": plans_health["snapshot_fallbacks"],
            "resolver": self.resolver.get_stats(),
        }

    async def close(self) -> None:
        await self.plans.close()
        if self.resolver.esiid is not None:
            await self.resolver.esiid.close()
        if self.redis_tier is not None:
            await self.redis_tier.close()
        await self.database.close()
        logger.info("Service container closed")
