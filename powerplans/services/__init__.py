"""
Service layer infrastructure - resilience patterns for upstream API calls.

Provides:
- MemoryCache / RedisCacheTier / CacheTierManager: Tiered caching with TTL
- CircuitBreaker: Stops calling upstreams that keep failing
- SlidingWindowRateLimiter: Per-key request budgets
- RequestDeduplicator: Coalesces identical concurrent requests
- UpstreamClient: httpx client with errors classified at the origin
- retry_with_backoff / call_through_breaker: Retry and breaker gating
"""

from powerplans.services.errors import (
    ErrorKind,
    Severity,
    ServiceError,
    CircuitOpenError,
    SnapshotUnavailable,
)
from powerplans.services.cache import CacheEntry, MemoryCache, TierOrigin
from powerplans.services.redis_tier import RedisCacheTier
from powerplans.services.tiered_cache import CacheTierManager, CacheTTLPolicy, ContentType
from powerplans.services.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitState,
)
from powerplans.services.rate_limiter import RateLimitInfo, SlidingWindowRateLimiter
from powerplans.services.deduplicator import RequestDeduplicator
from powerplans.services.client import UpstreamClient, UpstreamConfig
from powerplans.services.retry import RetryPolicy, call_through_breaker, retry_with_backoff

__all__ = [
    # Errors
    "ErrorKind",
    "Severity",
    "ServiceError",
    "CircuitOpenError",
    "SnapshotUnavailable",
    # Cache
    "CacheEntry",
    "MemoryCache",
    "TierOrigin",
    "RedisCacheTier",
    "CacheTierManager",
    "CacheTTLPolicy",
    "ContentType",
    # Circuit Breaker
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerRegistry",
    "CircuitState",
    # Rate Limiter
    "RateLimitInfo",
    "SlidingWindowRateLimiter",
    # Deduplicator
    "RequestDeduplicator",
    # Client
    "UpstreamClient",
    "UpstreamConfig",
    # Retry
    "RetryPolicy",
    "call_through_breaker",
    "retry_with_backoff",
]
