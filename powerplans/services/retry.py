"""
Retry with exponential backoff, and breaker-guarded upstream calls.

Only errors flagged ``retryable`` are retried (timeouts, connection
failures, 5xx, upstream 429). Authorization and configuration errors
surface on the first attempt.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from loguru import logger

from powerplans.services.circuit_breaker import CircuitBreaker, CircuitState
from powerplans.services.errors import (
    ApiBadRequest,
    ApiRateLimited,
    CircuitOpenError,
    ConfigurationMissing,
    ServiceError,
)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 8.0
    multiplier: float = 2.0

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (0-based)."""
        return min(self.max_delay, self.base_delay * self.multiplier**attempt)

    def single_attempt(self) -> "RetryPolicy":
        return RetryPolicy(0, self.base_delay, self.max_delay, self.multiplier)


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    operation_name: str = "operation",
    sleep: Sleep = asyncio.sleep,
) -> T:
    """Run operation, retrying retryable ServiceErrors with exponential backoff."""
    attempt = 0
    while True:
        try:
            return await operation()
        except ServiceError as e:
            if not e.retryable or attempt >= policy.max_retries:
                raise
            delay = policy.delay_for(attempt)
            if isinstance(e, ApiRateLimited) and e.retry_after:
                delay = min(policy.max_delay, max(delay, e.retry_after))
            attempt += 1
            logger.warning(
                f"{operation_name} failed ({e.code}), "
                f"retry {attempt}/{policy.max_retries} in {delay:.2f}s"
            )
            await sleep(delay)


async def call_through_breaker(
    breaker: CircuitBreaker,
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    operation_name: str = "operation",
    sleep: Sleep = asyncio.sleep,
) -> T:
    """
    Gate operation on the breaker and record its outcome.

    Raises CircuitOpenError without running operation when the breaker
    refuses. A half-open probe gets exactly one attempt. Any unclassified
    exception counts as a failure. A cancelled call releases its probe slot
    and records nothing.
    """
    if not breaker.can_request():
        raise CircuitOpenError(breaker.service_id, breaker.get_time_until_reset() or 0)

    if breaker.state == CircuitState.HALF_OPEN:
        policy = policy.single_attempt()

    try:
        result = await retry_with_backoff(operation, policy, operation_name, sleep)
    except ConfigurationMissing:
        # Never reached the upstream
        breaker.release_probe()
        raise
    except ApiBadRequest:
        # The upstream answered; the request was at fault
        breaker.record_success()
        raise
    except Exception:
        breaker.record_failure()
        raise
    except BaseException:
        # Cancelled or interrupted
        breaker.release_probe()
        raise

    breaker.record_success()
    return result
