"""
RequestDeduplicator - Coalesces identical concurrent requests.

When multiple callers request the same key simultaneously, only one
underlying task runs and every caller receives its result (or its error).

Cancellation is per subscriber: a cancelled caller stops waiting but the
shared task keeps running for the others. Only when the last subscriber
goes away is the shared task itself cancelled.
"""

import asyncio
from typing import Any, Awaitable, Callable, TypeVar

from loguru import logger

T = TypeVar("T")


class _Flight:
    __slots__ = ("task", "subscribers")

    def __init__(self, task: asyncio.Task[Any]):
        self.task = task
        self.subscribers = 0


class RequestDeduplicator:
    """
    Deduplicates concurrent async requests.

    Usage:
        dedup = RequestDeduplicator()

        async def fetch_plans(query):
            return await dedup.dedupe(
                key=query.cache_key(),
                request_fn=lambda: load(query),
            )
    """

    def __init__(self, debug: bool = False):
        self._in_flight: dict[str, _Flight] = {}
        self._debug = debug
        self._stats = DeduplicatorStats()

    async def dedupe(
        self,
        key: str,
        request_fn: Callable[[], Awaitable[T]],
    ) -> T:
        """
        Execute request with deduplication.

        If a request with the same key is already in flight,
        wait for and return its result instead of making a new request.

        Args:
            key: Unique identifier for this request
            request_fn: Async function to execute if no duplicate exists

        Returns:
            Result from request_fn (either fresh or from in-flight request)
        """
        flight = self._in_flight.get(key)
        if flight is None or flight.task.done():
            self._stats.total += 1
            self._log(f"NEW: Starting request: {key[:50]}")
            task = asyncio.ensure_future(request_fn())
            flight = _Flight(task)
            self._in_flight[key] = flight
            task.add_done_callback(lambda t, k=key, f=flight: self._cleanup(k, f))
        else:
            self._stats.deduplicated += 1
            self._log(f"DEDUPE: Waiting for in-flight request: {key[:50]}")

        flight.subscribers += 1
        try:
            return await asyncio.shield(flight.task)
        finally:
            flight.subscribers -= 1
            if flight.subscribers == 0 and not flight.task.done():
                self._stats.cancelled += 1
                self._log(f"CANCEL: Last subscriber left: {key[:50]}")
                flight.task.cancel()

    def _cleanup(self, key: str, flight: _Flight) -> None:
        if self._in_flight.get(key) is flight:
            del self._in_flight[key]
        if not flight.task.cancelled():
            # Mark the outcome as retrieved even if every subscriber left
            flight.task.exception()
        self._log(f"DONE: Request completed: {key[:50]}")

    def cancel(self, key: str) -> bool:
        """Cancel an in-flight request for every subscriber."""
        flight = self._in_flight.pop(key, None)
        if flight is None:
            return False
        flight.task.cancel()
        self._log(f"CANCEL: Request cancelled: {key[:50]}")
        return True

    def cancel_all(self) -> int:
        """Cancel all in-flight requests."""
        flights = list(self._in_flight.values())
        self._in_flight.clear()
        for flight in flights:
            flight.task.cancel()
        if flights:
            self._log(f"CANCEL_ALL: {len(flights)} requests cancelled")
        return len(flights)

    def get_in_flight_count(self) -> int:
        """Get number of in-flight requests."""
        return len(self._in_flight)

    def get_subscriber_count(self, key: str) -> int:
        flight = self._in_flight.get(key)
        return flight.subscribers if flight else 0

    def get_stats(self) -> "DeduplicatorStats":
        """Get deduplication statistics."""
        self._stats.in_flight = len(self._in_flight)
        return self._stats

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[Deduplicator] {message}")


class DeduplicatorStats:
    """Statistics for request deduplication."""

    def __init__(self):
        self.total: int = 0  # Underlying requests started
        self.deduplicated: int = 0  # Callers that joined an in-flight request
        self.cancelled: int = 0  # Shared requests abandoned by all subscribers
        self.in_flight: int = 0

    @property
    def dedup_rate(self) -> float:
        """Calculate deduplication rate."""
        total = self.total + self.deduplicated
        if total == 0:
            return 0.0
        return self.deduplicated / total

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "total_requests": self.total,
            "deduplicated": self.deduplicated,
            "cancelled": self.cancelled,
            "in_flight": self.in_flight,
            "dedup_rate": round(self.dedup_rate, 4),
        }
