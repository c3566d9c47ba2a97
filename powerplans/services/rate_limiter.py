"""
Sliding-window rate limiter keyed by caller.

Each key keeps the timestamps of its admitted requests; a request is
admitted while fewer than ``limit`` timestamps fall inside the trailing
window. Denial is reported, never waited out: callers decide whether to
back off, degrade or reject.
"""

import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from powerplans.services.errors import ApiRateLimited


@dataclass(frozen=True)
class RateLimitInfo:
    limit: int
    remaining: int
    reset_at: float  # clock value at which the oldest admitted request leaves the window

    def retry_after(self, now: float) -> float:
        return max(0.0, self.reset_at - now) if self.remaining == 0 else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {"limit": self.limit, "remaining": self.remaining, "reset_at": self.reset_at}


class SlidingWindowRateLimiter:
    """
    Usage:
        limiter = SlidingWindowRateLimiter(limit=60, window=60.0)

        if not limiter.try_acquire("upstream"):
            ...  # back off or degrade
    """

    def __init__(
        self,
        limit: int,
        window: float,
        clock: Callable[[], float] = time.monotonic,
        name: str = "rate_limiter",
    ):
        if limit < 1 or window <= 0:
            raise ValueError("limit must be >= 1 and window must be positive")
        self.limit = limit
        self.window = window
        self.name = name
        self._clock = clock
        self._events: dict[str, deque[float]] = {}
        self._denied = 0
        self._last_sweep = clock()
        self._lock = threading.Lock()

    def _prune(self, key: str, now: float) -> deque[float]:
        """Drop expired timestamps for key. Idle keys are forgotten."""
        events = self._events.get(key)
        if events is None:
            return deque()
        cutoff = now - self.window
        while events and events[0] <= cutoff:
            events.popleft()
        if not events:
            del self._events[key]
        return events

    def _sweep(self, now: float, force: bool = False) -> None:
        # At most once per window, so callers that never return are dropped
        if not force and now - self._last_sweep < self.window:
            return
        for key in list(self._events):
            self._prune(key, now)
        self._last_sweep = now

    def try_acquire(self, key: str = "default") -> bool:
        """Admit one request for key if the window has room."""
        with self._lock:
            now = self._clock()
            self._sweep(now)
            events = self._prune(key, now)
            if len(events) >= self.limit:
                self._denied += 1
                return False
            events.append(now)
            self._events[key] = events
            return True

    def acquire(self, key: str = "default") -> None:
        """Admit one request or raise ApiRateLimited with a retry hint."""
        if not self.try_acquire(key):
            info = self.info(key)
            raise ApiRateLimited(self.name, retry_after=info.retry_after(self._clock()))

    def info(self, key: str = "default") -> RateLimitInfo:
        with self._lock:
            now = self._clock()
            events = self._prune(key, now)
            reset_at = events[0] + self.window if events else now
            return RateLimitInfo(
                limit=self.limit,
                remaining=max(0, self.limit - len(events)),
                reset_at=reset_at,
            )

    def reset(self, key: str | None = None) -> None:
        with self._lock:
            if key is None:
                self._events.clear()
            else:
                self._events.pop(key, None)

    def get_stats(self) -> dict[str, Any]:
        with self._lock:
            self._sweep(self._clock(), force=True)
        return {
            "limit": self.limit,
            "window_seconds": self.window,
            "tracked_keys": len(self._events),
            "denied": self._denied,
        }
