"""Per-source token bucket rate limiting."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from datetime import datetime, timedelta

from seedflow.features.collection.schemas import RateLimitState
from seedflow.shared.utils import utcnow


class TokenBucketRateLimiter:
    """Token bucket that refills at ``rate_per_second`` up to ``capacity``.

    ``acquire`` waits for a token; ``try_acquire`` never waits. When the
    upstream answers with an explicit limit (HTTP 429), ``block_for`` empties
    the bucket until the given time has passed.
    """

    def __init__(
        self,
        rate_per_second: float,
        capacity: int,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if rate_per_second <= 0:
            raise ValueError("rate_per_second must be positive")
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.rate_per_second = rate_per_second
        self.capacity = capacity
        self._clock = clock
        self._tokens = float(capacity)
        self._updated = clock()
        self._blocked_until = 0.0
        self._upstream_limited_until: datetime | None = None
        self._lock = asyncio.Lock()
        self.throttled_count = 0

    def _refill(self) -> None:
        now = self._clock()
        if now <= self._updated:
            return
        elapsed = now - self._updated
        self._tokens = min(self.capacity, self._tokens + elapsed * self.rate_per_second)
        self._updated = now

    def _wait_time(self) -> float:
        now = self._clock()
        if now < self._blocked_until:
            return self._blocked_until - now
        self._refill()
        if self._tokens >= 1:
            return 0.0
        return (1 - self._tokens) / self.rate_per_second

    def try_acquire(self) -> bool:
        """Take a token if one is available right now."""
        if self._wait_time() > 0:
            self.throttled_count += 1
            return False
        self._tokens -= 1
        return True

    async def acquire(self) -> None:
        """Wait until a token is available and take it."""
        async with self._lock:
            wait = self._wait_time()
            if wait > 0:
                self.throttled_count += 1
            while wait > 0:
                await asyncio.sleep(wait)
                wait = self._wait_time()
            self._tokens -= 1

    def block_for(self, seconds: float) -> None:
        """Refuse tokens for ``seconds`` (upstream asked us to back off)."""
        self._blocked_until = max(self._blocked_until, self._clock() + seconds)
        self._tokens = 0.0
        self._updated = self._blocked_until
        self._upstream_limited_until = utcnow() + timedelta(seconds=seconds)

    def state(self) -> RateLimitState:
        self._refill()
        return RateLimitState(
            rate_per_second=self.rate_per_second,
            capacity=self.capacity,
            available_tokens=round(self._tokens, 3),
            throttled_count=self.throttled_count,
            upstream_limited_until=self._upstream_limited_until,
        )
