"""
Async token bucket rate limiting.

One bucket exists per upstream budget. Buckets are plain objects handed to
the fetcher that draws from them, so every budget can be exercised in
isolation with a synthetic clock.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable

from common.logging import get_logger

LOGGER = get_logger(__name__)

Clock = Callable[[], float]
Sleeper = Callable[[float], Awaitable[None]]

# Absorbs float drift in refill arithmetic
_EPSILON = 1e-9


@dataclass(frozen=True)
class RateLimitConfig:
    """Rate limiting configuration for one upstream."""

    requests_per_second: float
    burst: int = 1


class TokenBucket:
    """Token bucket shared by every caller of a single upstream.

    Waiters are served one at a time: the lock is held while sleeping so a
    burst of concurrent callers drains the bucket at exactly the configured
    rate instead of all waking together.
    """

    def __init__(
        self,
        config: RateLimitConfig,
        name: str = "",
        clock: Clock = time.monotonic,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        if config.requests_per_second <= 0:
            raise ValueError("requests_per_second must be positive")
        if config.burst < 1:
            raise ValueError("burst must be at least 1")

        self.config = config
        self.name = name
        self._clock = clock
        self._sleep = sleep

        self._tokens = float(config.burst)
        self._last_refill = clock()
        self._lock = asyncio.Lock()

    @property
    def available(self) -> float:
        """Tokens currently in the bucket (after refilling)."""
        self._refill()
        return self._tokens

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._last_refill)
        self._tokens = min(
            float(self.config.burst),
            self._tokens + elapsed * self.config.requests_per_second,
        )
        self._last_refill = now

    async def acquire(self) -> None:
        """Take one token, waiting until one is available.

        Cancellation while waiting propagates immediately and leaves the
        bucket untouched.
        """
        async with self._lock:
            self._refill()
            while self._tokens < 1 - _EPSILON:
                wait_time = (1 - self._tokens) / self.config.requests_per_second
                LOGGER.debug("Rate limited", limiter=self.name, wait_seconds=round(wait_time, 3))
                await self._sleep(wait_time)
                self._refill()
            self._tokens -= 1


__all__ = ["RateLimitConfig", "TokenBucket"]
