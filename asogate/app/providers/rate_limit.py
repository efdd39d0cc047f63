"""Outbound rate limiting for upstream data sources.

Each named source (``app-store``, ``aso-scores``, ``app-store-connect``) owns
a token bucket. Before every upstream attempt a token is taken; when the
bucket is empty the caller waits just long enough for one token to refill.
Attempts are wrapped in the retry policy, so each retry pays for a token too.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional, TypeVar

from asogate.app.core.logging import get_logger
from asogate.app.providers.retry import RetryPolicy, SleepFunc, get_default_policy

logger = get_logger(__name__)

T = TypeVar("T")

SOURCE_APP_STORE = "app-store"
SOURCE_SCORES = "aso-scores"
SOURCE_CONNECT = "app-store-connect"


@dataclass(frozen=True)
class RateLimitConfig:
    """Allowed requests per rolling window for one source."""

    max_requests: int
    window_seconds: float

    def __post_init__(self) -> None:
        if self.max_requests <= 0:
            raise ValueError("max_requests must be positive")
        if self.window_seconds <= 0:
            raise ValueError("window_seconds must be positive")


@dataclass
class TokenBucket:
    """Token bucket state for one source."""

    tokens: float
    capacity: int
    last_refill: float

    def refill(self, now: float, config: RateLimitConfig) -> None:
        self.capacity = config.max_requests
        elapsed = max(0.0, now - self.last_refill)
        if elapsed > 0:
            refill = elapsed / config.window_seconds * config.max_requests
            self.tokens = min(float(config.max_requests), self.tokens + refill)
            self.last_refill = now


class RateLimiter:
    """Token-bucket limiter keyed by source name.

    Read-refill-decrement runs under a per-source ``asyncio.Lock`` so
    concurrent callers of the same source are never issued more tokens than
    the bucket holds. Waiting for a token happens while holding that lock,
    which queues callers of the same source in arrival order and leaves
    other sources untouched.

    Usage:
        limiter = RateLimiter()
        result = await limiter.run(
            "app-store", RateLimitConfig(20, 60.0), lambda: client.get(url)
        )
    """

    def __init__(
        self,
        retry_policy: Optional[RetryPolicy] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: SleepFunc = asyncio.sleep,
    ):
        self.retry_policy = retry_policy or RetryPolicy()
        self._clock = clock
        self._sleep = sleep
        self._buckets: Dict[str, TokenBucket] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, source: str) -> asyncio.Lock:
        lock = self._locks.get(source)
        if lock is None:
            lock = self._locks[source] = asyncio.Lock()
        return lock

    async def acquire(self, source: str, config: RateLimitConfig) -> float:
        """Take one token for ``source``, waiting if the bucket is empty.

        Returns:
            Seconds spent waiting (0.0 when a token was available).
        """
        async with self._lock_for(source):
            now = self._clock()
            bucket = self._buckets.get(source)
            if bucket is None:
                bucket = TokenBucket(
                    tokens=float(config.max_requests),
                    capacity=config.max_requests,
                    last_refill=now,
                )
                self._buckets[source] = bucket
            else:
                bucket.refill(now, config)

            waited = 0.0
            if bucket.tokens < 1:
                waited = (1 - bucket.tokens) / config.max_requests * config.window_seconds
                logger.debug(
                    f"Rate limit reached for '{source}', waiting {waited:.2f}s",
                    extra={"source": source},
                )
                await self._sleep(waited)
                # The wait bought exactly the missing fraction of a token
                bucket.tokens = 1.0
                bucket.last_refill = now + waited

            bucket.tokens -= 1
            return waited

    async def run(
        self,
        source: str,
        config: RateLimitConfig,
        operation: Callable[[], Awaitable[T]],
    ) -> T:
        """Execute ``operation`` under the source's budget, with retries."""

        async def attempt() -> T:
            await self.acquire(source, config)
            return await operation()

        return await self.retry_policy.execute(
            attempt, sleep=self._sleep, description=source
        )

    def get_bucket(self, source: str) -> Optional[TokenBucket]:
        """Return a copy of the bucket state for ``source``, if any."""
        bucket = self._buckets.get(source)
        if bucket is None:
            return None
        return TokenBucket(
            tokens=bucket.tokens, capacity=bucket.capacity, last_refill=bucket.last_refill
        )

    def reset(self) -> None:
        self._buckets.clear()
        self._locks.clear()


def default_limits() -> Dict[str, RateLimitConfig]:
    """Per-source limits from settings."""
    from asogate.app.core.config import settings

    return {
        SOURCE_APP_STORE: RateLimitConfig(
            settings.rate_limit_app_store_requests,
            settings.rate_limit_app_store_window_seconds,
        ),
        SOURCE_SCORES: RateLimitConfig(
            settings.rate_limit_scores_requests,
            settings.rate_limit_scores_window_seconds,
        ),
        SOURCE_CONNECT: RateLimitConfig(
            settings.rate_limit_connect_requests,
            settings.rate_limit_connect_window_seconds,
        ),
    }


def get_limit(source: str) -> RateLimitConfig:
    limits = default_limits()
    if source not in limits:
        raise KeyError(f"No rate limit configured for source '{source}'")
    return limits[source]


# Global rate limiter instance
_rate_limiter: Optional[RateLimiter] = None


def get_rate_limiter() -> RateLimiter:
    """Get or create the process-wide rate limiter."""
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = RateLimiter(retry_policy=get_default_policy())
    return _rate_limiter


def reset_rate_limiter() -> None:
    """Reset the global rate limiter (for testing)."""
    global _rate_limiter
    _rate_limiter = None



async def with_rate_limit(
    source: str,
    config: RateLimitConfig,
    operation: Callable[[], Awaitable[T]],
) -> T:
    """Run ``operation`` through the process-wide limiter."""
    return await get_rate_limiter().run(source, config, operation)
