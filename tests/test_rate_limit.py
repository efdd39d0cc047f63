"""Tests for the outbound token-bucket rate limiter."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from asogate.app.exceptions import UpstreamError
from asogate.app.providers.rate_limit import (
    SOURCE_APP_STORE,
    SOURCE_CONNECT,
    SOURCE_SCORES,
    RateLimitConfig,
    default_limits,
    get_limit,
    get_rate_limiter,
    reset_rate_limiter,
    with_rate_limit,
)


class TestRateLimitConfig:
    """Test limit configuration."""

    def test_defaults_per_source(self):
        limits = default_limits()

        assert limits[SOURCE_APP_STORE] == RateLimitConfig(20, 60.0)
        assert limits[SOURCE_SCORES] == RateLimitConfig(10, 60.0)
        assert limits[SOURCE_CONNECT] == RateLimitConfig(50, 60.0)

    def test_unknown_source(self):
        with pytest.raises(KeyError):
            get_limit("nowhere")

    @pytest.mark.parametrize("max_requests,window", [(0, 60.0), (5, 0), (-1, 10.0)])
    def test_rejects_non_positive_values(self, max_requests, window):
        with pytest.raises(ValueError):
            RateLimitConfig(max_requests, window)


class TestAcquire:
    """Test token accounting."""

    @pytest.mark.asyncio
    async def test_burst_up_to_capacity_without_waiting(self, limiter, clock):
        config = RateLimitConfig(3, 60.0)

        waits = [await limiter.acquire("app-store", config) for _ in range(3)]

        assert waits == [0.0, 0.0, 0.0]
        assert clock.sleeps == []

    @pytest.mark.asyncio
    async def test_call_over_capacity_waits_for_one_token(self, limiter, clock):
        config = RateLimitConfig(3, 60.0)
        for _ in range(3):
            await limiter.acquire("app-store", config)

        waited = await limiter.acquire("app-store", config)

        # One token refills every 60 / 3 = 20 seconds
        assert waited == pytest.approx(20.0)
        assert clock.sleeps == [pytest.approx(20.0)]

    @pytest.mark.asyncio
    async def test_partial_refill_shortens_wait(self, limiter, clock):
        config = RateLimitConfig(3, 60.0)
        for _ in range(3):
            await limiter.acquire("app-store", config)
        clock.advance(15.0)

        waited = await limiter.acquire("app-store", config)

        assert waited == pytest.approx(5.0)

    @pytest.mark.asyncio
    async def test_refill_after_window(self, limiter, clock):
        config = RateLimitConfig(2, 10.0)
        await limiter.acquire("app-store", config)
        await limiter.acquire("app-store", config)
        clock.advance(10.0)

        assert await limiter.acquire("app-store", config) == 0.0
        assert await limiter.acquire("app-store", config) == 0.0

    @pytest.mark.asyncio
    async def test_tokens_never_exceed_capacity(self, limiter, clock):
        config = RateLimitConfig(2, 10.0)
        await limiter.acquire("app-store", config)
        clock.advance(3600.0)
        await limiter.acquire("app-store", config)

        assert limiter.get_bucket("app-store").tokens == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_sources_are_independent(self, limiter, clock):
        config = RateLimitConfig(1, 60.0)
        await limiter.acquire("app-store", config)

        assert await limiter.acquire("aso-scores", config) == 0.0
        assert clock.sleeps == []

    @pytest.mark.asyncio
    async def test_concurrent_callers_are_serialized(self, limiter, clock):
        config = RateLimitConfig(2, 10.0)

        waits = await asyncio.gather(
            *(limiter.acquire("app-store", config) for _ in range(5))
        )

        # Two free tokens, then one every 5 seconds
        assert sorted(waits) == [0.0, 0.0, pytest.approx(5.0), pytest.approx(5.0), pytest.approx(5.0)]
        assert clock.now == pytest.approx(1_015.0)


class TestRun:
    """Test rate-limited execution with retries."""

    @pytest.mark.asyncio
    async def test_returns_operation_result(self, limiter):
        operation = AsyncMock(return_value={"results": []})

        result = await limiter.run("app-store", RateLimitConfig(5, 60.0), operation)

        assert result == {"results": []}
        operation.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_retries_outage_and_spends_a_token_per_attempt(self, limiter, clock):
        operation = AsyncMock(
            side_effect=[
                UpstreamError("aso-scores", 503),
                UpstreamError("aso-scores", 503),
                "ok",
            ]
        )

        result = await limiter.run("aso-scores", RateLimitConfig(10, 60.0), operation)

        assert result == "ok"
        assert operation.call_count == 3
        assert clock.sleeps == [1.0, 2.0]
        # 10 - 3 attempts + (1 s + 2 s) of refill at 10 per minute
        assert limiter.get_bucket("aso-scores").tokens == pytest.approx(7.5)

    @pytest.mark.asyncio
    async def test_fatal_error_propagates_after_one_attempt(self, limiter, clock):
        operation = AsyncMock(side_effect=UpstreamError("app-store", 400, "bad term"))

        with pytest.raises(UpstreamError, match="bad term"):
            await limiter.run("app-store", RateLimitConfig(5, 60.0), operation)

        assert operation.call_count == 1
        assert clock.sleeps == []


class TestGlobalLimiter:
    """Test the process-wide limiter."""

    def test_singleton_and_reset(self):
        first = get_rate_limiter()
        assert get_rate_limiter() is first

        reset_rate_limiter()

        assert get_rate_limiter() is not first

    @pytest.mark.asyncio
    async def test_with_rate_limit_uses_global_limiter(self):
        reset_rate_limiter()
        operation = AsyncMock(return_value="ok")

        result = await with_rate_limit("app-store", RateLimitConfig(5, 60.0), operation)

        assert result == "ok"
        assert operation.call_count == 1
        bucket = get_rate_limiter()._buckets["app-store"]
        assert bucket.capacity == 5
        assert bucket.tokens == pytest.approx(4.0, abs=0.01)
        reset_rate_limiter()
