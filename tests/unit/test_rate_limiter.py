"""
tests/unit/test_rate_limiter.py

Unit tests for RateLimiterService.

Strategy:
- Window behaviour runs against the in-memory FakeRedis from
  conftest.py, whose clock is advanced by hand.
- Failure paths use AsyncMock Redis doubles that raise or return None.
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest
from prometheus_client import REGISTRY
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

import turnstile.services.rate_limiter as rate_limiter_module
from turnstile.services.limit_policy import LimitPolicyRegistry, RateLimitTier
from turnstile.services.rate_limiter import (
    STATUS_AGGREGATE,
    STATUS_DEGRADED,
    STATUS_DISABLED,
    RateLimiterService,
    RateLimitResult,
    create_redis_client,
)
from turnstile.utils.exceptions import CounterStoreError, UnknownRateLimitTierError

IP = "203.0.113.7"


def _service(redis, settings, enabled: bool = True) -> RateLimiterService:
    return RateLimiterService(
        redis_client=redis,
        policies=LimitPolicyRegistry.from_settings(settings),
        enabled=enabled,
    )


def _arm_failures() -> float:
    return REGISTRY.get_sample_value("turnstile_ttl_arm_failures_total") or 0.0


@pytest.fixture
def failing_redis():
    r = AsyncMock()
    r.incr = AsyncMock(side_effect=RedisConnectionError("connection refused"))
    r.expire = AsyncMock(return_value=True)
    r.ttl = AsyncMock(return_value=60)
    r.get = AsyncMock(side_effect=RedisConnectionError("connection refused"))
    r.delete = AsyncMock(side_effect=RedisConnectionError("connection refused"))
    return r


class TestFixedWindow:
    @pytest.mark.asyncio
    async def test_requests_up_to_limit_are_allowed(self, limiter):
        results = [await limiter.check_limit(IP, RateLimitTier.STRICT) for _ in range(6)]
        assert [r.allowed for r in results] == [True] * 5 + [False]

    @pytest.mark.asyncio
    async def test_remaining_counts_down_to_zero(self, limiter):
        results = [await limiter.check_limit(IP, RateLimitTier.STRICT) for _ in range(7)]
        assert [r.remaining for r in results] == [4, 3, 2, 1, 0, 0, 0]

    @pytest.mark.asyncio
    async def test_reset_seconds_reports_window_ttl(self, limiter, fake_redis):
        await limiter.check_limit(IP, RateLimitTier.STRICT)
        fake_redis.advance(15)
        result = await limiter.check_limit(IP, RateLimitTier.STRICT)
        assert result.reset_seconds == 45

    @pytest.mark.asyncio
    async def test_ttl_armed_exactly_once_per_window(self, limiter, fake_redis):
        for _ in range(5 + 5):
            await limiter.check_limit(IP, RateLimitTier.STRICT)
        assert fake_redis.count("expire") == 1

    @pytest.mark.asyncio
    async def test_window_expiry_resets_count(self, limiter, fake_redis):
        for _ in range(8):
            await limiter.check_limit(IP, RateLimitTier.STRICT)
        assert not (await limiter.check_limit(IP, RateLimitTier.STRICT)).allowed

        fake_redis.advance(61)
        result = await limiter.check_limit(IP, RateLimitTier.STRICT)

        assert result.allowed
        assert result.remaining == 4
        assert fake_redis.count("expire") == 2

    @pytest.mark.asyncio
    async def test_key_layout(self, limiter, fake_redis):
        await limiter.check_limit(IP, RateLimitTier.SHORT_TERM)
        await limiter.check_limit(f"{IP}:login", RateLimitTier.STRICT)
        incr_keys = [key for name, key in fake_redis.calls if name == "incr"]
        assert incr_keys == [
            f"rate_limit:short_term:{IP}",
            f"rate_limit:strict:{IP}:login",
        ]

    @pytest.mark.asyncio
    async def test_identities_have_separate_counters(self, limiter):
        for _ in range(5):
            await limiter.check_limit(IP, RateLimitTier.STRICT)
        other = await limiter.check_limit("198.51.100.1", RateLimitTier.STRICT)
        assert other.allowed
        assert other.remaining == 4

    @pytest.mark.asyncio
    async def test_missing_ttl_falls_back_to_window(self, settings):
        r = AsyncMock()
        r.incr = AsyncMock(return_value=3)
        r.ttl = AsyncMock(return_value=-1)
        result = await _service(r, settings).check_limit(IP, RateLimitTier.STRICT)
        assert result.reset_seconds == 60
        r.expire.assert_not_called()

    @pytest.mark.asyncio
    async def test_concurrent_checks_count_every_request(self, limiter):
        results = await asyncio.gather(
            *(limiter.check_limit(IP, RateLimitTier.STRICT) for _ in range(10))
        )
        assert sum(r.allowed for r in results) == 5


class TestFailOpen:
    @pytest.mark.asyncio
    async def test_increment_error_fails_open(self, failing_redis, settings):
        result = await _service(failing_redis, settings).check_limit(IP, RateLimitTier.STRICT)
        assert result == RateLimitResult(True, -1, -1)
        assert result.status == STATUS_DEGRADED

    @pytest.mark.asyncio
    async def test_increment_timeout_fails_open(self, settings):
        r = AsyncMock()
        r.incr = AsyncMock(side_effect=RedisTimeoutError("timed out"))
        result = await _service(r, settings).check_limit(IP, RateLimitTier.SHORT_TERM)
        assert (result.allowed, result.remaining, result.reset_seconds) == (True, -1, -1)

    @pytest.mark.asyncio
    async def test_increment_returning_none_fails_open(self, settings):
        r = AsyncMock()
        r.incr = AsyncMock(return_value=None)
        result = await _service(r, settings).check_limit(IP, RateLimitTier.STRICT)
        assert (result.allowed, result.remaining, result.reset_seconds) == (True, -1, -1)

    @pytest.mark.asyncio
    async def test_expire_failure_does_not_change_decision(self, settings):
        r = AsyncMock()
        r.incr = AsyncMock(return_value=1)
        r.expire = AsyncMock(side_effect=RedisConnectionError("gone"))
        r.ttl = AsyncMock(return_value=-1)
        result = await _service(r, settings).check_limit(IP, RateLimitTier.STRICT)
        assert result.allowed
        assert result.remaining == 4
        assert result.reset_seconds == 60

    @pytest.mark.asyncio
    async def test_expire_refused_counts_arm_failure(self, settings):
        r = AsyncMock()
        r.incr = AsyncMock(return_value=1)
        r.expire = AsyncMock(return_value=False)
        r.ttl = AsyncMock(return_value=-1)
        before = _arm_failures()

        result = await _service(r, settings).check_limit(IP, RateLimitTier.STRICT)

        assert _arm_failures() == before + 1
        assert result == RateLimitResult.permitted(4, 60)
        r.expire.assert_awaited_once_with(f"rate_limit:strict:{IP}", 60)

    @pytest.mark.asyncio
    async def test_ttl_read_failure_falls_back_to_window(self, settings):
        r = AsyncMock()
        r.incr = AsyncMock(return_value=6)
        r.ttl = AsyncMock(side_effect=RedisConnectionError("gone"))
        result = await _service(r, settings).check_limit(IP, RateLimitTier.STRICT)
        assert not result.allowed
        assert result.reset_seconds == 60

    @pytest.mark.asyncio
    async def test_disabled_never_touches_redis(self, settings):
        r = AsyncMock()
        service = _service(r, settings, enabled=False)
        result = await service.check_limit(IP, RateLimitTier.STRICT)
        assert result == RateLimitResult(True, -1, -1)
        assert result.status == STATUS_DISABLED
        r.incr.assert_not_called()

    @pytest.mark.asyncio
    async def test_unknown_tier_propagates(self, limiter):
        with pytest.raises(UnknownRateLimitTierError):
            await limiter.check_limit(IP, "no_such_tier")


class TestCheckLimits:
    @pytest.mark.asyncio
    async def test_all_passing_returns_aggregate_sentinel(self, limiter):
        result = await limiter.check_limits(IP, RateLimitTier.SHORT_TERM, RateLimitTier.LONG_TERM)
        assert result == RateLimitResult(True, -1, -1)
        assert result.status == STATUS_AGGREGATE

    @pytest.mark.asyncio
    async def test_short_exceeded_stops_before_long(self, settings_factory):
        settings = settings_factory(rate_limit_short_term_max_requests=2)
        r = AsyncMock()
        r.incr = AsyncMock(return_value=3)
        r.ttl = AsyncMock(return_value=42)
        service = _service(r, settings)

        result = await service.check_limits(IP, RateLimitTier.SHORT_TERM, RateLimitTier.LONG_TERM)

        assert not result.allowed
        assert result.reset_seconds == 42
        r.incr.assert_awaited_once_with(f"rate_limit:short_term:{IP}")

    @pytest.mark.asyncio
    async def test_long_exceeded_after_short_passes(self, settings_factory, fake_redis):
        settings = settings_factory(rate_limit_long_term_max_requests=1)
        service = _service(fake_redis, settings)

        await service.check_limits(IP, RateLimitTier.SHORT_TERM, RateLimitTier.LONG_TERM)
        result = await service.check_limits(IP, RateLimitTier.SHORT_TERM, RateLimitTier.LONG_TERM)

        assert not result.allowed
        assert result.reset_seconds == 3600


class TestAdministrative:
    @pytest.mark.asyncio
    async def test_get_current_count(self, limiter):
        assert await limiter.get_current_count(IP, RateLimitTier.STRICT) is None
        for _ in range(3):
            await limiter.check_limit(IP, RateLimitTier.STRICT)
        assert await limiter.get_current_count(IP, RateLimitTier.STRICT) == 3

    @pytest.mark.asyncio
    async def test_reset_limit_unblocks(self, limiter):
        for _ in range(6):
            await limiter.check_limit(IP, RateLimitTier.STRICT)
        assert await limiter.reset_limit(IP, RateLimitTier.STRICT) is True
        assert (await limiter.check_limit(IP, RateLimitTier.STRICT)).allowed

    @pytest.mark.asyncio
    async def test_reset_all_limits_covers_every_tier(self, limiter, fake_redis):
        await limiter.check_limit(IP, RateLimitTier.SHORT_TERM)
        await limiter.check_limit(IP, RateLimitTier.STRICT)
        assert await limiter.reset_all_limits(IP) == 2
        assert fake_redis.count("delete") == 3

    @pytest.mark.asyncio
    async def test_admin_failures_are_swallowed(self, failing_redis, settings):
        service = _service(failing_redis, settings)
        assert await service.reset_limit(IP, RateLimitTier.STRICT) is False
        assert await service.reset_all_limits(IP) == 0
        assert await service.get_current_count(IP, RateLimitTier.STRICT) is None


class TestCreateRedisClient:
    @pytest.fixture
    def unreachable(self, monkeypatch):
        client = AsyncMock()
        client.ping = AsyncMock(side_effect=RedisConnectionError("connection refused"))
        monkeypatch.setattr(rate_limiter_module.aioredis, "from_url", lambda *a, **kw: client)
        return client

    @pytest.mark.asyncio
    async def test_unreachable_redis_is_tolerated_by_default(self, unreachable):
        client = await create_redis_client("redis://nowhere:6379")
        assert client is unreachable
        unreachable.aclose.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_strict_startup_raises_and_closes(self, unreachable):
        with pytest.raises(CounterStoreError):
            await create_redis_client("redis://nowhere:6379", strict=True)
        unreachable.aclose.assert_awaited_once()
