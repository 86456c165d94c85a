"""
tests/conftest.py

Shared fixtures: an in-memory Redis double with a controllable clock,
test settings, and an httpx client bound to a fully wired app.
"""

from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from turnstile.config import Settings
from turnstile.services.limit_policy import LimitPolicyRegistry
from turnstile.services.rate_limiter import RateLimiterService

ADMIN_KEY = "test-admin-key"


class FakeRedis:
    """
    Just enough of redis.asyncio.Redis for the rate limiter.

    Keys expire against a manual clock; call advance() to move time.
    Every command is recorded in `calls` as (command, key).
    """

    def __init__(self) -> None:
        self.now = 0.0
        self._values: dict[str, int] = {}
        self._expires_at: dict[str, float] = {}
        self.calls: list[tuple[str, str]] = []

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def count(self, command: str) -> int:
        return sum(1 for name, _ in self.calls if name == command)

    def _evict(self, key: str) -> None:
        deadline = self._expires_at.get(key)
        if deadline is not None and deadline <= self.now:
            self._values.pop(key, None)
            self._expires_at.pop(key, None)

    async def incr(self, key: str) -> int:
        self.calls.append(("incr", key))
        self._evict(key)
        self._values[key] = self._values.get(key, 0) + 1
        return self._values[key]

    async def expire(self, key: str, seconds: int) -> bool:
        self.calls.append(("expire", key))
        self._evict(key)
        if key not in self._values:
            return False
        self._expires_at[key] = self.now + seconds
        return True

    async def ttl(self, key: str) -> int:
        self.calls.append(("ttl", key))
        self._evict(key)
        if key not in self._values:
            return -2
        if key not in self._expires_at:
            return -1
        return int(round(self._expires_at[key] - self.now))

    async def get(self, key: str) -> str | None:
        self.calls.append(("get", key))
        self._evict(key)
        value = self._values.get(key)
        return None if value is None else str(value)

    async def delete(self, *keys: str) -> int:
        deleted = 0
        for key in keys:
            self.calls.append(("delete", key))
            self._evict(key)
            if self._values.pop(key, None) is not None:
                deleted += 1
            self._expires_at.pop(key, None)
        return deleted

    async def ping(self) -> bool:
        return True

    async def aclose(self) -> None:
        return None


def make_settings(**overrides: object) -> Settings:
    values: dict[str, object] = {
        "app_env": "test",
        "rate_limit_short_term_max_requests": 100,
        "rate_limit_short_term_window_seconds": 60,
        "rate_limit_long_term_max_requests": 1000,
        "rate_limit_long_term_window_seconds": 3600,
        "rate_limit_strict_max_requests": 5,
        "rate_limit_strict_window_seconds": 60,
        "admin_api_key": ADMIN_KEY,
        "metrics_enabled": False,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)  # type: ignore[call-arg]


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def settings_factory():
    return make_settings


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def limiter(fake_redis, settings) -> RateLimiterService:
    return RateLimiterService(
        redis_client=fake_redis,  # type: ignore[arg-type]
        policies=LimitPolicyRegistry.from_settings(settings),
        enabled=settings.rate_limit_enabled,
        key_prefix=settings.rate_limit_key_prefix,
    )


@pytest.fixture
async def client(fake_redis, settings):
    """httpx client over ASGI with the fake Redis wired in."""
    from turnstile.main import create_app

    app = create_app(settings=settings, redis_client=fake_redis)  # type: ignore[arg-type]
    async with AsyncClient(
        transport=ASGITransport(app=app, client=("198.51.100.10", 54321)),
        base_url="http://test",
    ) as ac:
        yield ac
