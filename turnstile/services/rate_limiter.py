"""
turnstile/services/rate_limiter.py

Redis-backed fixed-window rate limit engine for Turnstile.

Design Decisions:
- One Redis key per (tier, identity): "rate_limit:<tier>:<identity>".
  The key carries no window timestamp; its TTL is the window. When the
  key expires the next INCR starts a fresh window at 1.
- The TTL is armed only by the request that observes count == 1.
  Re-arming on every hit would keep the window open forever under
  sustained traffic.
- Redis INCR atomicity is the only coordination between workers and
  instances. Nothing is cached or locked in-process.
- Fail open: any Redis error (connection, timeout, bad reply) admits
  the request with a -1/-1 quota. A counter store outage must never
  take the whole API down with it.
- Fixed windows let up to 2x max_requests through across a window
  boundary. That is accepted.
- RateLimitResult is a dataclass (not Pydantic) as it is an internal
  object; only its numbers reach the client, through headers.
"""

from __future__ import annotations

from dataclasses import dataclass, field

import redis.asyncio as aioredis

from turnstile.config import Settings
from turnstile.services.limit_policy import (
    LimitPolicy,
    LimitPolicyRegistry,
    TierRef,
)
from turnstile.utils.exceptions import CounterStoreError
from turnstile.utils.logger import get_logger
from turnstile.utils.metrics import (
    rate_limit_checks_total,
    rate_limit_fail_open_total,
    ttl_arm_failures_total,
)

logger = get_logger(__name__)

DEFAULT_KEY_PREFIX = "rate_limit:"

# ── Result status (internal only, never sent to clients) ──────
STATUS_ENFORCED = "enforced"
STATUS_DISABLED = "disabled"
STATUS_DEGRADED = "degraded"
STATUS_AGGREGATE = "aggregate"


@dataclass(frozen=True)
class RateLimitResult:
    """
    Outcome of one rate limit check.

    Fields:
        allowed: False once the count in the current window exceeds the limit.
        remaining: Requests left in the window; -1 when unknown.
        reset_seconds: Seconds until the window closes; -1 when unknown.
        status: Why the numbers look the way they do (logs/metrics only).
    """

    allowed: bool
    remaining: int
    reset_seconds: int
    status: str = field(default=STATUS_ENFORCED, compare=False)

    @classmethod
    def permitted(cls, remaining: int, reset_seconds: int) -> "RateLimitResult":
        return cls(True, remaining, reset_seconds)

    @classmethod
    def exceeded(cls, remaining: int, reset_seconds: int) -> "RateLimitResult":
        return cls(False, remaining, reset_seconds)

    @classmethod
    def unenforced(cls, status: str) -> "RateLimitResult":
        """Allowed with unknown quota (-1/-1)."""
        return cls(True, -1, -1, status)

    @property
    def is_quota_known(self) -> bool:
        return self.remaining >= 0 and self.reset_seconds > 0


class RateLimiterService:
    """
    Counts requests per identity and tier in Redis and classifies them.

    Usage:
        limiter = RateLimiterService(redis_client, LimitPolicyRegistry.from_settings(settings))
        result = await limiter.check_limit("203.0.113.7", RateLimitTier.SHORT_TERM)
        if not result.allowed:
            ...  # respond 429 with Retry-After: result.reset_seconds
    """

    def __init__(
        self,
        redis_client: aioredis.Redis,
        policies: LimitPolicyRegistry,
        enabled: bool = True,
        key_prefix: str = DEFAULT_KEY_PREFIX,
    ) -> None:
        self._redis = redis_client
        self._policies = policies
        self._enabled = enabled
        self._prefix = key_prefix

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def policies(self) -> LimitPolicyRegistry:
        return self._policies

    # ── Checks ─────────────────────────────────────────────────

    async def check_limit(self, identity: str, tier: TierRef) -> RateLimitResult:
        """
        Count one request against a tier and classify it.

        Args:
            identity: Client IP, optionally suffixed (e.g. '203.0.113.7:login').
            tier: Tier to count against.

        Returns:
            RateLimitResult. Never raises on Redis failure.

        Raises:
            UnknownRateLimitTierError: If the tier is not configured.
        """
        if not self._enabled:
            rate_limit_fail_open_total.labels(reason=STATUS_DISABLED).inc()
            return RateLimitResult.unenforced(STATUS_DISABLED)

        policy = self._policies.resolve(tier)
        key = self._key(identity, policy.tier_name)

        try:
            current = await self._redis.incr(key)
        except Exception as exc:
            logger.error(
                "Rate limit check failed, failing open",
                ip=identity,
                tier=policy.tier_name,
                error=repr(exc),
            )
            return self._degraded(policy)

        if current is None:
            logger.warning("Redis INCR returned no value, failing open", key=key)
            return self._degraded(policy)

        count = int(current)
        if count == 1:
            await self._arm_window(key, policy)

        remaining = max(0, policy.max_requests - count)
        reset_seconds = await self._reset_seconds(key, policy.window_seconds)

        if count > policy.max_requests:
            logger.debug(
                "Rate limit exceeded",
                ip=identity,
                tier=policy.tier_name,
                count=count,
            )
            rate_limit_checks_total.labels(tier=policy.tier_name, outcome="exceeded").inc()
            return RateLimitResult.exceeded(remaining, reset_seconds)

        rate_limit_checks_total.labels(tier=policy.tier_name, outcome="allowed").inc()
        return RateLimitResult.permitted(remaining, reset_seconds)

    async def check_limits(self, identity: str, *tiers: TierRef) -> RateLimitResult:
        """
        Check tiers in order and return the first exceeded result.

        Tiers after the first exceeded one are not counted. When every
        tier passes the aggregate result carries no quota (-1/-1): it
        does not speak for any single tier's counter.
        """
        for tier in tiers:
            result = await self.check_limit(identity, tier)
            if not result.allowed:
                return result
        if not self._enabled:
            return RateLimitResult.unenforced(STATUS_DISABLED)
        return RateLimitResult.unenforced(STATUS_AGGREGATE)

    # ── Administrative ─────────────────────────────────────────

    async def get_current_count(self, identity: str, tier: TierRef) -> int | None:
        """Return the count in the current window, or None if absent/unreadable."""
        key = self._key(identity, self._policies.resolve(tier).tier_name)
        try:
            raw = await self._redis.get(key)
        except Exception as exc:
            logger.error("Failed to read rate limit count", ip=identity, error=repr(exc))
            return None
        if raw is None:
            return None
        try:
            return int(raw)
        except (TypeError, ValueError):
            logger.warning("Non-integer value under rate limit key", key=key)
            return None

    async def reset_limit(self, identity: str, tier: TierRef) -> bool:
        """
        Delete one counter so the identity starts a fresh window.

        Best-effort: errors are logged, never raised.

        Returns:
            True if a key was deleted.
        """
        name = self._policies.resolve(tier).tier_name
        try:
            deleted = await self._redis.delete(self._key(identity, name))
        except Exception as exc:
            logger.error("Failed to reset rate limit", ip=identity, tier=name, error=repr(exc))
            return False
        logger.info("Rate limit reset", ip=identity, tier=name)
        return bool(deleted)

    async def reset_all_limits(self, identity: str) -> int:
        """Reset every configured tier for an identity; returns keys deleted."""
        deleted = 0
        for name in self._policies.tier_names:
            if await self.reset_limit(identity, name):
                deleted += 1
        return deleted

    # ── Internal helpers ───────────────────────────────────────

    def _key(self, identity: str, name: str) -> str:
        return f"{self._prefix}{name}:{identity}"

    def _degraded(self, policy: LimitPolicy) -> RateLimitResult:
        rate_limit_checks_total.labels(tier=policy.tier_name, outcome="fail_open").inc()
        rate_limit_fail_open_total.labels(reason=STATUS_DEGRADED).inc()
        return RateLimitResult.unenforced(STATUS_DEGRADED)

    async def _arm_window(self, key: str, policy: LimitPolicy) -> None:
        # A key left without TTL counts forever; surfaced via metrics, not the caller
        try:
            armed = await self._redis.expire(key, policy.window_seconds)
        except Exception as exc:
            ttl_arm_failures_total.inc()
            logger.error("Failed to set rate limit window expiry", key=key, error=repr(exc))
            return
        if not armed:
            ttl_arm_failures_total.inc()
            logger.error("Redis refused rate limit window expiry", key=key)

    async def _reset_seconds(self, key: str, window_seconds: int) -> int:
        try:
            ttl = await self._redis.ttl(key)
        except Exception:
            return window_seconds
        if ttl is None or int(ttl) <= 0:
            return window_seconds
        return int(ttl)


def build_rate_limiter(redis_client: aioredis.Redis, settings: Settings) -> RateLimiterService:
    """Construct the engine from settings, logging the active limits once."""
    policies = LimitPolicyRegistry.from_settings(settings)
    for policy in policies:
        logger.info(
            "Rate limit tier configured",
            tier=policy.tier_name,
            max_requests=policy.max_requests,
            window_seconds=policy.window_seconds,
        )
    if not settings.rate_limit_enabled:
        logger.warning("Rate limiting is DISABLED; every request will be admitted")
    return RateLimiterService(
        redis_client=redis_client,
        policies=policies,
        enabled=settings.rate_limit_enabled,
        key_prefix=settings.rate_limit_key_prefix,
    )


async def create_redis_client(
    redis_url: str,
    socket_timeout: float = 2.0,
    strict: bool = False,
) -> aioredis.Redis:
    """
    Create a Redis async client and ping it once.

    The client reconnects lazily, so by default an unreachable Redis at
    startup is only logged: checks fail open until it comes back.

    Args:
        redis_url: Redis connection string (e.g. 'redis://localhost:6379').
        socket_timeout: Per-command timeout; a timeout fails the check open.
        strict: Raise instead of logging when the ping fails.

    Raises:
        CounterStoreError: If strict and Redis cannot be reached.
    """
    client: aioredis.Redis = aioredis.from_url(
        redis_url,
        encoding="utf-8",
        decode_responses=True,
        socket_connect_timeout=socket_timeout,
        socket_timeout=socket_timeout,
        health_check_interval=30,
    )
    try:
        await client.ping()
    except Exception as exc:
        logger.error(f"Failed to connect to Redis: {exc}")
        if strict:
            await client.aclose()
            raise CounterStoreError(
                "Could not connect to Redis.",
                detail="Check REDIS_URL in your .env file and ensure Redis is running.",
            ) from exc
        return client

    logger.info("Redis connection established")
    return client
