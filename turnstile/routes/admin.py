"""
turnstile/routes/admin.py

Manual unblocking of rate limited clients.

  GET    /admin/rate-limits/{ip}         → current count per tier
  DELETE /admin/rate-limits/{ip}         → reset every tier
  DELETE /admin/rate-limits/{ip}/{tier}  → reset one tier

The optional `key` query parameter targets the counters of a per-route
limit (e.g. ?key=login for the login limit of that IP).

All routes require X-Admin-Key (see middleware/auth.py). Resets are
best-effort: a Redis failure is logged and reported as 0 keys deleted.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from turnstile.schemas.rate_limit_schema import (
    ErrorResponse,
    RateLimitResetResponse,
    RateLimitUsageResponse,
    TierUsage,
)
from turnstile.services.rate_limiter import RateLimiterService
from turnstile.utils.logger import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/admin/rate-limits", tags=["Admin"])


def _get_rate_limiter(request: Request) -> RateLimiterService:
    """FastAPI dependency: retrieve the engine from app state."""
    limiter = getattr(request.app.state, "rate_limiter", None)
    if limiter is None:
        raise HTTPException(status_code=503, detail="Rate limiter not initialised.")
    return limiter  # type: ignore[no-any-return]


def _identity(ip: str, key: str | None) -> str:
    return f"{ip}:{key}" if key else ip


@router.get(
    "/{ip}",
    response_model=RateLimitUsageResponse,
    summary="Show rate limit usage for a client",
)
async def get_usage(
    ip: str,
    key: str | None = Query(default=None, description="Per-route key suffix"),
    limiter: RateLimiterService = Depends(_get_rate_limiter),
) -> RateLimitUsageResponse:
    identity = _identity(ip, key)
    tiers = []
    for policy in limiter.policies:
        tiers.append(
            TierUsage(
                tier=policy.tier_name,
                max_requests=policy.max_requests,
                window_seconds=policy.window_seconds,
                current_count=await limiter.get_current_count(identity, policy.tier_name),
            )
        )
    return RateLimitUsageResponse(identity=identity, enabled=limiter.enabled, tiers=tiers)


@router.delete(
    "/{ip}",
    response_model=RateLimitResetResponse,
    summary="Reset every tier for a client",
)
async def reset_all(
    ip: str,
    key: str | None = Query(default=None, description="Per-route key suffix"),
    limiter: RateLimiterService = Depends(_get_rate_limiter),
) -> RateLimitResetResponse:
    identity = _identity(ip, key)
    deleted = await limiter.reset_all_limits(identity)
    logger.info("Admin reset all rate limits", identity=identity, keys_deleted=deleted)
    return RateLimitResetResponse(
        identity=identity,
        tiers=list(limiter.policies.tier_names),
        keys_deleted=deleted,
    )


@router.delete(
    "/{ip}/{tier}",
    response_model=RateLimitResetResponse,
    responses={404: {"model": ErrorResponse, "description": "Unknown tier"}},
    summary="Reset one tier for a client",
)
async def reset_tier(
    ip: str,
    tier: str,
    key: str | None = Query(default=None, description="Per-route key suffix"),
    limiter: RateLimiterService = Depends(_get_rate_limiter),
) -> RateLimitResetResponse:
    # Tier comes from the URL here, so an unknown name is a client error
    if tier not in limiter.policies:
        raise HTTPException(status_code=404, detail=f"Unknown rate limit tier '{tier}'.")

    identity = _identity(ip, key)
    deleted = await limiter.reset_limit(identity, tier)
    logger.info("Admin reset rate limit", identity=identity, tier=tier)
    return RateLimitResetResponse(identity=identity, tiers=[tier], keys_deleted=int(deleted))
