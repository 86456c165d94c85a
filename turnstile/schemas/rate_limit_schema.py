"""
turnstile/schemas/rate_limit_schema.py

Pydantic v2 response schemas for Turnstile.

Design Decisions:
- The two 429 bodies differ on purpose: the global middleware sends a
  timestamped body, the per-route decorator a shorter one. Clients
  should rely on `retryAfter` and the Retry-After header, which both
  carry.
- `retryAfter` is camelCase on the wire; Python code uses snake_case
  and serialises with by_alias=True.
- `ErrorResponse` is the generic shape for every other 4xx/5xx.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated

from pydantic import BaseModel, ConfigDict, Field

TOO_MANY_REQUESTS = "Too Many Requests"


# ── Rate limit rejections ──────────────────────────────────────

class RateLimitExceededResponse(BaseModel):
    """429 body sent by the global rate limit middleware."""

    model_config = ConfigDict(populate_by_name=True)

    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    status: int = 429
    error: str = TOO_MANY_REQUESTS
    message: str
    retry_after: Annotated[int, Field(alias="retryAfter")]

    @classmethod
    def for_delay(cls, retry_after: int) -> "RateLimitExceededResponse":
        return cls(
            message=f"Rate limit exceeded. Please try again in {retry_after} seconds.",
            retry_after=retry_after,
        )


class RouteRateLimitExceededResponse(BaseModel):
    """429 body sent by the @rate_limit route decorator."""

    model_config = ConfigDict(populate_by_name=True)

    status: int = 429
    error: str = TOO_MANY_REQUESTS
    message: str
    retry_after: Annotated[int, Field(alias="retryAfter")]

    @classmethod
    def for_delay(cls, retry_after: int) -> "RouteRateLimitExceededResponse":
        return cls(
            message=f"Rate limit exceeded. Try again in {retry_after} seconds.",
            retry_after=retry_after,
        )


# ── Admin ──────────────────────────────────────────────────────

class TierUsage(BaseModel):
    """Current window usage of one tier for one identity."""

    tier: str
    max_requests: int
    window_seconds: int
    current_count: int | None = Field(
        default=None,
        description="Requests counted in the current window; null if no window is open.",
    )


class RateLimitUsageResponse(BaseModel):
    """Response for GET /admin/rate-limits/{ip}."""

    identity: str
    enabled: bool
    tiers: list[TierUsage]


class RateLimitResetResponse(BaseModel):
    """Response for the admin reset endpoints."""

    identity: str
    tiers: list[str]
    keys_deleted: int


# ── Health schemas ─────────────────────────────────────────────

class HealthResponse(BaseModel):
    """Response for GET /health (liveness check)."""

    status: str = "ok"
    service: str = "Turnstile"
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )


class ReadinessResponse(BaseModel):
    """Response for GET /ready."""

    status: str          # "ready" | "degraded"
    redis_connected: bool
    rate_limit_enabled: bool
    details: dict[str, str] = Field(default_factory=dict)
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )


# ── Error schema ───────────────────────────────────────────────

class ErrorResponse(BaseModel):
    """
    Error response for all non-429 4xx/5xx responses.

    Fields:
        error: Machine-readable error code (e.g. 'AUTHENTICATION_FAILED').
        detail: Human-readable explanation safe to surface to the client.
        timestamp: UTC timestamp of the error.
    """

    error: Annotated[
        str,
        Field(description="Machine-readable error code."),
    ]

    detail: Annotated[
        str,
        Field(description="Human-readable error explanation."),
    ]

    timestamp: Annotated[
        datetime,
        Field(
            default_factory=lambda: datetime.now(timezone.utc),
        ),
    ]
