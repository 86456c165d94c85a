"""
turnstile/middleware/rate_limiter.py

Global per-IP rate limiting middleware.

Every request outside SKIP_PATH_PREFIXES is counted against the
SHORT_TERM and then the LONG_TERM tier. The first exceeded tier ends the
request with a 429; downstream handlers never run.

Design Decisions:
- The allow-list is checked before touching Redis, so probes, docs and
  /metrics never consume quota and never see rate limit headers.
- The engine is read from app.state at dispatch time, not captured at
  construction: Redis is connected in the lifespan, after middleware
  has been built.
- Quota headers are written whenever the result knows its quota. A
  passing two-tier check returns the -1/-1 aggregate, so in practice
  they accompany rejections.
"""

from __future__ import annotations

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from turnstile.schemas.rate_limit_schema import RateLimitExceededResponse
from turnstile.services.client_identity import resolve_client_ip
from turnstile.services.limit_policy import RateLimitTier
from turnstile.services.rate_limiter import RateLimiterService, RateLimitResult
from turnstile.utils.logger import get_logger
from turnstile.utils.metrics import rate_limit_rejections_total

logger = get_logger(__name__)

GLOBAL_TIERS: tuple[RateLimitTier, ...] = (RateLimitTier.SHORT_TERM, RateLimitTier.LONG_TERM)

# Paths that are never rate limited
SKIP_PATH_PREFIXES: tuple[str, ...] = (
    "/health",
    "/ready",
    "/metrics",
    "/actuator",
    "/dev",
    "/docs",
    "/redoc",
    "/openapi.json",
)

HEADER_REMAINING = "X-RateLimit-Remaining"
HEADER_RESET = "X-RateLimit-Reset"
HEADER_RETRY_AFTER = "Retry-After"


def should_skip(path: str) -> bool:
    """True for allow-listed paths."""
    return path == "/" or path.startswith(SKIP_PATH_PREFIXES)


def apply_rate_limit_headers(response: Response, result: RateLimitResult) -> None:
    """Write quota headers; -1/-1 (disabled, degraded, aggregate) writes none."""
    if not result.is_quota_known:
        return
    response.headers[HEADER_REMAINING] = str(result.remaining)
    response.headers[HEADER_RESET] = str(result.reset_seconds)


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Applies the global SHORT_TERM + LONG_TERM limits to every request."""

    def __init__(self, app: object, tiers: tuple[RateLimitTier, ...] = GLOBAL_TIERS) -> None:
        super().__init__(app)  # type: ignore[arg-type]
        self._tiers = tiers

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        if should_skip(request.url.path):
            return await call_next(request)

        limiter: RateLimiterService | None = getattr(request.app.state, "rate_limiter", None)
        if limiter is None:
            logger.warning("Rate limiter not initialised, request admitted", path=request.url.path)
            return await call_next(request)
        if not limiter.enabled:
            return await call_next(request)

        client_ip = resolve_client_ip(request)
        result = await limiter.check_limits(client_ip, *self._tiers)

        if not result.allowed:
            logger.warning(
                "Rate limit exceeded",
                ip=client_ip,
                path=request.url.path,
                retry_after=result.reset_seconds,
            )
            rate_limit_rejections_total.labels(enforcement="global").inc()
            response: Response = JSONResponse(
                status_code=429,
                content=RateLimitExceededResponse.for_delay(result.reset_seconds).model_dump(
                    mode="json", by_alias=True
                ),
                headers={HEADER_RETRY_AFTER: str(result.reset_seconds)},
            )
            apply_rate_limit_headers(response, result)
            return response

        response = await call_next(request)
        apply_rate_limit_headers(response, result)
        return response
