"""
turnstile/routes/health.py

Health and readiness check endpoints.

GET /health  → Liveness probe: is the process running?
GET /ready   → Readiness probe: can we reach Redis?

Both paths are on the rate limit allow-list.

Design Decisions:
- Readiness reports "degraded" with 503 when Redis is unreachable, but
  the API itself keeps serving: rate limit checks fail open. The 503
  lets an orchestrator or dashboard notice that limits are not being
  enforced.
"""

from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from turnstile.schemas.rate_limit_schema import HealthResponse, ReadinessResponse
from turnstile.utils.logger import get_logger

logger = get_logger(__name__)

router = APIRouter(tags=["Health"])


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Liveness Check",
)
async def health_check() -> HealthResponse:
    """Kubernetes liveness probe endpoint."""
    return HealthResponse()


@router.get(
    "/ready",
    response_model=ReadinessResponse,
    summary="Readiness Check",
    description="Returns 503 if Redis is unreachable (rate limits are then not enforced).",
)
async def readiness_check(request: Request) -> JSONResponse:
    """Kubernetes readiness probe endpoint."""
    checks: dict[str, str] = {}
    redis_ok = False

    limiter = getattr(request.app.state, "rate_limiter", None)
    enabled = bool(limiter and limiter.enabled)
    client = getattr(request.app.state, "redis", None)

    if client is None:
        checks["redis"] = "not initialised"
    else:
        try:
            await client.ping()
            redis_ok = True
            checks["redis"] = "connected"
        except Exception as exc:
            checks["redis"] = f"unreachable: {exc}"
            logger.warning("Readiness: Redis unreachable")

    return JSONResponse(
        status_code=200 if redis_ok else 503,
        content=ReadinessResponse(
            status="ready" if redis_ok else "degraded",
            redis_connected=redis_ok,
            rate_limit_enabled=enabled,
            details=checks,
        ).model_dump(mode="json"),
    )
