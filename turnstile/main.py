"""
turnstile/main.py

FastAPI application entry point for Turnstile.

Startup sequence:
  1. Load environment variables from .env
  2. Build and validate Settings (bad limits fail here)
  3. Build the tier registry and validate every tier referenced by the
     global middleware and by @rate_limit handlers
  4. Connect to Redis (lifespan) and attach the rate limiter to app.state
  5. Register middleware (CORS, logging, global rate limit, admin auth)
  6. Mount routers and the Prometheus /metrics endpoint

Shutdown sequence:
  1. Close the Redis connection (only if the lifespan opened it)

Design Decisions:
- Middleware order: Starlette runs the LAST added middleware FIRST. The
  request passes CORS → logging → global rate limit → admin auth →
  route, so 429s are logged and rejected before any auth work happens,
  and per-route limits run only once the global tiers have passed.
- create_app() accepts a ready Redis client. Tests pass a fake and get
  a fully wired app without running the lifespan.
"""

from __future__ import annotations

import os
from contextlib import asynccontextmanager
from typing import AsyncIterator

from dotenv import load_dotenv

# Load .env BEFORE importing anything that reads env vars
load_dotenv()

import redis.asyncio as aioredis
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from starlette.exceptions import HTTPException as StarletteHTTPException

from turnstile.config import Settings, load_settings
from turnstile.middleware.auth import AdminKeyMiddleware
from turnstile.middleware.logging_middleware import RequestLoggingMiddleware
from turnstile.middleware.rate_limit_decorator import validate_route_policies
from turnstile.middleware.rate_limiter import GLOBAL_TIERS, SKIP_PATH_PREFIXES, RateLimitMiddleware
from turnstile.routes.admin import router as admin_router
from turnstile.routes.auth import router as auth_router
from turnstile.routes.health import router as health_router
from turnstile.schemas.rate_limit_schema import ErrorResponse
from turnstile.services.limit_policy import LimitPolicyRegistry
from turnstile.services.rate_limiter import build_rate_limiter, create_redis_client
from turnstile.utils.exceptions import TurnstileBaseError
from turnstile.utils.logger import get_logger, setup_logging

logger = get_logger(__name__)


def _attach_rate_limiter(app: FastAPI, redis_client: aioredis.Redis, settings: Settings) -> None:
    app.state.redis = redis_client
    app.state.rate_limiter = build_rate_limiter(redis_client, settings)


# ── FastAPI app factory ────────────────────────────────────────

def create_app(
    settings: Settings | None = None,
    redis_client: aioredis.Redis | None = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        settings: Defaults to load_settings().
        redis_client: Pre-built client; when omitted the lifespan
            connects to settings.redis_url.

    Raises:
        ConfigurationError: On invalid settings or unknown tiers.
    """
    settings = settings or load_settings()

    # Tier names are programming errors; surface them before serving
    policies = LimitPolicyRegistry.from_settings(settings)
    policies.validate(*GLOBAL_TIERS)
    validate_route_policies(policies)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info("🚀 Turnstile starting up...")
        owns_client = getattr(app.state, "redis", None) is None
        if owns_client:
            client = await create_redis_client(
                settings.redis_url,
                socket_timeout=settings.redis_socket_timeout,
                strict=settings.redis_strict_startup,
            )
            _attach_rate_limiter(app, client, settings)
        logger.info("✅ Turnstile is ready to serve requests")

        yield

        logger.info("🛑 Turnstile shutting down...")
        if owns_client:
            await app.state.redis.aclose()
        logger.info("Shutdown complete")

    app = FastAPI(
        title="Turnstile API",
        description=(
            "Per-IP rate limiting backed by Redis.\n\n"
            "Every endpoint except `/health`, `/ready`, `/metrics` and the docs "
            "is subject to the global short-term and long-term limits; "
            "`/auth/*` endpoints add a strict per-route limit."
        ),
        version="1.0.0",
        docs_url=None if settings.is_production else "/docs",
        redoc_url=None if settings.is_production else "/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    if redis_client is not None:
        _attach_rate_limiter(app, redis_client, settings)

    # ── Middleware (last added runs first) ─────────────────────
    app.add_middleware(AdminKeyMiddleware, admin_key=settings.admin_api_key)
    app.add_middleware(RateLimitMiddleware)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["Content-Type", "Authorization", "X-Admin-Key"],
        expose_headers=["X-RateLimit-Remaining", "X-RateLimit-Reset", "Retry-After"],
    )

    # ── Exception handlers ─────────────────────────────────────
    @app.exception_handler(TurnstileBaseError)
    async def turnstile_error_handler(request: Request, exc: TurnstileBaseError) -> JSONResponse:
        logger.error(f"{exc.error_code}: {exc.message}", path=request.url.path)
        return JSONResponse(
            status_code=exc.http_status,
            content=ErrorResponse(
                error=exc.error_code,
                detail=exc.message,
            ).model_dump(mode="json"),
        )

    @app.exception_handler(404)
    async def not_found_handler(request: Request, exc: Exception) -> JSONResponse:
        detail = f"The path '{request.url.path}' was not found."
        if isinstance(exc, StarletteHTTPException) and exc.detail != "Not Found":
            detail = str(exc.detail)
        return JSONResponse(
            status_code=404,
            content=ErrorResponse(error="NOT_FOUND", detail=detail).model_dump(mode="json"),
        )

    @app.exception_handler(500)
    async def internal_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error(f"Internal server error: {exc}")
        return JSONResponse(
            status_code=500,
            content=ErrorResponse(
                error="INTERNAL_SERVER_ERROR",
                detail="An unexpected error occurred. Please try again.",
            ).model_dump(mode="json"),
        )

    # ── Routers ────────────────────────────────────────────────
    app.include_router(health_router)
    app.include_router(auth_router)
    app.include_router(admin_router)

    # ── Prometheus metrics ─────────────────────────────────────
    if settings.metrics_enabled:
        Instrumentator(
            should_group_status_codes=True,
            should_ignore_untemplated=True,
            should_respect_env_var=False,
            excluded_handlers=[f"{prefix}.*" for prefix in SKIP_PATH_PREFIXES],
        ).instrument(app).expose(app, endpoint="/metrics", include_in_schema=False)

    logger.info("FastAPI application created", env=settings.app_env)
    return app


def _create_default_app() -> FastAPI:
    settings = load_settings()
    setup_logging(
        level=settings.log_level,
        log_format="text" if settings.app_env == "development" else "json",
        log_file=os.environ.get("LOG_FILE") or None,
    )
    return create_app(settings)


# ── Application instance ───────────────────────────────────────
# Imported by uvicorn: uvicorn turnstile.main:app
app = _create_default_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "turnstile.main:app",
        host="0.0.0.0",
        port=int(os.environ.get("PORT", "8000")),
        reload=os.environ.get("APP_ENV", "development") == "development",
        log_level=os.environ.get("LOG_LEVEL", "info").lower(),
    )
