"""
turnstile/routes/auth.py

Demo authentication routes carrying per-route rate limits.

  POST /auth/login     → STRICT tier, key "login"
  POST /auth/register  → STRICT tier, key "register"
  POST /auth/refresh   → SHORT_TERM tier, shared per-IP counter

Token issuance is a placeholder; these routes exist so the strict tier
guards real handlers. Annotations are evaluated eagerly here (no
`from __future__ import annotations`) because FastAPI resolves them
through the @rate_limit wrapper.
"""

import secrets

from fastapi import APIRouter, Request, status

from turnstile.middleware.rate_limit_decorator import rate_limit
from turnstile.schemas.auth_schema import (
    LoginRequest,
    RefreshTokenRequest,
    RegisterRequest,
    TokenResponse,
)
from turnstile.schemas.rate_limit_schema import RouteRateLimitExceededResponse
from turnstile.services.limit_policy import RateLimitTier
from turnstile.utils.logger import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/auth", tags=["Auth"])

_RATE_LIMITED = {429: {"model": RouteRateLimitExceededResponse, "description": "Too many attempts"}}


def _issue_tokens() -> TokenResponse:
    return TokenResponse(
        access_token=secrets.token_urlsafe(32),
        refresh_token=secrets.token_urlsafe(32),
    )


@router.post(
    "/login",
    response_model=TokenResponse,
    responses=_RATE_LIMITED,
    summary="Login",
)
@rate_limit(RateLimitTier.STRICT, key="login")
async def login(request: Request, body: LoginRequest) -> TokenResponse:
    """Authenticate a user (placeholder)."""
    logger.info("Login attempt", email_domain=body.email.rsplit("@", 1)[-1])
    return _issue_tokens()


@router.post(
    "/register",
    response_model=TokenResponse,
    status_code=status.HTTP_201_CREATED,
    responses=_RATE_LIMITED,
    summary="Register",
)
@rate_limit(RateLimitTier.STRICT, key="register")
async def register(request: Request, body: RegisterRequest) -> TokenResponse:
    """Create an account (placeholder)."""
    return _issue_tokens()


@router.post(
    "/refresh",
    response_model=TokenResponse,
    responses=_RATE_LIMITED,
    summary="Refresh token",
)
@rate_limit(RateLimitTier.SHORT_TERM)
async def refresh(request: Request, body: RefreshTokenRequest) -> TokenResponse:
    return _issue_tokens()
