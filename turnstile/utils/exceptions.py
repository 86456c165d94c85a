"""
turnstile/utils/exceptions.py

Custom exception hierarchy for Turnstile.

Design Decisions:
- Every custom exception inherits from TurnstileBaseError and carries
  a machine-readable `error_code` plus the HTTP status the app-level
  handler maps it to.
- Redis failures inside the rate limit engine are NOT raised as
  exceptions: the engine fails open. CounterStoreError only surfaces
  from startup code (connecting to Redis) where failing loudly is right.
- An unknown tier is a programming error and is allowed to propagate.
"""

from __future__ import annotations

from typing import Any


class TurnstileBaseError(Exception):
    """Root exception for all Turnstile errors."""

    error_code: str = "TURNSTILE_ERROR"
    http_status: int = 500

    def __init__(self, message: str, detail: str = "", **kwargs: Any) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail
        self.extra = kwargs


# ── Configuration Errors ──────────────────────────────────────

class ConfigurationError(TurnstileBaseError):
    """Raised when settings are missing or invalid at startup."""

    error_code = "CONFIGURATION_ERROR"
    http_status = 500


class UnknownRateLimitTierError(ConfigurationError):
    """Raised when code asks for a tier that is not configured."""

    error_code = "UNKNOWN_RATE_LIMIT_TIER"
    http_status = 500

    def __init__(self, tier_name: str, known: tuple[str, ...] = ()) -> None:
        super().__init__(
            f"Unknown rate limit tier '{tier_name}'.",
            detail=f"Configured tiers: {', '.join(known) or '<none>'}",
            tier=tier_name,
        )
        self.tier_name = tier_name


# ── Store Errors ──────────────────────────────────────────────

class CounterStoreError(TurnstileBaseError):
    """Raised when the Redis counter store cannot be reached at startup."""

    error_code = "COUNTER_STORE_UNAVAILABLE"
    http_status = 503


# ── Auth Errors ───────────────────────────────────────────────

class AuthenticationError(TurnstileBaseError):
    """Raised when an admin key is missing or invalid."""

    error_code = "AUTHENTICATION_FAILED"
    http_status = 401
