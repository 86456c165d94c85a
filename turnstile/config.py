"""
turnstile/config.py

Environment-driven settings for Turnstile.

Design Decisions:
- pydantic-settings reads every field from the environment variable of
  the same name (case-insensitive) or from .env, and validates it, so a
  bad limit fails the process at startup instead of on the first request.
- Each well-known tier has its own pair of variables; further named
  tiers can be added without code changes through RATE_LIMIT_EXTRA_TIERS
  (a JSON object of {name: {max_requests, window_seconds}}).
- Settings are built once in create_app() and handed to services; no
  module reads configuration after that.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict, SettingsError

from turnstile.utils.exceptions import ConfigurationError


class TierLimit(BaseModel):
    """Max requests allowed per window for one tier."""

    model_config = ConfigDict(frozen=True)

    max_requests: int = Field(gt=0)
    window_seconds: int = Field(gt=0)


class Settings(BaseSettings):
    """All runtime configuration for the service."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_ignore_empty=True,
        extra="ignore",
        frozen=True,
    )

    # ── App ───────────────────────────────────────────────────
    app_env: str = "development"
    log_level: str = "INFO"
    cors_origins: str = "http://localhost:3000"
    metrics_enabled: bool = True
    admin_api_key: str = ""

    # ── Redis ─────────────────────────────────────────────────
    redis_url: str = "redis://localhost:6379"
    redis_socket_timeout: float = Field(default=2.0, gt=0)
    redis_strict_startup: bool = False

    # ── Rate limiting ─────────────────────────────────────────
    rate_limit_enabled: bool = True
    rate_limit_key_prefix: str = "rate_limit:"
    rate_limit_short_term_max_requests: int = Field(default=100, gt=0)
    rate_limit_short_term_window_seconds: int = Field(default=60, gt=0)
    rate_limit_long_term_max_requests: int = Field(default=1000, gt=0)
    rate_limit_long_term_window_seconds: int = Field(default=3600, gt=0)
    rate_limit_strict_max_requests: int = Field(default=5, gt=0)
    rate_limit_strict_window_seconds: int = Field(default=60, gt=0)
    # Decoded from JSON by pydantic-settings
    rate_limit_extra_tiers: dict[str, TierLimit] = Field(default_factory=dict)

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"

    @property
    def cors_origins_list(self) -> list[str]:
        """Split comma-separated origins into a list, dropping blanks."""
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @property
    def short_term(self) -> TierLimit:
        return TierLimit(
            max_requests=self.rate_limit_short_term_max_requests,
            window_seconds=self.rate_limit_short_term_window_seconds,
        )

    @property
    def long_term(self) -> TierLimit:
        return TierLimit(
            max_requests=self.rate_limit_long_term_max_requests,
            window_seconds=self.rate_limit_long_term_window_seconds,
        )

    @property
    def strict(self) -> TierLimit:
        return TierLimit(
            max_requests=self.rate_limit_strict_max_requests,
            window_seconds=self.rate_limit_strict_window_seconds,
        )

    @property
    def extra_tiers(self) -> dict[str, TierLimit]:
        return self.rate_limit_extra_tiers


def load_settings(env_file: str | None = ".env", **overrides: object) -> Settings:
    """
    Build settings from the environment (and env_file, if it exists).

    Args:
        env_file: Dotenv file to read; None reads the process environment only.
        overrides: Field values that take precedence over the environment.

    Raises:
        ConfigurationError: If any value is malformed or out of range.
    """
    try:
        return Settings(_env_file=env_file, **overrides)  # type: ignore[call-arg]
    except SettingsError as exc:
        raise ConfigurationError(
            "Could not parse rate limit configuration from the environment.",
            detail=str(exc),
        ) from exc
    except ValidationError as exc:
        raise ConfigurationError(
            "Invalid rate limit configuration.",
            detail=str(exc),
        ) from exc
