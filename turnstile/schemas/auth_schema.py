"""
turnstile/schemas/auth_schema.py

Request/response schemas for the demo /auth routes.

The auth routes exist to carry per-route rate limits; token issuance is
a placeholder and these schemas only describe its shape.
"""

from __future__ import annotations

from typing import Annotated

from pydantic import BaseModel, Field, field_validator


class LoginRequest(BaseModel):
    """Payload for POST /auth/login."""

    email: Annotated[str, Field(min_length=3, max_length=254, examples=["ada@example.com"])]
    password: Annotated[str, Field(min_length=1, max_length=128)]

    @field_validator("email", mode="before")
    @classmethod
    def normalise_email(cls, v: str) -> str:
        v = v.strip().lower()
        if "@" not in v:
            raise ValueError("email must contain '@'.")
        return v


class RegisterRequest(LoginRequest):
    """Payload for POST /auth/register."""

    name: Annotated[str, Field(min_length=1, max_length=100)]


class RefreshTokenRequest(BaseModel):
    """Payload for POST /auth/refresh."""

    refresh_token: Annotated[str, Field(min_length=1)]


class TokenResponse(BaseModel):
    """Placeholder token pair."""

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
