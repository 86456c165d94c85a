"""
turnstile/middleware/auth.py

Admin key authentication for the /admin routes.

Design Decisions:
- Only PROTECTED_PREFIXES require a key; the rest of the API is public
  and governed by rate limits alone.
- The key is passed in the X-Admin-Key header and compared with
  hmac.compare_digest() to prevent timing attacks.
- An empty ADMIN_API_KEY locks the admin routes instead of opening them.
"""

from __future__ import annotations

import hmac

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from turnstile.schemas.rate_limit_schema import ErrorResponse
from turnstile.services.client_identity import resolve_client_ip
from turnstile.utils.exceptions import AuthenticationError
from turnstile.utils.logger import get_logger

logger = get_logger(__name__)

PROTECTED_PREFIXES: tuple[str, ...] = ("/admin",)
ADMIN_KEY_HEADER = "X-Admin-Key"


class AdminKeyMiddleware(BaseHTTPMiddleware):
    """Validates X-Admin-Key on admin endpoints."""

    def __init__(self, app: object, admin_key: str = "") -> None:
        super().__init__(app)  # type: ignore[arg-type]
        self._expected_key = admin_key
        if not self._expected_key:
            logger.warning(
                "ADMIN_API_KEY is not set; /admin endpoints will reject every request."
            )

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        if not request.url.path.startswith(PROTECTED_PREFIXES):
            return await call_next(request)

        provided_key = request.headers.get(ADMIN_KEY_HEADER, "")

        if not self._expected_key or not hmac.compare_digest(
            provided_key.encode(), self._expected_key.encode()
        ):
            logger.warning(
                "Unauthorised admin request",
                path=request.url.path,
                ip=resolve_client_ip(request),
            )
            return JSONResponse(
                status_code=AuthenticationError.http_status,
                content=ErrorResponse(
                    error=AuthenticationError.error_code,
                    detail=f"Missing or invalid {ADMIN_KEY_HEADER} header.",
                ).model_dump(mode="json"),
            )

        return await call_next(request)
