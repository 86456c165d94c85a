"""
turnstile/middleware/logging_middleware.py

Request/response structured logging middleware.

Logs every request with method, path, status, latency, the resolved
client identity and, when present, the remaining quota. 429s are logged
at WARNING so throttled clients stand out without raising the level of
ordinary traffic.

A correlation ID is generated per request and stored in a ContextVar,
so rate limiter log lines emitted while handling the request share it.
It is echoed back in the X-Request-ID response header.
"""

from __future__ import annotations

import time
import uuid

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from turnstile.services.client_identity import resolve_client_ip
from turnstile.utils.logger import get_logger, request_id_ctx

logger = get_logger(__name__)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Logs structured metadata for every HTTP request."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        token = request_id_ctx.set(request_id)

        start = time.monotonic()
        status_code = 500
        remaining = None

        try:
            response = await call_next(request)
            status_code = response.status_code
            remaining = response.headers.get("X-RateLimit-Remaining")
            response.headers["X-Request-ID"] = request_id
            return response
        except Exception as exc:
            logger.error(f"Unhandled exception: {exc}")
            raise
        finally:
            elapsed_ms = round((time.monotonic() - start) * 1000, 2)
            log = logger.warning if status_code == 429 else logger.info
            log(
                "HTTP Request",
                method=request.method,
                path=request.url.path,
                status=status_code,
                latency_ms=elapsed_ms,
                ip=resolve_client_ip(request),
                rate_limit_remaining=remaining,
                request_id=request_id,
            )
            request_id_ctx.reset(token)
