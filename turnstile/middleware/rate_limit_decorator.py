"""
turnstile/middleware/rate_limit_decorator.py

Per-route rate limits, applied on top of the global middleware.

IMPORTANT: a decorated handler MUST take `request: Request` as a
parameter (the client IP is read from it); decorating one that does not
raises ConfigurationError at import time. @rate_limit must sit BELOW
the @router.xxx decorator.

Example:
    @router.post("/login")
    @rate_limit(RateLimitTier.STRICT, key="login")
    async def login(request: Request, body: LoginRequest) -> TokenResponse:
        ...

The counter identity is the client IP, or "<ip>:<key>" when a key is
given, so a strict login limit never shares a counter with the global
tiers or with other routes on the same tier.
"""

from __future__ import annotations

import functools
import inspect
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

from fastapi import Request
from fastapi.responses import JSONResponse

from turnstile.middleware.rate_limiter import (
    HEADER_REMAINING,
    HEADER_RESET,
    HEADER_RETRY_AFTER,
)
from turnstile.schemas.rate_limit_schema import RouteRateLimitExceededResponse
from turnstile.services.client_identity import resolve_client_ip
from turnstile.services.limit_policy import (
    LimitPolicyRegistry,
    RateLimitTier,
    TierRef,
    tier_name,
)
from turnstile.services.rate_limiter import RateLimiterService
from turnstile.utils.exceptions import ConfigurationError
from turnstile.utils.logger import get_logger
from turnstile.utils.metrics import rate_limit_rejections_total

logger = get_logger(__name__)

F = TypeVar("F", bound=Callable[..., Awaitable[Any]])


@dataclass(frozen=True)
class RoutePolicy:
    """Tier and key suffix declared on one handler."""

    handler: str
    tier: TierRef
    key: str = ""


# Every decorated handler, for startup validation
ROUTE_POLICIES: dict[str, RoutePolicy] = {}


def validate_route_policies(policies: LimitPolicyRegistry) -> None:
    """Fail fast if any decorated handler names an unconfigured tier."""
    for route_policy in ROUTE_POLICIES.values():
        policies.validate(route_policy.tier)


def _accepts_request(func: Callable[..., Any]) -> bool:
    """True if the handler declares a parameter FastAPI fills with the Request."""
    for name, param in inspect.signature(func).parameters.items():
        annotation = param.annotation
        if name == "request":
            return True
        if inspect.isclass(annotation) and issubclass(annotation, Request):
            return True
        # String annotations under `from __future__ import annotations`
        if isinstance(annotation, str) and annotation.rsplit(".", 1)[-1] == "Request":
            return True
    return False


def _find_request(args: tuple[Any, ...], kwargs: dict[str, Any]) -> Request | None:
    for value in (*args, *kwargs.values()):
        if isinstance(value, Request):
            return value
    return None


def rate_limit(tier: TierRef = RateLimitTier.SHORT_TERM, key: str = "") -> Callable[[F], F]:
    """
    Limit a single route handler to one tier.

    Args:
        tier: Tier to count against.
        key: Optional suffix appended to the client IP in the counter key.

    Raises:
        ConfigurationError: When decorating a handler without a Request parameter.
    """

    def decorator(func: F) -> F:
        handler_name = f"{func.__module__}.{func.__qualname__}"
        if not _accepts_request(func):
            raise ConfigurationError(
                f"@rate_limit handler '{handler_name}' has no Request parameter.",
                detail="Add `request: Request` to the handler signature so the client IP can be read.",
            )
        ROUTE_POLICIES[handler_name] = RoutePolicy(handler=handler_name, tier=tier, key=key)

        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            request = _find_request(args, kwargs)
            if request is None:
                # Called directly rather than routed (tests, background jobs)
                return await func(*args, **kwargs)

            limiter: RateLimiterService | None = getattr(request.app.state, "rate_limiter", None)
            if limiter is None or not limiter.enabled:
                return await func(*args, **kwargs)

            client_ip = resolve_client_ip(request)
            identity = f"{client_ip}:{key}" if key else client_ip
            result = await limiter.check_limit(identity, tier)

            if not result.allowed:
                logger.warning(
                    "Route rate limit exceeded",
                    ip=client_ip,
                    tier=tier_name(tier),
                    handler=func.__name__,
                )
                rate_limit_rejections_total.labels(enforcement="route").inc()
                return JSONResponse(
                    status_code=429,
                    content=RouteRateLimitExceededResponse.for_delay(result.reset_seconds).model_dump(
                        mode="json", by_alias=True
                    ),
                    headers={
                        HEADER_RETRY_AFTER: str(result.reset_seconds),
                        HEADER_REMAINING: "0",
                        HEADER_RESET: str(result.reset_seconds),
                    },
                )

            return await func(*args, **kwargs)

        return wrapper  # type: ignore[return-value]

    return decorator
