"""
turnstile/services/client_identity.py

Client IP resolution used to partition rate limit counters.

Proxy headers are checked in PROXY_HEADERS order. The first one that is
present, non-empty and not the literal "unknown" wins, and its first
comma-separated hop is taken as the client address. With no usable
header the transport peer address is used.

These headers are client-supplied. The resolved identity can only be
trusted when the service sits behind a reverse proxy that overwrites
them; exposed directly, a client can pick its own bucket.
"""

from __future__ import annotations

from fastapi import Request
from slowapi.util import get_remote_address

PROXY_HEADERS: tuple[str, ...] = (
    "X-Forwarded-For",
    "X-Real-IP",
    "Proxy-Client-IP",
    "WL-Proxy-Client-IP",
    "HTTP_X_FORWARDED_FOR",
)


def resolve_client_ip(request: Request) -> str:
    """Return the client identity for a request."""
    for header in PROXY_HEADERS:
        value = request.headers.get(header)
        if not value or value.strip().lower() == "unknown":
            continue
        first_hop = value.split(",")[0].strip()
        if first_hop:
            return first_hop

    return get_remote_address(request)
