"""
turnstile/utils/logger.py

Structured logging setup for Turnstile using Loguru.

Design Decisions:
- Loguru over stdlib logging: keyword arguments passed to a log call
  (logger.warning("...", ip=ip, tier=tier)) become structured fields.
- JSON lines outside development so rate-limit events can be queried
  in a log aggregator by ip / tier / status.
- A request correlation ID lives in a ContextVar set by
  RequestLoggingMiddleware, so every line emitted while a request is
  being throttled carries the same ID.
"""

from __future__ import annotations

import json
import os
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any

from loguru import logger

# ── Context variable for per-request correlation ID ──────────
request_id_ctx: ContextVar[str] = ContextVar("request_id", default="")

_RESERVED_EXTRA = {"logger_name"}


def _json_sink(message: Any) -> None:
    """Write one JSON object per record to stdout."""
    record = message.record
    payload: dict[str, Any] = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "level": record["level"].name,
        "logger": record["extra"].get("logger_name", record["name"]),
        "message": record["message"],
        "request_id": request_id_ctx.get(""),
        "function": record["function"],
        "line": record["line"],
    }
    for key, value in record["extra"].items():
        if key not in _RESERVED_EXTRA:
            payload[key] = value
    if record["exception"] is not None:
        payload["exception"] = repr(record["exception"].value)

    sys.stdout.write(json.dumps(payload, default=str) + "\n")
    sys.stdout.flush()


def setup_logging(
    level: str = "INFO",
    log_format: str = "json",
    log_file: str | None = None,
) -> None:
    """
    Configure application-wide logging.

    Args:
        level: Log level string (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        log_format: 'json' for structured output, 'text' for human-readable.
        log_file: Optional file path for persistent log storage.
    """
    logger.remove()

    if log_format == "json":
        logger.add(
            _json_sink,
            level=level.upper(),
            backtrace=False,
            diagnose=False,
        )
    else:
        logger.add(
            sys.stdout,
            format=(
                "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
                "<level>{level: <8}</level> | "
                "<cyan>{extra[logger_name]}</cyan>:<cyan>{line}</cyan> | "
                "<level>{message}</level> | {extra}"
            ),
            level=level.upper(),
            colorize=True,
            backtrace=True,
            diagnose=False,
        )

    if log_file:
        logger.add(
            log_file,
            rotation="100 MB",
            retention="30 days",
            compression="gz",
            level=level.upper(),
            serialize=True,
        )

    # Records emitted without get_logger() still need the field
    logger.configure(extra={"logger_name": "turnstile"})


def get_logger(name: str) -> "logger":  # type: ignore[valid-type]
    """Return a module-specific logger bound with its name."""
    return logger.bind(logger_name=name)


# ── Initialise from environment on import ─────────────────────
_level = os.getenv("LOG_LEVEL", "INFO")
_format = "text" if os.getenv("APP_ENV", "development") == "development" else "json"
setup_logging(level=_level, log_format=_format, log_file=os.getenv("LOG_FILE") or None)
