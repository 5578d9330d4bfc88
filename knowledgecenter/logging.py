"""Structured logging for the API.

Every log line is a structlog event. Request-scoped fields such as the
correlation id live in ``structlog.contextvars`` and are merged into each event
emitted while the request is being served.
"""

from __future__ import annotations

import logging
import os
import uuid
from typing import Any, Dict, Optional

import structlog
from structlog.contextvars import bind_contextvars, clear_contextvars, get_contextvars

_TRUTHY = {"1", "true", "yes", "on"}

# Substrings of event keys whose string values are masked
_REDACTED_KEYS = ("password", "secret", "token", "authorization", "cookie")


def get_correlation_id() -> Optional[str]:
    return get_contextvars().get("correlation_id")


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Start a fresh log context for a request, reusing the client's id if given."""
    cid = correlation_id or str(uuid.uuid4())
    clear_contextvars()
    bind_contextvars(correlation_id=cid)
    return cid


def _redact_secrets(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask credentials that slip into log context.

    Keys ending in ``_id`` or ``_hash`` (token ids, token hashes) are not secret.
    """
    for key, value in list(event_dict.items()):
        lower_key = key.lower()
        if lower_key.endswith(("_id", "_hash")):
            continue
        if not any(marker in lower_key for marker in _REDACTED_KEYS):
            continue
        if isinstance(value, str) and len(value) > 4:
            event_dict[key] = f"{value[:2]}***{value[-2:]}"
    return event_dict


def configure_logging(
    log_level: Optional[str] = None,
    json_output: Optional[bool] = None,
    development_mode: Optional[bool] = None,
) -> None:
    """Install the structlog pipeline.

    Unset arguments come from ``LOG_LEVEL``, ``LOG_JSON`` and ``LOG_DEV_MODE``.
    Development mode renders coloured console lines instead of JSON.
    """
    if log_level is None:
        log_level = os.getenv("LOG_LEVEL", "INFO")
    if json_output is None:
        json_output = os.getenv("LOG_JSON", "true").lower() in _TRUTHY
    if development_mode is None:
        development_mode = os.getenv("LOG_DEV_MODE", "false").lower() in _TRUTHY

    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _redact_secrets,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if development_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors.extend(
            [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
        )

    level = logging.getLevelName(log_level.upper())
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            level if isinstance(level, int) else logging.INFO
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging()


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
