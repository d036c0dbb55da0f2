"""structlog setup shared by every vauth module.

Configured once at import from LOG_LEVEL, LOG_JSON and LOG_DEV_MODE. The
request correlation id lives in structlog's context variables so it rides
along with any other request-scoped bindings.
"""

from __future__ import annotations

import logging
import os
import re
import uuid
from typing import Any, MutableMapping, Optional

import structlog
from structlog.contextvars import bind_contextvars, clear_contextvars, get_contextvars

CORRELATION_KEY = "correlation_id"

# Values never worth keeping, even partially
_MASKED_KEYS = frozenset({"password", "plain_secret", "plain_token", "secret", "authorization"})
# PII keeps a short prefix for debugging
_PARTIAL_KEYS = frozenset({"email", "mobile", "name"})

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


def get_correlation_id() -> Optional[str]:
    return get_contextvars().get(CORRELATION_KEY)


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Start a fresh request context bound to ``correlation_id`` (generated when missing)."""
    cid = correlation_id or uuid.uuid4().hex
    clear_contextvars()
    bind_contextvars(**{CORRELATION_KEY: cid})
    return cid


def _redact(logger: Any, method_name: str, event_dict: MutableMapping[str, Any]):
    for key, value in list(event_dict.items()):
        lowered = key.lower()
        if value is None:
            continue
        if lowered in _MASKED_KEYS:
            event_dict[key] = "***"
        elif lowered in _PARTIAL_KEYS and isinstance(value, str):
            event_dict[key] = value[:2] + "***"
    return event_dict


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


def configure_logging(
    level: str = "INFO", *, json_output: bool = True, development: bool = False
) -> None:
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _redact,
        structlog.processors.StackInfoRenderer(),
    ]
    if development or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=development))
    else:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            _LEVELS.get(level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    development=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


# Fragments that leak backend internals when echoed to clients
_LEAKY_FRAGMENTS = tuple(
    re.compile(pattern)
    for pattern in (
        r"(?i)\b(select|insert|update|delete)\b.{0,80}",
        r"(?i)(connection|server)\s+(to|at)\s+\S+",
        r"(?i)/(?:home|var|etc|usr|opt|tmp|srv)/\S+",
        r"(?i)(password|secret|token|key)\s*[:=]\s*\S+",
        r"(?i)\w+://[^\s@]+@\S+",
    )
)


def sanitize_error_message(message: str, *, replacement: str = "[redacted]", limit: int = 300) -> str:
    """Strip queries, hosts, filesystem paths and credentials from ``message``."""
    if not isinstance(message, str) or not message:
        return "error"
    for fragment in _LEAKY_FRAGMENTS:
        message = fragment.sub(replacement, message)
    return message if len(message) <= limit else message[: limit - 3] + "..."


__all__ = [
    "CORRELATION_KEY",
    "configure_logging",
    "get_correlation_id",
    "get_logger",
    "sanitize_error_message",
    "set_correlation_id",
]
