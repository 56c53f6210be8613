from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Per-request correlation id, bound by the HTTP middleware
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def get_correlation_id() -> Optional[str]:
    """Get the current correlation ID for request tracing."""
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set or generate a correlation ID for the current request context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Processor to add correlation_id to all log entries."""
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


# Field names whose values are credentials or contact details
_REDACTED_KEY_PARTS = (
    "password",
    "secret",
    "token",
    "api_key",
    "authorization",
    "cookie",
    "email",
)
# Credentials that can leak into free-text fields such as ``error``
_INLINE_CREDENTIALS = (
    re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._~+/=-]+"),
    re.compile(r"\bguest_\d{10,}_[A-Za-z0-9_-]+"),
)


def _mask(value: str) -> str:
    if len(value) <= 4:
        return "***"
    return value[:2] + "***" + value[-2:]


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask credential-named fields and scrub bearer or guest tokens from text."""
    for key, value in list(event_dict.items()):
        if not isinstance(value, str):
            continue
        normalized = key.lower().replace("-", "_")
        if any(part in normalized for part in _REDACTED_KEY_PARTS):
            event_dict[key] = _mask(value)
            continue
        for pattern in _INLINE_CREDENTIALS:
            value = pattern.sub("[redacted]", value)
        event_dict[key] = value
    return event_dict


def _truthy(raw: Optional[str]) -> bool:
    return (raw or "").strip().lower() in {"1", "true", "yes", "on"}


def configure_logging(
    log_level: Optional[str] = None, *, console: Optional[bool] = None
) -> None:
    """Install the structlog pipeline.

    ``LOG_LEVEL`` picks the threshold. JSON lines are the default; set
    ``LOG_DEV_MODE`` (or ``LOG_JSON=false``) for colored console output.
    """
    level_name = (log_level or os.getenv("LOG_LEVEL", "INFO")).upper()
    if console is None:
        console = _truthy(os.getenv("LOG_DEV_MODE")) or not _truthy(
            os.getenv("LOG_JSON", "true")
        )

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_pii,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if console:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors.extend(
            [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level_name, logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging()


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a configured logger with correlation ID support."""
    return structlog.get_logger(name)


# Patterns that indicate internals in error messages returned to clients
_SENSITIVE_ERROR_PATTERNS = [
    r'(?i)(sql|query|select|insert|update|delete|where|from|join)\s+.{0,50}',
    r'(?i)database\s+error',
    r'(?i)connection\s+.*\s+(failed|refused|timeout)',
    r'(?i)/(?:home|var|etc|usr|opt|tmp|srv)/[^\s]+',
    r'(?i)[a-z]:\\[^\s]+',
    r'(?i)(password|secret|token|key|credential|api.?key)\s*[:=]\s*[^\s]+',
    r'(?i)traceback\s*\(most recent call last\)',
    r'(?i)_internal_|_private_|__[a-z]+__',
]

_SENSITIVE_PATTERNS_COMPILED = [re.compile(p) for p in _SENSITIVE_ERROR_PATTERNS]


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Scrub an error message before it is returned to a client.

    Removes bearer and guest tokens, SQL fragments, filesystem paths, inline
    credentials and stack trace markers, then caps the length at 500
    characters.
    """
    if not error or not isinstance(error, str):
        return "An error occurred"

    result = error
    for pattern in (*_INLINE_CREDENTIALS, *_SENSITIVE_PATTERNS_COMPILED):
        result = pattern.sub(replacement, result)

    if len(result) > 500:
        result = result[:497] + "..."

    return result
