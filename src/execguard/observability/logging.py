"""Structured logging setup for execguard components, built on structlog."""

from __future__ import annotations

import logging
import re
import sys
from collections.abc import Iterator, Mapping, MutableMapping
from contextlib import contextmanager
from typing import Any, Final

import structlog

_REDACTED_VALUE: Final[str] = "***REDACTED***"

_SENSITIVE_KEY_TERMS: Final[tuple[str, ...]] = (
    "secret",
    "token",
    "password",
    "passphrase",
    "api_key",
    "apikey",
    "authorization",
    "credential",
    "cookie",
    "private_key",
)

_SENSITIVE_ASSIGNMENT_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"(?i)\b(api[_-]?key|token|password|secret|authorization)\b\s*([:=])\s*([^\s,;]+)"
)
_BEARER_TOKEN_PATTERN: Final[re.Pattern[str]] = re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._~+/-]+=*")
_URL_CREDENTIALS_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"(?i)\b([a-z][a-z0-9+.-]*://)([^/@\s:]*):([^/@\s]+)@"
)

# Keys emitted by structlog itself; never redacted by name.
_RESERVED_KEYS: Final[frozenset[str]] = frozenset({"event", "level", "timestamp", "logger"})


def configure_logging(level: int | str = "INFO", *, json_output: bool = True) -> None:
    """Configure structlog for the process.

    Processor chain: merge bound contextvars, add level, ISO-8601 UTC timestamp,
    redact sensitive keys and credential-looking strings, then render as JSON lines or
    for the console.
    """

    numeric_level = _parse_log_level(level)
    renderer: Any
    if json_output:
        renderer = structlog.processors.JSONRenderer(sort_keys=True)
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=False)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            redact_event,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )


def redact_event(
    _logger: Any, _method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """structlog processor replacing secrets in keys and values."""

    for key in list(event_dict):
        if key in _RESERVED_KEYS:
            continue
        event_dict[key] = _redact_value(event_dict[key], key_context=key)
    event = event_dict.get("event")
    if isinstance(event, str):
        event_dict["event"] = _redact_string(event)
    return event_dict


def get_correlation_context() -> dict[str, Any]:
    """Return the correlation fields bound in the current context."""
    return dict(structlog.contextvars.get_contextvars())


@contextmanager
def correlation_scope(**fields: str | None) -> Iterator[None]:
    """Temporarily bind correlation fields for log events in scope."""
    bound = {
        _validate_correlation_key(key): _validate_correlation_value(value)
        for key, value in fields.items()
        if value is not None
    }
    tokens = structlog.contextvars.bind_contextvars(**bound)
    try:
        yield
    finally:
        structlog.contextvars.reset_contextvars(**tokens)


def _parse_log_level(value: int | str) -> int:
    if isinstance(value, bool):
        raise ValueError("level must be int or str, got bool")
    if isinstance(value, int):
        return value

    if not isinstance(value, str):
        raise ValueError(f"level must be int or str, got {type(value).__name__}")

    normalized = value.strip().upper()
    parsed = logging.getLevelName(normalized)
    if isinstance(parsed, int):
        return parsed

    raise ValueError(f"unsupported logging level {value!r}")


def _validate_correlation_key(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError(f"correlation key must be a string, got {type(value).__name__}")
    normalized = value.strip()
    if not normalized:
        raise ValueError("correlation key must not be empty")
    return normalized


def _validate_correlation_value(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError(f"correlation value must be a string, got {type(value).__name__}")
    normalized = value.strip()
    if not normalized:
        raise ValueError("correlation value must not be empty")
    return normalized


def _redact_value(value: Any, *, key_context: str | None) -> Any:
    if key_context is not None and _requires_redaction_for_key(key_context):
        return _REDACTED_VALUE

    if isinstance(value, str):
        return _redact_string(value)

    if isinstance(value, (list, tuple)):
        return [_redact_value(item, key_context=None) for item in value]

    if isinstance(value, Mapping):
        return {str(key): _redact_value(item, key_context=str(key)) for key, item in value.items()}

    return value


def _requires_redaction_for_key(key: str) -> bool:
    key_lower = key.lower()
    return any(term in key_lower for term in _SENSITIVE_KEY_TERMS)


def _redact_string(text: str) -> str:
    redacted = _SENSITIVE_ASSIGNMENT_PATTERN.sub(
        lambda match: f"{match.group(1)}{match.group(2)}{_REDACTED_VALUE}", text
    )
    redacted = _BEARER_TOKEN_PATTERN.sub(f"Bearer {_REDACTED_VALUE}", redacted)
    redacted = _URL_CREDENTIALS_PATTERN.sub(
        lambda match: f"{match.group(1)}{match.group(2)}:{_REDACTED_VALUE}@", redacted
    )
    return redacted


__all__ = [
    "configure_logging",
    "correlation_scope",
    "get_correlation_context",
    "redact_event",
]
