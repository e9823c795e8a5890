"""Failure classification, attempt records and the terminal recovery error."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Final

from execguard.domain.ids import generate_error_record_id
from execguard.errors import ErrorSeverity, ErrorType, ExecGuardError

try:
    from datetime import UTC
except ImportError:  # pragma: no cover - Python <3.11 compatibility.
    UTC = timezone.utc  # noqa: UP017

DEFAULT_SEVERITY: Final[dict[ErrorType, ErrorSeverity]] = {
    ErrorType.RATE_LIMITED: ErrorSeverity.LOW,
    ErrorType.RESOURCE_EXHAUSTED: ErrorSeverity.HIGH,
    ErrorType.CONCURRENCY_CONFLICT: ErrorSeverity.MEDIUM,
    ErrorType.COMMAND_TIMEOUT: ErrorSeverity.MEDIUM,
    ErrorType.SECURITY_VIOLATION: ErrorSeverity.CRITICAL,
    ErrorType.VALIDATION_ERROR: ErrorSeverity.MEDIUM,
    ErrorType.UNKNOWN: ErrorSeverity.MEDIUM,
}

# First match wins; rate wording is checked before the generic timeout wording.
_KEYWORDS: Final[tuple[tuple[ErrorType, tuple[str, ...]], ...]] = (
    (ErrorType.RATE_LIMITED, ("rate limit", "rate-limit", "too many requests", "throttl")),
    (
        ErrorType.RESOURCE_EXHAUSTED,
        ("memory", "resource", "no space left", "disk full", "quota", "too many open files"),
    ),
    (ErrorType.CONCURRENCY_CONFLICT, ("lock", "conflict", "concurren", "deadlock", "contention")),
    (ErrorType.COMMAND_TIMEOUT, ("timeout", "timed out", "deadline")),
    (
        ErrorType.SECURITY_VIOLATION,
        ("permission denied", "forbidden", "injection", "traversal", "not allowed"),
    ),
    (ErrorType.VALIDATION_ERROR, ("invalid", "validation", "malformed")),
)


def classify(error: BaseException) -> ErrorType:
    """Map ``error`` onto exactly one taxonomy entry.

    Library errors carry their type. Foreign exceptions are classified by their
    built-in type first, then by keywords in the type name and message.
    """

    if isinstance(error, ExecGuardError):
        return error.error_type
    if isinstance(error, (TimeoutError, asyncio.TimeoutError)):
        return ErrorType.COMMAND_TIMEOUT
    if isinstance(error, MemoryError):
        return ErrorType.RESOURCE_EXHAUSTED
    haystack = f"{type(error).__name__} {error}".lower()
    for error_type, keywords in _KEYWORDS:
        if any(keyword in haystack for keyword in keywords):
            return error_type
    return ErrorType.UNKNOWN


def severity_of(error: BaseException) -> ErrorSeverity:
    if isinstance(error, ExecGuardError):
        return error.severity
    return DEFAULT_SEVERITY[classify(error)]


@dataclass(frozen=True, slots=True)
class AttemptRecord:
    """One failed attempt inside a recovery loop."""

    attempt: int
    error_type: ErrorType
    message: str
    exception: str
    delay_ms: float | None = None
    failed_at: datetime = field(default_factory=lambda: datetime.now(tz=UTC))

    def __post_init__(self) -> None:
        if self.attempt <= 0:
            raise ValueError("attempt must be > 0")
        if self.delay_ms is not None and self.delay_ms < 0:
            raise ValueError("delay_ms must be >= 0")


@dataclass(frozen=True, slots=True)
class ErrorRecord:
    """Summary of a recovery loop that ran out of attempts."""

    error_type: ErrorType
    severity: ErrorSeverity
    message: str
    attempts: int
    history: tuple[AttemptRecord, ...]
    policy_key: str
    context: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=generate_error_record_id)
    created_at: datetime = field(default_factory=lambda: datetime.now(tz=UTC))

    def __post_init__(self) -> None:
        if self.attempts <= 0:
            raise ValueError("attempts must be > 0")
        object.__setattr__(self, "history", tuple(self.history))
        if len(self.history) != self.attempts:
            raise ValueError("history must hold one entry per attempt")

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "error_type": self.error_type.value,
            "severity": self.severity.value,
            "message": self.message,
            "attempts": self.attempts,
            "policy_key": self.policy_key,
            "context": dict(self.context),
            "created_at": self.created_at.isoformat(),
            "history": [
                {
                    "attempt": item.attempt,
                    "error_type": item.error_type.value,
                    "message": item.message,
                    "exception": item.exception,
                    "delay_ms": item.delay_ms,
                    "failed_at": item.failed_at.isoformat(),
                }
                for item in self.history
            ],
        }


class StandardError(ExecGuardError):
    """Terminal failure after the retry budget is spent. Never retried again."""

    terminal = True

    def __init__(self, record: ErrorRecord) -> None:
        super().__init__(
            f"{record.error_type.value} after {record.attempts} attempt(s): {record.message}",
            context={"record_id": record.id, "attempts": record.attempts},
        )
        self.record = record

    @property  # type: ignore[override]
    def error_type(self) -> ErrorType:
        return self.record.error_type

    @property  # type: ignore[override]
    def severity(self) -> ErrorSeverity:
        return self.record.severity

    @property
    def attempts(self) -> int:
        return self.record.attempts


__all__ = [
    "DEFAULT_SEVERITY",
    "AttemptRecord",
    "ErrorRecord",
    "StandardError",
    "classify",
    "severity_of",
]
