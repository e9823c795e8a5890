"""Failure taxonomy shared by every execution-core component."""

from __future__ import annotations

from enum import StrEnum
from typing import Any, ClassVar


class ErrorType(StrEnum):
    """Flat, exhaustive classification of execution-core failures."""

    RATE_LIMITED = "rate_limited"
    RESOURCE_EXHAUSTED = "resource_exhausted"
    CONCURRENCY_CONFLICT = "concurrency_conflict"
    COMMAND_TIMEOUT = "command_timeout"
    SECURITY_VIOLATION = "security_violation"
    VALIDATION_ERROR = "validation_error"
    UNKNOWN = "unknown"


class ErrorSeverity(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


NON_RETRYABLE_TYPES: frozenset[ErrorType] = frozenset(
    {ErrorType.SECURITY_VIOLATION, ErrorType.VALIDATION_ERROR}
)


class ExecGuardError(RuntimeError):
    """Base error. Subclasses pin their taxonomy entry through class attributes."""

    error_type: ClassVar[ErrorType] = ErrorType.UNKNOWN
    severity: ClassVar[ErrorSeverity] = ErrorSeverity.MEDIUM
    terminal: ClassVar[bool] = False

    def __init__(self, message: str, *, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.context: dict[str, Any] = dict(context or {})

    @property
    def retryable(self) -> bool:
        return not self.terminal and self.error_type not in NON_RETRYABLE_TYPES


class ValidationError(ExecGuardError, ValueError):
    """Raised when an argument, code body or key fails validation."""

    error_type = ErrorType.VALIDATION_ERROR
    severity = ErrorSeverity.MEDIUM

    def __init__(
        self,
        message: str,
        *,
        index: int | None = None,
        snippet: str | None = None,
        classification: str = "invalid",
        context: dict[str, Any] | None = None,
    ) -> None:
        merged = dict(context or {})
        merged.setdefault("classification", classification)
        if index is not None:
            merged.setdefault("index", index)
        if snippet is not None:
            merged.setdefault("snippet", snippet)
        super().__init__(message, context=merged)
        self.index = index
        self.snippet = snippet
        self.classification = classification


class SecurityViolationError(ValidationError):
    """Raised when input matches an injection, traversal or denylisted pattern."""

    error_type = ErrorType.SECURITY_VIOLATION
    severity = ErrorSeverity.HIGH


class RateLimitedError(ExecGuardError):
    """Raised when an identity exceeds its execution window and the caller declined to wait."""

    error_type = ErrorType.RATE_LIMITED
    severity = ErrorSeverity.LOW

    def __init__(self, identity: str, wait_ms: int) -> None:
        super().__init__(
            f"rate limit exceeded for {identity!r}; retry in {wait_ms}ms",
            context={"identity": identity, "wait_ms": wait_ms},
        )
        self.identity = identity
        self.wait_ms = wait_ms


class CoordinationStoreError(ExecGuardError):
    """Raised when the shared coordination store is unreachable or misbehaves."""

    severity = ErrorSeverity.HIGH


__all__ = [
    "CoordinationStoreError",
    "ErrorSeverity",
    "ErrorType",
    "ExecGuardError",
    "NON_RETRYABLE_TYPES",
    "RateLimitedError",
    "SecurityViolationError",
    "ValidationError",
]
