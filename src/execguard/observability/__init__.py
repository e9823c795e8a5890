"""Public observability primitives: structured logging and correlation fields."""

from execguard.observability.logging import (
    configure_logging,
    correlation_scope,
    get_correlation_context,
    redact_event,
)

__all__ = [
    "configure_logging",
    "correlation_scope",
    "get_correlation_context",
    "redact_event",
]
