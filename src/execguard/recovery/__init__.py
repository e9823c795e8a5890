"""
execguard recovery — failure classification, bounded retry and circuit breaking.

Every failure maps onto one :class:`~execguard.errors.ErrorType`. Retry budgets are
per type (or per explicit policy key); exhausting one raises
:class:`~execguard.recovery.errors.StandardError` with the full attempt history.
"""

from execguard.recovery.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerStats,
    CircuitOpenError,
    CircuitState,
)
from execguard.recovery.errors import (
    AttemptRecord,
    ErrorRecord,
    StandardError,
    classify,
    severity_of,
)
from execguard.recovery.retry import (
    PolicyFileError,
    RecoveryManager,
    RetryPolicy,
    default_policies,
    load_policies_file,
)

__all__ = [
    "AttemptRecord",
    "CircuitBreaker",
    "CircuitBreakerStats",
    "CircuitOpenError",
    "CircuitState",
    "ErrorRecord",
    "PolicyFileError",
    "RecoveryManager",
    "RetryPolicy",
    "StandardError",
    "classify",
    "default_policies",
    "load_policies_file",
    "severity_of",
]
