"""
execguard — public validation utilities

File: src/execguard/security/__init__.py

Purpose
- Validate every string before it becomes a subprocess argument, a sandbox code body or a
  coordination-store key.

Functional requirements
- Must fail closed: the first failed check raises, no partial result is returned.

Non-functional requirements
- No side effects and no dependencies on other execution-core components.
"""

from execguard.security.command_validator import (
    BLOCKED_COMMANDS,
    CommandValidator,
    NumericBound,
    ValidationContext,
    ValidatorLimits,
    validate,
)

__all__ = [
    "BLOCKED_COMMANDS",
    "CommandValidator",
    "NumericBound",
    "ValidationContext",
    "ValidatorLimits",
    "validate",
]
