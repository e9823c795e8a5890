"""Identifiers and value types shared across the execution core."""

from __future__ import annotations

from execguard.domain.ids import (
    generate_error_record_id,
    generate_execution_id,
    generate_holder_id,
    generate_sandbox_id,
)

__all__ = [
    "generate_error_record_id",
    "generate_execution_id",
    "generate_holder_id",
    "generate_sandbox_id",
]
