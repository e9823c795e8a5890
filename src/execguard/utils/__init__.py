"""Shared filesystem and concurrency helpers."""

from execguard.utils.concurrency import BoundedSemaphore, run_with_timeout
from execguard.utils.fs import (
    ScratchLayout,
    atomic_write,
    is_within,
    safe_delete,
    scratch_directory,
)

__all__ = [
    "BoundedSemaphore",
    "ScratchLayout",
    "atomic_write",
    "is_within",
    "run_with_timeout",
    "safe_delete",
    "scratch_directory",
]
