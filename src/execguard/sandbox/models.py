"""Sandbox request/result value types and the sandbox error hierarchy."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path

from execguard.constants import (
    DEFAULT_CPU_LIMIT,
    DEFAULT_MEMORY_LIMIT_BYTES,
    DEFAULT_TIMEOUT_MS,
)
from execguard.errors import ErrorSeverity, ErrorType, ExecGuardError


class IsolationTier(StrEnum):
    """Isolation strength, chosen explicitly by the caller."""

    IN_PROCESS = "in_process"
    PROCESS = "process"
    CONTAINER = "container"


class KillReason(StrEnum):
    NONE = "none"
    TIMEOUT = "timeout"
    LIMIT = "limit"


class SandboxError(ExecGuardError):
    """Base error for sandbox failures."""


class SandboxPolicyError(SandboxError):
    """Raised when a payload touches a primitive or path the sandbox does not allow."""

    error_type = ErrorType.SECURITY_VIOLATION
    severity = ErrorSeverity.HIGH


class SandboxTimeoutError(SandboxError):
    """Raised by recovery-aware callers when a result was killed for running too long."""

    error_type = ErrorType.COMMAND_TIMEOUT


class ResourceLimitError(SandboxError):
    """Raised by recovery-aware callers when a result was killed by a resource ceiling."""

    error_type = ErrorType.RESOURCE_EXHAUSTED
    severity = ErrorSeverity.HIGH


class SandboxUnavailableError(SandboxError):
    """Raised when the requested tier's backend (e.g. the container CLI) is missing."""


@dataclass(frozen=True, slots=True)
class SandboxSpec:
    """Immutable description of one sandboxed execution.

    Exactly one of ``code`` and ``argv`` is set. ``allowed_paths`` are host paths that
    the payload may read; the only writable location is the per-run scratch area.
    """

    tier: IsolationTier
    code: str | None = None
    argv: tuple[str, ...] | None = None
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    memory_limit_bytes: int = DEFAULT_MEMORY_LIMIT_BYTES
    cpu_limit: float = DEFAULT_CPU_LIMIT
    allow_network: bool = False
    read_only_fs: bool = True
    allowed_paths: tuple[Path, ...] = ()
    env: tuple[tuple[str, str], ...] = ()
    stdin: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "tier", IsolationTier(self.tier))
        if (self.code is None) == (self.argv is None):
            raise ValueError("exactly one of code or argv must be provided")
        if self.code is not None and not isinstance(self.code, str):
            raise ValueError("code must be a string")
        if self.argv is not None:
            if isinstance(self.argv, str) or not isinstance(self.argv, (list, tuple)):
                raise ValueError("argv must be a sequence of strings")
            object.__setattr__(self, "argv", tuple(self.argv))
            if not self.argv:
                raise ValueError("argv must not be empty")
        if self.tier is IsolationTier.IN_PROCESS and self.code is None:
            raise ValueError("in_process tier executes code, not argv")
        if isinstance(self.timeout_ms, bool) or self.timeout_ms <= 0:
            raise ValueError("timeout_ms must be > 0")
        if self.memory_limit_bytes <= 0:
            raise ValueError("memory_limit_bytes must be > 0")
        if not math.isfinite(self.cpu_limit) or self.cpu_limit <= 0:
            raise ValueError("cpu_limit must be finite and > 0")
        object.__setattr__(
            self, "allowed_paths", tuple(Path(item) for item in self.allowed_paths)
        )
        object.__setattr__(self, "env", tuple((str(k), str(v)) for k, v in dict(self.env).items()))


@dataclass(frozen=True, slots=True)
class SandboxResult:
    """Outcome of exactly one :class:`SandboxSpec` execution."""

    exit_code: int | None
    stdout: str
    stderr: str
    duration_ms: float
    killed_by: KillReason = KillReason.NONE
    tier: IsolationTier = IsolationTier.PROCESS
    truncated: bool = False
    detail: str | None = None
    extras: dict[str, str] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.killed_by is KillReason.NONE and self.exit_code == 0

    @property
    def timed_out(self) -> bool:
        return self.killed_by is KillReason.TIMEOUT

    def raise_for_kill(self) -> SandboxResult:
        """Turn kill outcomes into classified errors for the recovery layer."""

        if self.killed_by is KillReason.TIMEOUT:
            raise SandboxTimeoutError(
                f"{self.tier.value} sandbox timed out after {self.duration_ms:.0f}ms",
                context={"tier": self.tier.value, "duration_ms": self.duration_ms},
            )
        if self.killed_by is KillReason.LIMIT:
            raise ResourceLimitError(
                f"{self.tier.value} sandbox killed by resource limit: {self.detail or 'limit'}",
                context={"tier": self.tier.value, "detail": self.detail or ""},
            )
        return self


__all__ = [
    "IsolationTier",
    "KillReason",
    "ResourceLimitError",
    "SandboxError",
    "SandboxPolicyError",
    "SandboxResult",
    "SandboxSpec",
    "SandboxTimeoutError",
    "SandboxUnavailableError",
]
