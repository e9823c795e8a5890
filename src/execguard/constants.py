"""Stable defaults shared across the execution core."""

from __future__ import annotations

from typing import Final

CONFIG_SCHEMA_VERSION: Final[int] = 1

# Rate governance.
DEFAULT_MAX_EXECUTIONS: Final[int] = 50
DEFAULT_WINDOW_MS: Final[int] = 10_000

# Locking.
DEFAULT_LOCK_TTL_MS: Final[int] = 30_000
DEFAULT_LOCK_TIMEOUT_MS: Final[int] = 10_000
DEFAULT_LOCK_RETRY_INTERVAL_MS: Final[int] = 100
DEFAULT_LOCK_MAX_RETRY_INTERVAL_MS: Final[int] = 1_000
DEFAULT_READ_HELPER_TTL_MS: Final[int] = 5_000
DEFAULT_READ_COUNT_TTL_MS: Final[int] = 30_000
AUTO_RENEW_FRACTION: Final[float] = 0.6
DEFAULT_KEY_PREFIX: Final[str] = "execguard"

# Sandbox.
DEFAULT_TIMEOUT_MS: Final[int] = 30_000
DEFAULT_MEMORY_LIMIT_BYTES: Final[int] = 512 * 1024 * 1024
DEFAULT_CPU_LIMIT: Final[float] = 1.0
DEFAULT_MAX_OUTPUT_BYTES: Final[int] = 1024 * 1024
DEFAULT_KILL_GRACE_MS: Final[int] = 5_000
DEFAULT_CONTAINER_IMAGE: Final[str] = "python:3.12-slim"
DEFAULT_CONTAINER_BINARY: Final[str] = "docker"
SANDBOX_RUN_AS: Final[str] = "65532:65532"
SANDBOX_SCRATCH_MOUNT: Final[str] = "/scratch"
SANDBOX_PIDS_LIMIT: Final[int] = 64

# Validation.
DEFAULT_MAX_ARG_LENGTH: Final[int] = 2_000
DEFAULT_MAX_CODE_LENGTH: Final[int] = 100_000
DEFAULT_MAX_ARGS: Final[int] = 50
MAX_KEY_LENGTH: Final[int] = 256

# Recovery.
DEFAULT_RETRY_ATTEMPTS: Final[int] = 3
DEFAULT_RETRY_DELAY_MS: Final[int] = 1_000
DEFAULT_BACKOFF_MULTIPLIER: Final[float] = 1.5
DEFAULT_JITTER_MS: Final[int] = 1_000

# Circuit breaker.
DEFAULT_FAILURE_THRESHOLD: Final[int] = 5
DEFAULT_RESET_TIMEOUT_MS: Final[int] = 60_000

__all__ = [
    "AUTO_RENEW_FRACTION",
    "CONFIG_SCHEMA_VERSION",
    "DEFAULT_BACKOFF_MULTIPLIER",
    "DEFAULT_CONTAINER_BINARY",
    "DEFAULT_CONTAINER_IMAGE",
    "DEFAULT_CPU_LIMIT",
    "DEFAULT_FAILURE_THRESHOLD",
    "DEFAULT_JITTER_MS",
    "DEFAULT_KEY_PREFIX",
    "DEFAULT_KILL_GRACE_MS",
    "DEFAULT_LOCK_MAX_RETRY_INTERVAL_MS",
    "DEFAULT_LOCK_RETRY_INTERVAL_MS",
    "DEFAULT_LOCK_TIMEOUT_MS",
    "DEFAULT_LOCK_TTL_MS",
    "DEFAULT_MAX_ARGS",
    "DEFAULT_MAX_ARG_LENGTH",
    "DEFAULT_MAX_CODE_LENGTH",
    "DEFAULT_MAX_EXECUTIONS",
    "DEFAULT_MAX_OUTPUT_BYTES",
    "DEFAULT_MEMORY_LIMIT_BYTES",
    "DEFAULT_READ_COUNT_TTL_MS",
    "DEFAULT_READ_HELPER_TTL_MS",
    "DEFAULT_RESET_TIMEOUT_MS",
    "DEFAULT_RETRY_ATTEMPTS",
    "DEFAULT_RETRY_DELAY_MS",
    "DEFAULT_TIMEOUT_MS",
    "DEFAULT_WINDOW_MS",
    "MAX_KEY_LENGTH",
    "SANDBOX_PIDS_LIMIT",
    "SANDBOX_RUN_AS",
    "SANDBOX_SCRATCH_MOUNT",
]
