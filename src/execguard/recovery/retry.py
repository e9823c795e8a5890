"""
execguard — bounded retry with classified policies

File: src/execguard/recovery/retry.py

Purpose
- Run an async operation, classify each failure, and retry it under the policy
  registered for that failure type until the policy's attempt budget is spent.

Functional requirements
- Delay before retry ``n`` (1-based count of failed attempts) is
  ``base_delay_ms * backoff_multiplier ** (n - 1)`` plus optional jitter.
- Validation and security failures are never retried; they propagate unchanged.
- Errors flagged ``terminal`` (open circuits, earlier terminal failures) propagate
  unchanged.
- Exhausting the budget raises :class:`StandardError` whose record holds one history
  entry per attempt.
- Policies flagged ``cleanup_required`` run the cleanup hook before the next attempt.

Non-functional requirements
- The loop is iterative and keeps its attempt state locally; nothing is shared
  between concurrent calls.
"""

from __future__ import annotations

import asyncio
import gc
import inspect
import math
import random
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final, Protocol, TypeVar

import structlog
import yaml

from execguard.constants import (
    DEFAULT_BACKOFF_MULTIPLIER,
    DEFAULT_JITTER_MS,
    DEFAULT_RETRY_ATTEMPTS,
    DEFAULT_RETRY_DELAY_MS,
)
from execguard.errors import NON_RETRYABLE_TYPES, ErrorType, RateLimitedError
from execguard.recovery.errors import (
    AttemptRecord,
    ErrorRecord,
    StandardError,
    classify,
    severity_of,
)
from execguard.utils.concurrency import run_with_timeout

T = TypeVar("T")
SleepFn = Callable[[float], Awaitable[None]]
CleanupCallback = Callable[[], Any]

_POLICY_FIELDS: Final[frozenset[str]] = frozenset(
    {
        "max_attempts",
        "base_delay_ms",
        "backoff_multiplier",
        "jitter",
        "max_jitter_ms",
        "cleanup_required",
        "honor_wait_hint",
    }
)


class PolicyFileError(ValueError):
    """Raised when a retry policy file cannot be read or is malformed."""


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    max_attempts: int
    base_delay_ms: float
    backoff_multiplier: float = 1.0
    jitter: bool = False
    max_jitter_ms: float = DEFAULT_JITTER_MS
    cleanup_required: bool = False
    honor_wait_hint: bool = False

    def __post_init__(self) -> None:
        if isinstance(self.max_attempts, bool) or self.max_attempts <= 0:
            raise ValueError("max_attempts must be > 0")
        if not math.isfinite(self.base_delay_ms) or self.base_delay_ms < 0:
            raise ValueError("base_delay_ms must be finite and >= 0")
        if not math.isfinite(self.backoff_multiplier) or self.backoff_multiplier < 1.0:
            raise ValueError("backoff_multiplier must be finite and >= 1.0")
        if not math.isfinite(self.max_jitter_ms) or self.max_jitter_ms < 0:
            raise ValueError("max_jitter_ms must be finite and >= 0")

    def delay_ms(self, failed_attempts: int, *, rand: Callable[[], float] = random.random) -> float:
        """Wait before the next attempt, given how many attempts have failed so far."""

        if failed_attempts <= 0:
            raise ValueError("failed_attempts must be > 0")
        delay = self.base_delay_ms * self.backoff_multiplier ** (failed_attempts - 1)
        if self.jitter:
            delay += rand() * self.max_jitter_ms
        return delay


def default_policies(
    *,
    retry_attempts: int = DEFAULT_RETRY_ATTEMPTS,
    retry_delay_ms: int = DEFAULT_RETRY_DELAY_MS,
    backoff_multiplier: float = DEFAULT_BACKOFF_MULTIPLIER,
) -> dict[str, RetryPolicy]:
    """Built-in registry keyed by :class:`ErrorType` value."""

    generic = RetryPolicy(
        max_attempts=retry_attempts,
        base_delay_ms=retry_delay_ms,
        backoff_multiplier=backoff_multiplier,
    )
    return {
        ErrorType.COMMAND_TIMEOUT.value: generic,
        ErrorType.UNKNOWN.value: generic,
        ErrorType.RESOURCE_EXHAUSTED.value: RetryPolicy(
            max_attempts=2, base_delay_ms=5_000, cleanup_required=True
        ),
        ErrorType.CONCURRENCY_CONFLICT.value: RetryPolicy(
            max_attempts=5, base_delay_ms=1_000, jitter=True
        ),
        ErrorType.RATE_LIMITED.value: RetryPolicy(
            max_attempts=retry_attempts, base_delay_ms=retry_delay_ms, honor_wait_hint=True
        ),
        ErrorType.VALIDATION_ERROR.value: RetryPolicy(max_attempts=1, base_delay_ms=0),
        ErrorType.SECURITY_VIOLATION.value: RetryPolicy(max_attempts=1, base_delay_ms=0),
    }


def load_policies_file(path: Path | str) -> dict[str, RetryPolicy]:
    """Read ``{policy_key: {field: value}}`` overrides from a YAML document."""

    source = Path(path)
    try:
        payload = yaml.safe_load(source.read_text(encoding="utf-8"))
    except OSError as exc:
        raise PolicyFileError(f"unable to read retry policy file {source}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise PolicyFileError(f"invalid YAML in retry policy file {source}: {exc}") from exc
    if payload is None:
        return {}
    if not isinstance(payload, Mapping):
        raise PolicyFileError(f"{source}: top level must be a mapping of policy keys")

    policies: dict[str, RetryPolicy] = {}
    for key, raw in payload.items():
        if not isinstance(key, str) or not key.strip():
            raise PolicyFileError(f"{source}: policy keys must be non-empty strings")
        if not isinstance(raw, Mapping):
            raise PolicyFileError(f"{source}: policy {key!r} must be a mapping")
        unknown = sorted(set(raw) - _POLICY_FIELDS)
        if unknown:
            raise PolicyFileError(f"{source}: policy {key!r} has unknown fields {unknown}")
        try:
            policies[key.strip().lower()] = RetryPolicy(**dict(raw))
        except (TypeError, ValueError) as exc:
            raise PolicyFileError(f"{source}: policy {key!r} is invalid: {exc}") from exc
    return policies


class RetryObserver(Protocol):
    def on_retry(self, attempt: AttemptRecord, policy_key: str) -> None: ...


class RecoveryManager:
    """Registry of retry policies plus the bounded recovery loop."""

    def __init__(
        self,
        *,
        policies: Mapping[str, RetryPolicy] | None = None,
        cleanup_callbacks: tuple[CleanupCallback, ...] = (),
        attempt_timeout_ms: int | None = None,
        observer: RetryObserver | None = None,
        sleep: SleepFn = asyncio.sleep,
        rand: Callable[[], float] = random.random,
        logger: Any | None = None,
    ) -> None:
        if attempt_timeout_ms is not None and attempt_timeout_ms <= 0:
            raise ValueError("attempt_timeout_ms must be > 0")
        self._policies: dict[str, RetryPolicy] = dict(
            default_policies() if policies is None else policies
        )
        self._cleanup_callbacks: list[CleanupCallback] = list(cleanup_callbacks)
        self._attempt_timeout_s = None if attempt_timeout_ms is None else attempt_timeout_ms / 1000
        self._observer = observer
        self._sleep = sleep
        self._rand = rand
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def policies(self) -> dict[str, RetryPolicy]:
        return dict(self._policies)

    def register_policy(self, key: str | ErrorType, policy: RetryPolicy) -> None:
        self._policies[_policy_name(key)] = policy

    def update_policies(self, overrides: Mapping[str, RetryPolicy]) -> None:
        for key, policy in overrides.items():
            self.register_policy(key, policy)

    def policy_for(self, key: str | ErrorType) -> RetryPolicy:
        name = _policy_name(key)
        try:
            return self._policies[name]
        except KeyError:
            if name in {item.value for item in ErrorType}:
                return self._policies.get(
                    ErrorType.UNKNOWN.value, RetryPolicy(max_attempts=1, base_delay_ms=0)
                )
            raise KeyError(f"no retry policy registered under {name!r}") from None

    def add_cleanup(self, callback: CleanupCallback) -> None:
        self._cleanup_callbacks.append(callback)

    async def run_cleanup(self) -> None:
        """Force a collection pass, then run each registered callback in order."""

        collected = gc.collect()
        self._logger.debug("recovery_cleanup_gc", collected=collected)
        for callback in self._cleanup_callbacks:
            try:
                outcome = callback()
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as exc:
                self._logger.warning(
                    "recovery_cleanup_failed",
                    callback=getattr(callback, "__qualname__", repr(callback)),
                    error=str(exc),
                )

    async def execute_with_recovery(
        self,
        operation: Callable[[], Awaitable[T]],
        policy_key: str | ErrorType | None = None,
        *,
        context: Mapping[str, Any] | None = None,
        observer: RetryObserver | None = None,
    ) -> T:
        """Run ``operation`` until it succeeds or its policy's attempt budget is spent.

        With ``policy_key`` every retryable failure uses that policy; without it the
        policy is looked up by the classified type of each failure. ``observer``
        replaces the manager-level observer for this call.
        """

        notify = observer if observer is not None else self._observer
        fixed_policy = None if policy_key is None else self.policy_for(policy_key)
        history: list[AttemptRecord] = []
        attempt = 0
        while True:
            attempt += 1
            try:
                return await self._attempt(operation)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                error_type = classify(exc)
                if getattr(exc, "terminal", False) or error_type in NON_RETRYABLE_TYPES:
                    self._logger.info(
                        "recovery_not_retryable",
                        error_type=error_type.value,
                        attempt=attempt,
                        reason=str(exc),
                    )
                    raise
                policy_name = (
                    _policy_name(policy_key) if policy_key is not None else error_type.value
                )
                policy = fixed_policy or self.policy_for(error_type)

                if attempt >= policy.max_attempts:
                    history.append(_attempt_record(attempt, error_type, exc, None))
                    record = ErrorRecord(
                        error_type=error_type,
                        severity=severity_of(exc),
                        message=str(exc) or type(exc).__name__,
                        attempts=attempt,
                        history=tuple(history),
                        policy_key=policy_name,
                        context=dict(context or {}),
                    )
                    self._logger.warning(
                        "recovery_exhausted",
                        error_type=error_type.value,
                        attempts=attempt,
                        policy=policy_name,
                        record_id=record.id,
                    )
                    raise StandardError(record) from exc

                delay_ms = policy.delay_ms(attempt, rand=self._rand)
                if policy.honor_wait_hint and isinstance(exc, RateLimitedError):
                    delay_ms = max(delay_ms, float(exc.wait_ms))
                entry = _attempt_record(attempt, error_type, exc, delay_ms)
                history.append(entry)
                self._logger.info(
                    "retry_scheduled",
                    error_type=error_type.value,
                    attempt=attempt,
                    max_attempts=policy.max_attempts,
                    delay_ms=round(delay_ms, 3),
                    policy=policy_name,
                )
                if notify is not None:
                    notify.on_retry(entry, policy_name)
                if policy.cleanup_required:
                    await self.run_cleanup()
                await self._sleep(delay_ms / 1000.0)

    async def _attempt(self, operation: Callable[[], Awaitable[T]]) -> T:
        if self._attempt_timeout_s is None:
            return await operation()
        return await run_with_timeout(operation(), self._attempt_timeout_s)


def _policy_name(key: str | ErrorType) -> str:
    if isinstance(key, ErrorType):
        return key.value
    if not isinstance(key, str) or not key.strip():
        raise ValueError("policy key must be a non-empty string")
    return key.strip().lower()


def _attempt_record(
    attempt: int, error_type: ErrorType, exc: BaseException, delay_ms: float | None
) -> AttemptRecord:
    return AttemptRecord(
        attempt=attempt,
        error_type=error_type,
        message=str(exc) or type(exc).__name__,
        exception=type(exc).__name__,
        delay_ms=delay_ms,
    )


__all__ = [
    "PolicyFileError",
    "RecoveryManager",
    "RetryObserver",
    "RetryPolicy",
    "default_policies",
    "load_policies_file",
]
