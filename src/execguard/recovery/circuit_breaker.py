"""Circuit breaker for operations bound to one external dependency."""

from __future__ import annotations

import inspect
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, TypeVar

import structlog

from execguard.constants import DEFAULT_FAILURE_THRESHOLD, DEFAULT_RESET_TIMEOUT_MS
from execguard.errors import NON_RETRYABLE_TYPES, ErrorSeverity, ExecGuardError
from execguard.recovery.errors import classify

T = TypeVar("T")
Fallback = Callable[[], Any]
FailurePredicate = Callable[[BaseException], bool]


class CircuitState(StrEnum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitOpenError(ExecGuardError):
    """Raised instead of calling a dependency whose circuit is open."""

    severity = ErrorSeverity.HIGH
    terminal = True

    def __init__(self, name: str, retry_after_ms: int) -> None:
        super().__init__(
            f"circuit {name!r} is open; retry after {retry_after_ms}ms",
            context={"circuit": name, "retry_after_ms": retry_after_ms},
        )
        self.name = name
        self.retry_after_ms = retry_after_ms


@dataclass(frozen=True, slots=True)
class CircuitBreakerStats:
    name: str
    state: CircuitState
    consecutive_failures: int
    total_calls: int
    successes: int
    failures: int
    rejections: int
    fallbacks: int
    times_opened: int


def counts_as_failure(error: BaseException) -> bool:
    """Caller mistakes (validation, security) say nothing about dependency health."""

    return classify(error) not in NON_RETRYABLE_TYPES


class CircuitBreaker:
    """``CLOSED -> OPEN -> HALF_OPEN -> CLOSED | OPEN``.

    The circuit opens after ``failure_threshold`` consecutive counted failures, once at
    least ``minimum_calls`` calls have been observed. After ``reset_timeout_ms`` it lets
    up to ``half_open_max_calls`` trial calls through; ``success_threshold`` successes
    close it and any failure reopens it.
    """

    def __init__(
        self,
        name: str,
        *,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        reset_timeout_ms: int = DEFAULT_RESET_TIMEOUT_MS,
        half_open_max_calls: int = 1,
        success_threshold: int = 1,
        minimum_calls: int = 1,
        fallback: Fallback | None = None,
        is_failure: FailurePredicate = counts_as_failure,
        clock: Callable[[], float] = time.monotonic,
        logger: Any | None = None,
    ) -> None:
        if not name.strip():
            raise ValueError("name must not be empty")
        for field_name, value in (
            ("failure_threshold", failure_threshold),
            ("reset_timeout_ms", reset_timeout_ms),
            ("half_open_max_calls", half_open_max_calls),
            ("success_threshold", success_threshold),
            ("minimum_calls", minimum_calls),
        ):
            if isinstance(value, bool) or value <= 0:
                raise ValueError(f"{field_name} must be > 0")
        if success_threshold > half_open_max_calls:
            raise ValueError("success_threshold cannot exceed half_open_max_calls")

        self._name = name
        self._failure_threshold = failure_threshold
        self._reset_timeout_s = reset_timeout_ms / 1000.0
        self._half_open_max_calls = half_open_max_calls
        self._success_threshold = success_threshold
        self._minimum_calls = minimum_calls
        self._fallback = fallback
        self._is_failure = is_failure
        self._clock = clock
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

        self._state = CircuitState.CLOSED
        self._opened_at = 0.0
        self._consecutive_failures = 0
        self._half_open_in_flight = 0
        self._half_open_successes = 0
        self._total_calls = 0
        self._successes = 0
        self._failures = 0
        self._rejections = 0
        self._fallbacks = 0
        self._times_opened = 0

    @property
    def name(self) -> str:
        return self._name

    @property
    def state(self) -> CircuitState:
        if self._state is CircuitState.OPEN and self._cooldown_elapsed():
            self._transition(CircuitState.HALF_OPEN)
        return self._state

    async def call(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        fallback: Fallback | None = None,
    ) -> T:
        """Run ``operation`` through the breaker.

        When the circuit rejects the call, the per-call ``fallback`` or the breaker's
        own fallback is used if one is registered; otherwise ``CircuitOpenError`` is
        raised.
        """

        if not self._admit():
            self._rejections += 1
            chosen = fallback or self._fallback
            if chosen is None:
                raise CircuitOpenError(self._name, self._retry_after_ms())
            self._fallbacks += 1
            self._logger.info("circuit_fallback", circuit=self._name)
            outcome = chosen()
            if inspect.isawaitable(outcome):
                outcome = await outcome
            return outcome

        half_open_trial = self._state is CircuitState.HALF_OPEN
        self._total_calls += 1
        try:
            result = await operation()
        except BaseException as exc:
            if half_open_trial:
                self._half_open_in_flight = max(0, self._half_open_in_flight - 1)
            if isinstance(exc, Exception) and self._is_failure(exc):
                self._on_failure(exc)
            raise
        if half_open_trial:
            self._half_open_in_flight = max(0, self._half_open_in_flight - 1)
        self._on_success()
        return result

    def force_open(self) -> None:
        self._transition(CircuitState.OPEN)

    def force_close(self) -> None:
        self._transition(CircuitState.CLOSED)

    def stats(self) -> CircuitBreakerStats:
        return CircuitBreakerStats(
            name=self._name,
            state=self.state,
            consecutive_failures=self._consecutive_failures,
            total_calls=self._total_calls,
            successes=self._successes,
            failures=self._failures,
            rejections=self._rejections,
            fallbacks=self._fallbacks,
            times_opened=self._times_opened,
        )

    def _admit(self) -> bool:
        state = self.state
        if state is CircuitState.CLOSED:
            return True
        if state is CircuitState.OPEN:
            return False
        if self._half_open_in_flight >= self._half_open_max_calls:
            return False
        self._half_open_in_flight += 1
        return True

    def _on_success(self) -> None:
        self._successes += 1
        self._consecutive_failures = 0
        if self._state is CircuitState.HALF_OPEN:
            self._half_open_successes += 1
            if self._half_open_successes >= self._success_threshold:
                self._transition(CircuitState.CLOSED)

    def _on_failure(self, exc: Exception) -> None:
        self._failures += 1
        self._consecutive_failures += 1
        if self._state is CircuitState.HALF_OPEN:
            self._transition(CircuitState.OPEN, reason=str(exc))
            return
        if (
            self._state is CircuitState.CLOSED
            and self._total_calls >= self._minimum_calls
            and self._consecutive_failures >= self._failure_threshold
        ):
            self._transition(CircuitState.OPEN, reason=str(exc))

    def _transition(self, target: CircuitState, *, reason: str | None = None) -> None:
        previous = self._state
        self._state = target
        if target is CircuitState.OPEN:
            self._opened_at = self._clock()
            self._times_opened += 1
            self._half_open_in_flight = 0
            self._logger.warning(
                "circuit_opened",
                circuit=self._name,
                previous=previous.value,
                consecutive_failures=self._consecutive_failures,
                reason=reason,
            )
        elif target is CircuitState.HALF_OPEN:
            self._half_open_in_flight = 0
            self._half_open_successes = 0
            self._logger.info("circuit_half_open", circuit=self._name)
        else:
            self._consecutive_failures = 0
            self._half_open_in_flight = 0
            self._half_open_successes = 0
            if previous is not CircuitState.CLOSED:
                self._logger.info("circuit_closed", circuit=self._name, previous=previous.value)

    def _cooldown_elapsed(self) -> bool:
        return self._clock() - self._opened_at >= self._reset_timeout_s

    def _retry_after_ms(self) -> int:
        remaining = self._reset_timeout_s - (self._clock() - self._opened_at)
        return max(0, int(remaining * 1000))


__all__ = [
    "CircuitBreaker",
    "CircuitBreakerStats",
    "CircuitOpenError",
    "CircuitState",
    "counts_as_failure",
]
