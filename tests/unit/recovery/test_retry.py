"""Unit tests for the bounded recovery loop and retry policy registry."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st
from structlog.testing import CapturingLogger

from execguard.errors import (
    ErrorType,
    RateLimitedError,
    SecurityViolationError,
    ValidationError,
)
from execguard.recovery.errors import AttemptRecord, StandardError
from execguard.recovery.retry import (
    PolicyFileError,
    RecoveryManager,
    RetryPolicy,
    default_policies,
    load_policies_file,
)


class _FakeSleep:
    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class _Flaky:
    """Raises ``error`` for the first ``failures`` calls, then returns ``value``."""

    def __init__(self, error: Exception, failures: int, value: str = "ok") -> None:
        self.error = error
        self.failures = failures
        self.value = value
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return self.value


class _RetryLog:
    def __init__(self) -> None:
        self.entries: list[tuple[AttemptRecord, str]] = []

    def on_retry(self, attempt: AttemptRecord, policy_key: str) -> None:
        self.entries.append((attempt, policy_key))


def _manager(**policies: RetryPolicy) -> tuple[RecoveryManager, _FakeSleep]:
    sleep = _FakeSleep()
    registry = default_policies()
    registry.update(policies)
    return RecoveryManager(policies=registry, sleep=sleep, rand=lambda: 0.5), sleep


@settings(max_examples=20, deadline=None)
@given(max_attempts=st.integers(min_value=1, max_value=8))
def test_always_failing_operation_is_attempted_exactly_max_attempts(max_attempts: int) -> None:
    manager, _ = _manager(command_timeout=RetryPolicy(max_attempts=max_attempts, base_delay_ms=1))
    operation = _Flaky(TimeoutError("build timed out"), failures=10_000)

    with pytest.raises(StandardError) as excinfo:
        asyncio.run(manager.execute_with_recovery(operation))

    assert operation.calls == max_attempts
    assert excinfo.value.attempts == max_attempts
    assert len(excinfo.value.record.history) == max_attempts
    assert [item.attempt for item in excinfo.value.record.history] == list(
        range(1, max_attempts + 1)
    )
    assert excinfo.value.terminal is True
    assert excinfo.value.retryable is False


@pytest.mark.asyncio
async def test_transient_failure_recovers_with_backoff() -> None:
    manager, sleep = _manager(
        command_timeout=RetryPolicy(max_attempts=4, base_delay_ms=100, backoff_multiplier=2.0)
    )
    operation = _Flaky(TimeoutError("slow"), failures=3)

    assert await manager.execute_with_recovery(operation) == "ok"
    assert operation.calls == 4
    assert sleep.calls == pytest.approx([0.1, 0.2, 0.4])


@pytest.mark.parametrize(
    "error",
    [
        ValidationError("bad flag", classification="metacharacter"),
        SecurityViolationError("blocked", classification="blocked_command"),
    ],
)
@pytest.mark.asyncio
async def test_validation_and_security_failures_are_never_retried(error: Exception) -> None:
    manager, sleep = _manager()
    operation = _Flaky(error, failures=5)

    with pytest.raises(type(error)):
        await manager.execute_with_recovery(operation)

    assert operation.calls == 1
    assert sleep.calls == []


@pytest.mark.asyncio
async def test_terminal_errors_pass_through_unchanged() -> None:
    manager, _ = _manager(command_timeout=RetryPolicy(max_attempts=1, base_delay_ms=0))
    inner = _Flaky(TimeoutError("t"), failures=1)
    with pytest.raises(StandardError) as first:
        await manager.execute_with_recovery(inner)

    outer = _Flaky(first.value, failures=3)
    with pytest.raises(StandardError) as second:
        await manager.execute_with_recovery(outer)

    assert second.value is first.value
    assert outer.calls == 1


@pytest.mark.asyncio
async def test_fixed_policy_key_overrides_classification() -> None:
    manager, sleep = _manager()
    manager.register_policy("deploy", RetryPolicy(max_attempts=2, base_delay_ms=10))
    operation = _Flaky(RuntimeError("lock contention"), failures=5)

    with pytest.raises(StandardError) as excinfo:
        await manager.execute_with_recovery(operation, "deploy")

    assert operation.calls == 2
    assert excinfo.value.record.policy_key == "deploy"
    assert excinfo.value.error_type is ErrorType.CONCURRENCY_CONFLICT
    assert sleep.calls == [0.01]


@pytest.mark.asyncio
async def test_rate_limit_waits_at_least_the_hint() -> None:
    manager, sleep = _manager(
        rate_limited=RetryPolicy(max_attempts=2, base_delay_ms=10, honor_wait_hint=True)
    )
    operation = _Flaky(RateLimitedError("npm", 750), failures=1)

    assert await manager.execute_with_recovery(operation) == "ok"
    assert sleep.calls == [0.75]


@pytest.mark.asyncio
async def test_cleanup_runs_before_retrying_resource_failures() -> None:
    cleaned: list[str] = []

    async def async_cleanup() -> None:
        cleaned.append("async")

    def failing_cleanup() -> None:
        raise OSError("scratch busy")

    logger = CapturingLogger()
    sleep = _FakeSleep()
    manager = RecoveryManager(
        policies={
            ErrorType.RESOURCE_EXHAUSTED.value: RetryPolicy(
                max_attempts=2, base_delay_ms=0, cleanup_required=True
            )
        },
        cleanup_callbacks=(lambda: cleaned.append("sync"), failing_cleanup, async_cleanup),
        sleep=sleep,
        logger=logger,
    )
    operation = _Flaky(MemoryError(), failures=1)

    assert await manager.execute_with_recovery(operation) == "ok"
    assert cleaned == ["sync", "async"]
    events = [call.args[0] for call in logger.calls]
    assert "recovery_cleanup_failed" in events


@pytest.mark.asyncio
async def test_observer_sees_every_scheduled_retry() -> None:
    manager, _ = _manager(command_timeout=RetryPolicy(max_attempts=3, base_delay_ms=5))
    observer = _RetryLog()
    operation = _Flaky(TimeoutError("slow"), failures=2)

    await manager.execute_with_recovery(operation, observer=observer)

    assert [(entry.attempt, key) for entry, key in observer.entries] == [
        (1, "command_timeout"),
        (2, "command_timeout"),
    ]
    assert all(entry.delay_ms == 5 for entry, _ in observer.entries)


@pytest.mark.asyncio
async def test_attempt_timeout_turns_hangs_into_timeouts() -> None:
    sleep = _FakeSleep()
    manager = RecoveryManager(
        policies={ErrorType.COMMAND_TIMEOUT.value: RetryPolicy(max_attempts=2, base_delay_ms=0)},
        attempt_timeout_ms=20,
        sleep=sleep,
    )

    async def hang() -> str:
        await asyncio.sleep(10)
        return "never"

    with pytest.raises(StandardError) as excinfo:
        await manager.execute_with_recovery(hang)

    assert excinfo.value.attempts == 2
    assert excinfo.value.error_type is ErrorType.COMMAND_TIMEOUT


def test_policy_delay_applies_multiplier_and_jitter() -> None:
    policy = RetryPolicy(
        max_attempts=5, base_delay_ms=100, backoff_multiplier=1.5, jitter=True, max_jitter_ms=40
    )

    assert policy.delay_ms(1, rand=lambda: 0.0) == 100
    assert policy.delay_ms(3, rand=lambda: 0.0) == pytest.approx(225)
    assert policy.delay_ms(1, rand=lambda: 0.5) == pytest.approx(120)
    with pytest.raises(ValueError):
        policy.delay_ms(0)


def test_policy_rejects_invalid_values() -> None:
    with pytest.raises(ValueError, match="max_attempts"):
        RetryPolicy(max_attempts=0, base_delay_ms=0)
    with pytest.raises(ValueError, match="backoff_multiplier"):
        RetryPolicy(max_attempts=1, base_delay_ms=0, backoff_multiplier=0.5)


def test_default_registry_covers_every_error_type() -> None:
    policies = default_policies(retry_attempts=4, retry_delay_ms=250, backoff_multiplier=2.0)

    assert set(policies) == {item.value for item in ErrorType}
    assert policies["validation_error"].max_attempts == 1
    assert policies["security_violation"].max_attempts == 1
    assert policies["resource_exhausted"].cleanup_required is True
    assert policies["command_timeout"].max_attempts == 4
    assert policies["command_timeout"].backoff_multiplier == 2.0


def test_unknown_policy_key_raises() -> None:
    manager, _ = _manager()
    with pytest.raises(KeyError, match="no retry policy"):
        manager.policy_for("not-registered")


def test_policies_file_overrides_registry(tmp_path: Path) -> None:
    path = tmp_path / "policies.yaml"
    path.write_text(
        "command_timeout:\n"
        "  max_attempts: 6\n"
        "  base_delay_ms: 50\n"
        "  backoff_multiplier: 2\n"
        "Nightly-Build:\n"
        "  max_attempts: 2\n"
        "  base_delay_ms: 0\n",
        encoding="utf-8",
    )

    policies = load_policies_file(path)

    assert policies["command_timeout"] == RetryPolicy(
        max_attempts=6, base_delay_ms=50, backoff_multiplier=2
    )
    assert policies["nightly-build"].max_attempts == 2


@pytest.mark.parametrize(
    ("content", "message"),
    [
        ("- not\n- a mapping\n", "top level"),
        ("timeout:\n  retries: 3\n", "unknown fields"),
        ("timeout:\n  max_attempts: 0\n  base_delay_ms: 1\n", "is invalid"),
        ("timeout: [unclosed\n", "invalid YAML"),
    ],
)
def test_malformed_policy_files_are_rejected(tmp_path: Path, content: str, message: str) -> None:
    path = tmp_path / "policies.yaml"
    path.write_text(content, encoding="utf-8")

    with pytest.raises(PolicyFileError, match=message):
        load_policies_file(path)


def test_missing_policy_file_is_reported(tmp_path: Path) -> None:
    with pytest.raises(PolicyFileError, match="unable to read"):
        load_policies_file(tmp_path / "absent.yaml")
