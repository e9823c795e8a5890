"""Unit tests for host-capacity sizing and sandbox admission."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from execguard.errors import ErrorType
from execguard.sandbox.models import IsolationTier, ResourceLimitError, SandboxSpec
from execguard.sandbox.resource_governor import (
    BackpressureLevel,
    HostSnapshot,
    ResourceGovernor,
    ResourceGovernorConfig,
    SystemMetricsProvider,
)

try:
    from datetime import UTC
except ImportError:  # pragma: no cover - Python <3.11 compatibility.
    UTC = timezone.utc  # noqa: UP017

GIB = 1024 * 1024 * 1024


def _snapshot(*, cpus: int = 8, total_gib: int = 16, available_gib: int = 12) -> HostSnapshot:
    return HostSnapshot(
        captured_at=datetime(2026, 2, 1, 12, 0, 0, tzinfo=UTC),
        cpu_count=cpus,
        cpu_percent=20.0,
        memory_total_bytes=total_gib * GIB,
        memory_available_bytes=available_gib * GIB,
    )


class _StaticProvider:
    def __init__(self, snapshot: HostSnapshot) -> None:
        self.value = snapshot

    def snapshot(self) -> HostSnapshot:
        return self.value


def _spec(memory_gib: float = 0.5) -> SandboxSpec:
    return SandboxSpec(
        tier=IsolationTier.PROCESS, code="print(1)", memory_limit_bytes=int(memory_gib * GIB)
    )


def test_ceiling_is_min_of_cpus_and_memory_slots() -> None:
    governor = ResourceGovernor(
        metrics_provider=_StaticProvider(_snapshot(cpus=8, total_gib=2)),
        config=ResourceGovernorConfig(per_task_memory_bytes=512 * 1024 * 1024),
    )
    assert governor.concurrency_ceiling() == 4

    governor = ResourceGovernor(
        metrics_provider=_StaticProvider(_snapshot(cpus=2, total_gib=64)),
        config=ResourceGovernorConfig(per_task_memory_bytes=512 * 1024 * 1024),
    )
    assert governor.concurrency_ceiling() == 2


def test_ceiling_never_drops_below_one() -> None:
    governor = ResourceGovernor(
        metrics_provider=_StaticProvider(_snapshot(cpus=4, total_gib=1, available_gib=1)),
        config=ResourceGovernorConfig(per_task_memory_bytes=4 * GIB),
    )
    assert governor.concurrency_ceiling() == 1


def test_configured_concurrency_overrides_sizing() -> None:
    governor = ResourceGovernor(
        metrics_provider=_StaticProvider(_snapshot()),
        config=ResourceGovernorConfig(max_concurrency=3),
    )
    assert governor.concurrency_ceiling() == 3


def test_backpressure_levels_follow_memory_utilization() -> None:
    governor = ResourceGovernor(metrics_provider=_StaticProvider(_snapshot()))

    assert governor.classify(_snapshot(total_gib=100, available_gib=50)) is BackpressureLevel.NORMAL
    assert governor.classify(_snapshot(total_gib=100, available_gib=10)) is (
        BackpressureLevel.ELEVATED
    )
    assert governor.classify(_snapshot(total_gib=100, available_gib=2)) is (
        BackpressureLevel.CRITICAL
    )


def test_admission_refuses_specs_larger_than_host() -> None:
    governor = ResourceGovernor(metrics_provider=_StaticProvider(_snapshot(total_gib=1)))

    with pytest.raises(ResourceLimitError) as excinfo:
        governor.check_admission(_spec(memory_gib=2))

    assert excinfo.value.error_type is ErrorType.RESOURCE_EXHAUSTED


def test_admission_refuses_under_critical_pressure() -> None:
    provider = _StaticProvider(_snapshot(total_gib=100, available_gib=1))
    governor = ResourceGovernor(metrics_provider=provider)

    with pytest.raises(ResourceLimitError, match="critical"):
        governor.check_admission(_spec())

    provider.value = _snapshot(total_gib=100, available_gib=60)
    assert governor.check_admission(_spec()) is BackpressureLevel.NORMAL


def test_snapshot_rejects_inconsistent_memory() -> None:
    with pytest.raises(ValueError, match="cannot exceed"):
        _snapshot(total_gib=4, available_gib=8)


def test_config_rejects_inverted_thresholds() -> None:
    with pytest.raises(ValueError, match="critical threshold"):
        ResourceGovernorConfig(
            elevated_memory_utilization_ratio=0.9, critical_memory_utilization_ratio=0.8
        )


def test_system_provider_reports_real_host() -> None:
    snapshot = SystemMetricsProvider().snapshot()

    assert snapshot.cpu_count >= 1
    assert snapshot.memory_total_bytes > 0
    assert 0.0 <= snapshot.memory_utilization_ratio <= 1.0
