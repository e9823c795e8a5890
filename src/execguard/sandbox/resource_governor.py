"""Host-capacity checks that size the sandbox concurrency ceiling."""

from __future__ import annotations

import math
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Protocol

import psutil
import structlog

from execguard.constants import DEFAULT_MEMORY_LIMIT_BYTES
from execguard.sandbox.models import ResourceLimitError, SandboxSpec

try:
    from datetime import UTC
except ImportError:  # pragma: no cover - Python <3.11 compatibility.
    UTC = timezone.utc  # noqa: UP017


class BackpressureLevel(str, Enum):
    """Host pressure severity."""

    NORMAL = "normal"
    ELEVATED = "elevated"
    CRITICAL = "critical"


@dataclass(frozen=True, slots=True)
class HostSnapshot:
    """Point-in-time host metrics used for admission and sizing."""

    captured_at: datetime
    cpu_count: int
    cpu_percent: float | None
    memory_total_bytes: int
    memory_available_bytes: int

    def __post_init__(self) -> None:
        _validate_positive_int(self.cpu_count, "cpu_count")
        _validate_non_negative(self.memory_total_bytes, "memory_total_bytes")
        _validate_non_negative(self.memory_available_bytes, "memory_available_bytes")
        if self.memory_available_bytes > self.memory_total_bytes:
            raise ValueError("memory_available_bytes cannot exceed memory_total_bytes")
        if self.cpu_percent is not None and not math.isfinite(self.cpu_percent):
            raise ValueError("cpu_percent must be finite")

    @property
    def memory_utilization_ratio(self) -> float:
        if self.memory_total_bytes <= 0:
            return 0.0
        used = self.memory_total_bytes - self.memory_available_bytes
        return max(0.0, min(1.0, used / self.memory_total_bytes))


@dataclass(frozen=True, slots=True)
class ResourceGovernorConfig:
    max_concurrency: int = 0
    per_task_memory_bytes: int = DEFAULT_MEMORY_LIMIT_BYTES
    elevated_memory_utilization_ratio: float = 0.85
    critical_memory_utilization_ratio: float = 0.95

    def __post_init__(self) -> None:
        if self.max_concurrency < 0:
            raise ValueError("max_concurrency must be >= 0 (0 selects automatic sizing)")
        _validate_positive_int(self.per_task_memory_bytes, "per_task_memory_bytes")
        if not 0.0 < self.elevated_memory_utilization_ratio <= 1.0:
            raise ValueError("elevated_memory_utilization_ratio must be in (0.0, 1.0]")
        if not 0.0 < self.critical_memory_utilization_ratio <= 1.0:
            raise ValueError("critical_memory_utilization_ratio must be in (0.0, 1.0]")
        if self.critical_memory_utilization_ratio < self.elevated_memory_utilization_ratio:
            raise ValueError("critical threshold cannot be lower than elevated threshold")


class MetricsProvider(Protocol):
    """Source for host snapshots (injectable for tests)."""

    def snapshot(self) -> HostSnapshot: ...


class SystemMetricsProvider:
    """Collect host metrics with ``psutil``."""

    def snapshot(self) -> HostSnapshot:
        memory = psutil.virtual_memory()
        return HostSnapshot(
            captured_at=datetime.now(tz=UTC),
            cpu_count=psutil.cpu_count(logical=True) or os.cpu_count() or 1,
            cpu_percent=max(0.0, min(100.0, float(psutil.cpu_percent(interval=None)))),
            memory_total_bytes=int(memory.total),
            memory_available_bytes=int(memory.available),
        )


class ResourceGovernor:
    """Computes the sandbox concurrency ceiling and refuses specs the host cannot hold."""

    def __init__(
        self,
        *,
        metrics_provider: MetricsProvider | None = None,
        config: ResourceGovernorConfig | None = None,
        logger: Any | None = None,
    ) -> None:
        self._config = config or ResourceGovernorConfig()
        self._metrics_provider = metrics_provider or SystemMetricsProvider()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def config(self) -> ResourceGovernorConfig:
        return self._config

    def snapshot(self) -> HostSnapshot:
        return self._metrics_provider.snapshot()

    def concurrency_ceiling(self, snapshot: HostSnapshot | None = None) -> int:
        """``min(cpu_count, total_memory // per_task_memory)``, or the configured override."""

        if self._config.max_concurrency > 0:
            return self._config.max_concurrency
        metrics = snapshot or self.snapshot()
        by_memory = metrics.memory_total_bytes // self._config.per_task_memory_bytes
        ceiling = max(1, min(metrics.cpu_count, by_memory))
        self._logger.debug(
            "sandbox_concurrency_ceiling",
            ceiling=ceiling,
            cpu_count=metrics.cpu_count,
            by_memory=by_memory,
        )
        return ceiling

    def classify(self, snapshot: HostSnapshot) -> BackpressureLevel:
        ratio = snapshot.memory_utilization_ratio
        if ratio >= self._config.critical_memory_utilization_ratio:
            return BackpressureLevel.CRITICAL
        if ratio >= self._config.elevated_memory_utilization_ratio:
            return BackpressureLevel.ELEVATED
        return BackpressureLevel.NORMAL

    def check_admission(self, spec: SandboxSpec) -> BackpressureLevel:
        """Raise ``ResourceLimitError`` when the host cannot currently fit ``spec``."""

        metrics = self.snapshot()
        if spec.memory_limit_bytes > metrics.memory_total_bytes:
            raise ResourceLimitError(
                "requested memory limit exceeds host memory",
                context={
                    "requested_bytes": spec.memory_limit_bytes,
                    "total_bytes": metrics.memory_total_bytes,
                },
            )
        level = self.classify(metrics)
        if level is BackpressureLevel.CRITICAL:
            self._logger.warning(
                "sandbox_admission_refused",
                memory_utilization=round(metrics.memory_utilization_ratio, 4),
                available_bytes=metrics.memory_available_bytes,
            )
            raise ResourceLimitError(
                "host memory pressure is critical",
                context={"available_bytes": metrics.memory_available_bytes},
            )
        return level


def _validate_positive_int(value: int, field_name: str) -> None:
    if isinstance(value, bool) or value <= 0:
        raise ValueError(f"{field_name} must be > 0")


def _validate_non_negative(value: int, field_name: str) -> None:
    if value < 0:
        raise ValueError(f"{field_name} must be >= 0")


__all__ = [
    "BackpressureLevel",
    "HostSnapshot",
    "MetricsProvider",
    "ResourceGovernor",
    "ResourceGovernorConfig",
    "SystemMetricsProvider",
]
