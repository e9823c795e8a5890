"""Sandbox executor: explicit tier dispatch under one host-wide concurrency ceiling."""

from __future__ import annotations

import os
import tempfile
import time
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import structlog

from execguard.errors import ErrorType, ExecGuardError
from execguard.sandbox.container_runtime import ContainerRunner
from execguard.sandbox.inprocess import InProcessRunner
from execguard.sandbox.models import (
    IsolationTier,
    KillReason,
    SandboxResult,
    SandboxSpec,
    SandboxUnavailableError,
)
from execguard.sandbox.network_policy import NetworkPolicy, NetworkPolicyMode
from execguard.sandbox.process_runner import ProcessRunner
from execguard.sandbox.resource_governor import ResourceGovernor
from execguard.security.command_validator import CommandValidator
from execguard.utils.concurrency import BoundedSemaphore
from execguard.utils.fs import safe_delete

_SCRATCH_PREFIX = "execguard-"


@dataclass(frozen=True, slots=True)
class SandboxExecutorStats:
    executions: int
    succeeded: int
    failed: int
    timeouts: int
    limit_kills: int
    rejected: int
    security_violations: int
    by_tier: dict[str, int] = field(default_factory=dict)
    concurrency: dict[str, int] = field(default_factory=dict)


class SandboxExecutor:
    """Run a :class:`SandboxSpec` on the tier it names. Tiers are never substituted.

    Every spec is checked before it takes a slot: code bodies go through the validator,
    the network request through the :class:`NetworkPolicy`, and the memory request
    through the :class:`ResourceGovernor` when one is configured.
    """

    def __init__(
        self,
        *,
        in_process: InProcessRunner | None = None,
        process: ProcessRunner | None = None,
        container: ContainerRunner | None = None,
        network_policy: NetworkPolicy | None = None,
        resource_governor: ResourceGovernor | None = None,
        validator: CommandValidator | None = None,
        max_concurrency: int | None = None,
        scratch_base: Path | str | None = None,
        logger: Any | None = None,
    ) -> None:
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._validator = validator or CommandValidator()
        self._in_process = in_process or InProcessRunner(logger=self._logger)
        self._process = process or ProcessRunner(validator=self._validator, logger=self._logger)
        self._container = container
        self._network_policy = network_policy or NetworkPolicy(
            mode=NetworkPolicyMode.DENY, logger=self._logger
        )
        self._resource_governor = resource_governor
        self._scratch_base = None if scratch_base is None else Path(scratch_base)

        if max_concurrency is None:
            if resource_governor is not None:
                max_concurrency = resource_governor.concurrency_ceiling()
            else:
                max_concurrency = os.cpu_count() or 1
        self._semaphore = BoundedSemaphore(max_concurrency)

        self._executions = 0
        self._succeeded = 0
        self._failed = 0
        self._timeouts = 0
        self._limit_kills = 0
        self._rejected = 0
        self._security_violations = 0
        self._by_tier: Counter[str] = Counter()

    @property
    def max_concurrency(self) -> int:
        return self._semaphore.limit

    @property
    def network_policy(self) -> NetworkPolicy:
        return self._network_policy

    async def execute(self, spec: SandboxSpec) -> SandboxResult:
        """Run ``spec`` and return its result.

        Policy failures (validation, network, capacity) raise before anything runs.
        Timeouts and limit kills are reported on the result, not raised.
        """

        try:
            if spec.code is not None:
                self._validator.validate_code(spec.code)
            network = self._network_policy.enforce(spec)
            if self._resource_governor is not None:
                self._resource_governor.check_admission(spec)
            if spec.tier is IsolationTier.CONTAINER and self._container is None:
                raise SandboxUnavailableError(
                    "container tier is not configured", context={"tier": spec.tier.value}
                )
        except ExecGuardError as exc:
            self._count_rejection(exc)
            self._logger.warning(
                "sandbox_rejected",
                tier=spec.tier.value,
                error_type=exc.error_type.value,
                reason=str(exc),
            )
            raise

        async with self._semaphore.permit():
            self._executions += 1
            self._by_tier[spec.tier.value] += 1
            try:
                if spec.tier is IsolationTier.IN_PROCESS:
                    result = await self._in_process.run(spec)
                elif spec.tier is IsolationTier.PROCESS:
                    result = await self._process.run(spec)
                else:
                    assert self._container is not None
                    result = await self._container.run(spec, network)
            except ExecGuardError as exc:
                self._count_rejection(exc)
                raise

        self._record(result)
        self._logger.debug(
            "sandbox_finished",
            tier=spec.tier.value,
            exit_code=result.exit_code,
            killed_by=result.killed_by.value,
            duration_ms=round(result.duration_ms, 3),
        )
        return result

    def cleanup_scratch(self, *, min_age_s: float = 3600.0) -> int:
        """Remove abandoned scratch trees older than ``min_age_s``. Returns how many."""

        base = self._scratch_base or Path(tempfile.gettempdir())
        if not base.is_dir():
            return 0
        cutoff = time.time() - min_age_s
        removed = 0
        for entry in base.iterdir():
            if not entry.name.startswith(_SCRATCH_PREFIX) or entry.is_symlink():
                continue
            try:
                if not entry.is_dir() or entry.stat().st_mtime > cutoff:
                    continue
                safe_delete(entry, base)
            except OSError as exc:
                self._logger.warning(
                    "sandbox_scratch_cleanup_failed", path=str(entry), error=str(exc)
                )
                continue
            removed += 1
        if removed:
            self._logger.info("sandbox_scratch_cleaned", removed=removed)
        return removed

    def stats(self) -> SandboxExecutorStats:
        return SandboxExecutorStats(
            executions=self._executions,
            succeeded=self._succeeded,
            failed=self._failed,
            timeouts=self._timeouts,
            limit_kills=self._limit_kills,
            rejected=self._rejected,
            security_violations=self._security_violations,
            by_tier=dict(self._by_tier),
            concurrency=self._semaphore.snapshot(),
        )

    def _count_rejection(self, exc: ExecGuardError) -> None:
        self._rejected += 1
        if exc.error_type is ErrorType.SECURITY_VIOLATION:
            self._security_violations += 1

    def _record(self, result: SandboxResult) -> None:
        if result.succeeded:
            self._succeeded += 1
        else:
            self._failed += 1
        if result.killed_by is KillReason.TIMEOUT:
            self._timeouts += 1
        elif result.killed_by is KillReason.LIMIT:
            self._limit_kills += 1


__all__ = ["SandboxExecutor", "SandboxExecutorStats"]
