"""Process-wide owner of the execution core components.

One :class:`CoreRuntime` per process holds the store client, lock manager, rate
governor, sandbox executor and recovery manager, and passes them by reference to the
:class:`~execguard.control_plane.controller.ExecutionCoordinator`. Nothing here is a
module-level singleton.
"""

from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path
from typing import Any

import structlog

from execguard.config.loader import load_settings
from execguard.config.schema import ExecGuardSettings
from execguard.control_plane.controller import ExecutionCoordinator, ExecutionObserver
from execguard.control_plane.rate_governor import RateGovernor
from execguard.coordination.guarded import CircuitGuardedStore
from execguard.coordination.locks import DistributedLockManager
from execguard.coordination.store import (
    CoordinationStore,
    MemoryCoordinationStore,
    RedisCoordinationStore,
)
from execguard.observability.logging import configure_logging
from execguard.recovery.circuit_breaker import CircuitBreaker
from execguard.recovery.retry import RecoveryManager, default_policies, load_policies_file
from execguard.sandbox.container_runtime import ContainerRunner, ContainerRuntime, DockerCliRuntime
from execguard.sandbox.inprocess import InProcessRunner
from execguard.sandbox.models import IsolationTier, SandboxSpec
from execguard.sandbox.network_policy import NetworkPolicy
from execguard.sandbox.process_runner import ProcessRunner
from execguard.sandbox.resource_governor import (
    MetricsProvider,
    ResourceGovernor,
    ResourceGovernorConfig,
)
from execguard.sandbox.sandbox_manager import SandboxExecutor
from execguard.security.command_validator import CommandValidator, ValidatorLimits

STORE_CIRCUIT_NAME = "coordination_store"


class CoreRuntime:
    """Explicitly-owned component graph built from one :class:`ExecGuardSettings`."""

    def __init__(
        self,
        *,
        settings: ExecGuardSettings,
        validator: CommandValidator,
        store: CircuitGuardedStore,
        lock_manager: DistributedLockManager,
        rate_governor: RateGovernor,
        executor: SandboxExecutor,
        recovery: RecoveryManager,
        coordinator: ExecutionCoordinator,
        logger: Any | None = None,
    ) -> None:
        self.settings = settings
        self.validator = validator
        self.store = store
        self.lock_manager = lock_manager
        self.rate_governor = rate_governor
        self.executor = executor
        self.recovery = recovery
        self.coordinator = coordinator
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._closed = False

    @classmethod
    def from_settings(
        cls,
        settings: ExecGuardSettings | None = None,
        *,
        store: CoordinationStore | None = None,
        container_runtime: ContainerRuntime | None = None,
        metrics_provider: MetricsProvider | None = None,
        observer: ExecutionObserver | None = None,
        logger: Any | None = None,
    ) -> CoreRuntime:
        """Build every component from ``settings``.

        ``store``, ``container_runtime`` and ``metrics_provider`` replace the backends the
        settings would select; tests use them to stay offline.
        """

        settings = settings or ExecGuardSettings()
        log = logger if logger is not None else structlog.get_logger(__name__)

        validator = CommandValidator(
            limits=ValidatorLimits(
                max_arg_length=settings.validation.max_arg_length,
                max_code_length=settings.validation.max_code_length,
                max_args=settings.validation.max_args,
            )
        )

        backend = store if store is not None else _build_store(settings, validator, log)
        breaker = CircuitBreaker(
            STORE_CIRCUIT_NAME,
            failure_threshold=settings.circuit_breaker.failure_threshold,
            reset_timeout_ms=settings.circuit_breaker.reset_timeout_ms,
            half_open_max_calls=settings.circuit_breaker.half_open_max_calls,
            logger=log,
        )
        guarded = CircuitGuardedStore(backend, breaker)

        locks = settings.locks
        lock_manager = DistributedLockManager(
            guarded,
            default_ttl_ms=locks.ttl_ms,
            lock_timeout_ms=locks.lock_timeout_ms,
            retry_interval_ms=locks.retry_interval_ms,
            max_retry_interval_ms=locks.max_retry_interval_ms,
            read_helper_ttl_ms=locks.read_helper_ttl_ms,
            read_count_ttl_ms=locks.read_count_ttl_ms,
            auto_renew=locks.auto_renew,
            validator=validator,
            logger=log,
        )
        rate_governor = RateGovernor(
            max_executions=settings.rate_limit.max_executions,
            window_ms=settings.rate_limit.window_ms,
            logger=log,
        )
        executor = _build_executor(settings, validator, container_runtime, metrics_provider, log)

        recovery_settings = settings.recovery
        policies = default_policies(
            retry_attempts=recovery_settings.retry_attempts,
            retry_delay_ms=recovery_settings.retry_delay_ms,
            backoff_multiplier=recovery_settings.backoff_multiplier,
        )
        if recovery_settings.policies_file:
            policies.update(load_policies_file(recovery_settings.policies_file))
        recovery = RecoveryManager(
            policies=policies,
            cleanup_callbacks=(executor.cleanup_scratch,),
            observer=observer,
            logger=log,
        )

        coordinator = ExecutionCoordinator(
            rate_governor=rate_governor,
            lock_manager=lock_manager,
            executor=executor,
            recovery=recovery,
            validator=validator,
            observer=observer,
            logger=log,
        )
        log.info(
            "runtime_ready",
            store_backend="injected" if store is not None else settings.store.backend,
            max_concurrency=executor.max_concurrency,
            allow_network=settings.sandbox.allow_network,
        )
        return cls(
            settings=settings,
            validator=validator,
            store=guarded,
            lock_manager=lock_manager,
            rate_governor=rate_governor,
            executor=executor,
            recovery=recovery,
            coordinator=coordinator,
            logger=log,
        )

    def sandbox_spec(
        self,
        tier: IsolationTier | str,
        *,
        code: str | None = None,
        argv: tuple[str, ...] | list[str] | None = None,
        **overrides: Any,
    ) -> SandboxSpec:
        """Build a :class:`SandboxSpec` whose limits default to the configured values."""

        sandbox = self.settings.sandbox
        values: dict[str, Any] = {
            "timeout_ms": sandbox.timeout_ms,
            "memory_limit_bytes": sandbox.memory_limit_bytes,
            "cpu_limit": sandbox.cpu_limit,
            "allow_network": sandbox.allow_network,
        }
        values.update(overrides)
        return SandboxSpec(
            tier=IsolationTier(tier),
            code=code,
            argv=None if argv is None else tuple(argv),
            **values,
        )

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self.lock_manager.close()
        await self.store.close()
        self._logger.info("runtime_closed")

    async def __aenter__(self) -> CoreRuntime:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()


def bootstrap(
    config_path: str | Path | None = None,
    *,
    overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
    **components: Any,
) -> CoreRuntime:
    """Load settings, configure logging from them, and build the runtime."""

    settings = load_settings(config_path, overrides=overrides, environ=environ)
    configure_logging(settings.observability.log_level, json_output=settings.observability.json)
    return CoreRuntime.from_settings(settings, **components)


def _build_store(
    settings: ExecGuardSettings, validator: CommandValidator, logger: Any
) -> CoordinationStore:
    namespace = settings.locks.key_prefix
    if settings.store.backend == "redis":
        return RedisCoordinationStore.from_url(
            settings.store.url, namespace=namespace, validator=validator, logger=logger
        )
    return MemoryCoordinationStore(namespace=namespace, validator=validator)


def _build_executor(
    settings: ExecGuardSettings,
    validator: CommandValidator,
    container_runtime: ContainerRuntime | None,
    metrics_provider: MetricsProvider | None,
    logger: Any,
) -> SandboxExecutor:
    sandbox = settings.sandbox
    scratch_base: Path | None = None
    if sandbox.scratch_dir:
        scratch_base = Path(sandbox.scratch_dir)
        scratch_base.mkdir(mode=0o700, parents=True, exist_ok=True)

    governor = ResourceGovernor(
        metrics_provider=metrics_provider,
        config=ResourceGovernorConfig(
            max_concurrency=sandbox.max_concurrency,
            per_task_memory_bytes=sandbox.memory_limit_bytes,
        ),
        logger=logger,
    )
    return SandboxExecutor(
        in_process=InProcessRunner(
            max_output_bytes=sandbox.max_output_bytes,
            scratch_base=scratch_base,
            logger=logger,
        ),
        process=ProcessRunner(
            validator=validator,
            max_output_bytes=sandbox.max_output_bytes,
            kill_grace_ms=sandbox.kill_grace_ms,
            scratch_base=scratch_base,
            logger=logger,
        ),
        container=ContainerRunner(
            container_runtime or DockerCliRuntime(binary=sandbox.container_binary, logger=logger),
            validator=validator,
            image=sandbox.container_image,
            max_output_bytes=sandbox.max_output_bytes,
            kill_grace_ms=sandbox.kill_grace_ms,
            scratch_base=scratch_base,
            logger=logger,
        ),
        network_policy=NetworkPolicy.from_flag(sandbox.allow_network, logger=logger),
        resource_governor=governor,
        validator=validator,
        scratch_base=scratch_base,
        logger=logger,
    )


__all__ = ["CoreRuntime", "STORE_CIRCUIT_NAME", "bootstrap"]
