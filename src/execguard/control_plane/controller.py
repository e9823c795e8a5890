"""
execguard — execution coordinator

File: src/execguard/control_plane/controller.py

Purpose
- Drive one guarded execution end to end: validate, admit through the rate governor,
  take the requested lock, run the payload in its sandbox tier, and release the lock.

Functional requirements
- The lock, when one is requested, is held only for the sandbox run and is released on
  success, failure, timeout and cancellation.
- With a recovery manager configured, the whole pipeline (admission, lock, execution)
  is retried as one unit under the classified failure's policy.
- Timeouts and limit kills become classified errors unless the request asks for the
  raw result.
- Progress is reported through an optional typed observer; no untyped event bus.

Non-functional requirements
- The coordinator owns no lock or rate state; it only wires injected components.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, Protocol

import structlog

from execguard.control_plane.rate_governor import RateDecision, RateGovernor, identity_for
from execguard.coordination.locks import DistributedLockManager, LockMode, LockToken
from execguard.domain.ids import generate_execution_id
from execguard.errors import ErrorType, ValidationError
from execguard.observability.logging import correlation_scope
from execguard.recovery.errors import AttemptRecord, classify
from execguard.recovery.retry import RecoveryManager
from execguard.sandbox.models import SandboxResult, SandboxSpec
from execguard.sandbox.sandbox_manager import SandboxExecutor
from execguard.security.command_validator import CommandValidator

_NO_LOCK = "none"


class ExecutionObserver(Protocol):
    """Typed progress callbacks. Every method is optional to act upon, none may block."""

    def on_admitted(self, execution_id: str, decision: RateDecision) -> None: ...

    def on_lock_acquired(self, execution_id: str, token: LockToken) -> None: ...

    def on_started(self, execution_id: str, spec: SandboxSpec) -> None: ...

    def on_finished(self, execution_id: str, result: SandboxResult) -> None: ...

    def on_retry(self, attempt: AttemptRecord, policy_key: str) -> None: ...


class NullObserver:
    def on_admitted(self, execution_id: str, decision: RateDecision) -> None:
        return None

    def on_lock_acquired(self, execution_id: str, token: LockToken) -> None:
        return None

    def on_started(self, execution_id: str, spec: SandboxSpec) -> None:
        return None

    def on_finished(self, execution_id: str, result: SandboxResult) -> None:
        return None

    def on_retry(self, attempt: AttemptRecord, policy_key: str) -> None:
        return None


@dataclass(frozen=True, slots=True)
class ExecutionRequest:
    """One guarded execution.

    ``lock_mode`` is ``"none"`` (or ``None``), ``"exclusive"``, ``"read"`` or
    ``"write"``; any mode other than none needs ``resource``. ``identity`` defaults to
    the first word of ``argv``, or ``"<tier>:code"`` for code payloads.
    """

    spec: SandboxSpec
    identity: str | None = None
    resource: str | None = None
    lock_mode: LockMode | str | None = None
    lock_ttl_ms: int | None = None
    lock_timeout_ms: int | None = None
    wait_for_rate: bool = True
    policy_key: str | ErrorType | None = None
    recover: bool = True
    raise_on_kill: bool = True

    def __post_init__(self) -> None:
        mode = self.lock_mode
        if isinstance(mode, str) and mode.strip().lower() == _NO_LOCK:
            mode = None
        if mode is not None:
            mode = LockMode(mode)
            if self.resource is None:
                raise ValueError(f"lock mode {mode.value!r} requires a resource")
        object.__setattr__(self, "lock_mode", mode)


@dataclass(frozen=True, slots=True)
class ExecutionOutcome:
    execution_id: str
    identity: str
    result: SandboxResult
    lock_mode: LockMode | None
    resource: str | None


class ExecutionCoordinator:
    """Caller-facing entry point for rate-governed, lock-guarded sandbox execution."""

    def __init__(
        self,
        *,
        rate_governor: RateGovernor,
        lock_manager: DistributedLockManager,
        executor: SandboxExecutor,
        recovery: RecoveryManager | None = None,
        validator: CommandValidator | None = None,
        observer: ExecutionObserver | None = None,
        logger: Any | None = None,
    ) -> None:
        self._rate_governor = rate_governor
        self._lock_manager = lock_manager
        self._executor = executor
        self._recovery = recovery
        self._validator = validator or CommandValidator()
        self._observer: ExecutionObserver = observer if observer is not None else NullObserver()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    async def run(self, request: ExecutionRequest) -> ExecutionOutcome:
        """Execute ``request`` and return its outcome, or raise its classified failure.

        Validation runs once up front and is never retried. Exhausted retries surface as
        :class:`~execguard.recovery.errors.StandardError`.
        """

        identity = self._prepare(request)
        execution_id = generate_execution_id()
        mode = request.lock_mode
        assert mode is None or isinstance(mode, LockMode)

        with correlation_scope(execution_id=execution_id, identity=identity):
            self._logger.info(
                "execution_requested",
                tier=request.spec.tier.value,
                resource=request.resource,
                lock_mode=mode.value if mode is not None else _NO_LOCK,
            )

            async def pipeline() -> SandboxResult:
                return await self._run_once(execution_id, identity, request, mode)

            try:
                if self._recovery is not None and request.recover:
                    result = await self._recovery.execute_with_recovery(
                        pipeline,
                        request.policy_key,
                        context={
                            "execution_id": execution_id,
                            "identity": identity,
                            "resource": request.resource,
                        },
                        observer=self._observer,
                    )
                else:
                    result = await pipeline()
            except Exception as exc:
                self._logger.warning(
                    "execution_failed",
                    error_type=classify(exc).value,
                    error=type(exc).__name__,
                    reason=str(exc),
                )
                raise

            self._logger.info(
                "execution_finished",
                exit_code=result.exit_code,
                killed_by=result.killed_by.value,
                duration_ms=round(result.duration_ms, 3),
            )
        return ExecutionOutcome(
            execution_id=execution_id,
            identity=identity,
            result=result,
            lock_mode=mode,
            resource=request.resource,
        )

    async def execute(
        self,
        spec: SandboxSpec,
        *,
        resource: str | None = None,
        lock_mode: LockMode | str | None = None,
        **options: Any,
    ) -> SandboxResult:
        """Shorthand for :meth:`run` returning only the sandbox result."""

        outcome = await self.run(
            ExecutionRequest(spec=spec, resource=resource, lock_mode=lock_mode, **options)
        )
        return outcome.result

    def _prepare(self, request: ExecutionRequest) -> str:
        spec = request.spec
        if request.resource is not None:
            self._validator.validate_key(request.resource)
        if spec.argv is not None:
            self._validator.validate_argv(spec.argv)
        if spec.code is not None:
            self._validator.validate_code(spec.code)
        if request.identity is not None:
            return request.identity
        if spec.argv is not None:
            return _argv_identity(spec.argv)
        return f"{spec.tier.value}:code"

    async def _run_once(
        self,
        execution_id: str,
        identity: str,
        request: ExecutionRequest,
        mode: LockMode | None,
    ) -> SandboxResult:
        decision = await self._rate_governor.admit(identity, wait=request.wait_for_rate)
        self._observer.on_admitted(execution_id, decision)

        if mode is None:
            return await self._execute(execution_id, request)

        assert request.resource is not None
        async with self._lock_manager.lock(
            request.resource,
            mode=mode,
            ttl_ms=request.lock_ttl_ms,
            timeout_ms=request.lock_timeout_ms,
        ) as token:
            self._observer.on_lock_acquired(execution_id, token)
            return await self._execute(execution_id, request)

    async def _execute(self, execution_id: str, request: ExecutionRequest) -> SandboxResult:
        self._observer.on_started(execution_id, request.spec)
        result = await self._executor.execute(request.spec)
        self._observer.on_finished(execution_id, result)
        if request.raise_on_kill:
            result.raise_for_kill()
        return result


def _argv_identity(argv: Sequence[str]) -> str:
    try:
        return identity_for(argv)
    except ValueError as exc:
        raise ValidationError(str(exc), classification="empty") from exc


__all__ = [
    "ExecutionCoordinator",
    "ExecutionObserver",
    "ExecutionOutcome",
    "ExecutionRequest",
    "NullObserver",
]
