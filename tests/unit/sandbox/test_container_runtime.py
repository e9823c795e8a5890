"""Unit tests for the container tier against an in-memory runtime double."""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from pathlib import Path

import pytest
from structlog.testing import CapturingLogger

from execguard.constants import SANDBOX_SCRATCH_MOUNT
from execguard.sandbox.container_runtime import (
    OOM_EXIT_CODE,
    ContainerCommandError,
    ContainerConfig,
    ContainerRunner,
    ContainerRuntime,
    DockerCliRuntime,
    ExecOutcome,
    build_create_args,
)
from execguard.sandbox.models import (
    IsolationTier,
    KillReason,
    SandboxSpec,
    SandboxUnavailableError,
)
from execguard.sandbox.network_policy import NetworkDecision, NetworkPolicy


class _FakeRuntime:
    """Records lifecycle calls; ``exec`` behaviour is scripted per test."""

    def __init__(
        self,
        *,
        outcome: ExecOutcome | None = None,
        hang: bool = False,
        oom: bool = False,
        is_available: bool = True,
        remove_fails: bool = False,
    ) -> None:
        self.outcome = outcome or ExecOutcome(exit_code=0, stdout="done\n", stderr="")
        self.hang = hang
        self.oom = oom
        self.is_available = is_available
        self.remove_fails = remove_fails
        self.calls: list[str] = []
        self.configs: list[ContainerConfig] = []
        self.exec_argv: list[str] = []
        self.staged_payload: str | None = None
        self._stopped = asyncio.Event()

    async def available(self) -> bool:
        return self.is_available

    async def create(self, name: str, config: ContainerConfig) -> str:
        self.calls.append("create")
        self.configs.append(config)
        payload = config.scratch_host / "work" / "payload.py"
        if payload.exists():
            self.staged_payload = payload.read_text(encoding="utf-8")
        return f"id-{name}"

    async def start(self, container_id: str) -> None:
        self.calls.append("start")

    async def exec(
        self,
        container_id: str,
        argv: Sequence[str],
        *,
        stdin: str | None,
        workdir: str,
        max_output_bytes: int,
    ) -> ExecOutcome:
        self.calls.append("exec")
        self.exec_argv = list(argv)
        if self.hang:
            try:
                await self._stopped.wait()
            except asyncio.CancelledError:
                self.calls.append("exec_cancelled")
                raise
            return ExecOutcome(exit_code=143, stdout="partial", stderr="")
        return self.outcome

    async def stop(self, container_id: str, *, grace_s: float) -> None:
        self.calls.append("stop")
        self._stopped.set()

    async def remove(self, container_id: str) -> None:
        self.calls.append("remove")
        if self.remove_fails:
            raise ContainerCommandError("daemon went away")

    async def inspect_oom(self, container_id: str) -> bool:
        self.calls.append("inspect_oom")
        return self.oom


def _decision(spec: SandboxSpec, *, allow: bool = False) -> NetworkDecision:
    return NetworkPolicy.from_flag(allow).evaluate(spec)


def _code_spec(code: str = "print('hi')", **kwargs: object) -> SandboxSpec:
    return SandboxSpec(tier=IsolationTier.CONTAINER, code=code, **kwargs)  # type: ignore[arg-type]


def test_fake_runtime_satisfies_protocol() -> None:
    assert isinstance(_FakeRuntime(), ContainerRuntime)
    assert isinstance(DockerCliRuntime(), ContainerRuntime)


@pytest.mark.asyncio
async def test_successful_run_stages_code_and_always_removes() -> None:
    runtime = _FakeRuntime()
    runner = ContainerRunner(runtime, kill_grace_ms=100)
    spec = _code_spec("print('hi')")

    result = await runner.run(spec, _decision(spec))

    assert result.succeeded
    assert result.stdout == "done\n"
    assert result.tier is IsolationTier.CONTAINER
    assert runtime.calls == ["create", "start", "exec", "remove"]
    assert runtime.staged_payload == "print('hi')"
    assert runtime.exec_argv[-1] == f"{SANDBOX_SCRATCH_MOUNT}/work/payload.py"
    assert result.extras["network"] == "none"


@pytest.mark.asyncio
async def test_runaway_payload_is_stopped_at_timeout() -> None:
    runtime = _FakeRuntime(hang=True)
    logger = CapturingLogger()
    runner = ContainerRunner(runtime, kill_grace_ms=100, logger=logger)
    spec = _code_spec("while True:\n    pass\n", timeout_ms=300)

    result = await runner.run(spec, _decision(spec))

    assert result.killed_by is KillReason.TIMEOUT
    assert result.exit_code is None
    assert 250 <= result.duration_ms < 2_000
    assert runtime.calls == ["create", "start", "exec", "stop", "remove"]
    assert "sandbox_timeout" in [call.args[0] for call in logger.calls]


@pytest.mark.asyncio
async def test_caller_cancellation_reaps_the_exec_task() -> None:
    runtime = _FakeRuntime(hang=True)
    spec = _code_spec(timeout_ms=10_000)
    task = asyncio.create_task(ContainerRunner(runtime).run(spec, _decision(spec)))
    while "exec" not in runtime.calls:
        await asyncio.sleep(0)

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert runtime.calls[-2:] == ["exec_cancelled", "remove"]


@pytest.mark.asyncio
async def test_exit_137_with_oom_flag_is_a_limit_kill() -> None:
    runtime = _FakeRuntime(
        outcome=ExecOutcome(exit_code=OOM_EXIT_CODE, stdout="", stderr="Killed"), oom=True
    )
    spec = _code_spec(memory_limit_bytes=64 * 1024 * 1024)

    result = await ContainerRunner(runtime).run(spec, _decision(spec))

    assert result.killed_by is KillReason.LIMIT
    assert result.detail == "out of memory"
    assert runtime.calls[-2:] == ["inspect_oom", "remove"]


@pytest.mark.asyncio
async def test_output_overflow_is_a_limit_kill() -> None:
    runtime = _FakeRuntime(
        outcome=ExecOutcome(
            exit_code=-9, stdout="x" * 16, stderr="", truncated=True, overflowed=True
        )
    )
    spec = _code_spec()

    result = await ContainerRunner(runtime, max_output_bytes=16).run(spec, _decision(spec))

    assert result.killed_by is KillReason.LIMIT
    assert result.truncated is True


@pytest.mark.asyncio
async def test_remove_failure_is_logged_not_raised() -> None:
    runtime = _FakeRuntime(remove_fails=True)
    logger = CapturingLogger()
    spec = _code_spec()

    result = await ContainerRunner(runtime, logger=logger).run(spec, _decision(spec))

    assert result.succeeded
    assert "sandbox_container_leaked" in [call.args[0] for call in logger.calls]


@pytest.mark.asyncio
async def test_missing_runtime_raises_unavailable() -> None:
    spec = _code_spec()

    with pytest.raises(SandboxUnavailableError):
        await ContainerRunner(_FakeRuntime(is_available=False)).run(spec, _decision(spec))


@pytest.mark.asyncio
async def test_container_config_reflects_spec_limits() -> None:
    runtime = _FakeRuntime()
    spec = SandboxSpec(
        tier=IsolationTier.CONTAINER,
        argv=("python", "-c", "print"),
        memory_limit_bytes=128 * 1024 * 1024,
        cpu_limit=0.5,
        allow_network=True,
        allowed_paths=(Path("/opt/data"),),
    )

    await ContainerRunner(runtime).run(spec, _decision(spec, allow=True))

    config = runtime.configs[0]
    assert config.network == "bridge"
    assert config.memory_bytes == 128 * 1024 * 1024
    assert config.cpus == 0.5
    assert config.read_only is True
    assert config.read_only_mounts == (Path("/opt/data"),)
    assert runtime.exec_argv == ["python", "-c", "print"]


def test_create_args_lock_the_container_down(tmp_path: Path) -> None:
    config = ContainerConfig(
        image="python:3.12-slim",
        network="none",
        memory_bytes=256 * 1024 * 1024,
        cpus=1.0,
        scratch_host=tmp_path,
        user="1000:1000",
        env=(("SANDBOX", "1"),),
    )

    args = build_create_args("execguard-test", config)

    joined = " ".join(args)
    assert args[0] == "create"
    assert "--network none" in joined
    assert "--cap-drop ALL" in joined
    assert "--security-opt no-new-privileges" in joined
    assert "--read-only" in args
    assert "--user 1000:1000" in joined
    assert f"--memory {256 * 1024 * 1024}b" in joined
    assert f"type=bind,src={tmp_path},dst={SANDBOX_SCRATCH_MOUNT}" in args
    assert args[-3:] == ["python:3.12-slim", "sleep", "infinity"]


def test_container_config_rejects_unknown_network() -> None:
    with pytest.raises(ValueError, match="network"):
        ContainerConfig(
            image="alpine", network="host", memory_bytes=1, cpus=1.0, scratch_host=Path("/tmp")
        )
