"""
execguard — container isolation tier

File: src/execguard/sandbox/container_runtime.py

Purpose
- Run one payload inside a fresh, locked-down container and tear it down afterwards.

Functional requirements
- No network unless the network decision allows it (``--network none`` otherwise).
- Read-only root filesystem; the scratch bind mount is the only writable path.
- Unprivileged user, all capabilities dropped, ``no-new-privileges``, bounded pids,
  memory and CPU.
- Timeout stops the container (SIGTERM, grace period, SIGKILL) and reports ``timeout``.
- Exit 137 or an OOM-killed container reports ``limit``.

Non-functional requirements
- The container CLI is reached through :class:`ContainerRuntime` so tests can inject a
  fake runtime without a daemon.
"""

from __future__ import annotations

import asyncio
import os
import shutil
import time
from collections.abc import Callable, Sequence
from contextlib import suppress
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final, Protocol, runtime_checkable

import structlog

from execguard.constants import (
    DEFAULT_CONTAINER_BINARY,
    DEFAULT_CONTAINER_IMAGE,
    DEFAULT_KILL_GRACE_MS,
    DEFAULT_MAX_OUTPUT_BYTES,
    SANDBOX_PIDS_LIMIT,
    SANDBOX_RUN_AS,
    SANDBOX_SCRATCH_MOUNT,
)
from execguard.domain.ids import generate_sandbox_id
from execguard.sandbox.models import (
    IsolationTier,
    KillReason,
    SandboxError,
    SandboxResult,
    SandboxSpec,
    SandboxUnavailableError,
)
from execguard.sandbox.network_policy import NetworkDecision
from execguard.sandbox.output import OutputCapture, drain, feed_stdin, pump
from execguard.security.command_validator import CommandValidator
from execguard.utils.fs import ScratchLayout, atomic_write, scratch_directory

OOM_EXIT_CODE: Final[int] = 137
_KEEPALIVE: Final[tuple[str, ...]] = ("sleep", "infinity")


@dataclass(frozen=True, slots=True)
class ContainerConfig:
    """Everything ``create`` needs to build one locked-down container."""

    image: str
    network: str
    memory_bytes: int
    cpus: float
    scratch_host: Path
    scratch_mount: str = SANDBOX_SCRATCH_MOUNT
    user: str = SANDBOX_RUN_AS
    pids_limit: int = SANDBOX_PIDS_LIMIT
    read_only: bool = True
    read_only_mounts: tuple[Path, ...] = ()
    env: tuple[tuple[str, str], ...] = ()

    def __post_init__(self) -> None:
        if not self.image.strip():
            raise ValueError("image must not be empty")
        if self.network not in {"none", "bridge"}:
            raise ValueError("network must be 'none' or 'bridge'")
        if self.memory_bytes <= 0:
            raise ValueError("memory_bytes must be > 0")
        if self.cpus <= 0:
            raise ValueError("cpus must be > 0")
        if self.pids_limit <= 0:
            raise ValueError("pids_limit must be > 0")


@dataclass(frozen=True, slots=True)
class ExecOutcome:
    """Result of one ``exec`` inside a running container."""

    exit_code: int | None
    stdout: str
    stderr: str
    truncated: bool = False
    overflowed: bool = False


@runtime_checkable
class ContainerRuntime(Protocol):
    """Lifecycle operations for an OCI container engine."""

    async def available(self) -> bool: ...

    async def create(self, name: str, config: ContainerConfig) -> str: ...

    async def start(self, container_id: str) -> None: ...

    async def exec(
        self,
        container_id: str,
        argv: Sequence[str],
        *,
        stdin: str | None,
        workdir: str,
        max_output_bytes: int,
    ) -> ExecOutcome: ...

    async def stop(self, container_id: str, *, grace_s: float) -> None: ...

    async def remove(self, container_id: str) -> None: ...

    async def inspect_oom(self, container_id: str) -> bool: ...


class ContainerCommandError(SandboxError):
    """Raised when the container CLI itself fails."""


def build_create_args(name: str, config: ContainerConfig) -> list[str]:
    """Arguments after the binary for ``create``. Exposed for inspection in tests."""

    args = [
        "create",
        "--name",
        name,
        "--network",
        config.network,
        "--user",
        config.user,
        "--cap-drop",
        "ALL",
        "--security-opt",
        "no-new-privileges",
        "--pids-limit",
        str(config.pids_limit),
        "--memory",
        f"{config.memory_bytes}b",
        "--memory-swap",
        f"{config.memory_bytes}b",
        "--cpus",
        f"{config.cpus:g}",
        "--mount",
        f"type=bind,src={config.scratch_host},dst={config.scratch_mount}",
    ]
    if config.read_only:
        args.append("--read-only")
    for path in config.read_only_mounts:
        args.extend(["--mount", f"type=bind,src={path},dst={path},readonly"])
    for key, value in config.env:
        args.extend(["--env", f"{key}={value}"])
    args.extend([config.image, *_KEEPALIVE])
    return args


class DockerCliRuntime:
    """``ContainerRuntime`` backed by the ``docker`` (or compatible) CLI."""

    def __init__(
        self, *, binary: str = DEFAULT_CONTAINER_BINARY, logger: Any | None = None
    ) -> None:
        if not binary.strip():
            raise ValueError("binary must not be empty")
        self._binary = binary
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    async def available(self) -> bool:
        return shutil.which(self._binary) is not None

    async def create(self, name: str, config: ContainerConfig) -> str:
        stdout = await self._run(*build_create_args(name, config))
        return stdout.strip() or name

    async def start(self, container_id: str) -> None:
        await self._run("start", container_id)

    async def exec(
        self,
        container_id: str,
        argv: Sequence[str],
        *,
        stdin: str | None,
        workdir: str,
        max_output_bytes: int,
    ) -> ExecOutcome:
        flags = ["exec", "--workdir", workdir]
        if stdin is not None:
            flags.append("--interactive")
        proc = await asyncio.create_subprocess_exec(
            self._binary,
            *flags,
            container_id,
            *argv,
            stdin=asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout = OutputCapture(max_output_bytes)
        stderr = OutputCapture(max_output_bytes)
        overflow = asyncio.Event()
        assert proc.stdout is not None and proc.stderr is not None
        tasks = [
            asyncio.create_task(pump(proc.stdout, stdout, overflow)),
            asyncio.create_task(pump(proc.stderr, stderr, overflow)),
        ]
        if stdin is not None and proc.stdin is not None:
            tasks.append(asyncio.create_task(feed_stdin(proc.stdin, stdin)))

        exit_task = asyncio.create_task(proc.wait())
        overflow_task = asyncio.create_task(overflow.wait())
        try:
            done, _ = await asyncio.wait(
                {exit_task, overflow_task}, return_when=asyncio.FIRST_COMPLETED
            )
            overflowed = exit_task not in done
            if overflowed:
                with suppress(ProcessLookupError):
                    proc.kill()
            await exit_task
        finally:
            overflow_task.cancel()
            if not exit_task.done():
                with suppress(ProcessLookupError):
                    proc.kill()
            await drain(tasks, 1.0)
        return ExecOutcome(
            exit_code=proc.returncode,
            stdout=stdout.text(),
            stderr=stderr.text(),
            truncated=stdout.truncated or stderr.truncated,
            overflowed=overflowed,
        )

    async def stop(self, container_id: str, *, grace_s: float) -> None:
        await self._run("stop", "--time", str(max(0, int(grace_s))), container_id)

    async def remove(self, container_id: str) -> None:
        await self._run("rm", "--force", "--volumes", container_id)

    async def inspect_oom(self, container_id: str) -> bool:
        output = await self._run("inspect", "--format", "{{.State.OOMKilled}}", container_id)
        return output.strip().lower() == "true"

    async def _run(self, *args: str) -> str:
        proc = await asyncio.create_subprocess_exec(
            self._binary,
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout_b, stderr_b = await proc.communicate()
        if proc.returncode != 0:
            message = stderr_b.decode("utf-8", errors="replace").strip()
            self._logger.warning(
                "container_command_failed",
                command=args[0],
                returncode=proc.returncode,
                stderr=message[:512],
            )
            raise ContainerCommandError(
                f"{self._binary} {args[0]} failed with exit code {proc.returncode}: {message}",
                context={"command": args[0], "returncode": proc.returncode},
            )
        return stdout_b.decode("utf-8", errors="replace")


class ContainerRunner:
    """Drive one spec through create → start → exec → stop → remove."""

    def __init__(
        self,
        runtime: ContainerRuntime | None = None,
        *,
        validator: CommandValidator | None = None,
        image: str = DEFAULT_CONTAINER_IMAGE,
        interpreter: Sequence[str] = ("python", "-I", "-B"),
        max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES,
        kill_grace_ms: int = DEFAULT_KILL_GRACE_MS,
        scratch_base: Path | str | None = None,
        clock: Callable[[], float] = time.monotonic,
        logger: Any | None = None,
    ) -> None:
        if max_output_bytes <= 0:
            raise ValueError("max_output_bytes must be > 0")
        if kill_grace_ms < 0:
            raise ValueError("kill_grace_ms must be >= 0")
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._runtime = runtime or DockerCliRuntime(logger=self._logger)
        self._validator = validator or CommandValidator()
        self._image = image
        self._interpreter = tuple(interpreter)
        self._max_output_bytes = max_output_bytes
        self._kill_grace_s = kill_grace_ms / 1000.0
        self._scratch_base = None if scratch_base is None else Path(scratch_base)
        self._clock = clock

    @property
    def runtime(self) -> ContainerRuntime:
        return self._runtime

    async def run(self, spec: SandboxSpec, network: NetworkDecision) -> SandboxResult:
        if spec.tier is not IsolationTier.CONTAINER:
            raise ValueError("ContainerRunner only accepts container-tier specs")
        if spec.argv is not None:
            payload_argv: tuple[str, ...] = self._validator.validate_argv(spec.argv)
        else:
            assert spec.code is not None
            self._validator.validate_code(spec.code)
            payload_argv = ()
        if not await self._runtime.available():
            raise SandboxUnavailableError(
                "container runtime is not available on this host",
                context={"tier": spec.tier.value},
            )

        with scratch_directory(base_dir=self._scratch_base) as scratch:
            argv = list(payload_argv) if payload_argv else self._stage_code(spec, scratch)
            config = self._config_for(spec, network, scratch)
            return await self._run_in_container(spec, argv, config)

    def _stage_code(self, spec: SandboxSpec, scratch: ScratchLayout) -> list[str]:
        assert spec.code is not None
        atomic_write(scratch.work / "payload.py", spec.code)
        return [*self._interpreter, f"{SANDBOX_SCRATCH_MOUNT}/work/payload.py"]

    def _config_for(
        self, spec: SandboxSpec, network: NetworkDecision, scratch: ScratchLayout
    ) -> ContainerConfig:
        user = _container_user(scratch)
        env = (
            *spec.env,
            ("SANDBOX", "1"),
            ("SANDBOX_DIR", SANDBOX_SCRATCH_MOUNT),
            ("HOME", f"{SANDBOX_SCRATCH_MOUNT}/work"),
            ("TMPDIR", f"{SANDBOX_SCRATCH_MOUNT}/tmp"),
            ("PYTHONDONTWRITEBYTECODE", "1"),
        )
        return ContainerConfig(
            image=self._image,
            network=network.container_network,
            memory_bytes=spec.memory_limit_bytes,
            cpus=spec.cpu_limit,
            scratch_host=scratch.root,
            user=user,
            read_only=spec.read_only_fs,
            read_only_mounts=spec.allowed_paths,
            env=env,
        )

    async def _run_in_container(
        self, spec: SandboxSpec, argv: list[str], config: ContainerConfig
    ) -> SandboxResult:
        name = f"execguard-{generate_sandbox_id()}"
        started = self._clock()
        container_id = await self._runtime.create(name, config)
        killed_by = KillReason.NONE
        detail: str | None = None
        outcome: ExecOutcome | None = None
        exec_task: asyncio.Task[ExecOutcome] | None = None
        try:
            await self._runtime.start(container_id)
            self._logger.debug("sandbox_container_started", container=name)
            exec_task = asyncio.create_task(
                self._runtime.exec(
                    container_id,
                    argv,
                    stdin=spec.stdin,
                    workdir=f"{SANDBOX_SCRATCH_MOUNT}/work",
                    max_output_bytes=self._max_output_bytes,
                )
            )
            done, _ = await asyncio.wait({exec_task}, timeout=spec.timeout_ms / 1000.0)
            if exec_task in done:
                outcome = exec_task.result()
            else:
                killed_by = KillReason.TIMEOUT
                detail = f"wall-clock timeout of {spec.timeout_ms}ms"
                await self._runtime.stop(container_id, grace_s=self._kill_grace_s)
                outcome = await _collect_after_stop(exec_task, self._kill_grace_s + 1.0)

            if killed_by is KillReason.NONE and outcome.overflowed:
                killed_by = KillReason.LIMIT
                detail = f"output exceeded {self._max_output_bytes} bytes"
            elif killed_by is KillReason.NONE and outcome.exit_code == OOM_EXIT_CODE:
                killed_by = KillReason.LIMIT
                oom = await self._runtime.inspect_oom(container_id)
                detail = "out of memory" if oom else "killed (exit 137)"
        finally:
            if exec_task is not None:
                exec_task.cancel()
                await asyncio.gather(exec_task, return_exceptions=True)
            try:
                await self._runtime.remove(container_id)
            except ContainerCommandError as exc:
                self._logger.warning("sandbox_container_leaked", container=name, error=str(exc))

        duration_ms = (self._clock() - started) * 1000.0
        if killed_by is not KillReason.NONE:
            self._logger.info(
                "sandbox_timeout" if killed_by is KillReason.TIMEOUT else "sandbox_limit_kill",
                tier=spec.tier.value,
                duration_ms=round(duration_ms, 3),
                detail=detail,
            )
        return SandboxResult(
            exit_code=None if killed_by is KillReason.TIMEOUT else outcome.exit_code,
            stdout=outcome.stdout,
            stderr=outcome.stderr,
            duration_ms=duration_ms,
            killed_by=killed_by,
            tier=IsolationTier.CONTAINER,
            truncated=outcome.truncated,
            detail=detail,
            extras={"container": name, "network": config.network},
        )


async def _collect_after_stop(task: asyncio.Task[ExecOutcome], timeout_s: float) -> ExecOutcome:
    done, _ = await asyncio.wait({task}, timeout=timeout_s)
    if task in done and not task.cancelled() and task.exception() is None:
        return task.result()
    task.cancel()
    await asyncio.gather(task, return_exceptions=True)
    return ExecOutcome(exit_code=None, stdout="", stderr="")


def _container_user(scratch: ScratchLayout) -> str:
    """The unprivileged sandbox user when we can hand it the scratch tree, else our own uid."""

    if hasattr(os, "geteuid") and os.geteuid() == 0:
        uid, gid = (int(part) for part in SANDBOX_RUN_AS.split(":"))
        for directory, _, files in os.walk(scratch.root):
            os.chown(directory, uid, gid)
            for filename in files:
                os.chown(os.path.join(directory, filename), uid, gid)
        return SANDBOX_RUN_AS
    if hasattr(os, "getuid"):
        return f"{os.getuid()}:{os.getgid()}"
    return SANDBOX_RUN_AS


__all__ = [
    "OOM_EXIT_CODE",
    "ContainerCommandError",
    "ContainerConfig",
    "ContainerRunner",
    "ContainerRuntime",
    "DockerCliRuntime",
    "ExecOutcome",
    "build_create_args",
]
