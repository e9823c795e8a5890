"""Process tier: validated argv, scrubbed environment, rlimits and kill escalation.

Every child is a Python interpreter running the audit-hook bootstrap below, which denies
network access (unless allowed), subprocesses and writes outside the scratch tree. Interpreter
argv (script, ``-c`` or ``-m``) is rewritten to run under that bootstrap. Any other executable
is refused with ``SandboxUnavailableError`` because nothing here could confine it.
"""

from __future__ import annotations

import asyncio
import json
import math
import os
import re
import signal
import sys
import time
from collections.abc import Callable, Mapping, Sequence
from contextlib import suppress
from dataclasses import dataclass
from pathlib import Path, PurePath
from typing import Any, Final

import structlog

from execguard.constants import DEFAULT_KILL_GRACE_MS, DEFAULT_MAX_OUTPUT_BYTES
from execguard.sandbox.models import (
    IsolationTier,
    KillReason,
    SandboxPolicyError,
    SandboxResult,
    SandboxSpec,
    SandboxUnavailableError,
)
from execguard.sandbox.output import OutputCapture, drain, feed_stdin, pump
from execguard.security.command_validator import CommandValidator
from execguard.utils.fs import ScratchLayout, atomic_write, is_within, scratch_directory

try:  # pragma: no cover - platform dependent.
    import resource as _resource
except ModuleNotFoundError:  # pragma: no cover - Windows has no rlimits.
    _resource = None

DEFAULT_ENV_ALLOWLIST: Final[tuple[str, ...]] = ("PATH", "LANG", "LC_ALL", "TZ")
DEFAULT_MAX_FILE_BYTES: Final[int] = 10 * 1024 * 1024
_POLICY_ENV: Final[str] = "EXECGUARD_SANDBOX_POLICY"

# Runs inside the child before the payload. Audit hooks cannot be removed once installed.
_BOOTSTRAP_SOURCE: Final[str] = '''\
import json, os, sys

_policy = json.loads(os.environ.pop("EXECGUARD_SANDBOX_POLICY"))
_scratch = os.path.realpath(_policy["scratch"])
_network = _policy["allow_network"]
_write_flags = os.O_WRONLY | os.O_RDWR | os.O_CREAT | os.O_APPEND | os.O_TRUNC
_path_events = {"os.remove", "os.rename", "os.mkdir", "os.rmdir", "os.chmod",
                "os.chown", "os.link", "os.symlink", "os.truncate", "shutil.rmtree"}
_process_events = {"subprocess.Popen", "os.system", "os.exec", "os.posix_spawn",
                   "os.spawn", "os.fork", "os.forkpty", "os.kill", "os.killpg",
                   "ctypes.dlopen", "ctypes.cdata"}
_network_events = {"socket.connect", "socket.bind", "socket.sendto",
                   "socket.getaddrinfo", "socket.gethostbyname"}


def _inside(path):
    if isinstance(path, int):
        return True
    real = os.path.realpath(os.fsdecode(path))
    return real == _scratch or real.startswith(_scratch + os.sep)


def _deny(message):
    raise PermissionError("sandbox policy: " + message)


def _hook(event, args):
    if event == "open":
        path, mode, flags = args
        writing = (mode is not None and any(c in mode for c in "wax+")) or (
            mode is None and isinstance(flags, int) and flags & _write_flags
        )
        if writing and not _inside(path):
            _deny("write outside scratch: " + os.fsdecode(path))
    elif event in _path_events:
        if args and not _inside(args[0]):
            _deny(event + " outside scratch")
    elif event in _process_events:
        _deny(event + " is not allowed")
    elif event in _network_events and not _network:
        _deny("network access is disabled")


sys.addaudithook(_hook)
_mode, _target, _args = sys.argv[1], sys.argv[2], sys.argv[3:]
if _mode == "module":
    import runpy

    sys.argv = [_target, *_args]
    runpy.run_module(_target, run_name="__main__", alter_sys=True)
else:
    if _mode == "code":
        _name, _source = "<string>", _target
        sys.argv = ["-c", *_args]
    else:
        _name = _target
        with open(_target, encoding="utf-8") as _handle:
            _source = _handle.read()
        sys.argv = [_target, *_args]
    exec(compile(_source, _name, "exec"), {"__name__": "__main__", "__file__": _name})
'''


class ProcessRunner:
    """Spawn one child process per sandbox spec, confined to a private scratch tree."""

    def __init__(
        self,
        *,
        validator: CommandValidator | None = None,
        max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES,
        max_file_bytes: int = DEFAULT_MAX_FILE_BYTES,
        kill_grace_ms: int = DEFAULT_KILL_GRACE_MS,
        interpreter: Sequence[str] | None = None,
        env_allowlist: Sequence[str] = DEFAULT_ENV_ALLOWLIST,
        inherit_host_env: bool = False,
        scratch_base: Path | str | None = None,
        clock: Callable[[], float] = time.monotonic,
        logger: Any | None = None,
    ) -> None:
        if max_output_bytes <= 0:
            raise ValueError("max_output_bytes must be > 0")
        if max_file_bytes <= 0:
            raise ValueError("max_file_bytes must be > 0")
        if kill_grace_ms < 0:
            raise ValueError("kill_grace_ms must be >= 0")
        self._validator = validator or CommandValidator()
        self._max_output_bytes = max_output_bytes
        self._max_file_bytes = max_file_bytes
        self._kill_grace_s = kill_grace_ms / 1000.0
        self._interpreter = tuple(interpreter or (sys.executable, "-I", "-B"))
        self._env_allowlist = tuple(env_allowlist)
        self._inherit_host_env = bool(inherit_host_env)
        self._scratch_base = None if scratch_base is None else Path(scratch_base)
        self._clock = clock
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def scratch_base(self) -> Path | None:
        return self._scratch_base

    async def run(self, spec: SandboxSpec) -> SandboxResult:
        if spec.tier is not IsolationTier.PROCESS:
            raise ValueError("ProcessRunner only accepts process-tier specs")

        if spec.argv is not None:
            argv_payload = self._validator.validate_argv(spec.argv)
        else:
            assert spec.code is not None
            self._validator.validate_code(spec.code)
            argv_payload = ()
        env_extra = _validate_env(spec.env, self._validator)

        with scratch_directory(base_dir=self._scratch_base) as scratch:
            if spec.argv is not None:
                _check_path_arguments(argv_payload, spec.allowed_paths, scratch)
                argv = self._prepare_argv(argv_payload, scratch)
            else:
                argv = self._prepare_code(spec, scratch)
            env = self._build_environment(spec, scratch, env_extra)
            return await self._spawn(spec, argv, env, scratch)

    def _prepare_code(self, spec: SandboxSpec, scratch: ScratchLayout) -> list[str]:
        assert spec.code is not None
        bootstrap = _write_bootstrap(scratch)
        payload = scratch.work / "payload.py"
        atomic_write(payload, spec.code)
        return [*self._interpreter, str(bootstrap), "script", str(payload)]

    def _prepare_argv(self, argv: tuple[str, ...], scratch: ScratchLayout) -> list[str]:
        """Route interpreter argv through the bootstrap. Other executables cannot be confined."""

        if not _is_python(argv[0]):
            raise SandboxUnavailableError(
                f"the process tier cannot confine {PurePath(argv[0]).name!r}; "
                "run it on the container tier",
                context={"executable": argv[0]},
            )
        launch = _parse_interpreter_argv(argv)
        if launch.mode == "info":
            return [launch.interpreter, "-I", launch.target]
        bootstrap = _write_bootstrap(scratch)
        return [
            launch.interpreter,
            "-I",
            "-B",
            str(bootstrap),
            launch.mode,
            launch.target,
            *launch.args,
        ]

    def _build_environment(
        self,
        spec: SandboxSpec,
        scratch: ScratchLayout,
        extra: Mapping[str, str],
    ) -> dict[str, str]:
        if self._inherit_host_env:
            merged = dict(os.environ)
        else:
            merged = {
                name: os.environ[name] for name in self._env_allowlist if name in os.environ
            }
        merged.update(extra)
        merged.update(
            {
                "SANDBOX": "1",
                "SANDBOX_DIR": str(scratch.root),
                "TMPDIR": str(scratch.tmp),
                "HOME": str(scratch.work),
                "PYTHONDONTWRITEBYTECODE": "1",
            }
        )
        merged[_POLICY_ENV] = json.dumps(
            {"scratch": str(scratch.root), "allow_network": spec.allow_network}
        )
        return merged

    async def _spawn(
        self,
        spec: SandboxSpec,
        argv: list[str],
        env: dict[str, str],
        scratch: ScratchLayout,
    ) -> SandboxResult:
        timeout_s = spec.timeout_ms / 1000.0
        started = self._clock()
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.PIPE if spec.stdin is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(scratch.work),
            env=env,
            preexec_fn=self._limits_hook(spec),
            start_new_session=True,
        )
        self._logger.debug("sandbox_process_started", pid=proc.pid, timeout_ms=spec.timeout_ms)

        stdout = OutputCapture(self._max_output_bytes)
        stderr = OutputCapture(self._max_output_bytes)
        overflow = asyncio.Event()
        assert proc.stdout is not None and proc.stderr is not None
        readers = [
            asyncio.create_task(pump(proc.stdout, stdout, overflow)),
            asyncio.create_task(pump(proc.stderr, stderr, overflow)),
        ]
        if spec.stdin is not None and proc.stdin is not None:
            readers.append(asyncio.create_task(feed_stdin(proc.stdin, spec.stdin)))

        killed_by = KillReason.NONE
        detail: str | None = None
        exit_task = asyncio.create_task(proc.wait())
        overflow_task = asyncio.create_task(overflow.wait())
        try:
            done, _ = await asyncio.wait(
                {exit_task, overflow_task},
                timeout=timeout_s,
                return_when=asyncio.FIRST_COMPLETED,
            )
            if exit_task not in done:
                if overflow_task in done:
                    killed_by = KillReason.LIMIT
                    detail = f"output exceeded {self._max_output_bytes} bytes"
                else:
                    killed_by = KillReason.TIMEOUT
                    detail = f"wall-clock timeout of {spec.timeout_ms}ms"
                await self._terminate(proc)
        finally:
            overflow_task.cancel()
            with suppress(asyncio.CancelledError):
                await overflow_task
            if not exit_task.done():
                await self._terminate(proc)
            await exit_task
            await drain(readers, self._kill_grace_s + 1.0)

        duration_ms = (self._clock() - started) * 1000.0
        returncode = proc.returncode
        stderr_text = stderr.text()
        if killed_by is KillReason.NONE:
            killed_by, detail = classify_exit(returncode, stderr_text)

        if killed_by is not KillReason.NONE:
            self._logger.info(
                "sandbox_timeout" if killed_by is KillReason.TIMEOUT else "sandbox_limit_kill",
                tier=spec.tier.value,
                duration_ms=round(duration_ms, 3),
                detail=detail,
            )
        return SandboxResult(
            exit_code=returncode,
            stdout=stdout.text(),
            stderr=stderr_text,
            duration_ms=duration_ms,
            killed_by=killed_by,
            tier=IsolationTier.PROCESS,
            truncated=stdout.truncated or stderr.truncated,
            detail=detail,
        )

    async def _terminate(self, proc: asyncio.subprocess.Process) -> None:
        """SIGTERM the process group, wait the grace period, then SIGKILL."""

        if proc.returncode is not None:
            return
        signal_process_group(proc.pid, signal.SIGTERM)
        try:
            await asyncio.wait_for(proc.wait(), timeout=self._kill_grace_s)
            return
        except TimeoutError:
            self._logger.warning("sandbox_kill_escalated", pid=proc.pid)
        signal_process_group(proc.pid, signal.SIGKILL)
        await proc.wait()

    def _limits_hook(self, spec: SandboxSpec) -> Callable[[], None] | None:
        return rlimit_hook(
            memory_bytes=int(spec.memory_limit_bytes),
            cpu_seconds=cpu_seconds_for(spec),
            file_bytes=self._max_file_bytes,
        )


def cpu_seconds_for(spec: SandboxSpec) -> int:
    return max(1, math.ceil(spec.timeout_ms / 1000.0 * spec.cpu_limit))


def rlimit_hook(
    *, memory_bytes: int, cpu_seconds: int, file_bytes: int
) -> Callable[[], None] | None:
    """Build a ``preexec_fn`` applying address-space, CPU, file-size and core limits."""

    if _resource is None:
        return None
    limits = _resource

    def _apply() -> None:
        limits.setrlimit(limits.RLIMIT_AS, (memory_bytes, memory_bytes))
        limits.setrlimit(limits.RLIMIT_CPU, (cpu_seconds, cpu_seconds + 1))
        limits.setrlimit(limits.RLIMIT_FSIZE, (file_bytes, file_bytes))
        limits.setrlimit(limits.RLIMIT_CORE, (0, 0))

    return _apply


def signal_process_group(pid: int, sig: signal.Signals) -> None:
    with suppress(ProcessLookupError, PermissionError):
        os.killpg(pid, sig)


def classify_exit(returncode: int | None, stderr: str) -> tuple[KillReason, str | None]:
    if returncode is None:
        return KillReason.NONE, None
    limit_signals = {
        getattr(signal, "SIGXCPU", None): "cpu time limit exceeded",
        getattr(signal, "SIGXFSZ", None): "file size limit exceeded",
    }
    for sig, detail in limit_signals.items():
        if sig is not None and returncode == -int(sig):
            return KillReason.LIMIT, detail
    if returncode == -int(signal.SIGKILL):
        return KillReason.LIMIT, "killed by the kernel (hard resource limit)"
    if returncode != 0 and "MemoryError" in stderr:
        return KillReason.LIMIT, "memory limit exceeded"
    return KillReason.NONE, None


_PYTHON_EXECUTABLE: Final[re.Pattern[str]] = re.compile(r"^python(\d+(\.\d+)?)?$")
_PASSTHROUGH_FLAGS: Final[frozenset[str]] = frozenset(
    {"-B", "-E", "-I", "-O", "-OO", "-P", "-q", "-s", "-S", "-u", "-b", "-bb"}
)
_INFO_FLAGS: Final[frozenset[str]] = frozenset({"-V", "-VV", "--version", "-h", "--help"})


@dataclass(frozen=True, slots=True)
class _InterpreterLaunch:
    interpreter: str
    mode: str
    target: str
    args: tuple[str, ...] = ()


def _is_python(executable: str) -> bool:
    if _PYTHON_EXECUTABLE.match(PurePath(executable).name):
        return True
    return os.path.realpath(executable) == os.path.realpath(sys.executable)


def _parse_interpreter_argv(argv: Sequence[str]) -> _InterpreterLaunch:
    """Split interpreter argv into a bootstrap mode (script, code, module or info)."""

    interpreter, rest = argv[0], list(argv[1:])
    for index, item in enumerate(rest):
        if item in _INFO_FLAGS:
            return _InterpreterLaunch(interpreter, "info", item)
        if item in _PASSTHROUGH_FLAGS:
            continue
        if item in ("-c", "-m", "--"):
            if index + 1 >= len(rest):
                raise SandboxPolicyError(
                    f"interpreter option {item} needs a value", context={"index": index + 1}
                )
            mode = {"-c": "code", "-m": "module", "--": "script"}[item]
            target, args = rest[index + 1], tuple(rest[index + 2 :])
            return _InterpreterLaunch(interpreter, mode, target, args)
        if item.startswith("-"):
            raise SandboxPolicyError(
                f"interpreter option {item!r} is not supported on the process tier",
                context={"index": index + 1},
            )
        return _InterpreterLaunch(interpreter, "script", item, tuple(rest[index + 1 :]))
    raise SandboxPolicyError("interpreter argv must name a script, -c code or -m module")


def _write_bootstrap(scratch: ScratchLayout) -> Path:
    bootstrap = scratch.root / "bootstrap.py"
    atomic_write(bootstrap, _BOOTSTRAP_SOURCE)
    return bootstrap


def _validate_env(env: Sequence[tuple[str, str]], validator: CommandValidator) -> dict[str, str]:
    validated: dict[str, str] = {}
    for name, value in env:
        validator.validate_key(name)
        if not name.replace("_", "A").isalnum() or not name.isupper():
            raise SandboxPolicyError(f"environment variable name {name!r} is not allowed")
        if name.startswith(("LD_", "PYTHON", "EXECGUARD_")):
            raise SandboxPolicyError(f"environment variable {name!r} is reserved")
        validator.validate((value,))
        validated[name] = value
    return validated


def _check_path_arguments(
    argv: Sequence[str],
    allowed_paths: Sequence[Path],
    scratch: ScratchLayout,
) -> None:
    roots = (scratch.root, *allowed_paths)
    for index, item in enumerate(argv[1:], start=1):
        candidate = item.split("=", 1)[1] if item.startswith("--") and "=" in item else item
        if not candidate.startswith("/"):
            continue
        if not any(is_within(candidate, root) for root in roots):
            raise SandboxPolicyError(
                f"argument {index} references {candidate!r} outside the allowed paths",
                context={"index": index},
            )


__all__ = [
    "DEFAULT_ENV_ALLOWLIST",
    "DEFAULT_MAX_FILE_BYTES",
    "ProcessRunner",
    "classify_exit",
    "cpu_seconds_for",
    "rlimit_hook",
    "signal_process_group",
]
