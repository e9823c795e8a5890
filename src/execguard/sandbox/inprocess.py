"""In-process tier: statically checked Python subset run against an allow-listed scope.

The payload is parsed and walked before anything executes. Imports, dunder access,
frame/introspection attributes and every builtin outside :data:`SAFE_BUILTINS` are
rejected with :class:`SandboxPolicyError`.

Accepted payloads run in a disposable evaluator interpreter whose only globals are the
allow-listed builtins. The evaluator counts line events against the step budget and
measures the payload's allocations with :mod:`tracemalloc` against the spec's memory
limit, under an address-space rlimit as the hard ceiling. The wall-clock deadline is
enforced from outside by killing the evaluator, so a payload stuck inside one long
C-level call is still stopped on time.
"""

from __future__ import annotations

import ast
import asyncio
import builtins
import json
import signal
import sys
import time
from collections.abc import Callable, Sequence
from pathlib import Path
from types import CodeType
from typing import Any, Final

import structlog

from execguard.constants import DEFAULT_MAX_OUTPUT_BYTES
from execguard.sandbox.models import (
    IsolationTier,
    KillReason,
    SandboxPolicyError,
    SandboxResult,
    SandboxSpec,
)
from execguard.sandbox.output import OutputCapture, drain, feed_stdin, pump
from execguard.sandbox.process_runner import (
    classify_exit,
    cpu_seconds_for,
    rlimit_hook,
    signal_process_group,
)
from execguard.utils.fs import scratch_directory

EVALUATOR_HEADROOM_BYTES: Final[int] = 128 * 1024 * 1024
_REPORT_ROOM_BYTES: Final[int] = 64 * 1024
_DRAIN_TIMEOUT_S: Final[float] = 2.0

_SAFE_BUILTIN_NAMES: Final[tuple[str, ...]] = (
    "abs",
    "all",
    "any",
    "ascii",
    "bin",
    "bool",
    "callable",
    "chr",
    "dict",
    "divmod",
    "enumerate",
    "filter",
    "float",
    "frozenset",
    "hash",
    "hex",
    "int",
    "isinstance",
    "issubclass",
    "iter",
    "len",
    "list",
    "map",
    "max",
    "min",
    "next",
    "oct",
    "ord",
    "pow",
    "range",
    "repr",
    "reversed",
    "round",
    "set",
    "slice",
    "sorted",
    "str",
    "sum",
    "tuple",
    "zip",
    "ArithmeticError",
    "AssertionError",
    "Exception",
    "IndexError",
    "KeyError",
    "LookupError",
    "OverflowError",
    "RuntimeError",
    "StopIteration",
    "TypeError",
    "ValueError",
    "ZeroDivisionError",
)

SAFE_BUILTINS: Final[frozenset[str]] = frozenset((*_SAFE_BUILTIN_NAMES, "print"))

_DENIED_ATTRIBUTES: Final[frozenset[str]] = frozenset(
    {
        "format",
        "format_map",
        "mro",
        "gi_frame",
        "gi_code",
        "ag_frame",
        "cr_frame",
        "f_back",
        "f_builtins",
        "f_globals",
        "f_locals",
        "tb_frame",
        "tb_next",
        "co_code",
    }
)

_DENIED_NODES: Final[dict[type[ast.AST], str]] = {
    ast.Import: "import statements",
    ast.ImportFrom: "import statements",
    ast.Global: "global declarations",
    ast.Nonlocal: "nonlocal declarations",
    ast.ClassDef: "class definitions",
    ast.AsyncFunctionDef: "async functions",
    ast.AsyncFor: "async loops",
    ast.AsyncWith: "async context managers",
    ast.Await: "await expressions",
    ast.With: "context managers",
}


class _CapabilityVisitor(ast.NodeVisitor):
    """Reject any construct that reaches outside the allow-listed capability surface."""

    def generic_visit(self, node: ast.AST) -> Any:
        description = _DENIED_NODES.get(type(node))
        if description is not None:
            _deny(node, f"{description} are not available")
        return super().generic_visit(node)

    def visit_Name(self, node: ast.Name) -> Any:
        if node.id.startswith("__"):
            _deny(node, f"access to {node.id!r} is not allowed")
        builtin_value = getattr(builtins, node.id, None)
        if (
            builtin_value is not None
            and node.id not in SAFE_BUILTINS
            and isinstance(node.ctx, ast.Load)
        ):
            _deny(node, f"builtin {node.id!r} is not available")
        self.generic_visit(node)

    def visit_Attribute(self, node: ast.Attribute) -> Any:
        if node.attr.startswith("_"):
            _deny(node, f"access to attribute {node.attr!r} is not allowed")
        if node.attr in _DENIED_ATTRIBUTES:
            _deny(node, f"attribute {node.attr!r} is not available")
        self.generic_visit(node)

    def visit_ExceptHandler(self, node: ast.ExceptHandler) -> Any:
        if node.type is None:
            _deny(node, "bare except clauses are not allowed")
        self.generic_visit(node)

    def visit_Try(self, node: ast.Try) -> Any:
        # finally blocks would run after the deadline exception unsupervised
        if node.finalbody:
            _deny(node, "finally clauses are not allowed")
        self.generic_visit(node)

    def visit_FunctionDef(self, node: ast.FunctionDef) -> Any:
        if node.name.startswith("__"):
            _deny(node, f"function name {node.name!r} is not allowed")
        self.generic_visit(node)


def compile_restricted(code: str, *, filename: str = "<sandbox>") -> CodeType:
    """Parse, capability-check and compile ``code``. Raises ``SandboxPolicyError``."""

    try:
        tree = ast.parse(code, filename=filename, mode="exec")
    except SyntaxError as exc:
        raise SandboxPolicyError(
            f"payload is not valid Python: {exc.msg} (line {exc.lineno})",
            context={"line": exc.lineno or 0},
        ) from exc
    _CapabilityVisitor().visit(tree)
    return compile(tree, filename, "exec")



# Runs as the evaluator's main module. The job arrives as one JSON document on stdin and
# the report leaves as the last stderr line; payload output goes to stdout unbuffered.
_EVALUATOR_SOURCE: Final[str] = r'''
import builtins, json, sys, tracemalloc

_job = json.loads(sys.stdin.read())
_out = sys.stdout
_denied_prefixes = ("socket.", "subprocess.", "os.", "shutil.", "ctypes.", "urllib.")


class _Budget(BaseException):
    def __init__(self, status):
        super().__init__(status)
        self.status = status


class _Guard:
    def __init__(self):
        self.steps = 0
        self.written = 0
        self.truncated = False
        self.baseline = 0

    def allocated(self):
        return tracemalloc.get_traced_memory()[1] - self.baseline

    def enter(self, frame, event, arg):
        return self.trace if frame.f_code.co_filename == "<sandbox>" else None

    def trace(self, frame, event, arg):
        if event == "line":
            self.steps += 1
            if _job["max_steps"] is not None and self.steps > _job["max_steps"]:
                raise _Budget("steps")
            if self.allocated() > _job["memory_limit"]:
                raise _Budget("memory")
        return self.trace

    def print(self, *values, sep=" ", end="\n"):
        text = sep.join(str(value) for value in values) + end
        room = _job["max_output"] - self.written
        if len(text) > room:
            self.truncated = True
            text = text[: max(room, 0)]
        if text:
            self.written += len(text)
            _out.write(text)


def _audit(event, args):
    if event == "open" or event.startswith(_denied_prefixes):
        raise PermissionError("sandbox policy: " + event + " is not available")


_guard = _Guard()
_builtins = {name: getattr(builtins, name) for name in _job["builtins"]}
_builtins["print"] = _guard.print
_scope = {"__builtins__": _builtins}
_code = compile(_job["code"], "<sandbox>", "exec")
_report = {"status": "ok"}
tracemalloc.start()
_guard.baseline = tracemalloc.get_traced_memory()[0]
sys.addaudithook(_audit)
sys.settrace(_guard.enter)
try:
    exec(_code, _scope)
except _Budget as exc:
    _report = {"status": exc.status}
except MemoryError:
    _report = {"status": "memory"}
except Exception as exc:
    _message = type(exc).__name__ + ": " + str(exc)
    _report = {"status": "error", "error": _message[: _job["max_output"]]}
finally:
    sys.settrace(None)
_peak = _guard.allocated()
if _report["status"] == "ok" and _peak > _job["memory_limit"]:
    _report = {"status": "memory"}
_report["peak_bytes"] = _peak
_report["truncated"] = _guard.truncated
_out.flush()
sys.stderr.write(json.dumps(_report) + "\n")
'''


class InProcessRunner:
    """Run restricted snippets against the allow-listed scope in a disposable evaluator."""

    def __init__(
        self,
        *,
        max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES,
        max_steps: int | None = None,
        interpreter: Sequence[str] | None = None,
        scratch_base: Path | str | None = None,
        clock: Callable[[], float] = time.monotonic,
        logger: Any | None = None,
    ) -> None:
        if max_output_bytes <= 0:
            raise ValueError("max_output_bytes must be > 0")
        if max_steps is not None and max_steps <= 0:
            raise ValueError("max_steps must be > 0")
        self._max_output_bytes = max_output_bytes
        self._max_steps = max_steps
        self._interpreter = tuple(
            interpreter or (sys.executable, "-I", "-S", "-B", "-u", "-X", "utf8")
        )
        self._scratch_base = None if scratch_base is None else Path(scratch_base)
        self._clock = clock
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    async def run(self, spec: SandboxSpec) -> SandboxResult:
        if spec.tier is not IsolationTier.IN_PROCESS or spec.code is None:
            raise ValueError("InProcessRunner only accepts in_process specs with code")
        compile_restricted(spec.code)
        job = json.dumps(
            {
                "code": spec.code,
                "builtins": list(_SAFE_BUILTIN_NAMES),
                "max_steps": self._max_steps,
                "memory_limit": spec.memory_limit_bytes,
                "max_output": self._max_output_bytes,
            }
        )
        with scratch_directory(base_dir=self._scratch_base) as scratch:
            return await self._evaluate(spec, job, str(scratch.work))

    async def _evaluate(self, spec: SandboxSpec, job: str, workdir: str) -> SandboxResult:
        started = self._clock()
        proc = await asyncio.create_subprocess_exec(
            *self._interpreter,
            "-c",
            _EVALUATOR_SOURCE,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=workdir,
            env={"PYTHONDONTWRITEBYTECODE": "1"},
            preexec_fn=rlimit_hook(
                memory_bytes=spec.memory_limit_bytes
                + max(spec.memory_limit_bytes, EVALUATOR_HEADROOM_BYTES),
                cpu_seconds=cpu_seconds_for(spec),
                file_bytes=0,
            ),
            start_new_session=True,
        )
        self._logger.debug("sandbox_evaluator_started", pid=proc.pid, timeout_ms=spec.timeout_ms)

        # The evaluator caps payload output in characters; capture room covers UTF-8 width.
        stdout = OutputCapture(self._max_output_bytes * 4)
        stderr = OutputCapture(self._max_output_bytes * 4 + _REPORT_ROOM_BYTES)
        overflow = asyncio.Event()
        assert proc.stdin is not None and proc.stdout is not None and proc.stderr is not None
        readers = [
            asyncio.create_task(pump(proc.stdout, stdout, overflow)),
            asyncio.create_task(pump(proc.stderr, stderr, overflow)),
            asyncio.create_task(feed_stdin(proc.stdin, job)),
        ]

        exit_task = asyncio.create_task(proc.wait())
        timed_out = False
        try:
            done, _ = await asyncio.wait({exit_task}, timeout=spec.timeout_ms / 1000.0)
            timed_out = exit_task not in done
        finally:
            if not exit_task.done():
                signal_process_group(proc.pid, signal.SIGKILL)
            await exit_task
            await drain(readers, _DRAIN_TIMEOUT_S)

        duration_ms = (self._clock() - started) * 1000.0
        report = _parse_report(stderr.text())
        if timed_out:
            exit_code, error = None, ""
            killed_by, detail = KillReason.TIMEOUT, f"wall-clock timeout of {spec.timeout_ms}ms"
        elif report is None:
            error = stderr.text()
            killed_by, detail = classify_exit(proc.returncode, error)
            exit_code = proc.returncode if killed_by is KillReason.NONE else None
        else:
            exit_code, error, killed_by, detail = self._interpret(report, spec)

        if killed_by is not KillReason.NONE:
            self._logger.info(
                "sandbox_timeout" if killed_by is KillReason.TIMEOUT else "sandbox_limit_kill",
                tier=spec.tier.value,
                duration_ms=round(duration_ms, 3),
                detail=detail,
            )
        return SandboxResult(
            exit_code=exit_code,
            stdout=stdout.text(),
            stderr=error,
            duration_ms=duration_ms,
            killed_by=killed_by,
            tier=IsolationTier.IN_PROCESS,
            truncated=bool(report and report.get("truncated")) or stdout.truncated,
            detail=detail,
        )

    def _interpret(
        self, report: dict[str, Any], spec: SandboxSpec
    ) -> tuple[int | None, str, KillReason, str | None]:
        status = report["status"]
        if status == "ok":
            return 0, "", KillReason.NONE, None
        if status == "steps":
            return None, "", KillReason.LIMIT, f"step budget of {self._max_steps} exhausted"
        if status == "memory":
            detail = f"memory limit of {spec.memory_limit_bytes} bytes exceeded"
            return None, "", KillReason.LIMIT, detail
        return 1, str(report.get("error", "")), KillReason.NONE, None


def _parse_report(stderr: str) -> dict[str, Any] | None:
    lines = stderr.strip().splitlines()
    if not lines:
        return None
    try:
        report = json.loads(lines[-1])
    except ValueError:
        return None
    if not isinstance(report, dict) or "status" not in report:
        return None
    return report


def _deny(node: ast.AST, message: str) -> None:
    line = getattr(node, "lineno", 0)
    raise SandboxPolicyError(f"line {line}: {message}", context={"line": line})


__all__ = [
    "EVALUATOR_HEADROOM_BYTES",
    "InProcessRunner",
    "SAFE_BUILTINS",
    "compile_restricted",
]
