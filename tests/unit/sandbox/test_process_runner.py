"""Unit tests for the process tier. These spawn real child interpreters."""

from __future__ import annotations

import json
import sys
from pathlib import Path

import pytest

from execguard.errors import SecurityViolationError, ValidationError
from execguard.sandbox.models import (
    IsolationTier,
    KillReason,
    SandboxPolicyError,
    SandboxSpec,
    SandboxUnavailableError,
)
from execguard.sandbox.process_runner import ProcessRunner

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="POSIX process groups required")


def _code_spec(code: str, **kwargs: object) -> SandboxSpec:
    kwargs.setdefault("timeout_ms", 10_000)
    return SandboxSpec(tier=IsolationTier.PROCESS, code=code, **kwargs)  # type: ignore[arg-type]


def _runner(**kwargs: object) -> ProcessRunner:
    kwargs.setdefault("kill_grace_ms", 500)
    return ProcessRunner(**kwargs)  # type: ignore[arg-type]


@pytest.mark.asyncio
async def test_code_payload_runs_with_scratch_environment() -> None:
    code = (
        "import os\n"
        "print(os.environ['SANDBOX'])\n"
        "print(os.environ['HOME'] == os.getcwd())\n"
        "print('EXECGUARD_SANDBOX_POLICY' in os.environ)\n"
    )

    result = await _runner().run(_code_spec(code))

    assert result.succeeded, result.stderr
    assert result.stdout.split() == ["1", "True", "False"]
    assert result.tier is IsolationTier.PROCESS


@pytest.mark.asyncio
async def test_host_environment_is_scrubbed(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("EXECGUARD_TEST_SECRET", "hunter2")
    code = "import os\nprint(os.environ.get('EXECGUARD_TEST_SECRET', 'absent'))\n"

    result = await _runner().run(_code_spec(code, env=(("BUILD_MODE", "ci"),)))

    assert result.stdout.strip() == "absent"


@pytest.mark.asyncio
async def test_argv_payload_runs_validated_command() -> None:
    result = await _runner().run(
        SandboxSpec(tier=IsolationTier.PROCESS, argv=(sys.executable, "-I", "--version"))
    )

    assert result.exit_code == 0
    assert "Python" in result.stdout + result.stderr


@pytest.mark.asyncio
async def test_timeout_kills_the_process_group() -> None:
    result = await _runner().run(_code_spec("while True:\n    pass\n", timeout_ms=500))

    assert result.killed_by is KillReason.TIMEOUT
    assert result.exit_code is not None and result.exit_code < 0
    assert result.duration_ms >= 450


@pytest.mark.asyncio
async def test_output_overflow_is_a_limit_kill() -> None:
    code = "import sys\nsys.stdout.write('x' * 8192)\nsys.stdout.flush()\nwhile True:\n    pass\n"

    result = await _runner(max_output_bytes=1_024).run(_code_spec(code))

    assert result.killed_by is KillReason.LIMIT
    assert result.truncated is True
    assert len(result.stdout) == 1_024


@pytest.mark.asyncio
async def test_writes_inside_scratch_succeed() -> None:
    code = "with open('notes.txt', 'w') as handle:\n    handle.write('ok')\nprint('written')\n"

    result = await _runner().run(_code_spec(code))

    assert result.succeeded, result.stderr
    assert result.stdout.strip() == "written"


@pytest.mark.asyncio
async def test_write_outside_scratch_is_denied(tmp_path: Path) -> None:
    target = tmp_path / "escape.txt"
    code = f"open({str(target)!r}, 'w').write('leak')\n"

    result = await _runner().run(_code_spec(code))

    assert result.exit_code not in (None, 0)
    assert "write outside scratch" in result.stderr
    assert not target.exists()


@pytest.mark.asyncio
async def test_network_is_denied_when_not_allowed() -> None:
    code = "import socket\nsocket.create_connection(('127.0.0.1', 9), timeout=1)\n"

    result = await _runner().run(_code_spec(code))

    assert result.exit_code not in (None, 0)
    assert "network access is disabled" in result.stderr


@pytest.mark.asyncio
async def test_subprocess_spawning_is_denied() -> None:
    code = "import subprocess\nsubprocess.run(['true'])\n"

    result = await _runner().run(_code_spec(code))

    assert result.exit_code not in (None, 0)
    assert "is not allowed" in result.stderr


@pytest.mark.asyncio
async def test_interpreter_script_cannot_open_a_socket(tmp_path: Path) -> None:
    script = tmp_path / "serve.py"
    script.write_text(
        "import socket\nsock = socket.socket()\nsock.bind(('127.0.0.1', 0))\nprint('bound')\n",
        encoding="utf-8",
    )
    spec = SandboxSpec(
        tier=IsolationTier.PROCESS,
        argv=(sys.executable, str(script)),
        allowed_paths=(tmp_path,),
        timeout_ms=10_000,
    )

    result = await _runner().run(spec)

    assert result.exit_code not in (None, 0)
    assert "network access is disabled" in result.stderr
    assert "bound" not in result.stdout


@pytest.mark.asyncio
async def test_interpreter_script_cannot_write_outside_scratch(tmp_path: Path) -> None:
    target = tmp_path / "escape.txt"
    script = tmp_path / "leak.py"
    script.write_text(f"open({str(target)!r}, 'w').write('leak')\n", encoding="utf-8")
    spec = SandboxSpec(
        tier=IsolationTier.PROCESS,
        argv=(sys.executable, str(script)),
        allowed_paths=(tmp_path,),
        timeout_ms=10_000,
    )

    result = await _runner().run(spec)

    assert result.exit_code not in (None, 0)
    assert "write outside scratch" in result.stderr
    assert not target.exists()


@pytest.mark.asyncio
async def test_interpreter_module_runs_under_the_bootstrap() -> None:
    spec = SandboxSpec(
        tier=IsolationTier.PROCESS,
        argv=(sys.executable, "-m", "json.tool"),
        stdin='{"b": 1}',
        timeout_ms=10_000,
    )

    result = await _runner().run(spec)

    assert result.succeeded, result.stderr
    assert json.loads(result.stdout) == {"b": 1}


@pytest.mark.asyncio
async def test_executables_that_cannot_be_confined_are_refused() -> None:
    spec = SandboxSpec(tier=IsolationTier.PROCESS, argv=("ls", "-l"))

    with pytest.raises(SandboxUnavailableError, match="container tier"):
        await _runner().run(spec)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "argv",
    [(sys.executable,), (sys.executable, "-X", "dev", "-c", "pass"), (sys.executable, "-m")],
)
async def test_unsupported_interpreter_argv_is_rejected(argv: tuple[str, ...]) -> None:
    with pytest.raises(SandboxPolicyError):
        await _runner().run(SandboxSpec(tier=IsolationTier.PROCESS, argv=argv))


@pytest.mark.asyncio
async def test_stdin_is_forwarded() -> None:
    code = "import sys\nprint(sys.stdin.read().upper())\n"

    result = await _runner().run(_code_spec(code, stdin="hello"))

    assert result.stdout.strip() == "HELLO"


@pytest.mark.asyncio
async def test_absolute_argument_outside_allowed_paths_is_rejected() -> None:
    spec = SandboxSpec(tier=IsolationTier.PROCESS, argv=(sys.executable, "/etc/passwd"))

    with pytest.raises(SandboxPolicyError, match="outside the allowed paths"):
        await _runner().run(spec)


@pytest.mark.asyncio
async def test_blocked_executable_is_rejected() -> None:
    spec = SandboxSpec(tier=IsolationTier.PROCESS, argv=("rm", "notes.txt"))

    with pytest.raises(SecurityViolationError):
        await _runner().run(spec)


@pytest.mark.asyncio
async def test_reserved_environment_names_are_rejected() -> None:
    spec = _code_spec("print(1)", env=(("LD_PRELOAD", "evil.so"),))

    with pytest.raises(SandboxPolicyError, match="reserved"):
        await _runner().run(spec)


@pytest.mark.asyncio
async def test_environment_values_are_validated() -> None:
    spec = _code_spec("print(1)", env=(("TARGET", "$(whoami)"),))

    with pytest.raises(ValidationError):
        await _runner().run(spec)
