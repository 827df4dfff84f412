"""Tests for process/runner.py against real child processes."""
from __future__ import annotations

import asyncio
import os
import sys
from pathlib import Path

import pytest

from infra_wizard.core.constants import StreamName
from infra_wizard.core.exceptions import (
    OperationCancelledError,
    ProcessExecutionError,
    ProcessSpawnError,
)
from infra_wizard.process.runner import CancellationToken, ProcessResult, ProcessRunner

PY = sys.executable


# ---------------------------------------------------------------------------
# ProcessResult
# ---------------------------------------------------------------------------


def test_result_ok_and_check() -> None:
    result = ProcessResult(exit_code=0, stdout="done")
    assert result.ok
    assert result.check("tool") is result


def test_result_check_raises_with_stderr() -> None:
    result = ProcessResult(exit_code=3, stderr="boom\n")
    with pytest.raises(ProcessExecutionError) as exc_info:
        result.check("tool run")
    assert exc_info.value.exit_code == 3
    assert exc_info.value.stderr == "boom\n"
    assert str(exc_info.value) == "tool run failed with exit code 3: boom"


# ---------------------------------------------------------------------------
# ProcessRunner
# ---------------------------------------------------------------------------


async def test_run_streams_both_streams_in_order() -> None:
    script = (
        "import sys\n"
        "print('one', flush=True)\n"
        "print('warn', file=sys.stderr, flush=True)\n"
        "print('two', flush=True)\n"
    )
    lines: list[tuple[StreamName, str]] = []

    async def sink(stream: StreamName, line: str) -> None:
        lines.append((stream, line))

    result = await ProcessRunner().run(PY, ["-c", script], on_output=sink)

    assert result.exit_code == 0
    assert result.stdout == "one\ntwo"
    assert result.stderr == "warn"
    assert [line for stream, line in lines if stream == StreamName.STDOUT] == ["one", "two"]
    assert (StreamName.STDERR, "warn") in lines


async def test_run_accepts_sync_sink_and_skips_blank_lines() -> None:
    lines: list[str] = []
    await ProcessRunner().run(
        PY, ["-c", "print('a'); print(''); print('b')"], on_output=lambda s, line: lines.append(line)
    )
    assert lines == ["a", "b"]


async def test_run_returns_nonzero_exit_code() -> None:
    result = await ProcessRunner().run(PY, ["-c", "import sys; sys.exit(7)"])
    assert result.exit_code == 7
    assert not result.ok


async def test_run_env_overlay_does_not_touch_parent() -> None:
    result = await ProcessRunner().run(
        PY,
        ["-c", "import os; print(os.environ['IW_TEST_VAR'], 'PATH' in os.environ)"],
        env={"IW_TEST_VAR": "child-only"},
    )
    assert result.stdout == "child-only True"
    assert "IW_TEST_VAR" not in os.environ


async def test_run_uses_cwd(tmp_path: Path) -> None:
    result = await ProcessRunner().run(PY, ["-c", "import os; print(os.getcwd())"], cwd=tmp_path)
    assert os.path.samefile(result.stdout, tmp_path)


async def test_run_feeds_stdin() -> None:
    result = await ProcessRunner().run(
        PY, ["-c", "import sys; print(sys.stdin.read().upper())"], stdin_data="secret"
    )
    assert result.stdout == "SECRET"


async def test_run_missing_executable_raises_spawn_error() -> None:
    with pytest.raises(ProcessSpawnError) as exc_info:
        await ProcessRunner().run("definitely-not-a-real-binary-xyz")
    assert exc_info.value.details["executable"] == "definitely-not-a-real-binary-xyz"


async def test_run_splits_overlong_line_instead_of_failing() -> None:
    script = "import sys\nsys.stdout.write('x' * (2 * 1024 * 1024))\nsys.stdout.write('\\ntail\\n')\n"
    result = await ProcessRunner().run(PY, ["-c", script])
    assert result.ok
    lines = result.stdout.split("\n")
    assert lines[-1] == "tail"
    assert sum(len(line) for line in lines[:-1]) == 2 * 1024 * 1024


def _alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    return True


async def test_failing_sink_kills_child_process() -> None:
    script = "import os, time\nprint(os.getpid(), flush=True)\ntime.sleep(30)\n"
    pids: list[int] = []

    def sink(stream: StreamName, line: str) -> None:
        pids.append(int(line))
        raise RuntimeError("sink broke")

    with pytest.raises(RuntimeError, match="sink broke"):
        await asyncio.wait_for(ProcessRunner().run(PY, ["-c", script], on_output=sink), 10)

    assert len(pids) == 1
    assert not _alive(pids[0])


async def test_cancel_terminates_running_process() -> None:
    token = CancellationToken(grace_seconds=1.0)
    task = asyncio.create_task(
        ProcessRunner().run(PY, ["-c", "import time; time.sleep(30)"], cancel=token)
    )
    for _ in range(200):
        if token.has_process:
            break
        await asyncio.sleep(0.01)
    assert token.has_process

    token.cancel()
    with pytest.raises(OperationCancelledError):
        await asyncio.wait_for(task, timeout=5)
    assert not token.has_process


async def test_pre_cancelled_token_prevents_spawn() -> None:
    token = CancellationToken()
    token.cancel()
    with pytest.raises(OperationCancelledError, match="not started"):
        await ProcessRunner().run(PY, ["-c", "print('never')"], cancel=token)


# ---------------------------------------------------------------------------
# CancellationToken
# ---------------------------------------------------------------------------


class _FakeProcess:
    def __init__(self) -> None:
        self.returncode: int | None = None
        self.signals: list[str] = []

    def terminate(self) -> None:
        self.signals.append("term")

    def kill(self) -> None:
        self.signals.append("kill")
        self.returncode = -9


async def test_token_escalates_to_kill_after_grace() -> None:
    token = CancellationToken(grace_seconds=0.01)
    process = _FakeProcess()
    token.attach(process)
    token.cancel()
    await asyncio.sleep(0.05)
    assert process.signals == ["term", "kill"]


async def test_token_terminates_process_attached_after_cancel() -> None:
    token = CancellationToken(grace_seconds=10)
    token.cancel()
    process = _FakeProcess()
    token.attach(process)
    assert process.signals == ["term"]


def test_token_cancel_is_idempotent() -> None:
    token = CancellationToken()
    token.cancel()
    token.cancel()
    assert token.cancelled
    assert not token.has_process
    assert "cancelled=True" in repr(token)
