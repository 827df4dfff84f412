"""Async process supervision for the external CLIs the pipeline drives.

Every stage that shells out (git, docker, terraform, aws, kubectl) goes
through :class:`ProcessRunner`. Output is streamed line-by-line to a sink as
it is produced, and the running process is registered on a
:class:`CancellationToken` so a workflow can be cancelled from outside.
"""
from __future__ import annotations

import asyncio
import contextlib
import inspect
import os
from collections.abc import Awaitable, Callable, Mapping, Sequence
from pathlib import Path
from typing import Any, Protocol

import structlog
from pydantic import BaseModel

from infra_wizard.core.constants import StreamName
from infra_wizard.core.exceptions import (
    OperationCancelledError,
    ProcessExecutionError,
    ProcessSpawnError,
)

logger = structlog.get_logger(__name__)

OutputSink = Callable[[StreamName, str], Awaitable[None] | None]

_STREAM_LIMIT = 1024 * 1024


class ProcessResult(BaseModel):
    """Outcome of one external process run.

    Attributes:
        exit_code: Process exit status (negative when killed by a signal).
        stdout: All stdout lines joined with ``\\n``.
        stderr: All stderr lines joined with ``\\n``.
    """

    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    def check(self, command: str) -> ProcessResult:
        """Return ``self`` on success, raise :class:`ProcessExecutionError` otherwise."""
        if not self.ok:
            raise ProcessExecutionError(
                f"{command} failed with exit code {self.exit_code}: {self.stderr.strip()}",
                exit_code=self.exit_code,
                stderr=self.stderr,
            )
        return self


class _Killable(Protocol):
    returncode: int | None

    def terminate(self) -> None: ...

    def kill(self) -> None: ...


class CancellationToken:
    """Tracks the OS process currently running on behalf of one workflow.

    ``cancel()`` sends SIGTERM to the tracked process and SIGKILL after
    ``grace_seconds`` if it is still alive. A process attached after
    cancellation is terminated immediately.
    """

    def __init__(self, grace_seconds: float = 5.0) -> None:
        self._grace_seconds = grace_seconds
        self._cancelled = False
        self._process: _Killable | None = None

    def __repr__(self) -> str:
        return f"CancellationToken(cancelled={self._cancelled}, running={self.has_process})"

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def has_process(self) -> bool:
        return self._process is not None and self._process.returncode is None

    def attach(self, process: _Killable) -> None:
        self._process = process
        if self._cancelled:
            self._terminate(process)

    def detach(self, process: _Killable) -> None:
        if self._process is process:
            self._process = None

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        if self._process is not None:
            self._terminate(self._process)

    def _terminate(self, process: _Killable) -> None:
        if process.returncode is not None:
            return
        try:
            process.terminate()
        except ProcessLookupError:
            return
        logger.info("process_terminated", grace_seconds=self._grace_seconds)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        loop.call_later(self._grace_seconds, self._kill, process)

    @staticmethod
    def _kill(process: _Killable) -> None:
        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass


class Runner(Protocol):
    """Structural type shared by :class:`ProcessRunner` and the mock runner."""

    async def run(
        self,
        executable: str,
        args: Sequence[str] = (),
        *,
        cwd: Path | str | None = None,
        env: Mapping[str, str] | None = None,
        on_output: OutputSink | None = None,
        cancel: CancellationToken | None = None,
        stdin_data: str | None = None,
    ) -> ProcessResult: ...


class ProcessRunner:
    """Spawn external commands with asyncio and stream their output.

    The child environment is ``os.environ`` overlaid with the caller's
    ``env`` mapping. The parent environment is never modified, so concurrent
    workflows can pass different credentials safely.

    Usage::

        runner = ProcessRunner()
        result = await runner.run(
            "terraform", ["init", "-input=false"],
            cwd=workdir,
            env={"AWS_DEFAULT_REGION": "us-east-1"},
            on_output=lambda stream, line: print(stream, line),
        )
        result.check("terraform init")
    """

    async def run(
        self,
        executable: str,
        args: Sequence[str] = (),
        *,
        cwd: Path | str | None = None,
        env: Mapping[str, str] | None = None,
        on_output: OutputSink | None = None,
        cancel: CancellationToken | None = None,
        stdin_data: str | None = None,
    ) -> ProcessResult:
        """Run *executable* with *args* and wait for it to exit.

        Args:
            executable: Program name or path.
            args: Command-line arguments. Must not contain secrets.
            cwd: Working directory for the child.
            env: Extra environment variables for the child only.
            on_output: Called with ``(stream, line)`` for every non-blank
                output line. May be a coroutine function.
            cancel: Token the process is registered on while it runs.
            stdin_data: Text written to the child's stdin, then closed.

        Returns:
            A :class:`ProcessResult`; non-zero exits are returned, not raised.

        Raises:
            ProcessSpawnError: The executable could not be started.
            OperationCancelledError: The token was cancelled before or while
                the process ran.
        """
        if cancel is not None and cancel.cancelled:
            raise OperationCancelledError(f"{executable} not started: operation cancelled")

        child_env: dict[str, str] = {**os.environ, **(env or {})}
        logger.debug(
            "process_spawn",
            executable=executable,
            subcommand=args[0] if args else None,
            cwd=str(cwd) if cwd is not None else None,
        )
        try:
            process = await asyncio.create_subprocess_exec(
                executable,
                *args,
                cwd=str(cwd) if cwd is not None else None,
                env=child_env,
                stdin=asyncio.subprocess.PIPE if stdin_data is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=_STREAM_LIMIT,
            )
        except OSError as exc:
            raise ProcessSpawnError(
                f"Failed to start {executable}: {exc}",
                details={"executable": executable},
            ) from exc

        if cancel is not None:
            cancel.attach(process)
        try:
            if stdin_data is not None:
                await self._feed_stdin(process, stdin_data)
            assert process.stdout is not None and process.stderr is not None
            stdout_lines, stderr_lines = await asyncio.gather(
                self._pump(process.stdout, StreamName.STDOUT, on_output),
                self._pump(process.stderr, StreamName.STDERR, on_output),
            )
            exit_code = await process.wait()
        except BaseException:
            if process.returncode is None:
                with contextlib.suppress(ProcessLookupError):
                    process.kill()
                await process.wait()
            raise
        finally:
            if cancel is not None:
                cancel.detach(process)

        logger.debug("process_exit", executable=executable, exit_code=exit_code)
        if cancel is not None and cancel.cancelled:
            raise OperationCancelledError(
                f"{executable} terminated: operation cancelled",
                details={"exit_code": exit_code},
            )
        return ProcessResult(
            exit_code=exit_code,
            stdout="\n".join(stdout_lines),
            stderr="\n".join(stderr_lines),
        )

    @staticmethod
    async def _feed_stdin(process: asyncio.subprocess.Process, data: str) -> None:
        assert process.stdin is not None
        try:
            process.stdin.write(data.encode("utf-8"))
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            logger.debug("process_stdin_closed_early")
        finally:
            process.stdin.close()

    @staticmethod
    async def _pump(
        stream: asyncio.StreamReader,
        name: StreamName,
        sink: OutputSink | None,
    ) -> list[str]:
        lines: list[str] = []
        while True:
            try:
                raw = await stream.readuntil(b"\n")
            except asyncio.IncompleteReadError as exc:
                raw = exc.partial
            except asyncio.LimitOverrunError as exc:
                # Overlong line: emit the buffered chunk as its own line.
                raw = await stream.read(exc.consumed)
            if not raw:
                break
            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            lines.append(line)
            if sink is not None and line.strip():
                await _call_sink(sink, name, line)
        return lines


async def _call_sink(sink: OutputSink, name: StreamName, line: str) -> None:
    result: Any = sink(name, line)
    if inspect.isawaitable(result):
        await result
