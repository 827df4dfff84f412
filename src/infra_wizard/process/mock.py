from __future__ import annotations

import asyncio
from collections.abc import Callable, Mapping, Sequence
from pathlib import Path
from typing import Any

from infra_wizard.core.constants import StreamName
from infra_wizard.core.exceptions import OperationCancelledError
from infra_wizard.process.runner import (
    CancellationToken,
    OutputSink,
    ProcessResult,
    _call_sink,
)

SideEffect = Callable[[list[str], Path | None], None] | BaseException


class MockCall:
    """One recorded invocation of :class:`MockRunner`."""

    def __init__(
        self,
        executable: str,
        args: list[str],
        cwd: Path | None,
        env: dict[str, str],
        stdin_data: str | None,
    ) -> None:
        self.executable = executable
        self.args = args
        self.cwd = cwd
        self.env = env
        self.stdin_data = stdin_data
        self.terminated = False

    @property
    def command(self) -> str:
        return " ".join([self.executable, *self.args])

    def __repr__(self) -> str:
        return f"MockCall({self.command!r})"


class _MockResponse:
    def __init__(
        self,
        exit_code: int,
        stdout: Sequence[str],
        stderr: Sequence[str],
        delay: float,
        block: asyncio.Event | None,
        side_effect: SideEffect | None,
    ) -> None:
        self.exit_code = exit_code
        self.stdout = list(stdout)
        self.stderr = list(stderr)
        self.delay = delay
        self.block = block
        self.side_effect = side_effect


class _MockProcess:
    """Stands in for an OS process on a :class:`CancellationToken`."""

    def __init__(self, call: MockCall) -> None:
        self.returncode: int | None = None
        self._call = call
        self.terminated_event = asyncio.Event()

    def terminate(self) -> None:
        self._call.terminated = True
        self.returncode = -15
        self.terminated_event.set()

    def kill(self) -> None:
        self.terminate()


class MockRunner:
    """In-memory process runner for testing.

    Responses are matched by the longest registered prefix of the full
    command line (``"terraform apply"`` beats ``"terraform"``). Unregistered
    commands succeed with no output.

    Usage::

        runner = MockRunner()
        runner.register("terraform apply", exit_code=1,
                        stderr="Error: IAM role already exists")
        runner.register("git clone", stdout="Cloning...",
                        side_effect=lambda args, cwd: (cwd / "Dockerfile").touch())

        result = await runner.run("terraform", ["apply", "-auto-approve"])
        assert result.exit_code == 1
        runner.assert_called("terraform apply")

    Blocking (to hold a stage "running" until the test releases it)::

        gate = asyncio.Event()
        runner.register("terraform apply", block=gate)
    """

    def __init__(self) -> None:
        self._responses: dict[str, _MockResponse] = {}
        self.calls: list[MockCall] = []

    # ------------------------------------------------------------------ #
    # Registration helpers
    # ------------------------------------------------------------------ #

    def register(
        self,
        prefix: str,
        *,
        exit_code: int = 0,
        stdout: str | Sequence[str] = (),
        stderr: str | Sequence[str] = (),
        delay: float = 0.0,
        block: asyncio.Event | None = None,
        side_effect: SideEffect | None = None,
    ) -> None:
        """Register the response for commands starting with *prefix*.

        ``side_effect`` is either an exception to raise instead of running, or
        a callable receiving ``(args, cwd)`` invoked before output is emitted.
        """
        self._responses[prefix] = _MockResponse(
            exit_code=exit_code,
            stdout=stdout.splitlines() if isinstance(stdout, str) else stdout,
            stderr=stderr.splitlines() if isinstance(stderr, str) else stderr,
            delay=delay,
            block=block,
            side_effect=side_effect,
        )

    # ------------------------------------------------------------------ #
    # Runner protocol
    # ------------------------------------------------------------------ #

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
        if cancel is not None and cancel.cancelled:
            raise OperationCancelledError(f"{executable} not started: operation cancelled")

        call = MockCall(
            executable=executable,
            args=list(args),
            cwd=Path(cwd) if cwd is not None else None,
            env=dict(env or {}),
            stdin_data=stdin_data,
        )
        self.calls.append(call)
        response = self._match(call.command)

        if isinstance(response.side_effect, BaseException):
            raise response.side_effect
        if response.side_effect is not None:
            response.side_effect(call.args, call.cwd)

        process = _MockProcess(call)
        if cancel is not None:
            cancel.attach(process)
        try:
            for line in response.stdout:
                if on_output is not None:
                    await _call_sink(on_output, StreamName.STDOUT, line)
            for line in response.stderr:
                if on_output is not None:
                    await _call_sink(on_output, StreamName.STDERR, line)
            await self._wait(response, process)
        finally:
            if cancel is not None:
                cancel.detach(process)

        if cancel is not None and cancel.cancelled:
            raise OperationCancelledError(f"{executable} terminated: operation cancelled")
        return ProcessResult(
            exit_code=process.returncode if process.returncode is not None else response.exit_code,
            stdout="\n".join(response.stdout),
            stderr="\n".join(response.stderr),
        )

    def _match(self, command: str) -> _MockResponse:
        best: str | None = None
        for prefix in self._responses:
            if command == prefix or command.startswith(prefix + " "):
                if best is None or len(prefix) > len(best):
                    best = prefix
        if best is None:
            return _MockResponse(0, (), (), 0.0, None, None)
        return self._responses[best]

    @staticmethod
    async def _wait(response: _MockResponse, process: _MockProcess) -> None:
        if response.block is None and response.delay <= 0:
            return
        waiters: list[asyncio.Task[Any]] = [asyncio.create_task(process.terminated_event.wait())]
        if response.block is not None:
            waiters.append(asyncio.create_task(response.block.wait()))
        else:
            waiters.append(asyncio.create_task(asyncio.sleep(response.delay)))
        try:
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()

    # ------------------------------------------------------------------ #
    # Test helpers
    # ------------------------------------------------------------------ #

    def commands(self) -> list[str]:
        return [c.command for c in self.calls]

    def find(self, prefix: str) -> list[MockCall]:
        return [c for c in self.calls if c.command == prefix or c.command.startswith(prefix + " ")]

    def assert_called(self, prefix: str) -> None:
        assert self.find(prefix), f"Expected call to '{prefix}', got: {self.commands()}"

    def assert_not_called(self, prefix: str) -> None:
        assert not self.find(prefix), f"Unexpected call to '{prefix}': {self.commands()}"

    def call_count(self, prefix: str) -> int:
        return len(self.find(prefix))

    def reset(self) -> None:
        self.calls.clear()
        self._responses.clear()
