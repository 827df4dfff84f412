"""Docker CLI wrapper for building and pushing the application image."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from infra_wizard.process.runner import ProcessResult, Runner


class DockerCli:
    """Runs ``docker`` with a private client config directory.

    Registry logins are written to *config_dir* instead of ``~/.docker``, so
    concurrent workflows never share or overwrite each other's credentials.
    """

    def __init__(self, runner: Runner, binary: str = "docker", config_dir: Path | None = None) -> None:
        self._runner = runner
        self._bin = binary
        self._env = {"DOCKER_CONFIG": str(config_dir)} if config_dir is not None else {}

    def __repr__(self) -> str:
        return f"DockerCli(binary={self._bin!r})"

    async def _run(self, args: list[str], label: str, **kwargs: Any) -> ProcessResult:
        result = await self._runner.run(self._bin, args, env=self._env, **kwargs)
        return result.check(f"docker {label}")

    async def build(self, context_dir: Path, image: str, dockerfile: str = "Dockerfile", **kwargs: Any) -> ProcessResult:
        return await self._run(["build", "-t", image, "-f", dockerfile, "."], "build", cwd=context_dir, **kwargs)

    async def tag(self, source: str, target: str, **kwargs: Any) -> ProcessResult:
        return await self._run(["tag", source, target], "tag", **kwargs)

    async def login(self, registry: str, username: str, password: str, **kwargs: Any) -> ProcessResult:
        """Log in with the password on stdin, never on the command line."""
        return await self._run(
            ["login", "--username", username, "--password-stdin", registry],
            "login",
            stdin_data=password,
            **kwargs,
        )

    async def push(self, image: str, **kwargs: Any) -> ProcessResult:
        return await self._run(["push", image], "push", **kwargs)
