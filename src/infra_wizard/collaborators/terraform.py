"""Terraform CLI wrapper: workspace preparation and subcommands."""

from __future__ import annotations

import asyncio
import json
import shutil
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import structlog

from infra_wizard.core.exceptions import ConfigurationError
from infra_wizard.process.runner import CancellationToken, OutputSink, ProcessResult, Runner

logger = structlog.get_logger(__name__)

TFVARS_FILE = "terraform.tfvars"
BACKEND_FILE = "backend.hcl"
PLAN_FILE = "tfplan"

_COMMON = ("-input=false", "-no-color")


def flatten_outputs(raw: Mapping[str, Any]) -> dict[str, Any]:
    """Reduce ``terraform output -json`` to ``{name: value}``, dropping sensitive values."""
    flat: dict[str, Any] = {}
    for name, entry in raw.items():
        if isinstance(entry, Mapping) and "value" in entry:
            if entry.get("sensitive"):
                continue
            flat[name] = entry["value"]
        else:
            flat[name] = entry
    return flat


class TerraformCli:
    """Runs ``terraform`` subcommands in one workflow's workspace.

    Every call takes the workspace directory and the credential environment
    explicitly; the wrapper itself holds no per-workflow state.
    """

    def __init__(self, runner: Runner, binary: str = "terraform") -> None:
        self._runner = runner
        self._bin = binary

    def __repr__(self) -> str:
        return f"TerraformCli(binary={self._bin!r})"

    async def prepare_workspace(
        self, template: Path, workspace: Path, tfvars: str, backend: str
    ) -> Path:
        """Copy *template* into *workspace* and write the variable and backend files.

        Raises:
            ConfigurationError: *template* does not exist.
        """
        if not template.is_dir():
            raise ConfigurationError(
                f"Terraform template directory not found: {template}",
                code="TEMPLATE_MISSING",
            )
        await asyncio.to_thread(shutil.copytree, template, workspace, dirs_exist_ok=True)
        (workspace / TFVARS_FILE).write_text(tfvars, encoding="utf-8")
        (workspace / BACKEND_FILE).write_text(backend, encoding="utf-8")
        logger.debug("terraform_workspace_prepared", workspace=str(workspace))
        return workspace

    async def run(
        self,
        subcommand: str,
        args: list[str],
        *,
        cwd: Path,
        env: Mapping[str, str],
        on_output: OutputSink | None = None,
        cancel: CancellationToken | None = None,
    ) -> ProcessResult:
        return await self._runner.run(
            self._bin,
            [subcommand, *args],
            cwd=cwd,
            env={**env, "TF_IN_AUTOMATION": "1"},
            on_output=on_output,
            cancel=cancel,
        )

    async def init(self, cwd: Path, env: Mapping[str, str], **kwargs: Any) -> ProcessResult:
        result = await self.run("init", [*_COMMON, f"-backend-config={BACKEND_FILE}"], cwd=cwd, env=env, **kwargs)
        return result.check("terraform init")

    async def plan(
        self, cwd: Path, env: Mapping[str, str], *, destroy: bool = False, **kwargs: Any
    ) -> ProcessResult:
        args = [*_COMMON, f"-out={PLAN_FILE}"]
        if destroy:
            args.append("-destroy")
        result = await self.run("plan", args, cwd=cwd, env=env, **kwargs)
        return result.check("terraform plan")

    async def apply(self, cwd: Path, env: Mapping[str, str], **kwargs: Any) -> ProcessResult:
        """Apply the saved plan. The result is returned unchecked for the conflict policy."""
        return await self.run("apply", [*_COMMON, "-auto-approve", PLAN_FILE], cwd=cwd, env=env, **kwargs)

    async def destroy(self, cwd: Path, env: Mapping[str, str], **kwargs: Any) -> ProcessResult:
        result = await self.run("destroy", [*_COMMON, "-auto-approve"], cwd=cwd, env=env, **kwargs)
        return result.check("terraform destroy")

    async def import_resource(
        self, cwd: Path, env: Mapping[str, str], address: str, resource_id: str, **kwargs: Any
    ) -> ProcessResult:
        return await self.run("import", [*_COMMON, address, resource_id], cwd=cwd, env=env, **kwargs)

    async def output(
        self, cwd: Path, env: Mapping[str, str], cancel: CancellationToken | None = None
    ) -> dict[str, Any]:
        """Return ``terraform output -json`` flattened to plain values.

        Raises:
            ProcessExecutionError: terraform exited non-zero.
            ValueError: the output was not a JSON object.
        """
        result = await self.run("output", ["-json"], cwd=cwd, env=env, cancel=cancel)
        result.check("terraform output")
        raw = json.loads(result.stdout or "{}")
        if not isinstance(raw, dict):
            raise ValueError("terraform output -json did not return an object")
        return flatten_outputs(raw)
