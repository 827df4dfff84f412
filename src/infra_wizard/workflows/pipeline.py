"""Stage registry: the ordered table of stages a workflow runs.

A stage is a :class:`StageDefinition` row: an id and display name, an async
executor, an optional skip rule, and whether destroy runs exclude it. The
orchestrator walks the table in order; adding a stage means adding a row.
"""
from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterable, Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from infra_wizard.collaborators.base import CloudApi, CloudApiFactory, SourceHost
from infra_wizard.collaborators.docker import DockerCli
from infra_wizard.collaborators.kubectl import KubectlCli
from infra_wizard.collaborators.terraform import TerraformCli
from infra_wizard.core.config import WizardConfig
from infra_wizard.core.constants import LogLevel, StageId, StreamName, WorkflowMode
from infra_wizard.process.policy import ConflictTolerantApply
from infra_wizard.process.runner import CancellationToken, OutputSink, ProcessResult, Runner
from infra_wizard.utils.logging import mask
from infra_wizard.workflows.models import Stage, StageOutcome, WorkflowContext

StageExecutor = Callable[["StageRun"], Awaitable[StageOutcome]]
SkipRule = Callable[["StageRun"], str | None]
LogFunc = Callable[..., Awaitable[Any]]


@dataclass(frozen=True)
class StageDefinition:
    """One row of the stage table.

    Attributes:
        id: Stable stage id used in events and snapshots.
        name: Display name.
        executor: Coroutine function doing the stage's work.
        running_message: Message published when the stage starts.
        skip_when: Returns a reason string when the stage should be skipped
            for this run, ``None`` otherwise.
        destroy_excluded: Destroy runs leave this stage out entirely.
    """

    id: StageId
    name: str
    executor: StageExecutor
    running_message: str = ""
    skip_when: SkipRule | None = None
    destroy_excluded: bool = False

    def skip_reason(self, run: StageRun) -> str | None:
        if self.skip_when is None:
            return None
        return self.skip_when(run)


class Pipeline:
    """Ordered, immutable collection of :class:`StageDefinition` rows."""

    def __init__(self, stages: Iterable[StageDefinition]) -> None:
        self._stages = tuple(stages)
        ids = [s.id for s in self._stages]
        if len(ids) != len(set(ids)):
            raise ValueError("stage ids must be unique")

    def __repr__(self) -> str:
        return f"Pipeline(stages={len(self._stages)})"

    def __len__(self) -> int:
        return len(self._stages)

    def __iter__(self) -> Iterator[StageDefinition]:
        return iter(self._stages)

    def with_stage(self, stage: StageDefinition) -> Pipeline:
        """Return a new pipeline with *stage* appended."""
        return Pipeline([*self._stages, stage])

    def for_mode(self, mode: WorkflowMode) -> list[StageDefinition]:
        if mode is WorkflowMode.DESTROY:
            return [s for s in self._stages if not s.destroy_excluded]
        return list(self._stages)

    def initial_steps(self, mode: WorkflowMode) -> list[Stage]:
        """Fresh pending :class:`Stage` records for a run in *mode*."""
        return [Stage(id=s.id.value, name=s.name) for s in self.for_mode(mode)]


@dataclass
class Toolchain:
    """The collaborators stage executors reach for, shared by all workflows."""

    runner: Runner
    config: WizardConfig
    source_host: SourceHost
    cloud_api_factory: CloudApiFactory
    conflict_policy: ConflictTolerantApply = field(default_factory=ConflictTolerantApply)

    @property
    def terraform(self) -> TerraformCli:
        return TerraformCli(self.runner, self.config.terraform_binary)

    def docker(self, config_dir: Path) -> DockerCli:
        return DockerCli(self.runner, self.config.docker_binary, config_dir=config_dir)

    def kubectl(self, kubeconfig: Path) -> KubectlCli:
        return KubectlCli(self.runner, kubeconfig, self.config.kubectl_binary)


class StageRun:
    """Per-run state handed to every stage executor.

    ``artifacts`` accumulates the side data of completed stages (cloned path,
    image uri, terraform outputs) so later stages can use it.
    """

    def __init__(
        self,
        *,
        workflow_id: str,
        context: WorkflowContext,
        mode: WorkflowMode,
        work_dir: Path,
        toolchain: Toolchain,
        token: CancellationToken,
        log: LogFunc,
        artifacts: dict[str, Any] | None = None,
    ) -> None:
        self.workflow_id = workflow_id
        self.context = context
        self.mode = mode
        self.work_dir = work_dir
        self.toolchain = toolchain
        self.token = token
        self.artifacts: dict[str, Any] = dict(artifacts or {})
        self.stage_id: StageId | None = None
        self._log = log

    def __repr__(self) -> str:
        return f"StageRun(workflow_id={self.workflow_id!r}, stage={self.stage_id}, mode={self.mode})"

    @property
    def config(self) -> WizardConfig:
        return self.toolchain.config

    @property
    def source_dir(self) -> Path:
        return self.work_dir / "source"

    @property
    def terraform_dir(self) -> Path:
        return self.work_dir / "terraform"

    @property
    def kubeconfig(self) -> Path:
        return self.work_dir / "kubeconfig"

    @property
    def docker_config_dir(self) -> Path:
        return self.work_dir / ".docker"

    @property
    def namespace(self) -> str:
        return self.context.config.app_namespace or self.config.app_namespace

    def cloud_api(self) -> CloudApi:
        return self.toolchain.cloud_api_factory(self.context.credentials, self.token)

    def env(self) -> dict[str, str]:
        return self.context.credential_env()

    async def log(self, message: str, level: LogLevel = LogLevel.INFO) -> None:
        """Publish a log line attributed to the current stage."""
        await self._log(
            self.workflow_id,
            mask(message, self.context.secrets()),
            level,
            self.stage_id.value if self.stage_id else None,
        )

    def sink(
        self, prefix: str | None = None, *, conflict_policy: ConflictTolerantApply | None = None
    ) -> OutputSink:
        """Output sink turning process lines into workflow log events.

        stdout lines log at ``info`` and stderr at ``warning``. With a
        *conflict_policy*, stderr lines it classifies as conflicts log at
        ``info`` prefixed with "Resource exists, continuing".
        """

        async def _sink(stream: StreamName, line: str) -> None:
            text = f"{prefix}: {line}" if prefix else line
            level = LogLevel.INFO
            if stream == StreamName.STDERR:
                if conflict_policy is not None and conflict_policy.is_conflict_line(line):
                    text = f"Resource exists, continuing: {text}"
                else:
                    level = LogLevel.WARNING
            await self.log(text, level)

        return _sink

    def process_kwargs(self, prefix: str | None = None, **extra: Any) -> dict[str, Any]:
        """Common ``on_output``/``cancel`` keyword arguments for CLI wrappers."""
        return {"on_output": self.sink(prefix, **extra), "cancel": self.token}


def describe_failure(command: str, result: ProcessResult) -> str:
    stderr = result.stderr.strip()
    return f"{command} failed with exit code {result.exit_code}" + (f": {stderr}" if stderr else "")
