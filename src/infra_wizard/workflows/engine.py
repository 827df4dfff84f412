"""Deployment orchestrator: drives workflows through the stage pipeline.

Each submitted workflow runs as its own :class:`asyncio.Task`. The task walks
the stage table in order, publishing a ``step-update`` event for every stage
transition and ``log`` events for progress, and ends with exactly one of
``deployment-completed``, ``deployment-failed`` or ``cancelled``.

All workflow mutations go through the :class:`WorkflowStore` lock, and the
terminal check happens under that same lock, so nothing is published for a
run after its terminal event.
"""
from __future__ import annotations

import asyncio
import shutil
import tempfile
from collections.abc import Mapping
from datetime import timedelta
from pathlib import Path
from typing import Any

import pydantic
import structlog

from infra_wizard.collaborators.aws import AwsCliCloudApi
from infra_wizard.collaborators.base import CloudApi, CloudApiFactory, SourceHost
from infra_wizard.collaborators.github import GitHubSourceHost
from infra_wizard.core.config import WizardConfig
from infra_wizard.core.constants import (
    EventType,
    LogLevel,
    StageId,
    StageStatus,
    WorkflowMode,
    WorkflowStatus,
)
from infra_wizard.core.exceptions import (
    CollaboratorError,
    InfraWizardError,
    NotFoundError,
    ValidationError,
    WorkflowConflictError,
)
from infra_wizard.events.hub import EventHub
from infra_wizard.process.policy import ConflictTolerantApply
from infra_wizard.process.runner import CancellationToken, ProcessRunner, Runner
from infra_wizard.utils.logging import mask
from infra_wizard.workflows.models import (
    CloudCredentials,
    DeploymentRequest,
    LogEntry,
    StageOutcome,
    Workflow,
    WorkflowContext,
    WorkflowSummary,
)
from infra_wizard.workflows.pipeline import Pipeline, StageDefinition, StageRun, Toolchain
from infra_wizard.workflows.stages import default_pipeline
from infra_wizard.workflows.store import WorkflowStore

logger = structlog.get_logger(__name__)


def build_outputs(artifacts: Mapping[str, Any]) -> dict[str, Any]:
    """Client-facing result map of a successful apply run."""
    outputs: dict[str, Any] = dict(artifacts.get("terraform_outputs") or {})
    outputs["deploymentUrl"] = artifacts.get("deployment_url")
    if artifacts.get("image_uri"):
        outputs["imageUri"] = artifacts["image_uri"]
    if artifacts.get("cluster_name"):
        outputs["clusterName"] = artifacts["cluster_name"]
    return outputs


class DeploymentOrchestrator:
    """Runs deployment and destroy workflows.

    Args:
        config: Runtime configuration. Defaults to ``WizardConfig()``.
        runner: Process runner for every CLI. Defaults to :class:`ProcessRunner`.
        store: Workflow table. A fresh one is created when omitted.
        hub: Event hub bound to *store*.
        source_host: Source host used by the clone stage.
        cloud_api_factory: Builds a cloud API client for one workflow's
            credentials. Defaults to :class:`AwsCliCloudApi`.
        pipeline: Stage table. Defaults to :func:`default_pipeline`.
        conflict_policy: Decides which failed applies count as success.

    Usage::

        orchestrator = DeploymentOrchestrator(WizardConfig.from_env())
        workflow = await orchestrator.submit(request_body)
        subscription = orchestrator.hub.subscribe(workflow.id)
        async for event in subscription:
            ...
    """

    def __init__(
        self,
        config: WizardConfig | None = None,
        *,
        runner: Runner | None = None,
        store: WorkflowStore | None = None,
        hub: EventHub | None = None,
        source_host: SourceHost | None = None,
        cloud_api_factory: CloudApiFactory | None = None,
        pipeline: Pipeline | None = None,
        conflict_policy: ConflictTolerantApply | None = None,
    ) -> None:
        self._config = config or WizardConfig()
        self._runner = runner or ProcessRunner()
        self.store = store or WorkflowStore()
        self.hub = hub or EventHub(self.store, max_queue=self._config.subscriber_queue_size)
        self._pipeline = pipeline or default_pipeline()
        self._toolchain = Toolchain(
            runner=self._runner,
            config=self._config,
            source_host=source_host
            or GitHubSourceHost(self._runner, git_binary=self._config.git_binary),
            cloud_api_factory=cloud_api_factory or self._default_cloud_api,
            conflict_policy=conflict_policy or ConflictTolerantApply(),
        )
        self._tasks: dict[str, asyncio.Task[None]] = {}

    def __repr__(self) -> str:
        return f"DeploymentOrchestrator(workflows={len(self.store)}, active={self.active_count})"

    @property
    def config(self) -> WizardConfig:
        return self._config

    @property
    def source_host(self) -> SourceHost:
        return self._toolchain.source_host

    @property
    def pipeline(self) -> Pipeline:
        return self._pipeline

    @property
    def active_count(self) -> int:
        return sum(1 for task in self._tasks.values() if not task.done())

    def _default_cloud_api(
        self, credentials: CloudCredentials, cancel: CancellationToken | None
    ) -> CloudApi:
        return AwsCliCloudApi(
            self._runner, credentials, binary=self._config.aws_binary, cancel=cancel
        )

    # ------------------------------------------------------------------ #
    # Public operations
    # ------------------------------------------------------------------ #

    async def submit(self, request: DeploymentRequest | Mapping[str, Any]) -> Workflow:
        """Validate *request*, create the workflow, and start it in the background.

        Returns immediately with the workflow in ``initializing`` status and
        every stage ``pending``.

        Raises:
            ValidationError: The request is malformed. No workflow is created.
        """
        if not isinstance(request, DeploymentRequest):
            try:
                request = DeploymentRequest.model_validate(request)
            except pydantic.ValidationError as exc:
                raise ValidationError(
                    "Invalid deployment request",
                    code="INVALID_REQUEST",
                    details={"errors": _error_list(exc)},
                ) from exc

        context = WorkflowContext.from_request(request)
        workflow = Workflow(context=context, steps=self._pipeline.initial_steps(WorkflowMode.APPLY))
        self.store.create(workflow)
        logger.info(
            "deployment_submitted",
            workflow_id=workflow.id,
            project=context.project_name,
            environment=context.environment.value,
            prebuilt_image=context.repository.has_prebuilt_image,
        )
        self._start(workflow.id)
        return workflow

    async def destroy(self, workflow_id: str) -> Workflow:
        """Start a destroy run for a workflow whose previous run has ended.

        Raises:
            NotFoundError: Unknown id.
            WorkflowConflictError: The workflow is still running.
        """
        workflow = self.store.get(workflow_id)
        if self._is_active(workflow_id) or not workflow.is_terminal:
            raise WorkflowConflictError(
                f"Workflow '{workflow_id}' is still active ({workflow.status.value})",
                code="WORKFLOW_ACTIVE",
            )

        steps = self._pipeline.initial_steps(WorkflowMode.DESTROY)

        def reset(wf: Workflow) -> None:
            wf.mode = WorkflowMode.DESTROY
            wf.status = WorkflowStatus.DESTROYING
            wf.steps = steps
            wf.outputs = None
            wf.error = None
            wf.failed_stage = None
            wf.finished_at = None
            wf.run += 1

        await self.store.update(workflow_id, reset)
        self.store.reset_token(workflow_id)
        logger.info("destroy_requested", workflow_id=workflow_id)
        self._start(workflow_id)
        return self.store.get(workflow_id)

    async def cancel(self, workflow_id: str) -> Workflow:
        """Stop a running workflow. A no-op for workflows already terminal.

        The stage in progress is marked failed with "Cancelled", the workflow
        becomes ``cancelled``, and its OS process is terminated. Infrastructure
        already created is left in place.
        """
        token = self.store.token(workflow_id)
        async with self.store.locked(workflow_id) as workflow:
            if workflow.is_terminal:
                return workflow
            step = workflow.running_step()
            if step is not None:
                step.transition(StageStatus.FAILED, "Cancelled")
                self.hub.emit(workflow, EventType.STEP_UPDATE, _step_data(step.id, step.status, step.message))
            self.hub.emit(
                workflow,
                EventType.LOG,
                {
                    "message": "Deployment cancelled; resources already created are not rolled back",
                    "level": LogLevel.WARNING.value,
                    "stageId": step.id if step else None,
                },
            )
            workflow.finish(WorkflowStatus.CANCELLED)
            self.hub.emit(workflow, EventType.CANCELLED, {"stageId": step.id if step else None})

        had_process = token.has_process
        token.cancel()
        task = self._tasks.get(workflow_id)
        if task is not None and not task.done() and not had_process:
            # Nothing to terminate: interrupt whatever the stage is awaiting.
            task.cancel()
        logger.info("workflow_cancelled", workflow_id=workflow_id, stage=step.id if step else None)
        return workflow

    def get(self, workflow_id: str) -> Workflow:
        return self.store.get(workflow_id)

    async def snapshot(self, workflow_id: str, log_tail: int | None = None) -> dict[str, Any]:
        """Consistent client view of the workflow, taken under its lock."""
        tail = self._config.log_tail if log_tail is None else log_tail
        async with self.store.locked(workflow_id) as workflow:
            return workflow.snapshot(tail)

    async def validate_credentials(self, credentials: CloudCredentials) -> dict[str, Any]:
        """Check *credentials* against the cloud API and return the caller identity.

        Raises:
            CollaboratorError: The credentials were rejected (status 401).
        """
        cloud = self._toolchain.cloud_api_factory(credentials, None)
        try:
            return await cloud.validate_credentials()
        except CollaboratorError as exc:
            logger.info("credential_validation_failed", region=credentials.region)
            raise CollaboratorError(
                f"Invalid AWS credentials: {exc.message}",
                code="INVALID_CREDENTIALS",
                status_code=401,
            ) from exc

    def logs(self, workflow_id: str, limit: int = 100, offset: int = 0) -> tuple[list[LogEntry], int]:
        """Return a page of the workflow's log and the total number of entries."""
        entries = self.store.get(workflow_id).logs
        return list(entries[offset : offset + limit]), len(entries)

    def list(self) -> list[WorkflowSummary]:
        return self.store.list()

    async def remove(self, workflow_id: str) -> None:
        """Cancel if running, close subscriptions, delete the workflow and its directory."""
        self.store.get(workflow_id)
        if self._is_active(workflow_id):
            await self.cancel(workflow_id)
            await self.wait(workflow_id)
        self.hub.close_workflow(workflow_id)
        await self.store.delete(workflow_id)

    async def wait(self, workflow_id: str, timeout: float | None = None) -> Workflow:
        """Wait until the workflow's current run has finished."""
        task = self._tasks.get(workflow_id)
        if task is not None and not task.done():
            await asyncio.wait({task}, timeout=timeout)
        return self.store.get(workflow_id)

    async def sweep(self) -> list[str]:
        """Evict terminal workflows older than the retention window."""
        retention = timedelta(seconds=self._config.retention_seconds)
        evicted = await self.store.evict_expired(retention)
        for workflow_id in evicted:
            self.hub.close_workflow(workflow_id)
        return evicted

    async def run_sweeper(self) -> None:
        """Call :meth:`sweep` every ``sweep_interval_seconds`` until cancelled."""
        while True:
            await asyncio.sleep(self._config.sweep_interval_seconds)
            try:
                await self.sweep()
            except InfraWizardError as exc:
                logger.warning("retention_sweep_failed", error=exc.message)

    async def shutdown(self) -> None:
        """Cancel every active workflow and wait for the tasks to finish."""
        active = [wid for wid in self._tasks if self._is_active(wid)]
        for workflow_id in active:
            try:
                await self.cancel(workflow_id)
            except NotFoundError:
                continue
        tasks = [task for task in self._tasks.values() if not task.done()]
        if tasks:
            await asyncio.wait(tasks, timeout=self._config.sweep_interval_seconds)
        logger.info("orchestrator_shutdown", cancelled=len(active))

    # ------------------------------------------------------------------ #
    # Task management
    # ------------------------------------------------------------------ #

    def _is_active(self, workflow_id: str) -> bool:
        task = self._tasks.get(workflow_id)
        return task is not None and not task.done()

    def _start(self, workflow_id: str) -> None:
        task = asyncio.create_task(self._drive(workflow_id), name=f"workflow-{workflow_id}")
        self._tasks[workflow_id] = task
        task.add_done_callback(lambda t: self._on_task_done(workflow_id, t))

    def _on_task_done(self, workflow_id: str, task: asyncio.Task[None]) -> None:
        if self._tasks.get(workflow_id) is task:
            del self._tasks[workflow_id]
        if not task.cancelled() and task.exception() is not None:
            logger.error("workflow_task_crashed", workflow_id=workflow_id, error=str(task.exception()))

    # ------------------------------------------------------------------ #
    # Pipeline execution
    # ------------------------------------------------------------------ #

    async def _drive(self, workflow_id: str) -> None:
        workflow = self.store.get(workflow_id)
        mode = workflow.mode
        log = logger.bind(workflow_id=workflow_id, mode=mode.value, run=workflow.run)
        try:
            work_dir = await self._create_work_dir(workflow_id)

            def begin(wf: Workflow) -> bool:
                if wf.is_terminal:
                    return False
                wf.working_directory = work_dir
                if wf.status is WorkflowStatus.INITIALIZING:
                    wf.status = WorkflowStatus.RUNNING
                return True

            if not await self.store.update(workflow_id, begin):
                await asyncio.to_thread(_discard, work_dir)
                return

            run = StageRun(
                workflow_id=workflow_id,
                context=workflow.context,
                mode=mode,
                work_dir=work_dir,
                toolchain=self._toolchain,
                token=self.store.token(workflow_id),
                log=self.hub.log,
                artifacts=workflow.artifacts,
            )
            log.info("workflow_started")
            await self.hub.log(
                workflow_id,
                "Starting infrastructure destroy" if mode is WorkflowMode.DESTROY else "Starting deployment",
            )

            for definition in self._pipeline.for_mode(mode):
                if self.store.get(workflow_id).is_terminal:
                    return
                run.stage_id = definition.id
                reason = definition.skip_reason(run)
                if reason is not None:
                    await self._transition(workflow_id, definition.id, StageStatus.SKIPPED, reason)
                    await run.log(reason)
                    continue

                await self._transition(
                    workflow_id, definition.id, StageStatus.RUNNING, definition.running_message
                )
                log.debug("stage_started", stage=definition.id.value)
                outcome = await self._execute(definition, run)
                if self.store.get(workflow_id).is_terminal:
                    return
                if not outcome.success:
                    await self._fail(workflow_id, definition, outcome.message)
                    log.warning("workflow_failed", stage=definition.id.value)
                    return

                run.artifacts.update(outcome.side_data)
                await self.store.update(workflow_id, lambda wf: wf.artifacts.update(outcome.side_data))
                await self._transition(
                    workflow_id, definition.id, StageStatus.COMPLETED, outcome.message
                )

            await self._complete(workflow_id, run)
            log.info("workflow_completed")
        except asyncio.CancelledError:
            log.info("workflow_task_cancelled")
            raise
        except Exception as exc:
            log.exception("workflow_internal_error")
            await self._fail(workflow_id, None, f"Internal error: {exc}")
        finally:
            await self._release(workflow_id)

    async def _create_work_dir(self, workflow_id: str) -> Path:
        creating = asyncio.ensure_future(asyncio.to_thread(self._make_work_dir, workflow_id))
        try:
            return await asyncio.shield(creating)
        except asyncio.CancelledError:
            # The thread still finishes; remove what it creates.
            creating.add_done_callback(_discard_created)
            raise

    def _make_work_dir(self, workflow_id: str) -> Path:
        root = self._config.work_root
        root.mkdir(parents=True, exist_ok=True)
        return Path(tempfile.mkdtemp(prefix=f"infra-wizard-{workflow_id[:8]}-", dir=root))

    async def _execute(self, definition: StageDefinition, run: StageRun) -> StageOutcome:
        timeout = self._config.stage_timeout_seconds
        try:
            if timeout is None:
                return await definition.executor(run)
            return await asyncio.wait_for(definition.executor(run), timeout)
        except TimeoutError:
            return StageOutcome.fail(f"Stage '{definition.id.value}' timed out after {timeout:g}s")
        except InfraWizardError as exc:
            return StageOutcome.fail(exc.message)
        except Exception as exc:
            logger.exception("stage_crashed", workflow_id=run.workflow_id, stage=definition.id.value)
            return StageOutcome.fail(f"{type(exc).__name__}: {exc}")

    async def _transition(
        self, workflow_id: str, stage_id: StageId, status: StageStatus, message: str
    ) -> None:
        def mutate(wf: Workflow) -> bool:
            step = wf.step(stage_id.value)
            if step is None:
                return False
            step.transition(status, message)
            return True

        await self.hub.publish(
            workflow_id,
            EventType.STEP_UPDATE,
            _step_data(stage_id.value, status, message),
            mutate=mutate,
        )

    async def _fail(
        self, workflow_id: str, definition: StageDefinition | None, message: str
    ) -> None:
        """Mark the stage and the workflow failed and publish ``deployment-failed``."""
        try:
            workflow = self.store.get(workflow_id)
        except NotFoundError:
            return
        error = mask(message, workflow.context.secrets())
        async with self.store.locked(workflow_id) as wf:
            if wf.is_terminal:
                return
            step = wf.step(definition.id.value) if definition is not None else wf.running_step()
            if step is not None:
                step.transition(StageStatus.FAILED, error)
                self.hub.emit(wf, EventType.STEP_UPDATE, _step_data(step.id, step.status, error))
            stage_id = step.id if step is not None else None
            label = definition.name if definition is not None else "Deployment"
            self.hub.emit(
                wf,
                EventType.LOG,
                {"message": f"{label} failed: {error}", "level": LogLevel.ERROR.value, "stageId": stage_id},
            )
            wf.error = error
            wf.failed_stage = stage_id
            wf.finish(WorkflowStatus.FAILED)
            self.hub.emit(wf, EventType.DEPLOYMENT_FAILED, {"error": error, "stageId": stage_id})

    async def _complete(self, workflow_id: str, run: StageRun) -> None:
        is_destroy = run.mode is WorkflowMode.DESTROY
        outputs = None if is_destroy else build_outputs(run.artifacts)
        message = (
            "Infrastructure destroyed successfully"
            if is_destroy
            else "Deployment completed successfully"
        )
        await self.hub.log(workflow_id, message, LogLevel.SUCCESS)

        def mark(wf: Workflow) -> None:
            wf.outputs = outputs
            wf.finish(WorkflowStatus.COMPLETED)

        await self.hub.publish(
            workflow_id,
            EventType.DEPLOYMENT_COMPLETED,
            {"outputs": outputs, "isDestroy": is_destroy},
            mutate=mark,
        )

    async def _release(self, workflow_id: str) -> None:
        try:
            async with self.store.locked(workflow_id) as workflow:
                await self.store.release_directory(workflow)
        except NotFoundError:
            return


def _step_data(stage_id: str, status: StageStatus, message: str) -> dict[str, Any]:
    return {"stageId": stage_id, "status": status.value, "message": message}


def _discard(path: Path) -> None:
    shutil.rmtree(path, ignore_errors=True)


def _discard_created(future: asyncio.Future[Path]) -> None:
    if not future.cancelled() and future.exception() is None:
        _discard(future.result())


def _error_list(exc: pydantic.ValidationError) -> list[dict[str, Any]]:
    return [
        {"loc": ".".join(str(part) for part in err["loc"]), "msg": err["msg"]}
        for err in exc.errors()
    ]
