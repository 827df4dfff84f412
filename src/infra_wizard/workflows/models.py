"""Workflow data models: requests, context, stages, logs, and snapshots."""
from __future__ import annotations

import re
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    field_validator,
    model_validator,
)

from infra_wizard.core.constants import (
    DeploymentType,
    Environment,
    LogLevel,
    StageStatus,
    WorkflowMode,
    WorkflowStatus,
)


_TF_IDENTIFIER = re.compile(r"[A-Za-z_][A-Za-z0-9_-]*")

def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Submission (camelCase on the wire, snake_case in Python)
# ---------------------------------------------------------------------------


class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="ignore")


class CloudCredentials(_WireModel):
    """AWS credentials passed through per request. Never persisted or logged."""

    access_key_id: str = Field(alias="accessKeyId", min_length=16, max_length=128)
    secret_access_key: SecretStr = Field(alias="secretAccessKey")
    session_token: SecretStr | None = Field(default=None, alias="sessionToken")
    region: str = Field(alias="region", pattern=r"^[a-z0-9-]{2,20}$")
    account_id: str | None = Field(default=None, alias="accountId")

    def as_env(self) -> dict[str, str]:
        """Environment for one child process. The parent environment is untouched."""
        env = {
            "AWS_ACCESS_KEY_ID": self.access_key_id,
            "AWS_SECRET_ACCESS_KEY": self.secret_access_key.get_secret_value(),
            "AWS_DEFAULT_REGION": self.region,
            "AWS_REGION": self.region,
        }
        if self.session_token is not None and self.session_token.get_secret_value():
            env["AWS_SESSION_TOKEN"] = self.session_token.get_secret_value()
        return env

    def secrets(self) -> list[str]:
        values = [self.secret_access_key.get_secret_value()]
        if self.session_token is not None:
            values.append(self.session_token.get_secret_value())
        return values


class RepositoryRef(_WireModel):
    """Source repository, or a prebuilt image that makes the build stages unnecessary."""

    url: str | None = None
    branch: str | None = Field(default=None, max_length=255)
    access_token: SecretStr | None = Field(default=None, alias="accessToken")
    ecr_image_uri: str | None = Field(default=None, alias="ecrImageUri")
    image_tag: str = Field(default="latest", alias="imageTag")
    ecr_repository_name: str | None = Field(default=None, alias="ecrRepositoryName")

    @model_validator(mode="after")
    def _require_source(self) -> RepositoryRef:
        if not self.url and not self.ecr_image_uri:
            raise ValueError("repository requires either 'url' or 'ecrImageUri'")
        return self

    @property
    def has_prebuilt_image(self) -> bool:
        return bool(self.ecr_image_uri)


class EksConfig(_WireModel):
    node_instance_type: str = Field(
        default="t3.medium",
        validation_alias=AliasChoices("nodeInstanceType", "instanceType", "node_instance_type"),
    )
    desired_capacity: int = Field(
        default=2, ge=1, le=20,
        validation_alias=AliasChoices("desiredCapacity", "desiredSize", "desired_capacity"),
    )
    min_capacity: int = Field(
        default=1, ge=1, le=20,
        validation_alias=AliasChoices("minCapacity", "minSize", "min_capacity"),
    )
    max_capacity: int = Field(
        default=4, ge=1, le=50,
        validation_alias=AliasChoices("maxCapacity", "maxSize", "max_capacity"),
    )
    kubernetes_version: str = Field(
        default="1.28",
        validation_alias=AliasChoices("kubernetesVersion", "kubernetes_version"),
    )


class DeploymentConfig(_WireModel):
    """Deployment parameters.

    ``terraform_config`` overrides any generated Terraform variable by name
    (networking, database, SSL, and monitoring toggles all live there).
    """

    project_name: str = Field(
        default="aws-builder-app",
        alias="projectName",
        min_length=1,
        max_length=50,
        pattern=r"^[a-z0-9-]+$",
    )
    eks_config: EksConfig = Field(default_factory=EksConfig, alias="eksConfig")
    terraform_config: dict[str, Any] = Field(default_factory=dict, alias="terraformConfig")
    app_namespace: str | None = Field(default=None, alias="appNamespace")

    @field_validator("terraform_config")
    @classmethod
    def _check_variable_names(cls, value: dict[str, Any]) -> dict[str, Any]:
        bad = [key for key in value if not _TF_IDENTIFIER.fullmatch(key)]
        if bad:
            raise ValueError(f"invalid Terraform variable name(s): {', '.join(map(repr, bad))}")
        return value


class DeploymentRequest(_WireModel):
    credentials: CloudCredentials = Field(
        validation_alias=AliasChoices("cloudCredentials", "awsCredentials", "credentials"),
    )
    repository: RepositoryRef
    deployment_type: DeploymentType = Field(
        default=DeploymentType.EKS,
        validation_alias=AliasChoices("deploymentType", "deployment_type"),
    )
    environment: Environment = Environment.DEV
    deployment_config: DeploymentConfig = Field(
        default_factory=DeploymentConfig,
        validation_alias=AliasChoices("deploymentConfig", "deployment_config"),
    )


class WorkflowContext(BaseModel):
    """Immutable inputs of a workflow, built once from the submitted request."""

    model_config = ConfigDict(frozen=True)

    credentials: CloudCredentials
    repository: RepositoryRef
    deployment_type: DeploymentType
    environment: Environment
    config: DeploymentConfig

    @classmethod
    def from_request(cls, request: DeploymentRequest) -> WorkflowContext:
        return cls(
            credentials=request.credentials,
            repository=request.repository,
            deployment_type=request.deployment_type,
            environment=request.environment,
            config=request.deployment_config,
        )

    @property
    def project_name(self) -> str:
        return self.config.project_name

    @property
    def cluster_name(self) -> str:
        return f"{self.project_name}-{self.environment.value}"

    @property
    def image_repository_name(self) -> str:
        return self.repository.ecr_repository_name or self.project_name

    def credential_env(self) -> dict[str, str]:
        return self.credentials.as_env()

    def secrets(self) -> list[str]:
        values = self.credentials.secrets()
        if self.repository.access_token is not None:
            values.append(self.repository.access_token.get_secret_value())
        return values


# ---------------------------------------------------------------------------
# Runtime state
# ---------------------------------------------------------------------------


class Stage(BaseModel):
    """One pipeline step inside a workflow. Only status/message/timestamp change."""

    id: str
    name: str
    status: StageStatus = StageStatus.PENDING
    message: str = ""
    timestamp: datetime | None = None

    def transition(self, status: StageStatus, message: str = "") -> None:
        self.status = status
        self.message = message
        self.timestamp = utcnow()


class LogEntry(BaseModel):
    timestamp: datetime = Field(default_factory=utcnow)
    message: str
    level: LogLevel = LogLevel.INFO
    stage_id: str | None = None

    def to_wire(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "message": self.message,
            "level": self.level.value,
            "stageId": self.stage_id,
        }


class StageOutcome(BaseModel):
    """Result returned by a stage executor."""

    success: bool
    message: str = ""
    side_data: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def ok(cls, message: str, **side_data: Any) -> StageOutcome:
        return cls(success=True, message=message, side_data=side_data)

    @classmethod
    def fail(cls, message: str) -> StageOutcome:
        return cls(success=False, message=message)


class Workflow(BaseModel):
    """Authoritative state of one deployment or destroy run.

    Mutated only through :class:`~infra_wizard.workflows.store.WorkflowStore`
    while holding the workflow's lock.
    """

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    status: WorkflowStatus = WorkflowStatus.INITIALIZING
    mode: WorkflowMode = WorkflowMode.APPLY
    steps: list[Stage] = Field(default_factory=list)
    context: WorkflowContext
    working_directory: Path | None = None
    logs: list[LogEntry] = Field(default_factory=list)
    outputs: dict[str, Any] | None = None
    artifacts: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None
    failed_stage: str | None = None
    sequence: int = 0
    run: int = 1
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    finished_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def step(self, stage_id: str) -> Stage | None:
        for step in self.steps:
            if step.id == stage_id:
                return step
        return None

    def running_step(self) -> Stage | None:
        for step in self.steps:
            if step.status == StageStatus.RUNNING:
                return step
        return None

    def finish(self, status: WorkflowStatus) -> None:
        self.status = status
        self.finished_at = utcnow()

    def summary(self) -> WorkflowSummary:
        current = self.running_step()
        return WorkflowSummary(
            id=self.id,
            status=self.status,
            mode=self.mode,
            project_name=self.context.project_name,
            environment=self.context.environment,
            deployment_type=self.context.deployment_type,
            current_step=current.id if current else None,
            progress=self.progress(),
            error=self.error,
            created_at=self.created_at,
            finished_at=self.finished_at,
        )

    def progress(self) -> int:
        """Percentage of steps that reached completed or skipped."""
        if not self.steps:
            return 0
        done = sum(1 for s in self.steps if s.status in (StageStatus.COMPLETED, StageStatus.SKIPPED))
        return int(done * 100 / len(self.steps))

    def snapshot(self, log_tail: int = 50) -> dict[str, Any]:
        """Client-facing view. Never includes credentials."""
        data: dict[str, Any] = {
            "id": self.id,
            "status": self.status.value,
            "mode": self.mode.value,
            "run": self.run,
            "projectName": self.context.project_name,
            "environment": self.context.environment.value,
            "deploymentType": self.context.deployment_type.value,
            "steps": [s.model_dump(mode="json") for s in self.steps],
            "sequence": self.sequence,
            "createdAt": self.created_at.isoformat(),
            "finishedAt": self.finished_at.isoformat() if self.finished_at else None,
            "logs": [entry.to_wire() for entry in self.logs[-log_tail:]] if log_tail else [],
        }
        if self.outputs is not None:
            data["outputs"] = self.outputs
        if self.error is not None:
            data["error"] = self.error
            data["failedStage"] = self.failed_stage
        return data


class WorkflowSummary(BaseModel):
    id: str
    status: WorkflowStatus
    mode: WorkflowMode
    project_name: str
    environment: Environment
    deployment_type: DeploymentType
    current_step: str | None = None
    progress: int = 0
    error: str | None = None
    created_at: datetime
    finished_at: datetime | None = None
