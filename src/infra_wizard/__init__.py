"""infra-wizard: drive a repository from source to a running cluster deployment."""

from infra_wizard.__version__ import __version__
from infra_wizard.core.config import ConflictImport, WizardConfig
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
    ConfigurationError,
    InfraWizardError,
    NotFoundError,
    OperationCancelledError,
    ProcessError,
    ProcessExecutionError,
    ProcessSpawnError,
    ResourceCleanupError,
    ValidationError,
    WorkflowConflictError,
)
from infra_wizard.events.hub import EventHub, Subscription, WorkflowEvent
from infra_wizard.process.policy import ConflictTolerantApply
from infra_wizard.process.runner import CancellationToken, ProcessResult, ProcessRunner
from infra_wizard.workflows.engine import DeploymentOrchestrator
from infra_wizard.workflows.models import DeploymentRequest, Workflow
from infra_wizard.workflows.pipeline import Pipeline, StageDefinition
from infra_wizard.workflows.stages import default_pipeline
from infra_wizard.workflows.store import WorkflowStore

__all__ = [
    "__version__",
    "CancellationToken",
    "CollaboratorError",
    "ConfigurationError",
    "ConflictImport",
    "ConflictTolerantApply",
    "DeploymentOrchestrator",
    "DeploymentRequest",
    "EventHub",
    "EventType",
    "InfraWizardError",
    "LogLevel",
    "NotFoundError",
    "OperationCancelledError",
    "Pipeline",
    "ProcessError",
    "ProcessExecutionError",
    "ProcessResult",
    "ProcessRunner",
    "ProcessSpawnError",
    "ResourceCleanupError",
    "StageDefinition",
    "StageId",
    "StageStatus",
    "Subscription",
    "ValidationError",
    "WizardConfig",
    "Workflow",
    "WorkflowConflictError",
    "WorkflowEvent",
    "WorkflowMode",
    "WorkflowStatus",
    "WorkflowStore",
    "default_pipeline",
]
