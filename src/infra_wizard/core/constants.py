from __future__ import annotations

from enum import StrEnum


class WorkflowStatus(StrEnum):
    INITIALIZING = "initializing"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    DESTROYING = "destroying"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {WorkflowStatus.COMPLETED, WorkflowStatus.FAILED, WorkflowStatus.CANCELLED}
)


class WorkflowMode(StrEnum):
    APPLY = "apply"
    DESTROY = "destroy"


class StageStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class LogLevel(StrEnum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


class EventType(StrEnum):
    STEP_UPDATE = "step-update"
    LOG = "log"
    DEPLOYMENT_COMPLETED = "deployment-completed"
    DEPLOYMENT_FAILED = "deployment-failed"
    CANCELLED = "cancelled"


class StreamName(StrEnum):
    STDOUT = "stdout"
    STDERR = "stderr"


class StageId(StrEnum):
    """Public stage identifiers. Clients match on these strings."""

    CLONE = "clone"
    BUILD = "build"
    ECR_SETUP = "ecr-setup"
    PUSH = "push"
    TERRAFORM_INIT = "terraform-init"
    TERRAFORM_PLAN = "terraform-plan"
    TERRAFORM_APPLY = "terraform-apply"
    KUBECTL_CONFIG = "kubectl-config"
    DEPLOY_APP = "deploy-app"
    VERIFY = "verify"


class DeploymentType(StrEnum):
    EKS = "eks"
    FARGATE = "fargate"
    EC2 = "ec2"


class Environment(StrEnum):
    DEV = "dev"
    STAGING = "staging"
    PROD = "prod"
