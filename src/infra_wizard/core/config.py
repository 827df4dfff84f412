from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field


class ConflictImport(BaseModel):
    """A resource imported into Terraform state before ``apply``.

    Both fields are ``str.format`` templates rendered against the workflow's
    ``project_name`` and ``environment``.
    """

    address: str
    resource_id: str

    def render(self, **values: str) -> tuple[str, str]:
        return self.address.format(**values), self.resource_id.format(**values)


def _default_conflict_imports() -> list[ConflictImport]:
    return [
        ConflictImport(
            address="module.database[0].aws_db_subnet_group.main",
            resource_id="{project_name}-{environment}-db-subnet-group",
        ),
        ConflictImport(
            address="module.eks.aws_iam_role.eks_cluster",
            resource_id="{project_name}-{environment}-eks-cluster-role",
        ),
        ConflictImport(
            address="module.eks.aws_iam_role.eks_node_group",
            resource_id="{project_name}-{environment}-eks-node-group-role",
        ),
    ]


class WizardConfig(BaseModel):
    terraform_template_path: Path = Path("./terraform")
    work_root: Path = Field(default_factory=lambda: Path(tempfile.gettempdir()))
    git_binary: str = "git"
    docker_binary: str = "docker"
    terraform_binary: str = "terraform"
    aws_binary: str = "aws"
    kubectl_binary: str = "kubectl"
    stage_timeout_seconds: float | None = Field(default=None, gt=0)
    """Per-stage deadline. ``None`` (default) means stages may run indefinitely."""
    retention_seconds: float = Field(default=86400.0, gt=0)
    sweep_interval_seconds: float = Field(default=300.0, gt=0)
    log_tail: int = Field(default=50, ge=0, le=10000)
    subscriber_queue_size: int = Field(default=10000, ge=1)
    app_namespace: str = "default"
    rollout_timeout_seconds: int = Field(default=600, ge=1)
    conflict_imports: list[ConflictImport] = Field(default_factory=_default_conflict_imports)
    cors_origins: list[str] = Field(default_factory=lambda: ["http://localhost:3000"])
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    json_logs: bool = True

    @classmethod
    def from_env(cls) -> WizardConfig:
        """Create a :class:`WizardConfig` from ``INFRA_WIZARD_*`` environment variables.

        Reads the following env vars (all optional):

        * ``INFRA_WIZARD_TERRAFORM_TEMPLATE`` → ``terraform_template_path``
        * ``INFRA_WIZARD_WORK_ROOT`` → ``work_root``
        * ``INFRA_WIZARD_GIT_BIN`` / ``_DOCKER_BIN`` / ``_TERRAFORM_BIN`` /
          ``_AWS_BIN`` / ``_KUBECTL_BIN`` → the matching ``*_binary`` field
        * ``INFRA_WIZARD_STAGE_TIMEOUT`` → ``stage_timeout_seconds`` (float seconds)
        * ``INFRA_WIZARD_RETENTION_SECONDS`` → ``retention_seconds``
        * ``INFRA_WIZARD_APP_NAMESPACE`` → ``app_namespace``
        * ``INFRA_WIZARD_CONFLICT_IMPORTS`` → ``conflict_imports`` (JSON list of
          ``{"address": ..., "resource_id": ...}``)
        * ``INFRA_WIZARD_CORS_ORIGINS`` → ``cors_origins`` (comma separated)
        * ``INFRA_WIZARD_LOG_LEVEL`` → ``log_level``
        * ``INFRA_WIZARD_JSON_LOGS`` → ``json_logs`` (``1``/``true``/``yes``)

        Any variable that is not set or is empty is left at its default value.
        """
        kwargs: dict[str, Any] = {}

        template = os.environ.get("INFRA_WIZARD_TERRAFORM_TEMPLATE")
        if template:
            kwargs["terraform_template_path"] = Path(template)

        work_root = os.environ.get("INFRA_WIZARD_WORK_ROOT")
        if work_root:
            kwargs["work_root"] = Path(work_root)

        for tool in ("git", "docker", "terraform", "aws", "kubectl"):
            value = os.environ.get(f"INFRA_WIZARD_{tool.upper()}_BIN")
            if value:
                kwargs[f"{tool}_binary"] = value

        timeout_str = os.environ.get("INFRA_WIZARD_STAGE_TIMEOUT")
        if timeout_str:
            kwargs["stage_timeout_seconds"] = float(timeout_str)

        retention_str = os.environ.get("INFRA_WIZARD_RETENTION_SECONDS")
        if retention_str:
            kwargs["retention_seconds"] = float(retention_str)

        namespace = os.environ.get("INFRA_WIZARD_APP_NAMESPACE")
        if namespace:
            kwargs["app_namespace"] = namespace

        imports_json = os.environ.get("INFRA_WIZARD_CONFLICT_IMPORTS")
        if imports_json:
            kwargs["conflict_imports"] = json.loads(imports_json)

        origins = os.environ.get("INFRA_WIZARD_CORS_ORIGINS")
        if origins:
            kwargs["cors_origins"] = [o.strip() for o in origins.split(",") if o.strip()]

        log_level = os.environ.get("INFRA_WIZARD_LOG_LEVEL")
        if log_level:
            kwargs["log_level"] = log_level.upper()

        json_logs = os.environ.get("INFRA_WIZARD_JSON_LOGS")
        if json_logs:
            kwargs["json_logs"] = json_logs.strip().lower() in ("1", "true", "yes")

        return cls(**kwargs)
