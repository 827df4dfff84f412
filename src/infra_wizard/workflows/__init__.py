"""Workflow state: models and the in-memory store.

The orchestrator lives in :mod:`infra_wizard.workflows.engine` and the stage
table in :mod:`infra_wizard.workflows.stages`.
"""
from infra_wizard.workflows.models import (
    DeploymentRequest,
    LogEntry,
    Stage,
    StageOutcome,
    Workflow,
    WorkflowContext,
    WorkflowSummary,
)
from infra_wizard.workflows.store import WorkflowStore

__all__ = [
    "DeploymentRequest",
    "LogEntry",
    "Stage",
    "StageOutcome",
    "Workflow",
    "WorkflowContext",
    "WorkflowStore",
    "WorkflowSummary",
]
