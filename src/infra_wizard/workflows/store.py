"""In-memory workflow table with per-workflow locking.

Every mutation of a :class:`Workflow` happens inside :meth:`WorkflowStore.locked`
for that id. Locks are per id, so workflows never block each other.
"""
from __future__ import annotations

import asyncio
import shutil
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import TypeVar

import structlog

from infra_wizard.core.exceptions import NotFoundError, ResourceCleanupError
from infra_wizard.process.runner import CancellationToken
from infra_wizard.workflows.models import Workflow, WorkflowSummary, utcnow

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class _Entry:
    __slots__ = ("workflow", "lock", "token")

    def __init__(self, workflow: Workflow) -> None:
        self.workflow = workflow
        self.lock = asyncio.Lock()
        self.token = CancellationToken()


class WorkflowStore:
    """Authoritative table of workflow id → state.

    Besides the :class:`Workflow` model, each entry owns the cleanup handles
    for the workflow: a :class:`CancellationToken` tracking its running OS
    process, and its working directory.
    """

    def __init__(self) -> None:
        self._entries: dict[str, _Entry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, workflow_id: object) -> bool:
        return workflow_id in self._entries

    def __repr__(self) -> str:
        return f"WorkflowStore(workflows={len(self._entries)})"

    def _entry(self, workflow_id: str) -> _Entry:
        entry = self._entries.get(workflow_id)
        if entry is None:
            raise NotFoundError(f"Workflow '{workflow_id}' not found", code="NOT_FOUND")
        return entry

    # ------------------------------------------------------------------ #
    # CRUD
    # ------------------------------------------------------------------ #

    def create(self, workflow: Workflow) -> Workflow:
        if workflow.id in self._entries:
            raise ValueError(f"Workflow '{workflow.id}' already exists")
        self._entries[workflow.id] = _Entry(workflow)
        logger.info("workflow_created", workflow_id=workflow.id, mode=workflow.mode)
        return workflow

    def get(self, workflow_id: str) -> Workflow:
        """Return the live workflow object. Read-only for callers outside the lock."""
        return self._entry(workflow_id).workflow

    def token(self, workflow_id: str) -> CancellationToken:
        return self._entry(workflow_id).token

    def reset_token(self, workflow_id: str) -> CancellationToken:
        """Give the workflow a fresh token for a new run."""
        entry = self._entry(workflow_id)
        entry.token = CancellationToken()
        return entry.token

    @asynccontextmanager
    async def locked(self, workflow_id: str) -> AsyncIterator[Workflow]:
        """Exclusive access to one workflow for a read-modify-write."""
        entry = self._entry(workflow_id)
        async with entry.lock:
            yield entry.workflow
            entry.workflow.updated_at = utcnow()

    async def update(self, workflow_id: str, mutator: Callable[[Workflow], T]) -> T:
        async with self.locked(workflow_id) as workflow:
            return mutator(workflow)

    def list(self) -> list[WorkflowSummary]:
        return [entry.workflow.summary() for entry in self._entries.values()]

    async def delete(self, workflow_id: str) -> None:
        """Terminate the workflow's process, remove its directory, drop the entry.

        Cleanup failures are logged and do not prevent removal.
        """
        entry = self._entry(workflow_id)
        entry.token.cancel()
        async with entry.lock:
            await self.release_directory(entry.workflow)
            self._entries.pop(workflow_id, None)
        logger.info("workflow_deleted", workflow_id=workflow_id)

    async def evict_expired(self, retention: timedelta, now: datetime | None = None) -> list[str]:
        """Delete terminal workflows that finished more than *retention* ago."""
        cutoff = (now or utcnow()) - retention
        expired = [
            wid
            for wid, entry in self._entries.items()
            if entry.workflow.is_terminal
            and entry.workflow.finished_at is not None
            and entry.workflow.finished_at < cutoff
        ]
        for wid in expired:
            await self.delete(wid)
        if expired:
            logger.info("workflows_evicted", count=len(expired))
        return expired

    # ------------------------------------------------------------------ #
    # Resource cleanup
    # ------------------------------------------------------------------ #

    @staticmethod
    async def release_directory(workflow: Workflow) -> None:
        """Remove *workflow*'s working directory. Call with the lock held."""
        path = workflow.working_directory
        if path is None:
            return
        try:
            await asyncio.to_thread(_remove_tree, path)
        except ResourceCleanupError as exc:
            logger.warning(
                "workflow_cleanup_failed",
                workflow_id=workflow.id,
                path=str(path),
                error=str(exc),
            )
            return
        workflow.working_directory = None


def _remove_tree(path: Path) -> None:
    if not path.exists():
        return
    try:
        shutil.rmtree(path)
    except OSError as exc:
        raise ResourceCleanupError(f"Could not remove {path}: {exc}") from exc
