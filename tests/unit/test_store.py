"""Tests for workflows/store.py."""
from __future__ import annotations

import asyncio
from datetime import timedelta
from pathlib import Path

import pytest

from conftest import make_request
from infra_wizard.core.constants import WorkflowStatus
from infra_wizard.core.exceptions import NotFoundError
from infra_wizard.workflows.models import DeploymentRequest, Workflow, WorkflowContext, utcnow
from infra_wizard.workflows.store import WorkflowStore


def _workflow() -> Workflow:
    request = DeploymentRequest.model_validate(make_request())
    return Workflow(context=WorkflowContext.from_request(request))


async def test_create_get_and_contains() -> None:
    store = WorkflowStore()
    wf = store.create(_workflow())
    assert store.get(wf.id) is wf
    assert wf.id in store
    assert len(store) == 1
    with pytest.raises(ValueError):
        store.create(wf)


async def test_get_unknown_raises_not_found() -> None:
    with pytest.raises(NotFoundError) as exc_info:
        WorkflowStore().get("missing")
    assert exc_info.value.status_code == 404


async def test_update_runs_under_lock_and_bumps_updated_at() -> None:
    store = WorkflowStore()
    wf = store.create(_workflow())
    before = wf.updated_at
    await asyncio.sleep(0.001)
    result = await store.update(wf.id, lambda w: setattr(w, "status", WorkflowStatus.RUNNING) or "ok")
    assert result == "ok"
    assert wf.status == WorkflowStatus.RUNNING
    assert wf.updated_at > before


async def test_locked_serializes_writers() -> None:
    store = WorkflowStore()
    wf = store.create(_workflow())
    order: list[str] = []

    async def writer(name: str) -> None:
        async with store.locked(wf.id):
            order.append(f"{name}-in")
            await asyncio.sleep(0.01)
            order.append(f"{name}-out")

    await asyncio.gather(writer("a"), writer("b"))
    assert order == ["a-in", "a-out", "b-in", "b-out"]


async def test_delete_removes_directory_and_cancels_token(tmp_path: Path) -> None:
    store = WorkflowStore()
    wf = store.create(_workflow())
    work_dir = tmp_path / "wf"
    (work_dir / "source").mkdir(parents=True)
    wf.working_directory = work_dir
    token = store.token(wf.id)

    await store.delete(wf.id)

    assert not work_dir.exists()
    assert token.cancelled
    assert wf.id not in store


async def test_reset_token_gives_fresh_token() -> None:
    store = WorkflowStore()
    wf = store.create(_workflow())
    old = store.token(wf.id)
    old.cancel()
    new = store.reset_token(wf.id)
    assert new is not old
    assert not new.cancelled


async def test_evict_expired_keeps_active_and_recent() -> None:
    store = WorkflowStore()
    old = store.create(_workflow())
    old.finish(WorkflowStatus.COMPLETED)
    old.finished_at = utcnow() - timedelta(hours=25)
    recent = store.create(_workflow())
    recent.finish(WorkflowStatus.FAILED)
    running = store.create(_workflow())
    running.status = WorkflowStatus.RUNNING

    evicted = await store.evict_expired(timedelta(hours=24))

    assert evicted == [old.id]
    assert old.id not in store
    assert recent.id in store
    assert running.id in store


async def test_list_returns_summaries() -> None:
    store = WorkflowStore()
    wf = store.create(_workflow())
    [summary] = store.list()
    assert summary.id == wf.id
    assert summary.status == WorkflowStatus.INITIALIZING
    assert summary.project_name == "shop-api"
