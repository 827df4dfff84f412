"""Tests for events/hub.py: fan-out, ordering, terminal suppression, slow subscribers."""
from __future__ import annotations

import asyncio

import pytest

from conftest import make_request
from infra_wizard.core.constants import EventType, LogLevel, WorkflowStatus
from infra_wizard.core.exceptions import NotFoundError
from infra_wizard.events.hub import EventHub, Subscription
from infra_wizard.workflows.models import DeploymentRequest, Workflow, WorkflowContext
from infra_wizard.workflows.store import WorkflowStore


def _workflow() -> Workflow:
    request = DeploymentRequest.model_validate(make_request())
    return Workflow(context=WorkflowContext.from_request(request))


@pytest.fixture
def store() -> WorkflowStore:
    return WorkflowStore()


@pytest.fixture
def hub(store: WorkflowStore) -> EventHub:
    return EventHub(store, max_queue=100)


@pytest.fixture
def workflow(store: WorkflowStore) -> Workflow:
    return store.create(_workflow())


# ---------------------------------------------------------------------------
# Subscribe / publish
# ---------------------------------------------------------------------------


async def test_subscribe_unknown_workflow_raises(hub: EventHub) -> None:
    with pytest.raises(NotFoundError):
        hub.subscribe("nope")


async def test_publish_fans_out_in_order(hub: EventHub, workflow: Workflow) -> None:
    first = hub.subscribe(workflow.id)
    second = hub.subscribe(workflow.id)
    for i in range(5):
        await hub.log(workflow.id, f"line {i}")

    for sub in (first, second):
        events = sub.drain()
        assert [e.data["message"] for e in events] == [f"line {i}" for i in range(5)]
        assert [e.sequence for e in events] == [1, 2, 3, 4, 5]


async def test_log_event_appends_to_workflow_log(hub: EventHub, workflow: Workflow) -> None:
    event = await hub.log(workflow.id, "hello", LogLevel.WARNING, stage_id="build")
    assert event is not None
    assert event.type == EventType.LOG
    assert event.data["level"] == "warning"
    assert event.data["stageId"] == "build"
    assert workflow.logs[-1].message == "hello"
    assert workflow.sequence == 1


async def test_late_subscriber_has_no_replay(hub: EventHub, workflow: Workflow) -> None:
    await hub.log(workflow.id, "before")
    late = hub.subscribe(workflow.id)
    await hub.log(workflow.id, "after")
    assert [e.data["message"] for e in late.drain()] == ["after"]


async def test_publish_after_terminal_is_dropped(hub: EventHub, workflow: Workflow) -> None:
    sub = hub.subscribe(workflow.id)
    await hub.publish(
        workflow.id,
        EventType.DEPLOYMENT_COMPLETED,
        {"outputs": {}, "isDestroy": False},
        mutate=lambda wf: wf.finish(WorkflowStatus.COMPLETED),
    )
    assert await hub.log(workflow.id, "too late") is None
    events = sub.drain()
    assert [e.type for e in events] == [EventType.DEPLOYMENT_COMPLETED]
    assert workflow.logs == []


async def test_mutator_returning_false_drops_event(hub: EventHub, workflow: Workflow) -> None:
    sub = hub.subscribe(workflow.id)
    assert await hub.publish(workflow.id, EventType.STEP_UPDATE, {}, mutate=lambda wf: False) is None
    assert sub.drain() == []
    assert workflow.sequence == 0


async def test_workflows_do_not_cross_talk(hub: EventHub, store: WorkflowStore, workflow: Workflow) -> None:
    other = store.create(_workflow())
    sub_a = hub.subscribe(workflow.id)
    sub_b = hub.subscribe(other.id)
    await hub.log(workflow.id, "for a")
    await hub.log(other.id, "for b")
    assert [e.data["message"] for e in sub_a.drain()] == ["for a"]
    assert [e.data["message"] for e in sub_b.drain()] == ["for b"]


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


async def test_unsubscribe_ends_iteration(hub: EventHub, workflow: Workflow) -> None:
    sub = hub.subscribe(workflow.id)
    await hub.log(workflow.id, "one")
    hub.unsubscribe(sub)
    hub.unsubscribe(sub)
    assert [e.data["message"] async for e in sub] == ["one"]
    assert hub.subscriber_count(workflow.id) == 0


async def test_close_workflow_closes_all_subscriptions(hub: EventHub, workflow: Workflow) -> None:
    subs = [hub.subscribe(workflow.id) for _ in range(3)]
    hub.close_workflow(workflow.id)
    assert all(s.closed for s in subs)
    assert await subs[0].get(timeout=1) is None


async def test_slow_subscriber_disconnected_others_unaffected(store: WorkflowStore, workflow: Workflow) -> None:
    hub = EventHub(store, max_queue=2)
    slow = hub.subscribe(workflow.id)
    fast = hub.subscribe(workflow.id)
    received: list[str] = []

    for i in range(4):
        await hub.log(workflow.id, f"line {i}")
        received += [e.data["message"] for e in fast.drain()]

    assert slow.closed
    assert received == [f"line {i}" for i in range(4)]
    assert hub.subscriber_count(workflow.id) == 1
    assert len([e async for e in slow]) == 2


async def test_get_times_out() -> None:
    sub = Subscription("wf", max_queue=10)
    with pytest.raises(asyncio.TimeoutError):
        await sub.get(timeout=0.01)


async def test_event_wire_format(hub: EventHub, workflow: Workflow) -> None:
    event = await hub.publish(workflow.id, EventType.STEP_UPDATE, {"stageId": "clone", "status": "running"})
    wire = event.to_wire()
    assert wire["type"] == "step-update"
    assert wire["workflowId"] == workflow.id
    assert wire["sequence"] == 1
    assert wire["data"] == {"stageId": "clone", "status": "running"}
    assert "timestamp" in wire
