"""Per-workflow publish/subscribe hub.

Progress events are published once and fanned out to every subscriber of
the workflow id. Publishing never waits on subscribers: each subscription
has its own queue, filled with ``put_nowait`` while the workflow's lock is
held, so all subscribers observe one workflow's events in the same order the
orchestrator produced them.

Transports (the WebSocket route, tests, a CLI tail) sit on top of
:class:`Subscription`; the hub knows nothing about them.
"""
from __future__ import annotations

import asyncio
import uuid
from collections.abc import Callable
from datetime import datetime
from typing import Any

import structlog
from pydantic import BaseModel, Field

from infra_wizard.core.constants import EventType, LogLevel
from infra_wizard.workflows.models import LogEntry, Workflow, utcnow
from infra_wizard.workflows.store import WorkflowStore

logger = structlog.get_logger(__name__)

Mutator = Callable[[Workflow], bool | None]


class WorkflowEvent(BaseModel):
    """One event on a workflow's stream.

    ``sequence`` increases by one per event within a workflow, so a client
    that fetched a snapshot can discard live events it already has.
    """

    type: EventType
    workflow_id: str
    sequence: int
    timestamp: datetime = Field(default_factory=utcnow)
    data: dict[str, Any] = Field(default_factory=dict)

    def to_wire(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "workflowId": self.workflow_id,
            "sequence": self.sequence,
            "timestamp": self.timestamp.isoformat(),
            "data": self.data,
        }


class Subscription:
    """A single observer's view of one workflow's event stream.

    Iterate with ``async for event in subscription``; iteration ends when
    the subscription is closed.
    """

    def __init__(self, workflow_id: str, max_queue: int) -> None:
        self.id = uuid.uuid4().hex
        self.workflow_id = workflow_id
        self._max_queue = max_queue
        self._queue: asyncio.Queue[WorkflowEvent | None] = asyncio.Queue()
        self._closed = False

    def __repr__(self) -> str:
        return f"Subscription(workflow_id={self.workflow_id!r}, pending={self._queue.qsize()})"

    @property
    def closed(self) -> bool:
        return self._closed

    def push(self, event: WorkflowEvent) -> bool:
        """Enqueue *event*. Returns ``False`` if the subscriber has fallen too far behind."""
        if self._closed:
            return False
        if self._queue.qsize() >= self._max_queue:
            return False
        self._queue.put_nowait(event)
        return True

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(None)

    async def get(self, timeout: float | None = None) -> WorkflowEvent | None:
        """Next event, or ``None`` once closed. Raises ``TimeoutError`` on timeout."""
        item = await asyncio.wait_for(self._queue.get(), timeout=timeout)
        if item is None:
            # Keep the sentinel for any other reader.
            self._queue.put_nowait(None)
        return item

    def drain(self) -> list[WorkflowEvent]:
        """Return every event already queued without waiting."""
        events: list[WorkflowEvent] = []
        while not self._queue.empty():
            item = self._queue.get_nowait()
            if item is None:
                self._queue.put_nowait(None)
                break
            events.append(item)
        return events

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> WorkflowEvent:
        item = await self.get()
        if item is None:
            raise StopAsyncIteration
        return item


class EventHub:
    """Fan-out of workflow events to subscribers, keyed by workflow id.

    Args:
        store: The workflow store whose per-workflow locks order publication
            and whose log each ``log`` event is appended to.
        max_queue: Events a subscriber may have pending before it is
            disconnected.
    """

    def __init__(self, store: WorkflowStore, *, max_queue: int = 10000) -> None:
        self._store = store
        self._max_queue = max_queue
        self._subscribers: dict[str, dict[str, Subscription]] = {}

    def __repr__(self) -> str:
        total = sum(len(subs) for subs in self._subscribers.values())
        return f"EventHub(workflows={len(self._subscribers)}, subscribers={total})"

    # ------------------------------------------------------------------ #
    # Subscription registry
    # ------------------------------------------------------------------ #

    def subscribe(self, workflow_id: str) -> Subscription:
        """Register an observer. Only events published after this call are delivered."""
        self._store.get(workflow_id)
        subscription = Subscription(workflow_id, self._max_queue)
        self._subscribers.setdefault(workflow_id, {})[subscription.id] = subscription
        logger.debug("subscriber_joined", workflow_id=workflow_id, subscription_id=subscription.id)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        """Remove *subscription*. Safe to call more than once."""
        subs = self._subscribers.get(subscription.workflow_id)
        if subs is not None:
            subs.pop(subscription.id, None)
            if not subs:
                del self._subscribers[subscription.workflow_id]
        subscription.close()

    def subscriber_count(self, workflow_id: str) -> int:
        return len(self._subscribers.get(workflow_id, {}))

    def close_workflow(self, workflow_id: str) -> None:
        """Close every subscription of *workflow_id* (the workflow is going away)."""
        for subscription in list(self._subscribers.pop(workflow_id, {}).values()):
            subscription.close()

    # ------------------------------------------------------------------ #
    # Publication
    # ------------------------------------------------------------------ #

    async def publish(
        self,
        workflow_id: str,
        event_type: EventType,
        data: dict[str, Any] | None = None,
        *,
        mutate: Mutator | None = None,
    ) -> WorkflowEvent | None:
        """Apply *mutate* and publish one event atomically.

        Nothing happens once the workflow's run is terminal, and nothing
        happens when *mutate* returns ``False``.

        Returns:
            The published event, or ``None`` if it was dropped.
        """
        async with self._store.locked(workflow_id) as workflow:
            if workflow.is_terminal:
                return None
            if mutate is not None and mutate(workflow) is False:
                return None
            return self.emit(workflow, event_type, data)

    async def log(
        self,
        workflow_id: str,
        message: str,
        level: LogLevel = LogLevel.INFO,
        stage_id: str | None = None,
    ) -> WorkflowEvent | None:
        """Append a log line to the workflow and broadcast it."""
        return await self.publish(
            workflow_id,
            EventType.LOG,
            {"message": message, "level": level.value, "stageId": stage_id},
        )

    def emit(
        self,
        workflow: Workflow,
        event_type: EventType,
        data: dict[str, Any] | None = None,
    ) -> WorkflowEvent:
        """Publish with the workflow's lock already held by the caller."""
        payload = dict(data or {})
        now = utcnow()
        if event_type is EventType.LOG:
            entry = LogEntry(
                timestamp=now,
                message=payload.get("message", ""),
                level=LogLevel(payload.get("level", LogLevel.INFO)),
                stage_id=payload.get("stageId"),
            )
            workflow.logs.append(entry)
            payload = entry.to_wire()
        workflow.sequence += 1
        event = WorkflowEvent(
            type=event_type,
            workflow_id=workflow.id,
            sequence=workflow.sequence,
            timestamp=now,
            data=payload,
        )
        self._deliver(event)
        return event

    def _deliver(self, event: WorkflowEvent) -> None:
        subs = self._subscribers.get(event.workflow_id)
        if not subs:
            return
        for subscription in list(subs.values()):
            if not subscription.push(event):
                logger.warning(
                    "subscriber_dropped",
                    workflow_id=event.workflow_id,
                    subscription_id=subscription.id,
                    reason="queue_full",
                )
                self.unsubscribe(subscription)
