"""Live workflow events over WebSocket."""
from __future__ import annotations

import asyncio
import contextlib

import structlog
from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from infra_wizard.core.exceptions import NotFoundError
from infra_wizard.events.hub import Subscription

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["live"])

UNKNOWN_WORKFLOW_CLOSE_CODE = 4404


@router.websocket("/ws/deployments/{workflow_id}")
async def deployment_events(websocket: WebSocket, workflow_id: str, snapshot: bool = False) -> None:
    """Stream a workflow's events as JSON frames.

    With ``?snapshot=true`` the first frame is ``{"type": "snapshot", ...}``
    taken after subscribing; live frames whose ``sequence`` is not greater
    than the snapshot's are already reflected in it.
    """
    orchestrator = websocket.app.state.orchestrator
    await websocket.accept()
    try:
        subscription = orchestrator.hub.subscribe(workflow_id)
    except NotFoundError:
        await websocket.close(code=UNKNOWN_WORKFLOW_CLOSE_CODE, reason="workflow not found")
        return

    logger.debug("live_client_connected", workflow_id=workflow_id)
    try:
        if snapshot:
            data = await orchestrator.snapshot(workflow_id)
            await websocket.send_json({
                "type": "snapshot",
                "workflowId": workflow_id,
                "sequence": data["sequence"],
                "data": data,
            })
        sender = asyncio.create_task(_forward(websocket, subscription))
        receiver = asyncio.create_task(_drain_client(websocket))
        done, pending = await asyncio.wait({sender, receiver}, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError, WebSocketDisconnect):
                await task
        for task in done:
            with contextlib.suppress(WebSocketDisconnect, RuntimeError):
                task.result()
        if sender in done and receiver not in done:
            # Subscription ended (workflow removed or client too slow).
            with contextlib.suppress(RuntimeError, WebSocketDisconnect):
                await websocket.close(code=1000)
    except (WebSocketDisconnect, NotFoundError):
        pass
    finally:
        orchestrator.hub.unsubscribe(subscription)
        logger.debug("live_client_disconnected", workflow_id=workflow_id)


async def _forward(websocket: WebSocket, subscription: Subscription) -> None:
    async for event in subscription:
        await websocket.send_json(event.to_wire())


async def _drain_client(websocket: WebSocket) -> None:
    """Consume client frames until it disconnects. Client messages carry no commands."""
    with contextlib.suppress(WebSocketDisconnect):
        while True:
            await websocket.receive_text()
