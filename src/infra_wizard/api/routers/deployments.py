"""Deployment workflow endpoints."""
from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Query, Request, Response
from fastapi.responses import JSONResponse

from infra_wizard.api.suggestions import suggest
from infra_wizard.core.exceptions import ValidationError

router = APIRouter(prefix="/api/deployments", tags=["deployments"])


def _steps(workflow: Any) -> list[dict[str, Any]]:
    return [step.model_dump(mode="json") for step in workflow.steps]


@router.post("")
async def create_deployment(request: Request) -> JSONResponse:
    """Submit a deployment. Returns as soon as the workflow exists."""
    try:
        body = await request.json()
    except ValueError as exc:
        raise ValidationError("Request body must be JSON", code="INVALID_JSON") from exc
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object", code="INVALID_JSON")

    orchestrator = request.app.state.orchestrator
    workflow = await orchestrator.submit(body)
    return JSONResponse(content={
        "workflowId": workflow.id,
        "status": workflow.status.value,
        "steps": _steps(workflow),
    })


@router.get("")
async def list_deployments(request: Request) -> JSONResponse:
    summaries = request.app.state.orchestrator.list()
    return JSONResponse(content={
        "deployments": [s.model_dump(mode="json") for s in summaries],
        "count": len(summaries),
    })


@router.get("/{workflow_id}")
async def get_deployment(workflow_id: str, request: Request) -> JSONResponse:
    """Snapshot with the last log lines and a hint for known failures."""
    snapshot = await request.app.state.orchestrator.snapshot(workflow_id)
    hint = suggest(snapshot.get("error"))
    if hint:
        snapshot["suggestion"] = hint
    return JSONResponse(content=snapshot)


@router.get("/{workflow_id}/logs")
async def get_deployment_logs(
    workflow_id: str,
    request: Request,
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
) -> JSONResponse:
    entries, total = request.app.state.orchestrator.logs(workflow_id, limit=limit, offset=offset)
    return JSONResponse(content={
        "workflowId": workflow_id,
        "logs": [entry.to_wire() for entry in entries],
        "total": total,
        "limit": limit,
        "offset": offset,
    })


@router.post("/{workflow_id}/destroy")
async def destroy_deployment(workflow_id: str, request: Request) -> JSONResponse:
    workflow = await request.app.state.orchestrator.destroy(workflow_id)
    return JSONResponse(content={
        "workflowId": workflow.id,
        "status": workflow.status.value,
        "steps": _steps(workflow),
    })


@router.post("/{workflow_id}/cancel")
async def cancel_deployment(workflow_id: str, request: Request) -> JSONResponse:
    workflow = await request.app.state.orchestrator.cancel(workflow_id)
    return JSONResponse(content={"workflowId": workflow.id, "status": workflow.status.value})


@router.delete("/{workflow_id}", status_code=204)
async def delete_deployment(workflow_id: str, request: Request) -> Response:
    await request.app.state.orchestrator.remove(workflow_id)
    return Response(status_code=204)
