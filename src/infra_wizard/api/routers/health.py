"""Health check endpoint."""
from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from infra_wizard.__version__ import __version__

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check(request: Request) -> JSONResponse:
    """Liveness plus the number of workflows currently running."""
    orchestrator = request.app.state.orchestrator
    return JSONResponse(content={
        "status": "healthy",
        "version": __version__,
        "activeWorkflows": orchestrator.active_count,
    })
