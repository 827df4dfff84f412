"""Cloud account helpers for the wizard's credentials step."""
from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from infra_wizard.workflows.models import CloudCredentials

router = APIRouter(prefix="/api/cloud", tags=["cloud"])


@router.post("/validate-credentials")
async def validate_credentials(body: CloudCredentials, request: Request) -> JSONResponse:
    """Resolve the caller identity for the submitted keys. Nothing is stored."""
    identity = await request.app.state.orchestrator.validate_credentials(body)
    return JSONResponse(content={
        "success": True,
        "account": identity.get("Account"),
        "userId": identity.get("UserId"),
        "arn": identity.get("Arn"),
        "region": body.region,
    })
