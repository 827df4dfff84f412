"""Source repository helpers for the wizard's repository step."""
from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, SecretStr

from infra_wizard.collaborators.github import default_branch

router = APIRouter(prefix="/api/source", tags=["source"])


class _BranchesBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    url: str = Field(min_length=1)
    access_token: SecretStr | None = Field(default=None, alias="accessToken")


@router.post("/branches")
async def list_branches(body: _BranchesBody, request: Request) -> JSONResponse:
    """List branch names and the branch the wizard should preselect."""
    host = request.app.state.orchestrator.source_host
    token = body.access_token.get_secret_value() if body.access_token else None
    branches = await host.list_branches(body.url, token)
    return JSONResponse(content={
        "branches": branches,
        "defaultBranch": default_branch(branches),
    })
