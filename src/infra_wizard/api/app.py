"""API application factory.

Creates a FastAPI app wired to a :class:`DeploymentOrchestrator`.

Usage::

    from infra_wizard.api import create_app

    app = create_app(WizardConfig.from_env())
    # uvicorn.run(app, host="0.0.0.0", port=3001)
"""
from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from infra_wizard.__version__ import __version__
from infra_wizard.core.config import WizardConfig
from infra_wizard.core.exceptions import InfraWizardError
from infra_wizard.workflows.engine import DeploymentOrchestrator

logger = structlog.get_logger(__name__)


def create_app(
    config: WizardConfig | None = None,
    *,
    orchestrator: DeploymentOrchestrator | None = None,
    run_sweeper: bool = True,
) -> FastAPI:
    """Create the FastAPI application.

    Args:
        config: Runtime configuration. Ignored when *orchestrator* is given.
        orchestrator: Pre-built orchestrator (tests inject one wired to
            mock collaborators).
        run_sweeper: Start the retention sweep while the app is running.

    Returns:
        A configured :class:`FastAPI` application.
    """
    orchestrator = orchestrator or DeploymentOrchestrator(config or WizardConfig())
    config = orchestrator.config

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        sweeper = asyncio.create_task(orchestrator.run_sweeper()) if run_sweeper else None
        logger.info("api_started", version=__version__)
        try:
            yield
        finally:
            if sweeper is not None:
                sweeper.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await sweeper
            await orchestrator.shutdown()

    app = FastAPI(title="Infra Wizard", version=__version__, lifespan=lifespan)
    app.state.orchestrator = orchestrator
    app.state.config = config

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(InfraWizardError)
    async def _handle_error(request: Request, exc: InfraWizardError) -> JSONResponse:
        status = exc.status_code or 500
        if status >= 500:
            logger.error("request_failed", path=request.url.path, error=exc.message)
        content: dict[str, object] = {"error": exc.message}
        if exc.code:
            content["code"] = exc.code
        if exc.details:
            content["details"] = exc.details
        return JSONResponse(status_code=status, content=content)

    from infra_wizard.api.routers.cloud import router as cloud_router
    from infra_wizard.api.routers.deployments import router as deployments_router
    from infra_wizard.api.routers.health import router as health_router
    from infra_wizard.api.routers.live import router as live_router
    from infra_wizard.api.routers.source import router as source_router

    app.include_router(health_router)
    app.include_router(deployments_router)
    app.include_router(source_router)
    app.include_router(cloud_router)
    app.include_router(live_router)

    logger.info("api_app_created", routers=5)
    return app
