from contextlib import asynccontextmanager
from typing import Optional
import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from deploy_console.api import deployments, health
from deploy_console.core.config import Settings, get_settings
from deploy_console.services.deployment_controller import DeploymentController
from deploy_console.services.github_actions import GitHubActionsPoller, RunReferenceStore
from deploy_console.services.ledger import DeploymentLedger

logger = logging.getLogger(__name__)


def create_app(settings: Optional[Settings] = None, ledger: Optional[DeploymentLedger] = None) -> FastAPI:
    """
    Build the API. Components are created once per app from Settings and
    shared through app.state.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Handle startup and shutdown events."""
        logger.info(f"{settings.PROJECT_NAME} starting up (root: {settings.APP_ROOT})")
        yield
        logger.info(f"{settings.PROJECT_NAME} shutting down")
        await app.state.controller.ledger.dispose()

    app = FastAPI(
        title=settings.PROJECT_NAME,
        description="Web console for the site deployment pipeline",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.controller = DeploymentController.from_settings(settings, ledger=ledger)
    app.state.poller = GitHubActionsPoller(settings, RunReferenceStore(settings.path(settings.RUN_ID_FILE)))

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        logger.error(f"[VALIDATION ERROR] on {request.url}: {exc.errors()}")
        return JSONResponse(
            status_code=422,
            content={"detail": exc.errors()},
        )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health.router, prefix=f"{settings.API_V1_STR}/health", tags=["health"])
    app.include_router(deployments.router, prefix=f"{settings.API_V1_STR}/deployments", tags=["deployments"])
    return app


app = create_app()
