"""
Deployment API endpoints.

Thin HTTP layer over DeploymentController and GitHubActionsPoller. Triggers
return as soon as the background runner is launched; the UI then polls
/status and /logs.
"""
import logging
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from deploy_console.exceptions import ConfigurationError, DeploymentInProgressError
from deploy_console.schemas.deployment import (
    CILogs,
    CIStatus,
    ClickUpTaskUpdate,
    DeploymentHistoryEntry,
    DeploymentStatus,
    LogRecord,
    StepInfo,
    SystemStatus,
    TriggerRequest,
    TriggerResult,
)
from deploy_console.services.deployment_controller import DeploymentController
from deploy_console.services.github_actions import GitHubActionsPoller

logger = logging.getLogger(__name__)

router = APIRouter()


def get_controller(request: Request) -> DeploymentController:
    return request.app.state.controller


def get_poller(request: Request) -> GitHubActionsPoller:
    return request.app.state.poller


def _to_http_error(exc: Exception) -> HTTPException:
    """Map controller errors onto status codes with a {error, message} body."""
    if isinstance(exc, DeploymentInProgressError):
        return HTTPException(status_code=409, detail={"error": "deployment_in_progress", "message": str(exc)})
    return HTTPException(status_code=400, detail={"error": "configuration_error", "message": str(exc)})


@router.post("/trigger", response_model=TriggerResult)
def trigger_deployment(
    payload: Optional[TriggerRequest] = None,
    controller: DeploymentController = Depends(get_controller),
) -> TriggerResult:
    """
    Start the full pipeline (or the steps listed in the body) in the background.

    Returns 409 if a deployment is already running and force is not set,
    400 if credentials, scripts or a Python interpreter are missing.
    """
    payload = payload or TriggerRequest()
    try:
        result = controller.trigger_full(payload.steps, force=payload.force, test_mode=payload.test_mode)
    except (ConfigurationError, DeploymentInProgressError) as e:
        logger.warning(f"Deployment trigger rejected: {e}")
        raise _to_http_error(e)
    logger.info(f"Deployment {result.deployment_id} started (PID {result.pid})")
    return result


@router.post("/repeat", response_model=TriggerResult)
def repeat_deployment(
    force: bool = False,
    controller: DeploymentController = Depends(get_controller),
) -> TriggerResult:
    """Re-run the deploy step using credentials from a previous run."""
    try:
        return controller.trigger_repeat(force=force)
    except (ConfigurationError, DeploymentInProgressError) as e:
        logger.warning(f"Deploy-again rejected: {e}")
        raise _to_http_error(e)


@router.post("/steps/{step_key}", response_model=TriggerResult)
def run_single_step(
    step_key: str,
    force: bool = False,
    controller: DeploymentController = Depends(get_controller),
) -> TriggerResult:
    try:
        return controller.run_step(step_key, force=force)
    except (ConfigurationError, DeploymentInProgressError) as e:
        raise _to_http_error(e)


@router.get("/steps", response_model=Dict[str, StepInfo])
def list_steps(controller: DeploymentController = Depends(get_controller)) -> Dict[str, StepInfo]:
    return controller.available_steps()


@router.get("/status", response_model=DeploymentStatus)
def get_status(controller: DeploymentController = Depends(get_controller)) -> DeploymentStatus:
    return controller.status()


@router.get("/logs", response_model=List[LogRecord])
def get_logs(
    lines: int = Query(50, ge=1, le=5000),
    since: Optional[str] = Query(None, description="Only records after this timestamp (epoch or YYYY-MM-DD HH:MM:SS)"),
    controller: DeploymentController = Depends(get_controller),
) -> List[LogRecord]:
    """Newest-first tail, or oldest-first records after `since`."""
    return controller.logs(lines, since)


@router.delete("/logs")
def clear_logs(controller: DeploymentController = Depends(get_controller)) -> Dict[str, str]:
    controller.clear_logs()
    return {"status": "cleared"}


@router.get("/history", response_model=List[DeploymentHistoryEntry])
async def get_history(
    limit: int = Query(10, ge=1, le=100),
    controller: DeploymentController = Depends(get_controller),
) -> List[DeploymentHistoryEntry]:
    return await controller.history(limit)


@router.post("/stop", response_model=DeploymentStatus)
async def stop_deployment(controller: DeploymentController = Depends(get_controller)) -> DeploymentStatus:
    """Cancel the active run. A finished run's status is returned unchanged."""
    return await controller.stop()


@router.post("/reset", response_model=DeploymentStatus)
def reset_deployment(controller: DeploymentController = Depends(get_controller)) -> DeploymentStatus:
    return controller.reset()


@router.get("/system", response_model=SystemStatus)
def system_status(controller: DeploymentController = Depends(get_controller)) -> SystemStatus:
    return controller.system_status()


@router.put("/clickup", response_model=DeploymentStatus)
def set_clickup_task(
    payload: ClickUpTaskUpdate,
    controller: DeploymentController = Depends(get_controller),
) -> DeploymentStatus:
    try:
        return controller.set_clickup_task(payload.task_id, payload.enabled)
    except DeploymentInProgressError as e:
        raise _to_http_error(e)


@router.get("/github/status", response_model=CIStatus)
async def github_status(poller: GitHubActionsPoller = Depends(get_poller)) -> CIStatus:
    return await poller.check_status()


@router.get("/github/logs", response_model=CILogs)
async def github_logs(
    run_id: Optional[str] = None,
    poller: GitHubActionsPoller = Depends(get_poller),
) -> CILogs:
    return await poller.get_logs(run_id)
