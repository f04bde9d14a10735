"""Run API Routes - Start, inspect and control scenario runs"""
from datetime import datetime
from typing import Any, Dict, List, Optional
from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field

from ..deps import get_actor_dep, get_correlation_id_dep, get_run_service_dep
from ...domain.models import ActorContext
from ...domain.enums import RunStatus
from ...services.scenario_run_service import ScenarioRunService
from ...utils.logger import get_logger

logger = get_logger(__name__)
router = APIRouter()


# ============================================================================
# Request/Response Models
# ============================================================================

class StartRunRequest(BaseModel):
    """Request to start a scenario run"""
    scenario_id: str = Field(..., min_length=1)
    playbook_id: Optional[str] = Field(None, description="Defaults to the scenario's playbook")
    override_parameters: Dict[str, Any] = Field(default_factory=dict)
    scheduled_at: Optional[datetime] = Field(None, description="Start later instead of now")
    metadata: Dict[str, Any] = Field(default_factory=dict)


class StartRunResponse(BaseModel):
    """Response after starting a run"""
    run_id: str
    status: RunStatus


class CancelRunRequest(BaseModel):
    """Request to cancel a run"""
    reason: Optional[str] = Field(None, max_length=2000)


class RunStatusResponse(BaseModel):
    """Run plus every step run"""
    run: Dict[str, Any]
    steps: List[Dict[str, Any]]


class RunListResponse(BaseModel):
    """Response for run list"""
    items: List[Dict[str, Any]]
    page: int
    page_size: int
    total: int


# ============================================================================
# Routes
# ============================================================================

@router.post("", response_model=StartRunResponse, status_code=status.HTTP_201_CREATED)
async def start_run(
    request: StartRunRequest,
    actor: ActorContext = Depends(get_actor_dep),
    service: ScenarioRunService = Depends(get_run_service_dep),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    """
    Start a run

    The playbook graph is validated and every action type checked against
    the registered handlers before anything is persisted.
    """
    run = service.start_run(
        request.scenario_id,
        playbook_id=request.playbook_id,
        override_parameters=request.override_parameters,
        actor=actor,
        scheduled_at=request.scheduled_at,
        metadata=request.metadata
    )

    logger.info(
        f"Started run: {run.run_id}",
        extra={"run_id": run.run_id, "scenario_id": run.scenario_id, "actor_id": actor.actor_id}
    )
    return StartRunResponse(run_id=run.run_id, status=run.status)


@router.get("", response_model=RunListResponse)
async def list_runs(
    status: Optional[RunStatus] = Query(None),
    scenario_id: Optional[str] = Query(None),
    playbook_id: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    service: ScenarioRunService = Depends(get_run_service_dep),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    """List runs, newest first"""
    skip = (page - 1) * page_size
    runs, total = service.list_runs(
        status=status,
        scenario_id=scenario_id,
        playbook_id=playbook_id,
        skip=skip,
        limit=page_size
    )
    return RunListResponse(
        items=[r.model_dump(mode="json") for r in runs],
        page=page,
        page_size=page_size,
        total=total
    )


@router.get("/{run_id}", response_model=RunStatusResponse)
async def get_run_status(
    run_id: str,
    service: ScenarioRunService = Depends(get_run_service_dep),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    """Consistent snapshot of a run and all of its step runs"""
    view = service.get_run_status(run_id)
    return RunStatusResponse(
        run=view.run.model_dump(mode="json"),
        steps=[s.model_dump(mode="json") for s in view.steps]
    )


@router.post("/{run_id}/cancel", response_model=StartRunResponse)
async def cancel_run(
    run_id: str,
    request: Optional[CancelRunRequest] = None,
    actor: ActorContext = Depends(get_actor_dep),
    service: ScenarioRunService = Depends(get_run_service_dep),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    """
    Cancel a run

    Steps already handed to an action handler are marked cancelled with an
    uncertain outcome; their side effect may still happen.
    """
    reason = request.reason if request else None
    run = service.cancel_run(run_id, reason=reason, actor=actor)
    logger.info(
        f"Cancelled run: {run_id}",
        extra={"run_id": run_id, "actor_id": actor.actor_id}
    )
    return StartRunResponse(run_id=run.run_id, status=run.status)


@router.post("/{run_id}/pause", response_model=StartRunResponse)
async def pause_run(
    run_id: str,
    actor: ActorContext = Depends(get_actor_dep),
    service: ScenarioRunService = Depends(get_run_service_dep),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    """Stop dispatching new steps; in-flight work drains"""
    run = service.pause_run(run_id, actor=actor)
    return StartRunResponse(run_id=run.run_id, status=run.status)


@router.post("/{run_id}/resume", response_model=StartRunResponse)
async def resume_run(
    run_id: str,
    actor: ActorContext = Depends(get_actor_dep),
    service: ScenarioRunService = Depends(get_run_service_dep),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    """Resume a paused run"""
    run = service.resume_run(run_id, actor=actor)
    return StartRunResponse(run_id=run.run_id, status=run.status)
