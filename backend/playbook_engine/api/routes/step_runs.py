"""Step Run API Routes - Approval decisions"""
from typing import Any, Dict, Optional
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from ..deps import get_actor_dep, get_correlation_id_dep, get_run_service_dep
from ...domain.models import ActorContext
from ...domain.enums import ApprovalOutcome
from ...services.scenario_run_service import ScenarioRunService
from ...utils.logger import get_logger

logger = get_logger(__name__)
router = APIRouter()


class ApprovalRequest(BaseModel):
    """Approve or reject a step awaiting approval"""
    decision: ApprovalOutcome
    notes: Optional[str] = Field(None, max_length=2000)


class StepRunResponse(BaseModel):
    step_run: Dict[str, Any]


@router.post("/{step_run_id}/approval", response_model=StepRunResponse)
async def submit_approval(
    step_run_id: str,
    request: ApprovalRequest,
    actor: ActorContext = Depends(get_actor_dep),
    service: ScenarioRunService = Depends(get_run_service_dep),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    """
    Submit an approval decision

    Rejected with 409 when the step is not awaiting approval (not yet ready,
    or already decided) and 403 when the actor holds none of its roles.
    """
    step_run = service.submit_approval(step_run_id, request.decision, actor, notes=request.notes)
    logger.info(
        f"Approval {request.decision.value} for step run {step_run_id}",
        extra={"step_run_id": step_run_id, "run_id": step_run.run_id, "actor_id": actor.actor_id}
    )
    return StepRunResponse(step_run=step_run.model_dump(mode="json"))
