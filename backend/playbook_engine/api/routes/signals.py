"""Signal API Routes - External event ingestion"""
from datetime import datetime
from typing import Any, Dict, List, Optional
from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field

from ..deps import get_correlation_id_dep, get_run_service_dep
from ...domain.models import SignalEvent
from ...services.scenario_run_service import ScenarioRunService
from ...utils.logger import get_logger

logger = get_logger(__name__)
router = APIRouter()


class IngestSignalRequest(BaseModel):
    """An external event"""
    signal_type: str = Field(..., min_length=1)
    payload: Dict[str, Any] = Field(default_factory=dict)
    occurred_at: Optional[datetime] = None


class IngestSignalResponse(BaseModel):
    """Step runs resumed by the signal (fan-out)"""
    matched: int
    step_runs: List[Dict[str, Any]]


@router.post("", response_model=IngestSignalResponse, status_code=status.HTTP_202_ACCEPTED)
async def ingest_signal(
    request: IngestSignalRequest,
    service: ScenarioRunService = Depends(get_run_service_dep),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    """Resume every waiting step whose signal conditions match"""
    event = SignalEvent(
        signal_type=request.signal_type,
        payload=request.payload,
        occurred_at=request.occurred_at
    )
    resumed = service.ingest_signal(event)
    return IngestSignalResponse(
        matched=len(resumed),
        step_runs=[sr.model_dump(mode="json") for sr in resumed]
    )
