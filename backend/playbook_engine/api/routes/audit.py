"""Audit API Routes - Read-only view of a run's audit log"""
from datetime import datetime
from typing import Any, Dict, List, Optional
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from ..deps import get_correlation_id_dep, get_run_service_dep
from ...domain.enums import ActorType, AuditEventType
from ...services.scenario_run_service import ScenarioRunService

router = APIRouter()


class AuditListResponse(BaseModel):
    """Audit entries, newest first"""
    items: List[Dict[str, Any]]
    page: int
    page_size: int


@router.get("/{run_id}/audit", response_model=AuditListResponse)
async def list_audit_log(
    run_id: str,
    event_type: Optional[List[AuditEventType]] = Query(None),
    step_id: Optional[str] = Query(None),
    actor_type: Optional[ActorType] = Query(None),
    actor_id: Optional[str] = Query(None),
    since: Optional[datetime] = Query(None),
    until: Optional[datetime] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(100, ge=1, le=500),
    service: ScenarioRunService = Depends(get_run_service_dep),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    """Audit log for a run; `event_type` may be repeated"""
    entries = service.list_audit_log(
        run_id,
        event_types=event_type,
        step_id=step_id,
        actor_type=actor_type,
        actor_id=actor_id,
        since=since,
        until=until,
        skip=(page - 1) * page_size,
        limit=page_size
    )
    return AuditListResponse(
        items=[e.model_dump(mode="json") for e in entries],
        page=page,
        page_size=page_size
    )
