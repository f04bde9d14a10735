"""API Dependencies - Common dependencies for routes"""
from typing import Optional
from fastapi import Header, HTTPException, status

from ..domain.models import ActorContext
from ..domain.enums import ActorType
from ..services.scenario_run_service import ScenarioRunService, get_run_service
from ..utils.logger import set_correlation_id
from ..utils.idgen import generate_correlation_id


async def get_correlation_id_dep(
    x_correlation_id: Optional[str] = Header(None, alias="X-Correlation-Id")
) -> str:
    """
    Get or generate correlation ID for request tracing

    If client provides X-Correlation-Id, use it.
    Otherwise generate a new one.
    """
    correlation_id = x_correlation_id or generate_correlation_id()
    set_correlation_id(correlation_id)
    return correlation_id


async def get_actor_dep(
    x_actor_id: Optional[str] = Header(None, alias="X-Actor-Id"),
    x_actor_roles: Optional[str] = Header(None, alias="X-Actor-Roles")
) -> ActorContext:
    """
    Actor identity supplied by the surrounding platform

    X-Actor-Roles is a comma-separated list.

    Raises:
        HTTPException: 401 if X-Actor-Id is missing
    """
    if not x_actor_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": {"code": "AUTHENTICATION_ERROR", "message": "X-Actor-Id header is missing"}}
        )

    roles = [role.strip() for role in (x_actor_roles or "").split(",") if role.strip()]
    return ActorContext(actor_id=x_actor_id, roles=roles, actor_type=ActorType.USER)


def get_run_service_dep() -> ScenarioRunService:
    """Service dependency (overridable in tests)"""
    return get_run_service()
