"""API Routes module"""
from fastapi import APIRouter

from .runs import router as runs_router
from .audit import router as audit_router
from .step_runs import router as step_runs_router
from .signals import router as signals_router

# Main API router
api_router = APIRouter()

api_router.include_router(runs_router, prefix="/runs", tags=["Runs"])
api_router.include_router(audit_router, prefix="/runs", tags=["Audit"])
api_router.include_router(step_runs_router, prefix="/step-runs", tags=["Approvals"])
api_router.include_router(signals_router, prefix="/signals", tags=["Signals"])

__all__ = ["api_router"]
