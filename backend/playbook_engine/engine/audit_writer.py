"""Audit Writer - Append-only audit entries"""
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from ..domain.models import ActorContext, AuditEntry, ScenarioRun, ScenarioStepRun, SYSTEM_ACTOR
from ..domain.enums import AuditEventType, RunStatus, StepStatus
from ..utils.idgen import generate_audit_entry_id
from ..utils.time import utc_now
from ..utils.logger import get_logger, get_correlation_id

logger = get_logger(__name__)


class AuditWriter:
    """
    Write audit entries (append-only)

    Every step and run transition, decision and external dispatch produces
    an entry. Entries are never updated or deleted.
    """

    def __init__(self, repo: Any, clock: Callable[[], datetime] = utc_now):
        self.repo = repo
        self.clock = clock

    def write_event(
        self,
        run_id: str,
        event_type: AuditEventType,
        actor: ActorContext = SYSTEM_ACTOR,
        step_run: Optional[ScenarioStepRun] = None,
        details: Optional[Dict[str, Any]] = None,
        correlation_id: Optional[str] = None
    ) -> AuditEntry:
        """Write a single audit entry"""
        entry = AuditEntry(
            audit_entry_id=generate_audit_entry_id(),
            run_id=run_id,
            step_run_id=step_run.step_run_id if step_run else None,
            step_id=step_run.step_id if step_run else None,
            event_type=event_type,
            actor_type=actor.actor_type,
            actor_id=actor.actor_id,
            details=details or {},
            created_at=self.clock(),
            correlation_id=correlation_id or get_correlation_id()
        )
        return self.repo.create_entry(entry)

    def write_run_status(
        self,
        run: ScenarioRun,
        from_status: RunStatus,
        to_status: RunStatus,
        actor: ActorContext = SYSTEM_ACTOR,
        reason: Optional[str] = None
    ) -> AuditEntry:
        """Write a run status change; terminal statuses get their own event type"""
        event_type = {
            RunStatus.COMPLETED: AuditEventType.RUN_COMPLETED,
            RunStatus.FAILED: AuditEventType.RUN_FAILED,
            RunStatus.CANCELLED: AuditEventType.RUN_CANCELLED,
            RunStatus.PAUSED: AuditEventType.RUN_PAUSED,
        }.get(to_status, AuditEventType.RUN_STATUS_CHANGED)
        if from_status == RunStatus.PAUSED and to_status == RunStatus.RUNNING:
            event_type = AuditEventType.RUN_RESUMED

        details: Dict[str, Any] = {
            "from_status": from_status.value,
            "to_status": to_status.value
        }
        if reason:
            details["reason"] = reason
        return self.write_event(run.run_id, event_type, actor=actor, details=details)

    def write_step_transition(
        self,
        step_run: ScenarioStepRun,
        event_type: AuditEventType,
        from_status: StepStatus,
        actor: ActorContext = SYSTEM_ACTOR,
        details: Optional[Dict[str, Any]] = None
    ) -> AuditEntry:
        """Write a step status change"""
        payload = {
            "from_status": from_status.value,
            "to_status": step_run.status.value,
            "action_type": step_run.action_type
        }
        if details:
            payload.update(details)
        return self.write_event(
            step_run.run_id, event_type, actor=actor, step_run=step_run, details=payload
        )

    def write_approval_requested(
        self,
        step_run: ScenarioStepRun,
        approval_roles: list,
        timeout_minutes: Optional[float]
    ) -> AuditEntry:
        """Write the notification-worthy approval request"""
        return self.write_step_transition(
            step_run,
            AuditEventType.STEP_AWAITING_APPROVAL,
            StepStatus.READY,
            details={
                "approval_roles": approval_roles,
                "timeout_minutes": timeout_minutes,
                "unbounded_wait": timeout_minutes is None,
                "notify": True
            }
        )

    def write_cancellation_during_execution(
        self,
        step_run: ScenarioStepRun,
        actor: ActorContext,
        reason: Optional[str]
    ) -> AuditEntry:
        """Step was already dispatched when the run was stopped; its side effect may have happened"""
        return self.write_step_transition(
            step_run,
            AuditEventType.CANCELLATION_DURING_EXECUTION,
            StepStatus.EXECUTING,
            actor=actor,
            details={
                "reason": reason,
                "outcome_uncertain": True,
                "message": "Cancellation requested during execution; external side effect may have occurred"
            }
        )

    def write_late_result_discarded(
        self,
        step_run: ScenarioStepRun,
        succeeded: bool,
        error: Optional[str]
    ) -> AuditEntry:
        """Handler reported back after the step left executing"""
        return self.write_event(
            step_run.run_id,
            AuditEventType.LATE_RESULT_DISCARDED,
            step_run=step_run,
            details={
                "step_status": step_run.status.value,
                "handler_succeeded": succeeded,
                "handler_error": error
            }
        )
