"""Approval Gate - Human-in-the-loop suspension for approval-gated steps"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..domain.models import (
    ActorContext, ApprovalDecision, PlaybookStep, ScenarioConstraints, ScenarioStepRun
)
from ..domain.enums import ApprovalOutcome, StepStatus, TimeoutFallback
from ..domain.errors import ApprovalRoleError, InvalidStateError
from ..utils.time import calculate_deadline
from ..utils.logger import get_logger

logger = get_logger(__name__)


class ApprovalGate:
    """
    Rules for approval waits

    The gate does not write state. It tells the orchestrator what to record
    when a step starts waiting, whether a decision is admissible, and what
    a timed-out wait becomes.
    """

    def effective_roles(self, step: PlaybookStep, constraints: ScenarioConstraints) -> List[str]:
        """Step roles, else the scenario's required approval roles"""
        if step.approval_roles:
            return list(step.approval_roles)
        return list(constraints.required_approvals)

    def open_wait(self, step: PlaybookStep, now: datetime) -> Dict[str, Any]:
        """Fields recorded when a step enters awaiting_approval"""
        return {
            "approval_requested_at": now,
            "wait_deadline_at": calculate_deadline(now, step.timeout_minutes),
        }

    def check_decision(
        self,
        step_run: ScenarioStepRun,
        step: PlaybookStep,
        constraints: ScenarioConstraints,
        actor: ActorContext
    ) -> None:
        """
        Validate that a decision may be applied to this step run

        Raises:
            InvalidStateError: Step is not waiting for approval (too early, or already decided)
            ApprovalRoleError: Actor holds none of the approval roles
        """
        if step_run.status != StepStatus.AWAITING_APPROVAL:
            raise InvalidStateError(
                f"Step {step_run.step_id} is not awaiting approval (status: {step_run.status.value})",
                details={"step_run_id": step_run.step_run_id, "status": step_run.status.value}
            )

        roles = self.effective_roles(step, constraints)
        if roles and not set(roles).intersection(actor.roles):
            logger.warning(
                "Approval rejected for actor without role",
                extra={"step_run_id": step_run.step_run_id, "actor_id": actor.actor_id}
            )
            raise ApprovalRoleError(
                f"Actor {actor.actor_id} holds none of the approval roles for step {step_run.step_id}",
                details={"required_roles": roles, "actor_roles": list(actor.roles)}
            )

    def decision_updates(self, decision: ApprovalDecision) -> Dict[str, Any]:
        """Fields recorded on the step run for an approval decision"""
        updates: Dict[str, Any] = {
            "decided_by": decision.decided_by,
            "approval_notes": decision.notes,
            "wait_deadline_at": None,
        }
        if decision.decision == ApprovalOutcome.APPROVED:
            updates["approved_at"] = decision.decided_at
        return updates

    def timeout_status(self, step: PlaybookStep) -> StepStatus:
        """What an expired wait becomes: FAILED unless the step declares the skip fallback"""
        if step.timeout_fallback == TimeoutFallback.SKIP:
            return StepStatus.SKIPPED
        return StepStatus.FAILED
