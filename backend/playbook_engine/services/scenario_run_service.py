"""Scenario Run Service - Facade over the orchestrator used by API, scheduler and scripts"""
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from ..domain.models import (
    ActorContext, AuditEntry, Playbook, RunStatusView, Scenario, ScenarioRun,
    ScenarioStepRun, SignalEvent, SYSTEM_ACTOR
)
from ..domain.enums import ActorType, ApprovalOutcome, AuditEventType, RunStatus
from ..engine.orchestrator import RunOrchestrator
from ..engine.action_gateway import ActionGateway, ActionHandler, register_default_handlers
from ..engine.graph_validator import GraphValidator
from ..repositories import Repositories, get_repositories
from ..utils.logger import get_logger

logger = get_logger(__name__)


class ScenarioRunService:
    """Service for scenario run operations"""

    def __init__(
        self,
        repositories: Optional[Repositories] = None,
        gateway: Optional[ActionGateway] = None,
        orchestrator: Optional[RunOrchestrator] = None
    ):
        self.repos = repositories or get_repositories()
        if orchestrator is None:
            gateway = gateway or register_default_handlers(ActionGateway(self.repos.dispatches))
            orchestrator = RunOrchestrator(self.repos, gateway=gateway)
        self.orchestrator = orchestrator
        self.gateway = orchestrator.gateway

    # =========================================================================
    # Playbooks & Scenarios
    # =========================================================================

    def register_playbook(self, playbook: Playbook) -> Playbook:
        """Store a playbook after validating its step graph"""
        GraphValidator().validate(playbook.steps)
        return self.repos.playbooks.create_playbook(playbook)

    def register_scenario(self, scenario: Scenario) -> Scenario:
        return self.repos.playbooks.create_scenario(scenario)

    def register_handler(self, action_type: str, handler: ActionHandler) -> None:
        self.gateway.register(action_type, handler)

    # =========================================================================
    # Runs
    # =========================================================================

    def start_run(
        self,
        scenario_id: str,
        playbook_id: Optional[str] = None,
        override_parameters: Optional[Dict[str, Any]] = None,
        actor: ActorContext = SYSTEM_ACTOR,
        scheduled_at: Optional[datetime] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> ScenarioRun:
        """Start (or schedule) a run; returns the run as persisted"""
        return self.orchestrator.start_run(
            scenario_id,
            playbook_id=playbook_id,
            override_parameters=override_parameters,
            actor=actor,
            scheduled_at=scheduled_at,
            metadata=metadata
        )

    def get_run_status(self, run_id: str) -> RunStatusView:
        return self.orchestrator.get_run_status(run_id)

    def list_runs(
        self,
        status: Optional[RunStatus] = None,
        scenario_id: Optional[str] = None,
        playbook_id: Optional[str] = None,
        skip: int = 0,
        limit: int = 50
    ) -> Tuple[List[ScenarioRun], int]:
        """List runs newest first, with the total matching count"""
        runs = self.repos.runs.list_runs(
            status=status, scenario_id=scenario_id, playbook_id=playbook_id,
            skip=skip, limit=limit
        )
        total = self.repos.runs.count_runs(
            status=status, scenario_id=scenario_id, playbook_id=playbook_id
        )
        return runs, total

    def cancel_run(
        self,
        run_id: str,
        reason: Optional[str] = None,
        actor: ActorContext = SYSTEM_ACTOR
    ) -> ScenarioRun:
        return self.orchestrator.cancel_run(run_id, reason=reason, actor=actor)

    def pause_run(self, run_id: str, actor: ActorContext = SYSTEM_ACTOR) -> ScenarioRun:
        return self.orchestrator.pause_run(run_id, actor=actor)

    def resume_run(self, run_id: str, actor: ActorContext = SYSTEM_ACTOR) -> ScenarioRun:
        return self.orchestrator.resume_run(run_id, actor=actor)

    # =========================================================================
    # External inputs
    # =========================================================================

    def submit_approval(
        self,
        step_run_id: str,
        decision: ApprovalOutcome,
        actor: ActorContext,
        notes: Optional[str] = None
    ) -> ScenarioStepRun:
        return self.orchestrator.submit_approval(step_run_id, decision, actor, notes=notes)

    approve_step = submit_approval

    def ingest_signal(self, event: SignalEvent) -> List[ScenarioStepRun]:
        return self.orchestrator.ingest_signal(event)

    # =========================================================================
    # Audit
    # =========================================================================

    def list_audit_log(
        self,
        run_id: str,
        event_types: Optional[List[AuditEventType]] = None,
        step_id: Optional[str] = None,
        actor_type: Optional[ActorType] = None,
        actor_id: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        skip: int = 0,
        limit: int = 100
    ) -> List[AuditEntry]:
        """
        Audit entries for a run, newest first

        Raises:
            RunNotFoundError
        """
        self.repos.runs.get_run_or_raise(run_id)
        return self.repos.audit.list_entries(
            run_id,
            event_types=event_types,
            step_id=step_id,
            actor_type=actor_type,
            actor_id=actor_id,
            since=since,
            until=until,
            skip=skip,
            limit=limit
        )

    # =========================================================================
    # Scheduler hooks
    # =========================================================================

    def run_sweeps(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Run every background sweep once (scheduler and ops scripts)"""
        return {
            "started": self.orchestrator.start_due_runs(now),
            "timeouts": self.orchestrator.process_timeouts(now),
            "time_ceilings": self.orchestrator.enforce_time_ceilings(now),
            "recovered": self.orchestrator.recover_stalled_dispatches(now),
            "reconciled": self.orchestrator.reconcile_runs(),
        }

    def shutdown(self, wait: bool = True) -> None:
        self.orchestrator.shutdown(wait=wait)


# Global service instance
_service: Optional[ScenarioRunService] = None


def get_run_service() -> ScenarioRunService:
    """Get or create the service instance"""
    global _service
    if _service is None:
        _service = ScenarioRunService()
    return _service


def set_run_service(service: Optional[ScenarioRunService]) -> None:
    """Install a preconfigured service (tests, embedding applications)"""
    global _service
    _service = service


def shutdown_run_service(wait: bool = True) -> None:
    """Stop the global service's worker pool"""
    global _service
    if _service is not None:
        _service.shutdown(wait=wait)
        _service = None
