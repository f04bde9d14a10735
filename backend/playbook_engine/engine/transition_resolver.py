"""Transition Resolver - Step state machine, readiness and run outcome"""
from datetime import datetime
from typing import Dict, List, Mapping, Optional, Set

from ..domain.models import PlaybookStep, ScenarioStepRun, RunResultSummary
from ..domain.enums import (
    RunStatus, StepStatus, TERMINAL_STEP_STATUSES, SATISFIED_STEP_STATUSES
)
from ..domain.errors import InvalidTransitionError
from .graph_validator import DependencyGraph
from ..utils.time import minutes_between
from ..utils.logger import get_logger

logger = get_logger(__name__)


# Legal step transitions; anything else is rejected
LEGAL_TRANSITIONS: Dict[StepStatus, Set[StepStatus]] = {
    StepStatus.PENDING: {
        StepStatus.READY,
        StepStatus.SKIPPED,     # excluded by scenario constraints
        StepStatus.CANCELLED,
    },
    StepStatus.READY: {
        StepStatus.AWAITING_APPROVAL,
        StepStatus.AWAITING_SIGNAL,
        StepStatus.EXECUTING,
        StepStatus.SKIPPED,     # condition evaluated false
        StepStatus.FAILED,      # rejected at dispatch (budget, unsupported action)
        StepStatus.CANCELLED,
    },
    StepStatus.AWAITING_APPROVAL: {
        StepStatus.APPROVED,
        StepStatus.FAILED,
        StepStatus.SKIPPED,
        StepStatus.CANCELLED,
    },
    StepStatus.APPROVED: {
        StepStatus.AWAITING_SIGNAL,
        StepStatus.EXECUTING,
        StepStatus.FAILED,
        StepStatus.CANCELLED,
    },
    StepStatus.AWAITING_SIGNAL: {
        StepStatus.READY,       # signal matched or timer elapsed, queued for dispatch
        StepStatus.FAILED,
        StepStatus.SKIPPED,
        StepStatus.CANCELLED,
    },
    StepStatus.EXECUTING: {
        StepStatus.EXECUTED,
        StepStatus.FAILED,
        StepStatus.CANCELLED,
    },
    StepStatus.FAILED: {
        StepStatus.SKIPPED,     # skip_on_failure
    },
    StepStatus.EXECUTED: set(),
    StepStatus.SKIPPED: set(),
    StepStatus.CANCELLED: set(),
}

# Statuses that still need the orchestrator to do something
DISPATCHABLE_STEP_STATUSES = frozenset({StepStatus.READY, StepStatus.APPROVED})


class TransitionResolver:
    """
    Decide what a step or run may become next

    The resolver is pure: it reads statuses and definitions and never
    touches storage. The orchestrator applies its answers via CAS writes.
    """

    def can_transition(self, from_status: StepStatus, to_status: StepStatus) -> bool:
        return to_status in LEGAL_TRANSITIONS.get(from_status, set())

    def assert_transition(
        self,
        step_run: ScenarioStepRun,
        to_status: StepStatus
    ) -> None:
        """
        Raise if the transition is not in the legal table

        Raises:
            InvalidTransitionError: Illegal status change
        """
        if not self.can_transition(step_run.status, to_status):
            raise InvalidTransitionError(
                f"Illegal transition for step {step_run.step_id}: "
                f"{step_run.status.value} -> {to_status.value}",
                details={
                    "step_run_id": step_run.step_run_id,
                    "from_status": step_run.status.value,
                    "to_status": to_status.value
                }
            )

    def is_ready(self, step: PlaybookStep, statuses: Mapping[str, StepStatus]) -> bool:
        """A step is ready once every dependency is executed or skipped"""
        return all(
            statuses.get(dep) in SATISFIED_STEP_STATUSES
            for dep in step.depends_on_steps
        )

    def unblocked_successors(
        self,
        graph: DependencyGraph,
        step_id: str,
        statuses: Mapping[str, StepStatus]
    ) -> List[str]:
        """Pending direct successors of step_id whose dependencies are now all satisfied"""
        return [
            successor for successor in graph.successors.get(step_id, [])
            if statuses.get(successor) == StepStatus.PENDING
            and all(statuses.get(dep) in SATISFIED_STEP_STATUSES for dep in graph.predecessors[successor])
        ]

    def resolve_run_status(
        self,
        current: RunStatus,
        step_runs: List[ScenarioStepRun]
    ) -> RunStatus:
        """
        Derive the run status from its step runs

        - any hard failure: FAILED once nothing is executing any more
        - every step terminal: COMPLETED
        - PAUSED is kept until the operator resumes
        - only approval waits left: AWAITING_APPROVAL
        - otherwise RUNNING
        """
        statuses = [sr.status for sr in step_runs]

        if StepStatus.FAILED in statuses:
            if StepStatus.EXECUTING in statuses:
                return current
            return RunStatus.FAILED

        if all(status in TERMINAL_STEP_STATUSES for status in statuses):
            if StepStatus.CANCELLED in statuses:
                return RunStatus.CANCELLED
            return RunStatus.COMPLETED

        if current == RunStatus.PAUSED:
            return RunStatus.PAUSED

        active = {
            StepStatus.READY, StepStatus.APPROVED,
            StepStatus.EXECUTING, StepStatus.AWAITING_SIGNAL
        }
        if StepStatus.AWAITING_APPROVAL in statuses and not active.intersection(statuses):
            return RunStatus.AWAITING_APPROVAL

        return RunStatus.RUNNING

    def summarize(
        self,
        step_runs: List[ScenarioStepRun],
        started_at: Optional[datetime],
        completed_at: datetime
    ) -> RunResultSummary:
        """Step tallies for a terminal run"""
        counts = {status: 0 for status in StepStatus}
        for sr in step_runs:
            counts[sr.status] += 1

        duration = None
        if started_at is not None:
            duration = round(minutes_between(started_at, completed_at), 3)

        return RunResultSummary(
            steps_total=len(step_runs),
            steps_executed=counts[StepStatus.EXECUTED],
            steps_skipped=counts[StepStatus.SKIPPED],
            steps_failed=counts[StepStatus.FAILED],
            steps_cancelled=counts[StepStatus.CANCELLED],
            duration_minutes=duration
        )
