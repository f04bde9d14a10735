"""Transition Resolver tests"""
from datetime import datetime, timedelta, timezone

import pytest

from playbook_engine.domain.enums import RunStatus, StepStatus, TERMINAL_STEP_STATUSES
from playbook_engine.domain.errors import InvalidTransitionError
from playbook_engine.domain.models import ScenarioStepRun
from playbook_engine.engine.graph_validator import GraphValidator
from playbook_engine.engine.transition_resolver import LEGAL_TRANSITIONS, TransitionResolver

from tests.helpers import step

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def make_step_run(step_id: str, status: StepStatus, index: int = 0) -> ScenarioStepRun:
    return ScenarioStepRun(
        step_run_id=f"SRUN-{step_id}",
        run_id="RUN-1",
        step_id=step_id,
        step_index=index,
        action_type="outreach",
        status=status,
        idempotency_key=f"RUN-1:{step_id}",
        created_at=NOW,
        updated_at=NOW
    )


@pytest.fixture
def resolver():
    return TransitionResolver()


def test_terminal_statuses_have_no_exits(resolver):
    for terminal in (StepStatus.EXECUTED, StepStatus.SKIPPED, StepStatus.CANCELLED):
        for target in StepStatus:
            assert not resolver.can_transition(terminal, target)


def test_failed_may_only_become_skipped(resolver):
    assert LEGAL_TRANSITIONS[StepStatus.FAILED] == {StepStatus.SKIPPED}


def test_every_non_terminal_status_can_be_cancelled(resolver):
    for status in StepStatus:
        if status not in TERMINAL_STEP_STATUSES:
            assert resolver.can_transition(status, StepStatus.CANCELLED), status


def test_approval_path(resolver):
    assert resolver.can_transition(StepStatus.READY, StepStatus.AWAITING_APPROVAL)
    assert resolver.can_transition(StepStatus.AWAITING_APPROVAL, StepStatus.APPROVED)
    assert resolver.can_transition(StepStatus.APPROVED, StepStatus.EXECUTING)
    assert resolver.can_transition(StepStatus.APPROVED, StepStatus.AWAITING_SIGNAL)
    assert not resolver.can_transition(StepStatus.PENDING, StepStatus.APPROVED)
    assert not resolver.can_transition(StepStatus.PENDING, StepStatus.EXECUTING)


def test_assert_transition_raises(resolver):
    with pytest.raises(InvalidTransitionError) as exc_info:
        resolver.assert_transition(make_step_run("a", StepStatus.EXECUTED), StepStatus.EXECUTING)

    assert exc_info.value.details["from_status"] == "executed"


def test_readiness_requires_executed_or_skipped_dependencies(resolver):
    report = step("report", depends_on_steps=["a", "b"])

    assert not resolver.is_ready(report, {"a": StepStatus.EXECUTED, "b": StepStatus.EXECUTING})
    assert not resolver.is_ready(report, {"a": StepStatus.EXECUTED, "b": StepStatus.FAILED})
    assert resolver.is_ready(report, {"a": StepStatus.EXECUTED, "b": StepStatus.SKIPPED})
    assert resolver.is_ready(step("root"), {})


def test_unblocked_successors_only_follow_the_changed_step(resolver):
    graph = GraphValidator().validate([
        step("a"),
        step("b", depends_on_steps=["a"]),
        step("c", depends_on_steps=["a", "d"]),
        step("d"),
        step("e"),
    ])
    statuses = {
        "a": StepStatus.EXECUTED, "b": StepStatus.PENDING, "c": StepStatus.PENDING,
        "d": StepStatus.EXECUTING, "e": StepStatus.PENDING
    }

    assert resolver.unblocked_successors(graph, "a", statuses) == ["b"]
    assert resolver.unblocked_successors(graph, "e", statuses) == []

    statuses["d"] = StepStatus.SKIPPED
    assert resolver.unblocked_successors(graph, "d", statuses) == ["c"]


def test_run_completes_when_every_step_terminal(resolver):
    step_runs = [make_step_run("a", StepStatus.EXECUTED), make_step_run("b", StepStatus.SKIPPED)]

    assert resolver.resolve_run_status(RunStatus.RUNNING, step_runs) == RunStatus.COMPLETED


def test_hard_failure_waits_for_executing_steps(resolver):
    draining = [make_step_run("a", StepStatus.FAILED), make_step_run("b", StepStatus.EXECUTING)]
    drained = [make_step_run("a", StepStatus.FAILED), make_step_run("b", StepStatus.EXECUTED)]

    assert resolver.resolve_run_status(RunStatus.RUNNING, draining) == RunStatus.RUNNING
    assert resolver.resolve_run_status(RunStatus.RUNNING, drained) == RunStatus.FAILED


def test_awaiting_approval_only_when_nothing_else_moves(resolver):
    waiting = [make_step_run("a", StepStatus.EXECUTED), make_step_run("b", StepStatus.AWAITING_APPROVAL)]
    busy = waiting + [make_step_run("c", StepStatus.EXECUTING)]

    assert resolver.resolve_run_status(RunStatus.RUNNING, waiting) == RunStatus.AWAITING_APPROVAL
    assert resolver.resolve_run_status(RunStatus.AWAITING_APPROVAL, busy) == RunStatus.RUNNING


def test_paused_run_stays_paused(resolver):
    step_runs = [make_step_run("a", StepStatus.READY)]

    assert resolver.resolve_run_status(RunStatus.PAUSED, step_runs) == RunStatus.PAUSED


def test_summary_counts(resolver):
    step_runs = [
        make_step_run("a", StepStatus.EXECUTED),
        make_step_run("b", StepStatus.SKIPPED),
        make_step_run("c", StepStatus.CANCELLED),
        make_step_run("d", StepStatus.FAILED),
    ]

    summary = resolver.summarize(step_runs, NOW, NOW + timedelta(minutes=90))

    assert summary.steps_total == 4
    assert (summary.steps_executed, summary.steps_skipped) == (1, 1)
    assert (summary.steps_cancelled, summary.steps_failed) == (1, 1)
    assert summary.duration_minutes == 90
