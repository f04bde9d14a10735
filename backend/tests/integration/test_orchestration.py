"""
Run orchestration integration tests

Drive full runs through RunOrchestrator against the in-memory store. The
worker pool is real; tests call wait_idle() before asserting so every
dispatched action has reported back. Deadlines use the fake clock.
"""
import random
import threading
import time
from datetime import timedelta

import pytest

from playbook_engine.domain.enums import (
    ApprovalOutcome, NotificationTemplateKey, RunStatus, StepStatus
)
from playbook_engine.domain.errors import (
    ApprovalRoleError, ConcurrencyConflictError, GraphCyclicError, InvalidStateError,
    RunUnavailableError, UnsupportedActionError
)
from playbook_engine.domain.models import ActorContext, SignalEvent
from playbook_engine.engine.orchestrator import RunOrchestrator
from playbook_engine.services.scenario_run_service import ScenarioRunService

from tests.helpers import (
    RecordingHandler, event_types, seed_scenario, statuses, step, step_run_for
)


def is_subsequence(expected, actual):
    remaining = iter(actual)
    return all(item in remaining for item in expected)


def run_status(orchestrator, run_id):
    return orchestrator.get_run_status(run_id).run.status


# ============================================================================
# End to end
# ============================================================================

def test_approval_then_signal_run_completes(orchestrator, repos, approver):
    scenario_id = seed_scenario(repos, [
        step("assess", "competitive_analysis"),
        step("statement", "content_publish", requires_approval=True,
             approval_roles=["comms_lead"], depends_on_steps=["assess"]),
        step("await_coverage", "wait", wait_for_signals=True,
             signal_conditions={"signal_type": "coverage.updated"}, depends_on_steps=["statement"]),
    ], parameters={"severity": 7})

    run = orchestrator.start_run(scenario_id)
    orchestrator.wait_idle(5)

    assert statuses(orchestrator, run.run_id) == {
        "assess": "executed", "statement": "awaiting_approval", "await_coverage": "pending"
    }
    assert run_status(orchestrator, run.run_id) == RunStatus.AWAITING_APPROVAL

    statement = step_run_for(orchestrator, run.run_id, "statement")
    orchestrator.submit_approval(statement.step_run_id, ApprovalOutcome.APPROVED, approver, notes="ship it")
    orchestrator.wait_idle(5)

    assert statuses(orchestrator, run.run_id)["await_coverage"] == "awaiting_signal"
    assert run_status(orchestrator, run.run_id) == RunStatus.RUNNING

    resumed = orchestrator.ingest_signal(SignalEvent(signal_type="coverage.updated", payload={"articles": 12}))
    orchestrator.wait_idle(5)

    assert [sr.step_id for sr in resumed] == ["await_coverage"]
    view = orchestrator.get_run_status(run.run_id)
    assert view.run.status == RunStatus.COMPLETED
    assert view.run.result_summary.steps_executed == 3
    assert step_run_for(orchestrator, run.run_id, "await_coverage").result["signal"] == {"articles": 12}
    assert step_run_for(orchestrator, run.run_id, "statement").decided_by == "alice"
    assert is_subsequence([
        "run_started",
        "step_ready", "step_dispatched", "step_executed",
        "step_ready", "step_awaiting_approval", "step_approved", "step_dispatched", "step_executed",
        "step_ready", "step_awaiting_signal", "signal_matched", "step_dispatched", "step_executed",
        "run_completed",
    ], event_types(repos, run.run_id))

    keys = [n.template_key for n in repos.notifications.get_notifications_for_run(run.run_id)]
    assert keys == [NotificationTemplateKey.APPROVAL_NEEDED, NotificationTemplateKey.RUN_COMPLETED]


def test_step_results_flow_into_conditions(orchestrator, repos, gateway):
    gateway.register("competitive_analysis", RecordingHandler(result={"sentiment_delta": -0.6}))
    scenario_id = seed_scenario(repos, [
        step("assess", "competitive_analysis"),
        step("escalate", "escalation", depends_on_steps=["assess"], condition_expression={
            "field": "assess.sentiment_delta", "operator": "lt", "value": -0.5
        }),
        step("celebrate", "content_publish", depends_on_steps=["assess"], condition_expression={
            "field": "assess.sentiment_delta", "operator": "gt", "value": 0
        }),
    ])

    run = orchestrator.start_run(scenario_id)
    orchestrator.wait_idle(5)

    assert statuses(orchestrator, run.run_id) == {
        "assess": "executed", "escalate": "executed", "celebrate": "skipped"
    }
    assert step_run_for(orchestrator, run.run_id, "celebrate").skip_reason == "condition_not_met"


def test_conditional_skip_satisfies_dependents(orchestrator, repos):
    scenario_id = seed_scenario(repos, [
        step("assess"),
        step("escalate", "escalation", depends_on_steps=["assess"],
             condition_expression={"field": "severity", "operator": "gte", "value": 8}),
        step("report", "report_generation", depends_on_steps=["escalate"]),
    ], parameters={"severity": 5})

    run = orchestrator.start_run(scenario_id)
    orchestrator.wait_idle(5)

    assert statuses(orchestrator, run.run_id) == {
        "assess": "executed", "escalate": "skipped", "report": "executed"
    }
    assert run_status(orchestrator, run.run_id) == RunStatus.COMPLETED


def test_override_parameters_win_over_scenario_parameters(orchestrator, repos):
    scenario_id = seed_scenario(repos, [
        step("escalate", "escalation",
             condition_expression={"field": "severity", "operator": "gte", "value": 8}),
    ], parameters={"severity": 5})

    run = orchestrator.start_run(scenario_id, override_parameters={"severity": 9})
    orchestrator.wait_idle(5)

    assert statuses(orchestrator, run.run_id) == {"escalate": "executed"}


# ============================================================================
# Approvals
# ============================================================================

def test_approval_before_readiness_is_rejected(orchestrator, repos, gateway, approver):
    release = threading.Event()
    gateway.register("outreach", RecordingHandler(gate=release))
    scenario_id = seed_scenario(repos, [
        step("notify"),
        step("publish", "content_publish", requires_approval=True, depends_on_steps=["notify"]),
    ])

    run = orchestrator.start_run(scenario_id)
    publish = step_run_for(orchestrator, run.run_id, "publish")

    with pytest.raises(InvalidStateError):
        orchestrator.submit_approval(publish.step_run_id, ApprovalOutcome.APPROVED, approver)

    release.set()
    orchestrator.wait_idle(5)
    assert statuses(orchestrator, run.run_id) == {"notify": "executed", "publish": "awaiting_approval"}
    assert "step_approved" not in event_types(repos, run.run_id)


def test_approval_requires_role_and_is_consumed_once(orchestrator, repos, approver):
    scenario_id = seed_scenario(
        repos,
        [step("publish", "content_publish", requires_approval=True)],
        constraints={"required_approvals": ["comms_lead"]}
    )
    run = orchestrator.start_run(scenario_id)
    publish = step_run_for(orchestrator, run.run_id, "publish")

    with pytest.raises(ApprovalRoleError):
        orchestrator.submit_approval(
            publish.step_run_id, ApprovalOutcome.APPROVED, ActorContext(actor_id="bob", roles=["intern"])
        )
    assert step_run_for(orchestrator, run.run_id, "publish").status == StepStatus.AWAITING_APPROVAL

    orchestrator.submit_approval(publish.step_run_id, ApprovalOutcome.APPROVED, approver)
    orchestrator.wait_idle(5)

    with pytest.raises(InvalidStateError):
        orchestrator.submit_approval(publish.step_run_id, ApprovalOutcome.REJECTED, approver)
    assert run_status(orchestrator, run.run_id) == RunStatus.COMPLETED


def test_rejection_fails_run_and_cancels_other_branches(orchestrator, repos, approver):
    scenario_id = seed_scenario(repos, [
        step("publish", "content_publish", requires_approval=True),
        step("amplify", "outreach", depends_on_steps=["publish"]),
        step("monitor", "wait", wait_for_signals=True, signal_conditions={"signal_type": "coverage.updated"}),
    ])
    run = orchestrator.start_run(scenario_id)
    orchestrator.wait_idle(5)
    publish = step_run_for(orchestrator, run.run_id, "publish")

    orchestrator.submit_approval(publish.step_run_id, ApprovalOutcome.REJECTED, approver, notes="off-message")
    orchestrator.wait_idle(5)

    view = orchestrator.get_run_status(run.run_id)
    assert view.run.status == RunStatus.FAILED
    assert statuses(orchestrator, run.run_id) == {
        "publish": "failed", "amplify": "cancelled", "monitor": "cancelled"
    }
    rejected = step_run_for(orchestrator, run.run_id, "publish")
    assert rejected.error_code == "APPROVAL_REJECTED"
    assert rejected.approval_notes == "off-message"
    assert "step_rejected" in event_types(repos, run.run_id)
    assert repos.signals.find_watches("coverage.updated") == []
    keys = [n.template_key for n in repos.notifications.get_notifications_for_run(run.run_id)]
    assert keys[-1] == NotificationTemplateKey.RUN_FAILED


def test_approval_timeout_fails_step(orchestrator, repos, clock):
    scenario_id = seed_scenario(repos, [
        step("publish", "content_publish", requires_approval=True, timeout_minutes=1),
    ])
    run = orchestrator.start_run(scenario_id)

    assert orchestrator.process_timeouts() == 0
    clock.advance(minutes=2)
    assert orchestrator.process_timeouts() == 1
    orchestrator.wait_idle(5)

    publish = step_run_for(orchestrator, run.run_id, "publish")
    assert publish.status == StepStatus.FAILED
    assert publish.error_code == "APPROVAL_TIMEOUT"
    assert run_status(orchestrator, run.run_id) == RunStatus.FAILED
    assert "step_timed_out" in event_types(repos, run.run_id)


def test_approval_timeout_with_skip_fallback_continues(orchestrator, repos, clock):
    scenario_id = seed_scenario(repos, [
        step("publish", "content_publish", requires_approval=True, timeout_minutes=1, timeout_fallback="skip"),
        step("report", "report_generation", depends_on_steps=["publish"]),
    ])
    run = orchestrator.start_run(scenario_id)

    clock.advance(minutes=2)
    orchestrator.process_timeouts()
    orchestrator.wait_idle(5)

    publish = step_run_for(orchestrator, run.run_id, "publish")
    assert publish.status == StepStatus.SKIPPED
    assert publish.skip_reason == "timeout_fallback"
    assert statuses(orchestrator, run.run_id)["report"] == "executed"
    assert run_status(orchestrator, run.run_id) == RunStatus.COMPLETED


# ============================================================================
# Signals and timers
# ============================================================================

def test_signal_fans_out_to_every_waiting_run(orchestrator, repos):
    waiting = [step("await", "wait", wait_for_signals=True, signal_conditions={"signal_type": "budget.changed"})]
    seed_scenario(repos, waiting, scenario_id="SCN-A", playbook_id="PB-A")
    seed_scenario(repos, waiting, scenario_id="SCN-B", playbook_id="PB-B")
    first = orchestrator.start_run("SCN-A")
    second = orchestrator.start_run("SCN-B")

    resumed = orchestrator.ingest_signal(SignalEvent(signal_type="budget.changed", payload={"delta": 500}))
    again = orchestrator.ingest_signal(SignalEvent(signal_type="budget.changed", payload={"delta": 500}))
    orchestrator.wait_idle(5)

    assert sorted(sr.run_id for sr in resumed) == sorted([first.run_id, second.run_id])
    assert again == []
    assert run_status(orchestrator, first.run_id) == RunStatus.COMPLETED
    assert run_status(orchestrator, second.run_id) == RunStatus.COMPLETED


def test_signal_payload_filter(orchestrator, repos):
    scenario_id = seed_scenario(repos, [
        step("await", "wait", wait_for_signals=True, signal_conditions={
            "signal_type": "coverage.updated",
            "payload_filter": {"field": "region", "operator": "eq", "value": "EU"}
        }),
    ])
    run = orchestrator.start_run(scenario_id)

    assert orchestrator.ingest_signal(SignalEvent(signal_type="coverage.updated", payload={"region": "US"})) == []
    assert len(orchestrator.ingest_signal(SignalEvent(signal_type="coverage.updated", payload={"region": "EU"}))) == 1
    orchestrator.wait_idle(5)

    assert run_status(orchestrator, run.run_id) == RunStatus.COMPLETED


def test_signal_timeout_fails_step(orchestrator, repos, clock):
    scenario_id = seed_scenario(repos, [
        step("await", "wait", wait_for_signals=True, timeout_minutes=30,
             signal_conditions={"signal_type": "coverage.updated"}),
    ])
    run = orchestrator.start_run(scenario_id)

    clock.advance(minutes=31)
    orchestrator.process_timeouts()

    assert step_run_for(orchestrator, run.run_id, "await").error_code == "SIGNAL_TIMEOUT"
    assert run_status(orchestrator, run.run_id) == RunStatus.FAILED
    assert orchestrator.ingest_signal(SignalEvent(signal_type="coverage.updated")) == []


def test_timer_wait_resumes_when_duration_elapses(orchestrator, repos, clock):
    scenario_id = seed_scenario(repos, [
        step("cool_off", "wait", wait_duration_minutes=30),
        step("follow_up", "outreach", depends_on_steps=["cool_off"]),
    ])
    run = orchestrator.start_run(scenario_id)
    assert statuses(orchestrator, run.run_id)["cool_off"] == "awaiting_signal"

    clock.advance(minutes=10)
    assert orchestrator.process_timeouts() == 0
    clock.advance(minutes=21)
    assert orchestrator.process_timeouts() == 1
    orchestrator.wait_idle(5)

    assert statuses(orchestrator, run.run_id) == {"cool_off": "executed", "follow_up": "executed"}


# ============================================================================
# Failure handling
# ============================================================================

def test_skip_on_failure_lets_dependents_run(orchestrator, repos, gateway):
    gateway.register("media_alert", RecordingHandler(error="wire service down"))
    scenario_id = seed_scenario(repos, [
        step("alert", "media_alert", skip_on_failure=True),
        step("report", "report_generation", depends_on_steps=["alert"]),
    ])

    run = orchestrator.start_run(scenario_id)
    orchestrator.wait_idle(5)

    alert = step_run_for(orchestrator, run.run_id, "alert")
    assert alert.status == StepStatus.SKIPPED
    assert alert.skip_reason == "failure_tolerated"
    assert alert.error == "wire service down"
    assert statuses(orchestrator, run.run_id)["report"] == "executed"
    assert run_status(orchestrator, run.run_id) == RunStatus.COMPLETED
    assert is_subsequence(["step_failed", "step_skipped"], event_types(repos, run.run_id))


def test_hard_failure_fails_run(orchestrator, repos, gateway):
    gateway.register("media_alert", RecordingHandler(error="wire service down"))
    scenario_id = seed_scenario(repos, [
        step("alert", "media_alert"),
        step("report", "report_generation", depends_on_steps=["alert"]),
    ])

    run = orchestrator.start_run(scenario_id)
    orchestrator.wait_idle(5)

    view = orchestrator.get_run_status(run.run_id)
    assert view.run.status == RunStatus.FAILED
    assert "wire service down" in view.run.error_message
    assert statuses(orchestrator, run.run_id) == {"alert": "failed", "report": "cancelled"}


def test_budget_ceiling_fails_step_before_dispatch(orchestrator, repos, gateway):
    handler = RecordingHandler()
    gateway.register("outreach", handler)
    scenario_id = seed_scenario(repos, [
        step("first_wave", action_payload={"estimated_cost": 80}),
        step("second_wave", action_payload={"estimated_cost": 50}, depends_on_steps=["first_wave"]),
    ], constraints={"max_budget": 100})

    run = orchestrator.start_run(scenario_id)
    orchestrator.wait_idle(5)

    view = orchestrator.get_run_status(run.run_id)
    assert view.run.status == RunStatus.FAILED
    assert view.run.budget_spent == 80
    assert step_run_for(orchestrator, run.run_id, "second_wave").error_code == "ACTION_EXECUTION_FAILED"
    assert handler.call_count == 1


def test_excluded_actions_are_skipped(orchestrator, repos):
    scenario_id = seed_scenario(repos, [
        step("alert", "custom"),
        step("report", "report_generation", depends_on_steps=["alert"]),
    ], constraints={"excluded_actions": ["custom"]})

    run = orchestrator.start_run(scenario_id)
    orchestrator.wait_idle(5)

    assert step_run_for(orchestrator, run.run_id, "alert").skip_reason == "excluded_action"
    assert statuses(orchestrator, run.run_id)["report"] == "executed"


def test_unsupported_action_rejected_before_persistence(orchestrator, repos):
    scenario_id = seed_scenario(repos, [step("alert", "custom")])

    with pytest.raises(UnsupportedActionError):
        orchestrator.start_run(scenario_id)

    assert repos.runs.count_runs() == 0


def test_cyclic_playbook_rejected_before_persistence(orchestrator, repos):
    scenario_id = seed_scenario(repos, [
        step("a", depends_on_steps=["b"]),
        step("b", depends_on_steps=["a"]),
    ])

    with pytest.raises(GraphCyclicError):
        orchestrator.start_run(scenario_id)

    assert repos.runs.count_runs() == 0


# ============================================================================
# Run control
# ============================================================================

def test_cancel_during_execution_flags_uncertain_outcome(orchestrator, repos, gateway):
    release = threading.Event()
    handler = RecordingHandler(gate=release)
    gateway.register("outreach", handler)
    scenario_id = seed_scenario(repos, [
        step("outreach"),
        step("report", "report_generation", depends_on_steps=["outreach"]),
    ])
    run = orchestrator.start_run(scenario_id)
    assert handler.started.wait(5)

    cancelled = orchestrator.cancel_run(run.run_id, reason="story retracted", actor=ActorContext(actor_id="ops"))
    release.set()
    orchestrator.wait_idle(5)

    assert cancelled.status == RunStatus.CANCELLED
    outreach = step_run_for(orchestrator, run.run_id, "outreach")
    assert outreach.status == StepStatus.CANCELLED
    assert outreach.outcome_uncertain and outreach.cancellation_requested
    assert statuses(orchestrator, run.run_id)["report"] == "cancelled"
    assert handler.cancelled == [outreach.idempotency_key]
    events = event_types(repos, run.run_id)
    assert is_subsequence(
        ["run_cancel_requested", "cancellation_during_execution", "run_cancelled", "late_result_discarded"],
        events
    )
    assert run_status(orchestrator, run.run_id) == RunStatus.CANCELLED

    with pytest.raises(InvalidStateError):
        orchestrator.cancel_run(run.run_id)


def test_pause_holds_dispatch_until_resume(orchestrator, repos, approver):
    scenario_id = seed_scenario(repos, [
        step("publish", "content_publish", requires_approval=True),
        step("report", "report_generation", depends_on_steps=["publish"]),
    ])
    run = orchestrator.start_run(scenario_id)

    orchestrator.pause_run(run.run_id)
    publish = step_run_for(orchestrator, run.run_id, "publish")
    orchestrator.submit_approval(publish.step_run_id, ApprovalOutcome.APPROVED, approver)
    orchestrator.wait_idle(5)

    assert run_status(orchestrator, run.run_id) == RunStatus.PAUSED
    assert statuses(orchestrator, run.run_id) == {"publish": "approved", "report": "pending"}
    with pytest.raises(InvalidStateError):
        orchestrator.pause_run(run.run_id)

    orchestrator.resume_run(run.run_id)
    orchestrator.wait_idle(5)

    assert run_status(orchestrator, run.run_id) == RunStatus.COMPLETED
    assert is_subsequence(["run_paused", "step_approved", "run_resumed"], event_types(repos, run.run_id))
    with pytest.raises(InvalidStateError):
        orchestrator.resume_run(run.run_id)


def test_time_ceiling_fails_run(orchestrator, repos, clock):
    scenario_id = seed_scenario(
        repos,
        [step("publish", "content_publish", requires_approval=True)],
        constraints={"max_time_hours": 1}
    )
    run = orchestrator.start_run(scenario_id)

    assert orchestrator.enforce_time_ceilings() == 0
    clock.advance(hours=2)
    assert orchestrator.enforce_time_ceilings() == 1

    view = orchestrator.get_run_status(run.run_id)
    assert view.run.status == RunStatus.FAILED
    assert statuses(orchestrator, run.run_id) == {"publish": "cancelled"}
    assert "run_time_ceiling_exceeded" in event_types(repos, run.run_id)


def test_scheduled_run_starts_when_due(orchestrator, repos, clock):
    scenario_id = seed_scenario(repos, [step("notify")])

    run = orchestrator.start_run(scenario_id, scheduled_at=clock() + timedelta(hours=1))

    assert run.status == RunStatus.PENDING
    assert orchestrator.start_due_runs() == 0
    clock.advance(minutes=61)
    assert orchestrator.start_due_runs() == 1
    orchestrator.wait_idle(5)

    assert run_status(orchestrator, run.run_id) == RunStatus.COMPLETED
    assert event_types(repos, run.run_id)[0] == "run_scheduled"


# ============================================================================
# Concurrency and idempotency
# ============================================================================

def test_max_concurrency_is_respected(orchestrator, repos, gateway):
    lock = threading.Lock()
    active = {"now": 0, "peak": 0}

    def busy(payload, key, context):
        with lock:
            active["now"] += 1
            active["peak"] = max(active["peak"], active["now"])
        time.sleep(0.05)
        with lock:
            active["now"] -= 1
        return {"done": True}

    gateway.register("outreach", RecordingHandler(on_call=busy))
    scenario_id = seed_scenario(
        repos, [step(f"s{i}") for i in range(6)], constraints={"max_concurrency": 2}
    )

    run = orchestrator.start_run(scenario_id)
    orchestrator.wait_idle(10)

    assert run_status(orchestrator, run.run_id) == RunStatus.COMPLETED
    assert active["peak"] <= 2


def test_random_graphs_respect_dependency_order(orchestrator, repos, gateway):
    rng = random.Random(20260302)
    lock = threading.Lock()
    order = {}

    def record(payload, key, context):
        run_id = context["_run"]["run_id"]
        time.sleep(rng.random() * 0.01)
        with lock:
            order.setdefault(run_id, []).append(context["_run"]["step_id"])
        return {"ok": True}

    gateway.register("outreach", RecordingHandler(on_call=record))

    graphs = {}
    for index in range(5):
        steps = []
        for position in range(8):
            earlier = [f"s{p}" for p in range(position)]
            depends = rng.sample(earlier, k=rng.randint(0, min(3, len(earlier))))
            steps.append(step(f"s{position}", depends_on_steps=depends))
        rng.shuffle(steps)
        scenario_id = seed_scenario(repos, steps, scenario_id=f"SCN-{index}", playbook_id=f"PB-{index}")
        graphs[scenario_id] = steps

    run_ids = {}
    threads = [
        threading.Thread(target=lambda sid=sid: run_ids.__setitem__(sid, orchestrator.start_run(sid).run_id))
        for sid in graphs
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(10)
    orchestrator.wait_idle(20)

    for scenario_id, steps in graphs.items():
        run_id = run_ids[scenario_id]
        assert run_status(orchestrator, run_id) == RunStatus.COMPLETED
        executed = order[run_id]
        assert sorted(executed) == sorted(s.step_id for s in steps)
        position = {step_id: i for i, step_id in enumerate(executed)}
        for s in steps:
            for dependency in s.depends_on_steps:
                assert position[dependency] < position[s.step_id]


def test_recovery_reuses_completed_dispatch(orchestrator, repos, gateway, clock, monkeypatch):
    handler = RecordingHandler(result={"sent": 4})
    gateway.register("outreach", handler)
    scenario_id = seed_scenario(repos, [step("notify")])

    # Process dies after the handler ran but before the outcome was recorded
    monkeypatch.setattr(orchestrator, "complete_step", lambda step_run_id, outcome: None)
    run = orchestrator.start_run(scenario_id)
    orchestrator.wait_idle(5)
    assert statuses(orchestrator, run.run_id) == {"notify": "executing"}

    successor = RunOrchestrator(repos, gateway=gateway, clock=clock, stalled_dispatch_minutes=15)
    try:
        assert successor.recover_stalled_dispatches() == 0
        clock.advance(minutes=20)
        assert successor.recover_stalled_dispatches() == 1
        successor.wait_idle(5)
    finally:
        successor.shutdown()

    notify = step_run_for(successor, run.run_id, "notify")
    assert notify.status == StepStatus.EXECUTED
    assert notify.result == {"sent": 4}
    assert notify.dispatch_attempts == 2
    assert handler.call_count == 1
    assert is_subsequence(["dispatch_recovered", "dispatch_deduplicated", "run_completed"], event_types(repos, run.run_id))


def test_recovery_redelivers_with_same_idempotency_key(orchestrator, repos, gateway, clock, monkeypatch):
    handler = RecordingHandler()
    gateway.register("outreach", handler)
    scenario_id = seed_scenario(repos, [step("notify")])

    # Process dies before the worker reaches the handler
    monkeypatch.setattr(orchestrator, "_execute_action", lambda *args: None)
    run = orchestrator.start_run(scenario_id)
    orchestrator.wait_idle(5)

    successor = RunOrchestrator(repos, gateway=gateway, clock=clock, stalled_dispatch_minutes=15)
    try:
        clock.advance(minutes=20)
        successor.recover_stalled_dispatches()
        successor.wait_idle(5)
    finally:
        successor.shutdown()

    notify = step_run_for(successor, run.run_id, "notify")
    assert notify.status == StepStatus.EXECUTED
    assert [call["idempotency_key"] for call in handler.calls] == [notify.idempotency_key]


def test_transition_only_examines_successors_of_the_changed_step(orchestrator, repos, approver, monkeypatch):
    scenario_id = seed_scenario(repos, [
        step("gate", "content_publish", requires_approval=True, approval_roles=["comms_lead"]),
        step("hold", "content_publish", requires_approval=True, approval_roles=["comms_lead"]),
        step("after_gate", depends_on_steps=["gate"]),
    ] + [step(f"tail{i}", depends_on_steps=["hold"]) for i in range(20)])
    run = orchestrator.start_run(scenario_id)
    orchestrator.wait_idle(5)

    examined = []
    is_ready = orchestrator.resolver.is_ready

    def counting(step_def, step_statuses):
        examined.append(step_def.step_id)
        return is_ready(step_def, step_statuses)

    monkeypatch.setattr(orchestrator.resolver, "is_ready", counting)
    gate = step_run_for(orchestrator, run.run_id, "gate")
    orchestrator.submit_approval(gate.step_run_id, ApprovalOutcome.APPROVED, approver)
    orchestrator.wait_idle(5)

    assert statuses(orchestrator, run.run_id)["after_gate"] == "executed"
    assert set(examined) == {"after_gate"}
    assert run_status(orchestrator, run.run_id) == RunStatus.AWAITING_APPROVAL


def test_finished_runs_release_lock_and_graph(orchestrator, repos, approver):
    scenario_id = seed_scenario(repos, [
        step("assess", "competitive_analysis"),
        step("publish", "content_publish", requires_approval=True,
             approval_roles=["comms_lead"], depends_on_steps=["assess"]),
    ])
    run = orchestrator.start_run(scenario_id)
    orchestrator.wait_idle(5)

    assert orchestrator._locks == {}
    assert run.run_id in orchestrator._graphs

    publish = step_run_for(orchestrator, run.run_id, "publish")
    orchestrator.submit_approval(publish.step_run_id, ApprovalOutcome.APPROVED, approver)
    orchestrator.wait_idle(5)

    assert run_status(orchestrator, run.run_id) == RunStatus.COMPLETED
    assert orchestrator._locks == {}
    assert orchestrator._graphs == {}


# ============================================================================
# Reconciliation
# ============================================================================

def test_run_left_running_after_lost_update_is_reconciled(orchestrator, repos, gateway, clock, monkeypatch):
    scenario_id = seed_scenario(repos, [step("notify")])
    update_run = repos.runs.update_run

    # Every attempt to record completion loses the version race
    def contended(run_id, updates, expected_version=None):
        if updates.get("status") == RunStatus.COMPLETED.value:
            raise ConcurrencyConflictError(f"Run {run_id} was modified concurrently")
        return update_run(run_id, updates, expected_version=expected_version)

    monkeypatch.setattr(repos.runs, "update_run", contended)
    run = orchestrator.start_run(scenario_id)
    orchestrator.wait_idle(5)

    with pytest.raises(RunUnavailableError):
        orchestrator.advance(run.run_id)
    assert statuses(orchestrator, run.run_id) == {"notify": "executed"}
    assert run_status(orchestrator, run.run_id) == RunStatus.RUNNING

    monkeypatch.undo()
    clock.advance(hours=24)
    successor = RunOrchestrator(repos, gateway=gateway, clock=clock, stalled_dispatch_minutes=15)
    try:
        counts = ScenarioRunService(repos, orchestrator=successor).run_sweeps()
        successor.wait_idle(5)
    finally:
        successor.shutdown()

    assert counts["reconciled"] == 1
    assert counts["recovered"] == 0
    view = orchestrator.get_run_status(run.run_id)
    assert view.run.status == RunStatus.COMPLETED
    assert view.run.result_summary.steps_executed == 1
    assert "run_completed" in event_types(repos, run.run_id)


def test_reconcile_finishes_run_left_initializing(orchestrator, repos):
    scenario_id = seed_scenario(repos, [
        step("assess", "competitive_analysis"),
        step("mail", "outreach", depends_on_steps=["assess"]),
    ], constraints={"excluded_actions": ["outreach"]})

    # Process died right after claiming the start
    run = orchestrator.start_run(scenario_id, scheduled_at=orchestrator.clock() + timedelta(days=1))
    repos.runs.update_run(run.run_id, {"status": RunStatus.INITIALIZING.value}, expected_version=run.version)

    assert orchestrator.reconcile_runs() == 1
    orchestrator.wait_idle(5)

    view = orchestrator.get_run_status(run.run_id)
    assert view.run.status == RunStatus.COMPLETED
    assert view.run.started_at is not None
    assert statuses(orchestrator, run.run_id) == {"assess": "executed", "mail": "skipped"}
    assert orchestrator.reconcile_runs() == 0


def test_reconcile_begins_unscheduled_run_never_started(orchestrator, repos, monkeypatch):
    scenario_id = seed_scenario(repos, [step("notify")])

    monkeypatch.setattr(orchestrator, "_begin_run", lambda run_id, actor=None: repos.runs.get_run(run_id))
    run = orchestrator.start_run(scenario_id)
    monkeypatch.undo()
    assert run.status == RunStatus.PENDING

    assert orchestrator.reconcile_runs() == 1
    orchestrator.wait_idle(5)

    assert run_status(orchestrator, run.run_id) == RunStatus.COMPLETED
    assert "run_started" in event_types(repos, run.run_id)


def test_reconcile_skips_runs_with_work_in_flight(orchestrator, repos, gateway):
    gate = threading.Event()
    handler = RecordingHandler(gate=gate)
    gateway.register("outreach", handler)
    scenario_id = seed_scenario(repos, [step("notify")])

    run = orchestrator.start_run(scenario_id)
    assert handler.started.wait(5)
    try:
        assert orchestrator.reconcile_runs() == 0
    finally:
        gate.set()
    orchestrator.wait_idle(5)

    assert run_status(orchestrator, run.run_id) == RunStatus.COMPLETED
    assert handler.call_count == 1


def test_timeout_sweep_continues_past_a_failing_item(orchestrator, repos, clock, monkeypatch):
    run_ids = []
    for index in range(2):
        scenario_id = seed_scenario(
            repos,
            [step("publish", "content_publish", requires_approval=True, timeout_minutes=1)],
            scenario_id=f"SCN-{index}", playbook_id=f"PB-{index}"
        )
        run_ids.append(orchestrator.start_run(scenario_id).run_id)

    advance = orchestrator.advance
    calls = []

    def flaky(run_id, changed=None):
        calls.append(run_id)
        if len(calls) == 1:
            raise RunUnavailableError(f"Run {run_id} could not be updated")
        return advance(run_id, changed)

    monkeypatch.setattr(orchestrator, "advance", flaky)
    clock.advance(minutes=2)

    assert orchestrator.process_timeouts() == 1
    assert len(calls) == 2
    for run_id in run_ids:
        assert step_run_for(orchestrator, run_id, "publish").status == StepStatus.FAILED
    stuck, finished = calls
    assert run_status(orchestrator, stuck) == RunStatus.AWAITING_APPROVAL
    assert run_status(orchestrator, finished) == RunStatus.FAILED

    monkeypatch.undo()
    assert orchestrator.reconcile_runs() == 1
    assert [run_status(orchestrator, run_id) for run_id in run_ids] == [RunStatus.FAILED, RunStatus.FAILED]
