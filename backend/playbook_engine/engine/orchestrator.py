"""
Run Orchestrator - Drives scenario runs through the step state machine

=============================================================================
MODULE STRUCTURE
=============================================================================

The RunOrchestrator class is organized into the following sections:

1. INITIALIZATION
   - Constructor wiring repositories, gateway, worker pool and clock

2. RUN LIFECYCLE
   - start_run: Validate, materialize step runs, begin (or schedule)
   - cancel_run / pause_run / resume_run
   - get_run_status

3. ADVANCE LOOP
   - advance: Readiness recomputation + dispatch + run status CAS
   - _activate_ready_steps: pending -> ready -> skipped | awaiting_* | dispatchable,
     walking only the successors of the steps that changed
   - _dispatch_ready_steps: respect the per-run concurrency ceiling

4. EXTERNAL INPUTS
   - submit_approval: Apply one ApprovalDecision
   - ingest_signal: Fan one SignalEvent out to every matching watch
   - complete_step: Callback from the worker that ran the action

5. SWEEPS (driven by the scheduler)
   - process_timeouts: Approval / signal / timer / dispatch deadlines
   - start_due_runs: Scheduled runs whose start time arrived
   - enforce_time_ceilings: Runs over their max_time_hours
   - recover_stalled_dispatches: Idempotent re-dispatch after a crash
   - reconcile_runs: Re-advance runs whose last run update was lost

6. STEP HELPERS
   - _set_step: Legal-transition check + status CAS + audit entry
   - _fail_step: failed, then skipped when skip_on_failure
   - _stop_run: Cancel undispatched work, flag in-flight work, finalize

=============================================================================
CONCURRENCY
=============================================================================

Ready steps run on a bounded ThreadPoolExecutor shared by all runs. Within
one process every mutation of a run happens under that run's lock; across
processes, run-level changes are a compare-and-swap on ScenarioRun.version
and step-level changes a compare-and-set on ScenarioStepRun.status, so a
lost race is detected and the readiness recomputation is retried against
fresh state. Suspensions (awaiting_approval, awaiting_signal) are stored
statuses, never in-memory waits.

=============================================================================
"""

import copy
import threading
import time
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor, wait as futures_wait
from contextlib import contextmanager
from datetime import datetime, timedelta
from functools import partial
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Tuple

from ..domain.models import (
    ActorContext, ApprovalDecision, DispatchOutcome, PlaybookStep, RunStatusView,
    ScenarioRun, ScenarioStepRun, SignalEvent, SYSTEM_ACTOR
)
from ..domain.enums import (
    ApprovalOutcome, AuditEventType, RunStatus, StepStatus, RECONCILABLE_RUN_STATUSES,
    SATISFIED_STEP_STATUSES, TERMINAL_RUN_STATUSES, UNDISPATCHED_STEP_STATUSES
)
from ..domain.errors import (
    ActionExecutionError, ApprovalTimeoutError, CancellationError,
    ConcurrencyConflictError, DomainError, InvalidStateError, RunUnavailableError,
    SignalTimeoutError, StepError, UnsupportedActionError, ValidationError
)
from .graph_validator import DependencyGraph, GraphValidator
from .transition_resolver import TransitionResolver, DISPATCHABLE_STEP_STATUSES
from .condition_evaluator import ConditionEvaluator
from .approval_gate import ApprovalGate
from .signal_waiter import SignalWaiter
from .action_gateway import ActionGateway
from .audit_writer import AuditWriter
from ..services.notification_service import NotificationService
from ..config.settings import settings
from ..utils.idgen import (
    build_idempotency_key, generate_run_id, generate_signal_event_id, generate_step_run_id
)
from ..utils.time import calculate_deadline, ensure_utc, format_iso, is_past, utc_now
from ..utils.logger import get_logger

logger = get_logger(__name__)


class _RunLock:
    """Re-entrant run lock plus the number of threads holding or waiting on it"""

    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = threading.RLock()
        self.users = 0


class RunOrchestrator:
    """
    Single logical coordinator for scenario runs

    Owns every ScenarioRun / ScenarioStepRun mutation. The Action Gateway,
    Approval Gate and Signal Waiter only report outcomes back through
    complete_step / submit_approval / ingest_signal.
    """

    # =========================================================================
    # 1. INITIALIZATION
    # =========================================================================

    def __init__(
        self,
        repositories: Any,
        gateway: Optional[ActionGateway] = None,
        executor: Optional[ThreadPoolExecutor] = None,
        clock: Callable[[], datetime] = utc_now,
        default_max_concurrency: Optional[int] = None,
        cas_max_retries: Optional[int] = None,
        dispatch_timeout_minutes: Optional[float] = None,
        stalled_dispatch_minutes: Optional[float] = None
    ):
        self.repos = repositories
        self.runs = repositories.runs
        self.clock = clock

        self.gateway = gateway or ActionGateway(repositories.dispatches, clock)
        self.validator = GraphValidator()
        self.resolver = TransitionResolver()
        self.evaluator = ConditionEvaluator()
        self.approval_gate = ApprovalGate()
        self.signal_waiter = SignalWaiter(repositories.signals, self.evaluator)
        self.audit = AuditWriter(repositories.audit, clock)
        self.notifications = NotificationService(repositories.notifications, clock)

        self.default_max_concurrency = default_max_concurrency or settings.default_max_concurrency
        self.cas_max_retries = cas_max_retries or settings.cas_max_retries
        self.dispatch_timeout_minutes = (
            dispatch_timeout_minutes if dispatch_timeout_minutes is not None
            else settings.dispatch_timeout_minutes
        )
        self.stalled_dispatch_minutes = (
            stalled_dispatch_minutes if stalled_dispatch_minutes is not None
            else settings.stalled_dispatch_minutes
        )

        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=settings.orchestrator_worker_threads,
            thread_name_prefix="playbook-step"
        )
        self._locks: Dict[str, _RunLock] = {}
        self._graphs: Dict[str, DependencyGraph] = {}
        self._locks_guard = threading.Lock()
        self._inflight: Dict[str, Future] = {}
        self._inflight_runs: Dict[str, str] = {}
        self._inflight_guard = threading.Lock()

    def _now(self) -> datetime:
        return self.clock()

    @contextmanager
    def _run_lock(self, run_id: str) -> Iterator[None]:
        """
        Hold the run's lock

        The entry is dropped as soon as no thread holds or waits on it, so
        the map only ever covers runs that are being worked on.
        """
        with self._locks_guard:
            entry = self._locks.get(run_id)
            if entry is None:
                entry = self._locks[run_id] = _RunLock()
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._locks_guard:
                entry.users -= 1
                if entry.users == 0:
                    del self._locks[run_id]

    def _graph(self, run: ScenarioRun) -> DependencyGraph:
        """Dependency graph of an active run, rebuilt from its step snapshot when not cached"""
        with self._locks_guard:
            graph = self._graphs.get(run.run_id)
        if graph is None:
            graph = self.validator.validate(run.steps)
            with self._locks_guard:
                self._graphs[run.run_id] = graph
        return graph

    def _forget_graph(self, run_id: str) -> None:
        with self._locks_guard:
            self._graphs.pop(run_id, None)

    def shutdown(self, wait: bool = True) -> None:
        """Stop the worker pool (only if this orchestrator created it)"""
        if self._owns_executor:
            self._executor.shutdown(wait=wait)

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until no dispatched action is running in this process"""
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            with self._inflight_guard:
                pending = [f for f in self._inflight.values() if not f.done()]
            if not pending:
                return True
            remaining = None if deadline is None else deadline - time.monotonic()
            if remaining is not None and remaining <= 0:
                return False
            futures_wait(pending, timeout=remaining)

    # =========================================================================
    # 2. RUN LIFECYCLE
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
        """
        Start a run of a scenario against a playbook

        Validation (graph structure, cycles, handler coverage) happens before
        anything is written, so a rejected start never leaves a partial run.

        Raises:
            ScenarioNotFoundError / PlaybookNotFoundError
            GraphInvalidError / GraphCyclicError
            UnsupportedActionError
        """
        scenario = self.repos.playbooks.get_scenario_or_raise(scenario_id)
        playbook_id = playbook_id or scenario.default_playbook_id
        if not playbook_id:
            raise ValidationError(
                f"No playbook given and scenario {scenario_id} has no default playbook",
                details={"scenario_id": scenario_id}
            )
        playbook = self.repos.playbooks.get_playbook_or_raise(playbook_id)
        constraints = scenario.constraints

        graph = self.validator.validate(playbook.steps)
        self.gateway.ensure_supported(playbook.steps, excluded=constraints.excluded_actions)

        now = self._now()
        context: Dict[str, Any] = dict(scenario.parameters)
        context.update(override_parameters or {})

        run_id = generate_run_id()
        run = ScenarioRun(
            run_id=run_id,
            scenario_id=scenario.scenario_id,
            playbook_id=playbook.playbook_id,
            playbook_version=playbook.version,
            status=RunStatus.PENDING,
            steps=playbook.steps,
            parameters=copy.deepcopy(context),
            constraints=constraints,
            context=context,
            max_concurrency=constraints.max_concurrency or self.default_max_concurrency,
            scheduled_at=scheduled_at,
            started_by=actor.actor_id,
            metadata=metadata or {},
            created_at=now,
            updated_at=now
        )
        step_runs = [
            ScenarioStepRun(
                step_run_id=generate_step_run_id(),
                run_id=run_id,
                step_id=step.step_id,
                step_index=index,
                action_type=step.action_type,
                idempotency_key=build_idempotency_key(run_id, step.step_id),
                created_at=now,
                updated_at=now
            )
            for index, step in enumerate(playbook.steps)
        ]

        self.runs.create_run(run)
        self.runs.create_step_runs(step_runs)
        with self._locks_guard:
            self._graphs[run_id] = graph
        logger.info(
            f"Run created with {len(step_runs)} steps",
            extra={"run_id": run_id, "scenario_id": scenario_id, "playbook_id": playbook.playbook_id}
        )

        if scheduled_at is not None and ensure_utc(scheduled_at) > ensure_utc(now):
            self.audit.write_event(
                run_id, AuditEventType.RUN_SCHEDULED, actor=actor,
                details={"scheduled_at": format_iso(scheduled_at)}
            )
            return run

        return self._begin_run(run_id, actor)

    def _begin_run(self, run_id: str, actor: ActorContext = SYSTEM_ACTOR) -> ScenarioRun:
        """pending -> initializing, then initialization and the first advance"""
        with self._run_lock(run_id):
            run = self.runs.get_run_or_raise(run_id)
            if run.status != RunStatus.PENDING:
                return run

            try:
                run = self.runs.update_run(
                    run_id, {"status": RunStatus.INITIALIZING.value}, expected_version=run.version
                )
            except ConcurrencyConflictError:
                logger.info("Run already being started elsewhere", extra={"run_id": run_id})
                return self.runs.get_run_or_raise(run_id)

            self.audit.write_event(
                run_id, AuditEventType.RUN_STARTED, actor=actor,
                details={
                    "scenario_id": run.scenario_id,
                    "playbook_id": run.playbook_id,
                    "playbook_version": run.playbook_version,
                    "steps": len(run.steps),
                    "max_concurrency": run.max_concurrency
                }
            )
            return self._initialize_run(run, actor)

    def _initialize_run(self, run: ScenarioRun, actor: ActorContext = SYSTEM_ACTOR) -> ScenarioRun:
        """
        initializing -> running: skip excluded actions, set the time ceiling,
        then the first advance

        Safe to repeat on a run that a crashed process left in initializing.
        """
        run_id = run.run_id
        with self._run_lock(run_id):
            now = self._now()
            excluded = set(run.constraints.excluded_actions)
            if excluded:
                for step_run in self.runs.get_step_runs_for_run(run_id):
                    if step_run.status == StepStatus.PENDING and step_run.action_type in excluded:
                        self._set_step(
                            step_run, StepStatus.SKIPPED,
                            {"skip_reason": "excluded_action", "completed_at": now},
                            AuditEventType.STEP_SKIPPED,
                            details={"reason": "action type excluded by scenario constraints"}
                        )

            max_hours = run.constraints.max_time_hours
            deadline = calculate_deadline(now, max_hours * 60 if max_hours else None)
            moved: Dict[str, bool] = {}

            def start(current: ScenarioRun) -> Optional[Dict[str, Any]]:
                moved.clear()
                if current.status != RunStatus.INITIALIZING:
                    return None
                moved["running"] = True
                return {
                    "status": RunStatus.RUNNING.value,
                    "started_at": now,
                    "deadline_at": deadline
                }

            started = self._commit_run(run_id, start)
            if moved:
                self.audit.write_run_status(started, RunStatus.INITIALIZING, RunStatus.RUNNING, actor=actor)
                logger.info("Run started", extra={"run_id": run_id, "status": RunStatus.RUNNING.value})

            return self.advance(run_id)

    def cancel_run(
        self,
        run_id: str,
        reason: Optional[str] = None,
        actor: ActorContext = SYSTEM_ACTOR
    ) -> ScenarioRun:
        """
        Cancel a run

        Undispatched steps become cancelled; steps already handed to the
        Action Gateway become cancelled with outcome_uncertain and get a
        best-effort cancellation signal.

        Raises:
            RunNotFoundError
            InvalidStateError: Run already terminal
        """
        with self._run_lock(run_id):
            run = self.runs.get_run_or_raise(run_id)
            if run.status in TERMINAL_RUN_STATUSES:
                raise InvalidStateError(
                    f"Run {run_id} is already {run.status.value}",
                    details={"run_id": run_id, "status": run.status.value}
                )

            if not run.cancel_requested:
                def request(current: ScenarioRun) -> Optional[Dict[str, Any]]:
                    if current.status in TERMINAL_RUN_STATUSES or current.cancel_requested:
                        return None
                    return {"cancel_requested": True, "cancel_reason": reason}

                run = self._commit_run(run_id, request)
                self.audit.write_event(
                    run_id, AuditEventType.RUN_CANCEL_REQUESTED, actor=actor,
                    details={"reason": reason}
                )

            if run.status in TERMINAL_RUN_STATUSES:
                return run
            return self._stop_run(run, RunStatus.CANCELLED, reason or "Run cancelled", actor)

    def pause_run(self, run_id: str, actor: ActorContext = SYSTEM_ACTOR) -> ScenarioRun:
        """
        Stop dispatching new steps; in-flight work drains, decisions and
        signals are still recorded

        Raises:
            InvalidStateError: Run is not running or awaiting approval
        """
        with self._run_lock(run_id):
            previous: Dict[str, RunStatus] = {}

            def pause(current: ScenarioRun) -> Dict[str, Any]:
                if current.status not in (RunStatus.RUNNING, RunStatus.AWAITING_APPROVAL) or current.cancel_requested:
                    raise InvalidStateError(
                        f"Run {run_id} cannot be paused while {current.status.value}",
                        details={"run_id": run_id, "status": current.status.value}
                    )
                previous["status"] = current.status
                return {"status": RunStatus.PAUSED.value}

            run = self._commit_run(run_id, pause)
            self.audit.write_run_status(run, previous["status"], RunStatus.PAUSED, actor=actor)
            return run

    def resume_run(self, run_id: str, actor: ActorContext = SYSTEM_ACTOR) -> ScenarioRun:
        """
        Return a paused run to running and re-evaluate readiness

        Raises:
            InvalidStateError: Run is not paused
        """
        with self._run_lock(run_id):
            def resume(current: ScenarioRun) -> Dict[str, Any]:
                if current.status != RunStatus.PAUSED:
                    raise InvalidStateError(
                        f"Run {run_id} is not paused (status: {current.status.value})",
                        details={"run_id": run_id, "status": current.status.value}
                    )
                return {"status": RunStatus.RUNNING.value}

            run = self._commit_run(run_id, resume)
            self.audit.write_run_status(run, RunStatus.PAUSED, RunStatus.RUNNING, actor=actor)
            return self.advance(run_id)

    def get_run_status(self, run_id: str) -> RunStatusView:
        """Consistent snapshot of a run and its step runs"""
        with self._run_lock(run_id):
            run = self.runs.get_run_or_raise(run_id)
            return RunStatusView(run=run, steps=self.runs.get_step_runs_for_run(run_id))

    # =========================================================================
    # 3. ADVANCE LOOP
    # =========================================================================

    def advance(self, run_id: str, changed: Optional[Iterable[str]] = None) -> ScenarioRun:
        """
        Recompute readiness, dispatch what fits, and persist the run status

        `changed` names the steps whose transition triggered the call; only
        they and their direct successors are re-examined. Without it every
        step is scanned (run start, resume, reconciliation).

        Loses to a concurrent writer by re-reading and recomputing; gives up
        with RunUnavailableError after cas_max_retries conflicts.
        """
        changed = list(changed) if changed is not None else None
        with self._run_lock(run_id):
            for attempt in range(self.cas_max_retries):
                run = self.runs.get_run_or_raise(run_id)
                if run.status in TERMINAL_RUN_STATUSES:
                    return run
                if run.status in (RunStatus.PENDING, RunStatus.INITIALIZING):
                    return run
                if run.cancel_requested:
                    return self._stop_run(run, RunStatus.CANCELLED, run.cancel_reason or "Run cancelled", SYSTEM_ACTOR)

                step_runs = self.runs.get_step_runs_for_run(run_id)
                step_runs = self._make_progress(run, step_runs, changed)
                if self._has_hard_failure(step_runs):
                    step_runs = self._cancel_undispatched(run, step_runs, "Run failed", SYSTEM_ACTOR)

                target = self.resolver.resolve_run_status(run.status, step_runs)
                if target == run.status:
                    return run
                try:
                    return self._apply_run_status(run, target, step_runs)
                except ConcurrencyConflictError:
                    # The other writer's step changes are unknown here
                    changed = None
                    logger.info(
                        f"Run version conflict (attempt {attempt + 1}); recomputing readiness",
                        extra={"run_id": run_id}
                    )

            raise RunUnavailableError(
                f"Run {run_id} could not be updated after {self.cas_max_retries} attempts",
                details={"run_id": run_id}
            )

    def _has_hard_failure(self, step_runs: List[ScenarioStepRun]) -> bool:
        return any(sr.status == StepStatus.FAILED for sr in step_runs)

    def _make_progress(
        self,
        run: ScenarioRun,
        step_runs: List[ScenarioStepRun],
        changed: Optional[List[str]]
    ) -> List[ScenarioStepRun]:
        """Activate, then dispatch; repeat while dispatch itself satisfies steps"""
        while not self._has_hard_failure(step_runs):
            step_runs = self._activate_ready_steps(run, step_runs, changed)
            if run.status == RunStatus.PAUSED:
                break

            before = {sr.step_id: sr.status for sr in step_runs}
            step_runs = self._dispatch_ready_steps(run, step_runs)
            # Rejected at dispatch and skipped via skip_on_failure
            changed = [
                sr.step_id for sr in step_runs
                if sr.status != before[sr.step_id] and sr.status in SATISFIED_STEP_STATUSES
            ]
            if not changed:
                break
        return step_runs

    def _apply_run_status(
        self,
        run: ScenarioRun,
        target: RunStatus,
        step_runs: List[ScenarioStepRun]
    ) -> ScenarioRun:
        """Single CAS on run.version carrying the new status"""
        now = self._now()
        updates: Dict[str, Any] = {"status": target.value}
        reason = None
        if target in TERMINAL_RUN_STATUSES:
            updates["completed_at"] = now
            updates["result_summary"] = self.resolver.summarize(step_runs, run.started_at, now).model_dump()
            if target == RunStatus.FAILED:
                reason = self._failure_message(step_runs)
                updates["error_message"] = reason

        updated = self.runs.update_run(run.run_id, updates, expected_version=run.version)
        self.audit.write_run_status(updated, run.status, target, reason=reason)
        logger.info(
            f"Run status {run.status.value} -> {target.value}",
            extra={"run_id": run.run_id, "status": target.value}
        )

        if target in TERMINAL_RUN_STATUSES:
            self.signal_waiter.release_run(run.run_id)
            self._forget_graph(run.run_id)
        if target == RunStatus.FAILED:
            self.notifications.enqueue_run_failed(updated, reason)
        elif target == RunStatus.COMPLETED:
            self.notifications.enqueue_run_completed(updated)
        return updated

    def _failure_message(self, step_runs: List[ScenarioStepRun]) -> str:
        for sr in step_runs:
            if sr.status == StepStatus.FAILED:
                return f"Step {sr.step_id} failed: {sr.error}"
        return "Run failed"

    def _activate_ready_steps(
        self,
        run: ScenarioRun,
        step_runs: List[ScenarioStepRun],
        changed: Optional[List[str]] = None
    ) -> List[ScenarioStepRun]:
        """
        Move newly ready steps as far as they can go without dispatching

        Work starts from the changed steps and their unblocked successors,
        or from every step in topological order when nothing is named. A
        step satisfied here (condition false) queues its own successors.
        """
        now = self._now()
        graph = self._graph(run)
        by_id = {sr.step_id: sr for sr in step_runs}
        statuses = {step_id: sr.status for step_id, sr in by_id.items()}

        if changed is None:
            queue = deque(graph.order)
        else:
            queue = deque()
            for step_id in changed:
                queue.append(step_id)
                queue.extend(self.resolver.unblocked_successors(graph, step_id, statuses))

        while queue:
            step_id = queue.popleft()
            sr = by_id.get(step_id)
            if sr is None:
                continue
            step = run.step_definition(step_id)
            updated = None
            if sr.status == StepStatus.PENDING and self.resolver.is_ready(step, statuses):
                context = self._build_context(run, by_id.values())
                updated = self._activate_step(run, sr, step, context, now)
            elif sr.status == StepStatus.APPROVED and self._still_needs_wait(step, sr):
                updated = self._open_signal_wait(run, sr, step, now)

            if updated is not None and updated.status != sr.status:
                by_id[step_id] = updated
                statuses[step_id] = updated.status
                if updated.status in SATISFIED_STEP_STATUSES:
                    queue.extend(self.resolver.unblocked_successors(graph, step_id, statuses))

        return sorted(by_id.values(), key=lambda sr: sr.step_index)

    def _still_needs_wait(self, step: PlaybookStep, step_run: ScenarioStepRun) -> bool:
        return self.signal_waiter.needs_wait(step) and step_run.resumed_at is None

    def _activate_step(
        self,
        run: ScenarioRun,
        step_run: ScenarioStepRun,
        step: PlaybookStep,
        context: Dict[str, Any],
        now: datetime
    ) -> ScenarioStepRun:
        """pending -> ready, then condition / approval / signal routing"""
        ready = self._set_step(
            step_run, StepStatus.READY, {"ready_at": now}, AuditEventType.STEP_READY
        )
        if ready is None:
            return self._refresh(step_run)

        if step.condition_expression is not None and not self.evaluator.evaluate(
            step.condition_expression, context, now
        ):
            skipped = self._set_step(
                ready, StepStatus.SKIPPED,
                {"skip_reason": "condition_not_met", "completed_at": now},
                AuditEventType.STEP_SKIPPED,
                details={"reason": "condition evaluated false"}
            )
            return skipped or self._refresh(ready)

        if step.requires_approval:
            return self._open_approval_wait(run, ready, step, now)
        if self.signal_waiter.needs_wait(step):
            return self._open_signal_wait(run, ready, step, now)
        return ready

    def _open_approval_wait(
        self,
        run: ScenarioRun,
        step_run: ScenarioStepRun,
        step: PlaybookStep,
        now: datetime
    ) -> ScenarioStepRun:
        roles = self.approval_gate.effective_roles(step, run.constraints)
        waiting = self._set_step(
            step_run, StepStatus.AWAITING_APPROVAL, self.approval_gate.open_wait(step, now), None
        )
        if waiting is None:
            return self._refresh(step_run)

        self.audit.write_approval_requested(waiting, roles, step.timeout_minutes)
        self.notifications.enqueue_approval_needed(run, waiting, roles, step.display_name)
        return waiting

    def _open_signal_wait(
        self,
        run: ScenarioRun,
        step_run: ScenarioStepRun,
        step: PlaybookStep,
        now: datetime
    ) -> ScenarioStepRun:
        updates = self.signal_waiter.open_wait(step, step_run, now)
        deadline = updates["wait_deadline_at"]
        waiting = self._set_step(
            step_run, StepStatus.AWAITING_SIGNAL, updates, AuditEventType.STEP_AWAITING_SIGNAL,
            details={
                "signal_type": updates["waiting_signal_type"],
                "timer": self.signal_waiter.is_timer_wait(step),
                "wait_deadline_at": format_iso(deadline) if deadline else None,
                "unbounded_wait": deadline is None
            }
        )
        if waiting is None:
            self.signal_waiter.release(step_run.run_id, step_run.step_id)
            return self._refresh(step_run)
        return waiting

    def _dispatch_ready_steps(
        self,
        run: ScenarioRun,
        step_runs: List[ScenarioStepRun]
    ) -> List[ScenarioStepRun]:
        """Hand dispatchable steps to the worker pool up to max_concurrency"""
        executing = sum(1 for sr in step_runs if sr.status == StepStatus.EXECUTING)
        slots = run.max_concurrency - executing
        if slots <= 0:
            return step_runs

        context = self._build_context(run, step_runs)
        result = []
        for sr in step_runs:
            if slots > 0 and sr.status in DISPATCHABLE_STEP_STATUSES:
                step = run.step_definition(sr.step_id)
                if not self._still_needs_wait(step, sr):
                    sr = self._dispatch_step(run, sr, step, context)
                    if sr.status == StepStatus.EXECUTING:
                        slots -= 1
            result.append(sr)
        return result

    def _dispatch_step(
        self,
        run: ScenarioRun,
        step_run: ScenarioStepRun,
        step: PlaybookStep,
        context: Dict[str, Any]
    ) -> ScenarioStepRun:
        """ready|approved -> executing, charging the budget first"""
        now = self._now()

        if not self.gateway.supports(step.action_type):
            error = UnsupportedActionError(
                f"No handler registered for action type: {step.action_type}",
                details={"action_type": step.action_type}
            )
            return self._fail_step(run, step_run, step, error, now) or self._refresh(step_run)

        cost = self._estimated_cost(step)
        if cost and not self.runs.reserve_budget(run.run_id, cost, run.constraints.max_budget):
            error = ActionExecutionError(
                f"Budget ceiling exceeded by step {step.step_id}",
                details={"estimated_cost": cost, "max_budget": run.constraints.max_budget}
            )
            return self._fail_step(run, step_run, step, error, now) or self._refresh(step_run)

        executing = self._set_step(
            step_run, StepStatus.EXECUTING,
            {
                "dispatched_at": now,
                "dispatch_deadline_at": calculate_deadline(now, self.dispatch_timeout_minutes),
                "dispatch_attempts": step_run.dispatch_attempts + 1
            },
            AuditEventType.STEP_DISPATCHED,
            details={
                "idempotency_key": step_run.idempotency_key,
                "estimated_cost": cost or None,
                "dispatch_timeout_minutes": self.dispatch_timeout_minutes
            }
        )
        if executing is None:
            if cost:
                self.runs.reserve_budget(run.run_id, -cost, None)
            return self._refresh(step_run)

        self._submit(run, executing, step, context)
        return executing

    def _estimated_cost(self, step: PlaybookStep) -> float:
        try:
            cost = float(step.action_payload.get("estimated_cost") or 0)
        except (TypeError, ValueError):
            return 0.0
        return max(cost, 0.0)

    def _build_context(self, run: ScenarioRun, step_runs: Any) -> Dict[str, Any]:
        """Scenario parameters plus step-scoped results (context[step_id])"""
        context = copy.deepcopy(run.context)
        for sr in step_runs:
            if sr.status == StepStatus.EXECUTED and sr.result is not None:
                context[sr.step_id] = copy.deepcopy(sr.result)
            elif sr.signal_payload is not None:
                context[sr.step_id] = {"signal": copy.deepcopy(sr.signal_payload)}
        return context

    def _submit(
        self,
        run: ScenarioRun,
        step_run: ScenarioStepRun,
        step: PlaybookStep,
        context: Dict[str, Any]
    ) -> None:
        handler_context = copy.deepcopy(context)
        handler_context["_run"] = {
            "run_id": run.run_id,
            "scenario_id": run.scenario_id,
            "playbook_id": run.playbook_id,
            "step_id": step.step_id,
            "risk_tolerance": run.constraints.risk_tolerance.value if run.constraints.risk_tolerance else None,
            "signal": step_run.signal_payload
        }

        key = step_run.idempotency_key
        with self._inflight_guard:
            future = self._executor.submit(
                self._execute_action,
                run.run_id,
                step_run.step_run_id,
                step.step_id,
                step.action_type,
                copy.deepcopy(step.action_payload),
                key,
                handler_context
            )
            self._inflight[key] = future
            self._inflight_runs[key] = run.run_id
        future.add_done_callback(lambda f, key=key: self._forget(key, f))

    def _forget(self, key: str, future: Future) -> None:
        with self._inflight_guard:
            if self._inflight.get(key) is future:
                del self._inflight[key]
                self._inflight_runs.pop(key, None)

    def _has_inflight(self, run_id: str) -> bool:
        with self._inflight_guard:
            return run_id in self._inflight_runs.values()

    def _execute_action(
        self,
        run_id: str,
        step_run_id: str,
        step_id: str,
        action_type: str,
        payload: Dict[str, Any],
        idempotency_key: str,
        context: Dict[str, Any]
    ) -> None:
        """Worker-thread body: dispatch through the gateway, report back"""
        try:
            outcome = self.gateway.dispatch(
                action_type, payload, idempotency_key, context, run_id, step_id
            )
        except UnsupportedActionError as e:
            outcome = DispatchOutcome(error=e.message)
        except Exception as e:
            # Ledger unreachable: the step stays executing and is re-dispatched by recovery
            logger.error(
                f"Dispatch could not be recorded: {e}",
                extra={"run_id": run_id, "step_run_id": step_run_id},
                exc_info=True
            )
            return

        try:
            self.complete_step(step_run_id, outcome)
        except Exception as e:
            # A stored outcome whose run update was lost is picked up by reconcile_runs
            logger.error(
                f"Failed to record step outcome: {e}",
                extra={"run_id": run_id, "step_run_id": step_run_id},
                exc_info=True
            )

    # =========================================================================
    # 4. EXTERNAL INPUTS
    # =========================================================================

    def complete_step(self, step_run_id: str, outcome: DispatchOutcome) -> ScenarioStepRun:
        """Record an action outcome reported by the gateway, then advance"""
        step_run = self.runs.get_step_run_or_raise(step_run_id)
        with self._run_lock(step_run.run_id):
            step_run = self.runs.get_step_run_or_raise(step_run_id)
            if step_run.status != StepStatus.EXECUTING:
                self.audit.write_late_result_discarded(step_run, outcome.succeeded, outcome.error)
                logger.info(
                    "Late action result discarded",
                    extra={"run_id": step_run.run_id, "step_run_id": step_run_id, "status": step_run.status.value}
                )
                return step_run

            run = self.runs.get_run_or_raise(step_run.run_id)
            step = run.step_definition(step_run.step_id)
            now = self._now()

            if outcome.deduplicated:
                self.audit.write_event(
                    run.run_id, AuditEventType.DISPATCH_DEDUPLICATED, step_run=step_run,
                    details={"idempotency_key": step_run.idempotency_key}
                )

            if outcome.succeeded:
                updated = self._set_step(
                    step_run, StepStatus.EXECUTED,
                    {"result": outcome.result, "completed_at": now, "dispatch_deadline_at": None},
                    AuditEventType.STEP_EXECUTED,
                    details={"deduplicated": outcome.deduplicated}
                )
                if updated is not None:
                    self.runs.set_context_entry(run.run_id, step_run.step_id, outcome.result)
            else:
                updated = self._fail_step(
                    run, step_run, step,
                    ActionExecutionError(outcome.error or "Action failed"),
                    now
                )

            self.advance(run.run_id, [step_run.step_id])
            return self.runs.get_step_run_or_raise(step_run_id)

    def submit_approval(
        self,
        step_run_id: str,
        decision: ApprovalOutcome,
        actor: ActorContext,
        notes: Optional[str] = None
    ) -> ScenarioStepRun:
        """
        Apply an approval decision to a waiting step

        A decision is consumed once; a step that is not (yet, or any longer)
        awaiting approval rejects it, which keeps dependency order intact.

        Raises:
            StepRunNotFoundError
            InvalidStateError: Step not awaiting approval, or run no longer active
            ApprovalRoleError: Actor holds none of the approval roles
        """
        step_run = self.runs.get_step_run_or_raise(step_run_id)
        with self._run_lock(step_run.run_id):
            step_run = self.runs.get_step_run_or_raise(step_run_id)
            run = self.runs.get_run_or_raise(step_run.run_id)
            if run.status in TERMINAL_RUN_STATUSES or run.cancel_requested:
                raise InvalidStateError(
                    f"Run {run.run_id} is no longer active",
                    details={"run_id": run.run_id, "status": run.status.value}
                )

            step = run.step_definition(step_run.step_id)
            self.approval_gate.check_decision(step_run, step, run.constraints, actor)

            now = self._now()
            record = ApprovalDecision(
                step_run_id=step_run_id,
                decided_by=actor.actor_id,
                decision=decision,
                notes=notes,
                decided_at=now
            )
            updates = self.approval_gate.decision_updates(record)

            if decision == ApprovalOutcome.APPROVED:
                updated = self._set_step(
                    step_run, StepStatus.APPROVED, updates, AuditEventType.STEP_APPROVED,
                    actor=actor, details={"decided_by": actor.actor_id, "notes": notes}
                )
            else:
                error = StepError(
                    f"Rejected by {actor.actor_id}",
                    details={"notes": notes},
                    error_code="APPROVAL_REJECTED"
                )
                updated = self._fail_step(
                    run, step_run, step, error, now,
                    event_type=AuditEventType.STEP_REJECTED, actor=actor, extra=updates
                )

            if updated is None:
                raise InvalidStateError(
                    f"Step {step_run.step_id} was already decided",
                    details={"step_run_id": step_run_id}
                )

            logger.info(
                f"Approval decision applied: {decision.value}",
                extra={"run_id": run.run_id, "step_run_id": step_run_id, "actor_id": actor.actor_id}
            )
            self.advance(run.run_id, [step_run.step_id])
            return self.runs.get_step_run_or_raise(step_run_id)

    def ingest_signal(self, event: SignalEvent) -> List[ScenarioStepRun]:
        """
        Fan one signal out to every matching waiter

        Each waiter is resumed independently under its own run's lock;
        the watch delete is the claim, so a waiter resumes at most once.
        """
        now = self._now()
        if event.signal_id is None or event.occurred_at is None:
            event = event.model_copy(update={
                "signal_id": event.signal_id or generate_signal_event_id(),
                "occurred_at": event.occurred_at or now
            })

        resumed: List[ScenarioStepRun] = []
        for watch in self.signal_waiter.match(event, now):
            with self._run_lock(watch.run_id):
                step_run = self.runs.get_step_run(watch.step_run_id)
                if step_run is None or step_run.status != StepStatus.AWAITING_SIGNAL:
                    self.signal_waiter.release(watch.run_id, watch.step_id)
                    continue
                if not self.signal_waiter.claim(watch):
                    continue

                updated = self._set_step(
                    step_run, StepStatus.READY,
                    {"resumed_at": now, "signal_payload": event.payload, "wait_deadline_at": None},
                    AuditEventType.SIGNAL_MATCHED,
                    details={
                        "signal_id": event.signal_id,
                        "signal_type": event.signal_type,
                        "occurred_at": format_iso(event.occurred_at)
                    }
                )
                if updated is None:
                    continue

                self.runs.set_context_entry(watch.run_id, watch.step_id, {"signal": event.payload})
                self.advance(watch.run_id, [watch.step_id])
                resumed.append(self.runs.get_step_run_or_raise(watch.step_run_id))

        logger.info(
            f"Signal resumed {len(resumed)} step(s)",
            extra={"signal_type": event.signal_type}
        )
        return resumed

    # =========================================================================
    # 5. SWEEPS
    # =========================================================================

    def process_timeouts(self, now: Optional[datetime] = None) -> int:
        """Expire approval / signal / timer waits and dispatch deadlines"""
        now = now or self._now()
        expired = 0
        for step_run in self.runs.find_expired_waits(now):
            if self._sweep_item(
                "Wait expiry", step_run.run_id, partial(self._expire_wait, step_run.step_run_id, now),
                step_run_id=step_run.step_run_id
            ):
                expired += 1
        for step_run in self.runs.find_expired_dispatches(now):
            if self._sweep_item(
                "Dispatch expiry", step_run.run_id, partial(self._expire_dispatch, step_run.step_run_id, now),
                step_run_id=step_run.step_run_id
            ):
                expired += 1
        if expired:
            logger.info(f"Processed {expired} timeout(s)")
        return expired

    def _sweep_item(
        self,
        name: str,
        run_id: str,
        action: Callable[[], Any],
        step_run_id: Optional[str] = None
    ) -> bool:
        """Run one sweep item; a failure is logged and the sweep moves on"""
        try:
            return bool(action())
        except Exception as e:
            logger.error(
                f"{name} failed: {e}",
                extra={"run_id": run_id, "step_run_id": step_run_id},
                exc_info=True
            )
            return False

    def _expire_wait(self, step_run_id: str, now: datetime) -> bool:
        step_run = self.runs.get_step_run_or_raise(step_run_id)
        with self._run_lock(step_run.run_id):
            step_run = self.runs.get_step_run_or_raise(step_run_id)
            waiting = (StepStatus.AWAITING_APPROVAL, StepStatus.AWAITING_SIGNAL)
            if step_run.status not in waiting or not is_past(step_run.wait_deadline_at, now):
                return False

            run = self.runs.get_run_or_raise(step_run.run_id)
            step = run.step_definition(step_run.step_id)

            if step_run.status == StepStatus.AWAITING_SIGNAL and self.signal_waiter.is_timer_wait(step):
                updated = self._set_step(
                    step_run, StepStatus.READY,
                    {"resumed_at": now, "wait_deadline_at": None},
                    AuditEventType.STEP_READY,
                    details={"reason": "timer_elapsed"}
                )
            else:
                if step_run.status == StepStatus.AWAITING_SIGNAL:
                    self.signal_waiter.release(step_run.run_id, step_run.step_id)
                    error: StepError = SignalTimeoutError(
                        f"No matching signal for step {step.step_id} before its deadline",
                        details={"signal_type": step_run.waiting_signal_type}
                    )
                else:
                    error = ApprovalTimeoutError(
                        f"No approval decision for step {step.step_id} within {step.timeout_minutes} minutes",
                        details={"timeout_minutes": step.timeout_minutes}
                    )

                if self.approval_gate.timeout_status(step) == StepStatus.SKIPPED:
                    updated = self._set_step(
                        step_run, StepStatus.SKIPPED,
                        {
                            "skip_reason": "timeout_fallback",
                            "error": error.message,
                            "error_code": error.error_code,
                            "completed_at": now,
                            "wait_deadline_at": None
                        },
                        AuditEventType.STEP_TIMED_OUT,
                        details={"fallback": "skip", "error": error.message, "error_code": error.error_code}
                    )
                else:
                    updated = self._fail_step(
                        run, step_run, step, error, now,
                        event_type=AuditEventType.STEP_TIMED_OUT,
                        extra={"wait_deadline_at": None}
                    )

            self.advance(step_run.run_id, [step_run.step_id])
            return updated is not None

    def _expire_dispatch(self, step_run_id: str, now: datetime) -> bool:
        step_run = self.runs.get_step_run_or_raise(step_run_id)
        with self._run_lock(step_run.run_id):
            step_run = self.runs.get_step_run_or_raise(step_run_id)
            if step_run.status != StepStatus.EXECUTING or not is_past(step_run.dispatch_deadline_at, now):
                return False

            run = self.runs.get_run_or_raise(step_run.run_id)
            step = run.step_definition(step_run.step_id)
            error = ActionExecutionError(
                f"Action for step {step.step_id} did not report back within "
                f"{self.dispatch_timeout_minutes} minutes",
                details={"dispatch_timeout_minutes": self.dispatch_timeout_minutes}
            )
            updated = self._fail_step(
                run, step_run, step, error, now,
                event_type=AuditEventType.STEP_TIMED_OUT,
                extra={"outcome_uncertain": True, "dispatch_deadline_at": None}
            )
            self.gateway.cancel(step_run.action_type, step_run.idempotency_key)
            self.advance(step_run.run_id, [step_run.step_id])
            return updated is not None

    def start_due_runs(self, now: Optional[datetime] = None) -> int:
        """Begin scheduled runs whose start time has arrived"""
        now = now or self._now()
        started = 0
        for run in self.runs.find_due_scheduled_runs(now):
            if self._sweep_item("Scheduled start", run.run_id, partial(self._begin_run, run.run_id, SYSTEM_ACTOR)):
                started += 1
        return started

    def enforce_time_ceilings(self, now: Optional[datetime] = None) -> int:
        """Fail runs that exceeded the scenario's max_time_hours"""
        now = now or self._now()
        stopped = 0
        for overdue in self.runs.find_overdue_runs(now):
            if self._sweep_item(
                "Time ceiling", overdue.run_id, partial(self._enforce_time_ceiling, overdue.run_id, now)
            ):
                stopped += 1
        return stopped

    def _enforce_time_ceiling(self, run_id: str, now: datetime) -> bool:
        with self._run_lock(run_id):
            run = self.runs.get_run_or_raise(run_id)
            if run.status in TERMINAL_RUN_STATUSES or not is_past(run.deadline_at, now):
                return False
            reason = f"Run exceeded its time ceiling of {run.constraints.max_time_hours} hours"
            self.audit.write_event(
                run.run_id, AuditEventType.RUN_TIME_CEILING_EXCEEDED,
                details={
                    "deadline_at": format_iso(run.deadline_at),
                    "max_time_hours": run.constraints.max_time_hours
                }
            )
            self._stop_run(run, RunStatus.FAILED, reason, SYSTEM_ACTOR)
            return True

    def recover_stalled_dispatches(
        self,
        now: Optional[datetime] = None,
        older_than_minutes: Optional[float] = None
    ) -> int:
        """
        Re-dispatch executing steps that have no live worker in this process

        The same idempotency key is reused, so a dispatch that already
        completed is answered from the ledger and a handler that saw the key
        before can deduplicate.
        """
        now = now or self._now()
        minutes = older_than_minutes if older_than_minutes is not None else self.stalled_dispatch_minutes
        cutoff = now - timedelta(minutes=minutes)

        recovered = 0
        for stalled in self.runs.find_stalled_dispatches(cutoff):
            with self._inflight_guard:
                if stalled.idempotency_key in self._inflight:
                    continue
            if self._sweep_item(
                "Dispatch recovery", stalled.run_id, partial(self._recover_dispatch, stalled, now),
                step_run_id=stalled.step_run_id
            ):
                recovered += 1

        if recovered:
            logger.warning(f"Recovered {recovered} stalled dispatch(es)")
        return recovered

    def _recover_dispatch(self, stalled: ScenarioStepRun, now: datetime) -> bool:
        with self._run_lock(stalled.run_id):
            try:
                step_run = self.runs.update_step_run(
                    stalled.step_run_id,
                    {"dispatched_at": now, "dispatch_attempts": stalled.dispatch_attempts + 1},
                    expected_status=StepStatus.EXECUTING
                )
            except ConcurrencyConflictError:
                return False

            run = self.runs.get_run_or_raise(step_run.run_id)
            step = run.step_definition(step_run.step_id)
            self.audit.write_event(
                run.run_id, AuditEventType.DISPATCH_RECOVERED, step_run=step_run,
                details={
                    "idempotency_key": step_run.idempotency_key,
                    "attempt": step_run.dispatch_attempts,
                    "previous_dispatch_at": format_iso(stalled.dispatched_at)
                }
            )
            context = self._build_context(run, self.runs.get_step_runs_for_run(run.run_id))
            self._submit(run, step_run, step, context)
            return True

    def reconcile_runs(self) -> int:
        """
        Re-advance runs that have no worker in this process

        A step outcome can be stored while the run update that should follow
        it is lost: advance gave up with RunUnavailableError, or the process
        died in between. Nothing else would move such a run again. Runs that
        a crash left in pending (unscheduled) or initializing are begun here
        too. Returns the number of runs whose state changed.
        """
        reconciled = 0
        for candidate in self.runs.find_runs_to_reconcile():
            if self._has_inflight(candidate.run_id):
                continue
            if self._sweep_item("Run reconciliation", candidate.run_id, partial(self._reconcile_run, candidate.run_id)):
                reconciled += 1

        if reconciled:
            logger.warning(f"Reconciled {reconciled} run(s)")
        return reconciled

    def _reconcile_run(self, run_id: str) -> bool:
        with self._run_lock(run_id):
            before = self._progress_marker(run_id)
            run = self.runs.get_run_or_raise(run_id)
            if run.status == RunStatus.PENDING and run.scheduled_at is None:
                self._begin_run(run_id)
            elif run.status == RunStatus.INITIALIZING:
                self._initialize_run(run)
            elif run.status in RECONCILABLE_RUN_STATUSES:
                self.advance(run_id)
            else:
                return False

            changed = self._progress_marker(run_id) != before
            if changed:
                logger.info("Run reconciled", extra={"run_id": run_id})
            return changed

    def _progress_marker(self, run_id: str) -> Tuple[Any, ...]:
        run = self.runs.get_run_or_raise(run_id)
        step_statuses = tuple(sr.status for sr in self.runs.get_step_runs_for_run(run_id))
        return (run.status, run.version, step_statuses)

    # =========================================================================
    # 6. STEP HELPERS
    # =========================================================================

    def _refresh(self, step_run: ScenarioStepRun) -> ScenarioStepRun:
        return self.runs.get_step_run_or_raise(step_run.step_run_id)

    def _set_step(
        self,
        step_run: ScenarioStepRun,
        to_status: StepStatus,
        updates: Dict[str, Any],
        event_type: Optional[AuditEventType],
        actor: ActorContext = SYSTEM_ACTOR,
        details: Optional[Dict[str, Any]] = None
    ) -> Optional[ScenarioStepRun]:
        """
        Apply one legal transition as a compare-and-set on the current status

        Returns None when another writer changed the step first.

        Raises:
            InvalidTransitionError: Transition not in the legal table
        """
        self.resolver.assert_transition(step_run, to_status)
        changes = dict(updates)
        changes["status"] = to_status.value

        try:
            updated = self.runs.update_step_run(
                step_run.step_run_id, changes, expected_status=step_run.status
            )
        except ConcurrencyConflictError:
            logger.info(
                f"Step changed concurrently; {step_run.status.value} -> {to_status.value} dropped",
                extra={"run_id": step_run.run_id, "step_id": step_run.step_id}
            )
            return None

        if event_type is not None:
            self.audit.write_step_transition(updated, event_type, step_run.status, actor, details)
        logger.info(
            f"Step {step_run.step_id}: {step_run.status.value} -> {to_status.value}",
            extra={"run_id": step_run.run_id, "step_id": step_run.step_id, "status": to_status.value}
        )
        return updated

    def _fail_step(
        self,
        run: ScenarioRun,
        step_run: ScenarioStepRun,
        step: PlaybookStep,
        error: DomainError,
        now: datetime,
        event_type: AuditEventType = AuditEventType.STEP_FAILED,
        actor: ActorContext = SYSTEM_ACTOR,
        extra: Optional[Dict[str, Any]] = None
    ) -> Optional[ScenarioStepRun]:
        """Record a step failure; tolerated failures continue as skipped"""
        updates: Dict[str, Any] = {
            "error": error.message,
            "error_code": error.error_code,
            "completed_at": now
        }
        if extra:
            updates.update(extra)

        details = {"error": error.message, "error_code": error.error_code}
        details.update(error.details)
        failed = self._set_step(step_run, StepStatus.FAILED, updates, event_type, actor, details)
        if failed is None:
            return None

        if step.skip_on_failure:
            skipped = self._set_step(
                failed, StepStatus.SKIPPED, {"skip_reason": "failure_tolerated"},
                AuditEventType.STEP_SKIPPED,
                details={"reason": "skip_on_failure", "error": error.message}
            )
            return skipped or self._refresh(failed)
        return failed

    def _cancel_undispatched(
        self,
        run: ScenarioRun,
        step_runs: List[ScenarioStepRun],
        reason: str,
        actor: ActorContext
    ) -> List[ScenarioStepRun]:
        """Every step not yet handed to the gateway becomes cancelled"""
        now = self._now()
        result = []
        for sr in step_runs:
            if sr.status in UNDISPATCHED_STEP_STATUSES:
                if sr.status == StepStatus.AWAITING_SIGNAL:
                    self.signal_waiter.release(sr.run_id, sr.step_id)
                cancelled = self._set_step(
                    sr, StepStatus.CANCELLED,
                    {
                        "error": reason,
                        "error_code": CancellationError.error_code,
                        "completed_at": now,
                        "wait_deadline_at": None
                    },
                    AuditEventType.STEP_CANCELLED,
                    actor=actor,
                    details={"reason": reason}
                )
                sr = cancelled or self._refresh(sr)
            result.append(sr)
        return result

    def _cancel_executing(
        self,
        step_run: ScenarioStepRun,
        reason: str,
        actor: ActorContext
    ) -> Optional[ScenarioStepRun]:
        """Dispatched step: cancelled now, outcome flagged uncertain, handler told best-effort"""
        cancelled = self._set_step(
            step_run, StepStatus.CANCELLED,
            {
                "cancellation_requested": True,
                "outcome_uncertain": True,
                "error": reason,
                "error_code": CancellationError.error_code,
                "completed_at": self._now(),
                "dispatch_deadline_at": None
            },
            None
        )
        if cancelled is None:
            return None

        self.audit.write_cancellation_during_execution(cancelled, actor, reason)
        self.gateway.cancel(step_run.action_type, step_run.idempotency_key)
        with self._inflight_guard:
            future = self._inflight.get(step_run.idempotency_key)
        if future is not None:
            future.cancel()
        return cancelled

    def _stop_run(
        self,
        run: ScenarioRun,
        final_status: RunStatus,
        reason: str,
        actor: ActorContext
    ) -> ScenarioRun:
        """Propagate a stop to every non-terminal step and finalize the run"""
        step_runs = self.runs.get_step_runs_for_run(run.run_id)
        step_runs = self._cancel_undispatched(run, step_runs, reason, actor)
        for sr in step_runs:
            if sr.status == StepStatus.EXECUTING:
                self._cancel_executing(sr, reason, actor)
        self.signal_waiter.release_run(run.run_id)

        step_runs = self.runs.get_step_runs_for_run(run.run_id)
        now = self._now()
        previous: Dict[str, RunStatus] = {}

        def finalize(current: ScenarioRun) -> Optional[Dict[str, Any]]:
            if current.status in TERMINAL_RUN_STATUSES:
                previous.clear()
                return None
            previous["status"] = current.status
            updates: Dict[str, Any] = {
                "status": final_status.value,
                "completed_at": now,
                "result_summary": self.resolver.summarize(step_runs, current.started_at, now).model_dump()
            }
            if final_status == RunStatus.FAILED:
                updates["error_message"] = reason
            return updates

        stopped = self._commit_run(run.run_id, finalize)
        self._forget_graph(run.run_id)
        if "status" in previous:
            self.audit.write_run_status(stopped, previous["status"], final_status, actor=actor, reason=reason)
            logger.info(
                f"Run stopped: {final_status.value}",
                extra={"run_id": run.run_id, "status": final_status.value}
            )
            if final_status == RunStatus.FAILED:
                self.notifications.enqueue_run_failed(stopped, reason)
        return stopped

    def _commit_run(
        self,
        run_id: str,
        compute: Callable[[ScenarioRun], Optional[Dict[str, Any]]]
    ) -> ScenarioRun:
        """
        Read-compute-CAS loop on run.version

        `compute` returns the updates for the current run, or None for no
        change. Raises RunUnavailableError once retries are exhausted.
        """
        for attempt in range(self.cas_max_retries):
            run = self.runs.get_run_or_raise(run_id)
            updates = compute(run)
            if updates is None:
                return run
            try:
                return self.runs.update_run(run_id, updates, expected_version=run.version)
            except ConcurrencyConflictError:
                logger.info(
                    f"Run version conflict (attempt {attempt + 1}); retrying",
                    extra={"run_id": run_id}
                )

        raise RunUnavailableError(
            f"Run {run_id} could not be updated after {self.cas_max_retries} attempts",
            details={"run_id": run_id}
        )
