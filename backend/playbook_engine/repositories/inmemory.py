"""In-memory implementations of the repositories.

Selected with ``persistence_backend=memory``. Useful for tests and local
development; data is not persisted across process restarts. Every repository
guards its state with a lock so compare-and-set semantics hold under the
orchestrator's worker threads, and stores copies so callers never share
mutable state with the store.
"""
import copy
import threading
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from ..domain.models import (
    Playbook, Scenario, ScenarioRun, ScenarioStepRun, SignalWatch,
    DispatchRecord, AuditEntry, NotificationOutbox
)
from ..domain.enums import (
    RunStatus, StepStatus, DispatchState, AuditEventType, ActorType,
    RECONCILABLE_RUN_STATUSES, TERMINAL_RUN_STATUSES
)
from ..domain.errors import (
    PlaybookNotFoundError, ScenarioNotFoundError, RunNotFoundError,
    StepRunNotFoundError, ConcurrencyConflictError, ConflictError, NotFoundError
)
from ..utils.time import ensure_utc, utc_now


def _newest_first(items: List[Any], key: str) -> List[Any]:
    return sorted(items, key=lambda item: ensure_utc(getattr(item, key)), reverse=True)


class InMemoryPlaybookRepository:
    """Playbooks and scenarios held in process memory"""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._playbooks: Dict[str, Dict[str, Any]] = {}
        self._scenarios: Dict[str, Dict[str, Any]] = {}

    def create_playbook(self, playbook: Playbook) -> Playbook:
        if playbook.created_at is None:
            playbook = playbook.model_copy(update={"created_at": utc_now()})
        with self._lock:
            if playbook.playbook_id in self._playbooks:
                raise ConflictError(f"Playbook {playbook.playbook_id} already exists")
            self._playbooks[playbook.playbook_id] = playbook.model_dump()
        return playbook

    def get_playbook(self, playbook_id: str) -> Optional[Playbook]:
        with self._lock:
            doc = self._playbooks.get(playbook_id)
            return Playbook.model_validate(copy.deepcopy(doc)) if doc else None

    def get_playbook_or_raise(self, playbook_id: str) -> Playbook:
        playbook = self.get_playbook(playbook_id)
        if not playbook:
            raise PlaybookNotFoundError(f"Playbook {playbook_id} not found")
        return playbook

    def create_scenario(self, scenario: Scenario) -> Scenario:
        if scenario.created_at is None:
            scenario = scenario.model_copy(update={"created_at": utc_now()})
        with self._lock:
            if scenario.scenario_id in self._scenarios:
                raise ConflictError(f"Scenario {scenario.scenario_id} already exists")
            self._scenarios[scenario.scenario_id] = scenario.model_dump()
        return scenario

    def get_scenario(self, scenario_id: str) -> Optional[Scenario]:
        with self._lock:
            doc = self._scenarios.get(scenario_id)
            return Scenario.model_validate(copy.deepcopy(doc)) if doc else None

    def get_scenario_or_raise(self, scenario_id: str) -> Scenario:
        scenario = self.get_scenario(scenario_id)
        if not scenario:
            raise ScenarioNotFoundError(f"Scenario {scenario_id} not found")
        return scenario


class InMemoryRunRepository:
    """Runs and step runs held in process memory"""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._runs: Dict[str, Dict[str, Any]] = {}
        self._step_runs: Dict[str, Dict[str, Any]] = {}

    # Runs ----------------------------------------------------------------

    def create_run(self, run: ScenarioRun) -> ScenarioRun:
        with self._lock:
            if run.run_id in self._runs:
                raise ConflictError(f"Run {run.run_id} already exists")
            self._runs[run.run_id] = run.model_dump()
        return run

    def get_run(self, run_id: str) -> Optional[ScenarioRun]:
        with self._lock:
            doc = self._runs.get(run_id)
            return ScenarioRun.model_validate(copy.deepcopy(doc)) if doc else None

    def get_run_or_raise(self, run_id: str) -> ScenarioRun:
        run = self.get_run(run_id)
        if not run:
            raise RunNotFoundError(f"Run {run_id} not found")
        return run

    def update_run(
        self,
        run_id: str,
        updates: Dict[str, Any],
        expected_version: Optional[int] = None
    ) -> ScenarioRun:
        with self._lock:
            doc = self._runs.get(run_id)
            if doc is None:
                raise RunNotFoundError(f"Run {run_id} not found")
            if expected_version is not None and doc["version"] != expected_version:
                raise ConcurrencyConflictError(
                    f"Run {run_id} was modified concurrently",
                    details={"expected_version": expected_version, "actual_version": doc["version"]}
                )
            merged = copy.deepcopy(doc)
            merged.update(copy.deepcopy(updates))
            merged["updated_at"] = utc_now()
            if expected_version is not None:
                merged["version"] = expected_version + 1
            run = ScenarioRun.model_validate(merged)
            self._runs[run_id] = run.model_dump()
            return run

    def set_context_entry(self, run_id: str, key: str, value: Any) -> None:
        with self._lock:
            doc = self._runs.get(run_id)
            if doc is not None:
                doc["context"][key] = copy.deepcopy(value)

    def reserve_budget(self, run_id: str, amount: float, ceiling: Optional[float]) -> bool:
        with self._lock:
            doc = self._runs.get(run_id)
            if doc is None:
                return False
            if ceiling is not None and doc["budget_spent"] + amount > ceiling:
                return False
            doc["budget_spent"] += amount
            return True

    def list_runs(
        self,
        status: Optional[RunStatus] = None,
        scenario_id: Optional[str] = None,
        playbook_id: Optional[str] = None,
        skip: int = 0,
        limit: int = 50
    ) -> List[ScenarioRun]:
        runs = self._filter_runs(status, scenario_id, playbook_id)
        return _newest_first(runs, "created_at")[skip:skip + limit]

    def count_runs(
        self,
        status: Optional[RunStatus] = None,
        scenario_id: Optional[str] = None,
        playbook_id: Optional[str] = None
    ) -> int:
        return len(self._filter_runs(status, scenario_id, playbook_id))

    def _filter_runs(
        self,
        status: Optional[RunStatus],
        scenario_id: Optional[str],
        playbook_id: Optional[str]
    ) -> List[ScenarioRun]:
        with self._lock:
            runs = [ScenarioRun.model_validate(copy.deepcopy(doc)) for doc in self._runs.values()]
        if status:
            runs = [r for r in runs if r.status == status]
        if scenario_id:
            runs = [r for r in runs if r.scenario_id == scenario_id]
        if playbook_id:
            runs = [r for r in runs if r.playbook_id == playbook_id]
        return runs

    def find_due_scheduled_runs(self, now: datetime) -> List[ScenarioRun]:
        runs = [
            r for r in self._filter_runs(RunStatus.PENDING, None, None)
            if r.scheduled_at is not None and ensure_utc(r.scheduled_at) <= ensure_utc(now)
        ]
        return sorted(runs, key=lambda r: r.scheduled_at)

    def find_overdue_runs(self, now: datetime) -> List[ScenarioRun]:
        return [
            r for r in self._filter_runs(None, None, None)
            if r.status not in TERMINAL_RUN_STATUSES
            and r.deadline_at is not None
            and ensure_utc(r.deadline_at) <= ensure_utc(now)
        ]

    def find_runs_to_reconcile(self) -> List[ScenarioRun]:
        runs = [
            r for r in self._filter_runs(None, None, None)
            if r.status in RECONCILABLE_RUN_STATUSES
            or (r.status == RunStatus.PENDING and r.scheduled_at is None)
        ]
        return sorted(runs, key=lambda r: ensure_utc(r.created_at))

    # Step runs -----------------------------------------------------------

    def create_step_runs(self, step_runs: List[ScenarioStepRun]) -> List[ScenarioStepRun]:
        with self._lock:
            for step_run in step_runs:
                self._step_runs[step_run.step_run_id] = step_run.model_dump()
        return step_runs

    def get_step_run(self, step_run_id: str) -> Optional[ScenarioStepRun]:
        with self._lock:
            doc = self._step_runs.get(step_run_id)
            return ScenarioStepRun.model_validate(copy.deepcopy(doc)) if doc else None

    def get_step_run_or_raise(self, step_run_id: str) -> ScenarioStepRun:
        step_run = self.get_step_run(step_run_id)
        if not step_run:
            raise StepRunNotFoundError(f"Step run {step_run_id} not found")
        return step_run

    def get_step_runs_for_run(self, run_id: str) -> List[ScenarioStepRun]:
        with self._lock:
            step_runs = [
                ScenarioStepRun.model_validate(copy.deepcopy(doc))
                for doc in self._step_runs.values()
                if doc["run_id"] == run_id
            ]
        return sorted(step_runs, key=lambda sr: sr.step_index)

    def update_step_run(
        self,
        step_run_id: str,
        updates: Dict[str, Any],
        expected_status: StepStatus
    ) -> ScenarioStepRun:
        with self._lock:
            doc = self._step_runs.get(step_run_id)
            if doc is None:
                raise StepRunNotFoundError(f"Step run {step_run_id} not found")
            if doc["status"] != expected_status:
                raise ConcurrencyConflictError(
                    f"Step run {step_run_id} is no longer {expected_status.value}",
                    details={"expected_status": expected_status.value, "actual_status": str(doc["status"])}
                )
            merged = copy.deepcopy(doc)
            merged.update(copy.deepcopy(updates))
            merged["updated_at"] = utc_now()
            step_run = ScenarioStepRun.model_validate(merged)
            self._step_runs[step_run_id] = step_run.model_dump()
            return step_run

    def find_expired_waits(self, now: datetime) -> List[ScenarioStepRun]:
        waiting = {StepStatus.AWAITING_APPROVAL, StepStatus.AWAITING_SIGNAL}
        return [
            sr for sr in self._all_step_runs()
            if sr.status in waiting
            and sr.wait_deadline_at is not None
            and ensure_utc(sr.wait_deadline_at) <= ensure_utc(now)
        ]

    def find_expired_dispatches(self, now: datetime) -> List[ScenarioStepRun]:
        return [
            sr for sr in self._all_step_runs()
            if sr.status == StepStatus.EXECUTING
            and sr.dispatch_deadline_at is not None
            and ensure_utc(sr.dispatch_deadline_at) <= ensure_utc(now)
        ]

    def find_stalled_dispatches(self, dispatched_before: datetime) -> List[ScenarioStepRun]:
        return [
            sr for sr in self._all_step_runs()
            if sr.status == StepStatus.EXECUTING
            and sr.dispatched_at is not None
            and ensure_utc(sr.dispatched_at) <= ensure_utc(dispatched_before)
        ]

    def _all_step_runs(self) -> List[ScenarioStepRun]:
        with self._lock:
            return [ScenarioStepRun.model_validate(copy.deepcopy(doc)) for doc in self._step_runs.values()]


class InMemorySignalWatchRepository:
    """Signal watch registry held in process memory"""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._watches: Dict[Tuple[str, str], SignalWatch] = {}

    def upsert_watch(self, watch: SignalWatch) -> SignalWatch:
        with self._lock:
            self._watches[(watch.run_id, watch.step_id)] = watch.model_copy(deep=True)
        return watch

    def get_watch(self, run_id: str, step_id: str) -> Optional[SignalWatch]:
        with self._lock:
            watch = self._watches.get((run_id, step_id))
            return watch.model_copy(deep=True) if watch else None

    def find_watches(self, signal_type: str) -> List[SignalWatch]:
        with self._lock:
            watches = [
                w.model_copy(deep=True) for w in self._watches.values()
                if w.signal_type == signal_type
            ]
        return sorted(watches, key=lambda w: w.registered_at)

    def delete_watch(self, run_id: str, step_id: str) -> bool:
        with self._lock:
            return self._watches.pop((run_id, step_id), None) is not None

    def delete_watches_for_run(self, run_id: str) -> int:
        with self._lock:
            keys = [key for key in self._watches if key[0] == run_id]
            for key in keys:
                del self._watches[key]
            return len(keys)


class InMemoryDispatchRepository:
    """Action Gateway ledger held in process memory"""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._records: Dict[str, DispatchRecord] = {}

    def claim(self, record: DispatchRecord) -> Tuple[DispatchRecord, bool]:
        with self._lock:
            existing = self._records.get(record.idempotency_key)
            if existing is not None:
                return existing.model_copy(deep=True), False
            self._records[record.idempotency_key] = record.model_copy(deep=True)
            return record, True

    def get(self, idempotency_key: str) -> Optional[DispatchRecord]:
        with self._lock:
            record = self._records.get(idempotency_key)
            return record.model_copy(deep=True) if record else None

    def record_attempt(self, idempotency_key: str, now: datetime) -> DispatchRecord:
        with self._lock:
            record = self._require(idempotency_key)
            record = record.model_copy(update={"attempts": record.attempts + 1, "last_dispatched_at": now})
            self._records[idempotency_key] = record
            return record.model_copy(deep=True)

    def complete(
        self,
        idempotency_key: str,
        state: DispatchState,
        result: Optional[Dict[str, Any]],
        error: Optional[str],
        now: datetime
    ) -> DispatchRecord:
        with self._lock:
            record = self._require(idempotency_key)
            record = record.model_copy(update={
                "state": state,
                "result": copy.deepcopy(result),
                "error": error,
                "completed_at": now
            })
            self._records[idempotency_key] = record
            return record.model_copy(deep=True)

    def _require(self, idempotency_key: str) -> DispatchRecord:
        record = self._records.get(idempotency_key)
        if record is None:
            raise NotFoundError(f"Dispatch {idempotency_key} not found")
        return record


class InMemoryAuditRepository:
    """Append-only audit log held in process memory"""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._entries: List[AuditEntry] = []

    def create_entry(self, entry: AuditEntry) -> AuditEntry:
        with self._lock:
            self._entries.append(entry.model_copy(deep=True))
        return entry

    def list_entries(
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
        with self._lock:
            # Insertion order breaks timestamp ties
            indexed = [(i, e) for i, e in enumerate(self._entries) if e.run_id == run_id]

        if event_types:
            indexed = [(i, e) for i, e in indexed if e.event_type in event_types]
        if step_id:
            indexed = [(i, e) for i, e in indexed if e.step_id == step_id]
        if actor_type:
            indexed = [(i, e) for i, e in indexed if e.actor_type == actor_type]
        if actor_id:
            indexed = [(i, e) for i, e in indexed if e.actor_id == actor_id]
        if since:
            indexed = [(i, e) for i, e in indexed if ensure_utc(e.created_at) >= ensure_utc(since)]
        if until:
            indexed = [(i, e) for i, e in indexed if ensure_utc(e.created_at) <= ensure_utc(until)]

        indexed.sort(key=lambda pair: (ensure_utc(pair[1].created_at), pair[0]), reverse=True)
        return [e.model_copy(deep=True) for _, e in indexed[skip:skip + limit]]


class InMemoryNotificationRepository:
    """Notification outbox held in process memory"""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._outbox: Dict[str, NotificationOutbox] = {}

    def create_notification(self, notification: NotificationOutbox) -> NotificationOutbox:
        with self._lock:
            self._outbox[notification.notification_id] = notification.model_copy(deep=True)
        return notification

    def get_notifications_for_run(self, run_id: str) -> List[NotificationOutbox]:
        with self._lock:
            notifications = [n for n in self._outbox.values() if n.run_id == run_id]
        return [n.model_copy(deep=True) for n in sorted(notifications, key=lambda n: n.created_at)]
