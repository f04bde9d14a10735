"""Test doubles and builders shared by unit and integration tests"""
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from playbook_engine.domain.models import Playbook, PlaybookStep, Scenario
from playbook_engine.repositories import Repositories


class FakeClock:
    """Manually advanced clock shared by the engine under test"""

    def __init__(self, start: Optional[datetime] = None):
        self._now = start or datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        with self._lock:
            return self._now

    def advance(self, minutes: float = 0, hours: float = 0) -> datetime:
        with self._lock:
            self._now = self._now + timedelta(minutes=minutes, hours=hours)
            return self._now


class RecordingHandler:
    """Action handler that records calls and returns (or raises) on demand"""

    def __init__(
        self,
        result: Optional[Any] = None,
        error: Optional[str] = None,
        gate: Optional[threading.Event] = None,
        on_call: Optional[Callable[[Dict[str, Any], str, Dict[str, Any]], Any]] = None
    ):
        self.result = result
        self.error = error
        self.gate = gate
        self.on_call = on_call
        self.calls: List[Dict[str, Any]] = []
        self.cancelled: List[str] = []
        self.started = threading.Event()
        self._lock = threading.Lock()

    def execute(self, payload: Dict[str, Any], idempotency_key: str, context: Dict[str, Any]) -> Any:
        with self._lock:
            self.calls.append({"payload": payload, "idempotency_key": idempotency_key, "context": context})
        self.started.set()
        if self.gate is not None:
            self.gate.wait(timeout=10)
        if self.on_call is not None:
            return self.on_call(payload, idempotency_key, context)
        if self.error:
            raise RuntimeError(self.error)
        return self.result if self.result is not None else {"ok": True}

    def cancel(self, idempotency_key: str) -> None:
        self.cancelled.append(idempotency_key)

    @property
    def call_count(self) -> int:
        with self._lock:
            return len(self.calls)


def step(step_id: str, action_type: str = "outreach", **fields: Any) -> PlaybookStep:
    """Shorthand for a playbook step"""
    return PlaybookStep(step_id=step_id, action_type=action_type, **fields)


def seed_scenario(
    repos: Repositories,
    steps: List[PlaybookStep],
    parameters: Optional[Dict[str, Any]] = None,
    constraints: Optional[Dict[str, Any]] = None,
    scenario_id: str = "SCN-TEST",
    playbook_id: str = "PB-TEST"
) -> str:
    """Store a playbook + scenario pair and return the scenario id"""
    repos.playbooks.create_playbook(Playbook(playbook_id=playbook_id, name="Test playbook", steps=steps))
    repos.playbooks.create_scenario(Scenario.model_validate({
        "scenario_id": scenario_id,
        "name": "Test scenario",
        "parameters": parameters or {},
        "constraints": constraints or {},
        "default_playbook_id": playbook_id
    }))
    return scenario_id


def statuses(orchestrator: Any, run_id: str) -> Dict[str, str]:
    """step_id -> status value for a run"""
    view = orchestrator.get_run_status(run_id)
    return {sr.step_id: sr.status.value for sr in view.steps}


def step_run_for(orchestrator: Any, run_id: str, step_id: str):
    view = orchestrator.get_run_status(run_id)
    return next(sr for sr in view.steps if sr.step_id == step_id)


def event_types(repos: Repositories, run_id: str) -> List[str]:
    """Audit event types for a run in the order they were written"""
    entries = repos.audit.list_entries(run_id, limit=10_000)
    return [e.event_type.value for e in reversed(entries)]
