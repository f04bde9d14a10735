"""MongoDB repository tests

Run against the server at MONGO_URI; skipped when none is reachable.
"""
import uuid
from datetime import datetime, timedelta, timezone

import pytest
from pymongo import MongoClient
from pymongo.errors import PyMongoError

from playbook_engine.config.settings import settings
from playbook_engine.domain.enums import AuditEventType, DispatchState, RunStatus, StepStatus
from playbook_engine.domain.errors import ConcurrencyConflictError, ConflictError
from playbook_engine.domain.models import (
    AuditEntry, DispatchRecord, ScenarioRun, ScenarioStepRun, SignalWatch
)
from playbook_engine.repositories import Repositories
from playbook_engine.repositories.mongo_client import create_indexes

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(scope="module")
def database():
    client = MongoClient(settings.mongo_uri, serverSelectionTimeoutMS=500, tz_aware=True)
    try:
        client.admin.command("ping")
    except PyMongoError:
        client.close()
        pytest.skip("MongoDB not reachable")

    name = f"playbook_engine_test_{uuid.uuid4().hex[:8]}"
    db = client[name]
    create_indexes(db)
    yield db
    client.drop_database(name)
    client.close()


@pytest.fixture
def repos(database):
    for name in database.list_collection_names():
        database[name].delete_many({})
    return Repositories.mongo(database)


def make_run(run_id: str = "RUN-1", **fields) -> ScenarioRun:
    values = dict(
        run_id=run_id, scenario_id="SCN-1", playbook_id="PB-1",
        status=RunStatus.RUNNING, created_at=NOW, updated_at=NOW
    )
    values.update(fields)
    return ScenarioRun(**values)


def test_run_version_compare_and_set(repos):
    repos.runs.create_run(make_run())

    assert repos.runs.update_run("RUN-1", {"status": RunStatus.PAUSED}, expected_version=1).version == 2
    with pytest.raises(ConcurrencyConflictError):
        repos.runs.update_run("RUN-1", {"status": RunStatus.RUNNING}, expected_version=1)
    with pytest.raises(ConflictError):
        repos.runs.create_run(make_run())


def test_runs_to_reconcile_query(repos):
    repos.runs.create_run(make_run("RUN-ACTIVE"))
    repos.runs.create_run(make_run("RUN-NEW", status=RunStatus.PENDING, created_at=NOW - timedelta(minutes=1)))
    repos.runs.create_run(make_run("RUN-LATER", status=RunStatus.PENDING, scheduled_at=NOW + timedelta(hours=1)))
    repos.runs.create_run(make_run("RUN-DONE", status=RunStatus.FAILED))

    assert [r.run_id for r in repos.runs.find_runs_to_reconcile()] == ["RUN-NEW", "RUN-ACTIVE"]


def test_reserve_budget_is_atomic(repos):
    repos.runs.create_run(make_run())

    assert repos.runs.reserve_budget("RUN-1", 70, 100)
    assert not repos.runs.reserve_budget("RUN-1", 40, 100)
    assert repos.runs.get_run("RUN-1").budget_spent == 70


def test_step_run_status_compare_and_set(repos):
    repos.runs.create_step_runs([ScenarioStepRun(
        step_run_id="SRUN-a", run_id="RUN-1", step_id="a", action_type="outreach",
        idempotency_key="RUN-1:a", created_at=NOW, updated_at=NOW
    )])

    updated = repos.runs.update_step_run("SRUN-a", {"status": StepStatus.READY}, expected_status=StepStatus.PENDING)

    assert updated.status == StepStatus.READY
    with pytest.raises(ConcurrencyConflictError):
        repos.runs.update_step_run("SRUN-a", {"status": StepStatus.READY}, expected_status=StepStatus.PENDING)


def test_signal_watch_claim_once(repos):
    repos.signals.upsert_watch(SignalWatch(
        signal_type="coverage.updated", run_id="RUN-1", step_id="await",
        step_run_id="SRUN-await", registered_at=NOW
    ))

    assert [w.step_id for w in repos.signals.find_watches("coverage.updated")] == ["await"]
    assert repos.signals.delete_watch("RUN-1", "await") is True
    assert repos.signals.delete_watch("RUN-1", "await") is False


def test_dispatch_ledger_claims_key_once(repos):
    record = DispatchRecord(
        idempotency_key="RUN-1:a", run_id="RUN-1", step_id="a", action_type="outreach",
        first_dispatched_at=NOW, last_dispatched_at=NOW
    )

    _, claimed = repos.dispatches.claim(record)
    _, again = repos.dispatches.claim(record)
    repos.dispatches.complete("RUN-1:a", DispatchState.SUCCEEDED, {"sent": 1}, None, NOW)

    assert claimed and not again
    assert repos.dispatches.get("RUN-1:a").result == {"sent": 1}


def test_audit_entries_newest_first(repos):
    for index, event_type in enumerate([AuditEventType.RUN_STARTED, AuditEventType.RUN_COMPLETED]):
        repos.audit.create_entry(AuditEntry(
            audit_entry_id=f"AUD-{index}", run_id="RUN-1", event_type=event_type,
            created_at=NOW + timedelta(minutes=index)
        ))

    assert [e.audit_entry_id for e in repos.audit.list_entries("RUN-1")] == ["AUD-1", "AUD-0"]
