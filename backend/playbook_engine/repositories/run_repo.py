"""Run Repository - Data access for scenario runs and step runs"""
from typing import Any, Dict, List, Optional
from datetime import datetime
from pymongo.collection import Collection
from pymongo.database import Database
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import DuplicateKeyError

from .mongo_client import get_collection
from ..domain.models import ScenarioRun, ScenarioStepRun
from ..domain.enums import (
    RunStatus, StepStatus, RECONCILABLE_RUN_STATUSES, TERMINAL_RUN_STATUSES
)
from ..domain.errors import (
    RunNotFoundError, StepRunNotFoundError, ConcurrencyConflictError, ConflictError
)
from ..utils.time import utc_now
from ..utils.logger import get_logger

logger = get_logger(__name__)

WAITING_STATUSES = [StepStatus.AWAITING_APPROVAL.value, StepStatus.AWAITING_SIGNAL.value]


class RunRepository:
    """Repository for scenario run and step run operations"""

    def __init__(self, database: Optional[Database] = None):
        self._runs: Collection = get_collection("scenario_runs", database)
        self._step_runs: Collection = get_collection("scenario_step_runs", database)

    # =========================================================================
    # Run Operations
    # =========================================================================

    def create_run(self, run: ScenarioRun) -> ScenarioRun:
        """Create a new run"""
        doc = run.model_dump()
        doc["_id"] = run.run_id

        try:
            self._runs.insert_one(doc)
        except DuplicateKeyError:
            raise ConflictError(f"Run {run.run_id} already exists")
        logger.info(f"Created run: {run.run_id}", extra={"run_id": run.run_id})
        return run

    def get_run(self, run_id: str) -> Optional[ScenarioRun]:
        """Get run by ID"""
        doc = self._runs.find_one({"run_id": run_id})
        if doc:
            doc.pop("_id", None)
            return ScenarioRun.model_validate(doc)
        return None

    def get_run_or_raise(self, run_id: str) -> ScenarioRun:
        """Get run or raise RunNotFoundError"""
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
        """Update run with optimistic concurrency on `version`"""
        updates = dict(updates)
        updates["updated_at"] = utc_now()

        filter_query: Dict[str, Any] = {"run_id": run_id}
        if expected_version is not None:
            filter_query["version"] = expected_version
            updates["version"] = expected_version + 1

        result = self._runs.find_one_and_update(
            filter_query,
            {"$set": updates},
            return_document=True
        )

        if result is None:
            if expected_version is not None:
                exists = self._runs.find_one({"run_id": run_id}, {"version": 1})
                if exists:
                    raise ConcurrencyConflictError(
                        f"Run {run_id} was modified concurrently",
                        details={"expected_version": expected_version, "actual_version": exists.get("version")}
                    )
            raise RunNotFoundError(f"Run {run_id} not found")

        result.pop("_id", None)
        return ScenarioRun.model_validate(result)

    def set_context_entry(self, run_id: str, key: str, value: Any) -> None:
        """Write one step-scoped context key (no version bump)"""
        self._runs.update_one(
            {"run_id": run_id},
            {"$set": {f"context.{key}": value}}
        )

    def reserve_budget(self, run_id: str, amount: float, ceiling: Optional[float]) -> bool:
        """Atomically charge `amount` against the run budget; False if it would exceed the ceiling"""
        filter_query: Dict[str, Any] = {"run_id": run_id}
        if ceiling is not None:
            filter_query["budget_spent"] = {"$lte": ceiling - amount}

        result = self._runs.find_one_and_update(
            filter_query,
            {"$inc": {"budget_spent": amount}},
            projection={"budget_spent": 1}
        )
        return result is not None

    def list_runs(
        self,
        status: Optional[RunStatus] = None,
        scenario_id: Optional[str] = None,
        playbook_id: Optional[str] = None,
        skip: int = 0,
        limit: int = 50
    ) -> List[ScenarioRun]:
        """List runs with filters, newest first"""
        query = self._build_run_query(status, scenario_id, playbook_id)
        cursor = self._runs.find(query).sort("created_at", DESCENDING).skip(skip).limit(limit)

        runs = []
        for doc in cursor:
            doc.pop("_id", None)
            runs.append(ScenarioRun.model_validate(doc))
        return runs

    def count_runs(
        self,
        status: Optional[RunStatus] = None,
        scenario_id: Optional[str] = None,
        playbook_id: Optional[str] = None
    ) -> int:
        """Count runs with filters"""
        return self._runs.count_documents(self._build_run_query(status, scenario_id, playbook_id))

    def _build_run_query(
        self,
        status: Optional[RunStatus],
        scenario_id: Optional[str],
        playbook_id: Optional[str]
    ) -> Dict[str, Any]:
        query: Dict[str, Any] = {}
        if status:
            query["status"] = status.value
        if scenario_id:
            query["scenario_id"] = scenario_id
        if playbook_id:
            query["playbook_id"] = playbook_id
        return query

    def find_due_scheduled_runs(self, now: datetime) -> List[ScenarioRun]:
        """Pending runs whose scheduled start has arrived"""
        cursor = self._runs.find({
            "status": RunStatus.PENDING.value,
            "scheduled_at": {"$ne": None, "$lte": now}
        }).sort("scheduled_at", ASCENDING)

        runs = []
        for doc in cursor:
            doc.pop("_id", None)
            runs.append(ScenarioRun.model_validate(doc))
        return runs

    def find_overdue_runs(self, now: datetime) -> List[ScenarioRun]:
        """Non-terminal runs past their time ceiling"""
        cursor = self._runs.find({
            "status": {"$nin": [s.value for s in TERMINAL_RUN_STATUSES]},
            "deadline_at": {"$ne": None, "$lte": now}
        })

        runs = []
        for doc in cursor:
            doc.pop("_id", None)
            runs.append(ScenarioRun.model_validate(doc))
        return runs

    def find_runs_to_reconcile(self) -> List[ScenarioRun]:
        """Active runs, plus unscheduled runs that were never begun"""
        cursor = self._runs.find({
            "$or": [
                {"status": {"$in": [s.value for s in RECONCILABLE_RUN_STATUSES]}},
                {"status": RunStatus.PENDING.value, "scheduled_at": None}
            ]
        }).sort("created_at", ASCENDING)

        runs = []
        for doc in cursor:
            doc.pop("_id", None)
            runs.append(ScenarioRun.model_validate(doc))
        return runs

    # =========================================================================
    # Step Run Operations
    # =========================================================================

    def create_step_runs(self, step_runs: List[ScenarioStepRun]) -> List[ScenarioStepRun]:
        """Create the step runs of a run"""
        if not step_runs:
            return []

        docs = []
        for step_run in step_runs:
            doc = step_run.model_dump()
            doc["_id"] = step_run.step_run_id
            docs.append(doc)

        self._step_runs.insert_many(docs)
        logger.info(f"Created {len(step_runs)} step runs", extra={"run_id": step_runs[0].run_id})
        return step_runs

    def get_step_run(self, step_run_id: str) -> Optional[ScenarioStepRun]:
        """Get step run by ID"""
        doc = self._step_runs.find_one({"step_run_id": step_run_id})
        if doc:
            doc.pop("_id", None)
            return ScenarioStepRun.model_validate(doc)
        return None

    def get_step_run_or_raise(self, step_run_id: str) -> ScenarioStepRun:
        """Get step run or raise StepRunNotFoundError"""
        step_run = self.get_step_run(step_run_id)
        if not step_run:
            raise StepRunNotFoundError(f"Step run {step_run_id} not found")
        return step_run

    def get_step_runs_for_run(self, run_id: str) -> List[ScenarioStepRun]:
        """All step runs of a run, in playbook order"""
        cursor = self._step_runs.find({"run_id": run_id}).sort("step_index", ASCENDING)

        step_runs = []
        for doc in cursor:
            doc.pop("_id", None)
            step_runs.append(ScenarioStepRun.model_validate(doc))
        return step_runs

    def update_step_run(
        self,
        step_run_id: str,
        updates: Dict[str, Any],
        expected_status: StepStatus
    ) -> ScenarioStepRun:
        """Compare-and-set a step run on its current status"""
        updates = dict(updates)
        updates["updated_at"] = utc_now()

        result = self._step_runs.find_one_and_update(
            {"step_run_id": step_run_id, "status": expected_status.value},
            {"$set": updates},
            return_document=True
        )

        if result is None:
            exists = self._step_runs.find_one({"step_run_id": step_run_id}, {"status": 1})
            if exists:
                raise ConcurrencyConflictError(
                    f"Step run {step_run_id} is no longer {expected_status.value}",
                    details={"expected_status": expected_status.value, "actual_status": exists.get("status")}
                )
            raise StepRunNotFoundError(f"Step run {step_run_id} not found")

        result.pop("_id", None)
        return ScenarioStepRun.model_validate(result)

    def find_expired_waits(self, now: datetime) -> List[ScenarioStepRun]:
        """Approval/signal waits whose deadline has passed"""
        return self._find_step_runs({
            "status": {"$in": WAITING_STATUSES},
            "wait_deadline_at": {"$ne": None, "$lte": now}
        })

    def find_expired_dispatches(self, now: datetime) -> List[ScenarioStepRun]:
        """Executing steps whose dispatch deadline has passed"""
        return self._find_step_runs({
            "status": StepStatus.EXECUTING.value,
            "dispatch_deadline_at": {"$ne": None, "$lte": now}
        })

    def find_stalled_dispatches(self, dispatched_before: datetime) -> List[ScenarioStepRun]:
        """Executing steps dispatched before the given time"""
        return self._find_step_runs({
            "status": StepStatus.EXECUTING.value,
            "dispatched_at": {"$ne": None, "$lte": dispatched_before}
        })

    def _find_step_runs(self, query: Dict[str, Any]) -> List[ScenarioStepRun]:
        step_runs = []
        for doc in self._step_runs.find(query):
            doc.pop("_id", None)
            step_runs.append(ScenarioStepRun.model_validate(doc))
        return step_runs
