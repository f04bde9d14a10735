"""Signal Watch Repository - Durable registry of steps waiting on signals"""
from typing import List, Optional
from pymongo.collection import Collection
from pymongo.database import Database

from .mongo_client import get_collection
from ..domain.models import SignalWatch
from ..utils.logger import get_logger

logger = get_logger(__name__)


class SignalWatchRepository:
    """
    Watch registry keyed by (signal_type, run_id, step_id)

    A step has at most one watch; deleting it is the claim that lets exactly
    one resumer proceed when several events race for the same waiter.
    """

    def __init__(self, database: Optional[Database] = None):
        self._watches: Collection = get_collection("signal_watches", database)

    def upsert_watch(self, watch: SignalWatch) -> SignalWatch:
        """Register (or replace) the watch for a step"""
        doc = watch.model_dump()
        doc["_id"] = f"{watch.run_id}:{watch.step_id}"

        self._watches.replace_one({"_id": doc["_id"]}, doc, upsert=True)
        logger.info(
            f"Registered signal watch: {watch.signal_type}",
            extra={"run_id": watch.run_id, "step_id": watch.step_id, "signal_type": watch.signal_type}
        )
        return watch

    def get_watch(self, run_id: str, step_id: str) -> Optional[SignalWatch]:
        doc = self._watches.find_one({"run_id": run_id, "step_id": step_id})
        if doc:
            doc.pop("_id", None)
            return SignalWatch.model_validate(doc)
        return None

    def find_watches(self, signal_type: str) -> List[SignalWatch]:
        """All watches registered for a signal type, across runs"""
        watches = []
        for doc in self._watches.find({"signal_type": signal_type}).sort("registered_at", 1):
            doc.pop("_id", None)
            watches.append(SignalWatch.model_validate(doc))
        return watches

    def delete_watch(self, run_id: str, step_id: str) -> bool:
        """Remove a watch; True only for the caller that actually removed it"""
        result = self._watches.delete_one({"run_id": run_id, "step_id": step_id})
        return result.deleted_count == 1

    def delete_watches_for_run(self, run_id: str) -> int:
        result = self._watches.delete_many({"run_id": run_id})
        return result.deleted_count
