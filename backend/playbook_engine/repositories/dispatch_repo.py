"""Dispatch Repository - Action Gateway ledger keyed by idempotency key"""
from typing import Any, Dict, Optional, Tuple
from datetime import datetime
from pymongo.collection import Collection
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from .mongo_client import get_collection
from ..domain.models import DispatchRecord
from ..domain.enums import DispatchState
from ..domain.errors import NotFoundError
from ..utils.logger import get_logger

logger = get_logger(__name__)


class DispatchRepository:
    """Repository for action dispatch ledger entries"""

    def __init__(self, database: Optional[Database] = None):
        self._dispatches: Collection = get_collection("action_dispatches", database)

    def claim(self, record: DispatchRecord) -> Tuple[DispatchRecord, bool]:
        """
        Insert the ledger entry unless the key already exists

        Returns:
            (stored record, created) - created is False for a redelivery
        """
        doc = record.model_dump()
        doc["_id"] = record.idempotency_key
        try:
            self._dispatches.insert_one(doc)
            return record, True
        except DuplicateKeyError:
            existing = self.get(record.idempotency_key)
            if existing is None:
                raise
            return existing, False

    def get(self, idempotency_key: str) -> Optional[DispatchRecord]:
        doc = self._dispatches.find_one({"idempotency_key": idempotency_key})
        if doc:
            doc.pop("_id", None)
            return DispatchRecord.model_validate(doc)
        return None

    def record_attempt(self, idempotency_key: str, now: datetime) -> DispatchRecord:
        """Count one more handler invocation for the key"""
        result = self._dispatches.find_one_and_update(
            {"idempotency_key": idempotency_key},
            {"$inc": {"attempts": 1}, "$set": {"last_dispatched_at": now}},
            return_document=True
        )
        return self._validate(idempotency_key, result)

    def complete(
        self,
        idempotency_key: str,
        state: DispatchState,
        result: Optional[Dict[str, Any]],
        error: Optional[str],
        now: datetime
    ) -> DispatchRecord:
        """Record the final outcome for the key"""
        doc = self._dispatches.find_one_and_update(
            {"idempotency_key": idempotency_key},
            {"$set": {
                "state": state.value,
                "result": result,
                "error": error,
                "completed_at": now
            }},
            return_document=True
        )
        logger.info(
            f"Dispatch {state.value}",
            extra={"idempotency_key": idempotency_key, "status": state.value}
        )
        return self._validate(idempotency_key, doc)

    def _validate(self, idempotency_key: str, doc: Optional[Dict[str, Any]]) -> DispatchRecord:
        if doc is None:
            raise NotFoundError(f"Dispatch {idempotency_key} not found")
        doc.pop("_id", None)
        return DispatchRecord.model_validate(doc)
