"""Audit Repository - Data access for the run audit log"""
from typing import Any, Dict, List, Optional
from datetime import datetime
from pymongo.collection import Collection
from pymongo.database import Database
from pymongo import DESCENDING

from .mongo_client import get_collection
from ..domain.models import AuditEntry
from ..domain.enums import AuditEventType, ActorType
from ..utils.logger import get_logger

logger = get_logger(__name__)


class AuditRepository:
    """Repository for audit entries (append-only)"""

    def __init__(self, database: Optional[Database] = None):
        self._audit_log: Collection = get_collection("scenario_audit_log", database)

    def create_entry(self, entry: AuditEntry) -> AuditEntry:
        """Append an audit entry"""
        doc = entry.model_dump()
        doc["_id"] = entry.audit_entry_id

        self._audit_log.insert_one(doc)
        logger.info(
            f"Audit: {entry.event_type.value}",
            extra={
                "run_id": entry.run_id,
                "step_run_id": entry.step_run_id,
                "actor_id": entry.actor_id
            }
        )
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
        """Audit entries for a run, newest first"""
        query: Dict[str, Any] = {"run_id": run_id}

        if event_types:
            query["event_type"] = {"$in": [et.value for et in event_types]}
        if step_id:
            query["step_id"] = step_id
        if actor_type:
            query["actor_type"] = actor_type.value
        if actor_id:
            query["actor_id"] = actor_id
        if since or until:
            created: Dict[str, Any] = {}
            if since:
                created["$gte"] = since
            if until:
                created["$lte"] = until
            query["created_at"] = created

        cursor = self._audit_log.find(query).sort("created_at", DESCENDING).skip(skip).limit(limit)

        entries = []
        for doc in cursor:
            doc.pop("_id", None)
            entries.append(AuditEntry.model_validate(doc))
        return entries
