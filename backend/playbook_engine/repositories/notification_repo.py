"""Notification Repository - Data access for notification outbox

The engine only enqueues; delivery is performed by an external worker that
reads PENDING entries and marks them SENT or FAILED.
"""
from typing import List, Optional
from pymongo.collection import Collection
from pymongo.database import Database
from pymongo import ASCENDING

from .mongo_client import get_collection
from ..domain.models import NotificationOutbox
from ..utils.logger import get_logger

logger = get_logger(__name__)


class NotificationRepository:
    """Repository for notification outbox operations"""

    def __init__(self, database: Optional[Database] = None):
        self._outbox: Collection = get_collection("notification_outbox", database)

    def create_notification(self, notification: NotificationOutbox) -> NotificationOutbox:
        """Create a notification in outbox"""
        doc = notification.model_dump()
        doc["_id"] = notification.notification_id

        self._outbox.insert_one(doc)
        logger.info(
            f"Created notification: {notification.template_key.value}",
            extra={
                "run_id": notification.run_id,
                "step_run_id": notification.step_run_id
            }
        )
        return notification

    def get_notifications_for_run(self, run_id: str) -> List[NotificationOutbox]:
        """All notifications for a run"""
        cursor = self._outbox.find({"run_id": run_id}).sort("created_at", ASCENDING)

        notifications = []
        for doc in cursor:
            doc.pop("_id", None)
            notifications.append(NotificationOutbox.model_validate(doc))
        return notifications
