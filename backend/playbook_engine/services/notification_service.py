"""Notification Service - Outbox for notification-worthy engine events

The engine only records that something is worth telling people about.
Delivery (email, chat, in-app) is done by an external worker reading the
outbox.
"""
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from ..domain.models import NotificationOutbox, ScenarioRun, ScenarioStepRun
from ..domain.enums import NotificationStatus, NotificationTemplateKey
from ..utils.idgen import generate_notification_id
from ..utils.time import utc_now
from ..utils.logger import get_logger

logger = get_logger(__name__)


class NotificationService:
    """Enqueue notifications into the outbox"""

    def __init__(self, repo: Any, clock: Callable[[], datetime] = utc_now):
        self.repo = repo
        self.clock = clock

    # =========================================================================
    # Outbox Creation
    # =========================================================================

    def enqueue_notification(
        self,
        template_key: NotificationTemplateKey,
        run_id: str,
        payload: Dict[str, Any],
        recipient_roles: Optional[List[str]] = None,
        step_run_id: Optional[str] = None
    ) -> NotificationOutbox:
        """
        Enqueue a notification for sending

        Notifications are stored in outbox and sent asynchronously.
        """
        notification = NotificationOutbox(
            notification_id=generate_notification_id(),
            template_key=template_key,
            run_id=run_id,
            step_run_id=step_run_id,
            recipient_roles=recipient_roles or [],
            payload=payload,
            status=NotificationStatus.PENDING,
            created_at=self.clock()
        )
        logger.debug(
            f"Notification queued: {template_key.value}",
            extra={"run_id": run_id, "step_run_id": step_run_id}
        )
        return self.repo.create_notification(notification)

    def enqueue_approval_needed(
        self,
        run: ScenarioRun,
        step_run: ScenarioStepRun,
        approval_roles: List[str],
        step_name: str
    ) -> NotificationOutbox:
        """Enqueue approval needed notification"""
        return self.enqueue_notification(
            template_key=NotificationTemplateKey.APPROVAL_NEEDED,
            run_id=run.run_id,
            step_run_id=step_run.step_run_id,
            recipient_roles=approval_roles,
            payload={
                "run_id": run.run_id,
                "scenario_id": run.scenario_id,
                "step_id": step_run.step_id,
                "step_name": step_name,
                "wait_deadline_at": step_run.wait_deadline_at
            }
        )

    def enqueue_run_failed(self, run: ScenarioRun, reason: Optional[str]) -> NotificationOutbox:
        """Enqueue run failed notification"""
        return self.enqueue_notification(
            template_key=NotificationTemplateKey.RUN_FAILED,
            run_id=run.run_id,
            payload={
                "run_id": run.run_id,
                "scenario_id": run.scenario_id,
                "playbook_id": run.playbook_id,
                "reason": reason
            }
        )

    def enqueue_run_completed(self, run: ScenarioRun) -> NotificationOutbox:
        """Enqueue run completed notification"""
        summary = run.result_summary.model_dump() if run.result_summary else {}
        return self.enqueue_notification(
            template_key=NotificationTemplateKey.RUN_COMPLETED,
            run_id=run.run_id,
            payload={
                "run_id": run.run_id,
                "scenario_id": run.scenario_id,
                "playbook_id": run.playbook_id,
                "result_summary": summary
            }
        )
