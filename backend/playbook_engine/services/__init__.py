"""Service modules - Business logic layer

The run service is imported from ``services.scenario_run_service`` directly;
it depends on the engine, which itself uses the notification service.
"""
from .notification_service import NotificationService

__all__ = [
    "NotificationService",
]
