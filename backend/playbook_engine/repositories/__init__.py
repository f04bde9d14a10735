"""Repository modules - Data access layer"""
from typing import Any, Optional

from ..config.settings import settings
from .mongo_client import get_database, get_collection, create_indexes, close_connection
from .playbook_repo import PlaybookRepository
from .run_repo import RunRepository
from .signal_repo import SignalWatchRepository
from .dispatch_repo import DispatchRepository
from .audit_repo import AuditRepository
from .notification_repo import NotificationRepository
from .inmemory import (
    InMemoryPlaybookRepository,
    InMemoryRunRepository,
    InMemorySignalWatchRepository,
    InMemoryDispatchRepository,
    InMemoryAuditRepository,
    InMemoryNotificationRepository,
)


class Repositories:
    """Bundle of the repositories one engine instance works against"""

    def __init__(
        self,
        playbooks: Any,
        runs: Any,
        signals: Any,
        dispatches: Any,
        audit: Any,
        notifications: Any,
        backend: str
    ):
        self.playbooks = playbooks
        self.runs = runs
        self.signals = signals
        self.dispatches = dispatches
        self.audit = audit
        self.notifications = notifications
        self.backend = backend

    @classmethod
    def in_memory(cls) -> "Repositories":
        return cls(
            playbooks=InMemoryPlaybookRepository(),
            runs=InMemoryRunRepository(),
            signals=InMemorySignalWatchRepository(),
            dispatches=InMemoryDispatchRepository(),
            audit=InMemoryAuditRepository(),
            notifications=InMemoryNotificationRepository(),
            backend="memory",
        )

    @classmethod
    def mongo(cls, database: Optional[Any] = None) -> "Repositories":
        return cls(
            playbooks=PlaybookRepository(database),
            runs=RunRepository(database),
            signals=SignalWatchRepository(database),
            dispatches=DispatchRepository(database),
            audit=AuditRepository(database),
            notifications=NotificationRepository(database),
            backend="mongo",
        )


_repositories: Optional[Repositories] = None


def get_repositories(backend: Optional[str] = None) -> Repositories:
    """
    Factory for the configured repository bundle

    The backend comes from ``backend`` or ``settings.persistence_backend``
    ("mongo" or "memory"). The default bundle is created once per process.
    """
    global _repositories
    if _repositories is not None and backend is None:
        return _repositories

    backend = (backend or settings.persistence_backend).lower()
    if backend == "memory":
        repositories = Repositories.in_memory()
    elif backend == "mongo":
        repositories = Repositories.mongo()
    else:
        raise ValueError(f"Unsupported persistence backend: {backend}")

    _repositories = repositories
    return repositories


def reset_repositories() -> None:
    """Forget the cached bundle (tests)"""
    global _repositories
    _repositories = None


__all__ = [
    "get_database",
    "get_collection",
    "create_indexes",
    "close_connection",
    "Repositories",
    "get_repositories",
    "reset_repositories",
    "PlaybookRepository",
    "RunRepository",
    "SignalWatchRepository",
    "DispatchRepository",
    "AuditRepository",
    "NotificationRepository",
]
