"""MongoDB Client - Connection and Collection Management"""
from typing import Any, Dict, Optional
from pymongo import MongoClient as PyMongoClient
from pymongo.database import Database
from pymongo.collection import Collection
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import ConnectionFailure

from ..config.settings import settings
from ..utils.logger import get_logger

logger = get_logger(__name__)

# Global client instance
_client: Optional[PyMongoClient] = None
_database: Optional[Database] = None


def get_client() -> PyMongoClient:
    """Get or create MongoDB client"""
    global _client
    if _client is None:
        logger.info(f"Connecting to MongoDB: {settings.mongo_uri}")
        _client = PyMongoClient(
            settings.mongo_uri,
            serverSelectionTimeoutMS=5000,
            connectTimeoutMS=5000,
            socketTimeoutMS=30000,
            tz_aware=True,
        )
        # Test connection
        try:
            _client.admin.command("ping")
            logger.info("MongoDB connection successful")
        except ConnectionFailure as e:
            logger.error(f"MongoDB connection failed: {e}")
            raise
    return _client


def get_database() -> Database:
    """Get the application database"""
    global _database
    if _database is None:
        client = get_client()
        _database = client[settings.mongo_db]
        logger.info(f"Using database: {settings.mongo_db}")
    return _database


def get_collection(name: str, database: Optional[Database] = None) -> Collection:
    """Get a collection from the given database (default: application database)"""
    db = database if database is not None else get_database()
    return db[name]


def close_connection() -> None:
    """Close MongoDB connection"""
    global _client, _database
    if _client is not None:
        _client.close()
        _client = None
        _database = None
        logger.info("MongoDB connection closed")


def create_indexes(database: Optional[Database] = None) -> None:
    """Create all required indexes"""
    db = database if database is not None else get_database()
    logger.info("Creating MongoDB indexes...")

    # Playbooks & scenarios (read-only snapshots for the engine)
    playbooks = db["playbooks"]
    playbooks.create_index("playbook_id", unique=True)
    playbooks.create_index("created_at", background=True)

    scenarios = db["scenarios"]
    scenarios.create_index("scenario_id", unique=True)
    scenarios.create_index("scenario_type")

    # Runs collection
    runs = db["scenario_runs"]
    runs.create_index("run_id", unique=True)
    runs.create_index([("status", ASCENDING), ("scheduled_at", ASCENDING)])
    runs.create_index([("status", ASCENDING), ("deadline_at", ASCENDING)])
    runs.create_index([("scenario_id", ASCENDING), ("created_at", DESCENDING)])
    runs.create_index("playbook_id")
    runs.create_index("created_at", background=True)

    # Step runs collection
    step_runs = db["scenario_step_runs"]
    step_runs.create_index("step_run_id", unique=True)
    step_runs.create_index([("run_id", ASCENDING), ("step_index", ASCENDING)])
    step_runs.create_index([("run_id", ASCENDING), ("step_id", ASCENDING)], unique=True)
    step_runs.create_index([("status", ASCENDING), ("wait_deadline_at", ASCENDING)])
    step_runs.create_index([("status", ASCENDING), ("dispatch_deadline_at", ASCENDING)])
    step_runs.create_index([("status", ASCENDING), ("dispatched_at", ASCENDING)])

    # Signal watch registry
    signal_watches = db["signal_watches"]
    signal_watches.create_index([("run_id", ASCENDING), ("step_id", ASCENDING)], unique=True)
    signal_watches.create_index("signal_type")

    # Action Gateway ledger
    action_dispatches = db["action_dispatches"]
    action_dispatches.create_index("idempotency_key", unique=True)
    action_dispatches.create_index([("state", ASCENDING), ("last_dispatched_at", ASCENDING)])
    action_dispatches.create_index("run_id")

    # Notification outbox collection
    notification_outbox = db["notification_outbox"]
    notification_outbox.create_index("notification_id", unique=True)
    notification_outbox.create_index([("status", ASCENDING), ("created_at", ASCENDING)])
    notification_outbox.create_index("run_id")

    # Audit log collection
    audit_log = db["scenario_audit_log"]
    audit_log.create_index("audit_entry_id", unique=True)
    audit_log.create_index([("run_id", ASCENDING), ("created_at", DESCENDING)])
    audit_log.create_index("event_type")
    audit_log.create_index("correlation_id")

    logger.info("MongoDB indexes created successfully")


def health_check() -> Dict[str, Any]:
    """Check MongoDB health"""
    try:
        client = get_client()
        client.admin.command("ping")
        return {
            "status": "healthy",
            "database": settings.mongo_db,
            "connection": "ok"
        }
    except Exception as e:
        logger.error(f"MongoDB health check failed: {e}")
        return {
            "status": "unhealthy",
            "database": settings.mongo_db,
            "error": str(e)
        }
