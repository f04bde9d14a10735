"""Structured JSON Logging with Correlation ID Support

Every record carries the correlation id of the request or sweep that
produced it. Orchestration fields passed through ``extra=`` (run_id,
step_id, idempotency_key, ...) are lifted into the JSON payload so runs
can be traced across the API, worker threads and the scheduler.
"""
import json
import logging
import os
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from typing import Any, Dict, Optional

from ..config.settings import settings


correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Record attributes promoted into the JSON payload
EXTRA_FIELDS = (
    "run_id", "step_id", "step_run_id", "scenario_id", "playbook_id",
    "action_type", "signal_type", "status", "actor_id", "idempotency_key",
)

QUIET_LOGGERS = {
    "uvicorn": logging.INFO,
    "uvicorn.access": logging.WARNING,
    "pymongo": logging.WARNING,
    "apscheduler": logging.WARNING,
}


class JsonFormatter(logging.Formatter):
    """One JSON object per line"""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "message": record.getMessage(),
        }

        correlation_id = getattr(record, "correlation_id", None) or correlation_id_var.get()
        if correlation_id:
            payload["correlation_id"] = correlation_id

        payload.update({
            field: getattr(record, field)
            for field in EXTRA_FIELDS
            if getattr(record, field, None) is not None
        })

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=str)


def _rotating_handler(filename: str, level: int = logging.NOTSET) -> RotatingFileHandler:
    handler = RotatingFileHandler(
        os.path.join(settings.logs_path, filename),
        maxBytes=settings.log_file_max_mb * 1024 * 1024,
        backupCount=settings.log_file_backups,
        encoding="utf-8"
    )
    handler.setLevel(level)
    return handler


def setup_logging() -> None:
    """Install console and rotating file handlers on the root logger"""
    handlers: list = [logging.StreamHandler(sys.stdout)]
    if settings.log_to_files:
        os.makedirs(settings.logs_path, exist_ok=True)
        handlers.append(_rotating_handler("engine.log"))
        handlers.append(_rotating_handler("error.log", logging.ERROR))

    formatter = JsonFormatter()
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))
    root_logger.handlers.clear()
    for handler in handlers:
        handler.setFormatter(formatter)
        root_logger.addHandler(handler)

    for name, level in QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(level)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def set_correlation_id(correlation_id: Optional[str]) -> None:
    """Bind a correlation id to the current context (request, job or worker)"""
    correlation_id_var.set(correlation_id)


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()
