"""ID Generation Utilities"""
import uuid
from datetime import datetime
from typing import Optional


def generate_id(prefix: Optional[str] = None) -> str:
    """
    Generate a unique ID with optional prefix

    Args:
        prefix: Optional prefix for the ID (e.g., 'RUN', 'SRUN', 'AUD')

    Returns:
        Unique ID string

    Examples:
        >>> generate_id('RUN')
        'RUN-a1b2c3d4e5f6'
        >>> generate_id()
        'a1b2c3d4e5f6'
    """
    unique_part = uuid.uuid4().hex[:12]

    if prefix:
        return f"{prefix}-{unique_part}"
    return unique_part


def generate_playbook_id() -> str:
    """Generate playbook ID"""
    return generate_id("PB")


def generate_scenario_id() -> str:
    """Generate scenario ID"""
    return generate_id("SCN")


def generate_run_id() -> str:
    """Generate scenario run ID"""
    return generate_id("RUN")


def generate_step_run_id() -> str:
    """Generate step run ID"""
    return generate_id("SRUN")


def generate_audit_entry_id() -> str:
    """Generate audit entry ID"""
    return generate_id("AUD")


def generate_notification_id() -> str:
    """Generate notification ID"""
    return generate_id("NTF")


def generate_signal_event_id() -> str:
    """Generate signal event ID"""
    return generate_id("SIG")


def build_idempotency_key(run_id: str, step_id: str) -> str:
    """Stable dispatch key for one step of one run"""
    return f"{run_id}:{step_id}"


def generate_correlation_id() -> str:
    """
    Generate a correlation ID for request tracing

    Returns:
        Correlation ID string with timestamp prefix
    """
    timestamp = datetime.utcnow().strftime("%Y%m%d%H%M%S")
    unique_part = uuid.uuid4().hex[:8]
    return f"COR-{timestamp}-{unique_part}"
