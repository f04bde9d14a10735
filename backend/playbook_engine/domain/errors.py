"""Domain Errors - Centralized Exception Hierarchy"""
from typing import Any, Dict, List, Optional


class DomainError(Exception):
    """Base domain error - all errors extend this"""

    error_code: str = "DOMAIN_ERROR"
    http_status: int = 400

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        if error_code:
            self.error_code = error_code

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to API response dict"""
        return {
            "error": {
                "code": self.error_code,
                "message": self.message,
                "details": self.details
            }
        }


# Authorization Errors
class AuthorizationError(DomainError):
    """Actor lacks permission for action"""
    error_code = "AUTHORIZATION_ERROR"
    http_status = 403


class ApprovalRoleError(AuthorizationError):
    """Decision submitted by an actor outside the step's approval roles"""
    error_code = "APPROVAL_ROLE_MISMATCH"


# Validation Errors (fatal, pre-run, never retried)
class ValidationError(DomainError):
    """Input validation failed"""
    error_code = "VALIDATION_ERROR"
    http_status = 400


class GraphInvalidError(ValidationError):
    """Playbook step graph is malformed (duplicate ids, unknown references, self-dependency)"""
    error_code = "GRAPH_INVALID"

    def __init__(self, message: str, errors: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message, details={"errors": errors or []})
        self.errors = errors or []


class GraphCyclicError(ValidationError):
    """Playbook step graph contains a dependency cycle"""
    error_code = "GRAPH_CYCLIC"

    def __init__(self, cycle: List[str]):
        super().__init__(
            f"Dependency cycle detected: {' -> '.join(cycle)}",
            details={"cycle": cycle}
        )
        self.cycle = cycle


class UnsupportedActionError(ValidationError):
    """No handler registered for a step's action type"""
    error_code = "UNSUPPORTED_ACTION"


# Not Found Errors
class NotFoundError(DomainError):
    """Resource not found"""
    error_code = "NOT_FOUND"
    http_status = 404


class PlaybookNotFoundError(NotFoundError):
    """Playbook not found"""
    error_code = "PLAYBOOK_NOT_FOUND"


class ScenarioNotFoundError(NotFoundError):
    """Scenario not found"""
    error_code = "SCENARIO_NOT_FOUND"


class RunNotFoundError(NotFoundError):
    """Scenario run not found"""
    error_code = "RUN_NOT_FOUND"


class StepRunNotFoundError(NotFoundError):
    """Step run not found"""
    error_code = "STEP_RUN_NOT_FOUND"


# Conflict Errors
class ConflictError(DomainError):
    """Resource conflict (e.g., concurrent modification)"""
    error_code = "CONFLICT"
    http_status = 409


class ConcurrencyConflictError(ConflictError):
    """Optimistic concurrency conflict on a run's version"""
    error_code = "CONCURRENCY_CONFLICT"


class InvalidStateError(ConflictError):
    """Action not valid for current state"""
    error_code = "INVALID_STATE"


class InvalidTransitionError(InvalidStateError):
    """Illegal step status transition"""
    error_code = "INVALID_TRANSITION"


# Availability
class RunUnavailableError(DomainError):
    """Run could not be updated after exhausting concurrency retries"""
    error_code = "RUN_UNAVAILABLE"
    http_status = 503


# Step-level errors: recorded on the step run and in the audit log
class StepError(DomainError):
    """Recoverable step failure"""
    error_code = "STEP_ERROR"
    http_status = 422


class ActionExecutionError(StepError):
    """Action handler reported a failure"""
    error_code = "ACTION_EXECUTION_FAILED"


class ApprovalTimeoutError(StepError):
    """No approval decision before the step's timeout"""
    error_code = "APPROVAL_TIMEOUT"


class SignalTimeoutError(StepError):
    """No matching signal before the step's timeout"""
    error_code = "SIGNAL_TIMEOUT"


class CancellationError(StepError):
    """Step ended because its run was cancelled (terminal, not a failure)"""
    error_code = "CANCELLED"
