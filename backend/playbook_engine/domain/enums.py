"""Domain Enumerations - All status and type definitions"""
from enum import Enum


class ActionType(str, Enum):
    """Action types a playbook step can dispatch"""
    OUTREACH = "outreach"
    CRISIS_RESPONSE = "crisis_response"
    GOVERNANCE = "governance"
    REPORT_GENERATION = "report_generation"
    MEDIA_ALERT = "media_alert"
    REPUTATION_ACTION = "reputation_action"
    COMPETITIVE_ANALYSIS = "competitive_analysis"
    STAKEHOLDER_NOTIFY = "stakeholder_notify"
    CONTENT_PUBLISH = "content_publish"
    ESCALATION = "escalation"
    APPROVAL_GATE = "approval_gate"
    WAIT = "wait"
    CONDITIONAL = "conditional"
    CUSTOM = "custom"


# Action types completed by the engine itself (no external side effect)
ENGINE_NATIVE_ACTIONS = frozenset({
    ActionType.APPROVAL_GATE.value,
    ActionType.WAIT.value,
    ActionType.CONDITIONAL.value,
})


class RunStatus(str, Enum):
    """Status of a scenario run"""
    PENDING = "pending"
    INITIALIZING = "initializing"
    RUNNING = "running"
    PAUSED = "paused"
    AWAITING_APPROVAL = "awaiting_approval"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_RUN_STATUSES = frozenset({
    RunStatus.COMPLETED,
    RunStatus.FAILED,
    RunStatus.CANCELLED,
})

# Started runs that can make progress without outside input
RECONCILABLE_RUN_STATUSES = frozenset({
    RunStatus.INITIALIZING,
    RunStatus.RUNNING,
    RunStatus.AWAITING_APPROVAL,
})


class StepStatus(str, Enum):
    """Status of a single step within a run"""
    PENDING = "pending"
    READY = "ready"
    AWAITING_APPROVAL = "awaiting_approval"  # durable suspension
    APPROVED = "approved"
    AWAITING_SIGNAL = "awaiting_signal"  # durable suspension
    EXECUTING = "executing"
    EXECUTED = "executed"
    SKIPPED = "skipped"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STEP_STATUSES = frozenset({
    StepStatus.EXECUTED,
    StepStatus.SKIPPED,
    StepStatus.FAILED,
    StepStatus.CANCELLED,
})

# Predecessor statuses that satisfy readiness
SATISFIED_STEP_STATUSES = frozenset({
    StepStatus.EXECUTED,
    StepStatus.SKIPPED,
})

# Not yet handed to the Action Gateway
UNDISPATCHED_STEP_STATUSES = frozenset({
    StepStatus.PENDING,
    StepStatus.READY,
    StepStatus.AWAITING_APPROVAL,
    StepStatus.APPROVED,
    StepStatus.AWAITING_SIGNAL,
})


class ApprovalOutcome(str, Enum):
    """Human decision on an approval gate"""
    APPROVED = "approved"
    REJECTED = "rejected"


class TimeoutFallback(str, Enum):
    """What a suspended step becomes when its wait times out"""
    FAIL = "fail"
    SKIP = "skip"


class ConditionOperator(str, Enum):
    """Operators for condition evaluation"""
    EQ = "eq"
    NE = "ne"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    CONTAINS = "contains"
    MATCHES = "matches"
    IN = "in"
    NOT_IN = "not_in"


class ConditionLogic(str, Enum):
    """How a condition group combines its members"""
    AND = "and"
    OR = "or"


class TimeUnit(str, Enum):
    """Units for time-window predicates"""
    MINUTES = "minutes"
    HOURS = "hours"
    DAYS = "days"


class RiskLevel(str, Enum):
    """Risk level for scenarios"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ActorType(str, Enum):
    """Who caused an audited change"""
    USER = "user"
    SYSTEM = "system"


class AuditEventType(str, Enum):
    """Types of audit entries"""
    RUN_STARTED = "run_started"
    RUN_SCHEDULED = "run_scheduled"
    RUN_STATUS_CHANGED = "run_status_changed"
    RUN_PAUSED = "run_paused"
    RUN_RESUMED = "run_resumed"
    RUN_COMPLETED = "run_completed"
    RUN_FAILED = "run_failed"
    RUN_CANCEL_REQUESTED = "run_cancel_requested"
    RUN_CANCELLED = "run_cancelled"
    RUN_TIME_CEILING_EXCEEDED = "run_time_ceiling_exceeded"
    STEP_READY = "step_ready"
    STEP_AWAITING_APPROVAL = "step_awaiting_approval"
    STEP_APPROVED = "step_approved"
    STEP_REJECTED = "step_rejected"
    STEP_AWAITING_SIGNAL = "step_awaiting_signal"
    SIGNAL_MATCHED = "signal_matched"
    STEP_DISPATCHED = "step_dispatched"
    STEP_EXECUTED = "step_executed"
    STEP_SKIPPED = "step_skipped"
    STEP_FAILED = "step_failed"
    STEP_TIMED_OUT = "step_timed_out"
    STEP_CANCELLED = "step_cancelled"
    CANCELLATION_DURING_EXECUTION = "cancellation_during_execution"
    LATE_RESULT_DISCARDED = "late_result_discarded"
    DISPATCH_DEDUPLICATED = "dispatch_deduplicated"
    DISPATCH_RECOVERED = "dispatch_recovered"


class NotificationStatus(str, Enum):
    """Notification outbox status"""
    PENDING = "PENDING"
    SENT = "SENT"
    FAILED = "FAILED"


class NotificationTemplateKey(str, Enum):
    """Notification-worthy engine events"""
    APPROVAL_NEEDED = "APPROVAL_NEEDED"
    RUN_FAILED = "RUN_FAILED"
    RUN_COMPLETED = "RUN_COMPLETED"


class DispatchState(str, Enum):
    """Action Gateway ledger state for one idempotency key"""
    IN_FLIGHT = "in_flight"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
