"""Domain Models - Pydantic schemas for all entities"""
from datetime import datetime
from typing import Any, Dict, List, Optional, Union
from pydantic import BaseModel, Field, ConfigDict, model_validator

from .enums import (
    RunStatus, StepStatus, ApprovalOutcome, TimeoutFallback, ConditionOperator,
    ConditionLogic, TimeUnit, RiskLevel, ActorType, AuditEventType,
    NotificationStatus, NotificationTemplateKey, DispatchState
)


# ============================================================================
# Actor
# ============================================================================

class ActorContext(BaseModel):
    """Who is acting on the engine (supplied by the surrounding platform)"""
    model_config = ConfigDict(extra="forbid")

    actor_id: str = Field(..., description="User or service identifier")
    roles: List[str] = Field(default_factory=list, description="Roles held by the actor")
    actor_type: ActorType = Field(default=ActorType.USER)


SYSTEM_ACTOR = ActorContext(actor_id="system", roles=[], actor_type=ActorType.SYSTEM)


# ============================================================================
# Condition Expressions
# ============================================================================

class TimeWindow(BaseModel):
    """Recency predicate: the field holds a timestamp no older than duration"""
    model_config = ConfigDict(extra="forbid")

    duration: int = Field(..., ge=1)
    unit: TimeUnit


class Condition(BaseModel):
    """Leaf condition: field / operator / value, optionally time-windowed"""
    model_config = ConfigDict(extra="forbid")

    field: str = Field(..., min_length=1, description="Dot path into the run context")
    operator: Optional[ConditionOperator] = Field(None, description="Comparison operator")
    value: Any = Field(None, description="Value to compare against")
    time_window: Optional[TimeWindow] = None

    @model_validator(mode="after")
    def check_operator_or_window(self) -> "Condition":
        if self.operator is None and self.time_window is None:
            raise ValueError("condition needs an operator or a time_window")
        return self


class ConditionGroup(BaseModel):
    """Composite condition combining children with AND/OR"""
    model_config = ConfigDict(extra="forbid")

    logic: ConditionLogic = Field(default=ConditionLogic.AND)
    conditions: List["ConditionNode"] = Field(default_factory=list)


ConditionNode = Union[ConditionGroup, Condition]

ConditionGroup.model_rebuild()


class SignalConditions(BaseModel):
    """What a signal-waiting step listens for"""
    model_config = ConfigDict(extra="forbid")

    signal_type: Optional[str] = Field(None, description="Signal type to watch; None for a pure timer")
    payload_filter: Optional[ConditionNode] = Field(None, description="Filter applied to the event payload")


# ============================================================================
# Playbook & Scenario (read-only snapshots supplied by the store)
# ============================================================================

class PlaybookStep(BaseModel):
    """One unit of work in a playbook"""
    model_config = ConfigDict(extra="ignore")

    step_id: str = Field(..., min_length=1)
    name: Optional[str] = None
    description: Optional[str] = None
    action_type: str = Field(..., min_length=1)
    action_payload: Dict[str, Any] = Field(default_factory=dict)
    requires_approval: bool = False
    approval_roles: List[str] = Field(default_factory=list)
    wait_for_signals: bool = False
    signal_conditions: Optional[SignalConditions] = None
    wait_duration_minutes: Optional[float] = Field(None, gt=0)
    timeout_minutes: Optional[float] = Field(None, gt=0)
    timeout_fallback: TimeoutFallback = Field(default=TimeoutFallback.FAIL)
    condition_expression: Optional[ConditionNode] = None
    skip_on_failure: bool = False
    depends_on_steps: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def display_name(self) -> str:
        return self.name or self.step_id


class Playbook(BaseModel):
    """Immutable template describing a DAG of steps"""
    model_config = ConfigDict(extra="ignore")

    playbook_id: str
    name: str
    description: Optional[str] = None
    version: int = Field(default=1)
    steps: List[PlaybookStep] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None


class ScenarioConstraints(BaseModel):
    """Limits applied to every run of a scenario"""
    model_config = ConfigDict(extra="ignore")

    max_budget: Optional[float] = Field(None, ge=0)
    max_time_hours: Optional[float] = Field(None, gt=0)
    required_approvals: List[str] = Field(default_factory=list)
    excluded_actions: List[str] = Field(default_factory=list)
    priority_metrics: List[str] = Field(default_factory=list)
    risk_tolerance: Optional[RiskLevel] = None
    max_concurrency: Optional[int] = Field(None, ge=1)


class Scenario(BaseModel):
    """A parameterized situation bound to a playbook at run time"""
    model_config = ConfigDict(extra="ignore")

    scenario_id: str
    name: str
    description: Optional[str] = None
    scenario_type: str = Field(default="custom")
    parameters: Dict[str, Any] = Field(default_factory=dict)
    constraints: ScenarioConstraints = Field(default_factory=ScenarioConstraints)
    default_playbook_id: Optional[str] = None
    created_at: Optional[datetime] = None


# ============================================================================
# Runs
# ============================================================================

class RunResultSummary(BaseModel):
    """Step tallies recorded when a run reaches a terminal status"""
    steps_total: int = 0
    steps_executed: int = 0
    steps_skipped: int = 0
    steps_failed: int = 0
    steps_cancelled: int = 0
    duration_minutes: Optional[float] = None


class ScenarioRun(BaseModel):
    """One execution instance of a scenario + playbook pair"""
    model_config = ConfigDict(extra="ignore")

    run_id: str
    scenario_id: str
    playbook_id: str
    playbook_version: int = 1
    status: RunStatus
    steps: List[PlaybookStep] = Field(default_factory=list, description="Validated playbook snapshot")
    parameters: Dict[str, Any] = Field(default_factory=dict)
    constraints: ScenarioConstraints = Field(default_factory=ScenarioConstraints)
    context: Dict[str, Any] = Field(default_factory=dict)
    max_concurrency: int = Field(default=1, ge=1)
    budget_spent: float = Field(default=0)
    scheduled_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    deadline_at: Optional[datetime] = None
    cancel_requested: bool = False
    cancel_reason: Optional[str] = None
    error_message: Optional[str] = None
    result_summary: Optional[RunResultSummary] = None
    started_by: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime
    version: int = Field(default=1, description="Optimistic concurrency counter")

    def step_definition(self, step_id: str) -> Optional[PlaybookStep]:
        for step in self.steps:
            if step.step_id == step_id:
                return step
        return None


class ScenarioStepRun(BaseModel):
    """Per-step execution record within a run"""
    model_config = ConfigDict(extra="ignore")

    step_run_id: str
    run_id: str
    step_id: str
    step_index: int = 0
    action_type: str
    status: StepStatus = Field(default=StepStatus.PENDING)
    idempotency_key: str
    ready_at: Optional[datetime] = None
    approval_requested_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    decided_by: Optional[str] = None
    approval_notes: Optional[str] = None
    waiting_signal_type: Optional[str] = None
    resumed_at: Optional[datetime] = None
    signal_payload: Optional[Dict[str, Any]] = None
    wait_deadline_at: Optional[datetime] = None
    dispatched_at: Optional[datetime] = None
    dispatch_deadline_at: Optional[datetime] = None
    dispatch_attempts: int = 0
    completed_at: Optional[datetime] = None
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    skip_reason: Optional[str] = None
    cancellation_requested: bool = False
    outcome_uncertain: bool = False
    created_at: datetime
    updated_at: datetime


class RunStatusView(BaseModel):
    """Consistent snapshot returned by getRunStatus"""
    run: ScenarioRun
    steps: List[ScenarioStepRun]


# ============================================================================
# External inputs
# ============================================================================

class ApprovalDecision(BaseModel):
    """A human decision on one waiting step"""
    model_config = ConfigDict(extra="forbid")

    step_run_id: str
    decided_by: str
    decision: ApprovalOutcome
    notes: Optional[str] = None
    decided_at: datetime


class SignalEvent(BaseModel):
    """An externally sourced event that may resume waiting steps"""
    model_config = ConfigDict(extra="ignore")

    signal_id: Optional[str] = None
    signal_type: str = Field(..., min_length=1)
    payload: Dict[str, Any] = Field(default_factory=dict)
    occurred_at: Optional[datetime] = None


class SignalWatch(BaseModel):
    """Registry entry keyed by (signal_type, run_id, step_id)"""
    model_config = ConfigDict(extra="ignore")

    signal_type: Optional[str] = None
    run_id: str
    step_id: str
    step_run_id: str
    payload_filter: Optional[ConditionNode] = None
    deadline_at: Optional[datetime] = None
    registered_at: datetime


# ============================================================================
# Action Gateway ledger
# ============================================================================

class DispatchRecord(BaseModel):
    """Action Gateway ledger entry for one idempotency key"""
    model_config = ConfigDict(extra="ignore")

    idempotency_key: str
    run_id: str
    step_id: str
    action_type: str
    state: DispatchState = Field(default=DispatchState.IN_FLIGHT)
    attempts: int = 0
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    first_dispatched_at: datetime
    last_dispatched_at: datetime
    completed_at: Optional[datetime] = None


class DispatchOutcome(BaseModel):
    """What the Action Gateway reports back for one dispatch"""
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    deduplicated: bool = False

    @property
    def succeeded(self) -> bool:
        return self.error is None


# ============================================================================
# Audit & Notifications
# ============================================================================

class AuditEntry(BaseModel):
    """Audit entry (append-only)"""
    model_config = ConfigDict(extra="ignore")

    audit_entry_id: str
    run_id: str
    step_run_id: Optional[str] = None
    step_id: Optional[str] = None
    event_type: AuditEventType
    actor_type: ActorType = Field(default=ActorType.SYSTEM)
    actor_id: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    correlation_id: Optional[str] = None


class NotificationOutbox(BaseModel):
    """Notification-worthy event awaiting external delivery"""
    model_config = ConfigDict(extra="ignore")

    notification_id: str
    template_key: NotificationTemplateKey
    run_id: str
    step_run_id: Optional[str] = None
    recipient_roles: List[str] = Field(default_factory=list)
    payload: Dict[str, Any] = Field(default_factory=dict)
    status: NotificationStatus = Field(default=NotificationStatus.PENDING)
    created_at: datetime
