"""Playbook Engine - Orchestration core"""
from .orchestrator import RunOrchestrator
from .graph_validator import GraphValidator, DependencyGraph
from .transition_resolver import TransitionResolver
from .condition_evaluator import ConditionEvaluator
from .approval_gate import ApprovalGate
from .signal_waiter import SignalWaiter
from .action_gateway import (
    ActionGateway, ActionHandler, AcknowledgingActionHandler, register_default_handlers
)
from .audit_writer import AuditWriter

__all__ = [
    "RunOrchestrator",
    "GraphValidator",
    "DependencyGraph",
    "TransitionResolver",
    "ConditionEvaluator",
    "ApprovalGate",
    "SignalWaiter",
    "ActionGateway",
    "ActionHandler",
    "AcknowledgingActionHandler",
    "register_default_handlers",
    "AuditWriter",
]
