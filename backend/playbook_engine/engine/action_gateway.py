"""Action Gateway - Single dispatch contract for step side effects

Handlers are registered per action type at startup. Every dispatch goes
through a ledger keyed by the step's idempotency key:

- first dispatch of a key: ledger entry created, handler invoked
- redelivery of a completed key: stored outcome returned, handler not called
- redelivery of an in-flight key (crash mid-call): handler invoked again
  with the same key, which handlers must treat idempotently
"""
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, Optional, Protocol, runtime_checkable

from ..domain.models import DispatchRecord, DispatchOutcome, PlaybookStep
from ..domain.enums import ActionType, DispatchState, ENGINE_NATIVE_ACTIONS
from ..domain.errors import UnsupportedActionError
from ..utils.time import utc_now
from ..utils.logger import get_logger

logger = get_logger(__name__)


@runtime_checkable
class ActionHandler(Protocol):
    """Contract every action handler implements"""

    def execute(
        self,
        payload: Dict[str, Any],
        idempotency_key: str,
        context: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]:
        """Perform the action; raise to report failure"""


class EngineNativeHandler:
    """Completes engine-native steps (approval_gate, wait, conditional) without side effects"""

    def __init__(self, action_type: str):
        self.action_type = action_type

    def execute(
        self,
        payload: Dict[str, Any],
        idempotency_key: str,
        context: Dict[str, Any]
    ) -> Dict[str, Any]:
        result: Dict[str, Any] = {"action_type": self.action_type, "completed": True}
        if self.action_type == ActionType.CONDITIONAL.value:
            result["condition_met"] = True
        signal = context.get("_run", {}).get("signal")
        if signal is not None:
            result["signal"] = signal
        return result


class AcknowledgingActionHandler:
    """
    Records the action request and acknowledges it

    Registered for the domain action types until a real integration is
    plugged in for them.
    """

    def __init__(self, action_type: str):
        self.action_type = action_type

    def execute(
        self,
        payload: Dict[str, Any],
        idempotency_key: str,
        context: Dict[str, Any]
    ) -> Dict[str, Any]:
        logger.info(
            f"Action acknowledged: {self.action_type}",
            extra={"action_type": self.action_type, "idempotency_key": idempotency_key}
        )
        return {"action_type": self.action_type, "acknowledged": True, "payload": payload}


class ActionGateway:
    """Registry of action handlers plus the idempotent dispatch ledger"""

    def __init__(self, ledger: Any, clock: Callable[[], datetime] = utc_now):
        self.ledger = ledger
        self.clock = clock
        self._handlers: Dict[str, ActionHandler] = {}
        for action_type in ENGINE_NATIVE_ACTIONS:
            self._handlers[action_type] = EngineNativeHandler(action_type)

    def register(self, action_type: str, handler: ActionHandler) -> None:
        """Register (or replace) the handler for an action type"""
        if not isinstance(handler, ActionHandler):
            raise TypeError(f"Handler for {action_type} must implement execute()")
        self._handlers[action_type] = handler
        logger.info(f"Registered action handler: {action_type}", extra={"action_type": action_type})

    def supports(self, action_type: str) -> bool:
        return action_type in self._handlers

    @property
    def action_types(self) -> Iterable[str]:
        return sorted(self._handlers)

    def ensure_supported(self, steps: Iterable[PlaybookStep], excluded: Iterable[str] = ()) -> None:
        """
        Fail fast on unknown action types before a run is created

        Raises:
            UnsupportedActionError: At least one step has no handler
        """
        excluded = set(excluded)
        unsupported = sorted({
            step.action_type for step in steps
            if step.action_type not in excluded and not self.supports(step.action_type)
        })
        if unsupported:
            raise UnsupportedActionError(
                f"No handler registered for action type(s): {', '.join(unsupported)}",
                details={"action_types": unsupported}
            )

    def dispatch(
        self,
        action_type: str,
        payload: Dict[str, Any],
        idempotency_key: str,
        context: Dict[str, Any],
        run_id: str,
        step_id: str
    ) -> DispatchOutcome:
        """
        Execute an action exactly once per idempotency key

        Raises:
            UnsupportedActionError: No handler for the action type
        """
        handler = self._handlers.get(action_type)
        if handler is None:
            raise UnsupportedActionError(
                f"No handler registered for action type: {action_type}",
                details={"action_type": action_type, "step_id": step_id}
            )

        now = self.clock()
        record, created = self.ledger.claim(DispatchRecord(
            idempotency_key=idempotency_key,
            run_id=run_id,
            step_id=step_id,
            action_type=action_type,
            first_dispatched_at=now,
            last_dispatched_at=now
        ))

        if not created and record.state == DispatchState.SUCCEEDED:
            logger.info(
                "Dispatch deduplicated from ledger",
                extra={"idempotency_key": idempotency_key, "action_type": action_type}
            )
            return DispatchOutcome(result=record.result, deduplicated=True)

        if not created and record.state == DispatchState.FAILED:
            return DispatchOutcome(error=record.error, deduplicated=True)

        self.ledger.record_attempt(idempotency_key, self.clock())

        try:
            result = handler.execute(payload, idempotency_key, context)
        except Exception as e:
            logger.error(
                f"Action handler failed: {e}",
                extra={"idempotency_key": idempotency_key, "action_type": action_type},
                exc_info=True
            )
            error = str(e) or e.__class__.__name__
            self.ledger.complete(idempotency_key, DispatchState.FAILED, None, error, self.clock())
            return DispatchOutcome(error=error)

        if result is None:
            result = {}
        elif not isinstance(result, dict):
            result = {"value": result}

        self.ledger.complete(idempotency_key, DispatchState.SUCCEEDED, result, None, self.clock())
        return DispatchOutcome(result=result)

    def cancel(self, action_type: str, idempotency_key: str) -> bool:
        """
        Best-effort cancellation hook

        Returns True if the handler accepted the request. The engine never
        assumes the side effect was prevented.
        """
        handler = self._handlers.get(action_type)
        cancel = getattr(handler, "cancel", None)
        if cancel is None:
            return False
        try:
            cancel(idempotency_key)
            return True
        except Exception as e:
            logger.warning(
                f"Cancellation hook failed: {e}",
                extra={"idempotency_key": idempotency_key, "action_type": action_type}
            )
            return False


def register_default_handlers(gateway: ActionGateway) -> ActionGateway:
    """Acknowledging handlers for every domain action type without one"""
    for action_type in ActionType:
        if action_type == ActionType.CUSTOM:
            continue
        if not gateway.supports(action_type.value):
            gateway.register(action_type.value, AcknowledgingActionHandler(action_type.value))
    return gateway
