"""Signal Waiter - Durable watches that resume steps on external signals"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..domain.models import PlaybookStep, ScenarioStepRun, SignalEvent, SignalWatch
from ..domain.enums import ActionType
from .condition_evaluator import ConditionEvaluator
from ..utils.time import calculate_deadline
from ..utils.logger import get_logger

logger = get_logger(__name__)


class SignalWaiter:
    """
    Signal watch registry

    Watches are keyed by (signal_type, run_id, step_id) and live in storage,
    so a waiting step survives process restarts. One event may match many
    watches across runs; each match is resumed independently.
    """

    def __init__(self, repo: Any, evaluator: Optional[ConditionEvaluator] = None):
        self.repo = repo
        self.evaluator = evaluator or ConditionEvaluator()

    @staticmethod
    def is_timer_wait(step: PlaybookStep) -> bool:
        """A `wait` step with a duration and no signal is a pure timer"""
        return (
            not step.wait_for_signals
            and step.action_type == ActionType.WAIT.value
            and step.wait_duration_minutes is not None
        )

    @staticmethod
    def needs_wait(step: PlaybookStep) -> bool:
        return step.wait_for_signals or SignalWaiter.is_timer_wait(step)

    def wait_deadline(self, step: PlaybookStep, now: datetime) -> Optional[datetime]:
        """Earliest of wait_duration_minutes / timeout_minutes; None waits indefinitely"""
        limits = [m for m in (step.wait_duration_minutes, step.timeout_minutes) if m is not None]
        if not limits:
            return None
        return calculate_deadline(now, min(limits))

    def open_wait(
        self,
        step: PlaybookStep,
        step_run: ScenarioStepRun,
        now: datetime
    ) -> Dict[str, Any]:
        """
        Register the watch (signal steps only) and return the step run fields

        The watch is written before the step run changes status so an event
        arriving in between is never lost; a stale watch is dropped on match.
        """
        deadline = self.wait_deadline(step, now)
        signal_type = None
        if step.wait_for_signals:
            conditions = step.signal_conditions
            signal_type = conditions.signal_type if conditions else None
            self.repo.upsert_watch(SignalWatch(
                signal_type=signal_type,
                run_id=step_run.run_id,
                step_id=step_run.step_id,
                step_run_id=step_run.step_run_id,
                payload_filter=conditions.payload_filter if conditions else None,
                deadline_at=deadline,
                registered_at=now
            ))

        return {
            "waiting_signal_type": signal_type,
            "wait_deadline_at": deadline,
        }

    def match(self, event: SignalEvent, now: datetime) -> List[SignalWatch]:
        """Watches for the event's type whose payload filter accepts the payload"""
        matched = []
        for watch in self.repo.find_watches(event.signal_type):
            if self.evaluator.evaluate(watch.payload_filter, event.payload, now):
                matched.append(watch)
        logger.info(
            f"Signal matched {len(matched)} watch(es)",
            extra={"signal_type": event.signal_type}
        )
        return matched

    def claim(self, watch: SignalWatch) -> bool:
        """Remove the watch; only the caller that removed it may resume the step"""
        return self.repo.delete_watch(watch.run_id, watch.step_id)

    def release(self, run_id: str, step_id: str) -> None:
        """Drop a watch that is no longer needed (timeout, cancellation)"""
        self.repo.delete_watch(run_id, step_id)

    def release_run(self, run_id: str) -> int:
        return self.repo.delete_watches_for_run(run_id)
