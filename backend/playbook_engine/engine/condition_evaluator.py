"""Condition Evaluator - Safe evaluation of step conditions and signal filters"""
import re
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from ..domain.models import Condition, ConditionGroup, ConditionNode
from ..domain.enums import ConditionLogic, ConditionOperator
from ..utils.time import ensure_utc, parse_iso, to_timedelta, utc_now
from ..utils.logger import get_logger

logger = get_logger(__name__)

_MISSING = object()


class ConditionEvaluator:
    """
    Evaluate condition expressions against a context map

    Uses a closed set of operators - no eval() or exec(). Evaluation is pure:
    the same expression, context and `now` always give the same answer.
    Unknown fields mean "condition not met" rather than an error.
    """

    def evaluate(
        self,
        expression: Optional[ConditionNode],
        context: Dict[str, Any],
        now: Optional[datetime] = None
    ) -> bool:
        """
        Evaluate a condition tree

        Args:
            expression: Leaf condition or AND/OR group (None = always true)
            context: Context with field values
            now: Reference time for time-window leaves

        Returns:
            True if conditions are met
        """
        if expression is None:
            return True
        now = now or utc_now()
        return self._evaluate_node(expression, context, now)

    def _evaluate_node(self, node: ConditionNode, context: Dict[str, Any], now: datetime) -> bool:
        if isinstance(node, ConditionGroup):
            if not node.conditions:
                return True  # No conditions = always true
            results = (self._evaluate_node(child, context, now) for child in node.conditions)
            if node.logic == ConditionLogic.OR:
                return any(results)
            return all(results)
        return self._evaluate_single(node, context, now)

    def _evaluate_single(self, condition: Condition, context: Dict[str, Any], now: datetime) -> bool:
        """Evaluate a single leaf condition"""
        field_value = self._get_field_value(condition.field, context)
        if field_value is _MISSING:
            return False

        if condition.time_window is not None and not self._within_window(field_value, condition, now):
            return False

        if condition.operator is None:
            return True

        try:
            return self._compare(field_value, condition.operator, condition.value)
        except (TypeError, ValueError) as e:
            logger.warning(f"Condition evaluation failed on '{condition.field}': {e}")
            return False  # Fail closed

    def _get_field_value(self, field_path: str, context: Dict[str, Any]) -> Any:
        """
        Get field value from context using dot notation

        Example: "triage.severity" -> context["triage"]["severity"]
        """
        value: Any = context
        for part in field_path.split("."):
            if isinstance(value, dict) and part in value:
                value = value[part]
            else:
                return _MISSING
        return value

    def _within_window(self, field_value: Any, condition: Condition, now: datetime) -> bool:
        """Check the field holds a timestamp inside [now - window, now]"""
        try:
            if isinstance(field_value, datetime):
                stamp = ensure_utc(field_value)
            else:
                stamp = parse_iso(str(field_value))
        except (TypeError, ValueError, OverflowError):
            return False

        window = to_timedelta(condition.time_window.duration, condition.time_window.unit.value)
        now = ensure_utc(now)
        return now - window <= stamp <= now

    def _compare(self, field_value: Any, operator: ConditionOperator, compare_value: Any) -> bool:
        """Compare values using operator"""

        if operator == ConditionOperator.EQ:
            return field_value == compare_value

        elif operator == ConditionOperator.NE:
            return field_value != compare_value

        elif operator == ConditionOperator.GT:
            return self._compare_numeric(field_value, compare_value, lambda a, b: a > b)

        elif operator == ConditionOperator.GTE:
            return self._compare_numeric(field_value, compare_value, lambda a, b: a >= b)

        elif operator == ConditionOperator.LT:
            return self._compare_numeric(field_value, compare_value, lambda a, b: a < b)

        elif operator == ConditionOperator.LTE:
            return self._compare_numeric(field_value, compare_value, lambda a, b: a <= b)

        elif operator == ConditionOperator.CONTAINS:
            if field_value is None:
                return False
            if isinstance(field_value, (list, tuple, set)):
                return compare_value in field_value
            if isinstance(field_value, dict):
                return compare_value in field_value
            return str(compare_value) in str(field_value)

        elif operator == ConditionOperator.MATCHES:
            if field_value is None or compare_value is None:
                return False
            try:
                return re.search(str(compare_value), str(field_value)) is not None
            except re.error as e:
                logger.warning(f"Invalid pattern in condition: {e}")
                return False

        elif operator == ConditionOperator.IN:
            if not isinstance(compare_value, list):
                compare_value = [compare_value]
            return field_value in compare_value

        elif operator == ConditionOperator.NOT_IN:
            if not isinstance(compare_value, list):
                compare_value = [compare_value]
            return field_value not in compare_value

        return False

    def _compare_numeric(
        self,
        field_value: Any,
        compare_value: Any,
        comparator: Callable[[float, float], bool]
    ) -> bool:
        """Compare numeric values"""
        if field_value is None or compare_value is None or isinstance(field_value, bool):
            return False
        try:
            return comparator(float(field_value), float(compare_value))
        except (ValueError, TypeError):
            return False
