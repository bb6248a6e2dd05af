"""Condition predicates shared by exception rules and workflow condition steps."""
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Mapping, Optional

from usage_orders.models.enums import ConditionOperator


@dataclass(frozen=True)
class Condition:
    field: str
    operator: ConditionOperator
    value: Any
    # Informational in rule definitions; the feature provider owns the window
    time_window_minutes: Optional[int] = None
    threshold: Optional[float] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Condition":
        return cls(
            field=data["field"],
            operator=ConditionOperator(data["operator"]),
            value=data.get("value"),
            time_window_minutes=data.get("time_window_minutes"),
            threshold=data.get("threshold"),
        )

    def to_dict(self) -> dict:
        return {
            "field": self.field,
            "operator": self.operator.value,
            "value": self.value,
            "time_window_minutes": self.time_window_minutes,
            "threshold": self.threshold,
        }


def _plain(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


def evaluate(condition: Condition, actual: Any) -> bool:
    """
    Apply one condition to an already-resolved field value.

    A missing value (None) never satisfies an ordering comparison.
    `between` is inclusive on both ends.
    """
    op = condition.operator
    expected = _plain(condition.value)
    actual = _plain(actual)

    if op == ConditionOperator.EQ:
        return actual == expected
    if op == ConditionOperator.NE:
        return actual != expected
    if op == ConditionOperator.IN:
        return isinstance(expected, (list, tuple, set)) and actual in [_plain(v) for v in expected]
    if op == ConditionOperator.CONTAINS:
        if isinstance(actual, str):
            return isinstance(expected, str) and expected in actual
        if isinstance(actual, (list, tuple, set)):
            return expected in actual
        return False

    if actual is None:
        return False
    try:
        if op == ConditionOperator.GT:
            return actual > expected
        if op == ConditionOperator.LT:
            return actual < expected
        if op == ConditionOperator.GTE:
            return actual >= expected
        if op == ConditionOperator.LTE:
            return actual <= expected
        if op == ConditionOperator.BETWEEN:
            if not isinstance(expected, (list, tuple)) or len(expected) != 2:
                return False
            return expected[0] <= actual <= expected[1]
    except TypeError:
        # Incomparable types, e.g. a string field against a numeric threshold
        return False
    return False


def evaluate_all(conditions: Iterable[Condition], context: Mapping[str, Any]) -> bool:
    """AND-combine: every condition must hold against `context`."""
    return all(evaluate(c, context.get(c.field)) for c in conditions)
