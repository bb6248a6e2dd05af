"""Exception rules - data, not code. Conditions are AND-combined."""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Tuple

from usage_orders.clock import utcnow
from usage_orders.models.enums import ExceptionSeverity, ExceptionType, RuleActionType
from usage_orders.services.conditions import Condition


@dataclass(frozen=True)
class RuleAction:
    type: RuleActionType
    config: Mapping[str, Any] = field(default_factory=dict)
    delay_seconds: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type.value, "config": dict(self.config), "delay_seconds": self.delay_seconds}


@dataclass
class ExceptionRule:
    id: str
    name: str
    type: ExceptionType
    severity: ExceptionSeverity
    priority: int
    conditions: Tuple[Condition, ...]
    actions: Tuple[RuleAction, ...] = ()
    description: str = ""
    enabled: bool = True
    version: str = "1.0"
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type.value,
            "severity": self.severity.value,
            "priority": self.priority,
            "enabled": self.enabled,
            "version": self.version,
            "description": self.description,
            "conditions": [c.to_dict() for c in self.conditions],
            "actions": [a.to_dict() for a in self.actions],
            "updated_at": self.updated_at.isoformat(),
        }


def _cond(field_name: str, operator: str, value: Any, time_window: Optional[int] = None,
          threshold: Optional[float] = None) -> Condition:
    return Condition.from_dict({
        "field": field_name, "operator": operator, "value": value,
        "time_window_minutes": time_window, "threshold": threshold,
    })


def _action(kind: RuleActionType, delay: Optional[float] = None, **config: Any) -> RuleAction:
    return RuleAction(type=kind, config=config, delay_seconds=delay)


def default_rules() -> List[ExceptionRule]:
    return [
        ExceptionRule(
            id="payment_timeout_intelligent",
            name="Payment timeout detection",
            type=ExceptionType.PAYMENT_TIMEOUT,
            severity=ExceptionSeverity.MEDIUM,
            priority=1,
            description="Unpaid order from a user who usually pays",
            conditions=(
                _cond("status", "eq", "PAY_PENDING"),
                _cond("created_minutes_ago", "gte", 10, time_window=60),
                _cond("user_payment_history", "gt", 0.8, threshold=5),
            ),
            actions=(
                _action(RuleActionType.NOTIFY, channels=["app", "sms"], template="intelligent_payment_reminder"),
                _action(RuleActionType.WORKFLOW, delay=300, workflow_id="payment_timeout_workflow"),
            ),
        ),
        ExceptionRule(
            id="device_malfunction_prediction",
            name="Device malfunction prediction",
            type=ExceptionType.DEVICE_MALFUNCTION,
            severity=ExceptionSeverity.HIGH,
            priority=2,
            description="Device with a high failure rate, unusual usage and overdue maintenance",
            conditions=(
                _cond("device_failure_rate", "gte", 0.15, time_window=1440),
                _cond("device_usage_anomaly", "gt", 2.0),
                _cond("maintenance_overdue", "gte", 7),
            ),
            actions=(
                _action(RuleActionType.ESCALATE, level="maintenance_team", priority="high"),
                _action(RuleActionType.NOTIFY, channels=["admin"], template="device_maintenance_alert"),
            ),
        ),
        ExceptionRule(
            id="high_value_risk_assessment",
            name="High value order risk",
            type=ExceptionType.HIGH_VALUE_EXCEPTION,
            severity=ExceptionSeverity.CRITICAL,
            priority=3,
            description="High value order from a risky user or payment method",
            conditions=(
                _cond("amount", "gte", 10000),
                _cond("user_risk_score", "gte", 0.7),
                _cond("payment_method_risk", "gt", 0.5),
            ),
            actions=(
                _action(RuleActionType.ESCALATE, level="supervisor", priority="critical"),
                _action(RuleActionType.WORKFLOW, workflow_id="high_value_exception_workflow"),
            ),
        ),
        ExceptionRule(
            id="suspicious_activity_detection",
            name="Suspicious activity",
            type=ExceptionType.SUSPICIOUS_ACTIVITY,
            severity=ExceptionSeverity.HIGH,
            priority=4,
            description="Burst of orders with changing payment methods from an unusual location",
            conditions=(
                _cond("user_order_frequency", "gt", 10, time_window=60),
                _cond("payment_method_changes", "gte", 3, time_window=1440),
                _cond("location_anomaly_score", "gte", 0.8),
            ),
            actions=(
                _action(RuleActionType.BLOCK, duration=3600, reason="suspicious_activity"),
                _action(RuleActionType.ESCALATE, level="security_team", priority="high"),
            ),
        ),
        ExceptionRule(
            id="frequent_cancellation_pattern",
            name="Frequent cancellation",
            type=ExceptionType.FREQUENT_CANCELLATION,
            severity=ExceptionSeverity.MEDIUM,
            priority=5,
            description="User cancels most orders, and quickly",
            conditions=(
                _cond("user_cancellation_rate", "gte", 0.5, time_window=1440),
                _cond("cancellation_count", "gte", 5, time_window=1440),
                _cond("cancellation_timing", "lt", 300),
            ),
            actions=(
                _action(RuleActionType.NOTIFY, channels=["admin"], template="frequent_cancellation_alert"),
                _action(RuleActionType.AUTO_RESOLVE, action="user_education", template="cancellation_guidance"),
            ),
        ),
        ExceptionRule(
            id="refund_anomaly_detection",
            name="Refund anomaly",
            type=ExceptionType.REFUND_ANOMALY,
            severity=ExceptionSeverity.HIGH,
            priority=6,
            description="Large, frequent refunds with inconsistent reasons",
            conditions=(
                _cond("refund_amount", "gt", 5000),
                _cond("refund_frequency", "gte", 3, time_window=1440),
                _cond("refund_reason_consistency", "lt", 0.3),
            ),
            actions=(
                _action(RuleActionType.ESCALATE, level="finance_team", priority="high"),
                _action(RuleActionType.NOTIFY, channels=["admin"], template="refund_anomaly_alert"),
            ),
        ),
    ]
