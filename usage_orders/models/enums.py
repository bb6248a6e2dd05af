"""Enums for the order lifecycle - these define the valid values for statuses, types and severities."""
from enum import Enum


class OrderStatus(str, Enum):
    """The ten statuses an Order can be in. No other statuses are allowed."""
    INIT = "INIT"
    PAY_PENDING = "PAY_PENDING"
    PAID = "PAID"
    STARTING = "STARTING"
    IN_USE = "IN_USE"
    SETTLING = "SETTLING"
    DONE = "DONE"
    REFUNDING = "REFUNDING"
    CANCELLED = "CANCELLED"
    CLOSED = "CLOSED"


class PaymentMethod(str, Enum):
    WECHAT_PAY = "wechat_pay"
    BALANCE = "balance"


class ExceptionType(str, Enum):
    PAYMENT_TIMEOUT = "payment_timeout"
    DEVICE_START_TIMEOUT = "device_start_timeout"
    USAGE_TIMEOUT = "usage_timeout"
    SETTLEMENT_TIMEOUT = "settlement_timeout"
    HIGH_VALUE_EXCEPTION = "high_value_exception"
    FREQUENT_CANCELLATION = "frequent_cancellation"
    DEVICE_MALFUNCTION = "device_malfunction"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"
    PAYMENT_FAILURE = "payment_failure"
    REFUND_ANOMALY = "refund_anomaly"


class ExceptionSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


# Ordering used for risk weighting and batch prioritisation
SEVERITY_RANK = {
    ExceptionSeverity.LOW: 1,
    ExceptionSeverity.MEDIUM: 2,
    ExceptionSeverity.HIGH: 3,
    ExceptionSeverity.CRITICAL: 4,
}


class ExceptionStatus(str, Enum):
    """detected -> processing -> resolved | escalated | ignored"""
    DETECTED = "detected"
    PROCESSING = "processing"
    RESOLVED = "resolved"
    ESCALATED = "escalated"
    IGNORED = "ignored"


OPEN_EXCEPTION_STATUSES = (ExceptionStatus.DETECTED, ExceptionStatus.PROCESSING)


class RuleActionType(str, Enum):
    NOTIFY = "notify"
    ESCALATE = "escalate"
    AUTO_RESOLVE = "auto_resolve"
    WORKFLOW = "workflow"
    BLOCK = "block"


class ConditionOperator(str, Enum):
    EQ = "eq"
    NE = "ne"
    GT = "gt"
    LT = "lt"
    GTE = "gte"
    LTE = "lte"
    IN = "in"
    BETWEEN = "between"
    CONTAINS = "contains"


class StepType(str, Enum):
    CONDITION = "condition"
    ACTION = "action"
    NOTIFICATION = "notification"
    DELAY = "delay"


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class ExecutionStatus(str, Enum):
    """created -> running -> completed | failed | cancelled"""
    CREATED = "created"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_EXECUTION_STATUSES = (
    ExecutionStatus.COMPLETED,
    ExecutionStatus.FAILED,
    ExecutionStatus.CANCELLED,
)


class TimeoutKind(str, Enum):
    """The triggers the timeout detector remediates."""
    PAYMENT = "payment"
    START = "start"
    USAGE = "usage"
    SETTLEMENT = "settlement"


class RemediationStatus(str, Enum):
    PENDING = "pending"
    DONE = "done"
    ABANDONED = "abandoned"


class ReviewStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class SettlementCycle(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    CUSTOM = "custom"


class MerchantLevel(str, Enum):
    BRONZE = "bronze"
    SILVER = "silver"
    GOLD = "gold"
    PLATINUM = "platinum"


class BonusType(str, Enum):
    VOLUME = "volume"
    GROWTH = "growth"
    RETENTION = "retention"
