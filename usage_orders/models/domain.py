"""Domain models - orders, exception records, workflow executions and remediation bookkeeping."""
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum as SQLEnum,
    Integer,
    String,
    Text,
    UniqueConstraint,
)

from usage_orders.clock import utcnow
from usage_orders.database import Base
from usage_orders.models.enums import (
    ExceptionSeverity,
    ExceptionStatus,
    ExceptionType,
    ExecutionStatus,
    OrderStatus,
    PaymentMethod,
    RemediationStatus,
    ReviewStatus,
    TimeoutKind,
)

PAID_STATUSES = frozenset({
    OrderStatus.PAID,
    OrderStatus.STARTING,
    OrderStatus.IN_USE,
    OrderStatus.SETTLING,
    OrderStatus.DONE,
})
ACTIVE_STATUSES = frozenset({OrderStatus.STARTING, OrderStatus.IN_USE})
FINISHED_STATUSES = frozenset({OrderStatus.DONE, OrderStatus.CLOSED})
CANCELLABLE_STATUSES = frozenset({OrderStatus.INIT, OrderStatus.PAY_PENDING})


class Order(Base):
    """
    A paid usage session against a device.

    Invariants enforced here:
    - Status is always one of the ten OrderStatus values
    - Created in INIT by the order-creation collaborator
    - Every write bumps `version`; a stale writer gets a StaleDataError on flush
    - Amounts are integer minor-currency units
    """
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    order_no = Column(String(32), nullable=False, unique=True)
    user_id = Column(Integer, nullable=False, index=True)
    merchant_id = Column(Integer, nullable=False, index=True)
    device_id = Column(Integer, nullable=True, index=True)

    status = Column(SQLEnum(OrderStatus), nullable=False, default=OrderStatus.INIT, index=True)
    payment_method = Column(SQLEnum(PaymentMethod), nullable=True)

    amount = Column(Integer, nullable=False, default=0)
    paid_amount = Column(Integer, nullable=False, default=0)
    refund_amount = Column(Integer, nullable=False, default=0)

    duration_minutes = Column(Integer, nullable=False, default=0)

    # Timestamps
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    paid_at = Column(DateTime, nullable=True)
    start_at = Column(DateTime, nullable=True)
    end_at = Column(DateTime, nullable=True)
    expire_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    refunded_at = Column(DateTime, nullable=True)

    cancel_reason = Column(Text, nullable=True)
    refund_reason = Column(Text, nullable=True)
    remark = Column(Text, nullable=True)

    # Free-form payloads
    device_data = Column(JSON, nullable=True)
    payment_info = Column(JSON, nullable=True)

    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    @property
    def is_paid(self) -> bool:
        return self.status in PAID_STATUSES

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def is_finished(self) -> bool:
        return self.status in FINISHED_STATUSES

    @property
    def can_cancel(self) -> bool:
        return self.status in CANCELLABLE_STATUSES

    @property
    def can_refund(self) -> bool:
        return self.is_paid and not self.is_finished

    @property
    def needs_settlement(self) -> bool:
        return self.status == OrderStatus.SETTLING

    @property
    def is_expired(self) -> bool:
        return self.is_expired_at(utcnow())

    def is_expired_at(self, now: datetime) -> bool:
        return self.expire_at is not None and self.expire_at < now

    @property
    def refundable_amount(self) -> int:
        """What is left of the payment after earlier refunds."""
        return max((self.paid_amount or 0) - (self.refund_amount or 0), 0)

    def minutes_since(self, moment: Optional[datetime], now: datetime) -> Optional[float]:
        if moment is None:
            return None
        return (now - moment).total_seconds() / 60


class ExceptionRecordRow(Base):
    """
    A detected anomaly tied to one order.

    Invariants:
    - Created by the classifier in `detected`
    - Closed records (resolved/escalated/ignored) carry resolved_at
    """
    __tablename__ = "exception_records"

    id = Column(String(40), primary_key=True)
    order_id = Column(Integer, nullable=False, index=True)
    type = Column(SQLEnum(ExceptionType), nullable=False, index=True)
    severity = Column(SQLEnum(ExceptionSeverity), nullable=False)
    rule_id = Column(String(80), nullable=False, index=True)
    rule_name = Column(String(200), nullable=True)
    description = Column(Text, nullable=True)
    details = Column(JSON, nullable=False, default=dict)
    status = Column(SQLEnum(ExceptionStatus), nullable=False, default=ExceptionStatus.DETECTED, index=True)

    detected_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    resolved_at = Column(DateTime, nullable=True)
    resolved_by = Column(String(80), nullable=True)
    resolution = Column(Text, nullable=True)
    # Workflow started to remediate this record, if any
    execution_id = Column(String(40), nullable=True, index=True)


class WorkflowExecutionRow(Base):
    """Durable copy of a workflow execution, written through on every step."""
    __tablename__ = "workflow_executions"

    id = Column(String(40), primary_key=True)
    template_id = Column(String(80), nullable=False, index=True)
    template_version = Column(String(20), nullable=False)
    order_id = Column(Integer, nullable=False, index=True)
    status = Column(SQLEnum(ExecutionStatus), nullable=False, default=ExecutionStatus.CREATED, index=True)
    current_step_id = Column(String(80), nullable=True)
    variables = Column(JSON, nullable=False, default=dict)
    steps = Column(JSON, nullable=False, default=list)
    error = Column(Text, nullable=True)
    error_step_id = Column(String(80), nullable=True)
    started_at = Column(DateTime, nullable=False, default=utcnow)
    completed_at = Column(DateTime, nullable=True)


class RemediationAttempt(Base):
    """
    Bookkeeping for one timeout remediation of one order.

    Invariants:
    - At most one row per (order, trigger)
    - The status transition is applied at most once (transition_applied)
    - Side effects listed in completed_effects are never repeated
    """
    __tablename__ = "remediation_attempts"
    __table_args__ = (UniqueConstraint("order_id", "trigger", name="uq_remediation_order_trigger"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(Integer, nullable=False, index=True)
    device_id = Column(Integer, nullable=True, index=True)
    trigger = Column(SQLEnum(TimeoutKind), nullable=False)
    status = Column(SQLEnum(RemediationStatus), nullable=False, default=RemediationStatus.PENDING)
    attempts = Column(Integer, nullable=False, default=0)
    transition_applied = Column(Boolean, nullable=False, default=False)
    completed_effects = Column(JSON, nullable=False, default=list)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class RefundRecord(Base):
    """One issued refund. The idempotency key is `<order_id>:<action>`."""
    __tablename__ = "refund_records"

    id = Column(Integer, primary_key=True, autoincrement=True)
    idempotency_key = Column(String(120), nullable=False, unique=True)
    order_id = Column(Integer, nullable=False, index=True)
    amount = Column(Integer, nullable=False)
    reason = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class ReviewTask(Base):
    """A manual review task raised by a remediation workflow."""
    __tablename__ = "review_tasks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    idempotency_key = Column(String(160), nullable=False, unique=True)
    order_id = Column(Integer, nullable=False, index=True)
    execution_id = Column(String(40), nullable=True)
    assign_to = Column(String(40), nullable=False)
    priority = Column(String(20), nullable=False, default="high")
    status = Column(SQLEnum(ReviewStatus), nullable=False, default=ReviewStatus.PENDING)
    # What an approved decision should do: "refund", "cancel" or nothing
    resolution_action = Column(String(20), nullable=True)
    deadline_at = Column(DateTime, nullable=True)
    decided_by = Column(String(80), nullable=True)
    decided_at = Column(DateTime, nullable=True)
    executed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
