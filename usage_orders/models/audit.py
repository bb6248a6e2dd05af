"""
Internal audit logging model - NOT a user-facing domain object.

Provides an immutable, append-only trail of order transitions, refusals
and money movements.
"""
from sqlalchemy import JSON, Column, DateTime, Integer, String

from usage_orders.clock import utcnow
from usage_orders.database import Base


class AuditEvent(Base):
    """
    Immutable audit event.

    Invariants:
    - Once written, never edited or deleted
    - Append-only
    """
    __tablename__ = "audit_events"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    event_type = Column(String, nullable=False, index=True)  # e.g., "order_status_changed"
    entity_type = Column(String, nullable=False)  # e.g., "Order"
    entity_id = Column(String, nullable=False, index=True)
    actor = Column(String, nullable=True)  # Null for system events
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    payload_json = Column(JSON, nullable=True)


class AuditEventType:
    """Enumeration of audit event types."""
    ORDER_STATUS_CHANGED = "order_status_changed"
    ORDER_TRANSITION_REFUSED = "order_transition_refused"

    REFUND_ISSUED = "refund_issued"

    EXCEPTION_DETECTED = "exception_detected"
    EXCEPTION_STATUS_CHANGED = "exception_status_changed"

    REVIEW_TASK_CREATED = "review_task_created"
