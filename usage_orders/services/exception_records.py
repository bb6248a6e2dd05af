"""Status changes for exception records: detected -> processing -> resolved | escalated | ignored."""
from typing import Optional

import structlog
from sqlalchemy.orm import Session

from usage_orders.clock import Clock
from usage_orders.models.audit import AuditEvent, AuditEventType
from usage_orders.models.domain import ExceptionRecordRow
from usage_orders.models.enums import OPEN_EXCEPTION_STATUSES, ExceptionStatus
from usage_orders.services.errors import ExceptionRecordNotFoundError, RefusalError

logger = structlog.get_logger(__name__)

RECORD_TRANSITIONS = {
    ExceptionStatus.DETECTED: (
        ExceptionStatus.PROCESSING, ExceptionStatus.RESOLVED, ExceptionStatus.ESCALATED, ExceptionStatus.IGNORED,
    ),
    ExceptionStatus.PROCESSING: (ExceptionStatus.RESOLVED, ExceptionStatus.ESCALATED, ExceptionStatus.IGNORED),
    ExceptionStatus.RESOLVED: (),
    ExceptionStatus.ESCALATED: (),
    ExceptionStatus.IGNORED: (),
}


def get_record(db: Session, record_id: str) -> ExceptionRecordRow:
    record = db.get(ExceptionRecordRow, record_id)
    if record is None:
        raise ExceptionRecordNotFoundError(f"Exception record not found: {record_id}")
    return record


def move_record(
    db: Session,
    record: ExceptionRecordRow,
    target: ExceptionStatus,
    clock: Clock,
    resolved_by: Optional[str] = None,
    resolution: Optional[str] = None,
) -> ExceptionRecordRow:
    """Apply a record status change and audit it. Closed records cannot move."""
    current = record.status
    if target not in RECORD_TRANSITIONS[current]:
        raise RefusalError(
            f"REFUSAL: exception record {record.id} cannot move from {current.value} to {target.value}"
        )

    now = clock.now()
    record.status = target
    if target not in OPEN_EXCEPTION_STATUSES:
        record.resolved_at = now
        record.resolved_by = resolved_by
        record.resolution = resolution
    db.add(AuditEvent(
        event_type=AuditEventType.EXCEPTION_STATUS_CHANGED,
        entity_type="ExceptionRecord",
        entity_id=record.id,
        actor=resolved_by,
        created_at=now,
        payload_json={"from": current.value, "to": target.value, "resolution": resolution},
    ))
    db.commit()
    logger.info("exception_record_status_changed", record_id=record.id, order_id=record.order_id,
                previous=current.value, status=target.value)
    return record
