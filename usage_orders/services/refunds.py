"""Idempotent refund issuance shared by timeout remediation and workflow actions."""
from typing import Optional

import structlog
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from usage_orders.clock import DEFAULT_CLOCK, Clock
from usage_orders.models.audit import AuditEvent, AuditEventType
from usage_orders.models.domain import Order, RefundRecord
from usage_orders.services.errors import OverRefundError, StaleOrderError
from usage_orders.services.gateways import LedgerGateway

logger = structlog.get_logger(__name__)


def refund_key(order_id: int, action: str) -> str:
    return f"{order_id}:{action}"


class RefundService:
    """
    Issues refunds at most once per (order, action).

    Invariants:
    - A second call with the same key returns the first record, the ledger is not called again
    - refund_amount never exceeds paid_amount; asking for more raises OverRefundError
    """

    def __init__(self, ledger: LedgerGateway, clock: Clock = DEFAULT_CLOCK):
        self.ledger = ledger
        self.clock = clock

    def find(self, db: Session, order_id: int, action: str) -> Optional[RefundRecord]:
        return db.query(RefundRecord).filter(RefundRecord.idempotency_key == refund_key(order_id, action)).one_or_none()

    def issue(self, db: Session, order: Order, action: str, reason: str, amount: Optional[int] = None) -> RefundRecord:
        existing = self.find(db, order.id, action)
        if existing is not None:
            logger.info("refund_already_issued", order_id=order.id, key=existing.idempotency_key)
            return existing

        refundable = order.refundable_amount
        if amount is None:
            amount = refundable
        if amount < 0 or amount > refundable:
            raise OverRefundError(order.id, amount, refundable)

        now = self.clock.now()
        record = RefundRecord(
            idempotency_key=refund_key(order.id, action),
            order_id=order.id,
            amount=amount,
            reason=reason,
            created_at=now,
        )
        order.refund_amount = (order.refund_amount or 0) + amount
        order.updated_at = now
        db.add(record)
        db.add(AuditEvent(
            event_type=AuditEventType.REFUND_ISSUED,
            entity_type="Order",
            entity_id=str(order.id),
            created_at=now,
            payload_json={"amount": amount, "reason": reason, "key": record.idempotency_key},
        ))
        # The unique key claims the refund before money moves
        try:
            db.flush()
        except StaleDataError:
            db.rollback()
            raise StaleOrderError(record.order_id) from None
        try:
            if amount > 0:
                self.ledger.initiate_refund(order.id, amount, reason)
        except Exception:
            db.rollback()
            raise
        db.commit()

        logger.info("refund_issued", order_id=order.id, amount=amount, key=record.idempotency_key)
        return record
