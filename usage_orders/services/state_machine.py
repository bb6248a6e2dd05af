"""
Order state machine.

This is the core enforcement mechanism - every status change MUST go through
here. The transition table is closed-world: anything not listed is forbidden.
"""
from typing import Dict, List, Optional, Tuple

import structlog
from sqlalchemy.orm import Session

from usage_orders.clock import DEFAULT_CLOCK, Clock
from usage_orders.models.audit import AuditEvent, AuditEventType
from usage_orders.models.domain import Order
from usage_orders.models.enums import OrderStatus
from usage_orders.services.errors import IllegalTransitionError
from usage_orders.services.order_store import OrderStore

logger = structlog.get_logger(__name__)

ALLOWED_TRANSITIONS: Dict[OrderStatus, Tuple[OrderStatus, ...]] = {
    OrderStatus.INIT: (OrderStatus.PAY_PENDING, OrderStatus.CANCELLED, OrderStatus.CLOSED),
    OrderStatus.PAY_PENDING: (OrderStatus.PAID, OrderStatus.CANCELLED, OrderStatus.CLOSED),
    OrderStatus.PAID: (OrderStatus.STARTING, OrderStatus.REFUNDING),
    OrderStatus.STARTING: (OrderStatus.IN_USE, OrderStatus.REFUNDING),
    OrderStatus.IN_USE: (OrderStatus.SETTLING,),
    OrderStatus.SETTLING: (OrderStatus.DONE,),
    OrderStatus.REFUNDING: (OrderStatus.CLOSED,),
    OrderStatus.DONE: (),
    OrderStatus.CANCELLED: (),
    OrderStatus.CLOSED: (),
}

INITIAL_STATUSES = (OrderStatus.INIT, OrderStatus.PAY_PENDING)
TERMINAL_STATUSES = (OrderStatus.DONE, OrderStatus.CANCELLED, OrderStatus.CLOSED)


def allowed_targets(status: OrderStatus) -> List[OrderStatus]:
    """Statuses reachable in one step from `status`. Empty for terminal statuses."""
    return list(ALLOWED_TRANSITIONS.get(status, ()))


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, ())


class OrderStateMachine:
    """Validates and applies order status transitions."""

    def __init__(self, db: Session, clock: Clock = DEFAULT_CLOCK):
        self.db = db
        self.clock = clock
        self.store = OrderStore(db)

    def transition_to(
        self,
        order: Order,
        target: OrderStatus,
        reason: Optional[str] = None,
        actor: Optional[str] = None,
        **changes,
    ) -> Order:
        """
        Move `order` to `target`.

        Refusal invariants:
        - An unlisted target is refused, never coerced; status stays unchanged
        - The refusal is audited and raised as IllegalTransitionError

        Side effects on success: the matching timestamp is stamped, `changes`
        are applied to the row and an audit event is written in the same commit.
        """
        current = order.status
        if not can_transition(current, target):
            self.db.add(AuditEvent(
                event_type=AuditEventType.ORDER_TRANSITION_REFUSED,
                entity_type="Order",
                entity_id=str(order.id),
                actor=actor,
                payload_json={"from": current.value, "to": target.value, "reason": reason},
            ))
            self.db.commit()
            logger.warning(
                "order_transition_refused",
                order_id=order.id,
                current=current.value,
                target=target.value,
            )
            raise IllegalTransitionError(order.id, current, target, allowed_targets(current))

        for field in changes:
            if not hasattr(Order, field) or field in ("id", "status", "version"):
                raise ValueError(f"Cannot set '{field}' during a transition")

        now = self.clock.now()
        self._stamp(order, current, target, reason, now)
        for field, value in changes.items():
            setattr(order, field, value)
        order.status = target
        order.updated_at = now

        self.db.add(AuditEvent(
            event_type=AuditEventType.ORDER_STATUS_CHANGED,
            entity_type="Order",
            entity_id=str(order.id),
            actor=actor,
            created_at=now,
            payload_json={"from": current.value, "to": target.value, "reason": reason},
        ))
        self.store.save(order)

        logger.info(
            "order_transitioned",
            order_id=order.id,
            order_no=order.order_no,
            previous=current.value,
            status=target.value,
            reason=reason,
        )
        return order

    def try_transition(self, order: Order, target: OrderStatus, reason: Optional[str] = None, **changes) -> bool:
        """transition_to, reporting refusal as False instead of raising."""
        try:
            self.transition_to(order, target, reason=reason, **changes)
        except IllegalTransitionError:
            return False
        return True

    def finish_usage(
        self,
        order: Order,
        actual_minutes: Optional[int] = None,
        reason: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> Order:
        """
        Close a session: IN_USE -> SETTLING -> DONE, or SETTLING -> DONE if it
        already stopped halfway.

        duration_minutes is overwritten with the minutes actually used.
        """
        if order.status == OrderStatus.IN_USE:
            changes = {} if actual_minutes is None else {"duration_minutes": actual_minutes}
            self.transition_to(order, OrderStatus.SETTLING, reason=reason, actor=actor, **changes)
        return self.transition_to(order, OrderStatus.DONE, reason=reason, actor=actor)

    def _stamp(self, order: Order, current: OrderStatus, target: OrderStatus, reason: Optional[str], now) -> None:
        if target == OrderStatus.PAID and order.paid_at is None:
            order.paid_at = now
        elif target == OrderStatus.IN_USE and order.start_at is None:
            order.start_at = now
        elif target in (OrderStatus.SETTLING, OrderStatus.DONE) and order.end_at is None:
            order.end_at = now
        elif target == OrderStatus.CANCELLED:
            order.cancelled_at = now
            order.cancel_reason = reason
        elif target == OrderStatus.REFUNDING:
            order.refund_reason = reason
        elif target == OrderStatus.CLOSED:
            if current == OrderStatus.REFUNDING:
                order.refunded_at = now
            if reason:
                order.remark = reason
