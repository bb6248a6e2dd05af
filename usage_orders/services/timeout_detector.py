"""
Timeout Detector - periodic scans for orders stuck past a deadline.

Four scans, each a read against the Order Store followed by remediation:
- payment: PAY_PENDING longer than the payment window -> CANCELLED
- start: PAID without reaching STARTING within the start window -> REFUNDING + refund
- usage: IN_USE longer than overtime_factor x planned duration -> SETTLING -> DONE
- settlement: SETTLING without progress -> admin alert, remark for manual review

Remediation of one (order, trigger) pair is tracked in a RemediationAttempt
row, so repeated or concurrent scans never apply a transition or a side
effect twice, and a failing side effect is retried on the next scan up to
max_remediation_attempts.
"""
import math
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional

import structlog
from sqlalchemy.orm import Session, sessionmaker
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt

from usage_orders.clock import DEFAULT_CLOCK, Clock
from usage_orders.config import Settings
from usage_orders.models.domain import Order, RemediationAttempt
from usage_orders.models.enums import OrderStatus, RemediationStatus, TimeoutKind
from usage_orders.services.errors import IllegalTransitionError, StaleOrderError
from usage_orders.services.gateways import DeviceGateway, NotificationGateway
from usage_orders.services.order_store import OrderFilter, OrderStore
from usage_orders.services.refunds import RefundService
from usage_orders.services.state_machine import OrderStateMachine

logger = structlog.get_logger(__name__)

STALE_RETRY_ATTEMPTS = 3

TRIGGER_STATUS = {
    TimeoutKind.PAYMENT: OrderStatus.PAY_PENDING,
    TimeoutKind.START: OrderStatus.PAID,
    TimeoutKind.USAGE: OrderStatus.IN_USE,
    TimeoutKind.SETTLEMENT: OrderStatus.SETTLING,
}

MANUAL_ACTIONS = ("refund", "complete", "cancel")


class TimeoutDetector:
    def __init__(
        self,
        session_factory: sessionmaker,
        notifications: NotificationGateway,
        devices: DeviceGateway,
        refunds: RefundService,
        settings: Settings,
        clock: Clock = DEFAULT_CLOCK,
    ):
        self.session_factory = session_factory
        self.notifications = notifications
        self.devices = devices
        self.refunds = refunds
        self.settings = settings
        self.clock = clock

    # ------------------------------------------------------------------
    # Scans
    # ------------------------------------------------------------------

    def run_all(self) -> Dict[str, int]:
        """Run every scan. A failing scan is logged and does not stop the others."""
        results: Dict[str, int] = {}
        for kind, scan in (
            (TimeoutKind.PAYMENT, self.scan_payment_timeouts),
            (TimeoutKind.START, self.scan_start_timeouts),
            (TimeoutKind.USAGE, self.scan_usage_overtime),
            (TimeoutKind.SETTLEMENT, self.scan_settlement_timeouts),
        ):
            try:
                results[kind.value] = scan()
            except Exception:
                logger.exception("timeout_scan_failed", trigger=kind.value)
                results[kind.value] = 0
        return results

    def scan_payment_timeouts(self) -> int:
        return self._scan(TimeoutKind.PAYMENT)

    def scan_start_timeouts(self) -> int:
        return self._scan(TimeoutKind.START)

    def scan_usage_overtime(self) -> int:
        return self._scan(TimeoutKind.USAGE)

    def scan_settlement_timeouts(self) -> int:
        return self._scan(TimeoutKind.SETTLEMENT)

    def get_timeout_stats(self) -> Dict[str, int]:
        """How many orders currently match each timeout predicate."""
        now = self.clock.now()
        with self.session_factory() as db:
            return {kind.value: len(self._find_triggered(db, kind, now)) for kind in TimeoutKind}

    def _scan(self, kind: TimeoutKind) -> int:
        now = self.clock.now()
        with self.session_factory() as db:
            candidates = [o.id for o in self._find_triggered(db, kind, now)]
            candidates.extend(self._pending_attempt_order_ids(db, kind))

        processed = 0
        for order_id in _unique(candidates):
            try:
                if self._remediate(kind, order_id):
                    processed += 1
            except Exception:
                logger.exception("timeout_remediation_failed", trigger=kind.value, order_id=order_id)
        logger.info("timeout_scan_finished", trigger=kind.value, candidates=len(candidates), processed=processed)
        return processed

    def _find_triggered(self, db: Session, kind: TimeoutKind, now: datetime) -> List[Order]:
        store = OrderStore(db)
        if kind == TimeoutKind.PAYMENT:
            cutoff = now - timedelta(minutes=self.settings.payment_timeout_minutes)
            return store.find(OrderFilter(status=OrderStatus.PAY_PENDING, created_before=cutoff))
        if kind == TimeoutKind.START:
            cutoff = now - timedelta(minutes=self.settings.start_timeout_minutes)
            return store.find(OrderFilter(status=OrderStatus.PAID, paid_before=cutoff))
        if kind == TimeoutKind.USAGE:
            return [o for o in store.find(OrderFilter(status=OrderStatus.IN_USE)) if self._is_overtime(o, now)]
        cutoff = now - timedelta(minutes=self.settings.settlement_timeout_minutes)
        return store.find(OrderFilter(status=OrderStatus.SETTLING, updated_before=cutoff))

    def _pending_attempt_order_ids(self, db: Session, kind: TimeoutKind) -> List[int]:
        rows = (
            db.query(RemediationAttempt.order_id)
            .filter(RemediationAttempt.trigger == kind, RemediationAttempt.status == RemediationStatus.PENDING)
            .order_by(RemediationAttempt.id)
            .all()
        )
        return [row.order_id for row in rows]

    def _is_overtime(self, order: Order, now: datetime) -> bool:
        elapsed = order.minutes_since(order.start_at, now)
        if elapsed is None or not order.duration_minutes:
            return False
        return elapsed > self.settings.usage_overtime_factor * order.duration_minutes

    def _is_triggered(self, kind: TimeoutKind, order: Order, now: datetime) -> bool:
        if kind == TimeoutKind.PAYMENT:
            return (order.status == OrderStatus.PAY_PENDING
                    and order.created_at < now - timedelta(minutes=self.settings.payment_timeout_minutes))
        if kind == TimeoutKind.START:
            return (order.status == OrderStatus.PAID and order.paid_at is not None
                    and order.paid_at < now - timedelta(minutes=self.settings.start_timeout_minutes))
        if kind == TimeoutKind.USAGE:
            return order.status == OrderStatus.IN_USE and self._is_overtime(order, now)
        return (order.status == OrderStatus.SETTLING
                and order.updated_at < now - timedelta(minutes=self.settings.settlement_timeout_minutes))

    # ------------------------------------------------------------------
    # Remediation
    # ------------------------------------------------------------------

    def _remediate(self, kind: TimeoutKind, order_id: int) -> bool:
        """Remediate one order, re-reading it when a concurrent writer wins the version race."""
        for attempt in Retrying(
            stop=stop_after_attempt(STALE_RETRY_ATTEMPTS),
            retry=retry_if_exception_type(StaleOrderError),
            reraise=True,
        ):
            with attempt:
                return self._remediate_once(kind, order_id)
        return False

    def _remediate_once(self, kind: TimeoutKind, order_id: int) -> bool:
        now = self.clock.now()
        with self.session_factory() as db:
            store = OrderStore(db)
            order = store.find_one(order_id)
            if order is None:
                return False

            attempt = (
                db.query(RemediationAttempt)
                .filter(RemediationAttempt.order_id == order_id, RemediationAttempt.trigger == kind)
                .one_or_none()
            )
            if attempt is not None and attempt.status != RemediationStatus.PENDING:
                return False
            if attempt is None:
                if not self._is_triggered(kind, order, now):
                    return False
                attempt = RemediationAttempt(
                    order_id=order_id,
                    device_id=order.device_id,
                    trigger=kind,
                    status=RemediationStatus.PENDING,
                    attempts=0,
                    completed_effects=[],
                    created_at=now,
                    updated_at=now,
                )
                db.add(attempt)

            attempt.attempts += 1
            attempt.updated_at = now
            db.commit()
            log = logger.bind(order_id=order_id, order_no=order.order_no, trigger=kind.value,
                              attempt=attempt.attempts)

            if not attempt.transition_applied:
                if not self._transition_pending(kind, order, now):
                    # Someone else moved the order on; nothing left to remediate
                    attempt.status = RemediationStatus.DONE
                    attempt.last_error = f"order left {TRIGGER_STATUS[kind].value} before remediation"
                    db.commit()
                    log.info("timeout_remediation_superseded", status=order.status.value)
                    return False
                try:
                    self._apply_transition(db, kind, order, now)
                except IllegalTransitionError as exc:
                    db.rollback()
                    attempt.status = RemediationStatus.DONE
                    attempt.last_error = exc.message
                    db.commit()
                    log.warning("timeout_remediation_refused", error=exc.message)
                    return False
                attempt.transition_applied = True
                db.commit()

            for name, effect in self._effects(kind, db, order, now):
                if name in attempt.completed_effects:
                    continue
                try:
                    effect()
                except StaleOrderError:
                    raise
                except Exception as exc:
                    db.rollback()
                    self._record_failure(db, attempt, order, name, exc)
                    return False
                attempt.completed_effects = [*attempt.completed_effects, name]
                db.commit()

            attempt.status = RemediationStatus.DONE
            attempt.last_error = None
            db.commit()
            log.info("timeout_remediated", status=order.status.value)
            return True

    def _transition_pending(self, kind: TimeoutKind, order: Order, now: datetime) -> bool:
        if kind == TimeoutKind.USAGE and order.status == OrderStatus.SETTLING:
            # Forced finish stopped between SETTLING and DONE
            return True
        if kind == TimeoutKind.SETTLEMENT:
            return order.status == OrderStatus.SETTLING
        return order.status == TRIGGER_STATUS[kind]

    def _apply_transition(self, db: Session, kind: TimeoutKind, order: Order, now: datetime) -> None:
        machine = OrderStateMachine(db, self.clock)
        if kind == TimeoutKind.PAYMENT:
            machine.transition_to(order, OrderStatus.CANCELLED, reason="payment timeout", actor="timeout_detector")
        elif kind == TimeoutKind.START:
            machine.transition_to(order, OrderStatus.REFUNDING, reason="device start timeout",
                                  actor="timeout_detector")
        elif kind == TimeoutKind.USAGE:
            elapsed = _whole_minutes(order.minutes_since(order.start_at, now))
            machine.finish_usage(order, elapsed, reason="usage overtime", actor="timeout_detector")
        # Settlement timeouts are flagged for manual review only

    def _effects(self, kind: TimeoutKind, db: Session, order: Order, now: datetime):
        """Ordered (name, callable) side effects for a trigger."""
        effects: List = []
        release = ("release_device", lambda: self.devices.release(order.device_id))

        if kind == TimeoutKind.PAYMENT:
            if order.device_id is not None:
                effects.append(release)
            effects.append(("notify_user", lambda: self.notifications.send_to_user(order.user_id, {
                "title": "Order cancelled",
                "content": f"Order {order.order_no} was cancelled because payment was not completed in time.",
                "type": "order_timeout",
                "data": {"order_id": order.id, "reason": "payment timeout"},
            })))
        elif kind == TimeoutKind.START:
            effects.append(("refund", lambda: self.refunds.issue(
                db, order, "start_timeout_refund", "device start timeout")))
            effects.append(("notify_user", lambda: self.notifications.send_to_user(order.user_id, {
                "title": "Refund issued",
                "content": f"The device for order {order.order_no} did not start. Your payment is being refunded.",
                "type": "order_refund",
                "data": {"order_id": order.id, "reason": "device start timeout"},
            })))
            if order.device_id is not None:
                effects.append(("check_maintenance", lambda: self._flag_device_if_repeated(db, order, now)))
        elif kind == TimeoutKind.USAGE:
            if order.device_id is not None:
                effects.append(release)
            effects.append(("notify_user", lambda: self.notifications.send_to_user(order.user_id, {
                "title": "Session ended",
                "content": (f"Order {order.order_no} ran past its planned time and was finished "
                            f"after {order.duration_minutes} minutes."),
                "type": "order_timeout",
                "data": {"order_id": order.id, "actual_minutes": order.duration_minutes},
            })))
            if (order.duration_minutes or 0) > self.settings.usage_alert_minutes:
                effects.append(("alert_admins", lambda: self.notifications.send_to_admins({
                    "title": "Device inspection needed",
                    "content": (f"Order {order.order_no} on device {order.device_id} ran "
                                f"{order.duration_minutes} minutes. Please inspect the device."),
                    "type": "usage_overtime",
                    "priority": "high",
                })))
        else:
            effects.append(("remark", lambda: OrderStore(db).update(order.id, {
                "remark": f"settlement timeout, manual review needed (last update {order.updated_at})",
                "updated_at": now,
            }, expected_version=order.version)))
            effects.append(("alert_admins", lambda: self.notifications.send_to_admins({
                "title": "Settlement timeout",
                "content": f"Order {order.order_no} has been settling since {order.updated_at}.",
                "type": "settlement_timeout",
                "priority": "medium",
            })))
        return effects

    def _flag_device_if_repeated(self, db: Session, order: Order, now: datetime) -> None:
        since = now - timedelta(hours=self.settings.device_maintenance_window_hours)
        recent = (
            db.query(RemediationAttempt)
            .filter(
                RemediationAttempt.device_id == order.device_id,
                RemediationAttempt.trigger == TimeoutKind.START,
                RemediationAttempt.created_at >= since,
            )
            .count()
        )
        if recent >= self.settings.device_maintenance_threshold:
            self.devices.mark_maintenance(
                order.device_id, f"{recent} start timeouts in {self.settings.device_maintenance_window_hours}h")
            logger.warning("device_flagged_for_maintenance", device_id=order.device_id, start_timeouts=recent)

    def _record_failure(self, db: Session, attempt: RemediationAttempt, order: Order, effect: str,
                        exc: Exception) -> None:
        attempt.last_error = f"{effect}: {exc}"
        exhausted = attempt.attempts >= self.settings.max_remediation_attempts
        if exhausted:
            attempt.status = RemediationStatus.ABANDONED
        db.commit()

        logger.warning("timeout_effect_failed", order_id=attempt.order_id, trigger=attempt.trigger.value,
                       effect=effect, attempt=attempt.attempts, abandoned=exhausted, error=str(exc))
        self.notifications.send_to_admins({
            "title": "Timeout remediation abandoned" if exhausted else "Timeout remediation failed",
            "content": (f"Order {order.order_no}: {effect} failed on attempt {attempt.attempts} "
                        f"({exc}). " + ("Manual handling required." if exhausted else "Will retry on next scan.")),
            "type": "timeout_remediation",
            "priority": "critical" if exhausted else "high",
        })

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------

    def manual_handle(self, order_id: int, action: str, reason: Optional[str] = None) -> Order:
        """
        Operator override for a stuck order.

        refund: PAID/STARTING -> REFUNDING and refund the remainder
        complete: finish an IN_USE or SETTLING order
        cancel: INIT/PAY_PENDING -> CANCELLED and release the device
        """
        if action not in MANUAL_ACTIONS:
            raise ValueError(f"Unknown manual action '{action}', expected one of {', '.join(MANUAL_ACTIONS)}")

        now = self.clock.now()
        with self.session_factory() as db:
            store = OrderStore(db)
            order = store.get(order_id)
            machine = OrderStateMachine(db, self.clock)

            if action == "refund":
                reason = reason or "manual refund by operator"
                if order.status != OrderStatus.REFUNDING:
                    machine.transition_to(order, OrderStatus.REFUNDING, reason=reason, actor="operator")
                self.refunds.issue(db, order, "manual_refund", reason)
            elif action == "complete":
                reason = reason or "completed by operator"
                elapsed = _whole_minutes(order.minutes_since(order.start_at, now))
                machine.finish_usage(order, elapsed, reason=reason, actor="operator")
            else:
                reason = reason or "cancelled by operator"
                machine.transition_to(order, OrderStatus.CANCELLED, reason=reason, actor="operator")
                if order.device_id is not None:
                    self.devices.release(order.device_id)

            logger.info("timeout_order_handled_manually", order_id=order_id, action=action, reason=reason)
            return order


def _whole_minutes(minutes: Optional[float]) -> int:
    return int(math.floor(minutes or 0))


def _unique(values: Iterable[int]) -> List[int]:
    seen = set()
    ordered = []
    for value in values:
        if value not in seen:
            seen.add(value)
            ordered.append(value)
    return ordered
