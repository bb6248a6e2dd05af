"""
Derived signals for exception rules.

A rule condition names either an order column or a derived feature such as
`user_payment_history` or `device_failure_rate`. Features come from a
FeatureProvider so a heuristic, a model or a static default can stand
behind the same field name.
"""
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Protocol

from sqlalchemy import func
from sqlalchemy.orm import Session

from usage_orders.clock import DEFAULT_CLOCK, Clock
from usage_orders.models.domain import PAID_STATUSES, Order, RemediationAttempt
from usage_orders.models.enums import OrderStatus, PaymentMethod, TimeoutKind

DEFAULT_WINDOW_MINUTES = 1440


class FeatureProvider(Protocol):
    def provides(self, field: str) -> bool: ...

    def get(self, db: Session, order: Order, field: str, time_window_minutes: Optional[int] = None) -> Any:
        """Value of `field` for `order`, or None when there is no data."""
        ...


class StaticFeatureProvider:
    """Fixed values for signals that have no data source yet."""

    NEUTRAL_DEFAULTS: Dict[str, Any] = {
        "device_usage_anomaly": 0.0,
        "maintenance_overdue": 0,
        "user_risk_score": 0.0,
        "location_anomaly_score": 0.0,
        "refund_reason_consistency": 1.0,
    }

    def __init__(self, values: Optional[Dict[str, Any]] = None):
        self.values = dict(self.NEUTRAL_DEFAULTS if values is None else values)

    def provides(self, field: str) -> bool:
        return field in self.values

    def get(self, db: Session, order: Order, field: str, time_window_minutes: Optional[int] = None) -> Any:
        return self.values.get(field)


class HistoryFeatureProvider:
    """Signals computed from the user's and device's order history."""

    PAYMENT_METHOD_RISK = {
        PaymentMethod.WECHAT_PAY: 0.1,
        PaymentMethod.BALANCE: 0.1,
    }
    UNKNOWN_PAYMENT_METHOD_RISK = 0.5

    def __init__(self, clock: Clock = DEFAULT_CLOCK):
        self.clock = clock
        self._handlers = {
            "user_payment_history": self._user_payment_success_rate,
            "user_order_frequency": self._user_order_frequency,
            "user_cancellation_rate": self._user_cancellation_rate,
            "cancellation_count": self._user_cancellation_count,
            "cancellation_timing": self._average_cancellation_seconds,
            "refund_frequency": self._user_refund_frequency,
            "payment_method_changes": self._payment_method_changes,
            "payment_method_risk": self._payment_method_risk,
            "device_failure_rate": self._device_failure_rate,
        }

    def provides(self, field: str) -> bool:
        return field in self._handlers

    def get(self, db: Session, order: Order, field: str, time_window_minutes: Optional[int] = None) -> Any:
        return self._handlers[field](db, order, time_window_minutes)

    def _since(self, window: Optional[int], default: Optional[int] = None) -> Optional[datetime]:
        minutes = window or default
        if minutes is None:
            return None
        return self.clock.now() - timedelta(minutes=minutes)

    def _user_orders(self, db: Session, order: Order, since: Optional[datetime]) -> List[Order]:
        query = db.query(Order).filter(Order.user_id == order.user_id)
        if since is not None:
            query = query.filter(Order.created_at >= since)
        return query.order_by(Order.created_at, Order.id).all()

    def _user_payment_success_rate(self, db, order, window):
        """Share of the user's past orders that were paid. None without history."""
        history = [o for o in self._user_orders(db, order, self._since(window)) if o.id != order.id]
        if not history:
            return None
        paid = sum(1 for o in history if o.status in PAID_STATUSES or o.paid_at is not None)
        return paid / len(history)

    def _user_order_frequency(self, db, order, window):
        return len(self._user_orders(db, order, self._since(window, 60)))

    def _user_cancellation_rate(self, db, order, window):
        orders = self._user_orders(db, order, self._since(window, DEFAULT_WINDOW_MINUTES))
        if not orders:
            return 0.0
        return sum(1 for o in orders if o.status == OrderStatus.CANCELLED) / len(orders)

    def _user_cancellation_count(self, db, order, window):
        orders = self._user_orders(db, order, self._since(window, DEFAULT_WINDOW_MINUTES))
        return sum(1 for o in orders if o.status == OrderStatus.CANCELLED)

    def _average_cancellation_seconds(self, db, order, window):
        """Mean seconds from creation to cancellation. None if the user never cancelled."""
        spans = [
            (o.cancelled_at - o.created_at).total_seconds()
            for o in self._user_orders(db, order, self._since(window))
            if o.status == OrderStatus.CANCELLED and o.cancelled_at is not None
        ]
        if not spans:
            return None
        return sum(spans) / len(spans)

    def _user_refund_frequency(self, db, order, window):
        orders = self._user_orders(db, order, self._since(window, DEFAULT_WINDOW_MINUTES))
        return sum(1 for o in orders if (o.refund_amount or 0) > 0 or o.status == OrderStatus.REFUNDING)

    def _payment_method_changes(self, db, order, window):
        methods = _compact(
            o.payment_method for o in self._user_orders(db, order, self._since(window, DEFAULT_WINDOW_MINUTES))
        )
        return sum(1 for prev, cur in zip(methods, methods[1:]) if prev != cur)

    def _payment_method_risk(self, db, order, window):
        if order.payment_method is None:
            return self.UNKNOWN_PAYMENT_METHOD_RISK
        return self.PAYMENT_METHOD_RISK.get(order.payment_method, self.UNKNOWN_PAYMENT_METHOD_RISK)

    def _device_failure_rate(self, db, order, window):
        """Start timeouts over sessions on the device inside the window."""
        if order.device_id is None:
            return None
        since = self._since(window, DEFAULT_WINDOW_MINUTES)
        sessions = (
            db.query(func.count(Order.id))
            .filter(Order.device_id == order.device_id, Order.created_at >= since)
            .scalar()
        )
        if not sessions:
            return 0.0
        failures = (
            db.query(func.count(RemediationAttempt.id))
            .filter(
                RemediationAttempt.device_id == order.device_id,
                RemediationAttempt.trigger == TimeoutKind.START,
                RemediationAttempt.created_at >= since,
            )
            .scalar()
        )
        return failures / sessions


class CompositeFeatureProvider:
    """Ask each provider in turn; the first that knows the field answers."""

    def __init__(self, providers: Iterable[FeatureProvider]):
        self.providers = list(providers)

    def provides(self, field: str) -> bool:
        return any(p.provides(field) for p in self.providers)

    def get(self, db: Session, order: Order, field: str, time_window_minutes: Optional[int] = None) -> Any:
        for provider in self.providers:
            if provider.provides(field):
                return provider.get(db, order, field, time_window_minutes)
        return None


def default_feature_provider(clock: Clock = DEFAULT_CLOCK) -> CompositeFeatureProvider:
    return CompositeFeatureProvider([HistoryFeatureProvider(clock), StaticFeatureProvider()])


def _compact(values: Iterable[Any]) -> List[Any]:
    return [v for v in values if v is not None]
