"""
Order Store - the single source of truth for order state.

All scans and workflow steps read through here and write back through
here. Writes are conditioned on the row version so a timeout scan and a
user action racing on the same order cannot silently overwrite each other.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from usage_orders.clock import utcnow
from usage_orders.models.domain import Order
from usage_orders.models.enums import OrderStatus
from usage_orders.services.errors import OrderNotFoundError, StaleOrderError


@dataclass
class OrderFilter:
    """Status and time-window predicates used by the scans."""
    status: Optional[OrderStatus] = None
    status_in: Optional[Iterable[OrderStatus]] = None
    created_before: Optional[datetime] = None
    created_after: Optional[datetime] = None
    paid_before: Optional[datetime] = None
    started_before: Optional[datetime] = None
    updated_before: Optional[datetime] = None
    updated_after: Optional[datetime] = None
    user_id: Optional[int] = None
    device_id: Optional[int] = None
    merchant_id: Optional[int] = None
    limit: Optional[int] = None


class OrderStore:
    """Repository over the orders table."""

    def __init__(self, db: Session):
        self.db = db

    def find(self, criteria: Optional[OrderFilter] = None) -> List[Order]:
        criteria = criteria or OrderFilter()
        query = self.db.query(Order)

        if criteria.status is not None:
            query = query.filter(Order.status == criteria.status)
        if criteria.status_in is not None:
            query = query.filter(Order.status.in_(list(criteria.status_in)))
        if criteria.created_before is not None:
            query = query.filter(Order.created_at < criteria.created_before)
        if criteria.created_after is not None:
            query = query.filter(Order.created_at >= criteria.created_after)
        if criteria.paid_before is not None:
            query = query.filter(Order.paid_at.isnot(None), Order.paid_at < criteria.paid_before)
        if criteria.started_before is not None:
            query = query.filter(Order.start_at.isnot(None), Order.start_at < criteria.started_before)
        if criteria.updated_before is not None:
            query = query.filter(Order.updated_at < criteria.updated_before)
        if criteria.updated_after is not None:
            query = query.filter(Order.updated_at >= criteria.updated_after)
        if criteria.user_id is not None:
            query = query.filter(Order.user_id == criteria.user_id)
        if criteria.device_id is not None:
            query = query.filter(Order.device_id == criteria.device_id)
        if criteria.merchant_id is not None:
            query = query.filter(Order.merchant_id == criteria.merchant_id)

        query = query.order_by(Order.id)
        if criteria.limit is not None:
            query = query.limit(criteria.limit)
        return query.all()

    def find_one(self, order_id: int) -> Optional[Order]:
        return self.db.get(Order, order_id, populate_existing=True)

    def get(self, order_id: int) -> Order:
        """find_one, but a missing order is an error."""
        order = self.find_one(order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        return order

    def update(self, order_id: int, partial: dict, expected_version: Optional[int] = None) -> None:
        """
        Apply a partial update.

        If expected_version is given the write only lands when the row still
        has that version; otherwise StaleOrderError is raised.
        """
        values = dict(partial)
        values.pop("version", None)
        values.setdefault("updated_at", utcnow())
        values["version"] = Order.version + 1

        stmt = update(Order).where(Order.id == order_id)
        if expected_version is not None:
            stmt = stmt.where(Order.version == expected_version)
        result = self.db.execute(stmt.values(**values).execution_options(synchronize_session=False))

        if result.rowcount == 0:
            self.db.rollback()
            if self.db.get(Order, order_id) is None:
                raise OrderNotFoundError(order_id)
            raise StaleOrderError(order_id, expected_version)
        self.db.commit()
        self.db.expire_all()

    def save(self, order: Order) -> Order:
        """Insert or flush an order. The mapper's version check guards concurrent writers."""
        order_id = order.id
        self.db.add(order)
        try:
            self.db.commit()
        except StaleDataError:
            self.db.rollback()
            raise StaleOrderError(order_id) from None
        self.db.refresh(order)
        return order
