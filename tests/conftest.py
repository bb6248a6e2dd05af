"""Pytest configuration and shared fixtures."""
import heapq
import itertools
from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from usage_orders.clock import MockClock
from usage_orders.config import Settings
from usage_orders.database import Base, build_session_factory
from usage_orders.models import audit, domain  # noqa: F401
from usage_orders.models.domain import Order
from usage_orders.models.enums import OrderStatus, PaymentMethod
from usage_orders.services.container import build_services
from usage_orders.services.errors import GatewayError
from usage_orders.services.features import StaticFeatureProvider
from usage_orders.services.scheduler import ScheduledCall

START = datetime(2024, 1, 1, 12, 0, 0)


class ManualScheduler:
    """
    Runs scheduled continuations only when the test asks, in due order,
    moving the mock clock forward to each due time.
    """

    def __init__(self, clock: MockClock):
        self.clock = clock
        self._queue = []
        self._seq = itertools.count()
        self.periodic = []

    def call_later(self, delay, fn, *args):
        handle = ScheduledCall(getattr(fn, "__name__", None))
        due = self.clock.now() + timedelta(seconds=delay)
        heapq.heappush(self._queue, (due, next(self._seq), handle, fn, args))
        return handle

    def every(self, interval, fn, name):
        handle = ScheduledCall(name)
        self.periodic.append((interval, fn, handle))
        return handle

    def shutdown(self):
        self._queue.clear()

    @property
    def pending(self):
        return sum(1 for _, _, handle, _, _ in self._queue if not handle.cancelled)

    def run_due(self, max_calls=500):
        """Run only what is due now; the clock does not move."""
        calls = 0
        while self._queue and self._queue[0][0] <= self.clock.now():
            _, _, handle, fn, args = heapq.heappop(self._queue)
            if handle.cancelled:
                continue
            fn(*args)
            calls += 1
            if calls >= max_calls:
                raise AssertionError("scheduler did not go idle")
        return calls

    def run_until_idle(self, max_calls=500):
        calls = 0
        while self._queue:
            due, _, handle, fn, args = heapq.heappop(self._queue)
            if handle.cancelled:
                continue
            if due > self.clock.now():
                self.clock.set(due)
            fn(*args)
            calls += 1
            if calls >= max_calls:
                raise AssertionError("scheduler did not go idle")
        return calls


class RecordingNotifications:
    def __init__(self):
        self.user_messages = []
        self.admin_messages = []
        self.fail_user = False

    def send_to_user(self, user_id, message):
        if self.fail_user:
            raise GatewayError("notification channel down")
        self.user_messages.append((user_id, message))

    def send_to_admins(self, message):
        self.admin_messages.append(message)


class RecordingDevices:
    def __init__(self):
        self.released = []
        self.maintenance = []
        self.start_results = []
        self.start_calls = 0
        self.fail_release = False

    def release(self, device_id):
        if self.fail_release:
            raise GatewayError("device offline")
        self.released.append(device_id)

    def mark_maintenance(self, device_id, reason):
        self.maintenance.append((device_id, reason))

    def retry_start(self, device_id):
        self.start_calls += 1
        if self.start_results:
            return self.start_results.pop(0)
        return True


class RecordingLedger:
    def __init__(self):
        self.refunds = []
        self.fail = False

    def initiate_refund(self, order_id, amount, reason):
        if self.fail:
            raise GatewayError("ledger unavailable")
        self.refunds.append((order_id, amount, reason))


@pytest.fixture
def engine():
    """Fresh in-memory database shared by every session of one test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def clock():
    return MockClock(START)


@pytest.fixture
def scheduler(clock):
    return ManualScheduler(clock)


@pytest.fixture
def notifications():
    return RecordingNotifications()


@pytest.fixture
def devices():
    return RecordingDevices()


@pytest.fixture
def ledger():
    return RecordingLedger()


@pytest.fixture
def settings():
    return Settings(database_url="sqlite:///:memory:", scheduler_enabled=False, step_retry_backoff_seconds=5.0)


@pytest.fixture
def services(settings, session_factory, clock, scheduler, notifications, devices, ledger):
    services = build_services(
        settings,
        session_factory,
        clock=clock,
        scheduler=scheduler,
        notifications=notifications,
        devices=devices,
        ledger=ledger,
        features=StaticFeatureProvider(),
    )
    yield services
    services.workflows.shutdown()


@pytest.fixture
def make_order(session_factory, clock):
    """Insert an order directly, the way the order-creation collaborator would."""
    counter = itertools.count(1)

    def factory(status=OrderStatus.PAY_PENDING, **fields):
        n = next(counter)
        values = {
            "order_no": f"ORD{n:06d}",
            "user_id": 100 + n,
            "merchant_id": 1,
            "device_id": 500 + n,
            "status": status,
            "payment_method": PaymentMethod.WECHAT_PAY,
            "amount": 1000,
            "paid_amount": 0,
            "refund_amount": 0,
            "duration_minutes": 30,
            "created_at": clock.now(),
            "updated_at": clock.now(),
        }
        values.update(fields)
        with session_factory() as db:
            order = Order(**values)
            db.add(order)
            db.commit()
            db.refresh(order)
            return order

    return factory
