"""Timer scheduler, notification fan-out and structured log events."""
import threading

import pytest
from structlog.testing import capture_logs

from usage_orders.models.enums import OrderStatus
from usage_orders.services.gateways import FanOutNotificationGateway
from usage_orders.services.scheduler import ThreadingScheduler


class ExplodingChannel:
    name = "sms"

    def send_to_user(self, user_id, message):
        raise ConnectionError("sms provider down")

    def send_to_admins(self, message):
        raise ConnectionError("sms provider down")


class ListChannel:
    name = "app"

    def __init__(self):
        self.sent = []

    def send_to_user(self, user_id, message):
        self.sent.append((user_id, message["title"]))

    def send_to_admins(self, message):
        self.sent.append(("admins", message["title"]))


class TestThreadingScheduler:
    @pytest.fixture
    def timers(self):
        scheduler = ThreadingScheduler()
        yield scheduler
        scheduler.shutdown()

    def test_call_later_runs_with_arguments(self, timers):
        seen = []
        done = threading.Event()

        def record(value):
            seen.append(value)
            done.set()

        timers.call_later(0.01, record, "ran")

        assert done.wait(2)
        assert seen == ["ran"]

    def test_cancelled_call_never_runs(self, timers):
        fired = threading.Event()
        handle = timers.call_later(0.2, fired.set)
        handle.cancel()
        handle.cancel()
        assert not fired.wait(0.4)

    def test_periodic_job_repeats_until_cancelled(self, timers):
        ticks = []
        third = threading.Event()

        def tick():
            ticks.append(1)
            if len(ticks) >= 3:
                third.set()

        handle = timers.every(0.01, tick, "tick")
        assert third.wait(2)
        handle.cancel()
        assert handle.name == "tick"

    def test_non_positive_interval_is_rejected(self, timers):
        with pytest.raises(ValueError):
            timers.every(0, lambda: None, "bad")

    def test_nothing_runs_after_shutdown(self, timers):
        fired = threading.Event()
        timers.shutdown()
        timers.call_later(0.01, fired.set)
        assert not fired.wait(0.2)


class TestFanOutNotifications:
    def test_failing_channel_does_not_block_the_others(self):
        app = ListChannel()
        gateway = FanOutNotificationGateway([ExplodingChannel(), app])

        with capture_logs() as logs:
            gateway.send_to_user(7, {"title": "Order cancelled"})
            gateway.send_to_admins({"title": "Device down"})

        assert app.sent == [(7, "Order cancelled"), ("admins", "Device down")]
        failures = [e for e in logs if e["event"] == "notification_channel_failed"]
        assert [e["channel"] for e in failures] == ["sms", "sms"]


class TestLogEvents:
    def test_transition_is_logged_with_order_context(self, services, make_order, clock):
        order = make_order(OrderStatus.PAY_PENDING)
        clock.advance(minutes=16)

        with capture_logs() as logs:
            services.timeouts.scan_payment_timeouts()

        events = {e["event"] for e in logs}
        assert "order_transitioned" in events
        changed = next(e for e in logs if e["event"] == "order_transitioned")
        assert changed["order_id"] == order.id
