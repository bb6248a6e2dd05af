"""Timeout scans: each stuck order is remediated once, with every side effect applied once."""
from datetime import timedelta

import pytest

from usage_orders.models.domain import Order, RefundRecord, RemediationAttempt
from usage_orders.models.enums import OrderStatus, RemediationStatus, TimeoutKind
from usage_orders.services.errors import IllegalTransitionError


def _reload(session_factory, order_id):
    with session_factory() as db:
        return db.get(Order, order_id)


class TestPaymentTimeout:
    def test_stale_unpaid_order_is_cancelled_and_device_released(self, services, make_order, clock, devices,
                                                                  notifications, session_factory):
        order = make_order(OrderStatus.PAY_PENDING)
        clock.advance(minutes=16)

        assert services.timeouts.scan_payment_timeouts() == 1

        reloaded = _reload(session_factory, order.id)
        assert reloaded.status == OrderStatus.CANCELLED
        assert reloaded.cancel_reason == "payment timeout"
        assert devices.released == [order.device_id]
        assert [uid for uid, _ in notifications.user_messages] == [order.user_id]

    def test_double_scan_releases_device_once(self, services, make_order, clock, devices):
        """
        INVARIANT: Running the scan twice never repeats the cancellation or the release.
        """
        order = make_order(OrderStatus.PAY_PENDING)
        clock.advance(minutes=16)

        services.timeouts.scan_payment_timeouts()
        services.timeouts.scan_payment_timeouts()

        assert devices.released == [order.device_id]

    def test_order_inside_window_is_left_alone(self, services, make_order, clock, session_factory):
        order = make_order(OrderStatus.PAY_PENDING)
        clock.advance(minutes=14)

        assert services.timeouts.scan_payment_timeouts() == 0
        assert _reload(session_factory, order.id).status == OrderStatus.PAY_PENDING

    def test_failed_release_is_retried_without_repeating_the_transition(self, services, make_order, clock,
                                                                         devices, notifications, session_factory):
        order = make_order(OrderStatus.PAY_PENDING)
        clock.advance(minutes=16)
        devices.fail_release = True

        assert services.timeouts.scan_payment_timeouts() == 0
        assert _reload(session_factory, order.id).status == OrderStatus.CANCELLED
        assert notifications.admin_messages[-1]["title"] == "Timeout remediation failed"

        devices.fail_release = False
        assert services.timeouts.scan_payment_timeouts() == 1
        assert devices.released == [order.device_id]
        with session_factory() as db:
            attempt = db.query(RemediationAttempt).filter_by(order_id=order.id).one()
            assert attempt.status == RemediationStatus.DONE
            assert attempt.attempts == 2
            assert attempt.completed_effects == ["release_device", "notify_user"]

    def test_attempts_are_capped(self, services, make_order, clock, devices, notifications, session_factory,
                                 settings):
        order = make_order(OrderStatus.PAY_PENDING)
        clock.advance(minutes=16)
        devices.fail_release = True

        for _ in range(settings.max_remediation_attempts + 2):
            services.timeouts.scan_payment_timeouts()

        with session_factory() as db:
            attempt = db.query(RemediationAttempt).filter_by(order_id=order.id).one()
            assert attempt.status == RemediationStatus.ABANDONED
            assert attempt.attempts == settings.max_remediation_attempts
        assert notifications.admin_messages[-1]["title"] == "Timeout remediation abandoned"


class TestStartTimeout:
    def test_paid_order_that_never_started_is_refunded(self, services, make_order, clock, ledger,
                                                        session_factory):
        order = make_order(OrderStatus.PAID, paid_amount=1000, paid_at=clock.now())
        clock.advance(minutes=6)

        assert services.timeouts.scan_start_timeouts() == 1

        reloaded = _reload(session_factory, order.id)
        assert reloaded.status == OrderStatus.REFUNDING
        assert reloaded.refund_amount == 1000
        assert ledger.refunds == [(order.id, 1000, "device start timeout")]

    def test_refund_is_issued_once_across_scans(self, services, make_order, clock, ledger, session_factory):
        order = make_order(OrderStatus.PAID, paid_amount=1000, paid_at=clock.now())
        clock.advance(minutes=6)

        services.timeouts.scan_start_timeouts()
        services.timeouts.scan_start_timeouts()

        assert len(ledger.refunds) == 1
        with session_factory() as db:
            assert db.query(RefundRecord).filter_by(order_id=order.id).count() == 1

    def test_repeated_start_timeouts_flag_the_device(self, services, make_order, clock, devices):
        device_id = 900
        make_order(OrderStatus.PAID, device_id=device_id, paid_at=clock.now())
        make_order(OrderStatus.PAID, device_id=device_id, paid_at=clock.now())
        clock.advance(minutes=6)

        services.timeouts.scan_start_timeouts()

        assert [d for d, _ in devices.maintenance] == [device_id]


class TestUsageOvertime:
    def test_overtime_session_is_forced_to_done_with_actual_minutes(self, services, make_order, clock,
                                                                    session_factory, devices):
        """
        INVARIANT: 61 minutes on a 30 minute plan (factor 2) is overtime and finishes at 61 minutes.
        """
        start = clock.now()
        order = make_order(OrderStatus.IN_USE, duration_minutes=30, start_at=start)
        clock.set(start + timedelta(minutes=61))

        assert services.timeouts.scan_usage_overtime() == 1

        reloaded = _reload(session_factory, order.id)
        assert reloaded.status == OrderStatus.DONE
        assert reloaded.duration_minutes == 61
        assert devices.released == [order.device_id]

    def test_session_within_factor_is_not_overtime(self, services, make_order, clock, session_factory):
        start = clock.now()
        order = make_order(OrderStatus.IN_USE, duration_minutes=30, start_at=start)
        clock.set(start + timedelta(minutes=59))

        assert services.timeouts.scan_usage_overtime() == 0
        assert _reload(session_factory, order.id).status == OrderStatus.IN_USE

    def test_long_session_alerts_admins(self, services, make_order, clock, notifications):
        start = clock.now()
        make_order(OrderStatus.IN_USE, duration_minutes=60, start_at=start)
        clock.set(start + timedelta(minutes=121))

        services.timeouts.scan_usage_overtime()

        assert any(m["type"] == "usage_overtime" for m in notifications.admin_messages)


class TestSettlementTimeout:
    def test_stuck_settlement_gets_remark_and_alert_once(self, services, make_order, clock, notifications,
                                                         session_factory):
        order = make_order(OrderStatus.SETTLING)
        clock.advance(minutes=11)

        services.timeouts.scan_settlement_timeouts()
        services.timeouts.scan_settlement_timeouts()

        reloaded = _reload(session_factory, order.id)
        assert reloaded.status == OrderStatus.SETTLING
        assert "manual review" in reloaded.remark
        alerts = [m for m in notifications.admin_messages if m["type"] == "settlement_timeout"]
        assert len(alerts) == 1


class TestRunAllAndStats:
    def test_run_all_reports_every_kind(self, services):
        assert set(services.timeouts.run_all()) == {k.value for k in TimeoutKind}

    def test_stats_count_matching_orders(self, services, make_order, clock):
        make_order(OrderStatus.PAY_PENDING)
        make_order(OrderStatus.PAY_PENDING)
        clock.advance(minutes=16)

        stats = services.timeouts.get_timeout_stats()

        assert stats["payment"] == 2
        assert stats["start"] == 0


class TestManualHandle:
    def test_cancel_releases_device(self, services, make_order, devices):
        order = make_order(OrderStatus.PAY_PENDING)
        handled = services.timeouts.manual_handle(order.id, "cancel")
        assert handled.status == OrderStatus.CANCELLED
        assert devices.released == [order.device_id]

    def test_complete_finishes_session(self, services, make_order, clock):
        order = make_order(OrderStatus.IN_USE, start_at=clock.now())
        clock.advance(minutes=20)
        handled = services.timeouts.manual_handle(order.id, "complete")
        assert handled.status == OrderStatus.DONE
        assert handled.duration_minutes == 20

    def test_refund_on_finished_order_is_refused(self, services, make_order):
        order = make_order(OrderStatus.DONE)
        with pytest.raises(IllegalTransitionError):
            services.timeouts.manual_handle(order.id, "refund")

    def test_unknown_action_is_rejected(self, services, make_order):
        order = make_order(OrderStatus.PAID)
        with pytest.raises(ValueError):
            services.timeouts.manual_handle(order.id, "explode")
