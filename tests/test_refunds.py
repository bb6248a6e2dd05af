"""
Tests for refund issuance and its audit trail.

These tests prove:
- A refund is issued at most once per (order, action)
- refund_amount never exceeds paid_amount
- A failed ledger call leaves no refund behind
"""
import pytest

from usage_orders.models.audit import AuditEvent, AuditEventType
from usage_orders.models.domain import Order, RefundRecord
from usage_orders.models.enums import OrderStatus
from usage_orders.services.errors import GatewayError, OverRefundError
from usage_orders.services.refunds import RefundService, refund_key


@pytest.fixture
def refunds(ledger, clock):
    return RefundService(ledger, clock)


def _paid_order(db_session, make_order, paid=1000, refunded=0):
    order = make_order(OrderStatus.REFUNDING, paid_amount=paid, refund_amount=refunded)
    return db_session.get(Order, order.id)


class TestIdempotency:
    def test_same_key_refunds_once(self, refunds, db_session, make_order, ledger):
        order = _paid_order(db_session, make_order)

        first = refunds.issue(db_session, order, "initiate_refund", "device start timeout")
        second = refunds.issue(db_session, order, "initiate_refund", "device start timeout")

        assert first.id == second.id
        assert ledger.refunds == [(order.id, 1000, "device start timeout")]
        assert order.refund_amount == 1000

    def test_different_actions_are_separate_refunds(self, refunds, db_session, make_order, ledger):
        order = _paid_order(db_session, make_order)

        refunds.issue(db_session, order, "partial_a", "goodwill", amount=300)
        refunds.issue(db_session, order, "partial_b", "goodwill", amount=200)

        assert [amount for _, amount, _ in ledger.refunds] == [300, 200]
        assert order.refund_amount == 500

    def test_key_names_order_and_action(self):
        assert refund_key(12, "review_refund") == "12:review_refund"


class TestRefundBound:
    def test_default_amount_is_what_remains(self, refunds, db_session, make_order):
        order = _paid_order(db_session, make_order, paid=1000, refunded=400)
        record = refunds.issue(db_session, order, "rest", "remainder")
        assert record.amount == 600
        assert order.refund_amount == 1000

    def test_over_refund_is_refused(self, refunds, db_session, make_order, ledger):
        """
        INVARIANT: refund_amount never exceeds paid_amount.
        """
        order = _paid_order(db_session, make_order, paid=1000, refunded=800)

        with pytest.raises(OverRefundError) as exc_info:
            refunds.issue(db_session, order, "too_much", "oops", amount=300)

        assert exc_info.value.refundable == 200
        assert ledger.refunds == []

    def test_bound_is_what_was_paid_not_the_order_amount(self, refunds, db_session, make_order, ledger):
        order = _paid_order(db_session, make_order, paid=600)
        assert order.amount == 1000

        with pytest.raises(OverRefundError) as exc_info:
            refunds.issue(db_session, order, "full_amount", "refund list price", amount=700)

        assert exc_info.value.refundable == 600
        assert ledger.refunds == []

    def test_nothing_left_means_zero_refund_without_ledger_call(self, refunds, db_session, make_order, ledger):
        order = _paid_order(db_session, make_order, paid=1000, refunded=1000)
        record = refunds.issue(db_session, order, "empty", "already refunded")
        assert record.amount == 0
        assert ledger.refunds == []


class TestLedgerFailure:
    def test_failed_ledger_call_rolls_back_the_claim(self, refunds, db_session, make_order, ledger):
        order = _paid_order(db_session, make_order)
        ledger.fail = True

        with pytest.raises(GatewayError):
            refunds.issue(db_session, order, "initiate_refund", "device start timeout")

        assert db_session.query(RefundRecord).count() == 0
        assert db_session.get(Order, order.id).refund_amount == 0

        ledger.fail = False
        record = refunds.issue(db_session, order, "initiate_refund", "device start timeout")
        assert record.amount == 1000


class TestRefundAudit:
    def test_refund_is_audited(self, refunds, db_session, make_order):
        order = _paid_order(db_session, make_order)
        refunds.issue(db_session, order, "initiate_refund", "device start timeout")

        audit = db_session.query(AuditEvent).filter(
            AuditEvent.event_type == AuditEventType.REFUND_ISSUED,
            AuditEvent.entity_id == str(order.id),
        ).one()

        assert audit.entity_type == "Order"
        assert audit.payload_json["amount"] == 1000
        assert audit.payload_json["key"] == f"{order.id}:initiate_refund"
