"""
Exception classification: rules fire on AND-combined conditions, open one
record per (order, rule) and run their actions once.
"""
import pytest

from usage_orders.models.domain import ExceptionRecordRow
from usage_orders.models.enums import (
    ConditionOperator,
    ExceptionSeverity,
    ExceptionStatus,
    ExceptionType,
    OrderStatus,
    RuleActionType,
)
from usage_orders.services.conditions import Condition, evaluate, evaluate_all
from usage_orders.services.errors import RuleNotFoundError
from usage_orders.services.exception_classifier import ExceptionClassifier
from usage_orders.services.features import StaticFeatureProvider, default_feature_provider
from usage_orders.services.rules import ExceptionRule, RuleAction


def _cond(field, operator, value):
    return Condition.from_dict({"field": field, "operator": operator, "value": value})


def _rule(rule_id, severity, priority, conditions, actions=(), type_=ExceptionType.PAYMENT_FAILURE):
    return ExceptionRule(
        id=rule_id, name=rule_id, type=type_, severity=severity, priority=priority,
        conditions=tuple(conditions), actions=tuple(actions),
    )


@pytest.fixture
def classifier_for(session_factory, notifications, scheduler, clock, services):
    def build(rules, features=None):
        return ExceptionClassifier(
            session_factory, notifications, scheduler, features or StaticFeatureProvider(),
            clock=clock, rules=rules, workflows=services.workflows,
        )
    return build


class TestConditions:
    def test_missing_value_never_satisfies_a_comparison(self):
        assert evaluate(_cond("x", "gt", 0), None) is False
        assert evaluate(_cond("x", "lte", 10), None) is False

    def test_between_is_inclusive(self):
        condition = _cond("x", "between", [1, 5])
        assert evaluate(condition, 1) and evaluate(condition, 5)
        assert not evaluate(condition, 6)

    def test_enum_values_compare_by_value(self):
        assert evaluate(_cond("status", "eq", "PAID"), OrderStatus.PAID)
        assert evaluate(_cond("status", "in", ["PAID", "DONE"]), OrderStatus.DONE)

    def test_incomparable_types_do_not_match(self):
        assert evaluate(_cond("x", "gt", 3), "abc") is False

    def test_all_conditions_must_hold(self):
        conditions = [_cond("a", "eq", 1), _cond("b", "contains", "x")]
        assert evaluate_all(conditions, {"a": 1, "b": "xyz"})
        assert not evaluate_all(conditions, {"a": 1, "b": "yz"})

    def test_unknown_operator_is_rejected(self):
        with pytest.raises(ValueError):
            _cond("a", "approximately", 1)


class TestRiskScore:
    def test_two_fired_rules_add_up(self, classifier_for, make_order):
        """
        INVARIANT: MEDIUM p1 (25 * 1.1) plus HIGH p2 (50 * 1.2) gives 87.5.
        """
        classifier = classifier_for([
            _rule("medium", ExceptionSeverity.MEDIUM, 1, [_cond("status", "eq", "PAY_PENDING")]),
            _rule("high", ExceptionSeverity.HIGH, 2, [_cond("amount", "gte", 500)]),
        ])
        order = make_order(OrderStatus.PAY_PENDING, amount=1000)

        result = classifier.analyze_order(order.id)

        assert result.risk_score == pytest.approx(87.5)
        assert result.predicted_outcome == "high risk, intervene immediately"
        assert sorted(result.fired_rules) == ["high", "medium"]
        assert len(result.exceptions) == 2

    def test_score_is_capped(self, classifier_for, make_order):
        classifier = classifier_for([
            _rule(f"crit{i}", ExceptionSeverity.CRITICAL, i, [_cond("amount", "gt", 0)]) for i in range(1, 4)
        ])
        result = classifier.analyze_order(make_order().id)
        assert result.risk_score == 100.0

    def test_quiet_order_has_no_exceptions(self, classifier_for, make_order):
        classifier = classifier_for([_rule("never", ExceptionSeverity.HIGH, 1, [_cond("amount", "gt", 10 ** 9)])])
        result = classifier.analyze_order(make_order().id)
        assert result.exceptions == []
        assert result.risk_score == 0.0
        assert result.predicted_outcome == "normal order, no special handling"

    def test_disabled_rule_does_not_fire(self, classifier_for, make_order):
        classifier = classifier_for([_rule("r", ExceptionSeverity.LOW, 1, [_cond("amount", "gt", 0)])])
        classifier.toggle_rule("r", False)
        assert classifier.analyze_order(make_order().id).fired_rules == []

    def test_unknown_rule(self, classifier_for):
        with pytest.raises(RuleNotFoundError):
            classifier_for([]).toggle_rule("ghost", True)


class TestRecordsAndActions:
    def test_repeated_analysis_keeps_one_open_record(self, classifier_for, make_order, session_factory,
                                                      notifications):
        """
        INVARIANT: While a record is open, re-analysis neither duplicates it nor re-runs the actions.
        """
        classifier = classifier_for([_rule(
            "notify", ExceptionSeverity.MEDIUM, 1, [_cond("amount", "gt", 0)],
            actions=[RuleAction(RuleActionType.NOTIFY, {"channels": ["app"]})],
        )])
        order = make_order()

        classifier.analyze_order(order.id)
        second = classifier.analyze_order(order.id)

        with session_factory() as db:
            assert db.query(ExceptionRecordRow).filter_by(order_id=order.id).count() == 1
        assert len(notifications.user_messages) == 1
        assert second.risk_score == pytest.approx(27.5)

    def test_batch_skips_failing_orders(self, classifier_for, make_order):
        classifier = classifier_for([_rule("r", ExceptionSeverity.LOW, 1, [_cond("amount", "gt", 0)])])
        order = make_order()

        results = classifier.batch_analyze([order.id, 987654])

        assert [r.order_id for r in results] == [order.id]

    def test_delayed_action_waits_for_the_scheduler(self, classifier_for, make_order, scheduler, notifications):
        classifier = classifier_for([_rule(
            "later", ExceptionSeverity.LOW, 1, [_cond("amount", "gt", 0)],
            actions=[RuleAction(RuleActionType.NOTIFY, {"channels": ["admin"]}, delay_seconds=60)],
        )])
        classifier.analyze_order(make_order().id)

        assert notifications.admin_messages == []
        assert scheduler.pending == 1

        scheduler.run_until_idle()
        assert len(notifications.admin_messages) == 1

    def test_auto_resolve_closes_the_record(self, classifier_for, make_order, session_factory):
        classifier = classifier_for([_rule(
            "auto", ExceptionSeverity.LOW, 1, [_cond("amount", "gt", 0)],
            actions=[RuleAction(RuleActionType.AUTO_RESOLVE, {"action": "user_education"})],
        )])
        result = classifier.analyze_order(make_order().id)

        with session_factory() as db:
            record = db.get(ExceptionRecordRow, result.exceptions[0].id)
            assert record.status == ExceptionStatus.RESOLVED
            assert record.resolved_by == "auto"
            assert record.resolution == "user_education"

    def test_block_records_until_and_alerts(self, classifier_for, make_order, session_factory, notifications):
        classifier = classifier_for([_rule(
            "block", ExceptionSeverity.HIGH, 1, [_cond("amount", "gt", 0)],
            actions=[RuleAction(RuleActionType.BLOCK, {"duration": 600, "reason": "suspicious_activity"})],
        )])
        result = classifier.analyze_order(make_order().id)

        with session_factory() as db:
            details = db.get(ExceptionRecordRow, result.exceptions[0].id).details
        assert details["blocked_until"] == "2024-01-01T12:10:00"
        assert notifications.admin_messages[-1]["type"] == "user_blocked"

    def test_failing_action_does_not_stop_the_next(self, classifier_for, make_order, notifications):
        notifications.fail_user = True
        classifier = classifier_for([_rule(
            "both", ExceptionSeverity.LOW, 1, [_cond("amount", "gt", 0)],
            actions=[
                RuleAction(RuleActionType.NOTIFY, {"channels": ["app"]}),
                RuleAction(RuleActionType.ESCALATE, {"level": "supervisor"}),
            ],
        )])
        classifier.analyze_order(make_order().id)

        assert notifications.admin_messages[-1]["type"] == "exception_escalation"

    def test_workflow_action_links_execution_and_resolves_on_completion(self, services, make_order, scheduler,
                                                                         session_factory):
        services.classifier.add_rule(_rule(
            "wf", ExceptionSeverity.HIGH, 1, [_cond("amount", "gt", 0)],
            actions=[RuleAction(RuleActionType.WORKFLOW, {"workflow_id": "payment_timeout_workflow"})],
        ))
        # Not overdue yet: the workflow's own detection step ends it as completed
        result = services.classifier.analyze_order(make_order().id)
        record_id = result.exceptions[0].id

        with session_factory() as db:
            record = db.get(ExceptionRecordRow, record_id)
            assert record.status == ExceptionStatus.PROCESSING
            assert record.execution_id is not None

        scheduler.run_until_idle()

        with session_factory() as db:
            record = db.get(ExceptionRecordRow, record_id)
            assert record.status == ExceptionStatus.RESOLVED
            assert record.resolved_by == "workflow"


class TestHistorySignals:
    def test_default_payment_rule_fires_for_a_reliable_payer(self, services, make_order, clock, scheduler,
                                                               notifications, session_factory):
        user_id = 4000
        for _ in range(5):
            make_order(OrderStatus.DONE, user_id=user_id, paid_at=clock.now())
        order = make_order(OrderStatus.PAY_PENDING, user_id=user_id)
        clock.advance(minutes=11)
        classifier = ExceptionClassifier(
            session_factory, notifications, scheduler, default_feature_provider(clock),
            clock=clock, workflows=services.workflows,
        )

        result = classifier.analyze_order(order.id)

        assert result.fired_rules == ["payment_timeout_intelligent"]
        assert result.exceptions[0].details["matched"]["user_payment_history"] == 1.0
        assert notifications.user_messages[0][0] == user_id
        # The workflow action is delayed five minutes
        assert scheduler.pending == 1

    def test_new_user_without_history_is_not_flagged(self, services, make_order, clock, scheduler,
                                                     notifications, session_factory):
        order = make_order(OrderStatus.PAY_PENDING)
        clock.advance(minutes=11)
        classifier = ExceptionClassifier(
            session_factory, notifications, scheduler, default_feature_provider(clock),
            clock=clock, workflows=services.workflows,
        )
        assert classifier.analyze_order(order.id).fired_rules == []


class TestStatistics:
    def test_counts_group_by_type_severity_and_status(self, classifier_for, make_order):
        classifier = classifier_for([
            _rule("a", ExceptionSeverity.LOW, 1, [_cond("amount", "gt", 0)]),
            _rule("b", ExceptionSeverity.HIGH, 2, [_cond("amount", "gt", 0)], type_=ExceptionType.REFUND_ANOMALY),
        ])
        classifier.analyze_order(make_order().id)

        stats = classifier.get_statistics()

        assert stats["total"] == 2
        assert stats["recent"] == 2
        assert stats["by_severity"] == {"low": 1, "high": 1}
        assert stats["by_type"] == {"payment_failure": 1, "refund_anomaly": 1}
        assert stats["by_status"] == {"detected": 2}

    def test_rules_are_listed_by_priority(self, services):
        priorities = [r.priority for r in services.classifier.get_rules()]
        assert priorities == sorted(priorities)
        assert ConditionOperator.GTE in {c.operator for r in services.classifier.get_rules() for c in r.conditions}
