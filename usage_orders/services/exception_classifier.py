"""
Exception Classifier.

Evaluates every enabled rule against an order and its derived signals.
A rule fires when all of its conditions hold; a firing rule opens an
exception record (unless one is already open for that order and rule),
adds to the order's risk score and runs the rule's actions.
"""
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

import structlog
from sqlalchemy import func
from sqlalchemy.orm import Session, sessionmaker

from usage_orders.clock import DEFAULT_CLOCK, Clock
from usage_orders.models.audit import AuditEvent, AuditEventType
from usage_orders.models.domain import ExceptionRecordRow, Order
from usage_orders.models.enums import (
    OPEN_EXCEPTION_STATUSES,
    ExceptionSeverity,
    ExceptionStatus,
    ExceptionType,
    OrderStatus,
    RuleActionType,
)
from usage_orders.services.conditions import Condition, evaluate
from usage_orders.services.errors import RuleNotFoundError
from usage_orders.services.exception_records import get_record, move_record
from usage_orders.services.features import FeatureProvider
from usage_orders.services.gateways import NotificationGateway
from usage_orders.services.order_store import OrderFilter, OrderStore
from usage_orders.services.rules import ExceptionRule, RuleAction, default_rules
from usage_orders.services.scheduler import Scheduler
from usage_orders.services.state_machine import TERMINAL_STATUSES

logger = structlog.get_logger(__name__)

SEVERITY_WEIGHTS = {
    ExceptionSeverity.LOW: 10,
    ExceptionSeverity.MEDIUM: 25,
    ExceptionSeverity.HIGH: 50,
    ExceptionSeverity.CRITICAL: 80,
}
MAX_RISK_SCORE = 100.0

RECOMMENDATIONS = {
    ExceptionType.PAYMENT_TIMEOUT: ["Send a payment reminder", "Offer payment help", "Extend the payment window"],
    ExceptionType.DEVICE_START_TIMEOUT: ["Check device status", "Restart the device", "Contact technical support"],
    ExceptionType.HIGH_VALUE_EXCEPTION: ["Manual review", "Risk assessment", "Closer monitoring"],
    ExceptionType.SUSPICIOUS_ACTIVITY: ["Suspend the account", "Verify identity", "Security check"],
    ExceptionType.FREQUENT_CANCELLATION: ["User education", "Improve the ordering flow", "Customer service follow-up"],
    ExceptionType.DEVICE_MALFUNCTION: ["Device maintenance", "Replace the device", "Technical inspection"],
    ExceptionType.REFUND_ANOMALY: ["Finance review", "Investigate the cause", "Tighten refund limits"],
}
DEFAULT_RECOMMENDATIONS = ["Needs manual handling"]


def risk_score_for(severity: ExceptionSeverity, priority: int) -> float:
    return SEVERITY_WEIGHTS[severity] * (1 + priority * 0.1)


def predicted_outcome(score: float) -> str:
    if score >= 80:
        return "high risk, intervene immediately"
    if score >= 50:
        return "medium risk, monitor closely"
    if score >= 20:
        return "low risk, handle normally"
    return "normal order, no special handling"


@dataclass
class AnalysisResult:
    order_id: int
    exceptions: List[ExceptionRecordRow]
    risk_score: float
    recommendations: List[str]
    predicted_outcome: str
    confidence: float
    analyzed_at: datetime
    fired_rules: List[str] = field(default_factory=list)


class ExceptionClassifier:
    def __init__(
        self,
        session_factory: sessionmaker,
        notifications: NotificationGateway,
        scheduler: Scheduler,
        features: FeatureProvider,
        clock: Clock = DEFAULT_CLOCK,
        rules: Optional[List[ExceptionRule]] = None,
        workflows=None,
    ):
        self.session_factory = session_factory
        self.notifications = notifications
        self.scheduler = scheduler
        self.features = features
        self.clock = clock
        self.workflows = workflows
        self._rules: Dict[str, ExceptionRule] = {r.id: r for r in (default_rules() if rules is None else rules)}

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------

    def get_rules(self, include_disabled: bool = True) -> List[ExceptionRule]:
        rules = sorted(self._rules.values(), key=lambda r: r.priority)
        return rules if include_disabled else [r for r in rules if r.enabled]

    def get_rule(self, rule_id: str) -> ExceptionRule:
        rule = self._rules.get(rule_id)
        if rule is None:
            raise RuleNotFoundError(f"Rule not found: {rule_id}")
        return rule

    def toggle_rule(self, rule_id: str, enabled: bool) -> ExceptionRule:
        rule = self.get_rule(rule_id)
        rule.enabled = enabled
        rule.updated_at = self.clock.now()
        logger.info("exception_rule_toggled", rule_id=rule_id, enabled=enabled)
        return rule

    def add_rule(self, rule: ExceptionRule) -> None:
        self._rules[rule.id] = rule

    # ------------------------------------------------------------------
    # Analysis
    # ------------------------------------------------------------------

    def analyze_order(self, order_id: int) -> AnalysisResult:
        now = self.clock.now()
        fired: List[Tuple[ExceptionRule, ExceptionRecordRow, bool]] = []

        with self.session_factory() as db:
            order = OrderStore(db).get(order_id)
            for rule in self.get_rules(include_disabled=False):
                matched = self._match(db, order, rule, now)
                if matched is None:
                    continue
                record, created = self._open_record(db, order, rule, matched, now)
                fired.append((rule, record, created))

            # Detached copies for the actions, which run outside this session
            order_ref = _OrderRef(order.id, order.order_no, order.user_id, order.device_id)
            has_device = order.device_id is not None

        score = 0.0
        recommendations: List[str] = []
        for rule, record, created in fired:
            score += risk_score_for(rule.severity, rule.priority)
            recommendations.extend(RECOMMENDATIONS.get(rule.type, DEFAULT_RECOMMENDATIONS))
            if created:
                self._run_actions(order_ref, rule, record.id)

        score = min(max(score, 0.0), MAX_RISK_SCORE)
        confidence = 0.8 + (0.1 if has_device else 0.0) + (0.05 if fired else 0.0)
        result = AnalysisResult(
            order_id=order_id,
            exceptions=[record for _, record, _ in fired],
            risk_score=score,
            recommendations=recommendations,
            predicted_outcome=predicted_outcome(score),
            confidence=min(confidence, 1.0),
            analyzed_at=now,
            fired_rules=[rule.id for rule, _, _ in fired],
        )
        logger.info("order_analyzed", order_id=order_id, risk_score=score, exceptions=len(fired))
        return result

    def batch_analyze(self, order_ids: List[int]) -> List[AnalysisResult]:
        """Analyse each order independently; a failing order is logged and skipped."""
        results = []
        for order_id in order_ids:
            try:
                results.append(self.analyze_order(order_id))
            except Exception:
                logger.exception("order_analysis_failed", order_id=order_id)
        return results

    def scan_active_orders(self) -> int:
        """Periodic job: analyse every order that has not reached a terminal status."""
        active = [s for s in OrderStatus if s not in TERMINAL_STATUSES]
        with self.session_factory() as db:
            order_ids = [o.id for o in OrderStore(db).find(OrderFilter(status_in=active))]
        results = self.batch_analyze(order_ids)
        logger.info("active_order_scan_finished", orders=len(order_ids), analysed=len(results))
        return len(results)

    def _match(self, db: Session, order: Order, rule: ExceptionRule, now: datetime) -> Optional[Dict[str, Any]]:
        """Field values that satisfied every condition, or None when the rule does not fire."""
        matched: Dict[str, Any] = {}
        for condition in rule.conditions:
            value = self._field_value(db, order, condition, now)
            if not evaluate(condition, value):
                return None
            matched[condition.field] = _plain(value)
        return matched

    def _field_value(self, db: Session, order: Order, condition: Condition, now: datetime) -> Any:
        name = condition.field
        if name == "created_minutes_ago":
            return order.minutes_since(order.created_at, now)
        if name in Order.__table__.columns:
            return getattr(order, name)
        if self.features.provides(name):
            return self.features.get(db, order, name, condition.time_window_minutes)
        return None

    def _open_record(self, db: Session, order: Order, rule: ExceptionRule, matched: Dict[str, Any],
                     now: datetime) -> Tuple[ExceptionRecordRow, bool]:
        existing = (
            db.query(ExceptionRecordRow)
            .filter(
                ExceptionRecordRow.order_id == order.id,
                ExceptionRecordRow.rule_id == rule.id,
                ExceptionRecordRow.status.in_(OPEN_EXCEPTION_STATUSES),
            )
            .first()
        )
        if existing is not None:
            return existing, False

        record = ExceptionRecordRow(
            id=f"exc_{uuid.uuid4().hex[:20]}",
            order_id=order.id,
            type=rule.type,
            severity=rule.severity,
            rule_id=rule.id,
            rule_name=rule.name,
            description=rule.description,
            details={
                "order_amount": order.amount,
                "order_status": order.status.value,
                "device_id": order.device_id,
                "user_id": order.user_id,
                "rule_version": rule.version,
                "matched": matched,
            },
            status=ExceptionStatus.DETECTED,
            detected_at=now,
        )
        db.add(record)
        db.add(AuditEvent(
            event_type=AuditEventType.EXCEPTION_DETECTED,
            entity_type="ExceptionRecord",
            entity_id=record.id,
            created_at=now,
            payload_json={"order_id": order.id, "rule_id": rule.id, "severity": rule.severity.value},
        ))
        db.commit()
        logger.warning("exception_detected", record_id=record.id, order_id=order.id, rule_id=rule.id,
                       severity=rule.severity.value)
        return record, True

    # ------------------------------------------------------------------
    # Rule actions
    # ------------------------------------------------------------------

    def _run_actions(self, order: "_OrderRef", rule: ExceptionRule, record_id: str) -> None:
        for action in rule.actions:
            if action.delay_seconds:
                self.scheduler.call_later(action.delay_seconds, self._run_action, order, rule, action, record_id)
            else:
                self._run_action(order, rule, action, record_id)

    def _run_action(self, order: "_OrderRef", rule: ExceptionRule, action: RuleAction, record_id: str) -> None:
        """One failing action never stops the others."""
        try:
            if action.type == RuleActionType.NOTIFY:
                self._notify(order, rule, action)
            elif action.type == RuleActionType.ESCALATE:
                self._escalate(order, rule, action)
            elif action.type == RuleActionType.AUTO_RESOLVE:
                self._auto_resolve(record_id, action)
            elif action.type == RuleActionType.WORKFLOW:
                self._start_workflow(order, action, record_id)
            elif action.type == RuleActionType.BLOCK:
                self._block(order, rule, action, record_id)
        except Exception:
            logger.exception("rule_action_failed", rule_id=rule.id, action=action.type.value,
                             order_id=order.id, record_id=record_id)

    def _notify(self, order: "_OrderRef", rule: ExceptionRule, action: RuleAction) -> None:
        channels = action.config.get("channels", [])
        message = {
            "title": "Order exception",
            "content": f"Order {order.order_no} needs attention: {rule.name}.",
            "type": action.config.get("template", "order_exception"),
            "data": {"order_id": order.id, "rule_id": rule.id},
        }
        if any(c in channels for c in ("app", "sms")):
            self.notifications.send_to_user(order.user_id, message)
        if "admin" in channels:
            self.notifications.send_to_admins({**message, "priority": rule.severity.value})

    def _escalate(self, order: "_OrderRef", rule: ExceptionRule, action: RuleAction) -> None:
        level = action.config.get("level", "admin")
        priority = action.config.get("priority", rule.severity.value)
        self.notifications.send_to_admins({
            "title": "Exception escalated",
            "content": f"Order {order.order_no} ({rule.name}) escalated to {level}, priority {priority}.",
            "type": "exception_escalation",
            "priority": priority,
            "data": {"order_id": order.id, "rule_id": rule.id, "level": level},
        })
        logger.warning("exception_escalated", order_id=order.id, rule_id=rule.id, level=level)

    def _auto_resolve(self, record_id: str, action: RuleAction) -> None:
        with self.session_factory() as db:
            record = get_record(db, record_id)
            if record.status in OPEN_EXCEPTION_STATUSES:
                move_record(db, record, ExceptionStatus.RESOLVED, self.clock, resolved_by="auto",
                            resolution=action.config.get("action", "auto_resolved"))

    def _start_workflow(self, order: "_OrderRef", action: RuleAction, record_id: str) -> None:
        workflow_id = action.config["workflow_id"]
        if self.workflows is None:
            logger.warning("workflow_engine_unavailable", workflow_id=workflow_id, order_id=order.id)
            return
        with self.session_factory() as db:
            record = get_record(db, record_id)
            if record.status not in OPEN_EXCEPTION_STATUSES or record.execution_id is not None:
                return
            if record.status == ExceptionStatus.DETECTED:
                move_record(db, record, ExceptionStatus.PROCESSING, self.clock, resolved_by="classifier")
            execution_id = self.workflows.start_workflow(workflow_id, order.id, {"exception_id": record_id})
            record.execution_id = execution_id
            db.commit()

    def _block(self, order: "_OrderRef", rule: ExceptionRule, action: RuleAction, record_id: str) -> None:
        duration = int(action.config.get("duration", 3600))
        blocked_until = self.clock.now() + timedelta(seconds=duration)
        with self.session_factory() as db:
            record = get_record(db, record_id)
            record.details = {**(record.details or {}), "blocked_until": blocked_until.isoformat(),
                              "block_reason": action.config.get("reason")}
            db.commit()
        self.notifications.send_to_admins({
            "title": "User blocked",
            "content": f"User {order.user_id} blocked until {blocked_until.isoformat()} ({rule.name}).",
            "type": "user_blocked",
            "priority": "high",
            "data": {"order_id": order.id, "user_id": order.user_id},
        })

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def get_statistics(self) -> Dict[str, Any]:
        since = self.clock.now() - timedelta(hours=24)
        with self.session_factory() as db:
            def grouped(column):
                rows = db.query(column, func.count(ExceptionRecordRow.id)).group_by(column).all()
                return {key.value: count for key, count in rows}

            total = db.query(func.count(ExceptionRecordRow.id)).scalar()
            recent = (
                db.query(func.count(ExceptionRecordRow.id))
                .filter(ExceptionRecordRow.detected_at >= since)
                .scalar()
            )
            return {
                "total": total,
                "by_type": grouped(ExceptionRecordRow.type),
                "by_severity": grouped(ExceptionRecordRow.severity),
                "by_status": grouped(ExceptionRecordRow.status),
                "recent": recent,
            }


@dataclass(frozen=True)
class _OrderRef:
    id: int
    order_no: str
    user_id: int
    device_id: Optional[int]


def _plain(value: Any) -> Any:
    return getattr(value, "value", value)
