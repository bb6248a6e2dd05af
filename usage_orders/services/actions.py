"""
Named actions available to workflow action steps.

Every handler may run more than once for the same execution (step
retries), so each one is idempotent: it re-reads the order and skips work
that already happened. Money movements are keyed by order and action.
"""
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping

import structlog
from sqlalchemy.orm import sessionmaker

from usage_orders.clock import DEFAULT_CLOCK, Clock
from usage_orders.models.domain import Order
from usage_orders.models.enums import OrderStatus, ReviewStatus
from usage_orders.services.errors import DeviceStartError, ReviewPendingError, WorkflowConfigurationError
from usage_orders.services.gateways import DeviceGateway
from usage_orders.services.order_store import OrderStore
from usage_orders.services.refunds import RefundService
from usage_orders.services.reviews import ReviewService
from usage_orders.services.state_machine import OrderStateMachine

logger = structlog.get_logger(__name__)


@dataclass
class ActionContext:
    execution_id: str
    order_id: int
    step_id: str
    config: Mapping[str, Any] = field(default_factory=dict)
    variables: Mapping[str, Any] = field(default_factory=dict)


class WorkflowActions:
    """Registry of action handlers, each returning a JSON-friendly output dict."""

    def __init__(
        self,
        session_factory: sessionmaker,
        devices: DeviceGateway,
        refunds: RefundService,
        reviews: ReviewService,
        clock: Clock = DEFAULT_CLOCK,
    ):
        self.session_factory = session_factory
        self.devices = devices
        self.refunds = refunds
        self.reviews = reviews
        self.clock = clock
        self._handlers: Dict[str, Callable[[ActionContext], Dict[str, Any]]] = {
            "cancel_order": self.cancel_order,
            "initiate_refund": self.initiate_refund,
            "retry_device_start": self.retry_device_start,
            "mark_device_maintenance": self.mark_device_maintenance,
            "create_manual_review_task": self.create_manual_review_task,
            "execute_review_decision": self.execute_review_decision,
            "complete_workflow": self.complete_workflow,
        }

    @property
    def names(self):
        return set(self._handlers)

    def register(self, name: str, handler: Callable[[ActionContext], Dict[str, Any]]) -> None:
        self._handlers[name] = handler

    def run(self, name: str, ctx: ActionContext) -> Dict[str, Any]:
        handler = self._handlers.get(name)
        if handler is None:
            raise WorkflowConfigurationError(f"Unknown action '{name}'", ctx.step_id)
        output = handler(ctx)
        logger.info("workflow_action_done", action=name, order_id=ctx.order_id,
                    execution_id=ctx.execution_id, step_id=ctx.step_id)
        return output

    def cancel_order(self, ctx: ActionContext) -> Dict[str, Any]:
        reason = ctx.config.get("reason", "cancelled by workflow")
        with self.session_factory() as db:
            order = OrderStore(db).get(ctx.order_id)
            return self._cancel(db, order, reason)

    def initiate_refund(self, ctx: ActionContext) -> Dict[str, Any]:
        reason = ctx.config.get("reason", "refund by workflow")
        with self.session_factory() as db:
            order = OrderStore(db).get(ctx.order_id)
            return self._refund(db, order, "initiate_refund", reason)

    def retry_device_start(self, ctx: ActionContext) -> Dict[str, Any]:
        with self.session_factory() as db:
            order = OrderStore(db).get(ctx.order_id)
            if order.status == OrderStatus.IN_USE:
                return {"started": True, "already_started": True}
            if order.device_id is None:
                raise DeviceStartError(f"Order {order.id} has no device")
            if not self.devices.retry_start(order.device_id):
                raise DeviceStartError(f"Device {order.device_id} did not start for order {order.id}")

            machine = OrderStateMachine(db, self.clock)
            if order.status == OrderStatus.PAID:
                machine.transition_to(order, OrderStatus.STARTING, reason="device start retried", actor="workflow")
            machine.transition_to(order, OrderStatus.IN_USE, reason="device start retried", actor="workflow")
            return {"started": True, "device_id": order.device_id}

    def mark_device_maintenance(self, ctx: ActionContext) -> Dict[str, Any]:
        with self.session_factory() as db:
            order = OrderStore(db).get(ctx.order_id)
            if order.device_id is None:
                return {"marked": False}
            self.devices.mark_maintenance(order.device_id, ctx.config.get("reason", "flagged by workflow"))
            return {"marked": True, "device_id": order.device_id, "priority": ctx.config.get("priority")}

    def create_manual_review_task(self, ctx: ActionContext) -> Dict[str, Any]:
        assign_to = ctx.config.get("assign_to", "supervisor")
        with self.session_factory() as db:
            OrderStore(db).get(ctx.order_id)
            task = self.reviews.create(
                db,
                ctx.order_id,
                assign_to,
                execution_id=ctx.execution_id,
                priority=ctx.config.get("priority", "high"),
                deadline_minutes=ctx.config.get("deadline_minutes"),
                resolution_action=ctx.variables.get("resolution_action"),
            )
            return {"task_id": task.id, "assign_to": assign_to, "deadline_minutes": ctx.config.get("deadline_minutes")}

    def execute_review_decision(self, ctx: ActionContext) -> Dict[str, Any]:
        """Carry out the latest decided review for the order."""
        with self.session_factory() as db:
            order = OrderStore(db).get(ctx.order_id)
            task = self.reviews.latest_for_order(db, order.id)
            if task is None:
                raise ReviewPendingError(f"REFUSAL: order {order.id} has no review task")
            if task.status == ReviewStatus.PENDING:
                raise ReviewPendingError(f"REFUSAL: review task {task.id} for order {order.id} is still pending")
            if task.executed_at is not None:
                return {"executed": True, "task_id": task.id, "already_executed": True}

            output: Dict[str, Any] = {"executed": True, "task_id": task.id, "decision": task.status.value,
                                      "action": None}
            if task.status == ReviewStatus.APPROVED and task.resolution_action == "refund":
                output["action"] = self._refund(db, order, "review_refund", f"approved by {task.decided_by}")
            elif task.status == ReviewStatus.APPROVED and task.resolution_action == "cancel":
                output["action"] = self._cancel(db, order, f"cancelled after review by {task.decided_by}")

            task.executed_at = self.clock.now()
            db.commit()
            return output

    def complete_workflow(self, ctx: ActionContext) -> Dict[str, Any]:
        return {"completed": True}

    def _cancel(self, db, order: Order, reason: str) -> Dict[str, Any]:
        already_cancelled = order.status == OrderStatus.CANCELLED
        if not already_cancelled:
            OrderStateMachine(db, self.clock).transition_to(order, OrderStatus.CANCELLED, reason=reason,
                                                            actor="workflow")
        # Release is repeated on every attempt; a retry after a failed release must not skip it.
        if order.device_id is not None:
            self.devices.release(order.device_id)
        return {"cancelled": True, "already_cancelled": already_cancelled, "reason": reason}

    def _refund(self, db, order: Order, action: str, reason: str) -> Dict[str, Any]:
        if order.status not in (OrderStatus.REFUNDING, OrderStatus.CLOSED):
            OrderStateMachine(db, self.clock).transition_to(order, OrderStatus.REFUNDING, reason=reason,
                                                            actor="workflow")
        record = self.refunds.issue(db, order, action, reason)
        return {"refunded": True, "amount": record.amount, "key": record.idempotency_key}
