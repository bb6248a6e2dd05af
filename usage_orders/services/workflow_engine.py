"""
Remediation Workflow Engine.

Walks a template's step graph for one order. Every step runs as a
scheduled continuation: the next step, a retry after backoff and the end
of a delay are all queued on the Scheduler, so a suspended execution holds
no thread. Executions are written through to the workflow_executions table
on every change; the in-memory map is only a cache of live executions.

Failure rules:
- a condition that evaluates false follows on_failure (no pointer ends the run as completed)
- a raised error is retried up to the step's retry_count, then follows on_failure;
  with no on_failure the execution FAILS with the step id recorded
- a refusal (illegal transition, review still pending) skips retries
- a missing order or a misconfigured step fails the execution at once
"""
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

import structlog
from sqlalchemy import func
from sqlalchemy.orm import Session, sessionmaker

from usage_orders.clock import DEFAULT_CLOCK, Clock
from usage_orders.models.domain import Order, WorkflowExecutionRow
from usage_orders.models.enums import TERMINAL_EXECUTION_STATUSES, ExecutionStatus, StepStatus
from usage_orders.services.actions import ActionContext, WorkflowActions
from usage_orders.services.conditions import evaluate_all
from usage_orders.services.errors import (
    OrderNotFoundError,
    RefusalError,
    StepTimeoutError,
    TemplateDisabledError,
    WorkflowConfigurationError,
    WorkflowNotFoundError,
)
from usage_orders.services.gateways import NotificationGateway
from usage_orders.services.order_store import OrderStore
from usage_orders.services.reviews import ReviewService
from usage_orders.services.scheduler import Scheduler
from usage_orders.services.workflow_templates import (
    END_WORKFLOW,
    ActionStep,
    AnyStep,
    ConditionStep,
    DelayStep,
    NotificationStep,
    WorkflowTemplate,
    default_templates,
    render_message,
)

logger = structlog.get_logger(__name__)

FATAL_ERRORS = (OrderNotFoundError, WorkflowConfigurationError)


@dataclass
class StepExecution:
    step_id: str
    status: StepStatus = StepStatus.PENDING
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    retry_count: int = 0
    output: Any = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step_id": self.step_id,
            "status": self.status.value,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "retry_count": self.retry_count,
            "output": self.output,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StepExecution":
        return cls(
            step_id=data["step_id"],
            status=StepStatus(data["status"]),
            started_at=_parse(data.get("started_at")),
            completed_at=_parse(data.get("completed_at")),
            retry_count=data.get("retry_count", 0),
            output=data.get("output"),
            error=data.get("error"),
        )


@dataclass
class WorkflowExecution:
    id: str
    template_id: str
    template_version: str
    order_id: int
    status: ExecutionStatus
    variables: Dict[str, Any]
    steps: Dict[str, StepExecution]
    started_at: datetime
    current_step_id: Optional[str] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = None
    error_step_id: Optional[str] = None

    @property
    def is_finished(self) -> bool:
        return self.status in TERMINAL_EXECUTION_STATUSES

    def history(self) -> List[StepExecution]:
        return list(self.steps.values())

    @classmethod
    def from_row(cls, row: WorkflowExecutionRow) -> "WorkflowExecution":
        records = [StepExecution.from_dict(s) for s in (row.steps or [])]
        return cls(
            id=row.id,
            template_id=row.template_id,
            template_version=row.template_version,
            order_id=row.order_id,
            status=row.status,
            variables=dict(row.variables or {}),
            steps={r.step_id: r for r in records},
            started_at=row.started_at,
            current_step_id=row.current_step_id,
            completed_at=row.completed_at,
            error=row.error,
            error_step_id=row.error_step_id,
        )


FinishListener = Callable[[WorkflowExecution], None]


class WorkflowEngine:
    def __init__(
        self,
        session_factory: sessionmaker,
        actions: WorkflowActions,
        notifications: NotificationGateway,
        scheduler: Scheduler,
        reviews: Optional[ReviewService] = None,
        clock: Clock = DEFAULT_CLOCK,
        retry_backoff_seconds: float = 5.0,
        templates: Optional[List[WorkflowTemplate]] = None,
        max_step_workers: int = 8,
    ):
        self.session_factory = session_factory
        self.actions = actions
        self.notifications = notifications
        self.scheduler = scheduler
        self.reviews = reviews or ReviewService(clock)
        self.clock = clock
        self.retry_backoff_seconds = retry_backoff_seconds

        self._lock = threading.RLock()
        self._templates: Dict[str, WorkflowTemplate] = {}
        self._executions: Dict[str, WorkflowExecution] = {}
        self._listeners: List[FinishListener] = []
        self._step_pool = ThreadPoolExecutor(max_workers=max_step_workers, thread_name_prefix="workflow-step")

        for template in default_templates() if templates is None else templates:
            self.register_template(template)

    # ------------------------------------------------------------------
    # Templates
    # ------------------------------------------------------------------

    def register_template(self, template: WorkflowTemplate) -> None:
        template.validate(self.actions.names)
        with self._lock:
            self._templates[template.id] = template
        logger.info("workflow_template_registered", template_id=template.id, version=template.version)

    def list_templates(self) -> List[WorkflowTemplate]:
        return [t for t in self._templates.values() if t.enabled]

    def get_template(self, template_id: str) -> WorkflowTemplate:
        template = self._templates.get(template_id)
        if template is None:
            raise WorkflowNotFoundError(f"Workflow template not found: {template_id}")
        return template

    def set_template_enabled(self, template_id: str, enabled: bool) -> WorkflowTemplate:
        template = self.get_template(template_id)
        template.enabled = enabled
        return template

    def add_finish_listener(self, listener: FinishListener) -> None:
        self._listeners.append(listener)

    # ------------------------------------------------------------------
    # Workflow API
    # ------------------------------------------------------------------

    def start_workflow(self, template_id: str, order_id: int, variables: Optional[Dict[str, Any]] = None) -> str:
        template = self.get_template(template_id)
        if not template.enabled:
            raise TemplateDisabledError(f"REFUSAL: workflow template {template_id} is disabled")

        execution = WorkflowExecution(
            id=f"exec_{uuid.uuid4().hex[:20]}",
            template_id=template.id,
            template_version=template.version,
            order_id=order_id,
            status=ExecutionStatus.CREATED,
            variables={**template.variables, **(variables or {})},
            steps={s.id: StepExecution(step_id=s.id) for s in template.steps},
            started_at=self.clock.now(),
        )
        with self._lock:
            self._executions[execution.id] = execution
            self._persist(execution)
            execution.status = ExecutionStatus.RUNNING
            self._persist(execution)

        logger.info("workflow_started", execution_id=execution.id, template_id=template.id, order_id=order_id)
        self.scheduler.call_later(0, self._run_step, execution.id, template.first_step.id)
        return execution.id

    def get_execution(self, execution_id: str) -> Optional[WorkflowExecution]:
        """Live execution from the cache, or the persisted copy after a restart."""
        execution = self._executions.get(execution_id)
        if execution is not None:
            return execution
        with self.session_factory() as db:
            row = db.get(WorkflowExecutionRow, execution_id)
            return WorkflowExecution.from_row(row) if row is not None else None

    def cancel_workflow(self, execution_id: str) -> bool:
        """
        Cooperative cancel. Only a RUNNING execution can be cancelled; a step
        already in flight finishes, but nothing after it is dispatched.
        """
        with self._lock:
            execution = self._executions.get(execution_id)
            if execution is None or execution.status != ExecutionStatus.RUNNING:
                return False
            execution.status = ExecutionStatus.CANCELLED
            execution.completed_at = self.clock.now()
            self._persist(execution)
        logger.info("workflow_cancelled", execution_id=execution_id)
        self._notify_listeners(execution)
        self._evict(execution)
        return True

    def list_running(self) -> List[WorkflowExecution]:
        return [e for e in self._executions.values() if e.status == ExecutionStatus.RUNNING]

    def get_statistics(self) -> Dict[str, int]:
        with self.session_factory() as db:
            counts = dict(
                db.query(WorkflowExecutionRow.status, func.count(WorkflowExecutionRow.id))
                .group_by(WorkflowExecutionRow.status)
                .all()
            )
        stats = {status.value: counts.get(status, 0) for status in ExecutionStatus}
        stats["total"] = sum(counts.values())
        stats["templates"] = len(self._templates)
        stats["enabled_templates"] = len(self.list_templates())
        return stats

    def shutdown(self) -> None:
        self._step_pool.shutdown(wait=False)

    # ------------------------------------------------------------------
    # Step dispatch
    # ------------------------------------------------------------------

    def _run_step(self, execution_id: str, step_id: str) -> None:
        execution = self._executions.get(execution_id)
        if execution is None or execution.status != ExecutionStatus.RUNNING:
            return
        template = self._templates[execution.template_id]
        step = template.step(step_id)
        if step is None:
            self._fail(execution, f"Unknown step '{step_id}'", step_id)
            return

        record = execution.steps[step_id]
        with self._lock:
            if execution.status != ExecutionStatus.RUNNING:
                return
            record.status = StepStatus.RUNNING
            record.started_at = self.clock.now()
            record.completed_at = None
            execution.current_step_id = step_id
            self._persist(execution)

        log = logger.bind(execution_id=execution_id, step_id=step_id, order_id=execution.order_id)
        log.debug("workflow_step_started", step_type=step.type.value, attempt=record.retry_count + 1)

        if isinstance(step, DelayStep):
            self.scheduler.call_later(step.delay_minutes * 60, self._finish_delay, execution_id, step_id)
            return

        try:
            success, output = self._dispatch(execution, step)
        except FATAL_ERRORS as exc:
            log.error("workflow_step_fatal", error=str(exc))
            with self._lock:
                self._mark_step(execution, record, StepStatus.FAILED, error=str(exc))
            self._fail(execution, str(exc), step_id)
            return
        except RefusalError as exc:
            log.warning("workflow_step_refused", error=str(exc))
            self._step_failed(execution, step, record, exc, retryable=False)
            return
        except Exception as exc:
            log.warning("workflow_step_error", error=str(exc), exc_info=True)
            self._step_failed(execution, step, record, exc, retryable=True)
            return

        self._step_finished(execution, step, record, success, output)

    def _dispatch(self, execution: WorkflowExecution, step: AnyStep) -> Tuple[bool, Any]:
        if isinstance(step, ConditionStep):
            with self.session_factory() as db:
                order = OrderStore(db).get(execution.order_id)
                context = self._condition_context(db, order, execution.variables)
            return evaluate_all(step.conditions, context), None
        if isinstance(step, ActionStep):
            ctx = ActionContext(
                execution_id=execution.id,
                order_id=execution.order_id,
                step_id=step.id,
                config=step.config,
                variables=execution.variables,
            )
            return True, self._with_deadline(step, lambda: self.actions.run(step.action, ctx))
        if isinstance(step, NotificationStep):
            self._with_deadline(step, lambda: self._send_notification(execution, step))
            return True, None
        raise WorkflowConfigurationError(f"Unknown step type '{step.type}'", step.id)

    def _with_deadline(self, step: AnyStep, fn: Callable[[], Any]) -> Any:
        """Run fn under the step's hard deadline, if it declares one."""
        if step.timeout is None:
            return fn()
        future = self._step_pool.submit(fn)
        try:
            return future.result(timeout=step.timeout)
        except FutureTimeoutError:
            if future.done():
                raise
            # The side effect may still land; it is not rolled back
            raise StepTimeoutError(step.id, step.timeout) from None

    def _condition_context(self, db: Session, order: Order, variables: Dict[str, Any]) -> Dict[str, Any]:
        """Live order columns plus derived fields. Variables only fill names the order does not define."""
        now = self.clock.now()
        context = dict(variables)
        for column in Order.__table__.columns:
            context[column.key] = getattr(order, column.key)
        context["created_at_minutes_ago"] = order.minutes_since(order.created_at, now)
        context["paid_at_minutes_ago"] = order.minutes_since(order.paid_at, now)

        task = self.reviews.latest_for_order(db, order.id)
        if task is not None:
            context["review_status"] = task.status.value
        else:
            context.setdefault("review_status", None)
        return context

    def _send_notification(self, execution: WorkflowExecution, step: NotificationStep) -> None:
        content = render_message(step.template, order_id=execution.order_id, execution_id=execution.id)
        if step.audience == "user":
            with self.session_factory() as db:
                order = OrderStore(db).get(execution.order_id)
                user_id = order.user_id
            self.notifications.send_to_user(user_id, {
                "title": "Order notification",
                "content": content,
                "type": step.template,
                "data": {"order_id": execution.order_id, "channels": list(step.channels)},
            })
        else:
            self.notifications.send_to_admins({
                "title": "Workflow notification",
                "content": content,
                "type": step.template,
                "priority": step.priority or "normal",
                "data": {"order_id": execution.order_id, "execution_id": execution.id,
                         "roles": list(step.roles)},
            })

    # ------------------------------------------------------------------
    # Step outcomes
    # ------------------------------------------------------------------

    def _finish_delay(self, execution_id: str, step_id: str) -> None:
        execution = self._executions.get(execution_id)
        if execution is None or execution.status != ExecutionStatus.RUNNING:
            return
        step = self._templates[execution.template_id].step(step_id)
        self._step_finished(execution, step, execution.steps[step_id], True, None)

    def _step_finished(self, execution: WorkflowExecution, step: AnyStep, record: StepExecution,
                       success: bool, output: Any) -> None:
        with self._lock:
            self._mark_step(execution, record, StepStatus.COMPLETED if success else StepStatus.FAILED,
                            output=output, error=None)
        self._advance(execution, step.on_success if success else step.on_failure)

    def _step_failed(self, execution: WorkflowExecution, step: AnyStep, record: StepExecution,
                     exc: Exception, retryable: bool) -> None:
        with self._lock:
            self._mark_step(execution, record, StepStatus.FAILED, error=str(exc))
            retry = retryable and record.retry_count < step.retry_count and execution.status == ExecutionStatus.RUNNING
            if retry:
                record.retry_count += 1
                self._persist(execution)

        if retry:
            logger.info("workflow_step_retry_scheduled", execution_id=execution.id, step_id=step.id,
                        retry=record.retry_count, backoff_seconds=self.retry_backoff_seconds)
            self.scheduler.call_later(self.retry_backoff_seconds, self._run_step, execution.id, step.id)
        elif step.on_failure is not None:
            self._advance(execution, step.on_failure)
        else:
            self._fail(execution, f"Step {step.id} failed: {exc}", step.id)

    def _advance(self, execution: WorkflowExecution, next_step_id: Optional[str]) -> None:
        if execution.status != ExecutionStatus.RUNNING:
            return
        if next_step_id is None or next_step_id == END_WORKFLOW:
            self._complete(execution)
            return
        self.scheduler.call_later(0, self._run_step, execution.id, next_step_id)

    def _mark_step(self, execution: WorkflowExecution, record: StepExecution, status: StepStatus,
                   output: Any = None, error: Optional[str] = None) -> None:
        record.status = status
        record.completed_at = self.clock.now()
        record.output = output
        record.error = error
        self._persist(execution)

    def _complete(self, execution: WorkflowExecution) -> None:
        with self._lock:
            if execution.status != ExecutionStatus.RUNNING:
                return
            execution.status = ExecutionStatus.COMPLETED
            execution.current_step_id = None
            execution.completed_at = self.clock.now()
            self._persist(execution)
        logger.info("workflow_completed", execution_id=execution.id, order_id=execution.order_id)
        self._notify_listeners(execution)
        self._evict(execution)

    def _fail(self, execution: WorkflowExecution, error: str, step_id: Optional[str]) -> None:
        with self._lock:
            if execution.status != ExecutionStatus.RUNNING:
                return
            execution.status = ExecutionStatus.FAILED
            execution.error = error
            execution.error_step_id = step_id
            execution.completed_at = self.clock.now()
            self._persist(execution)
        logger.warning("workflow_failed", execution_id=execution.id, order_id=execution.order_id,
                       step_id=step_id, error=error)
        self._notify_listeners(execution)
        self._evict(execution)

    def _notify_listeners(self, execution: WorkflowExecution) -> None:
        for listener in list(self._listeners):
            try:
                listener(execution)
            except Exception:
                logger.exception("workflow_listener_failed", execution_id=execution.id)

    def _evict(self, execution: WorkflowExecution) -> None:
        """Finished executions are served from workflow_executions."""
        with self._lock:
            self._executions.pop(execution.id, None)

    def _persist(self, execution: WorkflowExecution) -> None:
        with self.session_factory() as db:
            row = db.get(WorkflowExecutionRow, execution.id)
            if row is None:
                row = WorkflowExecutionRow(id=execution.id)
                db.add(row)
            row.template_id = execution.template_id
            row.template_version = execution.template_version
            row.order_id = execution.order_id
            row.status = execution.status
            row.current_step_id = execution.current_step_id
            row.variables = dict(execution.variables)
            row.steps = [s.to_dict() for s in execution.steps.values()]
            row.error = execution.error
            row.error_step_id = execution.error_step_id
            row.started_at = execution.started_at
            row.completed_at = execution.completed_at
            db.commit()


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None
