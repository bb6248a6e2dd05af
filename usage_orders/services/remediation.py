"""
Exception Remediator - turns open exception records into workflow runs.

Records of a type with a remediation template get a workflow; the rest are
escalated to admins. When a workflow finishes, its record is resolved
(completed) or escalated with an admin alert (failed or cancelled).
"""
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

import structlog
from sqlalchemy.orm import sessionmaker

from usage_orders.clock import DEFAULT_CLOCK, Clock
from usage_orders.config import Settings
from usage_orders.models.domain import ExceptionRecordRow
from usage_orders.models.enums import (
    OPEN_EXCEPTION_STATUSES,
    SEVERITY_RANK,
    ExceptionStatus,
    ExceptionType,
    ExecutionStatus,
)
from usage_orders.services.errors import TemplateDisabledError, WorkflowNotFoundError
from usage_orders.services.exception_records import get_record, move_record
from usage_orders.services.gateways import NotificationGateway
from usage_orders.services.workflow_engine import WorkflowEngine, WorkflowExecution

logger = structlog.get_logger(__name__)

WORKFLOW_FOR_TYPE = {
    ExceptionType.PAYMENT_TIMEOUT: "payment_timeout_workflow",
    ExceptionType.DEVICE_START_TIMEOUT: "device_timeout_workflow",
    ExceptionType.HIGH_VALUE_EXCEPTION: "high_value_exception_workflow",
}


@dataclass
class HandlingResult:
    record_id: str
    success: bool
    action: str  # workflow | escalated | skipped | failed
    execution_id: Optional[str] = None
    error: Optional[str] = None


class ExceptionRemediator:
    def __init__(
        self,
        session_factory: sessionmaker,
        workflows: WorkflowEngine,
        notifications: NotificationGateway,
        settings: Settings,
        clock: Clock = DEFAULT_CLOCK,
    ):
        self.session_factory = session_factory
        self.workflows = workflows
        self.notifications = notifications
        self.settings = settings
        self.clock = clock
        workflows.add_finish_listener(self._on_execution_finished)

    def handle_exception(self, record_id: str) -> HandlingResult:
        with self.session_factory() as db:
            record = get_record(db, record_id)
            if record.status not in OPEN_EXCEPTION_STATUSES:
                return HandlingResult(record_id, False, "skipped", error=f"record already {record.status.value}")
            if record.execution_id is not None:
                return HandlingResult(record_id, True, "workflow", execution_id=record.execution_id)

            template_id = WORKFLOW_FOR_TYPE.get(record.type)
            if template_id is not None:
                if record.status == ExceptionStatus.DETECTED:
                    move_record(db, record, ExceptionStatus.PROCESSING, self.clock, resolved_by="remediator")
                try:
                    execution_id = self.workflows.start_workflow(
                        template_id, record.order_id, {"exception_id": record.id})
                except (TemplateDisabledError, WorkflowNotFoundError) as exc:
                    logger.warning("remediation_template_unavailable", record_id=record_id, template_id=template_id)
                    reason = str(exc)
                else:
                    # Only execution_id is written; a fast finish listener may already have closed the record
                    record.execution_id = execution_id
                    db.commit()
                    logger.info("exception_remediation_started", record_id=record_id, execution_id=execution_id,
                                template_id=template_id)
                    return HandlingResult(record_id, True, "workflow", execution_id=execution_id)
            else:
                reason = f"no automatic remediation for {record.type.value}"

            self._alert(record, "Exception needs manual handling", reason, record.severity.value)
            move_record(db, record, ExceptionStatus.ESCALATED, self.clock, resolved_by="remediator",
                        resolution=reason)
            return HandlingResult(record_id, True, "escalated")

    def batch_handle(self, record_ids: List[str]) -> List[HandlingResult]:
        """Most severe first, at most exception_batch_concurrency in flight. Failures stay per record."""
        with self.session_factory() as db:
            records = db.query(ExceptionRecordRow).filter(ExceptionRecordRow.id.in_(record_ids)).all()
            ordered = sorted(records, key=lambda r: SEVERITY_RANK[r.severity], reverse=True)
            ordered_ids = [r.id for r in ordered]

        missing = [HandlingResult(rid, False, "failed", error="record not found")
                   for rid in record_ids if rid not in set(ordered_ids)]
        with ThreadPoolExecutor(max_workers=self.settings.exception_batch_concurrency,
                                thread_name_prefix="exception-batch") as pool:
            results = list(pool.map(self._handle_safely, ordered_ids))

        succeeded = sum(1 for r in results if r.success)
        logger.info("exception_batch_handled", total=len(record_ids), succeeded=succeeded)
        return results + missing

    def _handle_safely(self, record_id: str) -> HandlingResult:
        try:
            return self.handle_exception(record_id)
        except Exception as exc:
            logger.exception("exception_handling_failed", record_id=record_id)
            return HandlingResult(record_id, False, "failed", error=str(exc))

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------

    def resolve(self, record_id: str, resolved_by: str, resolution: Optional[str] = None) -> ExceptionRecordRow:
        return self._close(record_id, ExceptionStatus.RESOLVED, resolved_by, resolution)

    def escalate(self, record_id: str, resolved_by: str, resolution: Optional[str] = None) -> ExceptionRecordRow:
        record = self._close(record_id, ExceptionStatus.ESCALATED, resolved_by, resolution)
        self._alert(record, "Exception escalated", resolution or f"escalated by {resolved_by}", record.severity.value)
        return record

    def ignore(self, record_id: str, resolved_by: str, resolution: Optional[str] = None) -> ExceptionRecordRow:
        return self._close(record_id, ExceptionStatus.IGNORED, resolved_by, resolution)

    def list_records(
        self,
        status: Optional[ExceptionStatus] = None,
        order_id: Optional[int] = None,
        limit: int = 100,
    ) -> List[ExceptionRecordRow]:
        with self.session_factory() as db:
            query = db.query(ExceptionRecordRow)
            if status is not None:
                query = query.filter(ExceptionRecordRow.status == status)
            if order_id is not None:
                query = query.filter(ExceptionRecordRow.order_id == order_id)
            return query.order_by(ExceptionRecordRow.detected_at.desc()).limit(limit).all()

    def prune(self, now: Optional[datetime] = None) -> int:
        """Delete closed records older than the retention window. Open records are kept."""
        cutoff = (now or self.clock.now()) - timedelta(hours=self.settings.exception_retention_hours)
        with self.session_factory() as db:
            deleted = (
                db.query(ExceptionRecordRow)
                .filter(
                    ExceptionRecordRow.status.notin_(OPEN_EXCEPTION_STATUSES),
                    ExceptionRecordRow.resolved_at < cutoff,
                )
                .delete(synchronize_session=False)
            )
            db.commit()
        logger.info("exception_records_pruned", deleted=deleted, cutoff=cutoff.isoformat())
        return deleted

    def _close(self, record_id: str, target: ExceptionStatus, resolved_by: str,
               resolution: Optional[str]) -> ExceptionRecordRow:
        with self.session_factory() as db:
            record = get_record(db, record_id)
            return move_record(db, record, target, self.clock, resolved_by=resolved_by, resolution=resolution)

    # ------------------------------------------------------------------
    # Workflow completion
    # ------------------------------------------------------------------

    def _on_execution_finished(self, execution: WorkflowExecution) -> None:
        record_id = execution.variables.get("exception_id")
        if not record_id:
            return
        with self.session_factory() as db:
            record = db.get(ExceptionRecordRow, record_id)
            if record is None or record.status not in OPEN_EXCEPTION_STATUSES:
                return
            if execution.status == ExecutionStatus.COMPLETED:
                move_record(db, record, ExceptionStatus.RESOLVED, self.clock, resolved_by="workflow",
                            resolution=f"{execution.template_id} completed")
                return

            reason = f"{execution.template_id} {execution.status.value}"
            if execution.error:
                reason = f"{reason}: {execution.error}"
            move_record(db, record, ExceptionStatus.ESCALATED, self.clock, resolved_by="workflow",
                        resolution=reason)
            self._alert(record, "Remediation workflow did not complete", reason, "critical")

    def _alert(self, record: ExceptionRecordRow, title: str, reason: str, priority: str) -> None:
        self.notifications.send_to_admins({
            "title": title,
            "content": f"Order {record.order_id}: {record.rule_name or record.type.value} ({reason}).",
            "type": "exception_escalation",
            "priority": priority,
            "data": {"order_id": record.order_id, "record_id": record.id, "severity": record.severity.value},
        })
