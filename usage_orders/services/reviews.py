"""Manual review tasks raised by remediation workflows."""
from datetime import timedelta
from typing import List, Optional

import structlog
from sqlalchemy.orm import Session

from usage_orders.clock import DEFAULT_CLOCK, Clock
from usage_orders.models.audit import AuditEvent, AuditEventType
from usage_orders.models.domain import ReviewTask
from usage_orders.models.enums import ReviewStatus
from usage_orders.services.errors import RefusalError, ReviewTaskNotFoundError

logger = structlog.get_logger(__name__)

RESOLUTION_ACTIONS = ("refund", "cancel")


class ReviewService:
    def __init__(self, clock: Clock = DEFAULT_CLOCK):
        self.clock = clock

    def create(
        self,
        db: Session,
        order_id: int,
        assign_to: str,
        execution_id: Optional[str] = None,
        priority: str = "high",
        deadline_minutes: Optional[int] = None,
        resolution_action: Optional[str] = None,
    ) -> ReviewTask:
        """Create the task once per (order, assignee, execution); a repeat returns the existing task."""
        key = f"{order_id}:{assign_to}:{execution_id or '-'}"
        existing = db.query(ReviewTask).filter(ReviewTask.idempotency_key == key).one_or_none()
        if existing is not None:
            return existing

        now = self.clock.now()
        task = ReviewTask(
            idempotency_key=key,
            order_id=order_id,
            execution_id=execution_id,
            assign_to=assign_to,
            priority=priority,
            status=ReviewStatus.PENDING,
            resolution_action=resolution_action,
            deadline_at=now + timedelta(minutes=deadline_minutes) if deadline_minutes else None,
            created_at=now,
        )
        db.add(task)
        db.flush()
        db.add(AuditEvent(
            event_type=AuditEventType.REVIEW_TASK_CREATED,
            entity_type="ReviewTask",
            entity_id=str(task.id),
            created_at=now,
            payload_json={"order_id": order_id, "assign_to": assign_to, "execution_id": execution_id},
        ))
        db.commit()
        logger.info("review_task_created", task_id=task.id, order_id=order_id, assign_to=assign_to)
        return task

    def latest_for_order(self, db: Session, order_id: int) -> Optional[ReviewTask]:
        return (
            db.query(ReviewTask)
            .filter(ReviewTask.order_id == order_id)
            .order_by(ReviewTask.created_at.desc(), ReviewTask.id.desc())
            .first()
        )

    def list_for_order(self, db: Session, order_id: int) -> List[ReviewTask]:
        return db.query(ReviewTask).filter(ReviewTask.order_id == order_id).order_by(ReviewTask.id).all()

    def decide(
        self,
        db: Session,
        task_id: int,
        approved: bool,
        decided_by: str,
        resolution_action: Optional[str] = None,
    ) -> ReviewTask:
        """Record a reviewer's decision. A task is decided once."""
        task = db.get(ReviewTask, task_id)
        if task is None:
            raise ReviewTaskNotFoundError(f"Review task not found: {task_id}")
        if task.status != ReviewStatus.PENDING:
            raise RefusalError(f"REFUSAL: review task {task_id} was already {task.status.value}")
        if resolution_action is not None and resolution_action not in RESOLUTION_ACTIONS:
            raise ValueError(f"resolution_action must be one of {', '.join(RESOLUTION_ACTIONS)}")

        task.status = ReviewStatus.APPROVED if approved else ReviewStatus.REJECTED
        if resolution_action is not None:
            task.resolution_action = resolution_action
        task.decided_by = decided_by
        task.decided_at = self.clock.now()
        db.commit()
        logger.info("review_task_decided", task_id=task_id, status=task.status.value, decided_by=decided_by)
        return task
