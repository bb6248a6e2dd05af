"""API routes over the order lifecycle services."""
from dataclasses import asdict
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from usage_orders.api.schemas import (
    AllowedTargetsResponse,
    AnalysisResponse,
    BatchAnalyze,
    BatchHandle,
    ExceptionRecordResponse,
    HandlingResultResponse,
    ManualHandle,
    OrderResponse,
    OrderTransition,
    RecordClose,
    RefusalResponse,
    ReviewDecision,
    ReviewTaskResponse,
    RuleToggle,
    SettlementPreviewResponse,
    TemplateToggle,
    WorkflowExecutionResponse,
    WorkflowStart,
    WorkflowStarted,
)
from usage_orders.models.domain import Order
from usage_orders.models.enums import ExceptionStatus
from usage_orders.services.container import Services
from usage_orders.services.errors import IllegalTransitionError
from usage_orders.services.exception_classifier import AnalysisResult
from usage_orders.services.state_machine import OrderStateMachine, allowed_targets
from usage_orders.services.workflow_engine import WorkflowExecution

router = APIRouter()

REFUSED = {409: {"model": RefusalResponse, "description": "Refusal - the lifecycle does not allow this"}}


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_db(services: Services = Depends(get_services)):
    db = services.session_factory()
    try:
        yield db
    finally:
        db.close()


def _order_or_404(db: Session, order_id: int) -> Order:
    order = db.get(Order, order_id)
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    return order


def _execution_body(execution: WorkflowExecution) -> Dict[str, Any]:
    return {
        "id": execution.id,
        "template_id": execution.template_id,
        "template_version": execution.template_version,
        "order_id": execution.order_id,
        "status": execution.status,
        "current_step_id": execution.current_step_id,
        "variables": execution.variables,
        "steps": [s.to_dict() for s in execution.history()],
        "started_at": execution.started_at,
        "completed_at": execution.completed_at,
        "error": execution.error,
        "error_step_id": execution.error_step_id,
    }


def _analysis_body(result: AnalysisResult) -> Dict[str, Any]:
    return {
        "order_id": result.order_id,
        "exceptions": [ExceptionRecordResponse.model_validate(r) for r in result.exceptions],
        "risk_score": result.risk_score,
        "recommendations": result.recommendations,
        "predicted_outcome": result.predicted_outcome,
        "confidence": result.confidence,
        "analyzed_at": result.analyzed_at,
        "fired_rules": result.fired_rules,
    }


# Order endpoints
@router.get("/orders/{order_id}", response_model=OrderResponse)
def get_order(order_id: int, db: Session = Depends(get_db)):
    return _order_or_404(db, order_id)


@router.get("/orders/{order_id}/transitions", response_model=AllowedTargetsResponse)
def get_allowed_transitions(order_id: int, db: Session = Depends(get_db)):
    order = _order_or_404(db, order_id)
    return {"status": order.status, "allowed": allowed_targets(order.status)}


@router.post("/orders/{order_id}/transition", response_model=OrderResponse, responses=REFUSED)
def transition_order(order_id: int, body: OrderTransition, db: Session = Depends(get_db),
                     services: Services = Depends(get_services)):
    """
    Move an order to another status through the state machine.

    WILL REFUSE (409) any target not allowed from the current status.
    """
    order = _order_or_404(db, order_id)
    machine = OrderStateMachine(db, services.clock)
    try:
        return machine.transition_to(order, body.target, reason=body.reason, actor=body.actor)
    except IllegalTransitionError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"message": e.message, "allowed": [s.value for s in e.allowed]},
        )


# Workflow endpoints
@router.post("/workflows", response_model=WorkflowStarted, status_code=status.HTTP_201_CREATED, responses=REFUSED)
def start_workflow(body: WorkflowStart, db: Session = Depends(get_db), services: Services = Depends(get_services)):
    _order_or_404(db, body.order_id)
    execution_id = services.workflows.start_workflow(body.template_id, body.order_id, body.variables)
    return {"execution_id": execution_id}


@router.get("/workflows/templates")
def list_templates(services: Services = Depends(get_services)) -> List[Dict[str, Any]]:
    return [t.to_dict() for t in services.workflows.list_templates()]


@router.put("/workflows/templates/{template_id}")
def toggle_template(template_id: str, body: TemplateToggle, services: Services = Depends(get_services)):
    return services.workflows.set_template_enabled(template_id, body.enabled).to_dict()


@router.get("/workflows/statistics")
def workflow_statistics(services: Services = Depends(get_services)) -> Dict[str, int]:
    return services.workflows.get_statistics()


@router.get("/workflows/{execution_id}", response_model=WorkflowExecutionResponse)
def get_workflow(execution_id: str, services: Services = Depends(get_services)):
    execution = services.workflows.get_execution(execution_id)
    if execution is None:
        raise HTTPException(status_code=404, detail="Workflow execution not found")
    return _execution_body(execution)


@router.post("/workflows/{execution_id}/cancel")
def cancel_workflow(execution_id: str, services: Services = Depends(get_services)):
    """Cancel a running execution. Returns cancelled=false for anything not running."""
    return {"cancelled": services.workflows.cancel_workflow(execution_id)}


# Review endpoints
@router.get("/orders/{order_id}/reviews", response_model=List[ReviewTaskResponse])
def list_reviews(order_id: int, db: Session = Depends(get_db), services: Services = Depends(get_services)):
    return services.reviews.list_for_order(db, order_id)


@router.post("/reviews/{task_id}/decision", response_model=ReviewTaskResponse, responses=REFUSED)
def decide_review(task_id: int, body: ReviewDecision, db: Session = Depends(get_db),
                  services: Services = Depends(get_services)):
    return services.reviews.decide(db, task_id, body.approved, body.decided_by, body.resolution_action)


# Exception endpoints
@router.post("/exceptions/analyze/{order_id}", response_model=AnalysisResponse)
def analyze_order(order_id: int, services: Services = Depends(get_services)):
    return _analysis_body(services.classifier.analyze_order(order_id))


@router.post("/exceptions/analyze", response_model=List[AnalysisResponse])
def batch_analyze(body: BatchAnalyze, services: Services = Depends(get_services)):
    return [_analysis_body(r) for r in services.classifier.batch_analyze(body.order_ids)]


@router.get("/exceptions/rules")
def list_rules(services: Services = Depends(get_services)) -> List[Dict[str, Any]]:
    return [r.to_dict() for r in services.classifier.get_rules()]


@router.put("/exceptions/rules/{rule_id}")
def toggle_rule(rule_id: str, body: RuleToggle, services: Services = Depends(get_services)):
    return services.classifier.toggle_rule(rule_id, body.enabled).to_dict()


@router.get("/exceptions/statistics")
def exception_statistics(services: Services = Depends(get_services)) -> Dict[str, Any]:
    return services.classifier.get_statistics()


@router.get("/exceptions/records", response_model=List[ExceptionRecordResponse])
def list_records(record_status: Optional[ExceptionStatus] = None, order_id: Optional[int] = None,
                 limit: int = 100, services: Services = Depends(get_services)):
    return services.remediator.list_records(status=record_status, order_id=order_id, limit=limit)


@router.post("/exceptions/records/{record_id}/handle", response_model=HandlingResultResponse)
def handle_record(record_id: str, services: Services = Depends(get_services)):
    return asdict(services.remediator.handle_exception(record_id))


@router.post("/exceptions/records/handle", response_model=List[HandlingResultResponse])
def batch_handle(body: BatchHandle, services: Services = Depends(get_services)):
    return [asdict(r) for r in services.remediator.batch_handle(body.record_ids)]


@router.post("/exceptions/records/{record_id}/resolve", response_model=ExceptionRecordResponse, responses=REFUSED)
def resolve_record(record_id: str, body: RecordClose, services: Services = Depends(get_services)):
    return services.remediator.resolve(record_id, body.resolved_by, body.resolution)


@router.post("/exceptions/records/{record_id}/escalate", response_model=ExceptionRecordResponse, responses=REFUSED)
def escalate_record(record_id: str, body: RecordClose, services: Services = Depends(get_services)):
    return services.remediator.escalate(record_id, body.resolved_by, body.resolution)


@router.post("/exceptions/records/{record_id}/ignore", response_model=ExceptionRecordResponse, responses=REFUSED)
def ignore_record(record_id: str, body: RecordClose, services: Services = Depends(get_services)):
    return services.remediator.ignore(record_id, body.resolved_by, body.resolution)


# Timeout endpoints
@router.get("/timeouts/statistics")
def timeout_statistics(services: Services = Depends(get_services)) -> Dict[str, int]:
    return services.timeouts.get_timeout_stats()


@router.post("/timeouts/scan")
def run_timeout_scan(services: Services = Depends(get_services)) -> Dict[str, int]:
    """Run every timeout scan now. Returns the number of orders remediated per kind."""
    return services.timeouts.run_all()


@router.post("/timeouts/orders/{order_id}/handle", response_model=OrderResponse, responses=REFUSED)
def manual_handle(order_id: int, body: ManualHandle, services: Services = Depends(get_services)):
    return services.timeouts.manual_handle(order_id, body.action, body.reason)


# Settlement endpoints
@router.get("/settlement/rules")
def settlement_rules(services: Services = Depends(get_services)) -> List[Dict[str, Any]]:
    return [r.to_dict() for r in services.settlement.get_rules()]


@router.get("/settlement/merchants/{merchant_id}/preview", response_model=SettlementPreviewResponse)
def settlement_preview(merchant_id: int, rule_id: Optional[str] = None, services: Services = Depends(get_services)):
    return services.settlement.preview(merchant_id, rule_id)
