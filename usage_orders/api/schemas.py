"""Pydantic schemas for request/response validation."""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from usage_orders.models.enums import (
    ExceptionSeverity,
    ExceptionStatus,
    ExceptionType,
    ExecutionStatus,
    OrderStatus,
    PaymentMethod,
    ReviewStatus,
)


# Order schemas
class OrderResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    order_no: str
    user_id: int
    merchant_id: int
    device_id: Optional[int]
    status: OrderStatus
    payment_method: Optional[PaymentMethod]
    amount: int
    paid_amount: int
    refund_amount: int
    duration_minutes: int
    created_at: datetime
    updated_at: datetime
    paid_at: Optional[datetime]
    start_at: Optional[datetime]
    end_at: Optional[datetime]
    cancelled_at: Optional[datetime]
    refunded_at: Optional[datetime]
    cancel_reason: Optional[str]
    refund_reason: Optional[str]
    remark: Optional[str]
    version: int


class OrderTransition(BaseModel):
    target: OrderStatus
    reason: Optional[str] = Field(None, max_length=500)
    actor: Optional[str] = None


class AllowedTargetsResponse(BaseModel):
    status: OrderStatus
    allowed: List[OrderStatus]


# Workflow schemas
class WorkflowStart(BaseModel):
    template_id: str = Field(..., min_length=1)
    order_id: int
    variables: Dict[str, Any] = Field(default_factory=dict)


class WorkflowStarted(BaseModel):
    execution_id: str


class StepExecutionResponse(BaseModel):
    step_id: str
    status: str
    started_at: Optional[str]
    completed_at: Optional[str]
    retry_count: int
    output: Any = None
    error: Optional[str]


class WorkflowExecutionResponse(BaseModel):
    id: str
    template_id: str
    template_version: str
    order_id: int
    status: ExecutionStatus
    current_step_id: Optional[str]
    variables: Dict[str, Any]
    steps: List[StepExecutionResponse]
    started_at: datetime
    completed_at: Optional[datetime]
    error: Optional[str]
    error_step_id: Optional[str]


class TemplateToggle(BaseModel):
    enabled: bool


# Exception schemas
class ExceptionRecordResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    order_id: int
    type: ExceptionType
    severity: ExceptionSeverity
    rule_id: str
    rule_name: Optional[str]
    description: Optional[str]
    details: Dict[str, Any]
    status: ExceptionStatus
    detected_at: datetime
    resolved_at: Optional[datetime]
    resolved_by: Optional[str]
    resolution: Optional[str]
    execution_id: Optional[str]


class AnalysisResponse(BaseModel):
    order_id: int
    exceptions: List[ExceptionRecordResponse]
    risk_score: float
    recommendations: List[str]
    predicted_outcome: str
    confidence: float
    analyzed_at: datetime
    fired_rules: List[str]


class BatchAnalyze(BaseModel):
    order_ids: List[int] = Field(..., min_length=1)


class BatchHandle(BaseModel):
    record_ids: List[str] = Field(..., min_length=1)


class HandlingResultResponse(BaseModel):
    record_id: str
    success: bool
    action: str
    execution_id: Optional[str] = None
    error: Optional[str] = None


class RecordClose(BaseModel):
    resolved_by: str = Field(..., min_length=1)
    resolution: Optional[str] = Field(None, max_length=500)


class RuleToggle(BaseModel):
    enabled: bool


# Review schemas
class ReviewDecision(BaseModel):
    approved: bool
    decided_by: str = Field(..., min_length=1)
    resolution_action: Optional[str] = None


class ReviewTaskResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    order_id: int
    execution_id: Optional[str]
    assign_to: str
    priority: str
    status: ReviewStatus
    resolution_action: Optional[str]
    deadline_at: Optional[datetime]
    decided_by: Optional[str]
    decided_at: Optional[datetime]
    executed_at: Optional[datetime]
    created_at: datetime


# Timeout schemas
class ManualHandle(BaseModel):
    action: str = Field(..., pattern="^(refund|complete|cancel)$")
    reason: Optional[str] = Field(None, max_length=500)


# Settlement schemas
class SettlementResultResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    total_revenue: int
    order_count: int
    merchant_share: int
    platform_fee: int
    bonus_amount: int
    final_amount: int


class SettlementPreviewResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    merchant_id: int
    rule_id: str
    period_start: datetime
    period_end: datetime
    result: SettlementResultResponse
    below_minimum: bool
    applied_bonuses: List[str]


# Error response
class RefusalResponse(BaseModel):
    """Response when an action is refused."""
    message: str
