"""
Workflow templates - versioned step graphs, validated at load.

Steps are one of four variants. Each step names the step to run next on
success and on failure; END_WORKFLOW (or no pointer) ends the execution.
"""
from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, Iterable, List, Mapping, Optional, Set, Tuple, Union

from usage_orders.models.enums import StepType
from usage_orders.services.conditions import Condition
from usage_orders.services.errors import WorkflowConfigurationError

END_WORKFLOW = "end_workflow"


@dataclass(frozen=True)
class Step:
    id: str
    name: str = ""
    retry_count: int = 0
    # Hard deadline in seconds for action and notification steps
    timeout: Optional[float] = None
    on_success: Optional[str] = None
    on_failure: Optional[str] = None

    type: ClassVar[StepType]

    def pointers(self) -> Tuple[Optional[str], Optional[str]]:
        return self.on_success, self.on_failure


@dataclass(frozen=True)
class ConditionStep(Step):
    conditions: Tuple[Condition, ...] = ()

    type: ClassVar[StepType] = StepType.CONDITION


@dataclass(frozen=True)
class ActionStep(Step):
    action: str = ""
    config: Mapping[str, Any] = field(default_factory=dict)

    type: ClassVar[StepType] = StepType.ACTION


@dataclass(frozen=True)
class NotificationStep(Step):
    audience: str = "user"  # user | admin
    template: str = ""
    priority: Optional[str] = None
    channels: Tuple[str, ...] = ()
    roles: Tuple[str, ...] = ()

    type: ClassVar[StepType] = StepType.NOTIFICATION


@dataclass(frozen=True)
class DelayStep(Step):
    delay_minutes: float = 1.0

    type: ClassVar[StepType] = StepType.DELAY


AnyStep = Union[ConditionStep, ActionStep, NotificationStep, DelayStep]

NOTIFICATION_AUDIENCES = ("user", "admin")


@dataclass
class WorkflowTemplate:
    id: str
    name: str
    steps: Tuple[AnyStep, ...]
    version: str = "1.0.0"
    description: str = ""
    category: str = "general"
    variables: Dict[str, Any] = field(default_factory=dict)
    enabled: bool = True

    @property
    def first_step(self) -> AnyStep:
        return self.steps[0]

    def step(self, step_id: str) -> Optional[AnyStep]:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def validate(self, known_actions: Iterable[str]) -> None:
        """
        Reject a malformed graph before it can run.

        Checks: at least one step, unique ids, every pointer names a step or
        END_WORKFLOW, actions are registered, delays positive, every step is
        reachable from the first and the end is reachable.
        """
        if not self.steps:
            raise WorkflowConfigurationError(f"Template {self.id} has no steps")

        known = set(known_actions)
        ids: Set[str] = set()
        for step in self.steps:
            if step.id in ids:
                raise WorkflowConfigurationError(f"Template {self.id}: duplicate step id", step.id)
            if step.id == END_WORKFLOW:
                raise WorkflowConfigurationError(f"Template {self.id}: '{END_WORKFLOW}' is reserved", step.id)
            ids.add(step.id)

        for step in self.steps:
            for pointer in step.pointers():
                if pointer is not None and pointer != END_WORKFLOW and pointer not in ids:
                    raise WorkflowConfigurationError(
                        f"Template {self.id}: step {step.id} points to unknown step '{pointer}'", step.id)
            if step.retry_count < 0:
                raise WorkflowConfigurationError(f"Template {self.id}: negative retry_count", step.id)
            if step.timeout is not None and step.timeout <= 0:
                raise WorkflowConfigurationError(f"Template {self.id}: timeout must be positive", step.id)
            if isinstance(step, ActionStep) and step.action not in known:
                raise WorkflowConfigurationError(
                    f"Template {self.id}: unknown action '{step.action}'", step.id)
            if isinstance(step, DelayStep) and step.delay_minutes <= 0:
                raise WorkflowConfigurationError(f"Template {self.id}: delay must be positive", step.id)
            if isinstance(step, NotificationStep) and step.audience not in NOTIFICATION_AUDIENCES:
                raise WorkflowConfigurationError(
                    f"Template {self.id}: unknown notification audience '{step.audience}'", step.id)

        reachable = self._reachable_from(self.first_step.id)
        unreachable = [s.id for s in self.steps if s.id not in reachable]
        if unreachable:
            raise WorkflowConfigurationError(
                f"Template {self.id}: unreachable steps {', '.join(unreachable)}", unreachable[0])
        if END_WORKFLOW not in reachable:
            raise WorkflowConfigurationError(f"Template {self.id}: no path reaches the end of the workflow")

    def _reachable_from(self, start: str) -> Set[str]:
        seen: Set[str] = set()
        frontier = [start]
        while frontier:
            current = frontier.pop()
            if current in seen:
                continue
            seen.add(current)
            if current == END_WORKFLOW:
                continue
            step = self.step(current)
            for pointer in step.pointers():
                # A missing pointer also ends the execution
                frontier.append(pointer or END_WORKFLOW)
        return seen

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "version": self.version,
            "description": self.description,
            "category": self.category,
            "enabled": self.enabled,
            "variables": dict(self.variables),
            "steps": [step_to_dict(s) for s in self.steps],
        }


def step_to_dict(step: AnyStep) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        "id": step.id,
        "name": step.name,
        "type": step.type.value,
        "retry_count": step.retry_count,
        "timeout": step.timeout,
        "on_success": step.on_success,
        "on_failure": step.on_failure,
    }
    if isinstance(step, ConditionStep):
        data["conditions"] = [c.to_dict() for c in step.conditions]
    elif isinstance(step, ActionStep):
        data["action"] = step.action
        data["config"] = dict(step.config)
    elif isinstance(step, NotificationStep):
        data.update(audience=step.audience, template=step.template, priority=step.priority,
                    channels=list(step.channels), roles=list(step.roles))
    else:
        data["delay_minutes"] = step.delay_minutes
    return data


def step_from_dict(data: Mapping[str, Any]) -> AnyStep:
    try:
        kind = StepType(data["type"])
    except ValueError:
        raise WorkflowConfigurationError(f"Unknown step type '{data['type']}'", data.get("id")) from None

    common = dict(
        id=data["id"],
        name=data.get("name", ""),
        retry_count=data.get("retry_count", 0),
        timeout=data.get("timeout"),
        on_success=data.get("on_success"),
        on_failure=data.get("on_failure"),
    )
    if kind == StepType.CONDITION:
        return ConditionStep(conditions=tuple(Condition.from_dict(c) for c in data.get("conditions", [])), **common)
    if kind == StepType.ACTION:
        return ActionStep(action=data["action"], config=dict(data.get("config", {})), **common)
    if kind == StepType.NOTIFICATION:
        return NotificationStep(
            audience=data.get("audience", "user"),
            template=data.get("template", ""),
            priority=data.get("priority"),
            channels=tuple(data.get("channels", ())),
            roles=tuple(data.get("roles", ())),
            **common,
        )
    return DelayStep(delay_minutes=data.get("delay_minutes", 1.0), **common)


def template_from_dict(data: Mapping[str, Any]) -> WorkflowTemplate:
    return WorkflowTemplate(
        id=data["id"],
        name=data.get("name", data["id"]),
        version=data.get("version", "1.0.0"),
        description=data.get("description", ""),
        category=data.get("category", "general"),
        variables=dict(data.get("variables", {})),
        enabled=data.get("enabled", True),
        steps=tuple(step_from_dict(s) for s in data["steps"]),
    )


MESSAGE_TEMPLATES = {
    "payment_reminder": "Your order {order_id} is about to expire. Please complete the payment.",
    "order_cancelled": "Order {order_id} was cancelled because payment was not completed in time.",
    "device_started": "The device has started. Order {order_id} is now in use.",
    "refund_initiated": "A refund for order {order_id} is being processed.",
    "exception_resolved": "The problem with order {order_id} has been resolved.",
    "workflow_failure": "Workflow {execution_id} needs manual intervention (order {order_id}).",
    "high_value_exception": "High value order {order_id} needs immediate attention.",
    "escalation_to_manager": "Order {order_id} has been escalated to a manager.",
    "escalation_to_director": "Order {order_id} has been escalated to a director.",
    "device_maintenance_required": "The device for order {order_id} needs a maintenance check.",
    "refund_failure": "Refund for order {order_id} failed and needs manual handling.",
    "emergency_protocol": "Emergency protocol started for order {order_id}.",
    "escalation_retry": "Retrying escalation for order {order_id}.",
    "execution_failure": "Executing the review decision for order {order_id} failed.",
}


def render_message(template: str, **values: Any) -> str:
    text = MESSAGE_TEMPLATES.get(template)
    if text is None:
        return f"Workflow notification: {template}"
    return text.format(**values)


def _cond(field_name: str, operator: str, value: Any) -> Condition:
    return Condition.from_dict({"field": field_name, "operator": operator, "value": value})


def payment_timeout_workflow() -> WorkflowTemplate:
    return WorkflowTemplate(
        id="payment_timeout_workflow",
        name="Payment timeout handling",
        description="Remind the user, wait a grace period, then cancel an unpaid order",
        category="timeout",
        variables={"timeout_minutes": 15, "max_retries": 3, "notification_channels": ["app", "sms"]},
        steps=(
            ConditionStep(
                id="detect_timeout", name="Detect payment timeout",
                conditions=(_cond("status", "eq", "PAY_PENDING"), _cond("created_at_minutes_ago", "gte", 15)),
                on_success="send_reminder", on_failure=END_WORKFLOW,
            ),
            NotificationStep(
                id="send_reminder", name="Send payment reminder", audience="user",
                template="payment_reminder", channels=("app", "sms"), retry_count=2, timeout=30,
                on_success="wait_grace_period", on_failure="cancel_order",
            ),
            DelayStep(
                id="wait_grace_period", name="Wait grace period", delay_minutes=5,
                on_success="check_payment_status", on_failure="cancel_order",
            ),
            ConditionStep(
                id="check_payment_status", name="Check payment status",
                conditions=(_cond("status", "eq", "PAID"),),
                on_success=END_WORKFLOW, on_failure="cancel_order",
            ),
            ActionStep(
                id="cancel_order", name="Cancel order", action="cancel_order",
                config={"reason": "payment timeout"},
                on_success="notify_cancellation", on_failure="escalate_to_admin",
            ),
            NotificationStep(
                id="notify_cancellation", name="Notify cancellation", audience="user",
                template="order_cancelled", channels=("app", "sms"),
                on_success=END_WORKFLOW, on_failure=END_WORKFLOW,
            ),
            NotificationStep(
                id="escalate_to_admin", name="Escalate to admin", audience="admin",
                template="workflow_failure", priority="high",
                on_success=END_WORKFLOW, on_failure=END_WORKFLOW,
            ),
        ),
    )


def device_timeout_workflow() -> WorkflowTemplate:
    return WorkflowTemplate(
        id="device_timeout_workflow",
        name="Device start timeout handling",
        description="Retry the device, refund when it stays down, flag it for maintenance",
        category="timeout",
        variables={"timeout_minutes": 5, "max_retry_attempts": 3, "auto_refund_enabled": True},
        steps=(
            ConditionStep(
                id="detect_start_timeout", name="Detect start timeout",
                conditions=(_cond("status", "eq", "PAID"), _cond("paid_at_minutes_ago", "gte", 5)),
                on_success="retry_device_start", on_failure=END_WORKFLOW,
            ),
            ActionStep(
                id="retry_device_start", name="Retry device start", action="retry_device_start",
                retry_count=3, timeout=120,
                on_success="check_start_success", on_failure="initiate_refund",
            ),
            ConditionStep(
                id="check_start_success", name="Check start success",
                conditions=(_cond("status", "eq", "IN_USE"),),
                on_success="notify_start_success", on_failure="initiate_refund",
            ),
            NotificationStep(
                id="notify_start_success", name="Notify start success", audience="user",
                template="device_started", channels=("app",),
                on_success=END_WORKFLOW, on_failure=END_WORKFLOW,
            ),
            ActionStep(
                id="initiate_refund", name="Initiate refund", action="initiate_refund",
                config={"reason": "device start timeout", "refund_type": "full"},
                on_success="notify_refund", on_failure="escalate_refund_failure",
            ),
            NotificationStep(
                id="notify_refund", name="Notify refund", audience="user",
                template="refund_initiated", channels=("app", "sms"),
                on_success="mark_device_maintenance", on_failure="mark_device_maintenance",
            ),
            ActionStep(
                id="mark_device_maintenance", name="Mark device for maintenance", action="mark_device_maintenance",
                config={"priority": "high", "reason": "device start timeout"},
                on_success="notify_maintenance_team", on_failure=END_WORKFLOW,
            ),
            NotificationStep(
                id="notify_maintenance_team", name="Notify maintenance team", audience="admin",
                template="device_maintenance_required", priority="high",
                roles=("maintenance", "technical_support"),
                on_success=END_WORKFLOW, on_failure=END_WORKFLOW,
            ),
            NotificationStep(
                id="escalate_refund_failure", name="Escalate refund failure", audience="admin",
                template="refund_failure", priority="critical", roles=("finance", "admin"),
                on_success=END_WORKFLOW, on_failure=END_WORKFLOW,
            ),
        ),
    )


def high_value_exception_workflow() -> WorkflowTemplate:
    """Review chain supervisor -> manager -> director, each level with its own wait and escalation edge."""
    return WorkflowTemplate(
        id="high_value_exception_workflow",
        name="High value order exception handling",
        description="Escalating manual review for high value orders in trouble",
        category="exception",
        variables={
            "high_value_threshold": 10000,
            "require_manual_approval": True,
            "escalation_levels": ["supervisor", "manager", "director"],
        },
        steps=(
            ConditionStep(
                id="detect_high_value_exception", name="Detect high value exception",
                conditions=(_cond("amount", "gte", 10000),
                            _cond("status", "in", ["CANCELLED", "REFUNDING", "CLOSED"])),
                on_success="immediate_escalation", on_failure=END_WORKFLOW,
            ),
            NotificationStep(
                id="immediate_escalation", name="Immediate escalation", audience="admin",
                template="high_value_exception", priority="critical", roles=("supervisor", "finance"),
                on_success="create_review_task", on_failure="retry_escalation",
            ),
            ActionStep(
                id="create_review_task", name="Create supervisor review", action="create_manual_review_task",
                config={"priority": "critical", "assign_to": "supervisor", "deadline_minutes": 30},
                on_success="wait_for_review", on_failure="escalate_to_manager",
            ),
            DelayStep(
                id="wait_for_review", name="Wait for supervisor review", delay_minutes=30,
                on_success="check_review_result", on_failure="escalate_to_manager",
            ),
            ConditionStep(
                id="check_review_result", name="Check review result",
                conditions=(_cond("review_status", "eq", "approved"),),
                on_success="execute_approved_action", on_failure="escalate_to_manager",
            ),
            ActionStep(
                id="execute_approved_action", name="Execute approved action", action="execute_review_decision",
                on_success="notify_completion", on_failure="escalate_execution_failure",
            ),
            NotificationStep(
                id="escalate_to_manager", name="Escalate to manager", audience="admin",
                template="escalation_to_manager", priority="critical", roles=("manager",),
                on_success="manager_review_task", on_failure="escalate_to_director",
            ),
            ActionStep(
                id="manager_review_task", name="Create manager review", action="create_manual_review_task",
                config={"priority": "critical", "assign_to": "manager", "deadline_minutes": 60},
                on_success="wait_manager_review", on_failure="escalate_to_director",
            ),
            DelayStep(
                id="wait_manager_review", name="Wait for manager review", delay_minutes=60,
                on_success="execute_manager_decision", on_failure="escalate_to_director",
            ),
            ActionStep(
                id="execute_manager_decision", name="Execute manager decision", action="execute_review_decision",
                on_success="notify_completion", on_failure="escalate_to_director",
            ),
            NotificationStep(
                id="escalate_to_director", name="Escalate to director", audience="admin",
                template="escalation_to_director", priority="critical", roles=("director",),
                on_success="director_manual_handling", on_failure="emergency_protocol",
            ),
            ActionStep(
                id="director_manual_handling", name="Director manual handling", action="create_manual_review_task",
                config={"priority": "emergency", "assign_to": "director", "deadline_minutes": 120},
                on_success="notify_completion", on_failure="emergency_protocol",
            ),
            NotificationStep(
                id="emergency_protocol", name="Emergency protocol", audience="admin",
                template="emergency_protocol", priority="emergency", roles=("all_admins",),
                on_success=END_WORKFLOW, on_failure=END_WORKFLOW,
            ),
            NotificationStep(
                id="notify_completion", name="Notify completion", audience="user",
                template="exception_resolved", channels=("app", "sms"),
                on_success=END_WORKFLOW, on_failure=END_WORKFLOW,
            ),
            NotificationStep(
                id="retry_escalation", name="Retry escalation", audience="admin",
                template="escalation_retry", priority="high", retry_count=2,
                on_success="create_review_task", on_failure="escalate_to_manager",
            ),
            NotificationStep(
                id="escalate_execution_failure", name="Escalate execution failure", audience="admin",
                template="execution_failure", priority="critical",
                on_success=END_WORKFLOW, on_failure=END_WORKFLOW,
            ),
        ),
    )


def default_templates() -> List[WorkflowTemplate]:
    return [payment_timeout_workflow(), device_timeout_workflow(), high_value_exception_workflow()]
