"""Typed failures raised by the order lifecycle services."""
from typing import Optional


class RefusalError(Exception):
    """
    Raised when an action is refused by the system.
    This is NOT a crash - it's an invariant being enforced.
    """
    def __init__(self, message: str):
        self.message = message
        super().__init__(self.message)


class IllegalTransitionError(RefusalError):
    """The requested status is not in the allowed set for the order's current status."""

    def __init__(self, order_id, current, target, allowed=()):
        self.order_id = order_id
        self.current = current
        self.target = target
        self.allowed = list(allowed)
        allowed_text = ", ".join(s.value for s in self.allowed) or "none (terminal)"
        super().__init__(
            f"REFUSAL: order {order_id} cannot move from {current.value} to {target.value}. "
            f"Allowed: {allowed_text}"
        )


class OverRefundError(RefusalError):
    """The refund would take refund_amount above paid_amount."""

    def __init__(self, order_id, requested: int, refundable: int):
        self.order_id = order_id
        self.requested = requested
        self.refundable = refundable
        super().__init__(
            f"REFUSAL: refund of {requested} for order {order_id} exceeds the refundable {refundable}"
        )


class OrderNotFoundError(LookupError):
    def __init__(self, order_id):
        self.order_id = order_id
        super().__init__(f"Order not found: {order_id}")


class StaleOrderError(Exception):
    """The order changed underneath a read-modify-write."""

    def __init__(self, order_id, expected_version: Optional[int] = None):
        self.order_id = order_id
        self.expected_version = expected_version
        super().__init__(f"Order {order_id} was modified concurrently (expected version {expected_version})")


class GatewayError(Exception):
    """A device, ledger or notification call failed."""


class DeviceStartError(GatewayError):
    pass


class StepTimeoutError(TimeoutError):
    def __init__(self, step_id: str, timeout_seconds: float):
        self.step_id = step_id
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Step {step_id} exceeded its {timeout_seconds}s deadline")


class WorkflowConfigurationError(ValueError):
    """Unknown step/action type or a dangling step pointer."""

    def __init__(self, message: str, step_id: Optional[str] = None):
        self.step_id = step_id
        super().__init__(message)


class WorkflowNotFoundError(LookupError):
    pass


class TemplateDisabledError(RefusalError):
    pass


class ReviewPendingError(RefusalError):
    """A review decision was requested before a reviewer decided."""


class RuleNotFoundError(LookupError):
    pass


class ExceptionRecordNotFoundError(LookupError):
    pass


class ReviewTaskNotFoundError(LookupError):
    pass
