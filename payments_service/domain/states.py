"""Order and payment status vocabulary and the transition tables that guard every update."""

from enum import Enum
from typing import FrozenSet, Optional


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class WorkflowState(str, Enum):
    """Combined (order status, payment status) view used by the payment workflow."""
    CREATED = "CREATED"
    REMOTE_CREATED = "REMOTE_CREATED"
    CAPTURED = "CAPTURED"
    FAILED = "FAILED"


ORDER_TRANSITIONS = {
    OrderStatus.PENDING: frozenset({OrderStatus.CONFIRMED, OrderStatus.CANCELLED}),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

# Monotonic apart from the explicit refund edge.
PAYMENT_TRANSITIONS = {
    PaymentStatus.PENDING: frozenset({PaymentStatus.APPROVED, PaymentStatus.COMPLETED, PaymentStatus.FAILED}),
    PaymentStatus.APPROVED: frozenset({PaymentStatus.COMPLETED, PaymentStatus.FAILED}),
    PaymentStatus.COMPLETED: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.FAILED: frozenset(),
    PaymentStatus.REFUNDED: frozenset(),
}

# Payment states from which the order may still be cancelled or captured.
OPEN_PAYMENT_STATUSES = frozenset({PaymentStatus.PENDING, PaymentStatus.APPROVED})
TERMINAL_ORDER_STATUSES = frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED})


def order_sources(target: OrderStatus) -> FrozenSet[OrderStatus]:
    """Current order statuses from which `target` may be set.

    A status is its own source unless it is terminal: payment-only updates keep
    the order status and must still pass the guard.
    """
    sources = {status for status, targets in ORDER_TRANSITIONS.items() if target in targets}
    if target not in TERMINAL_ORDER_STATUSES:
        sources.add(target)
    return frozenset(sources)


def payment_sources(target: PaymentStatus) -> FrozenSet[PaymentStatus]:
    """Current payment statuses from which `target` may be set. Never includes `target`."""
    return frozenset(status for status, targets in PAYMENT_TRANSITIONS.items() if target in targets)


def can_transition_order(current: OrderStatus, target: OrderStatus) -> bool:
    return current in order_sources(target)


def can_transition_payment(current: PaymentStatus, target: PaymentStatus) -> bool:
    return target in PAYMENT_TRANSITIONS[current]


def workflow_state(payment_status: PaymentStatus, external_payment_id: Optional[str]) -> WorkflowState:
    if payment_status in (PaymentStatus.COMPLETED, PaymentStatus.REFUNDED):
        return WorkflowState.CAPTURED
    if payment_status == PaymentStatus.FAILED:
        return WorkflowState.FAILED
    if external_payment_id:
        return WorkflowState.REMOTE_CREATED
    return WorkflowState.CREATED


class CaptureIssue(str, Enum):
    """Provider issue codes with a dedicated local outcome."""
    ORDER_ALREADY_CAPTURED = "ORDER_ALREADY_CAPTURED"
    ORDER_EXPIRED = "ORDER_EXPIRED"
    ORDER_NOT_APPROVED = "ORDER_NOT_APPROVED"
    INSTRUMENT_DECLINED = "INSTRUMENT_DECLINED"
    PAYER_ACTION_REQUIRED = "PAYER_ACTION_REQUIRED"
    COMPLIANCE_VIOLATION = "COMPLIANCE_VIOLATION"
    CAPTURE_DENIED = "CAPTURE_DENIED"
    CAPTURE_FAILED = "CAPTURE_FAILED"


class WebhookEventType(str, Enum):
    CAPTURE_COMPLETED = "PAYMENT.CAPTURE.COMPLETED"
    CAPTURE_DENIED = "PAYMENT.CAPTURE.DENIED"
    CAPTURE_PENDING = "PAYMENT.CAPTURE.PENDING"
    ORDER_APPROVED = "CHECKOUT.ORDER.APPROVED"
    ORDER_COMPLETED = "CHECKOUT.ORDER.COMPLETED"


PAYPAL_PROVIDER = "paypal"
