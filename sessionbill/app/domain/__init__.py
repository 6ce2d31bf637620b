"""Domain models and helpers."""

from .billing_status import (
    FORWARD,
    LIFECYCLE,
    BillingStatus,
    PaymentMethod,
    SessionState,
    check_transition,
    is_backward,
)
from .order_status import OrderStatus, TRANSITIONS, can_transition

__all__ = [
    "BillingStatus",
    "FORWARD",
    "LIFECYCLE",
    "OrderStatus",
    "PaymentMethod",
    "SessionState",
    "TRANSITIONS",
    "can_transition",
    "check_transition",
    "is_backward",
]
