"""Billing status, session lifecycle and the transition rules between them."""

from __future__ import annotations

from enum import Enum

from .errors import InvalidTransition, MissingPaymentMethod


class BillingStatus(str, Enum):
    """Settlement state of a session's bill."""

    UNPAID = "unpaid"
    PENDING_PAYMENT = "pending_payment"
    PAID = "paid"


class SessionState(str, Enum):
    """Lifecycle of a table visit."""

    OPEN = "open"
    PAYMENT_REQUESTED = "payment_requested"
    CLOSED = "closed"


class PaymentMethod(str, Enum):
    """Declared settlement method; the money itself moves out of band."""

    CASH = "cash"
    CARD = "card"
    UPI = "upi"
    OTHER = "other"


FORWARD: dict[BillingStatus, list[BillingStatus]] = {
    BillingStatus.UNPAID: [BillingStatus.PENDING_PAYMENT, BillingStatus.PAID],
    BillingStatus.PENDING_PAYMENT: [BillingStatus.PAID],
    BillingStatus.PAID: [],
}

# Lifecycle state an active session takes for a given billing status.
LIFECYCLE: dict[BillingStatus, SessionState] = {
    BillingStatus.UNPAID: SessionState.OPEN,
    BillingStatus.PENDING_PAYMENT: SessionState.PAYMENT_REQUESTED,
    BillingStatus.PAID: SessionState.CLOSED,
}


def is_backward(src: BillingStatus, dst: BillingStatus) -> bool:
    """Return ``True`` if moving from ``src`` to ``dst`` regresses the bill."""

    if src is BillingStatus.PAID:
        return True
    return src is not dst and dst not in FORWARD[src]


def check_transition(
    src: BillingStatus,
    dst: BillingStatus,
    method: PaymentMethod | None = None,
    *,
    override: bool = False,
) -> None:
    """Validate a billing status change or raise :class:`InvalidTransition`.

    ``PAID`` always needs a payment method. Same-status writes are no-ops,
    except on ``PAID`` which is terminal. Backward moves, including anything
    leaving ``PAID``, are only accepted with ``override``.
    """

    if dst is BillingStatus.PAID and method is None:
        raise MissingPaymentMethod(
            "payment method is required to mark a bill paid",
            hint="send paymentMethod: cash, card, upi or other",
        )
    if is_backward(src, dst) and not override:
        raise InvalidTransition(
            f"cannot move billing status from {src.value} to {dst.value}",
            hint="pass override=true to reverse a billing status",
        )
