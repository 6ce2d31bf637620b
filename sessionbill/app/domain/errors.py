"""Error kinds raised by the session billing core.

Each error carries a machine readable ``code``, the HTTP status the API layer
should answer with and an optional ``hint`` for the client. The exception
handler in :mod:`sessionbill.app.main` renders them with the standard error
envelope.
"""

from __future__ import annotations


class BillingError(Exception):
    """Base class for all session billing errors."""

    code = "BILLING_ERROR"
    status_code = 400

    def __init__(self, message: str, *, hint: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.hint = hint


class SessionNotFound(BillingError):
    code = "SESSION_NOT_FOUND"
    status_code = 404


class PaymentRequestNotFound(SessionNotFound):
    """No live payment request exists for the session."""

    code = "PAYMENT_REQUEST_NOT_FOUND"


class BillRecordNotFound(BillingError):
    code = "BILL_RECORD_NOT_FOUND"
    status_code = 404


class OrderNotFound(BillingError):
    code = "ORDER_NOT_FOUND"
    status_code = 404


class SessionClosed(BillingError):
    code = "SESSION_CLOSED"
    status_code = 409


class OrderAttachmentConflict(BillingError):
    """The order cannot join the session it references."""

    code = "ORDER_ATTACHMENT_CONFLICT"
    status_code = 409


class DuplicateOrderNumber(BillingError):
    code = "ORDER_NUMBER_TAKEN"
    status_code = 409


class InvalidTransition(BillingError):
    code = "INVALID_TRANSITION"
    status_code = 400


class MissingPaymentMethod(InvalidTransition):
    """``PAID`` was requested without declaring how the bill was settled."""

    code = "PAYMENT_METHOD_REQUIRED"
    status_code = 422


class ConcurrentUpdate(BillingError):
    """Compare-and-set kept losing against concurrent writers."""

    code = "CONCURRENT_UPDATE"
    status_code = 409


class PersistenceTimeout(BillingError):
    """A persistence call exceeded its deadline; safe to retry."""

    code = "PERSISTENCE_TIMEOUT"
    status_code = 503


class PersistenceFailure(BillingError):
    """A persistence call failed and will not succeed on retry."""

    code = "PERSISTENCE_FAILURE"
    status_code = 500


__all__ = [
    "BillingError",
    "SessionNotFound",
    "PaymentRequestNotFound",
    "BillRecordNotFound",
    "OrderNotFound",
    "SessionClosed",
    "OrderAttachmentConflict",
    "DuplicateOrderNumber",
    "InvalidTransition",
    "MissingPaymentMethod",
    "ConcurrentUpdate",
    "PersistenceTimeout",
    "PersistenceFailure",
]
