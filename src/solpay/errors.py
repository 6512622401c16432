"""
Typed error taxonomy for the payment engine.

Every error carries a stable ``code`` and a ``retryable`` flag so callers can
branch on retry-vs-terminal without inspecting message text.
"""

from typing import Any


class PaymentError(Exception):
    """Base class for all errors raised by solpay."""

    code: str = "payment_error"
    retryable: bool = False

    def __init__(self, message: str = "", **details: Any):
        super().__init__(message or self.code)
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": str(self),
            "retryable": self.retryable,
            **self.details,
        }


# Input errors: rejected synchronously, never stored


class InvalidAmount(PaymentError):
    code = "invalid_amount"


class UnsupportedToken(PaymentError):
    code = "unsupported_token"


class InvalidOrder(PaymentError):
    code = "invalid_order"


class InvalidPaymentURI(PaymentError):
    code = "invalid_payment_uri"


# Dependency errors: retryable, never treated as a business failure


class RateUnavailable(PaymentError):
    code = "rate_unavailable"
    retryable = True


class LedgerUnavailable(PaymentError):
    code = "ledger_unavailable"
    retryable = True


class FulfillmentError(PaymentError):
    code = "fulfillment_failed"
    retryable = True


# Integrity errors: fatal for the operation, never retried with the same arguments


class DuplicateReference(PaymentError):
    code = "duplicate_reference"


class StaleStatus(PaymentError):
    code = "stale_status"

    def __init__(self, entity_id: str, expected: Any, actual: Any):
        super().__init__(
            f"{entity_id}: expected status {expected}, found {actual}",
            entity_id=entity_id,
            expected=str(expected),
            actual=str(actual),
        )
        self.expected = expected
        self.actual = actual


class DuplicateConfirmation(PaymentError):
    code = "duplicate_confirmation"


class IllegalTransition(PaymentError):
    code = "illegal_transition"


# Business-rule errors: terminal for the payment request


class NotFound(PaymentError):
    code = "not_found"


class AlreadyFinalized(PaymentError):
    code = "already_finalized"


class PaymentExpired(PaymentError):
    code = "payment_expired"


class OrderNotPayable(PaymentError):
    code = "order_not_payable"
