"""Domain types for payment requests, orders and verification verdicts."""

import enum
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any


class PaymentStatus(str, enum.Enum):
    """Status of a payment request. Only PENDING has outgoing transitions."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    FAILED = "failed"


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    PAYMENT_PENDING = "payment_pending"
    PAID = "paid"
    FULFILLMENT_REQUESTED = "fulfillment_requested"
    FULFILLED = "fulfilled"
    CANCELLED = "cancelled"
    FAILED = "failed"


class RejectionReason(str, enum.Enum):
    """Why a transaction was rejected; each maps to a distinct storefront remedy."""

    ON_CHAIN_FAILURE = "on_chain_failure"
    WRONG_RECIPIENT = "wrong_recipient"
    UNDERPAYMENT = "underpayment"
    MISSING_REFERENCE = "missing_reference"


@dataclass(frozen=True)
class StatusChange:
    """One entry of an append-only status history."""

    status: str
    timestamp: datetime
    note: str = ""


@dataclass(frozen=True)
class OrderItem:
    product_ref: str
    quantity: int
    unit_price: Decimal
    variant_id: str | None = None

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity


@dataclass
class Order:
    id: str
    order_number: str
    customer_id: str
    items: list[OrderItem]
    shipping_address: dict[str, Any]
    created_at: datetime
    fiat_currency: str = "USD"
    status: OrderStatus = OrderStatus.PENDING
    history: list[StatusChange] = field(default_factory=list)

    # Fulfillment bookkeeping
    fulfillment_provider_order_id: str | None = None
    fulfillment_claimed_at: datetime | None = None
    fulfillment_error: str | None = None
    tracking_number: str | None = None

    @property
    def total(self) -> Decimal:
        return sum((item.line_total for item in self.items), Decimal("0")).quantize(
            Decimal("0.01")
        )


@dataclass
class PaymentRequest:
    """
    A request for one on-chain payment, locked to a single price quote.

    Everything except status, the confirmation fields, failure_reason and
    history is fixed at creation.
    """

    id: str
    reference: str
    recipient_address: str
    requested_fiat_amount: Decimal
    fiat_currency: str
    token: str
    token_amount_base_units: int
    display_amount: str
    rate_used: Decimal
    quoted_at: datetime
    created_at: datetime
    expires_at: datetime
    linked_order_id: str
    customer_id: str
    payment_uri: str = ""
    qr_payload: str = ""
    label: str = ""
    message: str = ""
    memo: str | None = None
    status: PaymentStatus = PaymentStatus.PENDING
    transaction_signature: str | None = None
    confirmed_at: datetime | None = None
    failure_reason: str | None = None
    history: list[StatusChange] = field(default_factory=list)

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at


# Verdicts


@dataclass(frozen=True)
class Confirmed:
    signature: str
    amount: int
    recipient: str


@dataclass(frozen=True)
class Rejected:
    reason: RejectionReason
    detail: str = ""
    shortfall: int | None = None


@dataclass(frozen=True)
class Indeterminate:
    """The ledger could not answer yet; the caller should back off and retry."""

    reason: str = "transaction not found"


Verdict = Confirmed | Rejected | Indeterminate
