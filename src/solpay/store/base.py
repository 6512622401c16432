"""
Payment Store interface.

The store is the single synchronization point of the engine: every status
change is a compare-and-swap against the currently stored status, and reads
return copies so callers never hold live state.
"""

from datetime import UTC, datetime
from typing import Protocol

from solpay.models import Order, OrderStatus, PaymentRequest, PaymentStatus

# Columns that may change alongside a status transition
PAYMENT_MUTABLE_FIELDS = frozenset(
    {"transaction_signature", "confirmed_at", "failure_reason"}
)
ORDER_MUTABLE_FIELDS = frozenset({"tracking_number", "fulfillment_error"})


def check_fields(fields: dict, allowed: frozenset) -> None:
    unknown = set(fields) - allowed
    if unknown:
        raise ValueError(f"Fields not updatable with a status change: {sorted(unknown)}")


class PaymentStore(Protocol):
    """
    Protocol for payment/order persistence.

    Implementations:
    - InMemoryPaymentStore: lock-guarded maps, for single-process deployments and tests
    - SqlPaymentStore: SQLAlchemy, CAS as conditional UPDATE statements
    """

    # Payment requests

    def create_payment(self, payment: PaymentRequest) -> PaymentRequest:
        """Raises DuplicateReference if the reference is already stored."""
        ...

    def get_payment(self, payment_id: str) -> PaymentRequest:
        """Raises NotFound."""
        ...

    def get_payment_by_reference(self, reference: str) -> PaymentRequest:
        """Raises NotFound."""
        ...

    def list_payments_by_status(self, status: PaymentStatus) -> list[PaymentRequest]: ...

    def list_payments_by_customer(self, customer_id: str) -> list[PaymentRequest]: ...

    def list_payments_for_order(self, order_id: str) -> list[PaymentRequest]: ...

    def update_payment_status(
        self,
        payment_id: str,
        expected: PaymentStatus,
        new: PaymentStatus,
        note: str = "",
        **fields,
    ) -> PaymentRequest:
        """
        Compare-and-swap the status of a payment request.

        Raises:
            NotFound: Unknown payment id
            StaleStatus: The stored status is not ``expected``
            DuplicateConfirmation: Another request of the same order is
                already confirmed, or the signature is already used
        """
        ...

    def count_payments_by_status(self) -> dict[PaymentStatus, int]: ...

    # Orders

    def create_order(self, order: Order) -> Order: ...

    def get_order(self, order_id: str) -> Order:
        """Raises NotFound."""
        ...

    def get_order_by_provider_id(self, provider_order_id: str) -> Order:
        """Raises NotFound."""
        ...

    def list_orders_by_status(self, status: OrderStatus) -> list[Order]: ...

    def update_order_status(
        self,
        order_id: str,
        expected: OrderStatus,
        new: OrderStatus,
        note: str = "",
        **fields,
    ) -> Order:
        """Compare-and-swap the order status and append to its history."""
        ...

    def append_order_note(self, order_id: str, note: str) -> Order: ...

    # Fulfillment claim

    def claim_fulfillment(self, order_id: str) -> Order:
        """
        Claim the right to call the fulfillment provider.

        Succeeds only for a paid order with no provider id and no open claim.

        Raises:
            StaleStatus: The order is not claimable
        """
        ...

    def record_fulfillment(self, order_id: str, provider_order_id: str) -> Order:
        """Set the provider id (once) and move paid -> fulfillment_requested."""
        ...

    def release_fulfillment(self, order_id: str, error: str) -> Order:
        """Drop the claim after a provider failure; the order stays paid."""
        ...


def utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from databases without tz support."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value
