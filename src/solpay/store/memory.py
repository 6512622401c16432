import copy
import threading
from collections import defaultdict
from collections.abc import Callable
from datetime import UTC, datetime

import structlog

from solpay.errors import (
    DuplicateConfirmation,
    DuplicateReference,
    NotFound,
    StaleStatus,
)
from solpay.models import (
    Order,
    OrderStatus,
    PaymentRequest,
    PaymentStatus,
    StatusChange,
)
from solpay.services.state_machine import (
    FULFILLMENT_MOVE,
    check_order_move,
    check_payment_move,
)

from .base import ORDER_MUTABLE_FIELDS, PAYMENT_MUTABLE_FIELDS, check_fields

logger = structlog.get_logger(__name__)


class InMemoryPaymentStore:
    """
    Lock-guarded in-memory store.

    A threading lock makes every operation atomic for both threads and
    interleaved coroutines. Records are copied in and out so no caller ever
    holds a reference to stored state.
    """

    def __init__(self, clock: Callable[[], datetime] | None = None):
        self.clock = clock or (lambda: datetime.now(UTC))
        self._lock = threading.RLock()
        self._payments: dict[str, PaymentRequest] = {}
        self._by_reference: dict[str, str] = {}
        self._by_signature: dict[str, str] = {}
        self._by_status: dict[PaymentStatus, set[str]] = defaultdict(set)
        self._by_customer: dict[str, list[str]] = defaultdict(list)
        self._by_order: dict[str, list[str]] = defaultdict(list)
        self._orders: dict[str, Order] = {}
        self._orders_by_provider_id: dict[str, str] = {}

    # Payment requests

    def create_payment(self, payment: PaymentRequest) -> PaymentRequest:
        with self._lock:
            if payment.reference in self._by_reference:
                raise DuplicateReference(
                    "Reference already in use", reference=payment.reference
                )
            if payment.id in self._payments:
                raise DuplicateReference("Payment id already in use", payment_id=payment.id)

            stored = copy.deepcopy(payment)
            if not stored.history:
                stored.history.append(
                    StatusChange(stored.status.value, stored.created_at, "created")
                )
            self._payments[stored.id] = stored
            self._by_reference[stored.reference] = stored.id
            self._by_status[stored.status].add(stored.id)
            self._by_customer[stored.customer_id].append(stored.id)
            self._by_order[stored.linked_order_id].append(stored.id)
            return copy.deepcopy(stored)

    def get_payment(self, payment_id: str) -> PaymentRequest:
        with self._lock:
            return copy.deepcopy(self._payment(payment_id))

    def get_payment_by_reference(self, reference: str) -> PaymentRequest:
        with self._lock:
            payment_id = self._by_reference.get(reference)
            if payment_id is None:
                raise NotFound("Payment not found", reference=reference)
            return copy.deepcopy(self._payments[payment_id])

    def list_payments_by_status(self, status: PaymentStatus) -> list[PaymentRequest]:
        with self._lock:
            return self._sorted(self._by_status[status])

    def list_payments_by_customer(self, customer_id: str) -> list[PaymentRequest]:
        with self._lock:
            return self._sorted(self._by_customer.get(customer_id, []))

    def list_payments_for_order(self, order_id: str) -> list[PaymentRequest]:
        with self._lock:
            return self._sorted(self._by_order.get(order_id, []))

    def update_payment_status(
        self,
        payment_id: str,
        expected: PaymentStatus,
        new: PaymentStatus,
        note: str = "",
        **fields,
    ) -> PaymentRequest:
        check_fields(fields, PAYMENT_MUTABLE_FIELDS)
        check_payment_move(expected, new)
        with self._lock:
            payment = self._payment(payment_id)
            if payment.status != expected:
                raise StaleStatus(payment_id, expected.value, payment.status.value)

            if new == PaymentStatus.CONFIRMED:
                self._check_single_confirmation(payment, fields.get("transaction_signature"))

            self._by_status[payment.status].discard(payment_id)
            payment.status = new
            for name, value in fields.items():
                setattr(payment, name, value)
            payment.history.append(StatusChange(new.value, self.clock(), note))
            self._by_status[new].add(payment_id)
            if payment.transaction_signature:
                self._by_signature[payment.transaction_signature] = payment_id
            return copy.deepcopy(payment)

    def count_payments_by_status(self) -> dict[PaymentStatus, int]:
        with self._lock:
            return {status: len(self._by_status[status]) for status in PaymentStatus}

    # Orders

    def create_order(self, order: Order) -> Order:
        with self._lock:
            if order.id in self._orders:
                raise ValueError(f"Order {order.id} already exists")
            stored = copy.deepcopy(order)
            if not stored.history:
                stored.history.append(
                    StatusChange(stored.status.value, stored.created_at, "created")
                )
            self._orders[stored.id] = stored
            return copy.deepcopy(stored)

    def get_order(self, order_id: str) -> Order:
        with self._lock:
            return copy.deepcopy(self._order(order_id))

    def get_order_by_provider_id(self, provider_order_id: str) -> Order:
        with self._lock:
            order_id = self._orders_by_provider_id.get(provider_order_id)
            if order_id is None:
                raise NotFound(
                    "Order not found", provider_order_id=provider_order_id
                )
            return copy.deepcopy(self._orders[order_id])

    def list_orders_by_status(self, status: OrderStatus) -> list[Order]:
        with self._lock:
            orders = [o for o in self._orders.values() if o.status == status]
            return copy.deepcopy(sorted(orders, key=lambda o: o.created_at))

    def update_order_status(
        self,
        order_id: str,
        expected: OrderStatus,
        new: OrderStatus,
        note: str = "",
        **fields,
    ) -> Order:
        check_fields(fields, ORDER_MUTABLE_FIELDS)
        check_order_move(expected, new)
        with self._lock:
            order = self._order(order_id)
            if order.status != expected:
                raise StaleStatus(order_id, expected.value, order.status.value)
            order.status = new
            for name, value in fields.items():
                setattr(order, name, value)
            order.history.append(StatusChange(new.value, self.clock(), note))
            return copy.deepcopy(order)

    def append_order_note(self, order_id: str, note: str) -> Order:
        with self._lock:
            order = self._order(order_id)
            order.history.append(StatusChange(order.status.value, self.clock(), note))
            return copy.deepcopy(order)

    # Fulfillment claim

    def claim_fulfillment(self, order_id: str) -> Order:
        with self._lock:
            order = self._order(order_id)
            if order.status != OrderStatus.PAID:
                raise StaleStatus(order_id, OrderStatus.PAID.value, order.status.value)
            if order.fulfillment_claimed_at or order.fulfillment_provider_order_id:
                raise StaleStatus(order_id, "unclaimed", "claimed")
            order.fulfillment_claimed_at = self.clock()
            return copy.deepcopy(order)

    def record_fulfillment(self, order_id: str, provider_order_id: str) -> Order:
        with self._lock:
            order = self._order(order_id)
            if order.status != OrderStatus.PAID:
                raise StaleStatus(order_id, OrderStatus.PAID.value, order.status.value)
            if order.fulfillment_provider_order_id:
                raise StaleStatus(
                    order_id, "no provider order", order.fulfillment_provider_order_id
                )
            order.fulfillment_provider_order_id = provider_order_id
            order.fulfillment_error = None
            order.status = FULFILLMENT_MOVE.target
            order.history.append(
                StatusChange(
                    order.status.value,
                    self.clock(),
                    f"provider order {provider_order_id}",
                )
            )
            self._orders_by_provider_id[provider_order_id] = order_id
            return copy.deepcopy(order)

    def release_fulfillment(self, order_id: str, error: str) -> Order:
        with self._lock:
            order = self._order(order_id)
            if order.status != OrderStatus.PAID or order.fulfillment_claimed_at is None:
                raise StaleStatus(order_id, "claimed", "unclaimed")
            order.fulfillment_claimed_at = None
            order.fulfillment_error = error
            order.history.append(
                StatusChange(order.status.value, self.clock(), f"fulfillment failed: {error}")
            )
            return copy.deepcopy(order)

    # Internals, call with the lock held

    def _payment(self, payment_id: str) -> PaymentRequest:
        payment = self._payments.get(payment_id)
        if payment is None:
            raise NotFound("Payment not found", payment_id=payment_id)
        return payment

    def _order(self, order_id: str) -> Order:
        order = self._orders.get(order_id)
        if order is None:
            raise NotFound("Order not found", order_id=order_id)
        return order

    def _sorted(self, payment_ids) -> list[PaymentRequest]:
        payments = [self._payments[pid] for pid in payment_ids]
        return copy.deepcopy(sorted(payments, key=lambda p: p.created_at))

    def _check_single_confirmation(
        self, payment: PaymentRequest, signature: str | None
    ) -> None:
        for other_id in self._by_order.get(payment.linked_order_id, []):
            other = self._payments[other_id]
            if other_id != payment.id and other.status == PaymentStatus.CONFIRMED:
                logger.warning(
                    "second_confirmation_blocked",
                    payment_id=payment.id,
                    confirmed_payment_id=other_id,
                    order_id=payment.linked_order_id,
                )
                raise DuplicateConfirmation(
                    "Order already has a confirmed payment",
                    order_id=payment.linked_order_id,
                    payment_id=other_id,
                )
        if signature and self._by_signature.get(signature) not in (None, payment.id):
            raise DuplicateConfirmation(
                "Transaction signature already used", signature=signature
            )
