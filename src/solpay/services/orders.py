"""
Order lifecycle.

All order status changes go through the transition table in
``state_machine`` and are applied with a compare-and-swap on the current
status, so a concurrent writer can never be silently overwritten.
"""

import secrets
import uuid
from collections.abc import Callable
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

import structlog

from solpay.config.checkout import CheckoutSettings
from solpay.errors import InvalidOrder, StaleStatus
from solpay.models import Order, OrderItem, OrderStatus, PaymentStatus
from solpay.services.state_machine import OrderEvent, order_transition
from solpay.store.base import PaymentStore

logger = structlog.get_logger(__name__)

# Attempts at re-reading an order after losing a status race
CAS_ATTEMPTS = 3


def generate_order_number(now: datetime) -> str:
    """Human-facing order number, e.g. SP-20261019-1A2B3C4D."""
    return f"SP-{now:%Y%m%d}-{secrets.token_hex(4).upper()}"


def parse_items(items: list[OrderItem | dict[str, Any]]) -> list[OrderItem]:
    if not items:
        raise InvalidOrder("Order must contain at least one item")

    parsed = []
    for raw in items:
        if isinstance(raw, OrderItem):
            item = raw
        else:
            try:
                item = OrderItem(
                    product_ref=str(raw["product_ref"]),
                    quantity=int(raw["quantity"]),
                    unit_price=Decimal(str(raw["unit_price"])),
                    variant_id=raw.get("variant_id"),
                )
            except (KeyError, TypeError, ValueError, InvalidOperation) as e:
                raise InvalidOrder(f"Malformed order item: {raw!r}") from e

        if not item.product_ref:
            raise InvalidOrder("Order item needs a product reference")
        if item.quantity < 1:
            raise InvalidOrder("Quantity must be at least 1", product_ref=item.product_ref)
        if not item.unit_price.is_finite() or item.unit_price < 0:
            raise InvalidOrder("Unit price must be non-negative", product_ref=item.product_ref)
        parsed.append(item)
    return parsed


class OrderService:
    def __init__(
        self,
        store: PaymentStore,
        settings: CheckoutSettings | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.store = store
        self.settings = settings or CheckoutSettings()
        self.clock = clock or (lambda: datetime.now(UTC))

    def create_order(
        self,
        customer_id: str,
        items: list[OrderItem | dict[str, Any]],
        shipping_address: dict[str, Any] | None = None,
    ) -> Order:
        if not customer_id:
            raise InvalidOrder("Customer id is required")

        parsed = parse_items(items)
        now = self.clock()
        order = Order(
            id=uuid.uuid4().hex,
            order_number=generate_order_number(now),
            customer_id=customer_id,
            items=parsed,
            shipping_address=dict(shipping_address or {}),
            created_at=now,
            fiat_currency=self.settings.fiat_currency,
        )
        if order.total <= 0:
            raise InvalidOrder("Order total must be positive")

        order = self.store.create_order(order)
        logger.info(
            "order_created",
            order_id=order.id,
            order_number=order.order_number,
            total=str(order.total),
            items=len(order.items),
        )
        return order

    def apply(
        self, order_id: str, event: OrderEvent, note: str = "", **fields
    ) -> tuple[Order, bool]:
        """
        Apply an event to an order.

        Returns:
            (order, changed). ``changed`` is False when the event was an
            idempotent re-delivery and nothing was written.

        Raises:
            IllegalTransition: The event is not allowed in the current status
            StaleStatus: The order kept changing under us
        """
        for attempt in range(1, CAS_ATTEMPTS + 1):
            order = self.store.get_order(order_id)
            transition = order_transition(order.status, event)
            if transition.noop:
                logger.debug(
                    "order_event_ignored",
                    order_id=order_id,
                    order_event=event.value,
                    status=order.status.value,
                )
                return order, False
            try:
                order = self.store.update_order_status(
                    order_id, transition.source, transition.target, note, **fields
                )
            except StaleStatus:
                if attempt == CAS_ATTEMPTS:
                    raise
                continue

            logger.info(
                "order_status_changed",
                order_id=order_id,
                order_event=event.value,
                old_status=transition.source.value,
                new_status=transition.target.value,
            )
            return order, True
        raise AssertionError("unreachable")

    def link_payment(self, order_id: str, payment_id: str) -> Order:
        order, _ = self.apply(
            order_id, OrderEvent.LINK_PAYMENT, f"awaiting payment {payment_id}"
        )
        return order

    def mark_paid(self, order_id: str, payment_id: str, signature: str) -> tuple[Order, bool]:
        return self.apply(
            order_id,
            OrderEvent.PAYMENT_CONFIRMED,
            f"payment {payment_id} confirmed by {signature}",
        )

    def payment_closed(
        self, order_id: str, payment_id: str, outcome: str
    ) -> Order:
        """
        Record that a payment attempt ended without confirmation.

        The order stays open for a fresh payment request unless retries are
        disabled and no other request is still pending for it.
        """
        note = f"payment {payment_id} {outcome}"
        order = self.store.get_order(order_id)
        if order.status != OrderStatus.PAYMENT_PENDING:
            return self.store.append_order_note(order_id, note)

        if self.settings.retry_rejected_payments or self._has_pending_payment(order_id):
            return self.store.append_order_note(order_id, f"{note}; awaiting new payment")

        order, _ = self.apply(order_id, OrderEvent.PAYMENT_FAILED, note)
        return order

    def mark_shipped(self, order_id: str, tracking_number: str | None = None) -> Order:
        fields = {"tracking_number": tracking_number} if tracking_number else {}
        note = f"shipped, tracking {tracking_number}" if tracking_number else "shipped"
        order, _ = self.apply(order_id, OrderEvent.SHIPPED, note, **fields)
        return order

    def cancel(self, order_id: str, note: str = "cancelled") -> Order:
        order, _ = self.apply(order_id, OrderEvent.CANCEL, note)
        return order

    def _has_pending_payment(self, order_id: str) -> bool:
        return any(
            p.status == PaymentStatus.PENDING
            for p in self.store.list_payments_for_order(order_id)
        )
