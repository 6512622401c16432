"""
Checkout orchestration.

Wires payment requests, verification, the order lifecycle and fulfillment
into the flow a storefront drives:

    create_order -> start_checkout -> submit_transaction / watch_payment
    -> (paid) -> fulfillment -> handle_shipment
"""

from datetime import UTC, datetime
from typing import Any

import structlog
from opentelemetry import trace

from solpay.config import Settings
from solpay.crypto.interfaces import FulfillmentClient, LedgerClient, RateSource
from solpay.crypto.pricing import PriceOracle
from solpay.crypto.tokens import TokenRegistry
from solpay.errors import (
    AlreadyFinalized,
    IllegalTransition,
    OrderNotPayable,
    PaymentExpired,
)
from solpay.logging_config import bind_payment_context, clear_payment_context
from solpay.models import (
    Indeterminate,
    Order,
    OrderItem,
    OrderStatus,
    PaymentRequest,
    PaymentStatus,
    Rejected,
    Verdict,
)
from solpay.services.fulfillment import (
    FulfillmentResult,
    FulfillmentSkipped,
    FulfillmentTrigger,
    is_awaiting_fulfillment,
)
from solpay.services.orders import OrderService
from solpay.services.payments import PaymentService
from solpay.services.verification import PaymentPoller, VerificationEngine
from solpay.store.base import PaymentStore

logger = structlog.get_logger(__name__)
tracer = trace.get_tracer(__name__)

PAYABLE_ORDER_STATES = frozenset({OrderStatus.PENDING, OrderStatus.PAYMENT_PENDING})


class CheckoutService:
    def __init__(
        self,
        store: PaymentStore,
        payments: PaymentService,
        engine: VerificationEngine,
        poller: PaymentPoller,
        orders: OrderService,
        fulfillment: FulfillmentTrigger,
    ):
        self.store = store
        self.payments = payments
        self.engine = engine
        self.poller = poller
        self.orders = orders
        self.fulfillment = fulfillment

    @classmethod
    def build(
        cls,
        settings: Settings,
        store: PaymentStore,
        ledger: LedgerClient,
        rate_source: RateSource,
        fulfillment_client: FulfillmentClient,
        clock=None,
        reference_factory=None,
    ) -> "CheckoutService":
        clock = clock or (lambda: datetime.now(UTC))
        registry = TokenRegistry.from_settings(settings.solana)
        oracle = PriceOracle(registry, rate_source, clock=clock)
        payment_kwargs = {"reference_factory": reference_factory} if reference_factory else {}
        payments = PaymentService(
            store,
            oracle,
            registry,
            settings.solana.merchant_wallet,
            settings.checkout,
            clock=clock,
            **payment_kwargs,
        )
        engine = VerificationEngine(store, ledger, registry, payments, clock=clock)
        poller = PaymentPoller(
            engine,
            interval=settings.checkout.poll_interval_seconds,
            max_attempts=settings.checkout.poll_max_attempts,
        )
        return cls(
            store=store,
            payments=payments,
            engine=engine,
            poller=poller,
            orders=OrderService(store, settings.checkout, clock=clock),
            fulfillment=FulfillmentTrigger(store, fulfillment_client),
        )

    def create_order(
        self,
        customer_id: str,
        items: list[OrderItem | dict[str, Any]],
        shipping_address: dict[str, Any] | None = None,
    ) -> Order:
        return self.orders.create_order(customer_id, items, shipping_address)

    async def start_checkout(
        self,
        order_id: str,
        token: str,
        label: str | None = None,
        message: str | None = None,
    ) -> PaymentRequest:
        """
        Create a payment request for an order and link it.

        A previous pending request for the same order is cancelled, so at
        most one request per order is payable at a time.

        Raises:
            OrderNotPayable: The order is paid, cancelled or failed
        """
        order = self.store.get_order(order_id)
        if order.status not in PAYABLE_ORDER_STATES:
            raise OrderNotPayable(
                f"Order is {order.status.value}", order_id=order_id, status=order.status.value
            )

        payment = await self.payments.create_payment_request(order, token, label, message)
        bind_payment_context(payment.id, order_id)
        try:
            finalized = self.payments.cancel_pending_for_order(
                order_id, f"superseded by {payment.id}", keep=payment.id
            )
            if any(p.status == PaymentStatus.CONFIRMED for p in finalized):
                self._abandon(payment, "order already paid")
            try:
                self.orders.link_payment(order_id, payment.id)
            except IllegalTransition:
                self._abandon(payment, "order no longer payable")
            return self.store.get_payment(payment.id)
        finally:
            clear_payment_context()

    async def submit_transaction(self, payment_id: str, signature: str) -> Verdict:
        """Verify a signature the wallet reported and apply the verdict."""
        payment = self.store.get_payment(payment_id)
        bind_payment_context(payment_id, payment.linked_order_id)
        try:
            try:
                verdict = await self.engine.verify(payment_id, signature)
            except PaymentExpired:
                self.orders.payment_closed(payment.linked_order_id, payment_id, "expired")
                raise
            await self.apply_verdict(payment_id, verdict)
            return verdict
        finally:
            clear_payment_context()

    async def watch_payment(self, payment_id: str, signature: str | None = None) -> Verdict:
        """Poll the ledger until the payment settles, fails or expires."""
        payment = self.store.get_payment(payment_id)
        bind_payment_context(payment_id, payment.linked_order_id)
        try:
            try:
                verdict = await self.poller.poll(payment_id, signature)
            except PaymentExpired:
                self.orders.payment_closed(payment.linked_order_id, payment_id, "expired")
                raise
            await self.apply_verdict(payment_id, verdict)
            return verdict
        finally:
            clear_payment_context()

    async def apply_verdict(self, payment_id: str, verdict: Verdict) -> Order:
        """
        Apply a verdict to the payment's order.

        Safe to call repeatedly with the same verdict: the order moves to
        paid once and fulfillment is triggered only on that first move.
        """
        with tracer.start_as_current_span("apply_verdict") as span:
            span.set_attribute("payment.id", payment_id)
            span.set_attribute("verdict", type(verdict).__name__)
            return await self._apply_verdict(payment_id, verdict)

    async def _apply_verdict(self, payment_id: str, verdict: Verdict) -> Order:
        payment = self.store.get_payment(payment_id)
        order_id = payment.linked_order_id

        if isinstance(verdict, Indeterminate):
            return self.store.get_order(order_id)

        if isinstance(verdict, Rejected):
            if payment.status != PaymentStatus.FAILED:
                raise AlreadyFinalized(
                    "Rejected verdict for a payment that is not failed",
                    payment_id=payment_id,
                    status=payment.status.value,
                )
            return self.orders.payment_closed(
                order_id, payment_id, f"rejected ({verdict.reason.value})"
            )

        if payment.status != PaymentStatus.CONFIRMED:
            raise AlreadyFinalized(
                "Confirmed verdict for a payment that is not confirmed",
                payment_id=payment_id,
                status=payment.status.value,
            )
        try:
            order, changed = self.orders.mark_paid(order_id, payment_id, verdict.signature)
        except IllegalTransition:
            # Funds arrived for an order that was closed meanwhile; needs a manual refund
            logger.error(
                "payment_confirmed_for_closed_order",
                payment_id=payment_id,
                order_id=order_id,
                transaction_signature=verdict.signature,
            )
            raise

        if changed:
            result = await self.fulfillment.trigger(order_id)
            logger.info("fulfillment_result", order_id=order_id, result=type(result).__name__)
            order = self.store.get_order(order_id)
        return order

    async def retry_fulfillment(self, order_id: str) -> FulfillmentResult:
        """Operator-initiated retry for a paid order whose fulfillment failed."""
        order = self.store.get_order(order_id)
        if not is_awaiting_fulfillment(order):
            return FulfillmentSkipped(f"order is {order.status.value}")
        return await self.fulfillment.trigger(order_id)

    def handle_shipment(
        self, provider_order_id: str, tracking_number: str | None = None
    ) -> Order:
        order = self.store.get_order_by_provider_id(provider_order_id)
        return self.orders.mark_shipped(order.id, tracking_number)

    def cancel_order(self, order_id: str) -> Order:
        """
        Cancel an unpaid order and its pending payment requests.

        Raises:
            IllegalTransition: The order is already paid or closed
        """
        order = self.store.get_order(order_id)
        if order.status not in PAYABLE_ORDER_STATES:
            raise IllegalTransition(
                f"order cannot cancel from {order.status.value}",
                state=order.status.value,
                event="cancel",
            )
        finalized = self.payments.cancel_pending_for_order(order_id, "order cancelled")
        if any(p.status == PaymentStatus.CONFIRMED for p in finalized):
            raise IllegalTransition(
                "order has a confirmed payment", order_id=order_id, event="cancel"
            )
        return self.orders.cancel(order_id)

    def payment_status(self, reference: str) -> PaymentRequest:
        """Current state of a payment request, applying expiry if it is overdue."""
        before = self.store.get_payment_by_reference(reference)
        payment = self.payments.expire_if_overdue(before)
        if before.status == PaymentStatus.PENDING and payment.status == PaymentStatus.EXPIRED:
            self.orders.payment_closed(payment.linked_order_id, payment.id, "expired")
        return payment

    def expire_overdue(self) -> list[PaymentRequest]:
        """Expire every overdue pending request and note it on its order."""
        expired = self.payments.expire_overdue()
        for payment in expired:
            self.orders.payment_closed(payment.linked_order_id, payment.id, "expired")
        return expired

    def stats(self) -> dict[str, int]:
        return self.payments.stats()

    def _abandon(self, payment: PaymentRequest, reason: str) -> None:
        self.payments.cancel_pending_for_order(payment.linked_order_id, reason)
        raise OrderNotPayable(reason, order_id=payment.linked_order_id, payment_id=payment.id)
