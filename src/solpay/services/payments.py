"""
Payment request service.
Creates price-locked payment requests and enforces their expiry.
"""

import uuid
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import structlog

from solpay.config.checkout import CheckoutSettings
from solpay.crypto.payment_uri import build_payment_uri
from solpay.crypto.pricing import PriceOracle
from solpay.crypto.reference import generate_reference
from solpay.crypto.tokens import TokenRegistry
from solpay.errors import StaleStatus
from solpay.models import Order, PaymentRequest, PaymentStatus
from solpay.store.base import PaymentStore

logger = structlog.get_logger(__name__)


class PaymentService:
    """
    Service for payment requests.

    Responsibilities:
    - Quoting the order total in the settlement token (locked at creation)
    - Generating a fresh reference and the Solana Pay URI
    - Expiring overdue requests, lazily on read and in bulk for the sweeper
    - Reporting request counts per status
    """

    def __init__(
        self,
        store: PaymentStore,
        oracle: PriceOracle,
        registry: TokenRegistry,
        recipient_address: str,
        settings: CheckoutSettings | None = None,
        reference_factory: Callable[[], str] = generate_reference,
        clock: Callable[[], datetime] | None = None,
    ):
        if not recipient_address:
            raise ValueError("A merchant wallet address is required")
        self.store = store
        self.oracle = oracle
        self.registry = registry
        self.recipient_address = recipient_address
        self.settings = settings or CheckoutSettings()
        self.reference_factory = reference_factory
        self.clock = clock or (lambda: datetime.now(UTC))

    async def create_payment_request(
        self,
        order: Order,
        token: str,
        label: str | None = None,
        message: str | None = None,
        memo: str | None = None,
    ) -> PaymentRequest:
        """
        Creates a pending payment request for an order.

        Process:
        1. Quote the order total in the token (rounded up to whole base units)
        2. Generate a unique reference key
        3. Build the payment URI and persist the request (status=pending)

        Args:
            order: Order being paid
            token: Settlement token ("SOL", "USDC", "USDT")
            label: Merchant name shown by the wallet
            message: Free text shown by the wallet
            memo: Optional on-chain memo

        Returns:
            The stored PaymentRequest

        Raises:
            UnsupportedToken, InvalidAmount: Bad input, nothing stored
            RateUnavailable: No current rate, nothing stored
            DuplicateReference: Reference collision, nothing stored
        """
        info = self.registry.get(token)
        quote = await self.oracle.quote(order.total, order.fiat_currency, info.symbol)

        reference = self.reference_factory()
        label = label or self.settings.merchant_label
        message = message or f"Payment for order {order.order_number}"
        memo = memo if memo is not None else f"order-{order.order_number}"
        uri = build_payment_uri(
            recipient=self.recipient_address,
            base_units=quote.base_units,
            token=info,
            reference=reference,
            label=label,
            message=message,
            memo=memo,
        )

        now = self.clock()
        payment = PaymentRequest(
            id=uuid.uuid4().hex,
            reference=reference,
            recipient_address=self.recipient_address,
            requested_fiat_amount=order.total,
            fiat_currency=order.fiat_currency,
            token=info.symbol,
            token_amount_base_units=quote.base_units,
            display_amount=quote.display_amount,
            rate_used=quote.rate_used,
            quoted_at=quote.quoted_at,
            created_at=now,
            expires_at=now + timedelta(seconds=self.settings.payment_ttl_seconds),
            linked_order_id=order.id,
            customer_id=order.customer_id,
            payment_uri=uri.uri,
            qr_payload=uri.qr_payload,
            label=label,
            message=message,
            memo=memo,
        )
        payment = self.store.create_payment(payment)

        logger.info(
            "payment_request_created",
            payment_id=payment.id,
            order_id=order.id,
            token=payment.token,
            base_units=payment.token_amount_base_units,
            fiat_amount=str(payment.requested_fiat_amount),
            expires_at=payment.expires_at.isoformat(),
        )
        return payment

    def get_payment(self, payment_id: str) -> PaymentRequest:
        return self.expire_if_overdue(self.store.get_payment(payment_id))

    def get_payment_by_reference(self, reference: str) -> PaymentRequest:
        return self.expire_if_overdue(self.store.get_payment_by_reference(reference))

    def expire_if_overdue(
        self, payment: PaymentRequest, note: str = "expired"
    ) -> PaymentRequest:
        """Apply the expiry transition if the deadline has passed."""
        if payment.status != PaymentStatus.PENDING or not payment.is_expired(self.clock()):
            return payment
        try:
            payment = self.store.update_payment_status(
                payment.id,
                PaymentStatus.PENDING,
                PaymentStatus.EXPIRED,
                note,
                failure_reason="expired",
            )
            logger.info(
                "payment_expired",
                payment_id=payment.id,
                expires_at=payment.expires_at.isoformat(),
            )
            return payment
        except StaleStatus:
            # Someone else finalized it first; report what is stored now
            return self.store.get_payment(payment.id)

    def force_expire(self, payment_id: str, note: str) -> PaymentRequest:
        """Expire a pending request regardless of its deadline (poll ceiling)."""
        try:
            return self.store.update_payment_status(
                payment_id,
                PaymentStatus.PENDING,
                PaymentStatus.EXPIRED,
                note,
                failure_reason="expired",
            )
        except StaleStatus:
            return self.store.get_payment(payment_id)

    def expire_overdue(self) -> list[PaymentRequest]:
        """Sweep: move every overdue pending request to expired."""
        expired = []
        now = self.clock()
        for payment in self.store.list_payments_by_status(PaymentStatus.PENDING):
            if not payment.is_expired(now):
                continue
            updated = self.expire_if_overdue(payment, note="expired by sweep")
            if updated.status == PaymentStatus.EXPIRED:
                expired.append(updated)
        if expired:
            logger.info("expiry_sweep_completed", expired=len(expired))
        return expired

    def cancel_pending_for_order(
        self, order_id: str, note: str, keep: str | None = None
    ) -> list[PaymentRequest]:
        """
        Cancel the order's pending requests except ``keep``.

        Returns the requests that could not be cancelled because they had
        already been finalized (typically confirmed) in the meantime.
        """
        finalized = []
        for payment in self.store.list_payments_for_order(order_id):
            if payment.id == keep or payment.status != PaymentStatus.PENDING:
                continue
            try:
                self.store.update_payment_status(
                    payment.id,
                    PaymentStatus.PENDING,
                    PaymentStatus.CANCELLED,
                    note,
                    failure_reason="cancelled",
                )
                logger.info("payment_cancelled", payment_id=payment.id, note=note)
            except StaleStatus:
                finalized.append(self.store.get_payment(payment.id))
        return finalized

    def stats(self) -> dict[str, int]:
        counts = self.store.count_payments_by_status()
        return {status.value: counts.get(status, 0) for status in PaymentStatus}
