from collections.abc import Callable
from datetime import UTC, datetime
from decimal import Decimal

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from solpay.db import OrderRecord, PaymentRecord, StatusHistoryRecord
from solpay.errors import (
    DuplicateConfirmation,
    DuplicateReference,
    NotFound,
    StaleStatus,
)
from solpay.models import (
    Order,
    OrderItem,
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

from .base import ORDER_MUTABLE_FIELDS, PAYMENT_MUTABLE_FIELDS, check_fields, utc

logger = structlog.get_logger(__name__)

PAYMENT = "payment"
ORDER = "order"


class SqlPaymentStore:
    """
    SQLAlchemy-backed store.

    Every status change is a single ``UPDATE ... WHERE status = :expected``
    inside one transaction with its history row; a zero rowcount means the
    caller's view was stale.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        clock: Callable[[], datetime] | None = None,
    ):
        self.session_factory = session_factory
        self.clock = clock or (lambda: datetime.now(UTC))

    # Payment requests

    def create_payment(self, payment: PaymentRequest) -> PaymentRequest:
        try:
            with self.session_factory() as session, session.begin():
                session.add(_payment_record(payment))
                session.flush()
                self._add_history(
                    session, PAYMENT, payment.id, payment.status.value, "created",
                    payment.created_at,
                )
        except IntegrityError as e:
            logger.warning(
                "payment_insert_rejected", payment_id=payment.id, error=str(e.orig)
            )
            raise DuplicateReference(
                "Reference already in use", reference=payment.reference
            ) from e
        return self.get_payment(payment.id)

    def get_payment(self, payment_id: str) -> PaymentRequest:
        with self.session_factory() as session:
            record = session.get(PaymentRecord, payment_id)
            if record is None:
                raise NotFound("Payment not found", payment_id=payment_id)
            return self._to_payment(session, record)

    def get_payment_by_reference(self, reference: str) -> PaymentRequest:
        with self.session_factory() as session:
            record = session.scalars(
                select(PaymentRecord).where(PaymentRecord.reference == reference)
            ).first()
            if record is None:
                raise NotFound("Payment not found", reference=reference)
            return self._to_payment(session, record)

    def list_payments_by_status(self, status: PaymentStatus) -> list[PaymentRequest]:
        return self._list_payments(PaymentRecord.status == status)

    def list_payments_by_customer(self, customer_id: str) -> list[PaymentRequest]:
        return self._list_payments(PaymentRecord.customer_id == customer_id)

    def list_payments_for_order(self, order_id: str) -> list[PaymentRequest]:
        return self._list_payments(PaymentRecord.linked_order_id == order_id)

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
        try:
            with self.session_factory() as session, session.begin():
                if new == PaymentStatus.CONFIRMED:
                    self._check_single_confirmation(session, payment_id)
                result = session.execute(
                    update(PaymentRecord)
                    .where(
                        PaymentRecord.id == payment_id,
                        PaymentRecord.status == expected,
                    )
                    .values(status=new, **fields)
                )
                if result.rowcount == 0:
                    current = session.get(PaymentRecord, payment_id)
                    if current is None:
                        raise NotFound("Payment not found", payment_id=payment_id)
                    raise StaleStatus(payment_id, expected.value, current.status.value)
                self._add_history(session, PAYMENT, payment_id, new.value, note)
        except IntegrityError as e:
            # Partial unique index or unique signature lost a concurrent race
            raise DuplicateConfirmation(
                "Payment confirmation conflicts with an existing one",
                payment_id=payment_id,
            ) from e
        return self.get_payment(payment_id)

    def count_payments_by_status(self) -> dict[PaymentStatus, int]:
        with self.session_factory() as session:
            rows = session.execute(
                select(PaymentRecord.status, func.count()).group_by(PaymentRecord.status)
            ).all()
        counts = {status: 0 for status in PaymentStatus}
        counts.update({status: count for status, count in rows})
        return counts

    # Orders

    def create_order(self, order: Order) -> Order:
        with self.session_factory() as session, session.begin():
            session.add(_order_record(order))
            session.flush()
            self._add_history(
                session, ORDER, order.id, order.status.value, "created", order.created_at
            )
        return self.get_order(order.id)

    def get_order(self, order_id: str) -> Order:
        with self.session_factory() as session:
            record = session.get(OrderRecord, order_id)
            if record is None:
                raise NotFound("Order not found", order_id=order_id)
            return self._to_order(session, record)

    def get_order_by_provider_id(self, provider_order_id: str) -> Order:
        with self.session_factory() as session:
            record = session.scalars(
                select(OrderRecord).where(
                    OrderRecord.fulfillment_provider_order_id == provider_order_id
                )
            ).first()
            if record is None:
                raise NotFound("Order not found", provider_order_id=provider_order_id)
            return self._to_order(session, record)

    def list_orders_by_status(self, status: OrderStatus) -> list[Order]:
        with self.session_factory() as session:
            records = session.scalars(
                select(OrderRecord)
                .where(OrderRecord.status == status)
                .order_by(OrderRecord.created_at)
            ).all()
            return [self._to_order(session, record) for record in records]

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
        self._cas_order(
            order_id,
            [OrderRecord.status == expected],
            {"status": new, **fields},
            expected.value,
            new.value,
            note,
        )
        return self.get_order(order_id)

    def append_order_note(self, order_id: str, note: str) -> Order:
        with self.session_factory() as session, session.begin():
            record = session.get(OrderRecord, order_id)
            if record is None:
                raise NotFound("Order not found", order_id=order_id)
            self._add_history(session, ORDER, order_id, record.status.value, note)
        return self.get_order(order_id)

    # Fulfillment claim

    def claim_fulfillment(self, order_id: str) -> Order:
        self._cas_order(
            order_id,
            [
                OrderRecord.status == OrderStatus.PAID,
                OrderRecord.fulfillment_claimed_at.is_(None),
                OrderRecord.fulfillment_provider_order_id.is_(None),
            ],
            {"fulfillment_claimed_at": self.clock()},
            "paid and unclaimed",
        )
        return self.get_order(order_id)

    def record_fulfillment(self, order_id: str, provider_order_id: str) -> Order:
        self._cas_order(
            order_id,
            [
                OrderRecord.status == OrderStatus.PAID,
                OrderRecord.fulfillment_provider_order_id.is_(None),
            ],
            {
                "status": FULFILLMENT_MOVE.target,
                "fulfillment_provider_order_id": provider_order_id,
                "fulfillment_error": None,
            },
            "paid without provider order",
            FULFILLMENT_MOVE.target.value,
            f"provider order {provider_order_id}",
        )
        return self.get_order(order_id)

    def release_fulfillment(self, order_id: str, error: str) -> Order:
        self._cas_order(
            order_id,
            [
                OrderRecord.status == OrderStatus.PAID,
                OrderRecord.fulfillment_claimed_at.is_not(None),
            ],
            {"fulfillment_claimed_at": None, "fulfillment_error": error},
            "claimed",
            OrderStatus.PAID.value,
            f"fulfillment failed: {error}",
        )
        return self.get_order(order_id)

    # Internals

    def _cas_order(
        self,
        order_id: str,
        conditions: list,
        values: dict,
        expected: str,
        history_status: str | None = None,
        note: str = "",
    ) -> None:
        with self.session_factory() as session, session.begin():
            result = session.execute(
                update(OrderRecord)
                .where(OrderRecord.id == order_id, *conditions)
                .values(**values)
            )
            if result.rowcount == 0:
                current = session.get(OrderRecord, order_id)
                if current is None:
                    raise NotFound("Order not found", order_id=order_id)
                raise StaleStatus(order_id, expected, current.status.value)
            if history_status is not None:
                self._add_history(session, ORDER, order_id, history_status, note)

    def _list_payments(self, condition) -> list[PaymentRequest]:
        with self.session_factory() as session:
            records = session.scalars(
                select(PaymentRecord)
                .where(condition)
                .order_by(PaymentRecord.created_at)
            ).all()
            return [self._to_payment(session, record) for record in records]

    def _check_single_confirmation(self, session: Session, payment_id: str) -> None:
        record = session.get(PaymentRecord, payment_id)
        if record is None:
            return
        confirmed = session.scalars(
            select(PaymentRecord.id).where(
                PaymentRecord.linked_order_id == record.linked_order_id,
                PaymentRecord.status == PaymentStatus.CONFIRMED,
                PaymentRecord.id != payment_id,
            )
        ).first()
        if confirmed is not None:
            logger.warning(
                "second_confirmation_blocked",
                payment_id=payment_id,
                confirmed_payment_id=confirmed,
                order_id=record.linked_order_id,
            )
            raise DuplicateConfirmation(
                "Order already has a confirmed payment",
                order_id=record.linked_order_id,
                payment_id=confirmed,
            )

    def _add_history(
        self,
        session: Session,
        entity_type: str,
        entity_id: str,
        status: str,
        note: str,
        at: datetime | None = None,
    ) -> None:
        session.add(
            StatusHistoryRecord(
                entity_type=entity_type,
                entity_id=entity_id,
                status=status,
                note=note,
                timestamp=at or self.clock(),
            )
        )

    def _history(self, session: Session, entity_type: str, entity_id: str) -> list[StatusChange]:
        records = session.scalars(
            select(StatusHistoryRecord)
            .where(
                StatusHistoryRecord.entity_type == entity_type,
                StatusHistoryRecord.entity_id == entity_id,
            )
            .order_by(StatusHistoryRecord.id)
        ).all()
        return [StatusChange(r.status, utc(r.timestamp), r.note) for r in records]

    def _to_payment(self, session: Session, record: PaymentRecord) -> PaymentRequest:
        return PaymentRequest(
            id=record.id,
            reference=record.reference,
            recipient_address=record.recipient_address,
            requested_fiat_amount=Decimal(record.requested_fiat_amount),
            fiat_currency=record.fiat_currency,
            token=record.token,
            token_amount_base_units=int(record.token_amount_base_units),
            display_amount=record.display_amount,
            rate_used=Decimal(record.rate_used),
            quoted_at=utc(record.quoted_at),
            created_at=utc(record.created_at),
            expires_at=utc(record.expires_at),
            linked_order_id=record.linked_order_id,
            customer_id=record.customer_id,
            payment_uri=record.payment_uri,
            qr_payload=record.qr_payload,
            label=record.label,
            message=record.message,
            memo=record.memo,
            status=record.status,
            transaction_signature=record.transaction_signature,
            confirmed_at=utc(record.confirmed_at),
            failure_reason=record.failure_reason,
            history=self._history(session, PAYMENT, record.id),
        )

    def _to_order(self, session: Session, record: OrderRecord) -> Order:
        return Order(
            id=record.id,
            order_number=record.order_number,
            customer_id=record.customer_id,
            items=[
                OrderItem(
                    product_ref=item["product_ref"],
                    quantity=int(item["quantity"]),
                    unit_price=Decimal(item["unit_price"]),
                    variant_id=item.get("variant_id"),
                )
                for item in record.items
            ],
            shipping_address=dict(record.shipping_address or {}),
            created_at=utc(record.created_at),
            fiat_currency=record.fiat_currency,
            status=record.status,
            history=self._history(session, ORDER, record.id),
            fulfillment_provider_order_id=record.fulfillment_provider_order_id,
            fulfillment_claimed_at=utc(record.fulfillment_claimed_at),
            fulfillment_error=record.fulfillment_error,
            tracking_number=record.tracking_number,
        )


def _payment_record(payment: PaymentRequest) -> PaymentRecord:
    return PaymentRecord(
        id=payment.id,
        reference=payment.reference,
        recipient_address=payment.recipient_address,
        requested_fiat_amount=str(payment.requested_fiat_amount),
        fiat_currency=payment.fiat_currency,
        token=payment.token,
        token_amount_base_units=payment.token_amount_base_units,
        display_amount=payment.display_amount,
        rate_used=str(payment.rate_used),
        linked_order_id=payment.linked_order_id,
        customer_id=payment.customer_id,
        payment_uri=payment.payment_uri,
        qr_payload=payment.qr_payload,
        label=payment.label,
        message=payment.message,
        memo=payment.memo,
        status=payment.status,
        failure_reason=payment.failure_reason,
        transaction_signature=payment.transaction_signature,
        confirmed_at=payment.confirmed_at,
        quoted_at=payment.quoted_at,
        created_at=payment.created_at,
        expires_at=payment.expires_at,
    )


def _order_record(order: Order) -> OrderRecord:
    return OrderRecord(
        id=order.id,
        order_number=order.order_number,
        customer_id=order.customer_id,
        items=[
            {
                "product_ref": item.product_ref,
                "quantity": item.quantity,
                "unit_price": str(item.unit_price),
                "variant_id": item.variant_id,
            }
            for item in order.items
        ],
        shipping_address=order.shipping_address,
        fiat_currency=order.fiat_currency,
        status=order.status,
        created_at=order.created_at,
    )
