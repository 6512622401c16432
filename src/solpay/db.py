import enum
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    Engine,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    create_engine,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from solpay.models import OrderStatus, PaymentStatus


class Base(DeclarativeBase):
    pass


def _enum_column(enum_cls: type[enum.Enum]) -> Enum:
    # Store the lowercase values ("confirmed"), which the partial index matches on
    return Enum(
        enum_cls,
        native_enum=False,
        length=32,
        values_callable=lambda members: [m.value for m in members],
    )


class OrderRecord(Base):
    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    order_number: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    customer_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    items: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False)
    shipping_address: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    fiat_currency: Mapped[str] = mapped_column(String(8), nullable=False)
    status: Mapped[OrderStatus] = mapped_column(
        _enum_column(OrderStatus),
        nullable=False,
        default=OrderStatus.PENDING,
        index=True,
    )

    # Fulfillment fields (populated after payment confirmation)
    fulfillment_provider_order_id: Mapped[str | None] = mapped_column(
        String, nullable=True, unique=True
    )
    fulfillment_claimed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    fulfillment_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    tracking_number: Mapped[str | None] = mapped_column(String, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )


class PaymentRecord(Base):
    """
    A payment request locked to one quote. Never hard-deleted.

    Decimal amounts are stored as exact decimal text.
    """

    __tablename__ = "payment_requests"
    __table_args__ = (
        Index(
            "uq_one_confirmed_payment_per_order",
            "linked_order_id",
            unique=True,
            sqlite_where=text("status = 'confirmed'"),
            postgresql_where=text("status = 'confirmed'"),
        ),
    )

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    reference: Mapped[str] = mapped_column(
        String(64), nullable=False, unique=True, index=True
    )
    recipient_address: Mapped[str] = mapped_column(String(64), nullable=False)
    requested_fiat_amount: Mapped[str] = mapped_column(String(40), nullable=False)
    fiat_currency: Mapped[str] = mapped_column(String(8), nullable=False)
    token: Mapped[str] = mapped_column(String(16), nullable=False)
    token_amount_base_units: Mapped[int] = mapped_column(BigInteger, nullable=False)
    display_amount: Mapped[str] = mapped_column(String(40), nullable=False)
    rate_used: Mapped[str] = mapped_column(String(64), nullable=False)
    linked_order_id: Mapped[str] = mapped_column(
        ForeignKey("orders.id"), nullable=False, index=True
    )
    customer_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    payment_uri: Mapped[str] = mapped_column(Text, default="")
    qr_payload: Mapped[str] = mapped_column(Text, default="")
    label: Mapped[str] = mapped_column(String, default="")
    message: Mapped[str] = mapped_column(String, default="")
    memo: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[PaymentStatus] = mapped_column(
        _enum_column(PaymentStatus),
        nullable=False,
        default=PaymentStatus.PENDING,
        index=True,
    )
    failure_reason: Mapped[str | None] = mapped_column(String, nullable=True)

    # Payment verification fields (populated after confirmation)
    transaction_signature: Mapped[str | None] = mapped_column(
        String(128), nullable=True, unique=True
    )
    confirmed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Timestamps
    quoted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, index=True
    )


class StatusHistoryRecord(Base):
    """Append-only status log shared by payments and orders."""

    __tablename__ = "status_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entity_type: Mapped[str] = mapped_column(String(16), nullable=False)  # "payment" | "order"
    entity_id: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    note: Mapped[str] = mapped_column(Text, default="")
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


def create_db_engine(url: str, echo: bool = False) -> Engine:
    if url in ("sqlite://", "sqlite:///:memory:"):
        # One shared connection, otherwise every session sees an empty database
        return create_engine(
            url,
            echo=echo,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
    return create_engine(url, echo=echo)


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, expire_on_commit=False)


def init_db(engine: Engine) -> None:
    Base.metadata.create_all(bind=engine)
