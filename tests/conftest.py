"""Pytest configuration and shared fixtures."""

import asyncio
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest
from solders.keypair import Keypair  # type: ignore

from solpay.config import Settings
from solpay.config.checkout import CheckoutSettings
from solpay.config.solana import SolanaSettings
from solpay.crypto.interfaces import LedgerTransaction
from solpay.crypto.pricing import FixedRateSource
from solpay.crypto.tokens import TokenRegistry
from solpay.db import create_db_engine, create_session_factory, init_db
from solpay.errors import FulfillmentError, LedgerUnavailable
from solpay.models import PaymentRequest
from solpay.services.checkout import CheckoutService
from solpay.store.memory import InMemoryPaymentStore
from solpay.store.sql import SqlPaymentStore

MERCHANT = str(Keypair().pubkey())
CUSTOMER_WALLET = str(Keypair().pubkey())
START = datetime(2026, 1, 15, 12, 0, tzinfo=UTC)

ITEMS = [
    {"product_ref": "tee-black", "variant_id": "17887", "quantity": 2, "unit_price": "12.50"},
]
ADDRESS = {
    "first_name": "Ada",
    "last_name": "Lovelace",
    "country": "GB",
    "city": "London",
    "address1": "12 St James's Square",
    "zip": "SW1Y 4JH",
}


class FakeClock:
    """Manually advanced clock shared by services and stores."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)

    def set(self, value: datetime) -> None:
        self.now = value


class FakeLedger:
    """In-memory ledger: signature -> LedgerTransaction."""

    def __init__(self):
        self.transactions: dict[str, LedgerTransaction] = {}
        self.signatures_by_reference: dict[str, list[str]] = {}
        self.calls: list[tuple[str, str | None]] = []
        self.error: Exception | None = None
        # Signatures that only become visible after N lookups
        self.visible_after: dict[str, int] = {}

    def add(self, tx: LedgerTransaction, reference: str | None = None) -> None:
        self.transactions[tx.signature] = tx
        if reference:
            self.signatures_by_reference.setdefault(reference, []).append(tx.signature)

    async def get_transaction(self, signature, mint=None):
        self.calls.append((signature, mint))
        await asyncio.sleep(0)
        if self.error:
            raise self.error
        lookups = sum(1 for sig, _ in self.calls if sig == signature)
        if lookups < self.visible_after.get(signature, 0):
            return LedgerTransaction.not_found(signature)
        return self.transactions.get(signature) or LedgerTransaction.not_found(signature)

    async def find_signatures(self, reference, limit=10):
        await asyncio.sleep(0)
        if self.error:
            raise self.error
        return list(self.signatures_by_reference.get(reference, []))[:limit]


class FakeFulfillmentClient:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.payloads: list[dict] = []

    async def create_order(self, payload):
        self.payloads.append(payload)
        await asyncio.sleep(0)
        if self.fail:
            raise FulfillmentError("Printify rejected order: HTTP 503")
        return f"prov-{len(self.payloads)}"


def make_transfer(
    payment: PaymentRequest,
    signature: str = "sig-1",
    amount: int | None = None,
    recipient: str | None = None,
    include_reference: bool = True,
    succeeded: bool = True,
) -> LedgerTransaction:
    """A ledger record of a transfer from the customer wallet to ``recipient``."""
    amount = payment.token_amount_base_units if amount is None else amount
    recipient = recipient or payment.recipient_address
    keys = [CUSTOMER_WALLET, recipient]
    if include_reference:
        keys.append(payment.reference)
    return LedgerTransaction(
        signature=signature,
        found=True,
        succeeded=succeeded,
        accounts_involved=[CUSTOMER_WALLET, recipient],
        balance_deltas=[-amount, amount],
        reference_keys_present=keys,
        slot=1,
        block_time=START,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture(params=["memory", "sql"])
def store(request, clock):
    """Every store-backed test runs against both implementations."""
    if request.param == "memory":
        yield InMemoryPaymentStore(clock=clock)
        return
    engine = create_db_engine("sqlite://")
    init_db(engine)
    yield SqlPaymentStore(create_session_factory(engine), clock=clock)
    engine.dispose()


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def fulfillment_client():
    return FakeFulfillmentClient()


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        solana=SolanaSettings(merchant_wallet=MERCHANT),
        checkout=CheckoutSettings(poll_interval_seconds=0.001, poll_max_attempts=5),
    )


@pytest.fixture
def rate_source():
    return FixedRateSource(
        {"SOL": Decimal("100"), "USDC": Decimal("1"), "USDT": Decimal("1")}
    )


@pytest.fixture
def registry(settings):
    return TokenRegistry.from_settings(settings.solana)


@pytest.fixture
def checkout(settings, store, ledger, rate_source, fulfillment_client, clock):
    return CheckoutService.build(
        settings, store, ledger, rate_source, fulfillment_client, clock=clock
    )


@pytest.fixture
def unavailable_ledger(ledger):
    ledger.error = LedgerUnavailable("RPC request failed: connection refused")
    return ledger
