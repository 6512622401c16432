import asyncio
import threading

import pytest
from sqlalchemy.exc import OperationalError

from solpay.config import Settings
from solpay.crypto.pricing import CoinGeckoRateSource, FixedRateSource
from solpay.services.fulfillment import DisabledFulfillmentClient
from solpay.worker import create_fulfillment_client, create_rate_source, run_expiry_sweeper

from .conftest import ADDRESS, ITEMS


class StopAfter:
    def __init__(self, stop: asyncio.Event, rounds: int):
        self.stop = stop
        self.rounds = rounds
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        if len(self.delays) >= self.rounds:
            self.stop.set()


@pytest.mark.asyncio
async def test_sweeper_expires_overdue_payments(checkout, store, clock):
    order = checkout.create_order("cust-1", ITEMS, ADDRESS)
    payment = await checkout.start_checkout(order.id, "USDC")
    clock.advance(minutes=20)
    stop = asyncio.Event()
    sleep = StopAfter(stop, rounds=2)

    total = await run_expiry_sweeper(checkout.expire_overdue, 60.0, stop, sleep=sleep)

    assert total == 1
    assert sleep.delays == [60.0, 60.0]
    assert store.get_payment(payment.id).status.value == "expired"


@pytest.mark.asyncio
async def test_sweeper_survives_database_errors():
    calls = []

    def flaky_sweep():
        calls.append(1)
        if len(calls) == 1:
            raise OperationalError("SELECT", {}, Exception("database is locked"))
        return ["expired-payment"]

    stop = asyncio.Event()
    total = await run_expiry_sweeper(flaky_sweep, 1.0, stop, sleep=StopAfter(stop, rounds=2))

    assert total == 1
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_sweeper_returns_once_stopped():
    stop = asyncio.Event()
    stop.set()

    assert await run_expiry_sweeper(lambda: [], 60.0, stop) == 0


def test_rate_source_follows_settings():
    settings = Settings(_env_file=None)
    assert isinstance(create_rate_source(settings), FixedRateSource)

    settings.pricing.use_fixed_rates = False
    assert isinstance(create_rate_source(settings), CoinGeckoRateSource)


def test_fulfillment_disabled_by_default():
    assert isinstance(
        create_fulfillment_client(Settings(_env_file=None)), DisabledFulfillmentClient
    )


@pytest.mark.asyncio
async def test_sweep_runs_off_the_event_loop_thread():
    threads = []

    def sweep():
        threads.append(threading.get_ident())
        return []

    stop = asyncio.Event()
    await run_expiry_sweeper(sweep, 1.0, stop, sleep=StopAfter(stop, rounds=1))

    assert threads
    assert threads[0] != threading.get_ident()
