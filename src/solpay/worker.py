"""
Background worker: periodically expires overdue payment requests.

Run with ``python -m solpay.worker``.
"""

import asyncio
from collections.abc import Awaitable, Callable

from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from sqlalchemy.exc import SQLAlchemyError

from solpay.config import Settings, get_settings
from solpay.crypto.pricing import CoinGeckoRateSource, FixedRateSource
from solpay.crypto.solana_provider import SolanaLedgerClient
from solpay.crypto.tokens import TokenRegistry
from solpay.db import create_db_engine, create_session_factory, init_db
from solpay.logging_config import configure_logging, get_logger
from solpay.services.checkout import CheckoutService
from solpay.services.fulfillment import DisabledFulfillmentClient, PrintifyClient
from solpay.store.sql import SqlPaymentStore
from solpay.telemetry import init_telemetry

logger = get_logger("solpay-worker")


def create_rate_source(settings: Settings):
    if settings.pricing.use_fixed_rates:
        return FixedRateSource(settings.pricing.fixed_rates, settings.checkout.fiat_currency)
    return CoinGeckoRateSource(
        TokenRegistry.from_settings(settings.solana),
        url=str(settings.pricing.coingecko_url),
        timeout=settings.pricing.request_timeout_seconds,
    )


def create_fulfillment_client(settings: Settings):
    if not settings.fulfillment.enabled:
        logger.warning("fulfillment_disabled")
        return DisabledFulfillmentClient()
    return PrintifyClient.from_settings(settings.fulfillment)


async def run_expiry_sweeper(
    sweep: Callable[[], list],
    interval: float,
    stop: asyncio.Event,
    sleep: Callable[[float], Awaitable[None]] | None = None,
) -> int:
    """
    Call ``sweep`` every ``interval`` seconds until ``stop`` is set.

    Database errors are logged and the next round retries.

    Returns:
        Number of payment requests expired over the worker's lifetime
    """
    total = 0
    while not stop.is_set():
        try:
            expired = await asyncio.to_thread(sweep)
            total += len(expired)
        except SQLAlchemyError as e:
            logger.error("expiry_sweep_failed", error=str(e))

        if sleep is not None:
            await sleep(interval)
            continue
        try:
            await asyncio.wait_for(stop.wait(), timeout=interval)
        except TimeoutError:
            pass
    return total


async def serve(settings: Settings | None = None) -> None:
    settings = settings or get_settings()

    engine = create_db_engine(settings.database.url, echo=settings.database.echo)
    if init_telemetry(settings.server) is not None:
        SQLAlchemyInstrumentor().instrument(engine=engine)
        logger.info(
            "telemetry_initialized",
            service_name=settings.server.otel_service_name,
            endpoint=settings.server.otel_exporter_otlp_endpoint,
        )
    init_db(engine)

    store = SqlPaymentStore(create_session_factory(engine))
    ledger = SolanaLedgerClient(
        str(settings.solana.rpc_url),
        commitment=settings.solana.commitment,
        timeout=settings.solana.request_timeout_seconds,
    )
    rate_source = create_rate_source(settings)
    fulfillment_client = create_fulfillment_client(settings)
    checkout = CheckoutService.build(settings, store, ledger, rate_source, fulfillment_client)

    stop = asyncio.Event()
    logger.info(
        "worker_started",
        database=engine.url.get_backend_name(),
        network=settings.solana.network,
        sweep_interval=settings.checkout.sweep_interval_seconds,
    )
    try:
        await run_expiry_sweeper(
            checkout.expire_overdue, settings.checkout.sweep_interval_seconds, stop
        )
    finally:
        await ledger.close()
        for client in (rate_source, fulfillment_client):
            if hasattr(client, "close"):
                await client.close()
        engine.dispose()
        logger.info("worker_stopped")


def main() -> None:
    settings = get_settings()
    configure_logging(settings.server.log_level)
    try:
        asyncio.run(serve(settings))
    except KeyboardInterrupt:
        logger.info("worker_interrupted")


if __name__ == "__main__":
    main()
