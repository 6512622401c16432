import asyncio
from unittest.mock import AsyncMock

import httpx
import pytest

from solpay.errors import FulfillmentError
from solpay.models import Confirmed, OrderStatus
from solpay.services.checkout import CheckoutService
from solpay.services.fulfillment import (
    DisabledFulfillmentClient,
    FulfillmentAck,
    FulfillmentFailed,
    FulfillmentSkipped,
    FulfillmentTrigger,
    PrintifyClient,
)

from .conftest import ADDRESS, ITEMS, FakeFulfillmentClient, make_transfer
from .test_store import make_order

PAYLOAD = {
    "order_id": "abc123",
    "order_number": "SP-20260115-1A2B3C4D",
    "items": [{"product_ref": "5d39b159e7c48c000728c89f", "variant_id": 33719, "quantity": 2}],
    "shipping_address": ADDRESS,
}


def printify_response(status_code=200, data=None):
    request = httpx.Request("POST", "https://api.printify.com/v1/shops/42/orders.json")
    return httpx.Response(status_code, json=data or {}, request=request)


@pytest.mark.asyncio
async def test_printify_order_request(mocker):
    mock_post = mocker.patch("httpx.AsyncClient.post", new_callable=AsyncMock)
    mock_post.return_value = printify_response(data={"id": "5a96f649b2439217d070f507"})
    client = PrintifyClient(api_key="token", shop_id="42")

    provider_order_id = await client.create_order(PAYLOAD)

    assert provider_order_id == "5a96f649b2439217d070f507"
    args, kwargs = mock_post.call_args
    assert args[0] == "https://api.printify.com/v1/shops/42/orders.json"
    body = kwargs["json"]
    assert body["external_id"] == "abc123"
    assert body["label"] == "SP-20260115-1A2B3C4D"
    assert body["line_items"] == [
        {"product_id": "5d39b159e7c48c000728c89f", "variant_id": 33719, "quantity": 2}
    ]
    assert body["address_to"] == ADDRESS
    assert body["send_shipping_notification"] is True
    assert client.client.headers["Authorization"] == "Bearer token"
    await client.close()


@pytest.mark.asyncio
async def test_printify_http_error_is_fulfillment_error(mocker):
    mock_post = mocker.patch("httpx.AsyncClient.post", new_callable=AsyncMock)
    mock_post.return_value = printify_response(status_code=500)
    client = PrintifyClient(api_key="token", shop_id="42")

    with pytest.raises(FulfillmentError) as exc_info:
        await client.create_order(PAYLOAD)
    assert "HTTP 500" in str(exc_info.value)


@pytest.mark.asyncio
async def test_printify_timeout_is_fulfillment_error(mocker):
    mocker.patch(
        "httpx.AsyncClient.post", side_effect=httpx.TimeoutException("Timeout!")
    )
    client = PrintifyClient(api_key="token", shop_id="42")

    with pytest.raises(FulfillmentError):
        await client.create_order(PAYLOAD)


@pytest.mark.asyncio
async def test_printify_response_without_id(mocker):
    mock_post = mocker.patch("httpx.AsyncClient.post", new_callable=AsyncMock)
    mock_post.return_value = printify_response(data={"status": "pending"})
    client = PrintifyClient(api_key="token", shop_id="42")

    with pytest.raises(FulfillmentError):
        await client.create_order(PAYLOAD)


@pytest.mark.asyncio
async def test_concurrent_triggers_reach_provider_once(store):
    order = store.create_order(make_order(status=OrderStatus.PAID))
    client = FakeFulfillmentClient()
    trigger = FulfillmentTrigger(store, client)

    results = await asyncio.gather(trigger.trigger(order.id), trigger.trigger(order.id))

    assert FulfillmentAck("prov-1") in results
    assert any(isinstance(r, FulfillmentSkipped) for r in results)
    assert len(client.payloads) == 1


@pytest.mark.asyncio
async def test_disabled_fulfillment_records_error(store):
    order = store.create_order(make_order(status=OrderStatus.PAID))
    trigger = FulfillmentTrigger(store, DisabledFulfillmentClient())

    result = await trigger.trigger(order.id)

    assert result == FulfillmentFailed("Fulfillment is disabled", retryable=True)
    stored = store.get_order(order.id)
    assert stored.status == OrderStatus.PAID
    assert stored.fulfillment_error == "Fulfillment is disabled"
    assert stored.history[-1].note == "fulfillment failed: Fulfillment is disabled"


class DroppingClient:
    """Raises a plain connection error on the first call, then succeeds."""

    def __init__(self):
        self.calls = 0

    async def create_order(self, payload):
        self.calls += 1
        if self.calls == 1:
            raise ConnectionError("connection reset by peer")
        return "prov-after-retry"


@pytest.mark.asyncio
async def test_unexpected_client_error_releases_claim(
    settings, store, ledger, rate_source, clock
):
    client = DroppingClient()
    checkout = CheckoutService.build(settings, store, ledger, rate_source, client, clock=clock)
    order = checkout.create_order("cust-1", ITEMS, ADDRESS)
    payment = await checkout.start_checkout(order.id, "USDC")
    ledger.add(make_transfer(payment))

    verdict = await checkout.submit_transaction(payment.id, "sig-1")

    assert isinstance(verdict, Confirmed)
    stored = store.get_order(order.id)
    assert stored.status == OrderStatus.PAID
    assert stored.fulfillment_claimed_at is None
    assert stored.fulfillment_error == "ConnectionError: connection reset by peer"

    result = await checkout.retry_fulfillment(order.id)

    assert result == FulfillmentAck("prov-after-retry")
    assert store.get_order(order.id).status == OrderStatus.FULFILLMENT_REQUESTED
