"""
Fulfillment trigger and the Printify provider client.

A paid order is handed to the provider at most once automatically. The
claim is taken in the store before the provider call, so two concurrent
triggers for the same order cannot both reach the provider.
"""

from dataclasses import dataclass
from typing import Any

import httpx
import structlog
from opentelemetry import trace

from solpay.config.fulfillment import FulfillmentSettings
from solpay.crypto.interfaces import FulfillmentClient
from solpay.errors import FulfillmentError, StaleStatus
from solpay.models import Order, OrderStatus
from solpay.store.base import PaymentStore

logger = structlog.get_logger(__name__)
tracer = trace.get_tracer(__name__)


@dataclass(frozen=True)
class FulfillmentAck:
    provider_order_id: str


@dataclass(frozen=True)
class FulfillmentFailed:
    reason: str
    retryable: bool = True


@dataclass(frozen=True)
class FulfillmentSkipped:
    """Another trigger already owns (or finished) fulfillment for this order."""

    reason: str


FulfillmentResult = FulfillmentAck | FulfillmentFailed | FulfillmentSkipped


def build_payload(order: Order) -> dict[str, Any]:
    return {
        "order_id": order.id,
        "order_number": order.order_number,
        "items": [
            {
                "product_ref": item.product_ref,
                "variant_id": item.variant_id,
                "quantity": item.quantity,
            }
            for item in order.items
        ],
        "shipping_address": order.shipping_address,
    }


class FulfillmentTrigger:
    def __init__(self, store: PaymentStore, client: FulfillmentClient):
        self.store = store
        self.client = client

    async def trigger(self, order_id: str) -> FulfillmentResult:
        """
        Send a paid order to the fulfillment provider.

        Failures leave the order paid with the error recorded and the claim
        released, ready for a manual retry.
        """
        with tracer.start_as_current_span("trigger_fulfillment") as span:
            span.set_attribute("order_id", order_id)

            try:
                order = self.store.claim_fulfillment(order_id)
            except StaleStatus as e:
                logger.info(
                    "fulfillment_claim_refused", order_id=order_id, actual=str(e.actual)
                )
                return FulfillmentSkipped(str(e))

            try:
                provider_order_id = await self.client.create_order(build_payload(order))
            except FulfillmentError as e:
                return self._fail(span, order_id, str(e), e.retryable)
            except Exception as e:
                logger.error(
                    "fulfillment_client_crashed", order_id=order_id, exc_info=True
                )
                return self._fail(span, order_id, f"{type(e).__name__}: {e}", True)

            self.store.record_fulfillment(order_id, provider_order_id)
            logger.info(
                "fulfillment_requested",
                order_id=order_id,
                provider_order_id=provider_order_id,
            )
            span.set_attribute("fulfillment.outcome", "requested")
            return FulfillmentAck(provider_order_id)

    def _fail(self, span, order_id: str, reason: str, retryable: bool) -> FulfillmentFailed:
        self.store.release_fulfillment(order_id, reason)
        logger.error("fulfillment_failed", order_id=order_id, error=reason)
        span.set_attribute("fulfillment.outcome", "failed")
        return FulfillmentFailed(reason, retryable=retryable)


class PrintifyClient:
    """
    Printify print-on-demand API client.

    Creates one Printify order per paid order:
    POST /shops/{shop_id}/orders.json
    """

    def __init__(
        self,
        api_key: str,
        shop_id: str,
        base_url: str = "https://api.printify.com/v1",
        timeout: float = 30.0,
        send_shipping_notification: bool = True,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.shop_id = shop_id
        self.send_shipping_notification = send_shipping_notification
        self.client = client or httpx.AsyncClient(
            timeout=timeout,
            headers={"Authorization": f"Bearer {api_key}"},
        )

    @classmethod
    def from_settings(cls, settings: FulfillmentSettings) -> "PrintifyClient":
        return cls(
            api_key=settings.api_key.get_secret_value(),
            shop_id=settings.shop_id,
            base_url=str(settings.base_url),
            timeout=settings.request_timeout_seconds,
            send_shipping_notification=settings.send_shipping_notification,
        )

    async def create_order(self, payload: dict[str, Any]) -> str:
        body = {
            "external_id": payload["order_id"],
            "label": payload.get("order_number", payload["order_id"]),
            "line_items": [
                {
                    "product_id": item["product_ref"],
                    "variant_id": item["variant_id"],
                    "quantity": item["quantity"],
                }
                for item in payload["items"]
            ],
            "shipping_method": 1,
            "send_shipping_notification": self.send_shipping_notification,
            "address_to": payload["shipping_address"],
        }
        url = f"{self.base_url}/shops/{self.shop_id}/orders.json"

        try:
            response = await self.client.post(url, json=body)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            raise FulfillmentError(
                f"Printify rejected order: HTTP {e.response.status_code}",
                order_id=payload["order_id"],
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise FulfillmentError(
                f"Printify request failed: {e}", order_id=payload["order_id"]
            ) from e

        provider_order_id = data.get("id") if isinstance(data, dict) else None
        if not provider_order_id:
            raise FulfillmentError(
                "Printify response carried no order id", order_id=payload["order_id"]
            )
        return str(provider_order_id)

    async def close(self):
        await self.client.aclose()


def is_awaiting_fulfillment(order: Order) -> bool:
    return order.status == OrderStatus.PAID and order.fulfillment_provider_order_id is None


class DisabledFulfillmentClient:
    """Stand-in provider when fulfillment is switched off; every call fails."""

    async def create_order(self, payload: dict[str, Any]) -> str:
        raise FulfillmentError(
            "Fulfillment is disabled", order_id=payload.get("order_id")
        )
