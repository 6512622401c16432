from pydantic import BaseModel, HttpUrl, SecretStr, model_validator


class FulfillmentSettings(BaseModel):
    """Printify print-on-demand provider configuration."""

    enabled: bool = False
    base_url: HttpUrl = "https://api.printify.com/v1"
    api_key: SecretStr = SecretStr("")
    shop_id: str = ""
    request_timeout_seconds: float = 30.0
    send_shipping_notification: bool = True

    @model_validator(mode="after")
    def validate_printify_config(self) -> "FulfillmentSettings":
        """Validate provider credentials when fulfillment is enabled."""
        if self.enabled:
            if not self.api_key.get_secret_value():
                raise ValueError(
                    "SOLPAY_FULFILLMENT__API_KEY required when SOLPAY_FULFILLMENT__ENABLED=true"
                )
            if not self.shop_id:
                raise ValueError(
                    "SOLPAY_FULFILLMENT__SHOP_ID required when SOLPAY_FULFILLMENT__ENABLED=true"
                )
        return self
