from pydantic import BaseModel, Field


class CheckoutSettings(BaseModel):
    """Payment request lifetime, polling and sweep cadence."""

    merchant_label: str = "SSPAY Store"
    fiat_currency: str = "USD"

    # Payment Expiration
    payment_ttl_seconds: int = Field(900, gt=0)  # 15 minutes

    # Bounded poller
    poll_interval_seconds: float = Field(2.0, gt=0)
    poll_max_attempts: int = Field(150, gt=0)

    # Expiry sweep
    sweep_interval_seconds: float = Field(60.0, gt=0)

    # Keep the order open for a fresh payment request after a rejected or
    # expired one. When false the order moves to failed instead.
    retry_rejected_payments: bool = True
