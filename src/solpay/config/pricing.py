from decimal import Decimal

from pydantic import BaseModel, HttpUrl


class PricingSettings(BaseModel):
    """Fiat to token rate configuration."""

    use_fixed_rates: bool = True  # Use fixed rates (not CoinGecko)

    # Fixed exchange rates (fiat per 1 whole token)
    fixed_rates: dict[str, Decimal] = {
        "SOL": Decimal("100.0"),
        "USDC": Decimal("1.0"),
        "USDT": Decimal("1.0"),
    }

    coingecko_url: HttpUrl = "https://api.coingecko.com/api/v3/simple/price"
    request_timeout_seconds: float = 10.0
