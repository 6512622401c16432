"""
Currency conversion for crypto payments.
Quotes fiat prices as integer base units of a settlement token.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import ROUND_CEILING, Decimal, InvalidOperation, localcontext

import httpx

from solpay.errors import InvalidAmount, RateUnavailable

from .interfaces import RateSource
from .tokens import TokenRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Quote:
    """Snapshot of a fiat -> token conversion, never recomputed once used."""

    token: str
    decimals: int
    base_units: int
    display_amount: str
    rate_used: Decimal
    quoted_at: datetime


def format_base_units(base_units: int, decimals: int) -> str:
    """
    Render base units as a plain decimal string in display units.

    Example:
        >>> format_base_units(1_500_000, 6)
        '1.5'
    """
    text = format(Decimal(base_units).scaleb(-decimals), "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text


def to_base_units(fiat_amount: Decimal, rate: Decimal, decimals: int) -> int:
    """
    Convert a fiat amount to token base units, always rounding up.

    Every step rounds toward +infinity, so base_units * rate / 10^decimals is
    never below fiat_amount.
    """
    with localcontext() as ctx:
        ctx.prec = 60
        ctx.rounding = ROUND_CEILING
        exact = fiat_amount * (Decimal(10) ** decimals) / rate
        return int(exact.to_integral_value(rounding=ROUND_CEILING))


class FixedRateSource:
    """
    Configured exchange rates (fiat per 1 whole token).

    Stablecoins are pegged at 1.0; SOL uses the configured rate.
    """

    def __init__(self, rates: dict[str, Decimal], fiat_currency: str = "USD"):
        self.rates = {symbol.upper(): Decimal(rate) for symbol, rate in rates.items()}
        self.fiat_currency = fiat_currency.upper()

    async def get_rate(self, token: str, fiat_currency: str) -> Decimal:
        if fiat_currency.upper() != self.fiat_currency:
            raise RateUnavailable(
                f"No fixed rate for {fiat_currency}", token=token, fiat=fiat_currency
            )
        try:
            return self.rates[token.upper()]
        except KeyError:
            raise RateUnavailable(
                f"No fixed rate for {token}", token=token, fiat=fiat_currency
            ) from None


class CoinGeckoRateSource:
    """Live rates from the CoinGecko simple-price endpoint."""

    def __init__(
        self,
        registry: TokenRegistry,
        url: str = "https://api.coingecko.com/api/v3/simple/price",
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.registry = registry
        self.url = url
        self.client = client or httpx.AsyncClient(timeout=timeout)

    async def get_rate(self, token: str, fiat_currency: str) -> Decimal:
        coin_id = self.registry.get(token).coingecko_id
        vs_currency = fiat_currency.lower()
        try:
            response = await self.client.get(
                self.url, params={"ids": coin_id, "vs_currencies": vs_currency}
            )
            response.raise_for_status()
            price = response.json()[coin_id][vs_currency]
            rate = Decimal(str(price))
        except (httpx.RequestError, httpx.HTTPStatusError) as e:
            logger.error(
                "Price request failed",
                extra={"token": token, "fiat": fiat_currency, "error": str(e)},
            )
            raise RateUnavailable(
                f"Price request failed: {e}", token=token, fiat=fiat_currency
            ) from e
        except (KeyError, TypeError, ValueError, InvalidOperation) as e:
            logger.error(
                "Unexpected price payload",
                extra={"token": token, "fiat": fiat_currency, "error": str(e)},
            )
            raise RateUnavailable(
                "Unexpected price payload", token=token, fiat=fiat_currency
            ) from e

        if not rate.is_finite() or rate <= 0:
            raise RateUnavailable(
                f"Invalid rate {rate}", token=token, fiat=fiat_currency
            )
        return rate

    async def close(self):
        """Closes the HTTP client connection."""
        await self.client.aclose()


class PriceOracle:
    """
    Quotes fiat amounts in a token's smallest integer unit.

    Rate failures are propagated as RateUnavailable; retry policy belongs to
    the caller.
    """

    def __init__(
        self,
        registry: TokenRegistry,
        rate_source: RateSource,
        clock: Callable[[], datetime] | None = None,
    ):
        self.registry = registry
        self.rate_source = rate_source
        self.clock = clock or (lambda: datetime.now(UTC))

    async def quote(
        self, fiat_amount: Decimal | str | float, fiat_currency: str, token: str
    ) -> Quote:
        """
        Convert a fiat amount into a token amount.

        Args:
            fiat_amount: Amount in fiat (e.g., Decimal("10.00"))
            fiat_currency: ISO code of the fiat currency (e.g., "USD")
            token: Settlement token symbol ("SOL", "USDC", "USDT")

        Returns:
            Quote with integer base units rounded up

        Raises:
            InvalidAmount: If the fiat amount is not a positive finite number
            UnsupportedToken: If the token is not registered
            RateUnavailable: If the rate source cannot supply a rate

        Example:
            >>> await oracle.quote(Decimal("10.00"), "USD", "USDC")  # rate 2.0
            Quote(base_units=5000000, display_amount='5', ...)
        """
        amount = _parse_fiat(fiat_amount)
        info = self.registry.get(token)

        rate = await self.rate_source.get_rate(info.symbol, fiat_currency)
        if not rate.is_finite() or rate <= 0:
            raise RateUnavailable(
                f"Invalid rate {rate}", token=info.symbol, fiat=fiat_currency
            )

        base_units = to_base_units(amount, rate, info.decimals)
        quote = Quote(
            token=info.symbol,
            decimals=info.decimals,
            base_units=base_units,
            display_amount=format_base_units(base_units, info.decimals),
            rate_used=rate,
            quoted_at=self.clock(),
        )

        logger.info(
            "currency_conversion",
            extra={
                "fiat_amount": str(amount),
                "fiat_currency": fiat_currency,
                "token": info.symbol,
                "rate": str(rate),
                "base_units": base_units,
            },
        )
        return quote


def _parse_fiat(value: Decimal | str | float) -> Decimal:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise InvalidAmount(f"Invalid fiat amount: {value!r}") from e
    if not amount.is_finite() or amount <= 0:
        raise InvalidAmount(f"Fiat amount must be positive: {value!r}")
    return amount
