"""Chain-facing adapters: references, pricing, payment URIs and the ledger client."""

from .interfaces import FulfillmentClient, LedgerClient, LedgerTransaction, RateSource
from .payment_uri import PaymentURI, build_payment_uri, parse_payment_uri
from .pricing import CoinGeckoRateSource, FixedRateSource, PriceOracle, Quote
from .reference import generate_reference, is_valid_reference
from .solana_provider import SolanaLedgerClient
from .tokens import TokenInfo, TokenRegistry

__all__ = [
    "CoinGeckoRateSource",
    "FixedRateSource",
    "FulfillmentClient",
    "LedgerClient",
    "LedgerTransaction",
    "PaymentURI",
    "PriceOracle",
    "Quote",
    "RateSource",
    "SolanaLedgerClient",
    "TokenInfo",
    "TokenRegistry",
    "build_payment_uri",
    "generate_reference",
    "is_valid_reference",
    "parse_payment_uri",
]
