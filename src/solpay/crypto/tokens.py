"""Registry of settlement tokens the engine can quote and verify."""

from dataclasses import dataclass

from solpay.config.solana import SolanaSettings
from solpay.errors import UnsupportedToken

# 1 SOL = 1e9 lamports
SOL_DECIMALS = 9


@dataclass(frozen=True)
class TokenInfo:
    symbol: str
    decimals: int
    mint: str | None = None  # None for native SOL
    coingecko_id: str = ""

    @property
    def is_native(self) -> bool:
        return self.mint is None


class TokenRegistry:
    """Looks up supported tokens by symbol (case-insensitive)."""

    def __init__(self, tokens: list[TokenInfo]):
        self._tokens = {token.symbol.upper(): token for token in tokens}

    @classmethod
    def from_settings(cls, solana: SolanaSettings) -> "TokenRegistry":
        return cls(
            [
                TokenInfo("SOL", SOL_DECIMALS, None, "solana"),
                TokenInfo("USDC", 6, solana.usdc_mint, "usd-coin"),
                TokenInfo("USDT", 6, solana.usdt_mint, "tether"),
            ]
        )

    def get(self, symbol: str) -> TokenInfo:
        token = self._tokens.get((symbol or "").upper())
        if token is None:
            raise UnsupportedToken(
                f"Unsupported token: {symbol}", token=symbol, supported=self.symbols()
            )
        return token

    def by_mint(self, mint: str) -> TokenInfo | None:
        for token in self._tokens.values():
            if token.mint == mint:
                return token
        return None

    def symbols(self) -> list[str]:
        return sorted(self._tokens)

    def __contains__(self, symbol: object) -> bool:
        return isinstance(symbol, str) and symbol.upper() in self._tokens
