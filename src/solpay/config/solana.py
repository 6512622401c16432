from pydantic import BaseModel, HttpUrl, field_validator
from solders.pubkey import Pubkey  # type: ignore


class SolanaSettings(BaseModel):
    """Ledger access and merchant wallet configuration."""

    merchant_wallet: str = ""  # Base58 public key receiving payments
    rpc_url: HttpUrl = "https://api.devnet.solana.com"
    network: str = "devnet"  # "mainnet-beta", "devnet", "testnet"
    commitment: str = "confirmed"
    request_timeout_seconds: float = 30.0

    # SPL token mints
    usdc_mint: str = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"  # Mainnet USDC
    usdt_mint: str = "Es9vMFrzaCERmJfrF4H2FYD4KCoNkY11McCe8BenwNYB"  # Mainnet USDT

    @field_validator("merchant_wallet", "usdc_mint", "usdt_mint")
    @classmethod
    def validate_pubkey(cls, value: str) -> str:
        if value:
            try:
                Pubkey.from_string(value)
            except ValueError as e:
                raise ValueError(f"Not a valid Solana public key: {value}") from e
        return value

    @field_validator("commitment")
    @classmethod
    def validate_commitment(cls, value: str) -> str:
        if value not in ("processed", "confirmed", "finalized"):
            raise ValueError("commitment must be 'processed', 'confirmed' or 'finalized'")
        return value
