"""
Payment reference generation.

A reference is a throwaway ed25519 public key. Wallets attach it as a
read-only account to the transfer, which makes the transaction discoverable
with getSignaturesForAddress and binds it to exactly one payment request.
"""

from solders.keypair import Keypair  # type: ignore
from solders.pubkey import Pubkey  # type: ignore


def generate_reference() -> str:
    """Return a fresh base58 public key (256 bits from the OS CSPRNG)."""
    return str(Keypair().pubkey())


def is_valid_reference(value: str) -> bool:
    try:
        Pubkey.from_string(value)
    except (ValueError, TypeError):
        return False
    return True
