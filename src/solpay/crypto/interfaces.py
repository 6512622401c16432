"""
Protocol-based interfaces for the engine's external collaborators.
Keeps verification and pricing chain- and vendor-agnostic.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Protocol


@dataclass(frozen=True)
class LedgerTransaction:
    """
    What the ledger knows about one transaction signature.

    ``balance_deltas[i]`` is the net change for ``accounts_involved[i]`` in the
    settlement unit (lamports for SOL, token base units for SPL tokens).
    """

    signature: str
    found: bool
    succeeded: bool = False
    accounts_involved: list[str] = field(default_factory=list)
    balance_deltas: list[int] = field(default_factory=list)
    reference_keys_present: list[str] = field(default_factory=list)
    slot: int | None = None
    block_time: datetime | None = None

    def delta_for(self, address: str) -> int | None:
        """Net change for an account, or None if it is not involved."""
        total = None
        for account, delta in zip(self.accounts_involved, self.balance_deltas):
            if account == address:
                total = (total or 0) + delta
        return total

    @classmethod
    def not_found(cls, signature: str) -> "LedgerTransaction":
        return cls(signature=signature, found=False)


class LedgerClient(Protocol):
    """
    Protocol for ledger query services.

    Example implementations:
    - SolanaLedgerClient: JSON-RPC getTransaction against a Solana node
    - In tests: an in-memory map of signature -> LedgerTransaction
    """

    async def get_transaction(
        self, signature: str, mint: str | None = None
    ) -> LedgerTransaction:
        """
        Looks up a transaction by signature.

        Args:
            signature: Transaction signature (base58)
            mint: SPL token mint whose balances should be reported, None for SOL

        Returns:
            LedgerTransaction, with found=False if the ledger has not seen it

        Raises:
            LedgerUnavailable: If the ledger could not be reached
        """
        ...

    async def find_signatures(self, reference: str, limit: int = 10) -> list[str]:
        """
        Lists signatures of transactions that include the reference account.

        Raises:
            LedgerUnavailable: If the ledger could not be reached
        """
        ...


class RateSource(Protocol):
    """Supplies the fiat price of one whole token."""

    async def get_rate(self, token: str, fiat_currency: str) -> Decimal:
        """
        Raises:
            RateUnavailable: If no current rate can be obtained
        """
        ...


class FulfillmentClient(Protocol):
    """Print-on-demand provider boundary."""

    async def create_order(self, payload: dict[str, Any]) -> str:
        """
        Creates a provider order for a paid order.

        Args:
            payload: {"order_id", "items", "shipping_address"}

        Returns:
            The provider's order id

        Raises:
            FulfillmentError: If the provider rejected or could not take the order
        """
        ...
