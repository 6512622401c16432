"""
Solana ledger client.
Answers "does transaction S exist, and what did it do?" over JSON-RPC.
"""

import logging
from datetime import UTC, datetime
from typing import Any

import httpx

from solpay.errors import LedgerUnavailable

from .interfaces import LedgerTransaction

logger = logging.getLogger(__name__)

# JSON-RPC error code for malformed params (e.g. a signature that is not base58)
INVALID_PARAMS = -32602


class SolanaLedgerClient:
    """
    Solana JSON-RPC implementation of LedgerClient.

    Supports:
    - Native SOL transfers (lamport balance deltas per account key)
    - SPL token transfers (token balance deltas per owner for one mint)
    - Reference keys and spl-memo texts for payment binding
    """

    def __init__(
        self,
        rpc_url: str = "https://api.mainnet-beta.solana.com",
        commitment: str = "confirmed",
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ):
        """
        Initialize Solana ledger client.

        Args:
            rpc_url: Solana RPC endpoint URL
            commitment: Commitment level for lookups ("confirmed", "finalized")
            timeout: HTTP timeout in seconds
            client: Optional shared AsyncClient
        """
        self.rpc_url = rpc_url
        self.commitment = commitment
        self.client = client or httpx.AsyncClient(timeout=timeout)

    async def get_transaction(
        self, signature: str, mint: str | None = None
    ) -> LedgerTransaction:
        result = await self._rpc(
            "getTransaction",
            [
                signature,
                {
                    "encoding": "jsonParsed",
                    "commitment": self.commitment,
                    "maxSupportedTransactionVersion": 0,
                },
            ],
        )
        if not result:
            logger.info("Transaction not found", extra={"signature": signature})
            return LedgerTransaction.not_found(signature)

        try:
            return self._parse_transaction(signature, result, mint)
        except (KeyError, ValueError, TypeError, IndexError) as e:
            logger.error(
                "Failed to parse transaction data",
                extra={"signature": signature, "error": str(e)},
                exc_info=True,
            )
            raise LedgerUnavailable(
                f"Unparseable transaction {signature}", signature=signature
            ) from e

    async def find_signatures(self, reference: str, limit: int = 10) -> list[str]:
        result = await self._rpc(
            "getSignaturesForAddress",
            [reference, {"limit": limit, "commitment": self.commitment}],
        )
        return [info["signature"] for info in result or [] if not info.get("err")]

    async def _rpc(self, method: str, params: list[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "id": 1, "method": method, "params": params}
        try:
            response = await self.client.post(self.rpc_url, json=payload)
            response.raise_for_status()
            data = response.json()
        except (httpx.RequestError, httpx.HTTPStatusError) as e:
            logger.error(
                "RPC request failed",
                extra={"method": method, "error": str(e)},
                exc_info=True,
            )
            raise LedgerUnavailable(f"RPC request failed: {e}", method=method) from e
        except ValueError as e:
            raise LedgerUnavailable("RPC returned invalid JSON", method=method) from e

        if "error" in data:
            error = data["error"] or {}
            if error.get("code") == INVALID_PARAMS:
                logger.warning("RPC rejected params", extra={"method": method, "error": error})
                return None
            logger.error("RPC error", extra={"method": method, "error": error})
            raise LedgerUnavailable(
                f"RPC error: {error.get('message', error)}", method=method
            )
        return data.get("result")

    def _parse_transaction(
        self, signature: str, tx: dict[str, Any], mint: str | None
    ) -> LedgerTransaction:
        meta = tx.get("meta") or {}
        message = tx.get("transaction", {}).get("message", {})
        account_keys = [
            key if isinstance(key, str) else key["pubkey"]
            for key in message.get("accountKeys", [])
        ]

        if mint is None:
            accounts, deltas = self._lamport_deltas(account_keys, meta)
        else:
            accounts, deltas = self._token_deltas(meta, mint)

        block_time = tx.get("blockTime")
        return LedgerTransaction(
            signature=signature,
            found=True,
            succeeded=meta.get("err") is None,
            accounts_involved=accounts,
            balance_deltas=deltas,
            reference_keys_present=account_keys + self._memos(message),
            slot=tx.get("slot"),
            block_time=datetime.fromtimestamp(block_time, UTC) if block_time else None,
        )

    @staticmethod
    def _lamport_deltas(
        account_keys: list[str], meta: dict[str, Any]
    ) -> tuple[list[str], list[int]]:
        pre = meta.get("preBalances", [])
        post = meta.get("postBalances", [])
        deltas = [int(post[idx]) - int(pre[idx]) for idx in range(len(account_keys))]
        return account_keys, deltas

    @staticmethod
    def _token_deltas(meta: dict[str, Any], mint: str) -> tuple[list[str], list[int]]:
        """Net token change per owner; a missing pre/post entry counts as zero."""
        totals: dict[str, int] = {}
        for entries, sign in (
            (meta.get("preTokenBalances") or [], -1),
            (meta.get("postTokenBalances") or [], 1),
        ):
            for entry in entries:
                if entry.get("mint") != mint:
                    continue
                owner = entry["owner"]
                amount = int(entry["uiTokenAmount"]["amount"])
                totals[owner] = totals.get(owner, 0) + sign * amount
        return list(totals), list(totals.values())

    @staticmethod
    def _memos(message: dict[str, Any]) -> list[str]:
        memos = []
        for instr in message.get("instructions", []):
            # Memo instructions have program "spl-memo" and a plain-text parsed body
            if instr.get("program") == "spl-memo" and isinstance(instr.get("parsed"), str):
                memos.append(instr["parsed"])
        return memos

    async def close(self):
        """Closes the HTTP client connection."""
        await self.client.aclose()
