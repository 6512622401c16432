from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from solpay.crypto.solana_provider import SolanaLedgerClient
from solpay.errors import LedgerUnavailable

from .conftest import CUSTOMER_WALLET, MERCHANT

USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
REFERENCE = "7Mq9WQ7vFhMhcTxtGJXD4a3fTQqDHv1qJ6j9UWZZmQ4F"


def rpc_response(result=None, error=None):
    response = MagicMock(spec=httpx.Response)
    response.status_code = 200
    body = {"jsonrpc": "2.0", "id": 1}
    if error is not None:
        body["error"] = error
    else:
        body["result"] = result
    response.json.return_value = body
    return response


def sol_transfer(err=None):
    return {
        "slot": 250_000_000,
        "blockTime": 1_768_478_400,
        "meta": {
            "err": err,
            "preBalances": [5_000_000_000, 1_000_000_000, 0, 1],
            "postBalances": [4_749_995_000, 1_250_000_000, 0, 1],
            "preTokenBalances": [],
            "postTokenBalances": [],
        },
        "transaction": {
            "message": {
                "accountKeys": [
                    {"pubkey": CUSTOMER_WALLET, "signer": True, "writable": True},
                    {"pubkey": MERCHANT, "signer": False, "writable": True},
                    {"pubkey": REFERENCE, "signer": False, "writable": False},
                    {"pubkey": "11111111111111111111111111111111", "signer": False, "writable": False},
                ],
                "instructions": [
                    {"program": "spl-memo", "parsed": "order-SP-20260115-1A2B3C4D"},
                ],
            }
        },
    }


def usdc_transfer():
    tx = sol_transfer()
    tx["meta"]["preTokenBalances"] = [
        {"accountIndex": 4, "mint": USDC_MINT, "owner": CUSTOMER_WALLET,
         "uiTokenAmount": {"amount": "30000000", "decimals": 6}},
        {"accountIndex": 5, "mint": "OtherMint1111111111111111111111111111111111", "owner": MERCHANT,
         "uiTokenAmount": {"amount": "7", "decimals": 6}},
    ]
    tx["meta"]["postTokenBalances"] = [
        {"accountIndex": 4, "mint": USDC_MINT, "owner": CUSTOMER_WALLET,
         "uiTokenAmount": {"amount": "5000000", "decimals": 6}},
        {"accountIndex": 6, "mint": USDC_MINT, "owner": MERCHANT,
         "uiTokenAmount": {"amount": "25000000", "decimals": 6}},
    ]
    return tx


@pytest.fixture
def client():
    return SolanaLedgerClient(rpc_url="https://api.devnet.solana.com")


@pytest.mark.asyncio
async def test_sol_transfer_is_parsed(mocker, client):
    mock_post = mocker.patch("httpx.AsyncClient.post", new_callable=AsyncMock)
    mock_post.return_value = rpc_response(sol_transfer())

    tx = await client.get_transaction("sig-1")

    assert tx.found and tx.succeeded
    assert tx.delta_for(MERCHANT) == 250_000_000
    assert tx.delta_for(CUSTOMER_WALLET) == -250_005_000
    assert REFERENCE in tx.reference_keys_present
    assert "order-SP-20260115-1A2B3C4D" in tx.reference_keys_present
    assert tx.slot == 250_000_000
    assert tx.block_time.year == 2026

    _, kwargs = mock_post.call_args
    assert kwargs["json"]["method"] == "getTransaction"
    assert kwargs["json"]["params"][1]["encoding"] == "jsonParsed"
    assert kwargs["json"]["params"][1]["commitment"] == "confirmed"


@pytest.mark.asyncio
async def test_spl_transfer_reports_owner_deltas_for_mint(mocker, client):
    mock_post = mocker.patch("httpx.AsyncClient.post", new_callable=AsyncMock)
    mock_post.return_value = rpc_response(usdc_transfer())

    tx = await client.get_transaction("sig-1", mint=USDC_MINT)

    # A token account created by the transfer has no pre-balance entry
    assert tx.delta_for(MERCHANT) == 25_000_000
    assert tx.delta_for(CUSTOMER_WALLET) == -25_000_000


@pytest.mark.asyncio
async def test_failed_transaction_is_found_but_not_succeeded(mocker, client):
    mock_post = mocker.patch("httpx.AsyncClient.post", new_callable=AsyncMock)
    mock_post.return_value = rpc_response(sol_transfer(err={"InstructionError": [0, "Custom"]}))

    tx = await client.get_transaction("sig-1")

    assert tx.found
    assert not tx.succeeded


@pytest.mark.asyncio
async def test_unknown_signature_is_not_found(mocker, client):
    mock_post = mocker.patch("httpx.AsyncClient.post", new_callable=AsyncMock)
    mock_post.return_value = rpc_response(None)

    tx = await client.get_transaction("sig-unknown")

    assert not tx.found


@pytest.mark.asyncio
async def test_malformed_signature_is_not_found(mocker, client):
    mock_post = mocker.patch("httpx.AsyncClient.post", new_callable=AsyncMock)
    mock_post.return_value = rpc_response(
        error={"code": -32602, "message": "Invalid param: WrongSize"}
    )

    tx = await client.get_transaction("xyz")

    assert not tx.found


@pytest.mark.asyncio
async def test_rpc_error_is_ledger_unavailable(mocker, client):
    mock_post = mocker.patch("httpx.AsyncClient.post", new_callable=AsyncMock)
    mock_post.return_value = rpc_response(
        error={"code": -32005, "message": "Node is behind"}
    )

    with pytest.raises(LedgerUnavailable):
        await client.get_transaction("sig-1")


@pytest.mark.asyncio
async def test_connection_error_is_ledger_unavailable(mocker, client):
    mocker.patch(
        "httpx.AsyncClient.post", side_effect=httpx.ConnectError("Connection refused")
    )

    with pytest.raises(LedgerUnavailable) as exc_info:
        await client.get_transaction("sig-1")
    assert exc_info.value.retryable


@pytest.mark.asyncio
async def test_find_signatures_skips_failed(mocker, client):
    mock_post = mocker.patch("httpx.AsyncClient.post", new_callable=AsyncMock)
    mock_post.return_value = rpc_response(
        [
            {"signature": "good", "err": None},
            {"signature": "bad", "err": {"InstructionError": [0, "Custom"]}},
        ]
    )

    assert await client.find_signatures(REFERENCE) == ["good"]
    _, kwargs = mock_post.call_args
    assert kwargs["json"]["method"] == "getSignaturesForAddress"
    assert kwargs["json"]["params"][0] == REFERENCE
    await client.close()
