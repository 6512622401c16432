from decimal import Decimal
from urllib.parse import parse_qs, urlsplit

import pytest

from solpay.crypto.payment_uri import build_payment_uri, parse_payment_uri, qr_image_url
from solpay.crypto.reference import generate_reference
from solpay.errors import InvalidAmount, InvalidPaymentURI

from .conftest import MERCHANT


def test_sol_uri_has_display_amount_and_no_mint(registry):
    reference = generate_reference()

    uri = build_payment_uri(
        MERCHANT, 1_500_000_000, registry.get("SOL"), reference, "SSPAY Store", "Order 42"
    )

    assert uri.uri.startswith(f"solana:{MERCHANT}?amount=1.5&")
    assert "spl-token" not in uri.uri
    assert f"reference={reference}" in uri.uri
    assert uri.qr_payload == uri.uri


def test_spl_uri_carries_mint_and_encodes_text(registry):
    usdc = registry.get("USDC")

    uri = build_payment_uri(
        MERCHANT,
        25_000_000,
        usdc,
        generate_reference(),
        "SSPAY Store",
        "Payment for order SP-1 & more",
        memo="order-SP-1",
    )

    query = parse_qs(urlsplit(uri.uri).query)
    assert query["amount"] == ["25"]
    assert query["spl-token"] == [usdc.mint]
    assert query["message"] == ["Payment for order SP-1 & more"]
    assert query["memo"] == ["order-SP-1"]
    assert "label=SSPAY%20Store" in uri.uri


def test_build_is_deterministic(registry):
    reference = generate_reference()
    args = (MERCHANT, 10, registry.get("USDT"), reference, "L", "M")

    assert build_payment_uri(*args) == build_payment_uri(*args)


def test_parse_reads_back_fields(registry):
    references = [generate_reference(), generate_reference()]
    uri = build_payment_uri(
        MERCHANT, 5_000_000, registry.get("USDC"), references, "Shop", "Thanks"
    )

    parsed = parse_payment_uri(uri.uri)

    assert parsed.recipient == MERCHANT
    assert parsed.amount == Decimal("5")
    assert parsed.references == references
    assert parsed.label == "Shop"
    assert parsed.memo is None


@pytest.mark.parametrize("base_units", [0, -1, True, 1.5])
def test_invalid_amount_rejected(registry, base_units):
    with pytest.raises(InvalidAmount):
        build_payment_uri(
            MERCHANT, base_units, registry.get("SOL"), generate_reference(), "L", "M"
        )


def test_invalid_recipient_or_reference_rejected(registry):
    sol = registry.get("SOL")
    with pytest.raises(InvalidPaymentURI):
        build_payment_uri("nope", 1, sol, generate_reference(), "L", "M")
    with pytest.raises(InvalidPaymentURI):
        build_payment_uri(MERCHANT, 1, sol, "bad-ref", "L", "M")
    with pytest.raises(InvalidPaymentURI):
        build_payment_uri(MERCHANT, 1, sol, [], "L", "M")


def test_parse_rejects_other_schemes():
    with pytest.raises(InvalidPaymentURI):
        parse_payment_uri(f"bitcoin:{MERCHANT}?amount=1")


def test_qr_image_url_encodes_payload():
    url = qr_image_url("solana:abc?amount=1&label=x", size=300)

    assert url.startswith("https://api.qrserver.com/v1/create-qr-code/?size=300x300&data=")
    assert "solana%3Aabc%3Famount%3D1%26label%3Dx" in url
