"""
Solana Pay transfer-request URIs.

    solana:<recipient>?amount=<display>&spl-token=<mint>&reference=<key>
        &label=<label>&message=<message>&memo=<memo>

``amount`` is always in display units (e.g. "1.5" SOL), never base units.
"""

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from urllib.parse import parse_qsl, quote, urlsplit

from solpay.errors import InvalidAmount, InvalidPaymentURI

from .pricing import format_base_units
from .reference import is_valid_reference
from .tokens import TokenInfo

SCHEME = "solana"
QR_SERVICE_URL = "https://api.qrserver.com/v1/create-qr-code/"


@dataclass(frozen=True)
class PaymentURI:
    uri: str
    qr_payload: str


@dataclass(frozen=True)
class ParsedPaymentURI:
    recipient: str
    amount: Decimal | None
    spl_token: str | None
    references: list[str] = field(default_factory=list)
    label: str | None = None
    message: str | None = None
    memo: str | None = None


def build_payment_uri(
    recipient: str,
    base_units: int,
    token: TokenInfo,
    reference: str | list[str],
    label: str,
    message: str,
    memo: str | None = None,
) -> PaymentURI:
    """
    Encode a transfer request. Pure and deterministic.

    Raises:
        InvalidPaymentURI: If the recipient or a reference is not a public key
        InvalidAmount: If base_units is not a positive integer
    """
    if not is_valid_reference(recipient):
        raise InvalidPaymentURI(f"Invalid recipient: {recipient!r}")
    if isinstance(base_units, bool) or not isinstance(base_units, int) or base_units <= 0:
        raise InvalidAmount(f"Amount must be a positive integer, got {base_units!r}")

    references = [reference] if isinstance(reference, str) else list(reference)
    if not references:
        raise InvalidPaymentURI("At least one reference is required")
    for ref in references:
        if not is_valid_reference(ref):
            raise InvalidPaymentURI(f"Invalid reference: {ref!r}")

    params = [("amount", format_base_units(base_units, token.decimals))]
    if not token.is_native:
        params.append(("spl-token", token.mint))
    params.extend(("reference", ref) for ref in references)
    params.append(("label", label))
    params.append(("message", message))
    if memo:
        params.append(("memo", memo))

    query = "&".join(f"{key}={quote(str(value), safe='')}" for key, value in params)
    uri = f"{SCHEME}:{recipient}?{query}"
    return PaymentURI(uri=uri, qr_payload=uri)


def parse_payment_uri(uri: str) -> ParsedPaymentURI:
    """Decode a transfer-request URI back into its fields."""
    parts = urlsplit(uri)
    if parts.scheme != SCHEME:
        raise InvalidPaymentURI(f"Not a {SCHEME}: URI: {uri!r}")

    recipient = parts.path
    if not is_valid_reference(recipient):
        raise InvalidPaymentURI(f"Invalid recipient: {recipient!r}")

    amount = None
    spl_token = label = message = memo = None
    references: list[str] = []
    for key, value in parse_qsl(parts.query, keep_blank_values=True):
        if key == "amount":
            try:
                amount = Decimal(value)
            except InvalidOperation as e:
                raise InvalidPaymentURI(f"Invalid amount: {value!r}") from e
        elif key == "spl-token":
            spl_token = value
        elif key == "reference":
            references.append(value)
        elif key == "label":
            label = value
        elif key == "message":
            message = value
        elif key == "memo":
            memo = value

    return ParsedPaymentURI(
        recipient=recipient,
        amount=amount,
        spl_token=spl_token,
        references=references,
        label=label,
        message=message,
        memo=memo,
    )


def qr_image_url(payload: str, size: int = 256) -> str:
    """Hosted QR image for storefronts that cannot render one locally."""
    return f"{QR_SERVICE_URL}?size={size}x{size}&data={quote(payload, safe='')}"
