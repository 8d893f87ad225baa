# x402gate/protocol/requirements.py
"""
Payment challenge construction and header encoding.

Builds the PaymentRequirements a merchant sends in its 402 response and owns
every string format the protocol puts in HTTP headers:

- WWW-Authenticate: x402, scheme="...", network="...", asset="...",
  payTo="...", maxAmountRequired="..."[, feePayer="..."][, description="..."]
  [, resource="..."][, maxTimeoutSeconds="..."]
  Quotes and backslashes inside values are backslash-escaped.
- X-PAYMENT: base64 JSON PaymentPayload
- X-PAYMENT-RESPONSE: base64 JSON settlement result

Field order and quoting in WWW-Authenticate are fixed so naive parsers keep
working; new fields are only ever appended at the end.
"""
import json
import logging
import re
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Dict, Optional, Union

from pydantic import ValidationError
from x402.encoding import safe_base64_decode, safe_base64_encode

from x402gate.protocol.errors import PayloadDecodeError, ProtocolError
from x402gate.protocol.types import (
    DEFAULT_MAX_TIMEOUT_SECONDS,
    SOLANA_MAINNET,
    X402_VERSION,
    PaymentExtra,
    PaymentPayload,
    PaymentRequirements,
    SettlementResult,
)

logger = logging.getLogger(__name__)

AUTH_SCHEME = "x402"
X_PAYMENT_HEADER = "X-PAYMENT"
X_PAYMENT_RESPONSE_HEADER = "X-PAYMENT-RESPONSE"
WWW_AUTHENTICATE_HEADER = "WWW-Authenticate"

USDC_DECIMALS = 6

# (header parameter, requirements attribute) in wire order
_HEADER_FIELDS = (
    ("scheme", "scheme"),
    ("network", "network"),
    ("asset", "asset"),
    ("payTo", "pay_to"),
    ("maxAmountRequired", "max_amount_required"),
)
_PARAM_PATTERN = re.compile(r'\s*([A-Za-z][A-Za-z0-9]*)="((?:[^"\\]|\\.)*)"\s*(?:,|$)')
_ESCAPE_PATTERN = re.compile(r"\\(.)")


def to_atomic_units(price: Union[str, int, float, Decimal], decimals: int = USDC_DECIMALS) -> int:
    """
    Convert a human-unit price to integer atomic units.

    Rounds half-up at the asset's decimal scale, so $0.0025 at 6 decimals
    is 2500 units.

    Raises:
        ProtocolError: If the price is not a number or rounds to zero or less
    """
    try:
        value = Decimal(str(price))
    except InvalidOperation:
        raise ProtocolError(f"Price is not a number: {price!r}")
    atomic = int(value.scaleb(decimals).quantize(Decimal(1), rounding=ROUND_HALF_UP))
    if atomic <= 0:
        raise ProtocolError(f"Price {price} rounds to {atomic} atomic units; must be positive")
    return atomic


def build_payment_requirements(
    pay_to: str,
    price: Union[str, int, float, Decimal],
    description: Optional[str] = None,
    fee_payer: Optional[str] = None,
    *,
    resource: Optional[str] = None,
    scheme: str = "exact",
    network: str = SOLANA_MAINNET,
    asset: str,
    decimals: int = USDC_DECIMALS,
    safety_ceiling: Optional[int] = None,
    max_timeout_seconds: int = DEFAULT_MAX_TIMEOUT_SECONDS,
) -> PaymentRequirements:
    """
    Build the charge a merchant demands for one request.

    Args:
        pay_to: Merchant's wallet address (the owner, not its token account)
        price: Price in human units, e.g. "0.0025" USDC
        description: Human-readable description shown to the payer
        fee_payer: Facilitator account that will co-sign and pay fees
        resource: URL of the resource being paid for
        safety_ceiling: Maximum atomic amount this merchant may ever request

    Raises:
        ProtocolError: If the amount is not positive, exceeds the ceiling or
            any field fails validation
    """
    amount = to_atomic_units(price, decimals)
    if safety_ceiling is not None and amount > safety_ceiling:
        raise ProtocolError(
            f"Requested amount {amount} exceeds safety ceiling {safety_ceiling}",
            reason="amount_exceeds_ceiling",
        )

    try:
        return PaymentRequirements(
            scheme=scheme,
            network=network,
            asset=asset,
            pay_to=pay_to,
            max_amount_required=str(amount),
            max_timeout_seconds=max_timeout_seconds,
            extra=PaymentExtra(fee_payer=fee_payer, description=description, resource=resource),
        )
    except ValidationError as e:
        raise ProtocolError(f"Invalid payment requirements: {e}")


def _quote(value: str) -> str:
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


def _unquote(value: str) -> str:
    return _ESCAPE_PATTERN.sub(r"\1", value)


def encode_www_authenticate(requirements: PaymentRequirements) -> str:
    """Render requirements as a WWW-Authenticate challenge."""
    params = [(name, str(getattr(requirements, attr))) for name, attr in _HEADER_FIELDS]
    if requirements.fee_payer:
        params.append(("feePayer", requirements.fee_payer))
    if requirements.extra.description is not None:
        params.append(("description", requirements.extra.description))
    if requirements.extra.resource is not None:
        params.append(("resource", requirements.extra.resource))
    if requirements.max_timeout_seconds != DEFAULT_MAX_TIMEOUT_SECONDS:
        params.append(("maxTimeoutSeconds", str(requirements.max_timeout_seconds)))

    return AUTH_SCHEME + ", " + ", ".join(f"{name}={_quote(value)}" for name, value in params)


def parse_www_authenticate(header: str) -> PaymentRequirements:
    """
    Parse a WWW-Authenticate x402 challenge.

    Unknown trailing parameters are ignored.

    Raises:
        ProtocolError: On a different auth scheme, malformed parameters or a
            missing required field
    """
    scheme_token, sep, rest = header.strip().partition(",")
    if scheme_token.strip().lower() != AUTH_SCHEME or not sep:
        raise ProtocolError(f"Not an x402 challenge: {header!r}")

    params: Dict[str, str] = {}
    pos = 0
    rest = rest.strip()
    while pos < len(rest):
        match = _PARAM_PATTERN.match(rest, pos)
        if not match:
            raise ProtocolError(f"Malformed challenge parameter at: {rest[pos:]!r}")
        params.setdefault(match.group(1), _unquote(match.group(2)))
        pos = match.end()

    missing = [name for name, _ in _HEADER_FIELDS if name not in params]
    if missing:
        raise ProtocolError(f"Challenge is missing required fields: {', '.join(missing)}")

    try:
        return PaymentRequirements(
            scheme=params["scheme"],
            network=params["network"],
            asset=params["asset"],
            pay_to=params["payTo"],
            max_amount_required=params["maxAmountRequired"],
            max_timeout_seconds=params.get("maxTimeoutSeconds", DEFAULT_MAX_TIMEOUT_SECONDS),
            extra=PaymentExtra(
                fee_payer=params.get("feePayer"),
                description=params.get("description"),
                resource=params.get("resource"),
            ),
        )
    except ValidationError as e:
        raise ProtocolError(f"Invalid challenge: {e}")


def build_challenge_body(requirements: PaymentRequirements, error: str = "Payment required") -> Dict[str, Any]:
    """
    Build the JSON body of a 402 response.

    The challenge fields are repeated at the top level for clients that read
    them directly; ``accepts`` carries the full requirements.
    """
    body: Dict[str, Any] = {
        "x402Version": X402_VERSION,
        "error": error,
        "accepts": [requirements.model_dump(by_alias=True, exclude_none=True)],
    }
    for name, attr in _HEADER_FIELDS:
        body[name] = getattr(requirements, attr)
    if requirements.fee_payer:
        body["feePayer"] = requirements.fee_payer
    return body


def _decode_json_header(header_value: str, header_name: str) -> Any:
    try:
        decoded = safe_base64_decode(header_value)
    except ValueError as e:
        raise PayloadDecodeError(f"{header_name} header is not valid base64: {e}")
    if decoded is None:
        raise PayloadDecodeError(f"{header_name} header is not valid base64")
    try:
        return json.loads(decoded)
    except json.JSONDecodeError as e:
        raise PayloadDecodeError(f"{header_name} header is not valid JSON: {e}")


def encode_payment_header(payload: PaymentPayload) -> str:
    return safe_base64_encode(json.dumps(payload.model_dump(by_alias=True)).encode("utf-8"))


def decode_payment_header(header_value: str) -> PaymentPayload:
    """
    Decode an X-PAYMENT header.

    Raises:
        PayloadDecodeError: If the header is not base64 JSON
        ProtocolError: If the JSON is not a payment payload
    """
    data = _decode_json_header(header_value, X_PAYMENT_HEADER)
    try:
        return PaymentPayload.model_validate(data)
    except ValidationError as e:
        raise ProtocolError(f"X-PAYMENT header is not a valid payment payload: {e}")


def encode_payment_response(result: SettlementResult) -> str:
    data = {
        "success": result.success,
        "transaction": result.transaction,
        "network": result.network,
        "payer": result.payer,
    }
    if result.error_reason:
        data["errorReason"] = result.error_reason
    return safe_base64_encode(json.dumps(data).encode("utf-8"))


def decode_payment_response(header_value: str) -> SettlementResult:
    data = _decode_json_header(header_value, X_PAYMENT_RESPONSE_HEADER)
    try:
        return SettlementResult.model_validate(data)
    except ValidationError as e:
        raise ProtocolError(f"X-PAYMENT-RESPONSE header is not a settlement result: {e}")
