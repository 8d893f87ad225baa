# x402gate/protocol/preflight.py
"""
Pre-settlement checks on an incoming payment.

Before a payment is handed to the facilitator the merchant decodes the
transaction itself and checks it against its own requirements, so a
facilitator is never trusted to frame the charge.

The transaction must be exactly:
0. SetComputeUnitLimit (at most the configured ceiling)
1. SetComputeUnitPrice
2. TransferChecked of the required asset into payTo's token account
"""
import logging
from typing import Optional, Tuple

from x402gate.core.config import settings
from x402gate.protocol.codec import (
    Transaction,
    decode_compute_unit_limit,
    decode_compute_unit_price,
    decode_transfer_checked,
)
from x402gate.protocol.errors import AmountMismatch, ProtocolError, WrongRecipient
from x402gate.protocol.keys import TOKEN_PROGRAM_IDS, get_associated_token_address, verify_signature
from x402gate.protocol.types import PaymentPayload, PaymentRequirements

logger = logging.getLogger(__name__)

EXPECTED_INSTRUCTION_COUNT = 3


def inspect_payment(
    payload: PaymentPayload,
    requirements: PaymentRequirements,
    compute_unit_limit: Optional[int] = None,
) -> Tuple[str, int]:
    """
    Check a payment payload against the merchant's requirements.

    Args:
        payload: Decoded X-PAYMENT envelope
        requirements: The charge this merchant demanded
        compute_unit_limit: Highest compute-unit limit accepted

    Returns:
        Tuple of (payer address, amount in atomic units)

    Raises:
        ProtocolError: Wrong scheme or network, malformed transaction or
            missing or invalid signature
        WrongRecipient: The transfer does not go to payTo or moves another asset
        AmountMismatch: The transfer amount does not satisfy the charge
    """
    max_cu = compute_unit_limit or settings.X402_COMPUTE_UNIT_LIMIT

    if payload.scheme != requirements.scheme:
        raise ProtocolError(
            f"Payment scheme {payload.scheme!r} does not match required {requirements.scheme!r}",
            reason="unsupported_scheme",
        )
    if payload.network != requirements.network:
        raise ProtocolError(
            f"Payment network {payload.network!r} does not match required {requirements.network!r}",
            reason="invalid_network",
        )

    tx = Transaction.from_base64(payload.payload.transaction)
    instructions = tx.instructions
    if len(instructions) != EXPECTED_INSTRUCTION_COUNT:
        raise ProtocolError(
            f"Payment transaction must have {EXPECTED_INSTRUCTION_COUNT} instructions, got {len(instructions)}",
            reason="invalid_transaction",
        )

    limit = decode_compute_unit_limit(instructions[0])
    if limit is None or decode_compute_unit_price(instructions[1]) is None:
        raise ProtocolError(
            "Payment transaction must start with compute-unit limit and price instructions",
            reason="invalid_transaction",
        )
    if limit > max_cu:
        raise ProtocolError(
            f"Compute-unit limit {limit} exceeds the accepted maximum {max_cu}",
            reason="invalid_transaction",
        )

    transfer = decode_transfer_checked(instructions[2])
    if transfer is None:
        raise ProtocolError("Third instruction is not a token TransferChecked", reason="invalid_transaction")

    if requirements.fee_payer and tx.fee_payer != requirements.fee_payer:
        raise ProtocolError(
            f"Transaction fee payer {tx.fee_payer} is not the facilitator {requirements.fee_payer}",
            reason="invalid_fee_payer",
        )
    if tx.fee_payer == transfer.authority:
        raise ProtocolError("Fee payer must differ from the token authority", reason="invalid_fee_payer")

    if transfer.mint != requirements.asset:
        raise WrongRecipient(
            f"Transfer moves {transfer.mint}, expected {requirements.asset}",
            {"mint": transfer.mint, "asset": requirements.asset, "payer": transfer.authority},
        )
    allowed = {get_associated_token_address(requirements.pay_to, requirements.asset, p) for p in TOKEN_PROGRAM_IDS}
    allowed.add(requirements.pay_to)
    if transfer.destination not in allowed:
        raise WrongRecipient(
            f"Transfer destination {transfer.destination} is not a token account of {requirements.pay_to}",
            {"destination": transfer.destination, "pay_to": requirements.pay_to, "payer": transfer.authority},
        )

    required = requirements.amount
    if requirements.scheme == "exact":
        ok = transfer.amount == required
    else:
        ok = 0 < transfer.amount <= required
    if not ok:
        raise AmountMismatch(
            f"Transfer amount {transfer.amount} does not satisfy {requirements.scheme} charge of {required}",
            {"amount": transfer.amount, "required": required, "payer": transfer.authority},
        )

    signature = tx.signature_for(transfer.authority)
    if signature is None or not verify_signature(transfer.authority, tx.message.serialize(), signature):
        raise ProtocolError("Token authority signature is missing or invalid", reason="invalid_signature")
    if not tx.verify_signatures():
        raise ProtocolError("Transaction carries an invalid co-signer signature", reason="invalid_signature")

    logger.debug(f"x402: Pre-settlement check passed for {transfer.authority} ({transfer.amount})")
    return transfer.authority, transfer.amount
