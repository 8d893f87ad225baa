# x402gate/protocol/errors.py
"""
Error taxonomy for x402 payment handling.

Every error carries a short machine-readable ``reason`` which is reported to
callers as ``errorReason`` in 402 bodies and settlement responses.

Retry semantics:
- ProtocolError and PaymentRejected subclasses are final, never retried.
- LedgerUnavailable and NotYetFinalized are transient and retried with backoff
  where they arise.
- ReplayDetected is final; the original record is attached for the caller.
"""
from typing import Any, Dict, Optional


class X402Error(Exception):
    """Base class for all payment protocol errors."""

    reason = "x402_error"

    def __init__(self, message: str, reason: Optional[str] = None):
        super().__init__(message)
        if reason:
            self.reason = reason

    @property
    def message(self) -> str:
        return str(self)


class ProtocolError(X402Error):
    """Malformed header or payload, unsupported scheme or network."""

    reason = "invalid_payload"


class PayloadDecodeError(ProtocolError):
    """The payment payload is not valid base64 or JSON."""

    reason = "invalid_encoding"


class CorruptPayloadError(ProtocolError):
    """The transaction bytes do not frame correctly."""

    reason = "corrupt_transaction"


class LedgerUnavailable(X402Error):
    """The ledger RPC endpoint timed out or refused the connection."""

    reason = "ledger_unavailable"

    def __init__(self, message: str, error_data: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.error_data = error_data or {}


class NotYetFinalized(X402Error):
    """The signature is not yet visible at the queried commitment."""

    reason = "pending"

    def __init__(self, message: str, signature: str):
        super().__init__(message)
        self.signature = signature


class PaymentRejected(X402Error):
    """
    A settled transaction does not satisfy the charge.

    ``facts`` holds the raw transfer facts observed on-chain, kept for
    dispute resolution.
    """

    reason = "payment_rejected"

    def __init__(self, message: str, facts: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.facts = facts or {}


class AmountMismatch(PaymentRejected):
    reason = "amount_mismatch"


class WrongRecipient(PaymentRejected):
    reason = "wrong_recipient"


class ExecutionFailed(PaymentRejected):
    reason = "execution_failed"


class ReplayDetected(X402Error):
    """The settlement signature was already consumed."""

    reason = "replay_detected"

    def __init__(self, signature: str, original: Any = None):
        super().__init__(f"Payment signature {signature} has already been used")
        self.signature = signature
        self.original = original
