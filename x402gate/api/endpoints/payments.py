# x402gate/api/endpoints/payments.py
from typing import Optional

from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.responses import JSONResponse
import logging

from x402gate.core.config import settings
from x402gate.protocol import audit
from x402gate.protocol.audit import AuditEventType
from x402gate.protocol.errors import LedgerUnavailable, NotYetFinalized, PaymentRejected, ReplayDetected
from x402gate.protocol.keys import is_valid_address
from x402gate.protocol.verifier import NATIVE_ASSET
from x402gate.api.models.payment import (
    ConsumedSignatureResponse,
    PaymentStatusResponse,
    VerifyPaymentRequest,
    VerifyPaymentResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter()


def _rejection(body: VerifyPaymentResponse) -> JSONResponse:
    return JSONResponse(status_code=402, content=body.model_dump(mode="json"))


@router.post("/verify", response_model=VerifyPaymentResponse)
async def verify_payment(payload: VerifyPaymentRequest, request: Request):
    """
    Verify an externally reported settlement signature against the ledger.

    On success the signature is reserved, so each settlement credits at most
    one request.

    Returns:
        200 with the transfer facts, 202 while the transaction is not yet
        visible, 402 on rejection or replay, 503 if the ledger is unreachable
    """
    verifier = request.app.state.verifier
    replay_guard = request.app.state.replay_guard
    recipient = payload.recipient or settings.X402_PAY_TO_ADDRESS
    if not recipient:
        raise HTTPException(status_code=400, detail="No recipient given and X402_PAY_TO_ADDRESS is not configured")
    for field, value in (("recipient", recipient), ("asset", payload.asset)):
        if value is not None and value != NATIVE_ASSET and not is_valid_address(value):
            raise HTTPException(status_code=400, detail=f"Invalid {field} address: {value}")

    try:
        fact = await verifier.verify(
            payload.signature,
            recipient,
            payload.amount,
            asset=payload.asset,
            decimals=payload.decimals,
        )
    except NotYetFinalized as e:
        logger.info(f"Payment {payload.signature} not yet visible: {e}")
        return JSONResponse(
            status_code=202,
            content=VerifyPaymentResponse(
                success=False, status="pending", signature=payload.signature, errorReason=e.reason
            ).model_dump(mode="json"),
        )
    except PaymentRejected as e:
        return _rejection(VerifyPaymentResponse(
            success=False, status="rejected", signature=payload.signature, errorReason=e.reason
        ))
    except LedgerUnavailable as e:
        logger.error(f"Ledger unavailable verifying {payload.signature}: {e}")
        raise HTTPException(status_code=503, detail="Ledger RPC unavailable, retry later")

    try:
        await replay_guard.claim(
            fact.signature,
            payer=fact.payer,
            amount=fact.amount,
            recipient=fact.recipient,
            resource=payload.resource,
            network=settings.X402_NETWORK,
        )
    except ReplayDetected as e:
        original = e.original
        return _rejection(VerifyPaymentResponse(
            success=False,
            status="replayed",
            signature=payload.signature,
            payer=original.payer if original else None,
            recipient=original.recipient if original else None,
            amount=original.amount if original else None,
            errorReason=e.reason,
        ))

    audit.log_payment_verified(
        signature=fact.signature,
        payer=fact.payer,
        recipient=fact.recipient,
        amount=fact.amount,
        asset=fact.asset,
    )
    return VerifyPaymentResponse(
        success=True,
        status="verified",
        signature=fact.signature,
        payer=fact.payer,
        recipient=fact.recipient,
        amount=fact.amount,
        asset=fact.asset,
        settledAt=fact.settled_at,
        metadata=fact.metadata,
    )


@router.get("/audit/stats")
async def get_payment_audit_stats():
    """Event counts from the payment audit log."""
    return audit.get_audit_stats()


@router.get("/audit/events")
async def get_payment_audit_events(
    limit: int = Query(100, ge=1, le=1000),
    event_type: Optional[AuditEventType] = None,
    wallet_address: Optional[str] = None,
):
    """Recent payment audit events, most recent first."""
    return audit.read_audit_log(max_entries=limit, event_type=event_type, wallet_address=wallet_address)


@router.get("/{signature}", response_model=ConsumedSignatureResponse)
async def get_consumed_signature(signature: str, request: Request) -> ConsumedSignatureResponse:
    """
    Get the record of a consumed settlement signature.

    Raises:
        HTTPException: 404 if the signature was never credited
    """
    record = await request.app.state.replay_guard.lookup(signature)
    if record is None:
        raise HTTPException(status_code=404, detail=f"Signature {signature} has not been consumed")
    return ConsumedSignatureResponse(
        signature=record.signature,
        payer=record.payer,
        amount=record.amount,
        recipient=record.recipient,
        resource=record.resource,
        network=record.network,
        createdAt=record.created_at,
    )


@router.get("/{signature}/status", response_model=PaymentStatusResponse)
async def get_payment_status(signature: str, request: Request) -> PaymentStatusResponse:
    try:
        status = await request.app.state.verifier.payment_status(signature)
    except LedgerUnavailable as e:
        logger.error(f"Ledger unavailable fetching status of {signature}: {e}")
        raise HTTPException(status_code=503, detail="Ledger RPC unavailable, retry later")
    return PaymentStatusResponse(signature=signature, status=status)
