# x402gate/api/models/payment.py
from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class VerifyPaymentRequest(BaseModel):
    """
    Request model for direct verification of a reported settlement signature.
    """
    signature: str = Field(..., description="Settlement transaction signature (base58)")
    amount: int = Field(..., gt=0, description="Expected amount in atomic units")
    recipient: Optional[str] = Field(None, description="Expected recipient wallet; defaults to X402_PAY_TO_ADDRESS")
    asset: Optional[str] = Field(None, description="Expected token mint; defaults to X402_ASSET")
    decimals: Optional[int] = Field(None, ge=0, le=18, description="Decimals of the asset")
    resource: Optional[str] = Field(None, description="Resource the payment was made for")


class VerifyPaymentResponse(BaseModel):
    """
    Response model for payment verification.
    """
    success: bool
    status: str
    signature: str
    payer: Optional[str] = None
    recipient: Optional[str] = None
    amount: Optional[int] = None
    asset: Optional[str] = None
    settledAt: Optional[datetime] = None
    metadata: Optional[Dict[str, Any]] = None
    errorReason: Optional[str] = None


class ConsumedSignatureResponse(BaseModel):
    signature: str
    payer: Optional[str] = None
    amount: Optional[int] = None
    recipient: Optional[str] = None
    resource: Optional[str] = None
    network: Optional[str] = None
    createdAt: datetime


class PaymentStatusResponse(BaseModel):
    signature: str
    status: str
