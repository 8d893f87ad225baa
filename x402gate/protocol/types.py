# x402gate/protocol/types.py
"""
Wire types for the x402 protocol.

Field names are snake_case in Python and camelCase on the wire; always dump
with ``model_dump(by_alias=True)`` when producing JSON for the other side.
"""
import re
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

X402_VERSION = 1
DEFAULT_MAX_TIMEOUT_SECONDS = 300

SOLANA_MAINNET = "solana:5eykt4UsFv8P8NJdTREpY1vzqKqZKvdp"
SOLANA_DEVNET = "solana:EtWTRABZaYq6iMfeYKouRu166VU2xqa1"
SOLANA_TESTNET = "solana:4uhcVJyU9pJkvQyS88uRDiswHXSCkY3z"

# Legacy v1 network names still sent by some clients
NETWORK_ALIASES = {
    "solana": SOLANA_MAINNET,
    "solana-mainnet": SOLANA_MAINNET,
    "solana-devnet": SOLANA_DEVNET,
    "solana-testnet": SOLANA_TESTNET,
}

# CAIP-2 chain id: namespace:reference
_CAIP2_PATTERN = re.compile(r"^[-a-z0-9]{3,8}:[-_a-zA-Z0-9]{1,32}$")

Scheme = Literal["exact", "upto"]


def normalize_network(network: str) -> str:
    """Map legacy network names to CAIP-2 ids and validate the result."""
    value = NETWORK_ALIASES.get(network, network)
    if not _CAIP2_PATTERN.match(value):
        raise ValueError(f"network must be a CAIP-2 chain id (namespace:reference), got {network!r}")
    return value


class _WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PaymentExtra(_WireModel):
    fee_payer: Optional[str] = None
    description: Optional[str] = None
    resource: Optional[str] = None


class PaymentRequirements(_WireModel):
    """A single charge demanded by the merchant."""

    scheme: Scheme = "exact"
    network: str
    asset: str
    pay_to: str
    max_amount_required: str
    max_timeout_seconds: int = DEFAULT_MAX_TIMEOUT_SECONDS
    extra: PaymentExtra = Field(default_factory=PaymentExtra)

    @field_validator("network")
    @classmethod
    def _check_network(cls, value: str) -> str:
        return normalize_network(value)

    @field_validator("max_amount_required", mode="before")
    @classmethod
    def _check_amount(cls, value: Any) -> str:
        text = str(value)
        if not text.isdigit() or int(text) <= 0:
            raise ValueError(f"maxAmountRequired must be a positive integer string, got {value!r}")
        return str(int(text))

    @property
    def amount(self) -> int:
        return int(self.max_amount_required)

    @property
    def fee_payer(self) -> Optional[str]:
        return self.extra.fee_payer


class SvmPayload(_WireModel):
    transaction: str


class PaymentPayload(_WireModel):
    """Envelope carried in the X-PAYMENT header."""

    x402_version: int = X402_VERSION
    scheme: Scheme
    network: str
    payload: SvmPayload

    @field_validator("network")
    @classmethod
    def _check_network(cls, value: str) -> str:
        return normalize_network(value)


class SettlementResult(_WireModel):
    """Outcome of a settlement attempt. Immutable once produced."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    success: bool
    transaction: Optional[str] = None
    network: Optional[str] = None
    payer: Optional[str] = None
    amount: Optional[str] = None
    error_reason: Optional[str] = None


class TransferFact(_WireModel):
    """Transfer facts extracted from a settled transaction."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    signature: str
    payer: Optional[str]
    recipient: str
    amount: int
    asset: str
    decimals: int
    settled_at: Optional[datetime] = None
    slot: Optional[int] = None
    metadata: Optional[Dict[str, Any]] = None

    @property
    def human_amount(self) -> Decimal:
        return Decimal(self.amount).scaleb(-self.decimals)


class ConsumedSignature(_WireModel):
    """Permanent record of an accepted payment proof."""

    signature: str
    payer: Optional[str] = None
    amount: Optional[int] = None
    recipient: Optional[str] = None
    resource: Optional[str] = None
    network: Optional[str] = None
    created_at: datetime
