# x402gate/protocol/verifier.py
"""
Direct on-chain verification of settled x402 payments.

Used for signatures reported from outside the middleware (webhooks, manual
reconciliation). The transaction is fetched with parsed instructions, each
instruction is mapped onto an explicit variant and the first token transfer
into the expected recipient is checked against the expected charge.

Not-found is not a failure: a freshly broadcast transaction can be invisible
for seconds, so lookups are retried with exponential backoff and finally
reported as NotYetFinalized.
"""
import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Set, Union

from x402gate.core.config import settings
from x402gate.protocol import audit
from x402gate.protocol.errors import (
    AmountMismatch,
    ExecutionFailed,
    LedgerUnavailable,
    NotYetFinalized,
    PaymentRejected,
    WrongRecipient,
)
from x402gate.protocol.keys import (
    MEMO_PROGRAM_ID,
    MEMO_V1_PROGRAM_ID,
    SYSTEM_PROGRAM_ID,
    TOKEN_PROGRAM_IDS,
    get_associated_token_address,
)
from x402gate.protocol.types import TransferFact
from x402gate.services.solana_rpc import SolanaRPC

logger = logging.getLogger(__name__)

NATIVE_ASSET = "SOL"
NATIVE_DECIMALS = 9
MEMO_PREFIX = "x402:"


@dataclass(frozen=True)
class TokenTransfer:
    index: int
    program_id: str
    source: str
    destination: str
    authority: Optional[str]
    amount: int
    mint: Optional[str] = None
    decimals: Optional[int] = None
    checked: bool = False


@dataclass(frozen=True)
class NativeTransfer:
    index: int
    source: str
    destination: str
    lamports: int


@dataclass(frozen=True)
class Memo:
    index: int
    text: str


@dataclass(frozen=True)
class UnknownInstruction:
    index: int
    program_id: Optional[str]
    raw: Dict[str, Any]


ParsedInstruction = Union[TokenTransfer, NativeTransfer, Memo, UnknownInstruction]


@dataclass(frozen=True)
class TokenBalanceEntry:
    owner: Optional[str]
    mint: str
    decimals: int


def parse_instruction(index: int, ix: Dict[str, Any]) -> ParsedInstruction:
    """Map one jsonParsed instruction onto its variant."""
    program_id = ix.get("programId")
    parsed = ix.get("parsed")

    if program_id in (MEMO_PROGRAM_ID, MEMO_V1_PROGRAM_ID) and isinstance(parsed, str):
        return Memo(index, parsed)
    if not isinstance(parsed, dict):
        return UnknownInstruction(index, program_id, ix)

    kind = parsed.get("type")
    info = parsed.get("info") or {}
    try:
        if program_id in TOKEN_PROGRAM_IDS and kind == "transferChecked":
            token_amount = info["tokenAmount"]
            return TokenTransfer(
                index=index,
                program_id=program_id,
                source=info["source"],
                destination=info["destination"],
                authority=info.get("authority") or info.get("multisigAuthority"),
                amount=int(token_amount["amount"]),
                mint=info.get("mint"),
                decimals=token_amount.get("decimals"),
                checked=True,
            )
        if program_id in TOKEN_PROGRAM_IDS and kind == "transfer":
            return TokenTransfer(
                index=index,
                program_id=program_id,
                source=info["source"],
                destination=info["destination"],
                authority=info.get("authority") or info.get("multisigAuthority"),
                amount=int(info["amount"]),
            )
        if program_id == SYSTEM_PROGRAM_ID and kind == "transfer":
            return NativeTransfer(index, info["source"], info["destination"], int(info["lamports"]))
    except (KeyError, TypeError, ValueError) as e:
        logger.debug(f"Instruction {index} has an unexpected shape: {e}")
    return UnknownInstruction(index, program_id, ix)


def parse_memo(text: str) -> Dict[str, Any]:
    """
    Decode x402 memo metadata.

    Accepts ``x402:<tag>:<json>`` and bare JSON objects; anything else is
    kept as plain text.
    """
    if text.startswith(MEMO_PREFIX):
        tag, _, body = text[len(MEMO_PREFIX):].partition(":")
        try:
            data = json.loads(body) if body else None
        except json.JSONDecodeError:
            data = body
        return {"memo": text, "tag": tag, "data": data}
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return {"memo": text}
    if isinstance(data, dict):
        return {"memo": text, "data": data}
    return {"memo": text}


def _account_keys(tx: Dict[str, Any]) -> List[str]:
    keys = tx.get("transaction", {}).get("message", {}).get("accountKeys", [])
    return [k["pubkey"] if isinstance(k, dict) else k for k in keys]


def _token_balances(tx: Dict[str, Any], keys: List[str]) -> Dict[str, TokenBalanceEntry]:
    meta = tx.get("meta") or {}
    balances: Dict[str, TokenBalanceEntry] = {}
    for entry in (meta.get("preTokenBalances") or []) + (meta.get("postTokenBalances") or []):
        index = entry.get("accountIndex")
        if index is None or index >= len(keys):
            continue
        balances[keys[index]] = TokenBalanceEntry(
            owner=entry.get("owner"),
            mint=entry.get("mint"),
            decimals=int(entry.get("uiTokenAmount", {}).get("decimals", 0)),
        )
    return balances


def within_tolerance(actual: Decimal, expected: Decimal, tolerance: Decimal) -> bool:
    """Inclusive relative tolerance check."""
    return abs(actual - expected) <= expected * tolerance


class OnChainVerifier:
    """
    Verifies a settled transaction against an expected recipient and amount.

    Args:
        rpc: Ledger RPC client
        tolerance: Relative amount tolerance (0.01 = 1%)
        max_attempts: Lookups before a missing transaction is reported pending
        backoff: Initial delay between lookups, doubled on each attempt
    """

    def __init__(
        self,
        rpc: SolanaRPC,
        *,
        tolerance: Optional[float] = None,
        max_attempts: Optional[int] = None,
        backoff: Optional[float] = None,
    ):
        self.rpc = rpc
        self.tolerance = Decimal(str(tolerance if tolerance is not None else settings.X402_AMOUNT_TOLERANCE))
        self.max_attempts = max_attempts or settings.X402_FINALITY_MAX_ATTEMPTS
        self.backoff = backoff if backoff is not None else settings.X402_FINALITY_BACKOFF_SECONDS

    async def fetch_transaction(self, signature: str) -> Dict[str, Any]:
        """
        Fetch a transaction, polling until it becomes visible.

        Raises:
            NotYetFinalized: Still missing after the last attempt
            LedgerUnavailable: The last attempt could not reach the ledger
        """
        delay = self.backoff
        last_error: Optional[LedgerUnavailable] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                tx = await self.rpc.get_transaction(signature)
                last_error = None
                if tx is not None:
                    return tx
                logger.debug(f"Transaction {signature} not visible yet (attempt {attempt}/{self.max_attempts})")
            except LedgerUnavailable as e:
                last_error = e
                logger.warning(f"Ledger lookup for {signature} failed (attempt {attempt}/{self.max_attempts}): {e}")
            if attempt < self.max_attempts:
                await asyncio.sleep(delay)
                delay *= 2

        if last_error is not None:
            raise last_error
        raise NotYetFinalized(f"Transaction {signature} is not yet visible on the ledger", signature)

    async def verify(
        self,
        signature: str,
        expected_recipient: str,
        expected_amount: int,
        *,
        asset: Optional[str] = None,
        decimals: Optional[int] = None,
    ) -> TransferFact:
        """
        Verify that ``signature`` paid ``expected_amount`` atomic units of
        ``asset`` to ``expected_recipient``.

        Returns:
            The transfer facts of the matching transfer

        Raises:
            NotYetFinalized: The transaction is not visible yet
            ExecutionFailed: The transaction executed with an error
            WrongRecipient: No transfer into the recipient was found
            AmountMismatch: The amount is outside the tolerance
        """
        asset = asset or settings.X402_ASSET
        if decimals is None:
            decimals = NATIVE_DECIMALS if asset == NATIVE_ASSET else settings.X402_ASSET_DECIMALS

        tx = await self.fetch_transaction(signature)
        meta = tx.get("meta") or {}
        if meta.get("err") is not None:
            self._reject(ExecutionFailed(
                f"Transaction {signature} failed on-chain: {meta['err']}",
                {"signature": signature, "err": meta["err"]},
            ))

        fact = self.extract_transfer(signature, tx, expected_recipient, asset)
        if fact is None:
            self._reject(WrongRecipient(
                f"Transaction {signature} has no transfer of {asset} to {expected_recipient}",
                {"signature": signature, "expected_recipient": expected_recipient, "asset": asset},
            ))

        actual = fact.human_amount
        expected = Decimal(expected_amount).scaleb(-decimals)
        if not within_tolerance(actual, expected, self.tolerance):
            self._reject(AmountMismatch(
                f"Transaction {signature} paid {actual}, expected {expected} (tolerance {self.tolerance})",
                {**fact.model_dump(mode="json"), "expected_amount": str(expected)},
            ))

        logger.info(f"x402: Verified {signature}: {fact.amount} from {fact.payer} to {fact.recipient}")
        return fact

    def extract_transfer(
        self,
        signature: str,
        tx: Dict[str, Any],
        recipient: str,
        asset: str,
    ) -> Optional[TransferFact]:
        """
        Find the first qualifying transfer into ``recipient``, by position.

        ``asset`` is a token mint, or NATIVE_ASSET to match the recipient's
        lamport balance change instead.
        """
        keys = _account_keys(tx)
        balances = _token_balances(tx, keys)
        raw = tx.get("transaction", {}).get("message", {}).get("instructions", [])
        instructions = [parse_instruction(i, ix) for i, ix in enumerate(raw)]

        metadata: Optional[Dict[str, Any]] = None
        for ix in instructions:
            if isinstance(ix, Memo):
                metadata = parse_memo(ix.text)
                break

        block_time = tx.get("blockTime")
        settled_at = datetime.fromtimestamp(block_time, tz=timezone.utc) if block_time else None
        slot = tx.get("slot")

        if asset == NATIVE_ASSET:
            return self._native_transfer(signature, tx, keys, instructions, recipient, settled_at, slot, metadata)

        recipient_atas: Set[str] = {
            get_associated_token_address(recipient, asset, program) for program in TOKEN_PROGRAM_IDS
        }
        for ix in instructions:
            if not isinstance(ix, TokenTransfer):
                continue
            dest_balance = balances.get(ix.destination)
            mint = ix.mint or (dest_balance.mint if dest_balance else None)
            if ix.destination in recipient_atas:
                mint = mint or asset
            if mint != asset:
                continue
            if not (
                ix.destination in recipient_atas
                or (dest_balance is not None and dest_balance.owner == recipient)
                or ix.destination == recipient
            ):
                continue

            source_balance = balances.get(ix.source)
            payer = (source_balance.owner if source_balance else None) or ix.authority
            ix_decimals = ix.decimals
            if ix_decimals is None:
                ix_decimals = dest_balance.decimals if dest_balance else settings.X402_ASSET_DECIMALS
            return TransferFact(
                signature=signature,
                payer=payer,
                recipient=recipient,
                amount=ix.amount,
                asset=asset,
                decimals=ix_decimals,
                settled_at=settled_at,
                slot=slot,
                metadata=metadata,
            )

        if self._native_transfer(signature, tx, keys, instructions, recipient, settled_at, slot, metadata):
            logger.warning(f"x402: {signature} pays {recipient} in {NATIVE_ASSET}, not the charged asset {asset}")
        return None

    def _native_transfer(self, signature, tx, keys, instructions, recipient, settled_at, slot, metadata):
        if recipient not in keys:
            return None
        meta = tx.get("meta") or {}
        pre = meta.get("preBalances") or []
        post = meta.get("postBalances") or []
        index = keys.index(recipient)
        if index >= len(pre) or index >= len(post):
            return None
        delta = post[index] - pre[index]
        if delta <= 0:
            return None

        payer = next(
            (ix.source for ix in instructions if isinstance(ix, NativeTransfer) and ix.destination == recipient),
            keys[0],
        )
        return TransferFact(
            signature=signature,
            payer=payer,
            recipient=recipient,
            amount=delta,
            asset=NATIVE_ASSET,
            decimals=NATIVE_DECIMALS,
            settled_at=settled_at,
            slot=slot,
            metadata=metadata,
        )

    def _reject(self, error: PaymentRejected) -> None:
        logger.warning(f"x402: Payment rejected ({error.reason}): {error.message} facts={error.facts}")
        audit.log_payment_rejected(
            signature=error.facts.get("signature"),
            reason=error.reason,
            facts=error.facts,
        )
        raise error

    async def payment_status(self, signature: str) -> str:
        """
        Report the ledger status of a signature.

        Returns one of ``not_found``, ``pending``, ``confirmed``,
        ``finalized`` or ``failed``.
        """
        statuses = await self.rpc.get_signature_statuses([signature])
        status = statuses[0] if statuses else None
        if status is None:
            return "not_found"
        if status.get("err") is not None:
            return "failed"
        confirmation = status.get("confirmationStatus")
        if confirmation in ("confirmed", "finalized"):
            return confirmation
        return "pending"
