# x402gate/protocol/customer.py
"""
Customer side of the x402 exchange.

PaymentBuilder turns a merchant's PaymentRequirements into a partially
signed payment payload; PaymentClient wraps an httpx.AsyncClient so that a
402 response is paid once and the request retried with X-PAYMENT.
"""
import logging
from typing import Any, Dict, List, Optional

import httpx
from pydantic import ValidationError

from x402gate.core.config import settings
from x402gate.protocol.codec import (
    TransferCheckedParams,
    build_payment_message,
    sign_partially,
)
from x402gate.protocol.errors import ProtocolError
from x402gate.protocol.keys import (
    TOKEN_PROGRAM_ID,
    TOKEN_PROGRAM_IDS,
    Keypair,
    get_associated_token_address,
)
from x402gate.protocol.requirements import (
    WWW_AUTHENTICATE_HEADER,
    X_PAYMENT_HEADER,
    X_PAYMENT_RESPONSE_HEADER,
    decode_payment_response,
    encode_payment_header,
    parse_www_authenticate,
)
from x402gate.protocol.types import (
    X402_VERSION,
    PaymentPayload,
    PaymentRequirements,
    SettlementResult,
    SvmPayload,
)
from x402gate.services.solana_rpc import SolanaRPC

logger = logging.getLogger(__name__)

SUPPORTED_SCHEMES = ("exact", "upto")


def _pick_account(accounts: List[Dict[str, Any]], owner: str, mint: str) -> Optional[Dict[str, Any]]:
    """Prefer the owner's associated token account, else the largest balance."""
    for account in accounts:
        program = account.get("program") or TOKEN_PROGRAM_ID
        if program in TOKEN_PROGRAM_IDS and account["pubkey"] == get_associated_token_address(owner, mint, program):
            return account
    if not accounts:
        return None
    return max(accounts, key=lambda a: a.get("amount", 0))


class PaymentBuilder:
    """
    Builds and signs x402 payments with a single funding credential.

    The builder never creates token accounts: both the customer's funding
    account and the merchant's associated token account must already exist.
    """

    def __init__(
        self,
        rpc: SolanaRPC,
        keypair: Keypair,
        *,
        safety_ceiling: Optional[int] = None,
        compute_unit_limit: Optional[int] = None,
        compute_unit_price: Optional[int] = None,
        version: Optional[int] = 0,
    ):
        self.rpc = rpc
        self.keypair = keypair
        self.safety_ceiling = safety_ceiling if safety_ceiling is not None else settings.X402_SAFETY_CEILING
        self.compute_unit_limit = compute_unit_limit or settings.X402_COMPUTE_UNIT_LIMIT
        self.compute_unit_price = compute_unit_price or settings.X402_COMPUTE_UNIT_PRICE
        self.version = version

    def check_requirements(self, requirements: PaymentRequirements) -> None:
        """
        Local checks that run before any ledger call or signature.

        Raises:
            ProtocolError: On an amount above the safety ceiling, a missing
                or self-referencing fee payer or an unsupported scheme
        """
        if requirements.amount > self.safety_ceiling:
            raise ProtocolError(
                f"Merchant requested {requirements.amount} atomic units, "
                f"above the local safety ceiling of {self.safety_ceiling}",
                reason="amount_exceeds_ceiling",
            )
        if not requirements.fee_payer:
            raise ProtocolError(
                "Payment requirements carry no feePayer; a facilitator must co-sign",
                reason="missing_fee_payer",
            )
        if requirements.fee_payer == self.keypair.pubkey:
            raise ProtocolError(
                "feePayer must be the facilitator, not the paying wallet",
                reason="invalid_fee_payer",
            )
        if requirements.scheme not in SUPPORTED_SCHEMES:
            raise ProtocolError(f"Unsupported scheme {requirements.scheme!r}", reason="unsupported_scheme")

    async def build_payment(self, requirements: PaymentRequirements) -> PaymentPayload:
        self.check_requirements(requirements)

        payer = self.keypair.pubkey
        amount = requirements.amount

        source = _pick_account(
            await self.rpc.get_token_accounts_by_owner(payer, requirements.asset), payer, requirements.asset
        )
        if source is None:
            raise ProtocolError(
                f"Wallet {payer} has no token account for {requirements.asset}",
                reason="missing_token_account",
            )
        token_program = source.get("program") or TOKEN_PROGRAM_ID
        decimals = source.get("decimals")
        if decimals is None:
            raise ProtocolError(f"Could not determine decimals of {requirements.asset}")

        destination = get_associated_token_address(requirements.pay_to, requirements.asset, token_program)
        merchant_accounts = await self.rpc.get_token_accounts_by_owner(requirements.pay_to, requirements.asset)
        if not any(a["pubkey"] == destination for a in merchant_accounts):
            raise ProtocolError(
                f"Merchant {requirements.pay_to} has no associated token account for {requirements.asset}",
                reason="missing_token_account",
            )

        if source.get("amount", 0) < amount:
            logger.warning(
                f"x402: Local balance {source.get('amount', 0)} below requested {amount}; "
                f"submitting anyway, the ledger has the final say"
            )

        blockhash = await self.rpc.get_latest_blockhash()
        message = build_payment_message(
            fee_payer=requirements.fee_payer,
            transfer=TransferCheckedParams(
                source=source["pubkey"],
                mint=requirements.asset,
                destination=destination,
                authority=payer,
                amount=amount,
                decimals=decimals,
                token_program=token_program,
            ),
            recent_blockhash=blockhash,
            compute_unit_limit=self.compute_unit_limit,
            compute_unit_price=self.compute_unit_price,
            version=self.version,
        )
        tx = sign_partially(message, self.keypair)

        logger.info(f"x402: Built payment of {amount} to {requirements.pay_to} (fee payer {requirements.fee_payer})")
        return PaymentPayload(
            x402_version=X402_VERSION,
            scheme=requirements.scheme,
            network=requirements.network,
            payload=SvmPayload(transaction=tx.to_base64()),
        )

    async def build_payment_header(self, requirements: PaymentRequirements) -> str:
        return encode_payment_header(await self.build_payment(requirements))


def select_requirements(response: httpx.Response) -> PaymentRequirements:
    """
    Pick the first Solana charge offered by a 402 response.

    Reads the ``accepts`` array of the JSON body, falling back to the
    WWW-Authenticate challenge.
    """
    try:
        body = response.json()
    except ValueError:
        body = {}

    for option in (body.get("accepts") or []) if isinstance(body, dict) else []:
        try:
            requirements = PaymentRequirements.model_validate(option)
        except ValidationError as e:
            logger.debug(f"x402: Skipping unusable payment option: {e}")
            continue
        if requirements.network.startswith("solana:") and requirements.scheme in SUPPORTED_SCHEMES:
            return requirements

    challenge = response.headers.get(WWW_AUTHENTICATE_HEADER)
    if challenge:
        return parse_www_authenticate(challenge)
    raise ProtocolError("402 response offers no usable Solana payment option")


def get_settlement(response: httpx.Response) -> Optional[SettlementResult]:
    header = response.headers.get(X_PAYMENT_RESPONSE_HEADER)
    if not header:
        return None
    return decode_payment_response(header)


class PaymentClient:
    """
    An httpx wrapper that answers 402 challenges.

    A request is paid at most once: if the retried request is answered with
    another 402 the response is returned as-is, never paid again.
    """

    def __init__(self, builder: PaymentBuilder, client: Optional[httpx.AsyncClient] = None):
        self.builder = builder
        self._client = client or httpx.AsyncClient(timeout=30.0)

    async def close(self) -> None:
        await self._client.aclose()

    async def request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        response = await self._client.request(method, url, **kwargs)
        if response.status_code != 402:
            return response

        logger.info(f"x402: 402 Payment Required for {url}, building payment")
        requirements = select_requirements(response)
        header = await self.builder.build_payment_header(requirements)

        headers = dict(kwargs.pop("headers", None) or {})
        headers[X_PAYMENT_HEADER] = header
        retry = await self._client.request(method, url, headers=headers, **kwargs)

        if retry.status_code == 402:
            reason = None
            try:
                reason = retry.json().get("errorReason")
            except (ValueError, AttributeError):
                pass
            logger.warning(f"x402: Payment for {url} was rejected: {reason or 'unknown reason'}")
        else:
            settlement = get_settlement(retry)
            if settlement and settlement.transaction:
                logger.info(f"x402: Payment settled in {settlement.transaction}")
        return retry

    async def get(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("POST", url, **kwargs)
