# x402gate/protocol/forwarder.py
"""
Settlement through an external x402 facilitator.

The facilitator holds the fee-payer key: it adds the missing signature and
broadcasts. The merchant always sends its own requirements alongside the
payment so the facilitator settles against the merchant's framing of the
charge, not the customer's.
"""
import asyncio
import json
import logging
from typing import Any, Dict, Optional

import httpx

from x402gate.core.config import settings
from x402gate.protocol.requirements import decode_payment_header
from x402gate.protocol.types import X402_VERSION, PaymentRequirements, SettlementResult

logger = logging.getLogger(__name__)

FACILITATOR_UNAVAILABLE = "facilitator_unavailable"


class SettlementForwarder:
    """
    Client for a facilitator's /verify and /settle endpoints.

    Transport errors, timeouts and 5xx responses are retried with
    exponential backoff up to ``max_attempts``; 4xx responses are final.
    Failures are returned as an unsuccessful SettlementResult, never raised.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        *,
        timeout: Optional[float] = None,
        max_attempts: Optional[int] = None,
        backoff: float = 0.5,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = (base_url or settings.X402_FACILITATOR_URL).rstrip("/")
        self.max_attempts = max_attempts or settings.X402_FACILITATOR_MAX_ATTEMPTS
        self.backoff = backoff
        self._client = client or httpx.AsyncClient(timeout=timeout or settings.X402_FACILITATOR_TIMEOUT)

    async def close(self) -> None:
        await self._client.aclose()

    def _request_body(self, payment_header: str, requirements: PaymentRequirements) -> Dict[str, Any]:
        payload = decode_payment_header(payment_header)
        return {
            "x402Version": X402_VERSION,
            "paymentHeader": payment_header,
            "paymentPayload": payload.model_dump(by_alias=True),
            "paymentRequirements": requirements.model_dump(by_alias=True, exclude_none=True),
        }

    async def _post(self, path: str, body: Dict[str, Any]) -> Optional[httpx.Response]:
        url = f"{self.base_url}/{path}"
        delay = self.backoff
        for attempt in range(1, self.max_attempts + 1):
            try:
                response = await self._client.post(url, json=body)
                if response.status_code < 500:
                    return response
                logger.warning(f"x402: Facilitator {path} returned {response.status_code} (attempt {attempt}/{self.max_attempts})")
            except httpx.TransportError as e:
                logger.warning(f"x402: Facilitator {path} unreachable (attempt {attempt}/{self.max_attempts}): {e}")
            if attempt < self.max_attempts:
                await asyncio.sleep(delay)
                delay *= 2
        logger.error(f"x402: Facilitator {path} unavailable after {self.max_attempts} attempts")
        return None

    @staticmethod
    def _json(response: httpx.Response) -> Dict[str, Any]:
        try:
            data = response.json()
        except (json.JSONDecodeError, ValueError):
            return {}
        return data if isinstance(data, dict) else {}

    @staticmethod
    def _text(*values: Any) -> Optional[str]:
        """First non-empty value as a string; error objects collapse to their message."""
        for value in values:
            if isinstance(value, dict):
                value = value.get("message") or value.get("reason") or json.dumps(value, sort_keys=True)
            if value not in (None, "", [], {}):
                return str(value)
        return None

    async def settle(self, payment_header: str, requirements: PaymentRequirements) -> SettlementResult:
        """Ask the facilitator to co-sign and broadcast a payment."""
        response = await self._post("settle", self._request_body(payment_header, requirements))
        if response is None:
            return SettlementResult(success=False, network=requirements.network, error_reason=FACILITATOR_UNAVAILABLE)

        data = self._json(response)
        success = response.is_success and bool(data.get("success"))
        result = SettlementResult(
            success=success,
            transaction=self._text(data.get("transaction"), data.get("txHash")),
            network=self._text(data.get("network")) or requirements.network,
            payer=self._text(data.get("payer")),
            amount=requirements.max_amount_required if success else None,
            error_reason=None if success else (
                self._text(data.get("errorReason"), data.get("error"))
                or f"facilitator_http_{response.status_code}"
            ),
        )
        if success:
            logger.info(f"x402: Facilitator settled {result.transaction} for {result.payer}")
        else:
            logger.warning(f"x402: Facilitator refused settlement: {result.error_reason}")
        return result

    async def verify(self, payment_header: str, requirements: PaymentRequirements) -> SettlementResult:
        """Ask the facilitator to validate a payment without broadcasting it."""
        response = await self._post("verify", self._request_body(payment_header, requirements))
        if response is None:
            return SettlementResult(success=False, network=requirements.network, error_reason=FACILITATOR_UNAVAILABLE)

        data = self._json(response)
        valid = response.is_success and bool(data.get("isValid"))
        return SettlementResult(
            success=valid,
            network=requirements.network,
            payer=self._text(data.get("payer")),
            amount=requirements.max_amount_required if valid else None,
            error_reason=None if valid else (
                self._text(data.get("invalidReason"), data.get("error"))
                or f"facilitator_http_{response.status_code}"
            ),
        )
