# x402gate/services/solana_rpc.py
import itertools
import logging
from typing import Any, Dict, List, Optional

import httpx

from x402gate.core.config import settings
from x402gate.protocol.errors import LedgerUnavailable

logger = logging.getLogger(__name__)


class SolanaRPCError(LedgerUnavailable):
    """The RPC node answered with a JSON-RPC error object."""

    reason = "ledger_error"


class SolanaRPC:
    """
    Thin async JSON-RPC client for a Solana node.

    Only the read calls the payment flow needs are exposed. Transport
    failures, timeouts and 5xx answers surface as LedgerUnavailable; the
    caller decides whether to retry.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        commitment: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = str(url or settings.SOLANA_RPC_URL)
        self.commitment = commitment or settings.SOLANA_COMMITMENT
        self._client = client or httpx.AsyncClient(timeout=timeout or settings.SOLANA_RPC_TIMEOUT)
        self._ids = itertools.count(1)

    async def close(self) -> None:
        await self._client.aclose()

    async def _call(self, method: str, params: List[Any]) -> Any:
        request = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            response = await self._client.post(self.url, json=request)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as e:
            logger.warning(f"Solana RPC {method} failed ({self.url}): {e}")
            raise LedgerUnavailable(f"Solana RPC {method} failed: {e}", {"method": method})
        except ValueError as e:
            raise LedgerUnavailable(f"Solana RPC {method} returned invalid JSON: {e}", {"method": method})

        if "error" in data:
            error = data["error"]
            logger.warning(f"Solana RPC {method} error: {error}")
            raise SolanaRPCError(f"Solana RPC {method} error: {error.get('message', error)}", error)
        if "result" not in data:
            raise LedgerUnavailable(f"Invalid RPC response for {method}: missing 'result' field", data)
        return data["result"]

    async def get_latest_blockhash(self) -> str:
        result = await self._call("getLatestBlockhash", [{"commitment": self.commitment}])
        return result["value"]["blockhash"]

    async def get_token_accounts_by_owner(
        self,
        owner: str,
        mint: str,
    ) -> List[Dict[str, Any]]:
        """
        List the token accounts ``owner`` holds for ``mint``.

        Returns:
            List of dicts with ``pubkey``, ``program`` (owning token program),
            ``amount`` (atomic units) and ``decimals``
        """
        result = await self._call(
            "getTokenAccountsByOwner",
            [owner, {"mint": mint}, {"encoding": "jsonParsed", "commitment": self.commitment}],
        )
        accounts = []
        for entry in result.get("value", []):
            account = entry.get("account", {})
            parsed = account.get("data", {}).get("parsed", {})
            token_amount = parsed.get("info", {}).get("tokenAmount", {})
            accounts.append({
                "pubkey": entry["pubkey"],
                "program": account.get("owner"),
                "amount": int(token_amount.get("amount", 0)),
                "decimals": token_amount.get("decimals"),
            })
        return accounts

    async def get_transaction(self, signature: str) -> Optional[Dict[str, Any]]:
        """Fetch a transaction with parsed instructions; None if not yet visible."""
        return await self._call(
            "getTransaction",
            [signature, {
                "encoding": "jsonParsed",
                "commitment": self.commitment,
                "maxSupportedTransactionVersion": 0,
            }],
        )

    async def get_signature_statuses(self, signatures: List[str]) -> List[Optional[Dict[str, Any]]]:
        result = await self._call(
            "getSignatureStatuses",
            [signatures, {"searchTransactionHistory": True}],
        )
        return result.get("value", [])
