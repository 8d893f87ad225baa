# tests/test_solana_rpc.py
import json

import httpx
import pytest

from x402gate.protocol.errors import LedgerUnavailable
from x402gate.protocol.keys import TOKEN_2022_PROGRAM_ID
from x402gate.services.solana_rpc import SolanaRPC, SolanaRPCError

RPC_URL = "https://rpc.example"


def rpc_with(handler) -> SolanaRPC:
    return SolanaRPC(RPC_URL, commitment="finalized",
                     client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))


def result(value):
    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": value})
    return handler


class TestSolanaRPC:
    """Test suite for the ledger JSON-RPC client."""

    async def test_latest_blockhash(self):
        requests = []

        def handler(request):
            requests.append(json.loads(request.content))
            return result({"context": {"slot": 1}, "value": {"blockhash": "Hash111", "lastValidBlockHeight": 9}})(request)

        rpc = rpc_with(handler)
        assert await rpc.get_latest_blockhash() == "Hash111"
        assert requests[0]["method"] == "getLatestBlockhash"
        assert requests[0]["params"] == [{"commitment": "finalized"}]
        await rpc.close()

    async def test_token_accounts_are_flattened(self):
        rpc = rpc_with(result({"value": [{
            "pubkey": "Acct111",
            "account": {
                "owner": TOKEN_2022_PROGRAM_ID,
                "data": {"parsed": {"info": {"tokenAmount": {"amount": "1500", "decimals": 6}}}},
            },
        }]}))
        accounts = await rpc.get_token_accounts_by_owner("Owner111", "Mint111")
        assert accounts == [{"pubkey": "Acct111", "program": TOKEN_2022_PROGRAM_ID, "amount": 1500, "decimals": 6}]

    async def test_get_transaction_requests_parsed_v0(self):
        requests = []

        def handler(request):
            requests.append(json.loads(request.content))
            return result(None)(request)

        assert await rpc_with(handler).get_transaction("5sig") is None
        options = requests[0]["params"][1]
        assert options["encoding"] == "jsonParsed"
        assert options["maxSupportedTransactionVersion"] == 0

    async def test_signature_statuses(self):
        rpc = rpc_with(result({"context": {"slot": 1}, "value": [None, {"confirmationStatus": "finalized"}]}))
        statuses = await rpc.get_signature_statuses(["a", "b"])
        assert statuses[0] is None
        assert statuses[1]["confirmationStatus"] == "finalized"

    async def test_rpc_error_object(self):
        rpc = rpc_with(lambda r: httpx.Response(200, json={"jsonrpc": "2.0", "id": 1,
                                                           "error": {"code": -32602, "message": "Invalid param"}}))
        with pytest.raises(SolanaRPCError) as exc:
            await rpc.get_transaction("bad")
        assert exc.value.error_data["code"] == -32602
        assert exc.value.reason == "ledger_error"

    async def test_http_error_is_ledger_unavailable(self):
        with pytest.raises(LedgerUnavailable):
            await rpc_with(lambda r: httpx.Response(503)).get_latest_blockhash()

    async def test_connection_error_is_ledger_unavailable(self):
        def handler(request):
            raise httpx.ConnectTimeout("timed out", request=request)

        with pytest.raises(LedgerUnavailable):
            await rpc_with(handler).get_latest_blockhash()

    async def test_missing_result(self):
        with pytest.raises(LedgerUnavailable):
            await rpc_with(lambda r: httpx.Response(200, json={"jsonrpc": "2.0", "id": 1})).get_latest_blockhash()
