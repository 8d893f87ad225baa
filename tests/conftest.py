# tests/conftest.py
"""
Shared fixtures: throwaway wallets, a scripted ledger RPC and parsed
transaction builders shaped like getTransaction(jsonParsed) results.
"""
from typing import Any, Dict, List, Optional

import pytest

from x402gate.core.config import USDC_MINT_MAINNET, settings
from x402gate.protocol.keys import TOKEN_PROGRAM_ID, Keypair, get_associated_token_address

USDC = USDC_MINT_MAINNET


@pytest.fixture(autouse=True)
def audit_log_path(tmp_path, monkeypatch):
    """Send audit events to a per-test file."""
    path = tmp_path / "logs" / "x402_audit.jsonl"
    monkeypatch.setattr(settings, "X402_AUDIT_LOG_PATH", str(path))
    return path


@pytest.fixture
def customer() -> Keypair:
    return Keypair.generate()


@pytest.fixture
def merchant() -> Keypair:
    return Keypair.generate()


@pytest.fixture
def facilitator() -> Keypair:
    return Keypair.generate()


class FakeRPC:
    """In-memory stand-in for SolanaRPC."""

    def __init__(self):
        self.token_accounts: Dict[str, List[Dict[str, Any]]] = {}
        self.transactions: Dict[str, List[Optional[Dict[str, Any]]]] = {}
        self.statuses: Dict[str, Optional[Dict[str, Any]]] = {}
        self.blockhash = Keypair.generate().pubkey
        self.calls: List[str] = []

    def add_token_account(self, owner: str, mint: str = USDC, amount: int = 1_000_000, decimals: int = 6,
                          program: str = TOKEN_PROGRAM_ID, pubkey: Optional[str] = None) -> str:
        pubkey = pubkey or get_associated_token_address(owner, mint, program)
        self.token_accounts.setdefault(owner, []).append(
            {"pubkey": pubkey, "program": program, "amount": amount, "decimals": decimals}
        )
        return pubkey

    async def get_latest_blockhash(self) -> str:
        self.calls.append("getLatestBlockhash")
        return self.blockhash

    async def get_token_accounts_by_owner(self, owner: str, mint: str) -> List[Dict[str, Any]]:
        self.calls.append("getTokenAccountsByOwner")
        return list(self.token_accounts.get(owner, []))

    async def get_transaction(self, signature: str) -> Optional[Dict[str, Any]]:
        self.calls.append("getTransaction")
        queue = self.transactions.get(signature)
        if not queue:
            return None
        return queue.pop(0) if len(queue) > 1 else queue[0]

    async def get_signature_statuses(self, signatures: List[str]) -> List[Optional[Dict[str, Any]]]:
        self.calls.append("getSignatureStatuses")
        return [self.statuses.get(s) for s in signatures]

    async def close(self) -> None:
        pass


@pytest.fixture
def rpc() -> FakeRPC:
    return FakeRPC()


def token_balance(index: int, owner: str, mint: str = USDC, amount: int = 0, decimals: int = 6) -> Dict[str, Any]:
    return {
        "accountIndex": index,
        "mint": mint,
        "owner": owner,
        "programId": TOKEN_PROGRAM_ID,
        "uiTokenAmount": {"amount": str(amount), "decimals": decimals},
    }


def transfer_checked_ix(source: str, destination: str, authority: str, amount: int,
                        mint: str = USDC, decimals: int = 6) -> Dict[str, Any]:
    return {
        "program": "spl-token",
        "programId": TOKEN_PROGRAM_ID,
        "parsed": {
            "type": "transferChecked",
            "info": {
                "source": source,
                "destination": destination,
                "authority": authority,
                "mint": mint,
                "tokenAmount": {"amount": str(amount), "decimals": decimals},
            },
        },
    }


def compute_budget_ix() -> Dict[str, Any]:
    return {"programId": "ComputeBudget111111111111111111111111111111", "accounts": [], "data": "3DTZbgwsozUF"}


def memo_ix(text: str) -> Dict[str, Any]:
    return {"program": "spl-memo", "programId": "MemoSq4gqABAXKb96qnH8TysNcWxMyWCqXgDLGmfcHr", "parsed": text}


def parsed_payment_tx(
    payer: str,
    recipient: str,
    amount: int,
    fee_payer: str,
    mint: str = USDC,
    decimals: int = 6,
    err: Any = None,
    extra_instructions: Optional[List[Dict[str, Any]]] = None,
    block_time: int = 1_760_000_000,
) -> Dict[str, Any]:
    """A settled three-instruction payment as getTransaction(jsonParsed) returns it."""
    source = get_associated_token_address(payer, mint)
    destination = get_associated_token_address(recipient, mint)
    keys = [fee_payer, source, destination, payer, mint, TOKEN_PROGRAM_ID]
    instructions = [compute_budget_ix(), compute_budget_ix(),
                    transfer_checked_ix(source, destination, payer, amount, mint, decimals)]
    instructions += extra_instructions or []
    return {
        "slot": 250_000_000,
        "blockTime": block_time,
        "meta": {
            "err": err,
            "preBalances": [5_000_000, 2_039_280, 2_039_280, 0, 1, 1],
            "postBalances": [4_995_000, 2_039_280, 2_039_280, 0, 1, 1],
            "preTokenBalances": [
                token_balance(1, payer, mint, 1_000_000, decimals),
                token_balance(2, recipient, mint, 0, decimals),
            ],
            "postTokenBalances": [
                token_balance(1, payer, mint, 1_000_000 - amount, decimals),
                token_balance(2, recipient, mint, amount, decimals),
            ],
        },
        "transaction": {
            "signatures": ["sig"],
            "message": {
                "accountKeys": [
                    {"pubkey": k, "signer": i in (0, 3), "writable": i in (0, 1, 2), "source": "transaction"}
                    for i, k in enumerate(keys)
                ],
                "instructions": instructions,
            },
        },
    }
