# x402gate/protocol/keys.py
"""
Solana account addresses, the signing credential, and derived addresses.

Addresses are base58-encoded 32-byte ed25519 public keys. Associated token
accounts (the per-owner, per-mint sub-accounts holding token balances) are
program-derived addresses and can be computed without touching the ledger.
"""
import hashlib
import json
import logging
from typing import List, Sequence, Tuple, Union

import base58
from nacl.exceptions import BadSignatureError
from nacl.signing import SigningKey, VerifyKey

from x402gate.protocol.errors import ProtocolError

logger = logging.getLogger(__name__)

PUBKEY_LENGTH = 32
SIGNATURE_LENGTH = 64

# Program ids
SYSTEM_PROGRAM_ID = "11111111111111111111111111111111"
COMPUTE_BUDGET_PROGRAM_ID = "ComputeBudget111111111111111111111111111111"
TOKEN_PROGRAM_ID = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"
TOKEN_2022_PROGRAM_ID = "TokenzQdBNbLqP5VEhdkAS6EPFLC1PHnBqCXEpPxuEb"
ASSOCIATED_TOKEN_PROGRAM_ID = "ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL"
MEMO_PROGRAM_ID = "MemoSq4gqABAXKb96qnH8TysNcWxMyWCqXgDLGmfcHr"
MEMO_V1_PROGRAM_ID = "Memo1UhkJRfHyvLMcVucJwxXeuD728EqVDDwQDxFMNo"

TOKEN_PROGRAM_IDS = (TOKEN_PROGRAM_ID, TOKEN_2022_PROGRAM_ID)

_PDA_MARKER = b"ProgramDerivedAddress"
_MAX_SEED_LENGTH = 32
_MAX_SEEDS = 16

# Curve25519 field constants
_P = 2 ** 255 - 19
_D = -121665 * pow(121666, _P - 2, _P) % _P
_Y_MASK = (1 << 255) - 1


def decode_pubkey(address: str) -> bytes:
    """
    Decode a base58 address into its 32 raw bytes.

    Raises:
        ProtocolError: If the value is not base58 or not 32 bytes long
    """
    try:
        raw = base58.b58decode(address)
    except (ValueError, TypeError) as e:
        raise ProtocolError(f"Invalid account address {address!r}: {e}", reason="invalid_address")
    if len(raw) != PUBKEY_LENGTH:
        raise ProtocolError(
            f"Invalid account address {address!r}: expected {PUBKEY_LENGTH} bytes, got {len(raw)}",
            reason="invalid_address",
        )
    return raw


def encode_pubkey(raw: bytes) -> str:
    return base58.b58encode(raw).decode("ascii")


def is_valid_address(address: str) -> bool:
    try:
        decode_pubkey(address)
        return True
    except ProtocolError:
        return False


def is_on_curve(point: bytes) -> bool:
    """
    Check whether 32 bytes decompress to a point on the ed25519 curve.

    Mirrors the ledger's own decompression: the y coordinate is reduced modulo
    p and the point is valid iff (y^2 - 1) / (d*y^2 + 1) is a square.
    """
    y = (int.from_bytes(point, "little") & _Y_MASK) % _P
    y2 = y * y % _P
    u = (y2 - 1) % _P
    v = (_D * y2 + 1) % _P
    x2 = u * pow(v, _P - 2, _P) % _P
    if x2 == 0:
        return True
    return pow(x2, (_P - 1) // 2, _P) == 1


def create_program_address(seeds: Sequence[bytes], program_id: str) -> str:
    """Hash seeds into a program address; fails if the result is on the curve."""
    if len(seeds) > _MAX_SEEDS:
        raise ValueError(f"At most {_MAX_SEEDS} seeds are allowed")
    hasher = hashlib.sha256()
    for seed in seeds:
        if len(seed) > _MAX_SEED_LENGTH:
            raise ValueError(f"Seed exceeds {_MAX_SEED_LENGTH} bytes")
        hasher.update(seed)
    hasher.update(decode_pubkey(program_id))
    hasher.update(_PDA_MARKER)
    digest = hasher.digest()
    if is_on_curve(digest):
        raise ValueError("Derived address lies on the ed25519 curve")
    return encode_pubkey(digest)


def find_program_address(seeds: Sequence[bytes], program_id: str) -> Tuple[str, int]:
    """Return the first off-curve program address and its bump seed, searching 255 down to 0."""
    for bump in range(255, -1, -1):
        try:
            return create_program_address(list(seeds) + [bytes([bump])], program_id), bump
        except ValueError:
            continue
    raise ValueError("Unable to find a viable program address bump seed")


def get_associated_token_address(owner: str, mint: str, token_program: str = TOKEN_PROGRAM_ID) -> str:
    """Derive the associated token account of ``owner`` for ``mint``."""
    address, _ = find_program_address(
        [decode_pubkey(owner), decode_pubkey(token_program), decode_pubkey(mint)],
        ASSOCIATED_TOKEN_PROGRAM_ID,
    )
    return address


def verify_signature(address: str, message: bytes, signature: bytes) -> bool:
    """Verify a detached ed25519 signature made by ``address``."""
    try:
        VerifyKey(decode_pubkey(address)).verify(message, signature)
        return True
    except (BadSignatureError, ValueError, ProtocolError):
        return False


class Keypair:
    """
    The single signing credential held by a paying customer.

    Accepts the formats Solana tooling produces: a 64-byte secret
    (seed followed by public key) as a JSON byte array or base58 string,
    or a bare 32-byte seed.
    """

    def __init__(self, signing_key: SigningKey):
        self._signing_key = signing_key
        self._pubkey_bytes = bytes(signing_key.verify_key)

    @classmethod
    def generate(cls) -> "Keypair":
        return cls(SigningKey.generate())

    @classmethod
    def from_seed(cls, seed: bytes) -> "Keypair":
        return cls(SigningKey(bytes(seed)))

    @classmethod
    def from_secret(cls, secret: Union[str, bytes, List[int]]) -> "Keypair":
        if isinstance(secret, str):
            text = secret.strip()
            if text.startswith("["):
                raw = bytes(json.loads(text))
            else:
                raw = base58.b58decode(text)
        else:
            raw = bytes(secret)

        if len(raw) == 32:
            return cls.from_seed(raw)
        if len(raw) != 64:
            raise ValueError(f"Secret key must be 32 or 64 bytes, got {len(raw)}")

        keypair = cls.from_seed(raw[:32])
        if keypair.pubkey_bytes != raw[32:]:
            raise ValueError("Secret key public half does not match its seed")
        return keypair

    @property
    def pubkey(self) -> str:
        return encode_pubkey(self._pubkey_bytes)

    @property
    def pubkey_bytes(self) -> bytes:
        return self._pubkey_bytes

    def sign(self, message: bytes) -> bytes:
        return self._signing_key.sign(message).signature

    def __repr__(self) -> str:
        return f"Keypair(pubkey={self.pubkey})"
