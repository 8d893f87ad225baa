# x402gate/protocol/codec.py
"""
Wire-exact Solana transaction framing for x402 payments.

An x402 payment is a three-instruction transaction:
0. SetComputeUnitLimit (default 8000 CU, bounding the fee exposure)
1. SetComputeUnitPrice (default 1 micro-lamport per CU)
2. TransferChecked (decimals-checked SPL token transfer)

The fee payer is the facilitator, never the token authority. The customer
signs only as token authority and leaves the fee payer's signature slot as 64
zero bytes for the facilitator to fill in before broadcasting.

Wire layout:
    [compact-u16 signer count][64-byte signature slots...][message bytes]

Message layout (v0 messages are prefixed with 0x80 and end with an
address-table-lookup section; legacy messages have neither):
    [header: 3 x u8][compact-u16 n][n x 32-byte account keys]
    [32-byte recent blockhash][compact-u16 m][m x compiled instruction]
"""
import base64
import binascii
import logging
import struct
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from x402gate.protocol.errors import CorruptPayloadError, PayloadDecodeError, ProtocolError
from x402gate.protocol.keys import (
    COMPUTE_BUDGET_PROGRAM_ID,
    MEMO_PROGRAM_ID,
    PUBKEY_LENGTH,
    SIGNATURE_LENGTH,
    TOKEN_PROGRAM_ID,
    TOKEN_PROGRAM_IDS,
    Keypair,
    decode_pubkey,
    encode_pubkey,
    verify_signature,
)

logger = logging.getLogger(__name__)

DEFAULT_COMPUTE_UNIT_LIMIT = 8_000
DEFAULT_COMPUTE_UNIT_PRICE = 1  # micro-lamports

VERSION_PREFIX_MASK = 0x80
EMPTY_SIGNATURE = bytes(SIGNATURE_LENGTH)

# Instruction discriminators
_SET_COMPUTE_UNIT_LIMIT = 2
_SET_COMPUTE_UNIT_PRICE = 3
_TOKEN_TRANSFER_CHECKED = 12


# --- compact-u16 ---------------------------------------------------------

def encode_compact_u16(value: int) -> bytes:
    """Encode a length as Solana's 1-3 byte little-endian base-128 varint."""
    if not 0 <= value <= 0xFFFF:
        raise ValueError(f"compact-u16 value out of range: {value}")
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def decode_compact_u16(data: bytes, offset: int = 0) -> Tuple[int, int]:
    """
    Decode a compact-u16 at ``offset``.

    Returns:
        Tuple of (value, offset just past the encoded length)

    Raises:
        CorruptPayloadError: On truncated, overlong or non-canonical encodings
    """
    value = 0
    for i in range(3):
        if offset + i >= len(data):
            raise CorruptPayloadError("Truncated compact-u16 length prefix")
        byte = data[offset + i]
        if i > 0 and byte == 0:
            raise CorruptPayloadError("Non-canonical compact-u16 length prefix")
        value |= (byte & 0x7F) << (7 * i)
        if not byte & 0x80:
            if value > 0xFFFF:
                raise CorruptPayloadError("compact-u16 length prefix overflows u16")
            return value, offset + i + 1
    raise CorruptPayloadError("compact-u16 length prefix longer than 3 bytes")


class _Reader:
    """Bounds-checked cursor over a byte buffer."""

    def __init__(self, data: bytes):
        self.data = data
        self.offset = 0

    @property
    def remaining(self) -> int:
        return len(self.data) - self.offset

    def take(self, n: int) -> bytes:
        if n > self.remaining:
            raise CorruptPayloadError(
                f"Buffer too short: needed {n} bytes at offset {self.offset}, {self.remaining} left"
            )
        chunk = self.data[self.offset:self.offset + n]
        self.offset += n
        return chunk

    def u8(self) -> int:
        return self.take(1)[0]

    def compact(self) -> int:
        value, self.offset = decode_compact_u16(self.data, self.offset)
        return value

    def pubkey(self) -> str:
        return encode_pubkey(self.take(PUBKEY_LENGTH))


# --- instructions --------------------------------------------------------

@dataclass(frozen=True)
class AccountMeta:
    pubkey: str
    is_signer: bool
    is_writable: bool


@dataclass(frozen=True)
class Instruction:
    program_id: str
    accounts: Tuple[AccountMeta, ...]
    data: bytes


@dataclass(frozen=True)
class TransferCheckedParams:
    """Decoded arguments of a TransferChecked instruction."""

    source: str
    mint: str
    destination: str
    authority: str
    amount: int
    decimals: int
    token_program: str = TOKEN_PROGRAM_ID


def set_compute_unit_limit(units: int = DEFAULT_COMPUTE_UNIT_LIMIT) -> Instruction:
    return Instruction(
        program_id=COMPUTE_BUDGET_PROGRAM_ID,
        accounts=(),
        data=struct.pack("<BI", _SET_COMPUTE_UNIT_LIMIT, units),
    )


def set_compute_unit_price(micro_lamports: int = DEFAULT_COMPUTE_UNIT_PRICE) -> Instruction:
    return Instruction(
        program_id=COMPUTE_BUDGET_PROGRAM_ID,
        accounts=(),
        data=struct.pack("<BQ", _SET_COMPUTE_UNIT_PRICE, micro_lamports),
    )


def transfer_checked(params: TransferCheckedParams) -> Instruction:
    return Instruction(
        program_id=params.token_program,
        accounts=(
            AccountMeta(params.source, is_signer=False, is_writable=True),
            AccountMeta(params.mint, is_signer=False, is_writable=False),
            AccountMeta(params.destination, is_signer=False, is_writable=True),
            AccountMeta(params.authority, is_signer=True, is_writable=False),
        ),
        data=struct.pack("<BQB", _TOKEN_TRANSFER_CHECKED, params.amount, params.decimals),
    )


def memo(text: str, signers: Sequence[str] = ()) -> Instruction:
    return Instruction(
        program_id=MEMO_PROGRAM_ID,
        accounts=tuple(AccountMeta(s, is_signer=True, is_writable=False) for s in signers),
        data=text.encode("utf-8"),
    )


def decode_compute_unit_limit(ix: Instruction) -> Optional[int]:
    if ix.program_id != COMPUTE_BUDGET_PROGRAM_ID or len(ix.data) != 5 or ix.data[0] != _SET_COMPUTE_UNIT_LIMIT:
        return None
    return struct.unpack("<I", ix.data[1:])[0]


def decode_compute_unit_price(ix: Instruction) -> Optional[int]:
    if ix.program_id != COMPUTE_BUDGET_PROGRAM_ID or len(ix.data) != 9 or ix.data[0] != _SET_COMPUTE_UNIT_PRICE:
        return None
    return struct.unpack("<Q", ix.data[1:])[0]


def decode_transfer_checked(ix: Instruction) -> Optional[TransferCheckedParams]:
    if ix.program_id not in TOKEN_PROGRAM_IDS:
        return None
    if len(ix.data) != 10 or ix.data[0] != _TOKEN_TRANSFER_CHECKED or len(ix.accounts) < 4:
        return None
    amount, decimals = struct.unpack("<QB", ix.data[1:])
    source, mint, destination, authority = (meta.pubkey for meta in ix.accounts[:4])
    return TransferCheckedParams(
        source=source,
        mint=mint,
        destination=destination,
        authority=authority,
        amount=amount,
        decimals=decimals,
        token_program=ix.program_id,
    )


# --- messages ------------------------------------------------------------

@dataclass(frozen=True)
class MessageHeader:
    num_required_signatures: int
    num_readonly_signed_accounts: int
    num_readonly_unsigned_accounts: int


@dataclass(frozen=True)
class CompiledInstruction:
    program_id_index: int
    accounts: Tuple[int, ...]
    data: bytes


@dataclass(frozen=True)
class AddressTableLookup:
    account_key: str
    writable_indexes: Tuple[int, ...]
    readonly_indexes: Tuple[int, ...]


@dataclass(frozen=True)
class Message:
    header: MessageHeader
    account_keys: Tuple[str, ...]
    recent_blockhash: str
    instructions: Tuple[CompiledInstruction, ...]
    version: Optional[int] = 0  # None for legacy messages
    address_table_lookups: Tuple[AddressTableLookup, ...] = ()

    @property
    def fee_payer(self) -> str:
        return self.account_keys[0]

    @property
    def signers(self) -> Tuple[str, ...]:
        return self.account_keys[:self.header.num_required_signatures]

    def is_signer(self, index: int) -> bool:
        return index < self.header.num_required_signatures

    def is_writable(self, index: int) -> bool:
        header = self.header
        if index < header.num_required_signatures:
            return index < header.num_required_signatures - header.num_readonly_signed_accounts
        return index < len(self.account_keys) - header.num_readonly_unsigned_accounts

    def decompile(self) -> List[Instruction]:
        """Resolve compiled instructions back to full account metas."""
        instructions = []
        for compiled in self.instructions:
            indexes = (compiled.program_id_index,) + compiled.accounts
            if any(i >= len(self.account_keys) for i in indexes):
                raise ProtocolError(
                    "Instruction references accounts outside the static key list",
                    reason="unsupported_transaction",
                )
            instructions.append(Instruction(
                program_id=self.account_keys[compiled.program_id_index],
                accounts=tuple(
                    AccountMeta(self.account_keys[i], self.is_signer(i), self.is_writable(i))
                    for i in compiled.accounts
                ),
                data=compiled.data,
            ))
        return instructions

    def serialize(self) -> bytes:
        out = bytearray()
        if self.version is not None:
            out.append(VERSION_PREFIX_MASK | self.version)
        out += bytes((
            self.header.num_required_signatures,
            self.header.num_readonly_signed_accounts,
            self.header.num_readonly_unsigned_accounts,
        ))
        out += encode_compact_u16(len(self.account_keys))
        for key in self.account_keys:
            out += decode_pubkey(key)
        out += decode_pubkey(self.recent_blockhash)
        out += encode_compact_u16(len(self.instructions))
        for ix in self.instructions:
            out.append(ix.program_id_index)
            out += encode_compact_u16(len(ix.accounts))
            out += bytes(ix.accounts)
            out += encode_compact_u16(len(ix.data))
            out += ix.data
        if self.version is not None:
            out += encode_compact_u16(len(self.address_table_lookups))
            for lookup in self.address_table_lookups:
                out += decode_pubkey(lookup.account_key)
                out += encode_compact_u16(len(lookup.writable_indexes))
                out += bytes(lookup.writable_indexes)
                out += encode_compact_u16(len(lookup.readonly_indexes))
                out += bytes(lookup.readonly_indexes)
        return bytes(out)

    @classmethod
    def deserialize(cls, data: bytes) -> "Message":
        reader = _Reader(data)
        message = cls._read(reader)
        if reader.remaining:
            raise CorruptPayloadError(f"{reader.remaining} trailing bytes after message")
        return message

    @classmethod
    def _read(cls, reader: _Reader) -> "Message":
        version: Optional[int] = None
        first = reader.u8()
        if first & VERSION_PREFIX_MASK:
            version = first & ~VERSION_PREFIX_MASK
            if version != 0:
                raise CorruptPayloadError(f"Unsupported message version {version}")
            num_required = reader.u8()
        else:
            num_required = first
        header = MessageHeader(num_required, reader.u8(), reader.u8())

        account_keys = tuple(reader.pubkey() for _ in range(reader.compact()))
        if header.num_required_signatures > len(account_keys):
            raise CorruptPayloadError("Header requires more signers than there are accounts")
        recent_blockhash = reader.pubkey()

        instructions = []
        for _ in range(reader.compact()):
            program_id_index = reader.u8()
            accounts = tuple(reader.take(reader.compact()))
            data = reader.take(reader.compact())
            instructions.append(CompiledInstruction(program_id_index, accounts, data))

        lookups = []
        if version is not None:
            for _ in range(reader.compact()):
                account_key = reader.pubkey()
                writable = tuple(reader.take(reader.compact()))
                readonly = tuple(reader.take(reader.compact()))
                lookups.append(AddressTableLookup(account_key, writable, readonly))

        return cls(
            header=header,
            account_keys=account_keys,
            recent_blockhash=recent_blockhash,
            instructions=tuple(instructions),
            version=version,
            address_table_lookups=tuple(lookups),
        )


def compile_message(
    fee_payer: str,
    instructions: Sequence[Instruction],
    recent_blockhash: str,
    version: Optional[int] = 0,
) -> Message:
    """
    Compile instructions into a message.

    Accounts are ordered fee payer first, then writable signers, readonly
    signers, writable non-signers and readonly non-signers, each group in
    order of first appearance.
    """
    metas: Dict[str, List[bool]] = OrderedDict()
    metas[fee_payer] = [True, True]
    for ix in instructions:
        for meta in ix.accounts:
            flags = metas.setdefault(meta.pubkey, [False, False])
            flags[0] = flags[0] or meta.is_signer
            flags[1] = flags[1] or meta.is_writable
        metas.setdefault(ix.program_id, [False, False])

    def group(signer: bool, writable: bool) -> List[str]:
        return [key for key, (s, w) in metas.items() if key != fee_payer and s == signer and w == writable]

    writable_signers = [fee_payer] + group(True, True)
    readonly_signers = group(True, False)
    writable_unsigned = group(False, True)
    readonly_unsigned = group(False, False)
    account_keys = tuple(writable_signers + readonly_signers + writable_unsigned + readonly_unsigned)
    index = {key: i for i, key in enumerate(account_keys)}

    compiled = tuple(
        CompiledInstruction(
            program_id_index=index[ix.program_id],
            accounts=tuple(index[meta.pubkey] for meta in ix.accounts),
            data=ix.data,
        )
        for ix in instructions
    )
    header = MessageHeader(
        num_required_signatures=len(writable_signers) + len(readonly_signers),
        num_readonly_signed_accounts=len(readonly_signers),
        num_readonly_unsigned_accounts=len(readonly_unsigned),
    )
    return Message(
        header=header,
        account_keys=account_keys,
        recent_blockhash=recent_blockhash,
        instructions=compiled,
        version=version,
    )


def build_payment_message(
    fee_payer: str,
    transfer: TransferCheckedParams,
    recent_blockhash: str,
    compute_unit_limit: int = DEFAULT_COMPUTE_UNIT_LIMIT,
    compute_unit_price: int = DEFAULT_COMPUTE_UNIT_PRICE,
    version: Optional[int] = 0,
) -> Message:
    """Build the canonical three-instruction x402 payment message."""
    return compile_message(
        fee_payer,
        [
            set_compute_unit_limit(compute_unit_limit),
            set_compute_unit_price(compute_unit_price),
            transfer_checked(transfer),
        ],
        recent_blockhash,
        version=version,
    )


# --- transactions --------------------------------------------------------

@dataclass
class Transaction:
    message: Message
    signatures: List[bytes] = field(default_factory=list)

    @classmethod
    def unsigned(cls, message: Message) -> "Transaction":
        """A transaction with every signer slot zeroed."""
        return cls(message, [EMPTY_SIGNATURE] * message.header.num_required_signatures)

    @property
    def fee_payer(self) -> str:
        return self.message.fee_payer

    @property
    def instructions(self) -> List[Instruction]:
        return self.message.decompile()

    def sign(self, keypair: Keypair) -> None:
        """Place ``keypair``'s signature over the message in its own slot."""
        try:
            slot = self.message.signers.index(keypair.pubkey)
        except ValueError:
            raise ValueError(f"{keypair.pubkey} is not a required signer of this message")
        self.signatures[slot] = keypair.sign(self.message.serialize())

    def signature_for(self, address: str) -> Optional[bytes]:
        if address not in self.message.signers:
            return None
        return self.signatures[self.message.signers.index(address)]

    def verify_signatures(self) -> bool:
        """Check every filled signature slot; empty slots are skipped."""
        message_bytes = self.message.serialize()
        for address, signature in zip(self.message.signers, self.signatures):
            if signature == EMPTY_SIGNATURE:
                continue
            if not verify_signature(address, message_bytes, signature):
                return False
        return True

    def serialize(self) -> bytes:
        if len(self.signatures) != self.message.header.num_required_signatures:
            raise ValueError("Signature slot count does not match the message header")
        return (
            encode_compact_u16(len(self.signatures))
            + b"".join(self.signatures)
            + self.message.serialize()
        )

    @classmethod
    def deserialize(cls, data: bytes) -> "Transaction":
        reader = _Reader(data)
        count = reader.compact()
        if count == 0:
            raise CorruptPayloadError("Transaction carries no signature slots")
        signatures = [reader.take(SIGNATURE_LENGTH) for _ in range(count)]
        message = Message._read(reader)
        if reader.remaining:
            raise CorruptPayloadError(f"{reader.remaining} trailing bytes after message")
        if message.header.num_required_signatures != count:
            raise CorruptPayloadError(
                f"Transaction has {count} signature slots but the message requires "
                f"{message.header.num_required_signatures}"
            )
        return cls(message, signatures)

    def to_base64(self) -> str:
        return base64.b64encode(self.serialize()).decode("ascii")

    @classmethod
    def from_base64(cls, value: str) -> "Transaction":
        try:
            raw = base64.b64decode(value, validate=True)
        except (binascii.Error, ValueError) as e:
            raise PayloadDecodeError(f"Transaction is not valid base64: {e}")
        return cls.deserialize(raw)


def sign_partially(message: Message, keypair: Keypair) -> Transaction:
    """Sign as one signer, leaving every other slot empty for co-signers."""
    tx = Transaction.unsigned(message)
    tx.sign(keypair)
    return tx
