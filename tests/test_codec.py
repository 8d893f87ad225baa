# tests/test_codec.py
"""
Unit tests for the transaction wire codec.
"""
import base64
import struct

import base58
import pytest

from x402gate.protocol.codec import (
    EMPTY_SIGNATURE,
    AccountMeta,
    Instruction,
    Message,
    Transaction,
    TransferCheckedParams,
    build_payment_message,
    compile_message,
    decode_compact_u16,
    decode_compute_unit_limit,
    decode_compute_unit_price,
    decode_transfer_checked,
    encode_compact_u16,
    memo,
    set_compute_unit_limit,
    set_compute_unit_price,
    sign_partially,
    transfer_checked,
)
from x402gate.protocol.errors import CorruptPayloadError, PayloadDecodeError, ProtocolError
from x402gate.protocol.keys import (
    COMPUTE_BUDGET_PROGRAM_ID,
    TOKEN_2022_PROGRAM_ID,
    TOKEN_PROGRAM_ID,
    Keypair,
    get_associated_token_address,
    verify_signature,
)

from conftest import USDC


def make_transfer(authority: Keypair, recipient: Keypair, amount: int = 2500,
                  token_program: str = TOKEN_PROGRAM_ID) -> TransferCheckedParams:
    return TransferCheckedParams(
        source=get_associated_token_address(authority.pubkey, USDC, token_program),
        mint=USDC,
        destination=get_associated_token_address(recipient.pubkey, USDC, token_program),
        authority=authority.pubkey,
        amount=amount,
        decimals=6,
        token_program=token_program,
    )


class TestCompactU16:
    """Test compact-u16 length encoding."""

    @pytest.mark.parametrize("value,encoded", [
        (0, b"\x00"),
        (0x7F, b"\x7f"),
        (0x80, b"\x80\x01"),
        (0x3FFF, b"\xff\x7f"),
        (0x4000, b"\x80\x80\x01"),
        (0xFFFF, b"\xff\xff\x03"),
    ])
    def test_known_encodings(self, value, encoded):
        assert encode_compact_u16(value) == encoded
        assert decode_compact_u16(encoded) == (value, len(encoded))

    def test_out_of_range(self):
        with pytest.raises(ValueError):
            encode_compact_u16(0x10000)

    def test_truncated(self):
        with pytest.raises(CorruptPayloadError):
            decode_compact_u16(b"\x80")

    def test_overflow(self):
        with pytest.raises(CorruptPayloadError):
            decode_compact_u16(b"\xff\xff\x04")

    def test_non_canonical(self):
        with pytest.raises(CorruptPayloadError):
            decode_compact_u16(b"\x80\x00")

    def test_offset(self):
        assert decode_compact_u16(b"\xaa\x80\x01", 1) == (0x80, 3)


class TestInstructionData:
    """Test instruction data layouts."""

    def test_compute_unit_limit(self):
        ix = set_compute_unit_limit()
        assert ix.program_id == COMPUTE_BUDGET_PROGRAM_ID
        assert ix.accounts == ()
        assert ix.data == bytes([2]) + struct.pack("<I", 8000)
        assert decode_compute_unit_limit(ix) == 8000

    def test_compute_unit_price(self):
        ix = set_compute_unit_price()
        assert ix.data == bytes([3]) + struct.pack("<Q", 1)
        assert decode_compute_unit_price(ix) == 1

    def test_transfer_checked_layout(self):
        authority, recipient = Keypair.generate(), Keypair.generate()
        params = make_transfer(authority, recipient, amount=2500)
        ix = transfer_checked(params)
        assert ix.program_id == TOKEN_PROGRAM_ID
        assert ix.data == bytes([12]) + struct.pack("<Q", 2500) + bytes([6])
        assert [(a.is_signer, a.is_writable) for a in ix.accounts] == [
            (False, True), (False, False), (False, True), (True, False),
        ]
        assert decode_transfer_checked(ix) == params

    def test_decoders_reject_other_instructions(self):
        ix = memo("hello")
        assert decode_compute_unit_limit(ix) is None
        assert decode_compute_unit_price(ix) is None
        assert decode_transfer_checked(ix) is None
        assert decode_compute_unit_limit(set_compute_unit_price()) is None


class TestCompileMessage:
    """Test account ordering and header computation."""

    def test_payment_message_layout(self):
        fee_payer, authority, recipient = Keypair.generate(), Keypair.generate(), Keypair.generate()
        params = make_transfer(authority, recipient)
        message = build_payment_message(fee_payer.pubkey, params, Keypair.generate().pubkey)

        assert message.fee_payer == fee_payer.pubkey
        assert message.header.num_required_signatures == 2
        assert message.header.num_readonly_signed_accounts == 1
        # mint, compute budget program, token program
        assert message.header.num_readonly_unsigned_accounts == 3
        assert message.account_keys[:4] == (
            fee_payer.pubkey, authority.pubkey, params.source, params.destination,
        )
        assert message.signers == (fee_payer.pubkey, authority.pubkey)
        assert message.is_writable(0)
        assert not message.is_writable(1)
        assert message.is_writable(2) and message.is_writable(3)
        assert not message.is_writable(4)
        assert len(message.instructions) == 3

    def test_fee_payer_equal_to_authority_has_one_slot(self):
        authority, recipient = Keypair.generate(), Keypair.generate()
        message = build_payment_message(authority.pubkey, make_transfer(authority, recipient), Keypair.generate().pubkey)
        assert message.header.num_required_signatures == 1
        assert message.header.num_readonly_signed_accounts == 0

        tx = sign_partially(message, authority)
        assert len(tx.signatures) == 1
        decoded = Transaction.from_base64(tx.to_base64())
        assert decoded.signatures == tx.signatures

    def test_program_ids_do_not_downgrade_accounts(self):
        signer = Keypair.generate()
        ix = Instruction(
            program_id=signer.pubkey,
            accounts=(AccountMeta(signer.pubkey, is_signer=True, is_writable=True),),
            data=b"",
        )
        message = compile_message(Keypair.generate().pubkey, [ix], Keypair.generate().pubkey)
        assert message.is_signer(message.account_keys.index(signer.pubkey))


def fixed_key(n: int) -> str:
    return base58.b58encode(bytes([n]) * 32).decode()


class TestKnownMessageBytes:
    """Test compiled payment messages against hand-assembled wire bytes."""

    COMPUTE_BUDGET_HEX = "0306466fe5211732ffecadba72c39be7bc8ce5bbc5f7126b2c439b3a40000000"
    TOKEN_PROGRAM_HEX = "06ddf6e1d765a193d9cbe146ceeb79ac1cb485ed5f5b37913a8cf5857eff00a9"

    # fee payer, authority, source, destination, compute budget, mint, token program
    LEGACY_BODY = "".join([
        "020103",                       # 2 signers, 1 readonly signer, 3 readonly unsigned
        "07",                           # account count
        "01" * 32, "02" * 32, "03" * 32, "04" * 32,
        COMPUTE_BUDGET_HEX,
        "05" * 32,
        TOKEN_PROGRAM_HEX,
        "09" * 32,                      # recent blockhash
        "03",                           # instruction count
        "04" "00" "05" "02" "400d0300",                        # SetComputeUnitLimit(200000)
        "04" "00" "09" "03" "e803000000000000",                # SetComputeUnitPrice(1000)
        "06" "04" "02050301" "0a" "0c" "c409000000000000" "06",  # TransferChecked(2500, 6)
    ])

    def build(self, version):
        params = TransferCheckedParams(
            source=fixed_key(3),
            mint=fixed_key(5),
            destination=fixed_key(4),
            authority=fixed_key(2),
            amount=2500,
            decimals=6,
        )
        return build_payment_message(fixed_key(1), params, fixed_key(9), compute_unit_limit=200_000,
                                     compute_unit_price=1000, version=version)

    def test_program_id_bytes(self):
        assert base58.b58decode(COMPUTE_BUDGET_PROGRAM_ID).hex() == self.COMPUTE_BUDGET_HEX
        assert base58.b58decode(TOKEN_PROGRAM_ID).hex() == self.TOKEN_PROGRAM_HEX

    def test_legacy_message(self):
        message = self.build(version=None)
        assert message.serialize().hex() == self.LEGACY_BODY
        assert Message.deserialize(bytes.fromhex(self.LEGACY_BODY)) == message

    def test_v0_message(self):
        expected = "80" + self.LEGACY_BODY + "00"  # version prefix, empty lookup table section
        message = self.build(version=0)
        assert message.serialize().hex() == expected
        assert Message.deserialize(bytes.fromhex(expected)) == message


class TestTransactionRoundTrip:
    """Test wire packing and unpacking."""

    @pytest.mark.parametrize("version", [None, 0])
    @pytest.mark.parametrize("token_program", [TOKEN_PROGRAM_ID, TOKEN_2022_PROGRAM_ID])
    def test_partially_signed_round_trip(self, version, token_program):
        fee_payer, authority, recipient = Keypair.generate(), Keypair.generate(), Keypair.generate()
        message = build_payment_message(
            fee_payer.pubkey,
            make_transfer(authority, recipient, token_program=token_program),
            Keypair.generate().pubkey,
            version=version,
        )
        tx = sign_partially(message, authority)

        decoded = Transaction.from_base64(tx.to_base64())
        assert decoded.fee_payer == fee_payer.pubkey
        assert decoded.instructions == tx.instructions
        assert decoded.signatures == tx.signatures
        assert decoded.message == message
        assert decoded.serialize() == tx.serialize()

    def test_fee_payer_slot_is_zeroed(self):
        fee_payer, authority, recipient = Keypair.generate(), Keypair.generate(), Keypair.generate()
        message = build_payment_message(fee_payer.pubkey, make_transfer(authority, recipient), Keypair.generate().pubkey)
        tx = sign_partially(message, authority)

        raw = tx.serialize()
        assert raw[0] == 2
        assert raw[1:65] == EMPTY_SIGNATURE
        assert verify_signature(authority.pubkey, message.serialize(), raw[65:129])
        assert raw[129:] == message.serialize()

    def test_v0_prefix(self):
        fee_payer, authority, recipient = Keypair.generate(), Keypair.generate(), Keypair.generate()
        params = make_transfer(authority, recipient)
        v0 = build_payment_message(fee_payer.pubkey, params, Keypair.generate().pubkey, version=0)
        legacy = build_payment_message(fee_payer.pubkey, params, v0.recent_blockhash, version=None)
        assert v0.serialize()[0] == 0x80
        assert v0.serialize()[1:-1] == legacy.serialize()
        assert v0.serialize()[-1] == 0  # empty lookup table section

    def test_verify_signatures(self):
        fee_payer, authority, recipient = Keypair.generate(), Keypair.generate(), Keypair.generate()
        message = build_payment_message(fee_payer.pubkey, make_transfer(authority, recipient), Keypair.generate().pubkey)
        tx = sign_partially(message, authority)
        assert tx.verify_signatures()

        tx.sign(fee_payer)
        assert tx.verify_signatures()

        tx.signatures[1] = bytes(64 - 1) + b"\x01"
        assert not tx.verify_signatures()

    def test_sign_with_non_signer(self):
        fee_payer, authority, recipient = Keypair.generate(), Keypair.generate(), Keypair.generate()
        tx = Transaction.unsigned(
            build_payment_message(fee_payer.pubkey, make_transfer(authority, recipient), Keypair.generate().pubkey)
        )
        with pytest.raises(ValueError):
            tx.sign(recipient)

    def test_memo_instruction_round_trip(self):
        fee_payer = Keypair.generate()
        message = compile_message(fee_payer.pubkey, [memo('x402:order:{"id":7}')], Keypair.generate().pubkey)
        decoded = Message.deserialize(message.serialize())
        assert decoded.decompile()[0].data == b'x402:order:{"id":7}'


class TestCorruptPayloads:
    """Test decode failures."""

    @pytest.fixture
    def raw(self):
        fee_payer, authority, recipient = Keypair.generate(), Keypair.generate(), Keypair.generate()
        message = build_payment_message(fee_payer.pubkey, make_transfer(authority, recipient), Keypair.generate().pubkey)
        return sign_partially(message, authority).serialize()

    def test_malformed_base64(self):
        with pytest.raises(PayloadDecodeError):
            Transaction.from_base64("this is not base64!")

    def test_decode_errors_are_protocol_errors(self):
        with pytest.raises(ProtocolError):
            Transaction.from_base64("@@@@")

    def test_truncated(self, raw):
        with pytest.raises(CorruptPayloadError):
            Transaction.deserialize(raw[:-5])

    def test_trailing_bytes(self, raw):
        with pytest.raises(CorruptPayloadError):
            Transaction.deserialize(raw + b"\x00")

    def test_slot_count_mismatch(self, raw):
        # claim one signature slot while the message requires two
        tampered = b"\x01" + raw[65:]
        with pytest.raises(CorruptPayloadError):
            Transaction.deserialize(tampered)

    def test_no_slots(self):
        with pytest.raises(CorruptPayloadError):
            Transaction.deserialize(b"\x00")

    def test_empty(self):
        with pytest.raises(CorruptPayloadError):
            Transaction.deserialize(b"")

    def test_from_base64_of_garbage(self):
        with pytest.raises(CorruptPayloadError):
            Transaction.from_base64(base64.b64encode(b"\x02" + bytes(10)).decode())
