"""
Wire codec for settlement-network transactions.

Layout::

    compact-u16 signature count
    64-byte signature slots
    message:
        [0x80 | version]            (versioned messages only)
        header (3 bytes)            required sigs, readonly signed, readonly unsigned
        compact-u16 + 32-byte keys  static account keys
        32-byte recent blockhash
        compact-u16 + instructions
        compact-u16 + lookups       (versioned messages only)

The message bytes are kept verbatim, signing never re-encodes them.
"""

from __future__ import annotations

import base64
import binascii
import struct
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

import base58

from predictgate.exceptions import MalformedTransactionError
from predictgate.wallet.keypair import PUBLIC_KEY_BYTES, SIGNATURE_BYTES, Keypair, decode_public_key

SYSTEM_PROGRAM_ID = bytes(32)
_SYSTEM_TRANSFER_INSTRUCTION = 2
_VERSION_PREFIX_MASK = 0x80
_EMPTY_SIGNATURE = bytes(SIGNATURE_BYTES)


def encode_compact_u16(value: int) -> bytes:
    if value < 0 or value > 0xFFFF:
        raise ValueError(f"compact-u16 out of range: {value}")
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def decode_compact_u16(data: bytes, offset: int) -> Tuple[int, int]:
    """Return ``(value, new_offset)``."""
    value = 0
    for i in range(3):
        if offset + i >= len(data):
            raise MalformedTransactionError("Truncated compact-u16")
        byte = data[offset + i]
        value |= (byte & 0x7F) << (7 * i)
        if not byte & 0x80:
            return value, offset + i + 1
    raise MalformedTransactionError("compact-u16 longer than 3 bytes")


class _Reader:
    def __init__(self, data: bytes, offset: int = 0):
        self.data = data
        self.offset = offset

    def take(self, n: int) -> bytes:
        end = self.offset + n
        if end > len(self.data):
            raise MalformedTransactionError("Transaction is truncated")
        chunk = self.data[self.offset : end]
        self.offset = end
        return chunk

    def u8(self) -> int:
        return self.take(1)[0]

    def compact(self) -> int:
        value, self.offset = decode_compact_u16(self.data, self.offset)
        return value


@dataclass
class CompiledInstruction:
    program_id_index: int
    accounts: bytes
    data: bytes

    def serialize(self) -> bytes:
        return (
            bytes([self.program_id_index])
            + encode_compact_u16(len(self.accounts))
            + self.accounts
            + encode_compact_u16(len(self.data))
            + self.data
        )


@dataclass
class Message:
    version: Optional[int]
    num_required_signatures: int
    num_readonly_signed: int
    num_readonly_unsigned: int
    account_keys: List[bytes]
    recent_blockhash: bytes
    instructions: List[CompiledInstruction]
    raw: bytes

    @classmethod
    def parse(cls, data: bytes) -> Message:
        if not data:
            raise MalformedTransactionError("Empty message")
        reader = _Reader(data)
        version: Optional[int] = None
        if data[0] & _VERSION_PREFIX_MASK:
            version = reader.u8() & 0x7F
            if version != 0:
                raise MalformedTransactionError(f"Unsupported message version: {version}")

        num_required, readonly_signed, readonly_unsigned = reader.take(3)
        key_count = reader.compact()
        account_keys = [reader.take(PUBLIC_KEY_BYTES) for _ in range(key_count)]
        if num_required == 0 or num_required > key_count:
            raise MalformedTransactionError("Message header does not match its account keys")
        recent_blockhash = reader.take(32)

        instructions = []
        for _ in range(reader.compact()):
            program_id_index = reader.u8()
            accounts = reader.take(reader.compact())
            ix_data = reader.take(reader.compact())
            instructions.append(CompiledInstruction(program_id_index, accounts, ix_data))

        if version is not None:
            for _ in range(reader.compact()):
                reader.take(PUBLIC_KEY_BYTES)
                reader.take(reader.compact())
                reader.take(reader.compact())

        if reader.offset != len(data):
            raise MalformedTransactionError("Trailing bytes after message")

        return cls(
            version=version,
            num_required_signatures=num_required,
            num_readonly_signed=readonly_signed,
            num_readonly_unsigned=readonly_unsigned,
            account_keys=account_keys,
            recent_blockhash=recent_blockhash,
            instructions=instructions,
            raw=bytes(data),
        )


class Transaction:
    """A message plus one signature slot per required signer."""

    def __init__(self, signatures: List[bytes], message: Message):
        if len(signatures) != message.num_required_signatures:
            raise MalformedTransactionError(
                f"Expected {message.num_required_signatures} signature slots, got {len(signatures)}"
            )
        self.signatures = list(signatures)
        self.message = message

    @classmethod
    def from_bytes(cls, data: bytes) -> Transaction:
        reader = _Reader(bytes(data))
        count = reader.compact()
        signatures = [reader.take(SIGNATURE_BYTES) for _ in range(count)]
        message = Message.parse(reader.data[reader.offset :])
        return cls(signatures, message)

    @classmethod
    def from_base64(cls, encoded: str) -> Transaction:
        try:
            raw = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise MalformedTransactionError("Transaction is not valid base64") from exc
        return cls.from_bytes(raw)

    @classmethod
    def unsigned(cls, message: Message) -> Transaction:
        return cls([_EMPTY_SIGNATURE] * message.num_required_signatures, message)

    @property
    def account_keys(self) -> List[str]:
        return [base58.b58encode(key).decode("ascii") for key in self.message.account_keys]

    @property
    def signers(self) -> List[str]:
        return self.account_keys[: self.message.num_required_signatures]

    @property
    def signature(self) -> str:
        """Base58 of the first signature slot, which is the transaction id."""
        return base58.b58encode(self.signatures[0]).decode("ascii")

    def is_signed_by(self, public_key: bytes) -> bool:
        try:
            index = self.message.account_keys.index(public_key, 0, self.message.num_required_signatures)
        except ValueError:
            return False
        return self.signatures[index] != _EMPTY_SIGNATURE

    def sign(self, keypair: Keypair) -> None:
        signer_keys = self.message.account_keys[: self.message.num_required_signatures]
        try:
            index = signer_keys.index(keypair.public_key_bytes)
        except ValueError:
            raise MalformedTransactionError(
                f"{keypair.public_key} is not a required signer of this transaction"
            ) from None
        self.signatures[index] = keypair.sign(self.message.raw)

    def serialize(self) -> bytes:
        return encode_compact_u16(len(self.signatures)) + b"".join(self.signatures) + self.message.raw

    def to_base64(self) -> str:
        return base64.b64encode(self.serialize()).decode("ascii")


@dataclass(frozen=True)
class AccountMeta:
    pubkey: bytes
    is_signer: bool
    is_writable: bool


@dataclass(frozen=True)
class Instruction:
    """An instruction before account keys are indexed into a message."""

    program_id: bytes
    accounts: Sequence[AccountMeta]
    data: bytes


def compile_message(payer: bytes, instructions: Sequence[Instruction], recent_blockhash: bytes) -> Message:
    """
    Lay out a legacy message: the fee payer first, then writable signers,
    readonly signers, writable accounts and readonly accounts, each group
    in first-seen order.
    """
    if len(recent_blockhash) != 32:
        raise MalformedTransactionError("Recent blockhash must be 32 bytes")

    flags: Dict[bytes, Tuple[bool, bool]] = {payer: (True, True)}
    for ix in instructions:
        for meta in ix.accounts:
            signer, writable = flags.get(meta.pubkey, (False, False))
            flags[meta.pubkey] = (signer or meta.is_signer, writable or meta.is_writable)
        flags.setdefault(ix.program_id, (False, False))

    def group(key: bytes) -> Tuple[bool, int]:
        signer, writable = flags[key]
        return key != payer, (0 if signer else 2) + (0 if writable else 1)

    keys = sorted(flags, key=group)
    index = {key: i for i, key in enumerate(keys)}
    num_required = sum(1 for key in keys if flags[key][0])
    readonly_signed = sum(1 for key in keys if flags[key] == (True, False))
    readonly_unsigned = sum(1 for key in keys if flags[key] == (False, False))

    compiled = [
        CompiledInstruction(
            program_id_index=index[ix.program_id],
            accounts=bytes(index[meta.pubkey] for meta in ix.accounts),
            data=ix.data,
        )
        for ix in instructions
    ]
    raw = (
        bytes([num_required, readonly_signed, readonly_unsigned])
        + encode_compact_u16(len(keys))
        + b"".join(keys)
        + recent_blockhash
        + encode_compact_u16(len(compiled))
        + b"".join(ix.serialize() for ix in compiled)
    )
    return Message.parse(raw)


def decode_blockhash(recent_blockhash: str) -> bytes:
    try:
        blockhash = base58.b58decode(recent_blockhash)
    except ValueError as exc:
        raise MalformedTransactionError("Recent blockhash is not valid base58") from exc
    if len(blockhash) != 32:
        raise MalformedTransactionError("Recent blockhash must be 32 bytes")
    return blockhash


def build_transfer(from_pubkey: str, to_pubkey: str, lamports: int, recent_blockhash: str) -> Transaction:
    """Unsigned legacy transaction moving ``lamports`` with the system program."""
    if lamports <= 0:
        raise ValueError("lamports must be positive")
    sender = decode_public_key(from_pubkey)
    recipient = decode_public_key(to_pubkey)

    instruction = Instruction(
        program_id=SYSTEM_PROGRAM_ID,
        accounts=[AccountMeta(sender, True, True), AccountMeta(recipient, False, True)],
        data=struct.pack("<IQ", _SYSTEM_TRANSFER_INSTRUCTION, lamports),
    )
    return Transaction.unsigned(compile_message(sender, [instruction], decode_blockhash(recent_blockhash)))
