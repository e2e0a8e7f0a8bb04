"""
SPL token transfers: associated token account derivation and the two
instructions a custodied wallet needs to move tokens.

A transfer always carries an idempotent create of the recipient's
associated account, so it succeeds whether or not that account exists yet.
"""

from __future__ import annotations

import hashlib
import struct
from typing import Sequence, Tuple

import base58

from predictgate.wallet.keypair import decode_public_key
from predictgate.wallet.transaction import (
    SYSTEM_PROGRAM_ID,
    AccountMeta,
    Instruction,
    Transaction,
    compile_message,
    decode_blockhash,
)

TOKEN_PROGRAM_ID = "TokenkegQfeZyiNwAJbNbGqPFXCWuBvf9Ss623VQ5DA"
TOKEN_2022_PROGRAM_ID = "TokenzQdBNbLqP5VEhdkAS6EPFLC1PHnBqCXEpPxuEb"
ASSOCIATED_TOKEN_PROGRAM_ID = "ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL"
TOKEN_PROGRAMS = (TOKEN_PROGRAM_ID, TOKEN_2022_PROGRAM_ID)

_PDA_MARKER = b"ProgramDerivedAddress"
_MAX_SEEDS = 16
_MAX_SEED_LENGTH = 32
_CREATE_IDEMPOTENT = 1
_TRANSFER_CHECKED = 12

# edwards25519: -x^2 + y^2 = 1 + d x^2 y^2 over GF(2^255 - 19)
_P = 2**255 - 19
_D = -121665 * pow(121666, _P - 2, _P) % _P


def is_on_curve(point: bytes) -> bool:
    """True when ``point`` decompresses to an ed25519 curve point."""
    y = int.from_bytes(point, "little") & ((1 << 255) - 1)
    y2 = y * y % _P
    u = (y2 - 1) % _P
    v = (_D * y2 + 1) % _P
    x2 = u * pow(v, _P - 2, _P) % _P
    return x2 == 0 or pow(x2, (_P - 1) // 2, _P) == 1


def create_program_address(seeds: Sequence[bytes], program_id: bytes) -> bytes:
    if len(seeds) > _MAX_SEEDS or any(len(seed) > _MAX_SEED_LENGTH for seed in seeds):
        raise ValueError("Too many seeds or seed too long")
    digest = hashlib.sha256(b"".join(seeds) + program_id + _PDA_MARKER).digest()
    if is_on_curve(digest):
        raise ValueError("Derived address lies on the curve")
    return digest


def find_program_address(seeds: Sequence[bytes], program_id: bytes) -> Tuple[bytes, int]:
    """Return ``(address, bump)`` for the highest bump that lands off the curve."""
    for bump in range(255, 0, -1):
        try:
            return create_program_address([*seeds, bytes([bump])], program_id), bump
        except ValueError:
            continue
    raise ValueError("No viable bump seed for program address")


def get_associated_token_address(owner: str, mint: str, token_program: str = TOKEN_PROGRAM_ID) -> str:
    address, _ = find_program_address(
        [decode_public_key(owner), decode_public_key(token_program), decode_public_key(mint)],
        decode_public_key(ASSOCIATED_TOKEN_PROGRAM_ID),
    )
    return base58.b58encode(address).decode("ascii")


def create_associated_token_account_idempotent(
    payer: str, owner: str, mint: str, token_program: str = TOKEN_PROGRAM_ID
) -> Instruction:
    associated = get_associated_token_address(owner, mint, token_program)
    return Instruction(
        program_id=decode_public_key(ASSOCIATED_TOKEN_PROGRAM_ID),
        accounts=[
            AccountMeta(decode_public_key(payer), True, True),
            AccountMeta(decode_public_key(associated), False, True),
            AccountMeta(decode_public_key(owner), False, False),
            AccountMeta(decode_public_key(mint), False, False),
            AccountMeta(SYSTEM_PROGRAM_ID, False, False),
            AccountMeta(decode_public_key(token_program), False, False),
        ],
        data=bytes([_CREATE_IDEMPOTENT]),
    )


def transfer_checked(
    source: str,
    mint: str,
    destination: str,
    owner: str,
    amount: int,
    decimals: int,
    token_program: str = TOKEN_PROGRAM_ID,
) -> Instruction:
    return Instruction(
        program_id=decode_public_key(token_program),
        accounts=[
            AccountMeta(decode_public_key(source), False, True),
            AccountMeta(decode_public_key(mint), False, False),
            AccountMeta(decode_public_key(destination), False, True),
            AccountMeta(decode_public_key(owner), True, False),
        ],
        data=struct.pack("<BQB", _TRANSFER_CHECKED, amount, decimals),
    )


def build_token_transfer(
    owner: str,
    recipient: str,
    mint: str,
    amount: int,
    decimals: int,
    recent_blockhash: str,
    token_program: str = TOKEN_PROGRAM_ID,
) -> Transaction:
    """Unsigned transaction moving ``amount`` base units of ``mint`` from ``owner`` to ``recipient``."""
    if amount <= 0:
        raise ValueError("amount must be positive")
    if token_program not in TOKEN_PROGRAMS:
        raise ValueError(f"Unknown token program: {token_program}")
    source = get_associated_token_address(owner, mint, token_program)
    destination = get_associated_token_address(recipient, mint, token_program)
    instructions = [
        create_associated_token_account_idempotent(owner, recipient, mint, token_program),
        transfer_checked(source, mint, destination, owner, amount, decimals, token_program),
    ]
    message = compile_message(decode_public_key(owner), instructions, decode_blockhash(recent_blockhash))
    return Transaction.unsigned(message)
