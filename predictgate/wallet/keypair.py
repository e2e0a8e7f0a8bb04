"""
Ed25519 signing keypairs in the ledger's 64-byte secret-key layout.

Security model:
- The secret key (32-byte seed || 32-byte public key) lives in a ``bytearray``
  so it can be zeroed in place once the signing operation is over.
- ``wipe()`` is idempotent; a wiped keypair refuses to sign.
- The ``cryptography`` private-key object built inside ``sign()`` is a short
  lived copy that cannot be zeroed from Python. This is a runtime limitation.
"""

from __future__ import annotations

import hmac
from typing import Optional, Union

import base58
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey

from predictgate.exceptions import InvalidAddress, MalformedKeyError
from predictgate.wallet.encryption import zero_fill

SEED_BYTES = 32
PUBLIC_KEY_BYTES = 32
SECRET_KEY_BYTES = SEED_BYTES + PUBLIC_KEY_BYTES
SIGNATURE_BYTES = 64


def decode_public_key(address: str) -> bytes:
    """Decode a base58 public key, rejecting anything that is not 32 bytes."""
    if not isinstance(address, str) or not address.strip():
        raise InvalidAddress()
    try:
        raw = base58.b58decode(address.strip())
    except ValueError as exc:
        raise InvalidAddress(f"Invalid Solana address: {address}") from exc
    if len(raw) != PUBLIC_KEY_BYTES:
        raise InvalidAddress(f"Invalid Solana address: {address}")
    return raw


def _public_from_seed(seed: Union[bytes, bytearray]) -> bytes:
    private_key = Ed25519PrivateKey.from_private_bytes(bytes(seed))
    return private_key.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )


class Keypair:
    """Single-use holder for a signing keypair; wipe it as soon as it has signed."""

    def __init__(self, secret_key: bytearray):
        # Takes ownership of the buffer: the caller must not keep using it.
        self._secret = secret_key
        self._public = bytes(secret_key[SEED_BYTES:])
        self._wiped = False

    @classmethod
    def generate(cls) -> Keypair:
        private_key = Ed25519PrivateKey.generate()
        seed = private_key.private_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PrivateFormat.Raw,
            encryption_algorithm=serialization.NoEncryption(),
        )
        public = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )
        return cls(bytearray(seed + public))

    @classmethod
    def from_secret_key(cls, secret_key: Union[bytes, bytearray]) -> Keypair:
        """
        Build a keypair from a 64-byte secret key.

        The trailing 32 bytes must equal the public key derived from the seed,
        otherwise the key is rejected as malformed.
        """
        if len(secret_key) != SECRET_KEY_BYTES:
            raise MalformedKeyError(f"Secret key must be {SECRET_KEY_BYTES} bytes, got {len(secret_key)}")
        buf = bytearray(secret_key)
        try:
            derived = _public_from_seed(buf[:SEED_BYTES])
        except ValueError as exc:
            zero_fill(buf)
            raise MalformedKeyError() from exc
        if not hmac.compare_digest(derived, bytes(buf[SEED_BYTES:])):
            zero_fill(buf)
            raise MalformedKeyError("Secret key does not match its embedded public key")
        return cls(buf)

    @classmethod
    def from_base58(cls, value: Union[str, bytes, bytearray]) -> Keypair:
        """Parse the base58 text encoding used by wallet exports."""
        try:
            raw = bytearray(base58.b58decode(value.strip() if isinstance(value, str) else bytes(value).strip()))
        except ValueError as exc:
            raise MalformedKeyError("Invalid Solana private key format") from exc
        try:
            return cls.from_secret_key(raw)
        finally:
            zero_fill(raw)

    @property
    def public_key_bytes(self) -> bytes:
        return self._public

    @property
    def public_key(self) -> str:
        return base58.b58encode(self._public).decode("ascii")

    @property
    def secret_buffer(self) -> bytearray:
        """The live secret buffer. Exposed for wipe verification only."""
        return self._secret

    @property
    def is_wiped(self) -> bool:
        return self._wiped

    def sign(self, message: bytes) -> bytes:
        if self._wiped:
            raise RuntimeError("Keypair has been wiped and can no longer sign.")
        private_key = Ed25519PrivateKey.from_private_bytes(bytes(self._secret[:SEED_BYTES]))
        return private_key.sign(message)

    def to_base58(self) -> str:
        """Encode the secret key for export. The returned str cannot be wiped."""
        if self._wiped:
            raise RuntimeError("Keypair has been wiped.")
        return base58.b58encode(bytes(self._secret)).decode("ascii")

    def wipe(self) -> None:
        zero_fill(self._secret)
        self._wiped = True

    def __enter__(self) -> Keypair:
        return self

    def __exit__(self, exc_type, exc, tb) -> Optional[bool]:
        self.wipe()
        return None

    def __repr__(self) -> str:
        return f"Keypair(public_key={self.public_key!r})"


def verify_signature(public_key: bytes, signature: bytes, message: bytes) -> bool:
    """Check an Ed25519 signature against a raw 32-byte public key."""
    try:
        Ed25519PublicKey.from_public_bytes(public_key).verify(signature, message)
    except InvalidSignature:
        return False
    return True
