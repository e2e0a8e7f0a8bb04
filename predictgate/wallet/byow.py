"""
Bring-your-own-wallet (BYOW) bundle protocol.

The key owner encrypts their base58 secret key locally with a password and
sends only the resulting bundle. The server stores the bundle as-is and can
only recover the key when the owner supplies the password again at signing
time.

Bundle wire format (all strings)::

    {
        "encryptedKey": "<hex ciphertext>:<hex auth tag>",
        "salt": "<hex, 32 bytes>",
        "iv": "<hex, 16 bytes>",
        "publicKey": "<base58, 32 bytes>",
        "version": "1.0"
    }

Key derivation is PBKDF2-HMAC-SHA512 (100,000 iterations, 32-byte output),
encryption is AES-256-GCM with a 16-byte IV and a 16-byte tag.
"""

from __future__ import annotations

import hmac
import logging
import os
from typing import Any, Dict, Mapping

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from predictgate.exceptions import (
    AuthenticationFailure,
    InvalidAddress,
    KeyMismatchError,
    MalformedBundleError,
    MalformedKeyError,
    WeakPasswordError,
)
from predictgate.wallet.encryption import zero_fill
from predictgate.wallet.keypair import PUBLIC_KEY_BYTES, Keypair, decode_public_key

logger = logging.getLogger(__name__)

BUNDLE_VERSION = "1.0"
SUPPORTED_VERSIONS = frozenset({BUNDLE_VERSION})
MIN_PASSWORD_LENGTH = 12

_SALT_BYTES = 32
_IV_BYTES = 16
_TAG_BYTES = 16
_KEY_BYTES = 32
_KDF_ITERATIONS = 100_000
_SEPARATOR = ":"


class WalletImportBundle(BaseModel):
    """Password-encrypted signing key plus the metadata needed to verify it."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid", frozen=True)

    encrypted_key: str = Field(alias="encryptedKey")
    salt: str
    iv: str
    public_key: str = Field(alias="publicKey")
    version: str

    @classmethod
    def from_wire(cls, payload: Mapping[str, Any]) -> WalletImportBundle:
        """Parse the JSON wire shape; unknown or missing fields are rejected."""
        if not isinstance(payload, Mapping):
            raise MalformedBundleError("Wallet import bundle must be a JSON object")
        try:
            return cls.model_validate(dict(payload))
        except ValidationError as exc:
            raise MalformedBundleError(f"Invalid wallet import bundle: {exc.error_count()} field error(s)") from exc

    def to_wire(self) -> Dict[str, str]:
        return self.model_dump(by_alias=True)


def validate_password(password: str) -> None:
    """Reject short passwords before any key derivation happens."""
    if not isinstance(password, str) or len(password) < MIN_PASSWORD_LENGTH:
        raise WeakPasswordError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")


def _derive_key(password: str, salt: bytes) -> bytes:
    """Derive the AES-256 key from the password using PBKDF2-HMAC-SHA512."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA512(),
        length=_KEY_BYTES,
        salt=salt,
        iterations=_KDF_ITERATIONS,
    )
    return kdf.derive(password.encode("utf-8"))


def encrypt_wallet_for_import(private_key_base58: str, password: str) -> WalletImportBundle:
    """
    Client-side: encrypt a base58 secret key into an import bundle.

    The plaintext under encryption is the base58 text itself, not the raw
    key bytes, so bundles interoperate with other clients of the format.
    """
    validate_password(password)
    with Keypair.from_base58(private_key_base58) as keypair:
        public_key = keypair.public_key

    salt = os.urandom(_SALT_BYTES)
    iv = os.urandom(_IV_BYTES)
    key = _derive_key(password, salt)
    sealed = AESGCM(key).encrypt(iv, private_key_base58.strip().encode("utf-8"), None)
    ciphertext, tag = sealed[:-_TAG_BYTES], sealed[-_TAG_BYTES:]

    return WalletImportBundle(
        encrypted_key=f"{ciphertext.hex()}{_SEPARATOR}{tag.hex()}",
        salt=salt.hex(),
        iv=iv.hex(),
        public_key=public_key,
        version=BUNDLE_VERSION,
    )


def _split_encrypted_key(encrypted_key: str) -> tuple[bytes, bytes]:
    parts = encrypted_key.split(_SEPARATOR)
    if len(parts) != 2 or not parts[0] or not parts[1]:
        raise MalformedBundleError("Invalid encrypted key format")
    try:
        return bytes.fromhex(parts[0]), bytes.fromhex(parts[1])
    except ValueError as exc:
        raise MalformedBundleError("Invalid encrypted key format") from exc


def decrypt_imported_wallet(bundle: WalletImportBundle, password: str) -> Keypair:
    """
    Server-side: recover the keypair from a bundle with the owner's password.

    The returned keypair is single-use; the caller must wipe it. Wrong
    passwords and corrupted data both surface as `AuthenticationFailure`.
    """
    ciphertext, tag = _split_encrypted_key(bundle.encrypted_key)
    try:
        salt = bytes.fromhex(bundle.salt)
        iv = bytes.fromhex(bundle.iv)
    except ValueError as exc:
        raise MalformedBundleError("Salt and IV must be hex encoded") from exc
    if not iv:
        raise MalformedBundleError("IV must not be empty")

    key = _derive_key(password or "", salt)
    try:
        plaintext = bytearray(AESGCM(key).decrypt(iv, ciphertext + tag, None))
    except InvalidTag as exc:
        logger.warning("Bundle authentication tag check failed for %s", bundle.public_key)
        raise AuthenticationFailure() from exc

    try:
        keypair = Keypair.from_base58(plaintext)
    except MalformedKeyError:
        logger.warning("Bundle for %s decrypted to a structurally invalid key", bundle.public_key)
        raise
    finally:
        zero_fill(plaintext)

    try:
        declared = decode_public_key(bundle.public_key)
    except InvalidAddress:
        keypair.wipe()
        raise KeyMismatchError()
    if not hmac.compare_digest(keypair.public_key_bytes, declared):
        keypair.wipe()
        logger.warning("Bundle public key mismatch for %s", bundle.public_key)
        raise KeyMismatchError()
    return keypair


def ensure_valid_bundle(bundle: WalletImportBundle) -> None:
    """
    Format-only verification, raising `MalformedBundleError` with the reason.

    Never decrypts, so it cannot tell whether the password is correct.
    """
    if bundle.version not in SUPPORTED_VERSIONS:
        raise MalformedBundleError(f"Unsupported bundle version: {bundle.version}")
    if not all((bundle.encrypted_key, bundle.salt, bundle.iv, bundle.public_key)):
        raise MalformedBundleError("Bundle is missing required fields")

    try:
        public_key = decode_public_key(bundle.public_key)
    except InvalidAddress as exc:
        raise MalformedBundleError("Bundle public key is not a valid Solana address") from exc
    if len(public_key) != PUBLIC_KEY_BYTES:
        raise MalformedBundleError("Bundle public key has the wrong length")

    try:
        salt = bytes.fromhex(bundle.salt)
        iv = bytes.fromhex(bundle.iv)
    except ValueError as exc:
        raise MalformedBundleError("Salt and IV must be hex encoded") from exc
    if len(salt) != _SALT_BYTES:
        raise MalformedBundleError(f"Salt must be {_SALT_BYTES} bytes")
    if len(iv) != _IV_BYTES:
        raise MalformedBundleError(f"IV must be {_IV_BYTES} bytes")

    _, tag = _split_encrypted_key(bundle.encrypted_key)
    if len(tag) != _TAG_BYTES:
        raise MalformedBundleError(f"Authentication tag must be {_TAG_BYTES} bytes")


def verify_wallet_import_bundle(bundle: WalletImportBundle) -> bool:
    """Boolean form of `ensure_valid_bundle`."""
    try:
        ensure_valid_bundle(bundle)
    except MalformedBundleError:
        return False
    return True


def get_wallet_export_instructions() -> str:
    return """
## How to Export Your Solana Wallet for Secure Import

### From Phantom Wallet:
1. Open Phantom and click the settings icon
2. Select your wallet, then "Export Private Key"
3. Enter your Phantom password and copy the private key

### From Solflare Wallet:
1. Open Solflare and go to Settings -> Security
2. Click "Export Private Key", authenticate, and copy the key

### Security Notes:
- NEVER share your raw private key with anyone
- Encrypt it locally with a strong, unique password (at least 12 characters)
- The encrypted bundle is safe to transmit; the server cannot decrypt it without your password
- You will provide the password each time you trade

### Encrypt and Import:
Run `python -m predictgate.wallet.encrypt_wallet` on YOUR machine, then pass the
printed JSON fields to the `import_wallet` tool.
"""
