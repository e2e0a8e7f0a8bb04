"""
AES-GCM helpers for protecting server-custodied secrets with the master key.

Values wrapped here are ones the server is allowed to decrypt on demand
(generated wallets, API secrets). Imported wallets use the password-based
bundle format in ``predictgate.wallet.byow`` instead.
"""

import base64
import binascii
import os
import re

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from predictgate.exceptions import ConfigurationError, DecryptionError

ENCRYPTED_PREFIX = "ENC:v1:"
_NONCE_BYTES = 12
_TAG_BYTES = 16
_MASTER_KEY_RE = re.compile(r"[0-9a-fA-F]{64}")


class SymmetricCipher:
    """
    Wraps and unwraps opaque strings with a process-wide AES-256 master key.

    Blob format: ``ENC:v1:<urlsafe-base64(nonce || ciphertext || tag)>``.
    A fresh random nonce is drawn for every call.
    """

    def __init__(self, master_key_hex: str):
        if not master_key_hex or not _MASTER_KEY_RE.fullmatch(master_key_hex):
            raise ConfigurationError("ENCRYPTION_KEY must be a 64-character hex string (32 bytes)")
        self._aesgcm = AESGCM(bytes.fromhex(master_key_hex))

    def encrypt(self, plaintext: str) -> str:
        if not plaintext:
            raise ValueError("plaintext is required for encryption.")
        nonce = os.urandom(_NONCE_BYTES)
        ciphertext = self._aesgcm.encrypt(nonce, plaintext.encode("utf-8"), None)
        payload = base64.urlsafe_b64encode(nonce + ciphertext).decode("utf-8")
        return f"{ENCRYPTED_PREFIX}{payload}"

    def decrypt_bytes(self, blob: str) -> bytearray:
        """
        Decrypt a blob into a mutable buffer.

        Prefer this over `decrypt` for key material so the caller can zero the
        buffer once it is done with it.
        """
        if not blob or not blob.startswith(ENCRYPTED_PREFIX):
            raise DecryptionError("Encrypted value must start with ENC:v1:")
        try:
            payload = base64.urlsafe_b64decode(blob[len(ENCRYPTED_PREFIX) :])
        except (binascii.Error, ValueError) as exc:
            raise DecryptionError("Encrypted value is not valid base64.") from exc
        if len(payload) < _NONCE_BYTES + _TAG_BYTES:
            raise DecryptionError("Encrypted payload is malformed or truncated.")

        nonce, ciphertext = payload[:_NONCE_BYTES], payload[_NONCE_BYTES:]
        try:
            return bytearray(self._aesgcm.decrypt(nonce, ciphertext, None))
        except InvalidTag as exc:
            raise DecryptionError("Authentication tag mismatch; data was tampered with or the key is wrong.") from exc

    def decrypt(self, blob: str) -> str:
        buf = self.decrypt_bytes(blob)
        try:
            return buf.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DecryptionError("Decrypted value is not valid UTF-8.") from exc
        finally:
            zero_fill(buf)


def zero_fill(buf: bytearray) -> None:
    """
    Zero-fill a bytearray in-place.

    Best effort only: the runtime may already hold copies (immutable ``bytes``
    returned by the cipher, base58 intermediates) that cannot be overwritten.
    """
    for i in range(len(buf)):
        buf[i] = 0
