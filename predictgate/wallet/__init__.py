"""
Wallet module for key custody and signing.

This module provides:
- SymmetricCipher: AES-256-GCM wrapping of server-custodied secrets
- WalletImportBundle / encrypt_wallet_for_import / decrypt_imported_wallet:
  the password-encrypted bring-your-own-wallet bundle protocol
- Keypair / Transaction: Ed25519 keys and the transaction wire codec
- SolanaRpcClient: async settlement-network client
- WalletCustodyService: resolve, generate, import and sign for a user
"""

from .byow import (
    BUNDLE_VERSION,
    MIN_PASSWORD_LENGTH,
    WalletImportBundle,
    decrypt_imported_wallet,
    encrypt_wallet_for_import,
    verify_wallet_import_bundle,
)
from .encryption import ENCRYPTED_PREFIX, SymmetricCipher
from .keypair import Keypair
from .rpc import SolanaRpcClient
from .service import WalletBalances, WalletCustodyService, WalletInfo, WalletKind
from .transaction import Transaction, build_transfer

__all__ = [
    # Bundle protocol
    "BUNDLE_VERSION",
    "MIN_PASSWORD_LENGTH",
    "WalletImportBundle",
    "encrypt_wallet_for_import",
    "decrypt_imported_wallet",
    "verify_wallet_import_bundle",
    # Server-side encryption
    "ENCRYPTED_PREFIX",
    "SymmetricCipher",
    # Keys and transactions
    "Keypair",
    "Transaction",
    "build_transfer",
    # Network and custody
    "SolanaRpcClient",
    "WalletCustodyService",
    "WalletInfo",
    "WalletBalances",
    "WalletKind",
]
