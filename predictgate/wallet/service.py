"""
Wallet custody: the single authority for whether a user has signing material
and for producing a usable keypair when a transaction must be signed.

Resolution order is fixed: an imported wallet always wins over a generated
one, for signing and for balance queries alike.

Limitations:
- Key wiping is best effort. The keypair buffer is zeroed in a ``finally``
  block, but ``bytes`` copies made by the crypto library or by base58
  decoding cannot be overwritten from Python.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import weakref
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import AsyncIterator, Dict, List, Optional, Union

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from predictgate.config import LAMPORTS_PER_SOL, SOL_DECIMALS, USDC_DECIMALS, WRAPPED_SOL_MINT, GatewaySettings
from predictgate.db.database import Database
from predictgate.db.models import UserTable, WalletAddressTable
from predictgate.db.users import UserRepository
from predictgate.exceptions import (
    ConfirmationTimeout,
    InsufficientFundsError,
    InvalidRequestError,
    KeyMismatchError,
    NoWalletFound,
    PasswordRequired,
    TransientError,
    UserNotFound,
    WalletAlreadyRegistered,
    WalletExportNotAllowed,
)
from predictgate.utils.amounts import to_base_units
from predictgate.wallet.byow import WalletImportBundle, decrypt_imported_wallet, ensure_valid_bundle
from predictgate.wallet.encryption import SymmetricCipher, zero_fill
from predictgate.wallet.keypair import Keypair, decode_public_key
from predictgate.wallet.rpc import SolanaRpcClient
from predictgate.wallet.spl import TOKEN_PROGRAMS, build_token_transfer, get_associated_token_address
from predictgate.wallet.transaction import Transaction, build_transfer

logger = logging.getLogger(__name__)

TRANSFER_FEE_LAMPORTS = 5000
MIN_SOL_FOR_FEES = 0.001
EXPLORER_TX_URL = "https://solscan.io/tx/{}"


class WalletKind(str, Enum):
    GENERATED = "generated"
    IMPORTED = "imported"


@dataclass(frozen=True)
class WalletInfo:
    public_key: str
    kind: WalletKind
    created_at: datetime

    def to_dict(self) -> Dict[str, str]:
        return {
            "publicKey": self.public_key,
            "type": self.kind.value,
            "createdAt": self.created_at.isoformat(),
        }


@dataclass
class WalletBalances:
    sol: float
    usdc: float
    lamports: int = 0


@dataclass(frozen=True)
class TokenHolding:
    mint: str
    balance: str
    decimals: int
    ui_amount: float


@dataclass(frozen=True)
class TransferResult:
    tx_signature: str
    from_address: str
    to_address: str
    amount: float
    mint: Optional[str] = None

    @property
    def explorer_url(self) -> str:
        return EXPLORER_TX_URL.format(self.tx_signature)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WalletCustodyService:
    """Generate, import, resolve and sign for user wallets."""

    def __init__(
        self,
        db: Database,
        cipher: SymmetricCipher,
        rpc: SolanaRpcClient,
        settings: GatewaySettings,
    ):
        self.db = db
        self.cipher = cipher
        self.rpc = rpc
        self.settings = settings
        self._signing_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    # ------------------------------------------------------------------ #
    # Registration
    # ------------------------------------------------------------------ #

    async def generate(self, user_id: str) -> WalletInfo:
        """
        Create a fresh server-custodied keypair for ``user_id``.

        Never overwrites: raises `WalletAlreadyRegistered` when the user
        already has a generated wallet.
        """
        with Keypair.generate() as keypair:
            public_key = keypair.public_key
            encrypted = self.cipher.encrypt(keypair.to_base58())
        await self._store_generated(user_id, public_key, encrypted)
        logger.info("Generated wallet %s for user %s", public_key, user_id)
        return WalletInfo(public_key, WalletKind.GENERATED, _utcnow())

    async def adopt_private_key(self, user_id: str, private_key_base58: str) -> WalletInfo:
        """Take custody of a caller-supplied raw key as a generated-kind wallet."""
        with Keypair.from_base58(private_key_base58) as keypair:
            public_key = keypair.public_key
            encrypted = self.cipher.encrypt(keypair.to_base58())
        await self._store_generated(user_id, public_key, encrypted, action="PRIVATE_KEY_IMPORT")
        logger.info("Adopted raw private key %s for user %s", public_key, user_id)
        return WalletInfo(public_key, WalletKind.GENERATED, _utcnow())

    async def _store_generated(
        self, user_id: str, public_key: str, encrypted: str, action: str = "WALLET_CREATED"
    ) -> None:
        try:
            async with self.db.session() as session:
                user = await session.get(UserTable, user_id)
                if user is None:
                    raise UserNotFound()
                if user.solana_public_key:
                    raise WalletAlreadyRegistered("A generated wallet already exists for this user")
                owner = await session.get(WalletAddressTable, public_key)
                if owner is not None and owner.user_id != user_id:
                    raise WalletAlreadyRegistered()
                if owner is None:
                    session.add(
                        WalletAddressTable(public_key=public_key, user_id=user_id, kind=WalletKind.GENERATED.value)
                    )
                result = await session.execute(
                    update(UserTable)
                    .where(UserTable.id == user_id, UserTable.solana_public_key.is_(None))
                    .values(solana_public_key=public_key, encrypted_private_key=encrypted)
                )
                if result.rowcount != 1:
                    raise WalletAlreadyRegistered("A generated wallet already exists for this user")
                await UserRepository(session).log_activity(
                    user_id, action, "wallet", walletPublicKey=public_key
                )
        except IntegrityError as e:
            raise WalletAlreadyRegistered() from e

    async def import_bundle(self, user_id: str, bundle: WalletImportBundle) -> WalletInfo:
        """
        Store a BYOW bundle for ``user_id`` without decrypting it.

        A public key may belong to only one user. A second import for a user
        who already has an imported wallet is rejected rather than
        overwriting it. Importing the user's own generated key is allowed.
        """
        ensure_valid_bundle(bundle)
        imported_at = _utcnow()
        try:
            async with self.db.session() as session:
                user = await session.get(UserTable, user_id)
                if user is None:
                    raise UserNotFound()
                if user.imported_wallet_public_key:
                    raise WalletAlreadyRegistered("An imported wallet is already registered for this user")
                owner = await session.get(WalletAddressTable, bundle.public_key)
                if owner is not None and owner.user_id != user_id:
                    raise WalletAlreadyRegistered()
                if owner is None:
                    session.add(
                        WalletAddressTable(
                            public_key=bundle.public_key, user_id=user_id, kind=WalletKind.IMPORTED.value
                        )
                    )
                result = await session.execute(
                    update(UserTable)
                    .where(UserTable.id == user_id, UserTable.imported_wallet_public_key.is_(None))
                    .values(
                        imported_wallet_public_key=bundle.public_key,
                        imported_wallet_encrypted=bundle.encrypted_key,
                        imported_wallet_salt=bundle.salt,
                        imported_wallet_iv=bundle.iv,
                        imported_wallet_version=bundle.version,
                        wallet_imported_at=imported_at,
                    )
                )
                if result.rowcount != 1:
                    raise WalletAlreadyRegistered("An imported wallet is already registered for this user")
                await UserRepository(session).log_activity(
                    user_id, "WALLET_IMPORTED", "wallet", walletPublicKey=bundle.public_key
                )
        except IntegrityError as e:
            raise WalletAlreadyRegistered() from e

        logger.info("Imported wallet %s for user %s", bundle.public_key, user_id)
        return WalletInfo(bundle.public_key, WalletKind.IMPORTED, imported_at)

    # ------------------------------------------------------------------ #
    # Resolution
    # ------------------------------------------------------------------ #

    @staticmethod
    def _wallet_of(user: UserTable) -> Optional[WalletInfo]:
        if user.imported_wallet_public_key:
            return WalletInfo(
                user.imported_wallet_public_key,
                WalletKind.IMPORTED,
                user.wallet_imported_at or user.created_at,
            )
        if user.solana_public_key:
            return WalletInfo(user.solana_public_key, WalletKind.GENERATED, user.created_at)
        return None

    async def resolve(self, user_id: str) -> Optional[WalletInfo]:
        """Imported wallet if present, else the generated one, else None."""
        async with self.db.session() as session:
            user = await session.get(UserTable, user_id)
            if user is None:
                return None
            return self._wallet_of(user)

    async def require_wallet(self, user_id: str) -> WalletInfo:
        wallet = await self.resolve(user_id)
        if wallet is None:
            raise NoWalletFound()
        return wallet

    # ------------------------------------------------------------------ #
    # Signing
    # ------------------------------------------------------------------ #

    def _signing_guard(self, user_id: str):
        if not self.settings.serialize_signing:
            return contextlib.nullcontext()
        lock = self._signing_locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._signing_locks[user_id] = lock
        return lock

    async def _load_keypair(self, user_id: str, password: Optional[str]) -> Keypair:
        async with self.db.session() as session:
            user = await session.get(UserTable, user_id)
            wallet = self._wallet_of(user) if user is not None else None
            if wallet is None:
                raise NoWalletFound()

            if wallet.kind is WalletKind.IMPORTED:
                if not password:
                    raise PasswordRequired()
                bundle = WalletImportBundle(
                    encrypted_key=user.imported_wallet_encrypted,
                    salt=user.imported_wallet_salt,
                    iv=user.imported_wallet_iv,
                    public_key=user.imported_wallet_public_key,
                    version=user.imported_wallet_version or "1.0",
                )
            else:
                bundle = None
                encrypted = user.encrypted_private_key

        if bundle is not None:
            # PBKDF2 is CPU bound; keep it off the event loop.
            return await asyncio.to_thread(decrypt_imported_wallet, bundle, password)

        buf = self.cipher.decrypt_bytes(encrypted)
        try:
            keypair = Keypair.from_base58(buf)
        finally:
            zero_fill(buf)
        if keypair.public_key != wallet.public_key:
            keypair.wipe()
            raise KeyMismatchError()
        return keypair

    @asynccontextmanager
    async def signing_keypair(self, user_id: str, password: Optional[str] = None) -> AsyncIterator[Keypair]:
        """
        Yield a single-use keypair for ``user_id``.

        Generated wallets are decrypted with the master key. Imported wallets
        need the owner's password and raise `PasswordRequired` without it.
        The keypair is wiped when the block exits, whether or not it raised.
        """
        async with self._signing_guard(user_id):
            keypair = await self._load_keypair(user_id, password)
            try:
                yield keypair
            finally:
                keypair.wipe()

    async def sign_and_submit(
        self,
        user_id: str,
        unsigned_tx: Union[Transaction, bytes, str],
        password: Optional[str] = None,
        *,
        confirm: bool = True,
    ) -> str:
        """
        Sign ``unsigned_tx`` with the user's wallet, submit it and wait for
        confirmation. Returns the transaction signature.

        The key is wiped before the network round trip starts. Once the
        transaction has been accepted, any failure to learn its fate raises
        `ConfirmationTimeout` carrying the signature: the outcome is unknown,
        so poll the signature rather than resubmitting.
        """
        if isinstance(unsigned_tx, Transaction):
            tx = unsigned_tx
        elif isinstance(unsigned_tx, str):
            tx = Transaction.from_base64(unsigned_tx)
        else:
            tx = Transaction.from_bytes(unsigned_tx)

        async with self.signing_keypair(user_id, password) as keypair:
            tx.sign(keypair)
        raw = tx.serialize()

        signature = await self.rpc.send_transaction(raw)
        logger.info("Submitted transaction %s for user %s", signature, user_id)
        if confirm:
            await self._await_confirmation(signature)
        return signature

    async def _await_confirmation(self, signature: str) -> None:
        try:
            await self.rpc.confirm_transaction(signature, timeout=self.settings.confirmation_timeout)
        except ConfirmationTimeout:
            raise
        except TransientError as e:
            # Already submitted: a retriable error here would invite a double spend.
            logger.warning("Lost track of submitted transaction %s: %s", signature, e.message)
            raise ConfirmationTimeout(
                signature,
                f"Could not confirm transaction {signature} ({e.kind}); status unknown, poll before retrying",
            ) from e

    async def export_private_key(self, user_id: str) -> Dict[str, str]:
        """Return the raw key of a generated wallet. Imported wallets cannot be exported."""
        wallet = await self.require_wallet(user_id)
        if wallet.kind is WalletKind.IMPORTED:
            raise WalletExportNotAllowed()

        async with self.signing_keypair(user_id) as keypair:
            private_key = keypair.to_base58()

        async with self.db.session() as session:
            await UserRepository(session).log_activity(
                user_id,
                "PRIVATE_KEY_EXPORT",
                "wallet",
                timestamp=_utcnow().isoformat(),
                note="Raw private key exported",
            )
        logger.warning("Private key exported for user %s", user_id)
        return {"privateKey": private_key, "publicKey": wallet.public_key}

    async def send_sol(
        self, user_id: str, to_address: str, sol_amount: float, password: Optional[str] = None
    ) -> TransferResult:
        wallet = await self.require_wallet(user_id)
        if wallet.kind is WalletKind.IMPORTED and not password:
            raise PasswordRequired()
        decode_public_key(to_address)
        lamports = to_base_units(sol_amount, SOL_DECIMALS)

        balance = await self.rpc.get_balance(wallet.public_key)
        if balance < lamports + TRANSFER_FEE_LAMPORTS:
            raise InsufficientFundsError(
                f"Insufficient SOL balance. Have: {balance / LAMPORTS_PER_SOL}, need: {sol_amount} + fee"
            )

        blockhash = await self.rpc.get_latest_blockhash()
        tx = build_transfer(wallet.public_key, to_address, lamports, blockhash)
        signature = await self.sign_and_submit(user_id, tx, password)
        return TransferResult(signature, wallet.public_key, to_address, sol_amount)

    async def send_token(
        self,
        user_id: str,
        to_address: str,
        mint: str,
        amount: float,
        decimals: int,
        password: Optional[str] = None,
    ) -> TransferResult:
        """
        Send ``amount`` whole tokens of ``mint`` from the user's associated
        token account to the recipient's, creating the latter if needed.
        Works for both the Token and Token-2022 programs.
        """
        wallet = await self.require_wallet(user_id)
        if wallet.kind is WalletKind.IMPORTED and not password:
            raise PasswordRequired()
        decode_public_key(to_address)
        decode_public_key(mint)
        if not 0 <= decimals <= 255:
            raise InvalidRequestError("decimals must be between 0 and 255")
        raw_amount = to_base_units(amount, decimals)

        token_program = await self.rpc.get_account_owner(mint)
        if token_program not in TOKEN_PROGRAMS:
            raise InvalidRequestError(f"{mint} is not a token mint")

        source = get_associated_token_address(wallet.public_key, mint, token_program)
        accounts = await self.rpc.get_token_accounts_by_owner(wallet.public_key, mint=mint)
        held = next((account for account in accounts if account["address"] == source), None)
        if held is None:
            raise InsufficientFundsError("Source token account not found")
        if held["decimals"] != decimals:
            raise InvalidRequestError(f"Token {mint} has {held['decimals']} decimals, not {decimals}")
        if int(held["amount"]) < raw_amount:
            raise InsufficientFundsError(f"Insufficient token balance. Have: {held['ui_amount']}, need: {amount}")

        blockhash = await self.rpc.get_latest_blockhash()
        tx = build_token_transfer(wallet.public_key, to_address, mint, raw_amount, decimals, blockhash, token_program)
        signature = await self.sign_and_submit(user_id, tx, password)
        logger.info("Sent %s of %s from %s to %s", amount, mint, wallet.public_key, to_address)
        return TransferResult(signature, wallet.public_key, to_address, amount, mint=mint)

    async def send_usdc(
        self, user_id: str, to_address: str, usdc_amount: float, password: Optional[str] = None
    ) -> TransferResult:
        return await self.send_token(
            user_id, to_address, self.settings.tokens.usdc, usdc_amount, USDC_DECIMALS, password
        )

    # ------------------------------------------------------------------ #
    # Read-only queries
    # ------------------------------------------------------------------ #

    async def get_balances(self, public_key: str) -> WalletBalances:
        decode_public_key(public_key)
        lamports = await self.rpc.get_balance(public_key)
        usdc_accounts = await self.rpc.get_token_accounts_by_owner(public_key, mint=self.settings.tokens.usdc)
        usdc = sum(account["ui_amount"] for account in usdc_accounts)
        return WalletBalances(sol=lamports / LAMPORTS_PER_SOL, usdc=usdc, lamports=lamports)

    async def get_token_holdings(self, public_key: str) -> List[TokenHolding]:
        decode_public_key(public_key)
        accounts = await self.rpc.get_token_accounts_by_owner(public_key)
        return [
            TokenHolding(
                mint=account["mint"],
                balance=account["amount"],
                decimals=account["decimals"],
                ui_amount=account["ui_amount"],
            )
            for account in accounts
        ]

    async def wallet_status(self, user_id: str) -> Dict[str, object]:
        wallet = await self.resolve(user_id)
        if wallet is None:
            return {"hasWallet": False, "message": NoWalletFound.default_message}

        balances = await self.get_balances(wallet.public_key)
        holdings = await self.get_token_holdings(wallet.public_key)
        market_tokens = [h for h in holdings if h.mint not in (self.settings.tokens.usdc, WRAPPED_SOL_MINT)]

        if balances.sol < MIN_SOL_FOR_FEES:
            message = "Low SOL balance - need SOL for transaction fees"
        elif balances.usdc == 0:
            message = "No USDC balance - deposit USDC to start trading"
        else:
            message = "Wallet ready for trading"

        return {
            "hasWallet": True,
            "walletType": wallet.kind.value,
            "publicKey": wallet.public_key,
            "balances": {"sol": balances.sol, "usdc": balances.usdc},
            "predictionMarketTokenCount": len(market_tokens),
            "status": "READY" if balances.sol > MIN_SOL_FOR_FEES and balances.usdc > 0 else "NEEDS_FUNDING",
            "message": message,
        }
