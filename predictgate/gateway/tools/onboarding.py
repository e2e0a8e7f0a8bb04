"""Tools that run before the caller has an API key."""

from typing import Any, ClassVar, Dict, Optional

from predictgate.db.users import UserRepository
from predictgate.exceptions import CredentialError, UserAlreadyExists, WalletAlreadyRegistered
from predictgate.gateway.base import GatewayTool, ToolContext
from predictgate.wallet.byow import get_wallet_export_instructions
from predictgate.wallet.keypair import Keypair

_ENCRYPTION_EXAMPLE = """
# Run this on YOUR machine (not on our servers)
import os
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

def encrypt_wallet(private_key_base58, public_key, password):
    salt = os.urandom(32)
    iv = os.urandom(16)
    key = PBKDF2HMAC(hashes.SHA512(), 32, salt, 100_000).derive(password.encode())
    sealed = AESGCM(key).encrypt(iv, private_key_base58.encode(), None)
    return {
        "encryptedKey": sealed[:-16].hex() + ":" + sealed[-16:].hex(),
        "salt": salt.hex(),
        "iv": iv.hex(),
        "publicKey": public_key,
        "version": "1.0",
    }
"""


async def _create_user(services, external_id: str) -> str:
    async with services.db.session() as session:
        users = UserRepository(session)
        if await users.get_by_external_id(external_id) is not None:
            raise UserAlreadyExists(
                "User with this externalId already exists. "
                "Use request_api_key with an access code, or use a different externalId."
            )
        user = await users.create(external_id)
        await users.log_activity(user.id, "USER_CREATED", "user", externalId=external_id)
        return user.id


class SignupTool(GatewayTool):
    name: str = "signup"
    description: str = (
        "Create a new account with a server-custodied wallet. Returns an API key and secret "
        "that are shown only once."
    )
    parameters: dict = {
        "type": "object",
        "properties": {
            "externalId": {"type": "string", "description": "Your unique identifier (e.g. email or username)"},
            "keyName": {"type": "string", "description": "Optional label for the API key"},
        },
        "required": ["externalId"],
    }
    requires_auth: ClassVar[bool] = False

    async def execute(self, context: ToolContext, externalId: str, keyName: Optional[str] = None) -> Dict[str, Any]:
        user_id = await _create_user(self.services, externalId)
        wallet = await self.services.wallets.generate(user_id)
        key = await self.services.api_keys.create_api_key(user_id, keyName or "Default Key")
        return {
            "message": "Account created successfully. Save your API key - it cannot be recovered!",
            "apiKey": key.api_key,
            "apiSecret": key.api_secret,
            "publicKey": wallet.public_key,
            "walletType": wallet.kind.value,
        }


class RequestApiKeyTool(GatewayTool):
    name: str = "request_api_key"
    description: str = "Exchange an access code for an API key. Creates the user if it does not exist yet."
    parameters: dict = {
        "type": "object",
        "properties": {
            "accessCode": {"type": "string", "description": "Access code issued by an administrator"},
            "externalId": {"type": "string", "description": "Your unique identifier"},
            "keyName": {"type": "string", "description": "Optional label for the API key"},
        },
        "required": ["accessCode", "externalId"],
    }
    requires_auth: ClassVar[bool] = False

    async def execute(
        self, context: ToolContext, accessCode: str, externalId: str, keyName: Optional[str] = None
    ) -> Dict[str, Any]:
        validation = await self.services.access_codes.validate_and_use(accessCode)
        if not validation.is_valid:
            raise CredentialError(validation.message)

        async with self.services.db.session() as session:
            users = UserRepository(session)
            user = await users.get_by_external_id(externalId)
            if user is None:
                user = await users.create(externalId)
            user_id = user.id

        key = await self.services.api_keys.create_api_key(user_id, keyName)
        return {
            "message": "API key created successfully",
            "apiKey": key.api_key,
            "apiSecret": key.api_secret,
            "keyPrefix": key.key_prefix,
            "userId": user_id,
            "nextSteps": {
                "mcpClient": {
                    "description": "Add this server to your MCP client configuration:",
                    "config": {
                        "predictgate": {
                            "url": self.services.settings.public_url,
                            "headers": {"x-api-key": key.api_key},
                        }
                    },
                }
            },
        }


class ImportPrivateKeyTool(GatewayTool):
    name: str = "import_private_key"
    description: str = (
        "Create an account from an existing base58 private key. The server stores the key encrypted "
        "and can sign without a password. Prefer import_wallet to keep the key under your own password."
    )
    parameters: dict = {
        "type": "object",
        "properties": {
            "externalId": {"type": "string", "description": "Your unique identifier"},
            "privateKey": {"type": "string", "description": "Base58-encoded 64-byte secret key"},
            "keyName": {"type": "string", "description": "Optional label for the API key"},
        },
        "required": ["externalId", "privateKey"],
    }
    requires_auth: ClassVar[bool] = False

    async def execute(
        self, context: ToolContext, externalId: str, privateKey: str, keyName: Optional[str] = None
    ) -> Dict[str, Any]:
        # Reject a bad or already registered key before a user row is created for it.
        with Keypair.from_base58(privateKey) as keypair:
            public_key = keypair.public_key
        async with self.services.db.session() as session:
            if await UserRepository(session).get_by_wallet(public_key) is not None:
                raise WalletAlreadyRegistered()
        user_id = await _create_user(self.services, externalId)
        wallet = await self.services.wallets.adopt_private_key(user_id, privateKey)
        key = await self.services.api_keys.create_api_key(user_id, keyName or "Imported Wallet")
        return {
            "success": True,
            "apiKey": key.api_key,
            "apiSecret": key.api_secret,
            "publicKey": wallet.public_key,
            "message": "Private key imported successfully. Save your API key - it cannot be recovered!",
        }


class GetWalletImportInstructionsTool(GatewayTool):
    name: str = "get_wallet_import_instructions"
    description: str = "How to export a wallet and encrypt it locally for import_wallet."
    requires_auth: ClassVar[bool] = False

    async def execute(self, context: ToolContext) -> Dict[str, Any]:
        return {
            "instructions": get_wallet_export_instructions(),
            "encryptionExample": _ENCRYPTION_EXAMPLE,
        }
