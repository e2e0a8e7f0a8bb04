from typing import Any, Dict, Optional

from predictgate.exceptions import NoWalletFound
from predictgate.gateway.base import GatewayTool, ToolContext
from predictgate.wallet.byow import BUNDLE_VERSION, WalletImportBundle

_PASSWORD_PARAM = {"type": "string", "description": "Wallet password (required for imported wallets only)"}


class SetupWalletTool(GatewayTool):
    name: str = "setup_wallet"
    description: str = "Generate a server-custodied wallet. Returns the existing wallet if one is already set up."

    async def execute(self, context: ToolContext) -> Dict[str, Any]:
        wallets = self.services.wallets
        existing = await wallets.resolve(context.user_id)
        if existing is not None:
            return {"message": "Wallet already exists", "wallet": existing.to_dict()}
        wallet = await wallets.generate(context.user_id)
        return {
            "message": "Solana wallet generated successfully",
            "wallet": wallet.to_dict(),
            "note": "Your private key is encrypted and stored securely. "
            "Fund this address with SOL and USDC to start trading.",
        }


class ImportWalletTool(GatewayTool):
    name: str = "import_wallet"
    description: str = (
        "Import your own wallet as a password-encrypted bundle (see get_wallet_import_instructions). "
        "The server cannot decrypt it; you supply the password for each transaction."
    )
    parameters: dict = {
        "type": "object",
        "properties": {
            "encryptedKey": {"type": "string", "description": "<hex ciphertext>:<hex auth tag>"},
            "salt": {"type": "string", "description": "Hex salt (32 bytes)"},
            "iv": {"type": "string", "description": "Hex IV (16 bytes)"},
            "publicKey": {"type": "string", "description": "Base58 public key of the wallet"},
            "version": {"type": "string", "description": "Bundle format version", "default": BUNDLE_VERSION},
        },
        "required": ["encryptedKey", "salt", "iv", "publicKey"],
    }

    async def execute(
        self,
        context: ToolContext,
        encryptedKey: str,
        salt: str,
        iv: str,
        publicKey: str,
        version: Optional[str] = None,
    ) -> Dict[str, Any]:
        bundle = WalletImportBundle.from_wire(
            {
                "encryptedKey": encryptedKey,
                "salt": salt,
                "iv": iv,
                "publicKey": publicKey,
                "version": version or BUNDLE_VERSION,
            }
        )
        wallet = await self.services.wallets.import_bundle(context.user_id, bundle)
        return {
            "message": "Wallet imported successfully",
            "wallet": wallet.to_dict(),
            "note": "You will need to provide your password each time you make a transaction.",
        }


class GetWalletInfoTool(GatewayTool):
    name: str = "get_wallet_info"
    description: str = "Show the wallet used for signing (an imported wallet takes precedence)."

    async def execute(self, context: ToolContext) -> Dict[str, Any]:
        wallet = await self.services.wallets.resolve(context.user_id)
        if wallet is None:
            return {"message": NoWalletFound.default_message}
        return {"wallet": wallet.to_dict()}


class GetBalancesTool(GatewayTool):
    name: str = "get_balances"
    description: str = "SOL and USDC balances of your wallet."

    async def execute(self, context: ToolContext) -> Dict[str, Any]:
        wallets = self.services.wallets
        wallet = await wallets.require_wallet(context.user_id)
        balances = await wallets.get_balances(wallet.public_key)
        return {
            "publicKey": wallet.public_key,
            "balances": {"sol": balances.sol, "usdc": balances.usdc},
        }


class GetTokenHoldingsTool(GatewayTool):
    name: str = "get_token_holdings"
    description: str = "All SPL token accounts held by your wallet, including outcome tokens."

    async def execute(self, context: ToolContext) -> Dict[str, Any]:
        wallets = self.services.wallets
        wallet = await wallets.require_wallet(context.user_id)
        holdings = await wallets.get_token_holdings(wallet.public_key)
        return {
            "publicKey": wallet.public_key,
            "tokens": [
                {"mint": h.mint, "balance": h.balance, "decimals": h.decimals, "uiAmount": h.ui_amount}
                for h in holdings
            ],
        }


class GetWalletStatusTool(GatewayTool):
    name: str = "get_wallet_status"
    description: str = "Whether your wallet is funded and ready to trade."

    async def execute(self, context: ToolContext) -> Dict[str, Any]:
        return await self.services.wallets.wallet_status(context.user_id)


class GetDepositAddressTool(GatewayTool):
    name: str = "get_deposit_address"
    description: str = "Address to send SOL (fees) and USDC (trading) to."

    async def execute(self, context: ToolContext) -> Dict[str, Any]:
        wallet = await self.services.wallets.require_wallet(context.user_id)
        return {
            "publicKey": wallet.public_key,
            "walletType": wallet.kind.value,
            "network": "Solana Mainnet",
            "acceptedTokens": [
                {"name": "SOL", "description": "For transaction fees", "mint": "Native SOL"},
                {"name": "USDC", "description": "For trading", "mint": self.services.settings.tokens.usdc},
            ],
            "instructions": f"Send SOL and USDC to: {wallet.public_key}",
        }


class ExportPrivateKeyTool(GatewayTool):
    name: str = "export_private_key"
    description: str = (
        "Export the raw private key of a server-generated wallet. Imported wallets cannot be exported. "
        "Anyone with this key controls the funds."
    )

    async def execute(self, context: ToolContext) -> Dict[str, Any]:
        exported = await self.services.wallets.export_private_key(context.user_id)
        return {
            **exported,
            "warning": "Store this key securely. Anyone with it has full control of the wallet.",
        }


class SendSolTool(GatewayTool):
    name: str = "send_sol"
    description: str = "Send SOL to another Solana address."
    parameters: dict = {
        "type": "object",
        "properties": {
            "toAddress": {"type": "string", "description": "Destination address (base58)"},
            "amount": {"type": "number", "description": "Amount of SOL to send"},
            "password": _PASSWORD_PARAM,
        },
        "required": ["toAddress", "amount"],
    }

    async def execute(
        self, context: ToolContext, toAddress: str, amount: float, password: Optional[str] = None
    ) -> Dict[str, Any]:
        result = await self.services.wallets.send_sol(context.user_id, toAddress, amount, password)
        return _transfer_payload(result)


class SendUsdcTool(GatewayTool):
    name: str = "send_usdc"
    description: str = "Send USDC to another Solana address. Creates the recipient's token account if needed."
    parameters: dict = {
        "type": "object",
        "properties": {
            "toAddress": {"type": "string", "description": "Destination wallet address (base58)"},
            "amount": {"type": "number", "description": "Amount of USDC to send (e.g. 50 for $50)"},
            "password": _PASSWORD_PARAM,
        },
        "required": ["toAddress", "amount"],
    }

    async def execute(
        self, context: ToolContext, toAddress: str, amount: float, password: Optional[str] = None
    ) -> Dict[str, Any]:
        result = await self.services.wallets.send_usdc(context.user_id, toAddress, amount, password)
        return _transfer_payload(result)


class SendTokenTool(GatewayTool):
    name: str = "send_token"
    description: str = (
        "Send any SPL token to another Solana address. Supports the Token and Token-2022 programs "
        "(prediction market outcome tokens use Token-2022)."
    )
    parameters: dict = {
        "type": "object",
        "properties": {
            "toAddress": {"type": "string", "description": "Destination wallet address (base58)"},
            "mintAddress": {"type": "string", "description": "SPL token mint address"},
            "amount": {"type": "number", "description": "Amount in whole tokens"},
            "decimals": {"type": "integer", "description": "Token decimals (6 for USDC and outcome tokens)"},
            "password": _PASSWORD_PARAM,
        },
        "required": ["toAddress", "mintAddress", "amount", "decimals"],
    }

    async def execute(
        self,
        context: ToolContext,
        toAddress: str,
        mintAddress: str,
        amount: float,
        decimals: int,
        password: Optional[str] = None,
    ) -> Dict[str, Any]:
        result = await self.services.wallets.send_token(
            context.user_id, toAddress, mintAddress, amount, decimals, password
        )
        return _transfer_payload(result)


def _transfer_payload(result) -> Dict[str, Any]:
    payload = {
        "success": True,
        "txSignature": result.tx_signature,
        "fromAddress": result.from_address,
        "toAddress": result.to_address,
        "amount": result.amount,
        "explorerUrl": result.explorer_url,
    }
    if result.mint:
        payload["mint"] = result.mint
    return payload
