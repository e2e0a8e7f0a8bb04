from typing import Any, Dict, Optional

from predictgate.gateway.base import GatewayTool, ToolContext


class ListApiKeysTool(GatewayTool):
    name: str = "list_api_keys"
    description: str = "List your API keys (prefixes only)."

    async def execute(self, context: ToolContext) -> Dict[str, Any]:
        keys = await self.services.api_keys.list_api_keys(context.user_id)
        return {"keys": [key.model_dump(mode="json") for key in keys]}


class CreateAdditionalApiKeyTool(GatewayTool):
    name: str = "create_additional_api_key"
    description: str = "Create another API key for your account."
    parameters: dict = {
        "type": "object",
        "properties": {"name": {"type": "string", "description": "Label for the new key"}},
    }

    async def execute(self, context: ToolContext, name: Optional[str] = None) -> Dict[str, Any]:
        key = await self.services.api_keys.create_api_key(context.user_id, name)
        return {
            "message": "Additional API key created",
            "apiKey": key.api_key,
            "apiSecret": key.api_secret,
            "keyPrefix": key.key_prefix,
        }


class RevokeApiKeyTool(GatewayTool):
    name: str = "revoke_api_key"
    description: str = "Revoke one of your API keys."
    parameters: dict = {
        "type": "object",
        "properties": {"keyId": {"type": "string", "description": "Id of the key to revoke"}},
        "required": ["keyId"],
    }

    async def execute(self, context: ToolContext, keyId: str) -> Dict[str, Any]:
        success = await self.services.api_keys.revoke_api_key(context.user_id, keyId)
        return {"success": success, "message": "API key revoked" if success else "API key not found"}
