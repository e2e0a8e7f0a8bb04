"""
MCP server for the gateway tools, built on FastMCP.

Authentication happens in the HTTP layer: the API middleware validates the
API key (and the optional HMAC signature over the raw body) and stores the
outcome on the request state under ``AUTH_STATE_KEY``. Tools read it back
from there. Without an HTTP request, e.g. an in-memory client, calls run
unauthenticated.

Gateway errors surface as MCP tool errors whose text is a JSON object::

    {"error": {"kind": ..., "message": ..., "category": ..., "retriable": ...}}
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Mapping, Optional

from fastmcp import FastMCP
from fastmcp.exceptions import ToolError
from fastmcp.server.dependencies import get_http_request
from fastmcp.tools.tool import Tool, ToolResult
from mcp.types import TextContent
from pydantic import PrivateAttr, ValidationError

from predictgate.auth.api_keys import ApiKeyService
from predictgate.exceptions import CredentialError, GatewayError
from predictgate.gateway.base import GatewayTool, ToolContext
from predictgate.gateway.registry import ToolRegistry

logger = logging.getLogger(__name__)

SERVER_NAME = "predictgate"
AUTH_STATE_KEY = "gateway_auth"

INSTRUCTIONS = (
    "Prediction-market trading gateway. Call signup (or request_api_key with an access code) first, "
    "then send the returned API key in the x-api-key header. Imported wallets need their password "
    "for every signing tool."
)


async def authenticate_request(
    api_keys: ApiKeyService,
    headers: Mapping[str, str],
    method: str,
    path: str,
    raw_body: str,
) -> ToolContext:
    """
    Resolve the caller from ``x-api-key`` and, when both HMAC headers are
    present, verify the signature over the raw body.

    Raises `CredentialError` on any failure.
    """
    api_key = headers.get("x-api-key")
    if not api_key:
        raise CredentialError("API key required")
    validation = await api_keys.validate_api_key(api_key)
    if not validation.is_valid:
        raise CredentialError(validation.message)

    signature = headers.get("x-hmac-signature")
    timestamp = headers.get("x-hmac-timestamp")
    if signature and timestamp:
        verified = await api_keys.verify_request_signature(
            validation.key_id, timestamp, method, path, raw_body, signature
        )
        if not verified:
            raise CredentialError("Invalid HMAC signature")
    return ToolContext(user_id=validation.user_id, key_id=validation.key_id)


def _request_context(tool: GatewayTool) -> ToolContext:
    try:
        request = get_http_request()
    except RuntimeError:
        return ToolContext()
    auth = getattr(request.state, AUTH_STATE_KEY, None)
    if isinstance(auth, CredentialError):
        if tool.requires_auth:
            raise auth
        return ToolContext()
    return auth or ToolContext()


def _tool_error(error: GatewayError) -> ToolError:
    payload = {
        "error": {
            "kind": error.public_kind,
            "message": error.public_message,
            "category": error.category,
            "retriable": error.retriable,
        }
    }
    return ToolError(json.dumps(payload))


class GatewayMCPTool(Tool):
    """Adapts a `GatewayTool` to FastMCP's tool interface."""

    _gateway_tool: GatewayTool = PrivateAttr()

    @classmethod
    def wrap(cls, tool: GatewayTool) -> GatewayMCPTool:
        wrapped = cls(name=tool.name, description=tool.description, parameters=tool.parameters)
        wrapped._gateway_tool = tool
        return wrapped

    async def run(self, arguments: Dict[str, Any]) -> ToolResult:
        tool = self._gateway_tool
        context: Optional[ToolContext] = None
        try:
            context = _request_context(tool)
            logger.info("Tool call %s (user=%s)", tool.name, context.user_id)
            result = await tool(context, arguments)
        except ValidationError as e:
            logger.info("Tool %s rejected arguments: %s error(s)", tool.name, e.error_count())
            raise ToolError(
                json.dumps(
                    {
                        "error": {
                            "kind": "invalid_request",
                            "message": f"Invalid parameters: {e.error_count()} error(s)",
                            "category": "input",
                            "retriable": False,
                        }
                    }
                )
            ) from e
        except GatewayError as e:
            log = logger.warning if e.category in ("integrity", "transient", "external") else logger.info
            user = context.user_id if context else None
            log("Tool %s failed for user %s: %s (%s)", tool.name, user, e.kind, e.message)
            raise _tool_error(e) from e
        return ToolResult(content=[TextContent(type="text", text=json.dumps(result, indent=2, default=str))])


def build_mcp_server(registry: ToolRegistry) -> FastMCP:
    mcp = FastMCP(SERVER_NAME, instructions=INSTRUCTIONS, mask_error_details=True)
    for tool in registry:
        mcp.add_tool(GatewayMCPTool.wrap(tool))
    logger.debug("Registered %d tools on %s", len(registry), SERVER_NAME)
    return mcp
