from .base import GatewayTool, ToolContext
from .registry import ToolRegistry
from .server import authenticate_request, build_mcp_server
from .tools import build_tools

__all__ = ["GatewayTool", "ToolContext", "ToolRegistry", "authenticate_request", "build_mcp_server", "build_tools"]
