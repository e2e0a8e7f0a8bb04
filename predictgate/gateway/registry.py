from typing import Any, Dict, Iterator, List, Optional

from predictgate.exceptions import InvalidRequestError
from predictgate.gateway.base import GatewayTool, ToolContext


class ToolNotFound(InvalidRequestError):
    kind = "unknown_tool"
    default_message = "Unknown tool"


class ToolRegistry:
    def __init__(self, *tools: GatewayTool):
        self.tools = list(tools)
        self.tool_map = {tool.name: tool for tool in tools}

    def __getitem__(self, name: str) -> GatewayTool:
        return self.tool_map[name]

    def __iter__(self) -> Iterator[GatewayTool]:
        return iter(self.tools)

    def __len__(self) -> int:
        return len(self.tools)

    def __contains__(self, name: str) -> bool:
        return name in self.tool_map

    def to_params(self) -> List[Dict[str, Any]]:
        return [tool.to_param() for tool in self.tools]

    def get_tool(self, name: str) -> GatewayTool:
        tool = self.tool_map.get(name)
        if tool is None:
            raise ToolNotFound(f"Unknown tool: {name}")
        return tool

    def add_tool(self, tool: GatewayTool) -> None:
        if tool.name in self.tool_map:
            raise ValueError(f"Tool {tool.name} already registered")
        self.tools.append(tool)
        self.tool_map[tool.name] = tool

    async def call(self, name: str, context: ToolContext, arguments: Optional[Dict[str, Any]] = None) -> Any:
        return await self.get_tool(name)(context, arguments)
