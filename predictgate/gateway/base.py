from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, ClassVar, Dict, Optional

from pydantic import BaseModel, Field

from predictgate.exceptions import CredentialError, InvalidRequestError

_JSON_TYPES = {
    "string": (str,),
    "number": (int, float),
    "integer": (int,),
    "boolean": (bool,),
    "object": (dict,),
    "array": (list,),
}


@dataclass(frozen=True)
class ToolContext:
    """Caller identity resolved by the dispatch layer before a tool runs."""

    user_id: Optional[str] = None
    key_id: Optional[str] = None


class GatewayTool(ABC, BaseModel):
    name: str = Field(description="The name of the tool")
    description: str = Field(description="A description of the tool")
    parameters: dict = Field(default_factory=lambda: {"type": "object", "properties": {}})

    # Tools that create accounts or only return static text run without an API key.
    requires_auth: ClassVar[bool] = True

    services: Any = Field(default=None, exclude=True)

    model_config = {"arbitrary_types_allowed": True}

    async def __call__(self, context: ToolContext, arguments: Optional[Dict[str, Any]] = None) -> Any:
        if self.requires_auth and not context.user_id:
            raise CredentialError("Authentication required. Please provide a valid API key.")
        kwargs = self.validate_arguments(arguments or {})
        return await self.execute(context, **kwargs)

    def validate_arguments(self, arguments: Dict[str, Any]) -> Dict[str, Any]:
        """Check arguments against the declared schema: required keys, known keys, basic types."""
        if not isinstance(arguments, dict):
            raise InvalidRequestError("Tool arguments must be an object")
        properties = self.parameters.get("properties", {})
        missing = [key for key in self.parameters.get("required", []) if arguments.get(key) in (None, "")]
        if missing:
            raise InvalidRequestError(f"Missing required parameter(s): {', '.join(missing)}")
        unknown = [key for key in arguments if key not in properties]
        if unknown:
            raise InvalidRequestError(f"Unknown parameter(s): {', '.join(unknown)}")

        cleaned = {}
        for key, value in arguments.items():
            if value is None:
                continue
            expected = _JSON_TYPES.get(properties[key].get("type"))
            # bool is an int subclass; keep it out of numeric fields
            if expected and (not isinstance(value, expected) or (isinstance(value, bool) and bool not in expected)):
                raise InvalidRequestError(f"Parameter '{key}' must be of type {properties[key]['type']}")
            cleaned[key] = value
        return cleaned

    @abstractmethod
    async def execute(self, context: ToolContext, **kwargs) -> Any:
        raise NotImplementedError("Subclasses must implement this method")

    def to_param(self) -> dict:
        """MCP tool descriptor."""
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.parameters,
        }
