from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from pydantic import BaseModel

from .errors import ToolNotFound
from .models import UserContext, UserRole

ToolHandler = Callable[[UserContext, Any], Awaitable[dict[str, Any]]]

ALL_ROLES = frozenset(UserRole)


@dataclass
class ToolDefinition:
    name: str
    description: str
    input_model: type[BaseModel]
    handler: ToolHandler
    allowed_roles: frozenset[UserRole] = field(default=ALL_ROLES)
    mutating: bool = False

    def spec(self) -> dict[str, Any]:
        schema = self.input_model.model_json_schema()
        schema.pop("title", None)
        for prop in schema.get("properties", {}).values():
            prop.pop("title", None)
            # Collapse Optional[X] to X; an omitted field is unset.
            variants = prop.pop("anyOf", None)
            if variants:
                concrete = [variant for variant in variants if variant.get("type") != "null"]
                prop.update(concrete[0] if len(concrete) == 1 else {"anyOf": variants})
            if "default" in prop and prop["default"] is None:
                del prop["default"]
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": schema,
            },
        }


class ToolRegistry:
    def __init__(self) -> None:
        self._tools: dict[str, ToolDefinition] = {}

    def register(self, tool: ToolDefinition) -> None:
        self._tools[tool.name] = tool

    def resolve(self, name: str) -> ToolDefinition:
        tool = self._tools.get(name)
        if not tool:
            raise ToolNotFound(f"Tool not found: {name}")
        return tool

    def list_names(self) -> list[str]:
        return sorted(self._tools.keys())

    def specs(self) -> list[dict[str, Any]]:
        return [self._tools[name].spec() for name in self.list_names()]
