from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, FrozenSet, Iterator, List, Optional

from .errors import ToolValidationError

ToolResult = Dict[str, Any]


@dataclass(frozen=True)
class ToolContext:
    """Read-only per-invocation context handed to every tool."""

    conversation_id: str
    quoted_message_id: Optional[str] = None
    user_text: str = ""
    instruction: str = ""
    skip_ack_tools: FrozenSet[str] = frozenset()
    expected_tool: Optional[str] = None


ToolFn = Callable[[Dict[str, Any], ToolContext], Awaitable[ToolResult]]


@dataclass
class Tool:
    name: str
    declaration: Dict[str, Any]
    execute: ToolFn
    family: Optional[str] = None

    @property
    def required_params(self) -> List[str]:
        params = self.declaration.get("parameters") or {}
        return list(params.get("required") or [])

    def missing_params(self, args: Dict[str, Any]) -> List[str]:
        return [name for name in self.required_params if args.get(name) in (None, "")]


def declaration(name: str, description: str, properties: Dict[str, Any], required: Optional[List[str]] = None) -> Dict[str, Any]:
    return {
        "name": name,
        "description": description,
        "parameters": {"type": "object", "properties": properties, "required": list(required or [])},
    }


@dataclass
class ToolRegistry:
    tools: Dict[str, Tool] = field(default_factory=dict)

    def register(self, tool: Tool) -> Tool:
        self.tools[tool.name] = tool
        return tool

    def get(self, name: Optional[str]) -> Optional[Tool]:
        if not name:
            return None
        return self.tools.get(name)

    def require(self, name: Optional[str]) -> Tool:
        tool = self.get(name)
        if tool is None:
            raise ToolValidationError(f"Unknown tool: {name}", tool=name)
        return tool

    def names(self) -> List[str]:
        return list(self.tools.keys())

    def declarations(self, only: Optional[str] = None) -> List[Dict[str, Any]]:
        if only:
            tool = self.get(only)
            return [tool.declaration] if tool else []
        return [tool.declaration for tool in self.tools.values()]

    def __contains__(self, name: object) -> bool:
        return name in self.tools

    def __iter__(self) -> Iterator[Tool]:
        return iter(self.tools.values())

    def __len__(self) -> int:
        return len(self.tools)

    async def execute(self, name: str, args: Dict[str, Any], context: ToolContext) -> ToolResult:
        tool = self.require(name)
        missing = tool.missing_params(args)
        if missing:
            raise ToolValidationError(f"Missing required parameters: {', '.join(missing)}", tool=name)
        return await tool.execute(args, context)
