"""Per-connection tool catalog, fetched once when a client connects."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Iterator


@dataclass(frozen=True)
class ToolDescriptor:
    """Definition of a backend tool."""

    name: str
    description: str | None = None
    input_schema: dict[str, Any] = field(default_factory=dict)
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ToolDescriptor:
        return cls(
            name=data["name"],
            description=data.get("description"),
            input_schema=data.get("inputSchema") or {},
            raw=dict(data),
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize in MCP wire shape, keeping any extra backend fields."""
        if self.raw:
            return dict(self.raw)
        data: dict[str, Any] = {"name": self.name, "inputSchema": self.input_schema}
        if self.description is not None:
            data["description"] = self.description
        return data


class ToolCatalog:
    """Read-only snapshot of the tools a backend advertised."""

    def __init__(self, tools: Iterable[ToolDescriptor] = ()):
        self._tools: list[ToolDescriptor] = list(tools)

    @classmethod
    def from_list_result(cls, result: dict[str, Any] | None) -> ToolCatalog:
        """Build from a `tools/list` result payload."""
        tools = (result or {}).get("tools") or []
        return cls(ToolDescriptor.from_dict(t) for t in tools if t.get("name"))

    def list_tools(self) -> list[ToolDescriptor]:
        return list(self._tools)

    def get_tool(self, name: str) -> ToolDescriptor | None:
        """First descriptor with a matching name."""
        return next((t for t in self._tools if t.name == name), None)

    def to_list(self) -> list[dict[str, Any]]:
        return [t.to_dict() for t in self._tools]

    def __len__(self) -> int:
        return len(self._tools)

    def __iter__(self) -> Iterator[ToolDescriptor]:
        return iter(self._tools)

    def __contains__(self, name: object) -> bool:
        return self.get_tool(name) is not None if isinstance(name, str) else False
