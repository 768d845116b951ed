from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from store_assistant.tool import Tool
from store_assistant.tool_names import ToolName
from store_assistant.tools.store_backend import StoreBackend


@dataclass(frozen=True)
class UnsupportedTool:
    """Resolution result for a function name the model asked for but nobody serves."""

    requested_name: str


@dataclass(frozen=True)
class ToolGroup:
    enabled: Callable[[dict], bool]
    build: Callable[[dict], list[Tool]]


class ToolRegistry:
    def __init__(self, tools: list[Tool]):
        self._tools: dict[ToolName, Tool] = {}
        for tool in tools:
            name = ToolName(tool.name)
            if name in self._tools:
                raise ValueError(f"Duplicate tool registration: {name}")
            self._tools[name] = tool

    def __len__(self) -> int:
        return len(self._tools)

    @property
    def names(self) -> list[ToolName]:
        return list(self._tools)

    def resolve(self, raw_name: str) -> Tool | UnsupportedTool:
        name = ToolName.parse(raw_name)
        if name is None or name not in self._tools:
            return UnsupportedTool(raw_name)
        return self._tools[name]

    def schemas(self) -> list[dict]:
        return [
            {
                "name": str(t.name),
                "description": t.description,
                "input_schema": t.input_schema,
            }
            for t in self._tools.values()
        ]


def _store_enabled(ctx: dict) -> bool:
    return ctx.get("store_backend") is not None


def _store_tools(ctx: dict) -> list[Tool]:
    from store_assistant.tools.store_tools import build_store_tools

    return build_store_tools(ctx["store_backend"])


_GROUPS = [
    ToolGroup(enabled=_store_enabled, build=_store_tools),
]


def get_all(store_backend: StoreBackend | None = None) -> list[Tool]:
    ctx = {
        "store_backend": store_backend,
    }

    tools: list[Tool] = []
    for group in _GROUPS:
        if group.enabled(ctx):
            tools.extend(group.build(ctx))
    return tools
