from typing import Any, Protocol, runtime_checkable

from store_assistant.tool_names import ToolName


@runtime_checkable
class Tool(Protocol):
    @property
    def name(self) -> ToolName: ...

    @property
    def description(self) -> str: ...

    @property
    def input_schema(self) -> dict[str, Any]: ...

    async def execute(self, tool_input: dict[str, Any]) -> str: ...
