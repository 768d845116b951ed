from __future__ import annotations

from dataclasses import dataclass, field

from store_assistant.models import ToolCall, ToolCallFragment


@dataclass
class _PartialCall:
    id: str = ""
    name: str = ""
    argument_parts: list[str] = field(default_factory=list)


class ToolCallAccumulator:
    """Rebuilds complete tool calls from the fragments of one streaming round.

    Fragments for the same index are merged in arrival order: id and name are
    replaced whenever a non-empty value arrives, argument chunks are concatenated.
    """

    def __init__(self) -> None:
        self._calls: dict[int, _PartialCall] = {}

    def __len__(self) -> int:
        return len(self._calls)

    def append(self, fragment: ToolCallFragment) -> None:
        acc = self._calls.setdefault(fragment.index, _PartialCall())
        if fragment.id:
            acc.id = fragment.id
        if fragment.name:
            acc.name = fragment.name
        if fragment.arguments:
            acc.argument_parts.append(fragment.arguments)

    def build(self) -> list[ToolCall]:
        # Indices that never received both an id and a name are dropped.
        return [
            ToolCall(id=acc.id, name=acc.name, arguments="".join(acc.argument_parts))
            for _, acc in sorted(self._calls.items())
            if acc.id and acc.name
        ]
