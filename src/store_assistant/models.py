from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum


class Role(StrEnum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    TOOL = "tool"

    @classmethod
    def parse(cls, value: str) -> Role:
        try:
            return cls(value.strip().lower())
        except ValueError:
            raise ValueError(f"Unsupported message role: {value!r}") from None


class FinishReason(StrEnum):
    STOP = "stop"
    TOOL_CALLS = "tool_calls"
    LENGTH = "length"
    OTHER = "other"


@dataclass(frozen=True)
class ClientMessage:
    """A prior turn supplied by the caller; never persisted by the engine."""

    role: Role
    content: str

    def __post_init__(self) -> None:
        # Unknown roles are rejected with ValueError before the message reaches a turn.
        object.__setattr__(self, "role", Role.parse(str(self.role)))

    @classmethod
    def from_dict(cls, data: dict) -> ClientMessage:
        return cls(role=str(data.get("role", "")), content=str(data.get("content") or ""))


@dataclass(frozen=True)
class ToolCall:
    id: str
    name: str
    arguments: str


@dataclass(frozen=True)
class ToolResult:
    tool_call_id: str
    content: str
    is_error: bool = False


@dataclass(frozen=True)
class ChatMessage:
    """One entry of the working message list sent to the LLM transport."""

    role: Role
    content: str
    tool_calls: tuple[ToolCall, ...] = ()
    tool_call_id: str | None = None


@dataclass(frozen=True)
class ContextStatus:
    total_tokens_used: int
    total_budget: int
    usage_percent: float
    message_count: int

    @property
    def is_near_limit(self) -> bool:
        return self.usage_percent > 80

    @property
    def is_critical(self) -> bool:
        return self.usage_percent > 95


# Transport stream chunks


@dataclass(frozen=True)
class ContentChunk:
    text: str


@dataclass(frozen=True)
class ToolCallFragment:
    index: int
    id: str | None = None
    name: str | None = None
    arguments: str | None = None


@dataclass(frozen=True)
class FinishChunk:
    reason: FinishReason


StreamChunk = ContentChunk | ToolCallFragment | FinishChunk


@dataclass(frozen=True)
class TransportRequest:
    messages: list[ChatMessage]
    tools: list[dict]
    max_output_tokens: int
    temperature: float | None = None
