from __future__ import annotations

from dataclasses import dataclass, field

from store_assistant.models import Role


@dataclass(frozen=True)
class ToolMeta:
    """Tool usage attached to a persisted message: function name(s) and serialized data."""

    name: str
    data: str | None = None


@dataclass(frozen=True)
class ConversationRecord:
    id: str
    user_id: str
    title: str
    created_at: str
    updated_at: str


@dataclass(frozen=True)
class MessageRecord:
    id: str
    conversation_id: str
    seq: int
    role: Role
    content: str
    created_at: str
    tool_meta: ToolMeta | None = None


@dataclass(frozen=True)
class ConversationDetail:
    conversation: ConversationRecord
    messages: list[MessageRecord] = field(default_factory=list)
