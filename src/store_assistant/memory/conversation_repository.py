from __future__ import annotations

import asyncio
import sqlite3
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Protocol, TypeVar
from uuid import uuid4

from loguru import logger

from store_assistant.memory.models import ConversationDetail, ConversationRecord, MessageRecord, ToolMeta
from store_assistant.memory.store import ConversationDatabase
from store_assistant.models import Role

T = TypeVar("T")


def utc_now() -> str:
    return datetime.now(UTC).isoformat(timespec="milliseconds")


class ConversationStore(Protocol):
    """Persistence the chat engine writes through during a turn."""

    async def create_conversation(self, user_id: str, title: str | None = None) -> str: ...

    async def get_owned(self, conversation_id: str, user_id: str) -> ConversationRecord | None: ...

    async def append_message(
        self,
        conversation_id: str,
        role: Role,
        content: str,
        tool_meta: ToolMeta | None = None,
    ) -> MessageRecord: ...

    async def load_recent_messages(self, conversation_id: str, limit: int) -> list[MessageRecord]: ...


class ConversationRepository:
    """SQLite-backed conversation persistence.

    Public methods are coroutines; the blocking sqlite work runs on a worker
    thread so a slow disk never stalls other turns on the event loop.
    """

    def __init__(self, db: ConversationDatabase):
        self._db = db

    async def create_conversation(self, user_id: str, title: str | None = None) -> str:
        return await self._run(self._create_conversation, user_id, title)

    async def get_owned(self, conversation_id: str, user_id: str) -> ConversationRecord | None:
        return await self._run(self._get_owned, conversation_id, user_id)

    async def append_message(
        self,
        conversation_id: str,
        role: Role,
        content: str,
        tool_meta: ToolMeta | None = None,
    ) -> MessageRecord:
        return await self._run(self._append_message, conversation_id, Role(role), content, tool_meta)

    async def load_recent_messages(self, conversation_id: str, limit: int) -> list[MessageRecord]:
        return await self._run(self._load_recent_messages, conversation_id, limit)

    async def list_conversations(self, user_id: str, *, limit: int = 50) -> list[ConversationRecord]:
        return await self._run(self._list_conversations, user_id, limit)

    async def get_conversation(self, conversation_id: str, user_id: str) -> ConversationDetail | None:
        return await self._run(self._get_conversation, conversation_id, user_id)

    async def rename_conversation(self, conversation_id: str, user_id: str, title: str) -> bool:
        return await self._run(self._rename_conversation, conversation_id, user_id, title)

    async def delete_conversation(self, conversation_id: str, user_id: str) -> bool:
        return await self._run(self._delete_conversation, conversation_id, user_id)

    async def message_count(self, conversation_id: str) -> int:
        return await self._run(self._message_count, conversation_id)

    @staticmethod
    async def _run(fn: Callable[..., T], *args) -> T:
        return await asyncio.to_thread(fn, *args)

    def _create_conversation(self, user_id: str, title: str | None) -> str:
        conversation_id = str(uuid4())
        now = utc_now()
        title = (title or "").strip() or self._default_title(now)
        with self._db.transaction():
            self._db.execute(
                """
                INSERT INTO conversations (id, user_id, title, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (conversation_id, user_id, title, now, now),
            )
        logger.info(f"Created conversation {conversation_id} for user {user_id}")
        return conversation_id

    def _get_owned(self, conversation_id: str, user_id: str) -> ConversationRecord | None:
        with self._db.transaction():
            row = self._db.execute(
                "SELECT * FROM conversations WHERE id = ? AND user_id = ? LIMIT 1",
                (conversation_id, user_id),
            ).fetchone()
        return self._to_conversation(row) if row is not None else None

    def _append_message(
        self,
        conversation_id: str,
        role: Role,
        content: str,
        tool_meta: ToolMeta | None,
    ) -> MessageRecord:
        message_id = str(uuid4())
        now = utc_now()
        with self._db.transaction():
            row = self._db.execute(
                "SELECT COALESCE(MAX(seq), 0) AS max_seq FROM messages WHERE conversation_id = ?",
                (conversation_id,),
            ).fetchone()
            next_seq = int(row["max_seq"]) + 1
            self._db.execute(
                """
                INSERT INTO messages (id, conversation_id, seq, role, content, function_called, function_data, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    message_id,
                    conversation_id,
                    next_seq,
                    str(role),
                    content,
                    tool_meta.name if tool_meta else None,
                    tool_meta.data if tool_meta else None,
                    now,
                ),
            )
            self._db.execute(
                "UPDATE conversations SET updated_at = ? WHERE id = ?",
                (now, conversation_id),
            )
        return MessageRecord(
            id=message_id,
            conversation_id=conversation_id,
            seq=next_seq,
            role=role,
            content=content,
            created_at=now,
            tool_meta=tool_meta,
        )

    def _load_recent_messages(self, conversation_id: str, limit: int) -> list[MessageRecord]:
        if limit <= 0:
            return []
        with self._db.transaction():
            rows = self._db.execute(
                """
                SELECT * FROM (
                    SELECT * FROM messages
                    WHERE conversation_id = ?
                    ORDER BY seq DESC
                    LIMIT ?
                )
                ORDER BY seq ASC
                """,
                (conversation_id, limit),
            ).fetchall()
        return [self._to_message(row) for row in rows]

    def _list_conversations(self, user_id: str, limit: int) -> list[ConversationRecord]:
        with self._db.transaction():
            rows = self._db.execute(
                """
                SELECT * FROM conversations
                WHERE user_id = ?
                ORDER BY updated_at DESC, created_at DESC
                LIMIT ?
                """,
                (user_id, max(1, limit)),
            ).fetchall()
        return [self._to_conversation(row) for row in rows]

    def _get_conversation(self, conversation_id: str, user_id: str) -> ConversationDetail | None:
        with self._db.transaction():
            conversation = self._get_owned(conversation_id, user_id)
            if conversation is None:
                return None
            rows = self._db.execute(
                "SELECT * FROM messages WHERE conversation_id = ? ORDER BY seq ASC",
                (conversation_id,),
            ).fetchall()
        return ConversationDetail(conversation=conversation, messages=[self._to_message(row) for row in rows])

    def _rename_conversation(self, conversation_id: str, user_id: str, title: str) -> bool:
        title = " ".join(title.split())
        if not title:
            raise ValueError("Conversation title must not be empty")
        with self._db.transaction():
            cursor = self._db.execute(
                "UPDATE conversations SET title = ?, updated_at = ? WHERE id = ? AND user_id = ?",
                (title, utc_now(), conversation_id, user_id),
            )
        return cursor.rowcount > 0

    def _delete_conversation(self, conversation_id: str, user_id: str) -> bool:
        with self._db.transaction():
            cursor = self._db.execute(
                "DELETE FROM conversations WHERE id = ? AND user_id = ?",
                (conversation_id, user_id),
            )
        deleted = cursor.rowcount > 0
        if deleted:
            logger.info(f"Deleted conversation {conversation_id}")
        else:
            logger.warning(f"Delete skipped: conversation {conversation_id} not found for user {user_id}")
        return deleted

    def _message_count(self, conversation_id: str) -> int:
        with self._db.transaction():
            row = self._db.execute(
                "SELECT COUNT(*) AS c FROM messages WHERE conversation_id = ?",
                (conversation_id,),
            ).fetchone()
        return int(row["c"])

    @staticmethod
    def _default_title(iso_timestamp: str) -> str:
        return f"Hội thoại {iso_timestamp[:16].replace('T', ' ')}"

    @staticmethod
    def _to_conversation(row: sqlite3.Row) -> ConversationRecord:
        return ConversationRecord(
            id=row["id"],
            user_id=row["user_id"],
            title=row["title"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _to_message(row: sqlite3.Row) -> MessageRecord:
        tool_meta = None
        if row["function_called"]:
            tool_meta = ToolMeta(name=row["function_called"], data=row["function_data"])
        return MessageRecord(
            id=row["id"],
            conversation_id=row["conversation_id"],
            seq=int(row["seq"]),
            role=Role(row["role"]),
            content=row["content"],
            created_at=row["created_at"],
            tool_meta=tool_meta,
        )
