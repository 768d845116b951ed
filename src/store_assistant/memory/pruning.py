from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from loguru import logger

from store_assistant.memory.store import ConversationDatabase


@dataclass(frozen=True)
class PruneResult:
    conversations_removed: int
    messages_removed: int


def prune_conversations(
    db: ConversationDatabase,
    *,
    retention_days: int,
    max_messages_per_conversation: int,
) -> PruneResult:
    now = datetime.now(UTC)
    cutoff = (now - timedelta(days=max(1, retention_days))).isoformat(timespec="milliseconds")
    messages_removed = 0

    with db.transaction():
        conversations_removed = db.execute(
            "DELETE FROM conversations WHERE updated_at < ?",
            (cutoff,),
        ).rowcount

        if max_messages_per_conversation > 0:
            conversations = db.execute("SELECT id FROM conversations").fetchall()
            for conversation_row in conversations:
                conversation_id = str(conversation_row["id"])
                overflow = db.execute(
                    """
                    SELECT id
                    FROM messages
                    WHERE conversation_id = ?
                    ORDER BY seq DESC
                    LIMIT -1 OFFSET ?
                    """,
                    (conversation_id, max_messages_per_conversation),
                ).fetchall()
                if overflow:
                    db.executemany(
                        "DELETE FROM messages WHERE id = ?",
                        [(str(row["id"]),) for row in overflow],
                    )
                    messages_removed += len(overflow)

    if conversations_removed or messages_removed:
        logger.info(
            f"Pruned {conversations_removed} expired conversations and {messages_removed} overflow messages"
        )
    return PruneResult(conversations_removed=conversations_removed, messages_removed=messages_removed)
