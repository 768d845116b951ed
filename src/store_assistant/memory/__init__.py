from store_assistant.memory.conversation_repository import ConversationRepository, ConversationStore
from store_assistant.memory.models import ConversationDetail, ConversationRecord, MessageRecord, ToolMeta
from store_assistant.memory.pruning import PruneResult, prune_conversations
from store_assistant.memory.store import ConversationDatabase

__all__ = [
    "ConversationDatabase",
    "ConversationDetail",
    "ConversationRecord",
    "ConversationRepository",
    "ConversationStore",
    "MessageRecord",
    "PruneResult",
    "ToolMeta",
    "prune_conversations",
]
