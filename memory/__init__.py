"""Agent memory and chat persistence."""

from .chat_store import ChatStore, InMemoryChatStore
from .sqlite_store import SQLiteChatStore
from .context_manager import ConversationContextManager, resolve_author
from .memory_manager import MemoryManager

__all__ = [
    "ChatStore",
    "InMemoryChatStore",
    "SQLiteChatStore",
    "ConversationContextManager",
    "resolve_author",
    "MemoryManager",
]
