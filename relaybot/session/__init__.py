"""Conversation context storage."""

from relaybot.session.manager import ConversationContext, ConversationStore
from relaybot.session.repository import (
    ConversationRepository,
    JsonFileRepository,
    MemoryRepository,
    PersistenceError,
    Turn,
)

__all__ = [
    "ConversationContext",
    "ConversationStore",
    "ConversationRepository",
    "JsonFileRepository",
    "MemoryRepository",
    "PersistenceError",
    "Turn",
]
