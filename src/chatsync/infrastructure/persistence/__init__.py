"""Persistence infrastructure (local SQLite backend)."""

from chatsync.infrastructure.persistence.backend import SQLiteChatBackend
from chatsync.infrastructure.persistence.database import DatabaseManager
from chatsync.infrastructure.persistence.local_feed import (
    LocalChangeFeed,
    LocalConnection,
)
from chatsync.infrastructure.persistence.models import (
    MessageFileModel,
    MessageModel,
    MessageReactionModel,
)

__all__ = [
    "DatabaseManager",
    "LocalChangeFeed",
    "LocalConnection",
    "MessageFileModel",
    "MessageModel",
    "MessageReactionModel",
    "SQLiteChatBackend",
]
