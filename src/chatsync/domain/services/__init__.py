"""Domain services."""

from chatsync.domain.services.protocols import (
    ChangeFeed,
    ChatBackend,
    FeedConnection,
    FeedFilter,
    RowChange,
    RowChangeCallback,
    RowOperation,
)
from chatsync.domain.services.reaction_aggregator import ReactionStore, summarize
from chatsync.domain.services.reconciler import MessageTreeReconciler

__all__ = [
    "ChangeFeed",
    "ChatBackend",
    "FeedConnection",
    "FeedFilter",
    "MessageTreeReconciler",
    "ReactionStore",
    "RowChange",
    "RowChangeCallback",
    "RowOperation",
    "summarize",
]
