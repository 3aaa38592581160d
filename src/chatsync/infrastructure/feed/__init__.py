"""Realtime event feed infrastructure."""

from chatsync.infrastructure.feed.adapter import (
    BackoffPolicy,
    EventFeedAdapter,
    FeedHandle,
    FeedStatus,
)
from chatsync.infrastructure.feed.normalizer import (
    FILES_TABLE,
    MESSAGES_TABLE,
    REACTIONS_TABLE,
    RowNormalizer,
)

__all__ = [
    "FILES_TABLE",
    "MESSAGES_TABLE",
    "REACTIONS_TABLE",
    "BackoffPolicy",
    "EventFeedAdapter",
    "FeedHandle",
    "FeedStatus",
    "RowNormalizer",
]
