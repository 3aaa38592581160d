"""Domain entities."""

from chatsync.domain.entities.event import ChangeEvent, ChangeKind
from chatsync.domain.entities.message import FileAttachment, Message
from chatsync.domain.entities.reaction import Reaction, ReactionCount, ReactionRef
from chatsync.domain.entities.scope import ConversationScope, ScopeKind
from chatsync.domain.entities.thread import ThreadNode

__all__ = [
    "ChangeEvent",
    "ChangeKind",
    "ConversationScope",
    "FileAttachment",
    "Message",
    "Reaction",
    "ReactionCount",
    "ReactionRef",
    "ScopeKind",
    "ThreadNode",
]
