"""Conversation scope entity."""

from dataclasses import dataclass
from enum import Enum

from chatsync.domain.entities.message import Message


class ScopeKind(Enum):
    """Conversation scope kinds."""

    CHANNEL = "channel"
    DIRECT = "dm"


@dataclass(frozen=True)
class ConversationScope:
    """The channel or direct conversation whose events are subscribed to.

    Use ConversationScope.channel() / ConversationScope.direct() to build one.

    Attributes:
        kind: Scope kind.
        channel_id: Channel ID (CHANNEL scopes).
        peer_id: The other participant (DIRECT scopes).
    """

    kind: ScopeKind
    channel_id: int | None = None
    peer_id: str | None = None

    def __post_init__(self) -> None:
        if self.kind is ScopeKind.CHANNEL and self.channel_id is None:
            raise ValueError("Channel scope requires channel_id")
        if self.kind is ScopeKind.DIRECT and not self.peer_id:
            raise ValueError("Direct scope requires peer_id")

    @classmethod
    def channel(cls, channel_id: int) -> "ConversationScope":
        return cls(kind=ScopeKind.CHANNEL, channel_id=channel_id)

    @classmethod
    def direct(cls, peer_id: str) -> "ConversationScope":
        return cls(kind=ScopeKind.DIRECT, peer_id=peer_id)

    @property
    def key(self) -> str:
        """Stable string key, e.g. "channel:7" or "dm:u2"."""
        if self.kind is ScopeKind.CHANNEL:
            return f"{self.kind.value}:{self.channel_id}"
        return f"{self.kind.value}:{self.peer_id}"

    def contains(self, message: Message, viewer_id: str) -> bool:
        """Check if a message belongs to this conversation.

        Args:
            message: The message to check.
            viewer_id: The current user. Direct conversations are between
                the viewer and the peer, in either direction.

        Returns:
            True if the message belongs to this scope.
        """
        if self.kind is ScopeKind.CHANNEL:
            return message.channel_id == self.channel_id
        if message.receiver_id is None:
            return False
        return {message.author_id, message.receiver_id} == {viewer_id, self.peer_id}

    def __str__(self) -> str:
        return self.key
