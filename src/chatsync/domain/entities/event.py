"""Change event entity for the realtime feed."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from chatsync.domain.entities.message import FileAttachment, Message
from chatsync.domain.entities.reaction import Reaction, ReactionRef
from chatsync.domain.entities.scope import ConversationScope


class ChangeKind(Enum):
    """Normalized change kinds emitted by the event feed."""

    MESSAGE_INSERTED = "message_inserted"
    MESSAGE_UPDATED = "message_updated"
    MESSAGE_DELETED = "message_deleted"
    REACTION_ADDED = "reaction_added"
    REACTION_REMOVED = "reaction_removed"
    FILE_ATTACHED = "file_attached"


# MESSAGE_DELETED carries only the message ID; REACTION_REMOVED carries a
# ReactionRef when the backend reports only the removed row's key
ChangePayload = Message | Reaction | ReactionRef | FileAttachment | int


@dataclass(frozen=True)
class ChangeEvent:
    """Domain event produced from one backend row change.

    Attributes:
        kind: Change kind.
        scope: Scope of the subscription that delivered the event.
        payload: Kind-specific data.
        received_at: When the event was received.
    """

    kind: ChangeKind
    scope: ConversationScope
    payload: ChangePayload
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def message_id(self) -> int | None:
        """ID of the message this event concerns, if known."""
        payload = self.payload
        if isinstance(payload, int):
            return payload
        if isinstance(payload, Message):
            return payload.id
        if isinstance(payload, ReactionRef):
            return None
        return payload.message_id

    def get_identity_key(self) -> str:
        """Get a key identifying the entity this event concerns.

        Returns:
            Key such as "message:42" or "reaction:42:👍:u1".
        """
        payload = self.payload
        if isinstance(payload, Reaction):
            return f"reaction:{payload.message_id}:{payload.emoji}:{payload.user_id}"
        if isinstance(payload, ReactionRef):
            return f"reaction_row:{payload.row_id}"
        if isinstance(payload, FileAttachment):
            return f"file:{payload.message_id}:{payload.id}"
        return f"message:{self.message_id}"
