"""Message and file attachment entities."""

from dataclasses import dataclass
from datetime import datetime
from urllib.parse import urlparse


@dataclass(frozen=True)
class FileAttachment:
    """File attached to a message.

    Attributes:
        message_id: ID of the owning message.
        url: Public URL of the stored file.
        file_type: MIME type (or backend-specific type label).
        id: Backend row ID. None for attachments not yet persisted.
    """

    message_id: int
    url: str
    file_type: str
    id: int | None = None

    @property
    def name(self) -> str:
        """Display name derived from the last path segment of the URL."""
        path = urlparse(self.url).path
        return path.rsplit("/", 1)[-1] or "file"


@dataclass(frozen=True)
class Message:
    """Message entity.

    A message belongs to exactly one conversation: either a channel
    (channel_id) or a direct conversation (receiver_id).

    Attributes:
        id: Backend-assigned message ID. Negative for provisional messages.
        body: Message text.
        author_id: User who sent the message.
        created_at: When the message was created (UTC).
        channel_id: Channel the message was posted to.
        receiver_id: Recipient of a direct message.
        parent_id: Parent message ID (if a thread reply).
        attachments: Files attached to the message, in arrival order.
        nonce: Client-generated correlation token echoed by the backend.
    """

    id: int
    body: str
    author_id: str
    created_at: datetime
    channel_id: int | None = None
    receiver_id: str | None = None
    parent_id: int | None = None
    attachments: tuple[FileAttachment, ...] = ()
    nonce: str | None = None

    def __post_init__(self) -> None:
        if (self.channel_id is None) == (self.receiver_id is None):
            raise ValueError(
                f"Message {self.id} must have exactly one of channel_id "
                "or receiver_id"
            )

    @property
    def is_provisional(self) -> bool:
        """Check if this message is a local, unconfirmed placeholder."""
        return self.id < 0

    @property
    def is_direct(self) -> bool:
        """Check if this is a direct message."""
        return self.receiver_id is not None

    def is_reply(self) -> bool:
        """Check if this message is a thread reply.

        Returns:
            True if the message has a parent.
        """
        return self.parent_id is not None
