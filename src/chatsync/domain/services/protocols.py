"""Domain service protocols."""

from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

from chatsync.domain.entities import (
    ConversationScope,
    FileAttachment,
    Message,
    Reaction,
)


class ChatBackend(Protocol):
    """Backend query/write abstraction.

    The backing store is an external service; implementations translate
    these calls into its API. Writes raise WriteRejected when the backend
    refuses them and TransportError when it cannot be reached.
    """

    async def insert_message(
        self,
        scope: ConversationScope,
        body: str,
        attachments: Sequence[FileAttachment] = (),
        parent_id: int | None = None,
        nonce: str | None = None,
    ) -> Message:
        """Persist a new message authored by the current user.

        Args:
            scope: Conversation to post to.
            body: Message text.
            attachments: Files to attach (message_id is ignored).
            parent_id: Parent message for thread replies.
            nonce: Client correlation token to echo on the stored row.

        Returns:
            The stored message with its backend-assigned ID.
        """
        ...

    async def insert_reaction(self, message_id: int, emoji: str) -> None:
        """Add the current user's reaction.

        Raises:
            DuplicateReaction: The reaction already exists.
        """
        ...

    async def remove_reaction(self, message_id: int, emoji: str) -> None:
        """Remove the current user's reaction (no error if absent)."""
        ...

    async def fetch_initial_messages(self, scope: ConversationScope) -> list[Message]:
        """Fetch the messages of a conversation.

        Args:
            scope: Conversation to fetch.

        Returns:
            Messages with attachments, oldest first.
        """
        ...

    async def fetch_reactions(self, message_ids: Sequence[int]) -> list[Reaction]:
        """Fetch all reactions on the given messages."""
        ...


class RowOperation(Enum):
    """Row-level change operations reported by the change feed."""

    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


@dataclass(frozen=True)
class FeedFilter:
    """Row filter for a change feed subscription.

    Attributes:
        table: Table name.
        column: Column to filter on. None subscribes to the whole table.
        value: Required column value (equality).
    """

    table: str
    column: str | None = None
    value: str | None = None

    def matches(self, row: dict[str, Any]) -> bool:
        if self.column is None:
            return True
        return str(row.get(self.column)) == self.value

    def to_expression(self) -> str | None:
        """Render as a PostgREST-style filter, e.g. "channel_id=eq.7"."""
        if self.column is None:
            return None
        return f"{self.column}=eq.{self.value}"


@dataclass(frozen=True)
class RowChange:
    """One row change delivered by the change feed.

    Attributes:
        table: Table name.
        operation: Change operation.
        new: Row after the change (INSERT/UPDATE).
        old: Row before the change (UPDATE/DELETE). May contain only the
            primary key.
    """

    table: str
    operation: RowOperation
    new: dict[str, Any] = field(default_factory=dict)
    old: dict[str, Any] = field(default_factory=dict)


RowChangeCallback = Callable[[RowChange], Awaitable[None]]


class FeedConnection(Protocol):
    """An open change feed subscription."""

    async def wait_closed(self) -> None:
        """Wait until the connection ends.

        Returns normally after close(); raises TransportError when the
        transport drops.
        """
        ...

    async def close(self) -> None:
        """Close the subscription."""
        ...


class ChangeFeed(Protocol):
    """Backend change-feed subscription abstraction."""

    async def open(
        self,
        name: str,
        filters: Sequence[FeedFilter],
        on_change: RowChangeCallback,
    ) -> FeedConnection:
        """Open a subscription.

        Args:
            name: Subscription (channel) name.
            filters: Row filters; a change matching any filter is delivered.
            on_change: Callback for each row change.

        Returns:
            The open connection.

        Raises:
            TransportError: The subscription could not be established.
        """
        ...
