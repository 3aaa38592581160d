"""Backend row normalization."""

import logging
from typing import Any

from chatsync.domain.entities import (
    ChangeEvent,
    ChangeKind,
    ConversationScope,
    FileAttachment,
    Message,
    Reaction,
    ReactionRef,
)
from chatsync.domain.services import RowChange, RowOperation
from chatsync.infrastructure.datetime_utils import parse_timestamp

logger = logging.getLogger(__name__)

MESSAGES_TABLE = "messages"
REACTIONS_TABLE = "message_reactions"
FILES_TABLE = "message_files"


class RowNormalizer:
    """Convert backend rows to domain entities and change events.

    Row layout follows the chat schema:
    - messages: id, message, message_type, user_id, channel_id,
      receiver_id, parent_message_id, inserted_at (+ optional nonce column)
    - message_reactions: id, message_id, user_id, emoji
    - message_files: id, message_id, file_url, file_type
    """

    def __init__(self, viewer_id: str, nonce_column: str | None = "client_nonce") -> None:
        """Initialize the normalizer.

        Args:
            viewer_id: The current user, for direct-message scope checks.
            nonce_column: Column carrying the client correlation token.
        """
        self._viewer_id = viewer_id
        self._nonce_column = nonce_column

    def to_message(self, row: dict[str, Any]) -> Message:
        """Convert a messages row to a Message.

        Embedded file rows (row["files"]) become attachments.

        Args:
            row: messages row.

        Returns:
            Message entity.

        Raises:
            KeyError, ValueError, TypeError: The row is malformed.
        """
        message_id = int(row["id"])
        is_direct = row.get("message_type") == "direct" or (
            row.get("message_type") is None and row.get("receiver_id") is not None
        )
        channel_id = None if is_direct else row.get("channel_id")
        receiver_id = row.get("receiver_id") if is_direct else None
        parent_id = row.get("parent_message_id")

        return Message(
            id=message_id,
            body=row.get("message") or "",
            author_id=str(row["user_id"]),
            created_at=parse_timestamp(row["inserted_at"]),
            channel_id=int(channel_id) if channel_id is not None else None,
            receiver_id=str(receiver_id) if receiver_id is not None else None,
            parent_id=int(parent_id) if parent_id is not None else None,
            attachments=tuple(
                self.to_attachment({"message_id": message_id, **file_row})
                for file_row in row.get("files") or ()
            ),
            nonce=row.get(self._nonce_column) if self._nonce_column else None,
        )

    def to_attachment(self, row: dict[str, Any]) -> FileAttachment:
        """Convert a message_files row to a FileAttachment."""
        row_id = row.get("id")
        return FileAttachment(
            message_id=int(row["message_id"]),
            url=row["file_url"],
            file_type=row.get("file_type") or "application/octet-stream",
            id=int(row_id) if row_id is not None else None,
        )

    def to_reaction(self, row: dict[str, Any]) -> Reaction:
        """Convert a message_reactions row to a Reaction."""
        row_id = row.get("id")
        return Reaction(
            message_id=int(row["message_id"]),
            emoji=row["emoji"],
            user_id=str(row["user_id"]),
            row_id=int(row_id) if row_id is not None else None,
        )

    def normalize(
        self, change: RowChange, scope: ConversationScope
    ) -> ChangeEvent | None:
        """Convert a row change into a change event for a scope.

        Malformed rows, rows outside the scope, and changes with no domain
        meaning (reaction/file updates) yield None.

        Args:
            change: Row change from the feed.
            scope: Scope of the subscription that delivered it.

        Returns:
            The change event, or None if the change is dropped.
        """
        try:
            return self._normalize(change, scope)
        except (KeyError, ValueError, TypeError) as e:
            logger.warning(
                "Dropping malformed %s %s row: %r",
                change.table,
                change.operation.value,
                e,
            )
            return None

    def _normalize(
        self, change: RowChange, scope: ConversationScope
    ) -> ChangeEvent | None:
        if change.table == MESSAGES_TABLE:
            return self._normalize_message(change, scope)
        if change.table == REACTIONS_TABLE:
            return self._normalize_reaction(change, scope)
        if change.table == FILES_TABLE:
            if change.operation is not RowOperation.INSERT:
                logger.debug("Ignoring %s on %s", change.operation.value, FILES_TABLE)
                return None
            return ChangeEvent(
                kind=ChangeKind.FILE_ATTACHED,
                scope=scope,
                payload=self.to_attachment(change.new),
            )
        logger.debug("Ignoring change on unknown table %s", change.table)
        return None

    def _normalize_message(
        self, change: RowChange, scope: ConversationScope
    ) -> ChangeEvent | None:
        if change.operation is RowOperation.DELETE:
            return ChangeEvent(
                kind=ChangeKind.MESSAGE_DELETED,
                scope=scope,
                payload=int(change.old["id"]),
            )

        message = self.to_message(change.new)
        if not scope.contains(message, self._viewer_id):
            logger.debug("Message %d is outside scope %s", message.id, scope)
            return None

        kind = (
            ChangeKind.MESSAGE_INSERTED
            if change.operation is RowOperation.INSERT
            else ChangeKind.MESSAGE_UPDATED
        )
        return ChangeEvent(kind=kind, scope=scope, payload=message)

    def _normalize_reaction(
        self, change: RowChange, scope: ConversationScope
    ) -> ChangeEvent | None:
        if change.operation is RowOperation.INSERT:
            return ChangeEvent(
                kind=ChangeKind.REACTION_ADDED,
                scope=scope,
                payload=self.to_reaction(change.new),
            )
        if change.operation is RowOperation.DELETE:
            old = change.old
            if {"message_id", "emoji", "user_id"} <= old.keys():
                payload: Reaction | ReactionRef = self.to_reaction(old)
            else:
                payload = ReactionRef(row_id=int(old["id"]))
            return ChangeEvent(
                kind=ChangeKind.REACTION_REMOVED, scope=scope, payload=payload
            )
        logger.debug("Ignoring UPDATE on %s", REACTIONS_TABLE)
        return None
