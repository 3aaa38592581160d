"""Message tree reconciler.

Folds message and file events into the canonical in-memory message
collection of one conversation scope and projects it as a thread forest.

Messages live in an arena keyed by ID; thread structure is kept as ID
references (message -> linked parent, parent -> sorted child IDs), so
relinking on each event is a dict lookup plus a sorted insert.
"""

import bisect
import logging
import time
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime

from chatsync.domain.entities import FileAttachment, Message, ThreadNode
from chatsync.domain.exceptions import UnknownEntityReference

logger = logging.getLogger(__name__)


def _merge_attachments(
    current: tuple[FileAttachment, ...], incoming: list[FileAttachment]
) -> tuple[FileAttachment, ...]:
    merged = list(current)
    known_ids = {a.id for a in current if a.id is not None}
    for attachment in incoming:
        if attachment.id is not None:
            if attachment.id in known_ids:
                continue
            known_ids.add(attachment.id)
        elif attachment in merged:
            continue
        merged.append(attachment)
    return tuple(merged)


class MessageTreeReconciler:
    """Canonical message state for the active conversation scope.

    All apply_* methods are idempotent and return True only when the state
    changed. Events referencing unknown messages are logged and ignored
    (file attachments are buffered briefly instead).
    """

    def __init__(
        self,
        file_buffer_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the reconciler.

        Args:
            file_buffer_seconds: How long a file event for an unknown message
                is kept waiting for that message to arrive.
            clock: Monotonic clock used for the file buffer.
        """
        self._file_buffer_seconds = file_buffer_seconds
        self._clock = clock
        self._messages: dict[int, Message] = {}
        # message id -> parent id it is linked under (None for roots)
        self._links: dict[int, int | None] = {}
        # parent id -> child ids sorted by (created_at, id)
        self._children: dict[int | None, list[int]] = {}
        self._placeholders: set[int] = set()
        # Tombstones live as long as the reconciler, which is one scope activation
        self._deleted_ids: set[int] = set()
        self._pending_files: dict[int, list[tuple[float, FileAttachment]]] = {}
        self._version = 0

    @property
    def version(self) -> int:
        """Mutation counter, incremented on every state change."""
        return self._version

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._messages and message_id not in self._placeholders

    def __len__(self) -> int:
        return len(self._messages) - len(self._placeholders)

    def get(self, message_id: int) -> Message | None:
        """Get a live (not deleted) message by ID."""
        if message_id in self._placeholders:
            return None
        return self._messages.get(message_id)

    def messages(self) -> list[Message]:
        """Get all live messages in creation order (flat view)."""
        return [
            self._messages[message_id]
            for message_id in sorted(self._messages, key=self._sort_key)
            if message_id not in self._placeholders
        ]

    def apply_insert(self, message: Message) -> bool:
        """Insert a message. Duplicate deliveries are no-ops.

        Args:
            message: The inserted message.

        Returns:
            True if the message was added.
        """
        if message.id in self._deleted_ids:
            logger.debug("Ignoring insert of deleted message %d", message.id)
            return False
        if message.id in self._messages:
            logger.debug("Ignoring duplicate insert of message %d", message.id)
            return False

        self._prune_pending_files()
        pending = self._pending_files.pop(message.id, None)
        if pending:
            files = [attachment for _, attachment in pending]
            message = replace(
                message,
                attachments=_merge_attachments(message.attachments, files),
            )
            logger.debug(
                "Attached %d buffered file(s) to message %d", len(files), message.id
            )

        self._messages[message.id] = message
        self._link(message)
        self._touch()
        return True

    def apply_update(self, message: Message) -> bool:
        """Replace the fields of an existing message.

        An update for an unknown message is treated as an insert, which heals
        gaps left by missed events. Attachments are kept when the update
        payload carries none.

        Args:
            message: The updated message.

        Returns:
            True if the state changed.
        """
        if message.id in self._deleted_ids:
            logger.debug("Ignoring update of deleted message %d", message.id)
            return False

        existing = self._messages.get(message.id)
        if existing is None:
            logger.info("Update for unknown message %d, inserting", message.id)
            return self.apply_insert(message)

        merged = replace(
            message,
            attachments=message.attachments or existing.attachments,
            nonce=message.nonce or existing.nonce,
        )
        if merged == existing:
            return False

        relink = (
            merged.parent_id != existing.parent_id
            or merged.created_at != existing.created_at
        )
        if relink:
            self._unlink(message.id)
        self._messages[message.id] = merged
        if relink:
            self._link(merged)
        self._touch()
        return True

    def apply_delete(self, message_id: int) -> bool:
        """Delete a message.

        A message that still has replies becomes a deleted placeholder so the
        thread stays grouped; otherwise it is removed, together with any
        placeholder ancestors left without replies.

        Args:
            message_id: ID of the deleted message.

        Returns:
            True if the state changed.
        """
        if message_id in self._placeholders:
            return False
        try:
            message = self._lookup(message_id, "delete")
        except UnknownEntityReference as e:
            logger.info("%s, ignoring", e)
            return False

        self._deleted_ids.add(message_id)
        self._pending_files.pop(message_id, None)

        if self._children.get(message_id):
            self._placeholders.add(message_id)
            self._messages[message_id] = replace(message, body="", attachments=())
            logger.debug("Message %d deleted, kept as thread placeholder", message_id)
        else:
            parent_id = self._remove(message_id)
            self._prune_placeholders(parent_id)
        self._touch()
        return True

    def attach_file(self, attachment: FileAttachment) -> bool:
        """Append a file to its message's attachments.

        A file for an unknown message is buffered and attached when the
        message arrives (within the buffer window).

        Args:
            attachment: The attached file.

        Returns:
            True if the state changed.
        """
        try:
            message = self._lookup(attachment.message_id, "file")
        except UnknownEntityReference as e:
            if attachment.message_id in self._deleted_ids:
                return False
            logger.info("%s, buffering", e)
            self._prune_pending_files()
            self._pending_files.setdefault(attachment.message_id, []).append(
                (self._clock(), attachment)
            )
            return False

        attachments = _merge_attachments(message.attachments, [attachment])
        if attachments == message.attachments:
            return False
        self._messages[message.id] = replace(message, attachments=attachments)
        self._touch()
        return True

    def confirm_provisional(self, provisional_id: int, message: Message) -> bool:
        """Replace a provisional message with the authoritative one.

        The provisional entry is dropped, never merged. Replies linked under
        it are moved to the confirmed ID.

        Args:
            provisional_id: Local placeholder ID.
            message: The stored message.

        Returns:
            True if the state changed.
        """
        changed = False
        if provisional_id in self._messages:
            for child_id in list(self._children.get(provisional_id, ())):
                child = self._messages[child_id]
                self._unlink(child_id)
                self._messages[child_id] = replace(child, parent_id=message.id)
                self._link(self._messages[child_id])
            self._remove(provisional_id)
            changed = True
            self._touch()
        return self.apply_insert(message) or changed

    def discard(self, message_id: int) -> bool:
        """Drop a message without recording a delete (optimistic rollback).

        Returns:
            True if the message was present.
        """
        if message_id not in self._messages:
            return False
        if self._children.get(message_id):
            for child_id in list(self._children[message_id]):
                self.discard(child_id)
        self._remove(message_id)
        self._touch()
        return True

    def view(self) -> tuple[ThreadNode, ...]:
        """Project the current state as a thread forest.

        Roots are messages without a parent, or whose parent is not loaded
        (they move under the parent once it arrives). Roots and siblings are
        ordered by creation time ascending. Each call builds a fresh result.

        Returns:
            Root thread nodes.
        """
        roots = [
            message_id
            for message_id, parent_id in self._links.items()
            if parent_id is None or parent_id not in self._messages
        ]
        roots.sort(key=self._sort_key)
        return tuple(self._build(root_id) for root_id in roots)

    def thread(self, message_id: int) -> ThreadNode | None:
        """Project the subtree rooted at a message.

        Args:
            message_id: Root of the thread.

        Returns:
            The thread node, or None if the message is not loaded.
        """
        if message_id not in self._messages:
            return None
        return self._build(message_id)

    def _lookup(self, message_id: int, kind: str) -> Message:
        message = self._messages.get(message_id)
        if message is None or message_id in self._placeholders:
            raise UnknownEntityReference(kind, message_id)
        return message

    def _sort_key(self, message_id: int) -> tuple[datetime, int]:
        message = self._messages[message_id]
        return (message.created_at, message.id)

    def _creates_cycle(self, message_id: int, parent_id: int) -> bool:
        current: int | None = parent_id
        seen: set[int] = set()
        while current is not None and current not in seen:
            if current == message_id:
                return True
            seen.add(current)
            current = self._links.get(current)
        return False

    def _link(self, message: Message) -> None:
        parent_id = message.parent_id
        if parent_id is not None and self._creates_cycle(message.id, parent_id):
            logger.warning(
                "Message %d replying to %d would form a cycle, showing as root",
                message.id,
                parent_id,
            )
            parent_id = None
        self._links[message.id] = parent_id
        siblings = self._children.setdefault(parent_id, [])
        bisect.insort(siblings, message.id, key=self._sort_key)

    def _unlink(self, message_id: int) -> int | None:
        parent_id = self._links.pop(message_id)
        siblings = self._children[parent_id]
        siblings.remove(message_id)
        if not siblings:
            del self._children[parent_id]
        return parent_id

    def _remove(self, message_id: int) -> int | None:
        parent_id = self._unlink(message_id)
        del self._messages[message_id]
        self._placeholders.discard(message_id)
        return parent_id

    def _prune_placeholders(self, parent_id: int | None) -> None:
        while (
            parent_id is not None
            and parent_id in self._placeholders
            and not self._children.get(parent_id)
        ):
            logger.debug("Dropping empty thread placeholder %d", parent_id)
            parent_id = self._remove(parent_id)

    def _prune_pending_files(self) -> None:
        now = self._clock()
        for message_id, entries in list(self._pending_files.items()):
            fresh = [
                (received, attachment)
                for received, attachment in entries
                if now - received <= self._file_buffer_seconds
            ]
            if len(fresh) != len(entries):
                logger.warning(
                    "Dropped %d buffered file(s) for message %d that never arrived",
                    len(entries) - len(fresh),
                    message_id,
                )
            if fresh:
                self._pending_files[message_id] = fresh
            else:
                del self._pending_files[message_id]

    def _build(self, root_id: int) -> ThreadNode:
        # Iterative post-order build; thread depth is unbounded
        built: dict[int, ThreadNode] = {}
        stack: list[tuple[int, bool]] = [(root_id, False)]
        while stack:
            message_id, expanded = stack.pop()
            child_ids = self._children.get(message_id, [])
            if not expanded:
                stack.append((message_id, True))
                stack.extend((child_id, False) for child_id in child_ids)
                continue
            built[message_id] = ThreadNode(
                message=self._messages[message_id],
                children=tuple(built.pop(child_id) for child_id in child_ids),
                deleted=message_id in self._placeholders,
            )
        return built[root_id]

    def _touch(self) -> None:
        self._version += 1
