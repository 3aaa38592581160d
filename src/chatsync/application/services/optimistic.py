"""Tracking of optimistic (provisional) sends."""

import itertools
import logging
from datetime import timedelta

from chatsync.domain.entities import Message

logger = logging.getLogger(__name__)


class OptimisticTracker:
    """Pending provisional messages awaiting their authoritative copy.

    Provisional messages get negative IDs that are never reused. A confirmed
    message is matched to its provisional entry by the client nonce it
    echoes. When the backend does not echo nonces, a best-effort match on
    (author, body, parent, created_at within a window) is used instead.
    That fallback is ambiguous for identical messages sent in quick
    succession and is logged as such.
    """

    def __init__(self, match_window_seconds: float = 5.0) -> None:
        """Initialize the tracker.

        Args:
            match_window_seconds: Maximum created_at difference for the
                approximate match.
        """
        self._match_window = timedelta(seconds=match_window_seconds)
        self._ids = itertools.count(-1, -1)
        self._pending: dict[str, Message] = {}

    def __len__(self) -> int:
        return len(self._pending)

    def next_provisional_id(self) -> int:
        return next(self._ids)

    def track(self, provisional: Message) -> None:
        """Register a provisional message.

        Args:
            provisional: Message with a negative ID and a nonce.

        Raises:
            ValueError: The message has no nonce.
        """
        if provisional.nonce is None:
            raise ValueError("Provisional messages require a nonce")
        self._pending[provisional.nonce] = provisional

    def pop(self, nonce: str) -> Message | None:
        """Stop tracking a provisional message.

        Returns:
            The provisional message, or None if already resolved.
        """
        return self._pending.pop(nonce, None)

    def resolve(self, message: Message) -> Message | None:
        """Find and stop tracking the provisional entry for a confirmed message.

        Args:
            message: Authoritative message from the backend.

        Returns:
            The matching provisional message, or None.
        """
        if not self._pending:
            return None
        if message.nonce is not None:
            return self._pending.pop(message.nonce, None)

        candidates = [
            provisional
            for provisional in self._pending.values()
            if provisional.author_id == message.author_id
            and provisional.body == message.body
            and provisional.parent_id == message.parent_id
            and abs(provisional.created_at - message.created_at) <= self._match_window
        ]
        if not candidates:
            return None

        match = min(candidates, key=lambda p: (p.created_at, -p.id))
        if len(candidates) > 1:
            logger.warning(
                "Message %d matches %d pending sends without a nonce; "
                "assuming the oldest (%d)",
                message.id,
                len(candidates),
                match.id,
            )
        else:
            logger.info(
                "Matched message %d to pending send %d without a nonce",
                message.id,
                match.id,
            )
        assert match.nonce is not None
        del self._pending[match.nonce]
        return match

    def clear(self) -> None:
        """Forget all pending sends. Provisional IDs keep counting down."""
        self._pending.clear()
