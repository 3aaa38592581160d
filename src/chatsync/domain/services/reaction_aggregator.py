"""Reaction aggregation."""

import logging
from collections.abc import Iterable

from chatsync.domain.entities import Reaction, ReactionCount

logger = logging.getLogger(__name__)


def summarize(
    reactions: Iterable[Reaction], current_user_id: str
) -> dict[str, ReactionCount]:
    """Group reactions by emoji.

    The input is folded into a set of (emoji, user_id) pairs first, so the
    result depends only on which reactions exist, not on their order or on
    duplicates.

    Args:
        reactions: Reactions on a single message.
        current_user_id: The viewer.

    Returns:
        Mapping of emoji to its count and whether the viewer reacted,
        ordered by count descending, then emoji.
    """
    pairs = {(reaction.emoji, reaction.user_id) for reaction in reactions}

    users_by_emoji: dict[str, set[str]] = {}
    for emoji, user_id in pairs:
        users_by_emoji.setdefault(emoji, set()).add(user_id)

    ordered = sorted(users_by_emoji.items(), key=lambda item: (-len(item[1]), item[0]))
    return {
        emoji: ReactionCount(
            count=len(users),
            reacted_by_current_user=current_user_id in users,
        )
        for emoji, users in ordered
    }


class ReactionStore:
    """Per-message reaction sets.

    Folds REACTION_ADDED / REACTION_REMOVED events into sets and serves
    memoized summaries, invalidated on any change to the message's set.
    Reactions for messages that are not loaded yet are kept, so they show
    up once the message arrives.
    """

    def __init__(self, current_user_id: str) -> None:
        """Initialize the store.

        Args:
            current_user_id: The viewer, for reacted_by_current_user flags.
        """
        self._current_user_id = current_user_id
        self._reactions: dict[int, set[Reaction]] = {}
        self._by_row_id: dict[int, Reaction] = {}
        self._summaries: dict[int, dict[str, ReactionCount]] = {}

    def add(self, reaction: Reaction) -> bool:
        """Add a reaction.

        Args:
            reaction: The reaction to add.

        Returns:
            True if the set changed, False if the reaction was already there.
        """
        reactions = self._reactions.setdefault(reaction.message_id, set())
        if reaction.row_id is not None:
            self._by_row_id[reaction.row_id] = reaction

        if reaction in reactions:
            if reaction.row_id is not None:
                previous = next(r for r in reactions if r == reaction)
                if previous.row_id not in (None, reaction.row_id):
                    # The old row is gone; its ID must not resolve to this one
                    self._by_row_id.pop(previous.row_id, None)
                # Keep the entry that knows its current row ID
                reactions.discard(reaction)
                reactions.add(reaction)
            logger.debug(
                "Duplicate reaction %s by %s on %d",
                reaction.emoji,
                reaction.user_id,
                reaction.message_id,
            )
            return False

        reactions.add(reaction)
        self._summaries.pop(reaction.message_id, None)
        return True

    def remove(self, reaction: Reaction) -> bool:
        """Remove a reaction.

        Args:
            reaction: The reaction to remove.

        Returns:
            True if the set changed.
        """
        reactions = self._reactions.get(reaction.message_id)
        if not reactions or reaction not in reactions:
            return False

        for existing in reactions:
            if existing == reaction and existing.row_id is not None:
                self._by_row_id.pop(existing.row_id, None)
                break
        reactions.discard(reaction)
        if not reactions:
            del self._reactions[reaction.message_id]
        self._summaries.pop(reaction.message_id, None)
        return True

    def remove_by_row_id(self, row_id: int) -> Reaction | None:
        """Remove a reaction identified only by its backend row ID.

        Args:
            row_id: Backend row ID.

        Returns:
            The removed reaction, or None if the row ID is unknown.
        """
        reaction = self._by_row_id.pop(row_id, None)
        if reaction is None:
            return None
        self.remove(reaction)
        return reaction

    def contains(self, message_id: int, emoji: str, user_id: str) -> bool:
        return Reaction(message_id, emoji, user_id) in self._reactions.get(
            message_id, set()
        )

    def reactions_for(self, message_id: int) -> frozenset[Reaction]:
        return frozenset(self._reactions.get(message_id, ()))

    def summary(self, message_id: int) -> dict[str, ReactionCount]:
        """Get the reaction summary for a message.

        Args:
            message_id: Message ID.

        Returns:
            Emoji to ReactionCount mapping (empty if no reactions).
        """
        cached = self._summaries.get(message_id)
        if cached is None:
            cached = summarize(
                self._reactions.get(message_id, ()), self._current_user_id
            )
            self._summaries[message_id] = cached
        return dict(cached)

    def drop_message(self, message_id: int) -> None:
        """Forget all reactions on a message."""
        for reaction in self._reactions.pop(message_id, set()):
            if reaction.row_id is not None:
                self._by_row_id.pop(reaction.row_id, None)
        self._summaries.pop(message_id, None)

    def clear(self) -> None:
        self._reactions.clear()
        self._by_row_id.clear()
        self._summaries.clear()
