"""Reaction entities."""

from dataclasses import dataclass, field


@dataclass(frozen=True)
class Reaction:
    """A single user's emoji reaction to a message.

    Identity is (message_id, emoji, user_id). The backend row ID is carried
    along for resolving delete events that only include the primary key, but
    does not take part in equality.

    Attributes:
        message_id: Reacted message ID.
        emoji: Emoji string (compared exactly, no variant normalization).
        user_id: Reacting user.
        row_id: Backend row ID, if known.
    """

    message_id: int
    emoji: str
    user_id: str
    row_id: int | None = field(default=None, compare=False)


@dataclass(frozen=True)
class ReactionRef:
    """A reaction known only by its backend row ID.

    Delete events usually carry just the primary key of the removed row.

    Attributes:
        row_id: Backend row ID.
    """

    row_id: int


@dataclass(frozen=True)
class ReactionCount:
    """Aggregated reactions for one emoji on one message.

    Attributes:
        count: Number of distinct users who reacted with the emoji.
        reacted_by_current_user: Whether the viewer is among them.
    """

    count: int
    reacted_by_current_user: bool
