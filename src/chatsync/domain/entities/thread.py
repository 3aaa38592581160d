"""Thread tree node."""

from dataclasses import dataclass

from chatsync.domain.entities.message import Message


@dataclass(frozen=True)
class ThreadNode:
    """A message and its direct replies.

    Attributes:
        message: The message at this node. For a deleted parent that still
            has replies, a placeholder copy with an empty body.
        children: Direct replies, ordered by creation time ascending.
        deleted: Whether this node stands in for a deleted message.
    """

    message: Message
    children: tuple["ThreadNode", ...] = ()
    deleted: bool = False

    @property
    def id(self) -> int:
        return self.message.id

    @property
    def reply_count(self) -> int:
        """Total number of replies below this node (all depths)."""
        return sum(1 for _ in self.walk()) - 1

    def walk(self):
        """Yield this node and all descendants, depth-first.

        Iterative, so arbitrarily deep reply chains are fine.
        """
        stack = [self]
        while stack:
            node = stack.pop()
            yield node
            stack.extend(reversed(node.children))
