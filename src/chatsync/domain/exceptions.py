"""Domain exceptions."""


class ChatSyncError(Exception):
    """Base exception for synchronization errors."""


class TransportError(ChatSyncError):
    """The change feed or backend connection is unavailable.

    Recovered locally by reconnecting; shown to the user only as a
    non-blocking "reconnecting" indicator.
    """


class WriteRejected(ChatSyncError):
    """The backend refused a write (send, react, unreact)."""

    def __init__(self, operation: str, detail: str = "", status: int | None = None) -> None:
        """Initialize.

        Args:
            operation: Name of the rejected operation.
            detail: Backend-provided reason.
            status: HTTP status code, if any.
        """
        self.operation = operation
        self.detail = detail
        self.status = status
        message = f"{operation} rejected"
        if status is not None:
            message += f" ({status})"
        if detail:
            message += f": {detail}"
        super().__init__(message)


class UnknownEntityReference(ChatSyncError):
    """An event references a message that is not known locally.

    Logged and treated as a no-op; never fatal.
    """

    def __init__(self, kind: str, message_id: int) -> None:
        self.kind = kind
        self.message_id = message_id
        super().__init__(f"{kind} references unknown message {message_id}")


class DuplicateReaction(ChatSyncError):
    """The reaction already exists. Callers treat this as a no-op."""

    def __init__(self, message_id: int, emoji: str) -> None:
        self.message_id = message_id
        self.emoji = emoji
        super().__init__(f"Reaction {emoji} already present on message {message_id}")
