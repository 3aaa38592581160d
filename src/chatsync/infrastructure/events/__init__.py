"""Event system infrastructure."""

from chatsync.infrastructure.events.dispatcher import (
    EventDispatcher,
    EventHandler,
    event_handler,
)

__all__ = [
    "EventDispatcher",
    "EventHandler",
    "event_handler",
]
