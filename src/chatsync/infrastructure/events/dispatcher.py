"""Change event dispatcher."""

import logging
from collections.abc import Awaitable, Callable

from chatsync.domain.entities import ChangeEvent, ChangeKind

logger = logging.getLogger(__name__)

# Handler type: async function that takes a ChangeEvent and returns None
EventHandler = Callable[[ChangeEvent], Awaitable[None]]


def event_handler(*kinds: ChangeKind) -> Callable[[EventHandler], EventHandler]:
    """Decorator for marking change event handlers.

    Usage:
        @event_handler(ChangeKind.MESSAGE_INSERTED, ChangeKind.MESSAGE_UPDATED)
        async def on_message(event: ChangeEvent) -> None:
            ...

    Args:
        kinds: The change kinds this handler processes.

    Returns:
        Decorator function.
    """

    def decorator(func: EventHandler) -> EventHandler:
        # Store the change kinds as an attribute on the function
        func._change_kinds = kinds  # type: ignore[attr-defined]
        return func

    return decorator


class EventDispatcher:
    """Dispatches change events to registered handlers.

    Handlers are registered by change kind and called in registration order.
    A failing handler is logged and does not stop the others.
    """

    def __init__(self) -> None:
        """Initialize the dispatcher."""
        self._handlers: dict[ChangeKind, list[EventHandler]] = {}

    def register(self, kind: ChangeKind, handler: EventHandler) -> None:
        """Register a handler for a change kind.

        Args:
            kind: The change kind to handle.
            handler: The handler function.
        """
        if kind not in self._handlers:
            self._handlers[kind] = []
        self._handlers[kind].append(handler)
        logger.debug(
            "Registered handler for %s: %s",
            kind.value,
            getattr(handler, "__name__", str(handler)),
        )

    def register_handler(self, handler: EventHandler) -> None:
        """Register a handler that was decorated with @event_handler.

        Args:
            handler: The decorated handler function.

        Raises:
            ValueError: If the handler doesn't have a _change_kinds attribute.
        """
        kinds = getattr(handler, "_change_kinds", None)
        if not kinds:
            raise ValueError(
                f"Handler {getattr(handler, '__name__', str(handler))} "
                "has no _change_kinds attribute. "
                "Use the @event_handler decorator."
            )
        for kind in kinds:
            self.register(kind, handler)

    def clear(self) -> None:
        """Remove all handlers."""
        self._handlers.clear()

    async def dispatch(self, event: ChangeEvent) -> None:
        """Dispatch an event to all registered handlers.

        Args:
            event: The event to dispatch.
        """
        handlers = self._handlers.get(event.kind, [])
        if not handlers:
            logger.debug("No handler registered for change kind: %s", event.kind.value)
            return

        for handler in handlers:
            try:
                await handler(event)
            except Exception:
                logger.exception(
                    "Error in event handler %s for %s (%s)",
                    getattr(handler, "__name__", str(handler)),
                    event.kind.value,
                    event.get_identity_key(),
                )
