"""Event feed adapter.

Owns the backend change-feed subscription for one conversation scope at a
time, normalizes row changes into change events, and keeps the
subscription alive with exponential backoff.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from functools import partial

from chatsync.domain.entities import ConversationScope, ScopeKind
from chatsync.domain.exceptions import TransportError
from chatsync.domain.services import (
    ChangeFeed,
    FeedConnection,
    FeedFilter,
    RowChange,
)
from chatsync.infrastructure.events import EventDispatcher
from chatsync.infrastructure.feed.normalizer import (
    FILES_TABLE,
    MESSAGES_TABLE,
    REACTIONS_TABLE,
    RowNormalizer,
)

logger = logging.getLogger(__name__)


class FeedStatus(Enum):
    """Connection status of a feed subscription."""

    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential reconnect backoff.

    Attributes:
        initial_delay: Delay before the first reconnect attempt (seconds).
        max_delay: Upper bound for any delay (seconds).
        multiplier: Growth factor per failed attempt.
    """

    initial_delay: float = 1.0
    max_delay: float = 30.0
    multiplier: float = 2.0

    def delay(self, attempt: int) -> float:
        """Get the delay before reconnect attempt number `attempt` (from 0)."""
        return min(self.initial_delay * self.multiplier**attempt, self.max_delay)


StatusListener = Callable[[ConversationScope, FeedStatus], None]
ReconnectListener = Callable[[ConversationScope], Awaitable[None]]


class FeedHandle:
    """A live subscription for one scope, returned by EventFeedAdapter.subscribe."""

    def __init__(self, scope: ConversationScope, name: str) -> None:
        self.scope = scope
        self.name = name
        self.status = FeedStatus.CONNECTING
        self._connection: FeedConnection | None = None
        self._task: asyncio.Task[None] | None = None
        self._closed = False

    @property
    def is_active(self) -> bool:
        return not self._closed

    def __repr__(self) -> str:
        return f"FeedHandle({self.name!r}, status={self.status.value})"


class EventFeedAdapter:
    """Subscribe to scope-filtered change feeds and dispatch change events.

    Every event is tagged with the scope of the handle that received it.
    Events arriving on a handle after it was unsubscribed are dropped.
    """

    def __init__(
        self,
        feed: ChangeFeed,
        dispatcher: EventDispatcher,
        normalizer: RowNormalizer,
        viewer_id: str,
        backoff: BackoffPolicy | None = None,
    ) -> None:
        """Initialize the adapter.

        Args:
            feed: Backend change feed.
            dispatcher: Receives the normalized change events.
            normalizer: Row to event conversion.
            viewer_id: The current user (direct-message filters).
            backoff: Reconnect backoff policy.
        """
        self._feed = feed
        self._dispatcher = dispatcher
        self._normalizer = normalizer
        self._viewer_id = viewer_id
        self._backoff = backoff or BackoffPolicy()
        self._status_listener: StatusListener | None = None
        self._reconnect_listener: ReconnectListener | None = None

    def set_status_listener(self, listener: StatusListener | None) -> None:
        self._status_listener = listener

    def set_reconnect_listener(self, listener: ReconnectListener | None) -> None:
        """Set a callback run after a dropped subscription is re-established.

        Missed events are not redelivered; the callback can refetch state.
        """
        self._reconnect_listener = listener

    def filters_for(self, scope: ConversationScope) -> list[FeedFilter]:
        """Build the row filters for a scope.

        Direct conversations subscribe to messages received by either
        participant; the normalizer keeps only the pair's messages.
        Reactions and files carry no scope column and are subscribed
        table-wide.

        Args:
            scope: Conversation scope.

        Returns:
            Row filters.
        """
        if scope.kind is ScopeKind.CHANNEL:
            message_filters = [
                FeedFilter(MESSAGES_TABLE, "channel_id", str(scope.channel_id))
            ]
        else:
            receivers = dict.fromkeys([self._viewer_id, str(scope.peer_id)])
            message_filters = [
                FeedFilter(MESSAGES_TABLE, "receiver_id", receiver)
                for receiver in receivers
            ]
        return [*message_filters, FeedFilter(REACTIONS_TABLE), FeedFilter(FILES_TABLE)]

    async def subscribe(self, scope: ConversationScope) -> FeedHandle:
        """Subscribe to a scope's changes.

        If the first connection attempt fails, the handle is returned anyway
        and keeps retrying in the background.

        Args:
            scope: Conversation scope.

        Returns:
            Handle for unsubscribe().
        """
        handle = FeedHandle(scope, name=f"chatsync:{scope.key}")
        self._set_status(handle, FeedStatus.CONNECTING)
        try:
            handle._connection = await self._open(handle)
        except TransportError as e:
            logger.warning("Subscribing to %s failed: %s", scope, e)
            self._set_status(handle, FeedStatus.RECONNECTING)
        else:
            self._set_status(handle, FeedStatus.CONNECTED)
            logger.info("Subscribed to %s", scope)

        handle._task = asyncio.create_task(self._supervise(handle))
        return handle

    async def unsubscribe(self, handle: FeedHandle) -> None:
        """Tear down a subscription. Safe to call more than once.

        Args:
            handle: Handle returned by subscribe().
        """
        if handle._closed:
            return
        handle._closed = True

        connection, handle._connection = handle._connection, None
        if connection is not None:
            try:
                await connection.close()
            except TransportError as e:
                logger.debug("Error closing %s: %s", handle.name, e)

        if handle._task is not None:
            handle._task.cancel()
            try:
                await handle._task
            except asyncio.CancelledError:
                pass
            handle._task = None

        self._set_status(handle, FeedStatus.CLOSED)
        logger.info("Unsubscribed from %s", handle.scope)

    async def _open(self, handle: FeedHandle) -> FeedConnection:
        return await self._feed.open(
            handle.name,
            self.filters_for(handle.scope),
            partial(self._on_change, handle),
        )

    async def _on_change(self, handle: FeedHandle, change: RowChange) -> None:
        if handle._closed:
            logger.debug("Dropping %s change on closed %s", change.table, handle.name)
            return
        event = self._normalizer.normalize(change, handle.scope)
        if event is None:
            return
        logger.debug("Feed %s: %s %s", handle.name, event.kind.value, event.get_identity_key())
        await self._dispatcher.dispatch(event)

    async def _supervise(self, handle: FeedHandle) -> None:
        attempt = 0
        while not handle._closed:
            connection = handle._connection
            if connection is not None:
                try:
                    await connection.wait_closed()
                except TransportError as e:
                    logger.warning("Feed %s disconnected: %s", handle.name, e)
                else:
                    if handle._closed:
                        break
                    logger.warning("Feed %s closed by server", handle.name)
                handle._connection = None
                if handle._closed:
                    break
                self._set_status(handle, FeedStatus.RECONNECTING)

            delay = self._backoff.delay(attempt)
            attempt += 1
            logger.info("Reconnecting %s in %.1fs (attempt %d)", handle.name, delay, attempt)
            await asyncio.sleep(delay)
            if handle._closed:
                break

            try:
                connection = await self._open(handle)
            except TransportError as e:
                logger.warning("Reconnect of %s failed: %s", handle.name, e)
                continue
            if handle._closed:
                await connection.close()
                break

            handle._connection = connection
            attempt = 0
            self._set_status(handle, FeedStatus.CONNECTED)
            logger.info("Reconnected %s", handle.name)
            if self._reconnect_listener is not None:
                try:
                    await self._reconnect_listener(handle.scope)
                except Exception:
                    logger.exception("Error in reconnect listener for %s", handle.scope)

    def _set_status(self, handle: FeedHandle, status: FeedStatus) -> None:
        handle.status = status
        if self._status_listener is not None:
            self._status_listener(handle.scope, status)
