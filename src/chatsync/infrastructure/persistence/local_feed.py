"""In-process change feed for the local backend."""

import asyncio
import logging
from collections.abc import Sequence

from chatsync.domain.exceptions import TransportError
from chatsync.domain.services import FeedFilter, RowChange, RowChangeCallback

logger = logging.getLogger(__name__)


class LocalConnection:
    """A subscription to a LocalChangeFeed."""

    def __init__(
        self,
        feed: "LocalChangeFeed",
        name: str,
        filters: Sequence[FeedFilter],
        on_change: RowChangeCallback,
    ) -> None:
        self._feed = feed
        self.name = name
        self._filters = tuple(filters)
        self._on_change = on_change
        self._ended = asyncio.Event()
        self._error: TransportError | None = None

    @property
    def is_open(self) -> bool:
        return not self._ended.is_set()

    def accepts(self, change: RowChange) -> bool:
        row = change.new or change.old
        return any(
            feed_filter.table == change.table and feed_filter.matches(row)
            for feed_filter in self._filters
        )

    async def deliver(self, change: RowChange) -> None:
        await self._on_change(change)

    async def wait_closed(self) -> None:
        await self._ended.wait()
        if self._error is not None:
            raise self._error

    async def close(self) -> None:
        self._feed.detach(self)
        self._ended.set()

    def drop(self) -> None:
        """End the connection as if the transport failed."""
        self._error = TransportError(f"Local subscription {self.name} dropped")
        self._feed.detach(self)
        self._ended.set()


class LocalChangeFeed:
    """ChangeFeed that publishes row changes made by the local backend.

    Row filters are applied to the new row, or the old row for deletes.
    Setting ``available`` to False makes open() fail like an unreachable
    server.
    """

    def __init__(self) -> None:
        self._connections: list[LocalConnection] = []
        self.available = True

    @property
    def connections(self) -> list[LocalConnection]:
        return list(self._connections)

    async def open(
        self,
        name: str,
        filters: Sequence[FeedFilter],
        on_change: RowChangeCallback,
    ) -> LocalConnection:
        if not self.available:
            raise TransportError("Local change feed unavailable")
        connection = LocalConnection(self, name, filters, on_change)
        self._connections.append(connection)
        logger.debug("Opened local subscription %s", name)
        return connection

    def detach(self, connection: LocalConnection) -> None:
        if connection in self._connections:
            self._connections.remove(connection)
            logger.debug("Closed local subscription %s", connection.name)

    async def publish(self, change: RowChange) -> None:
        """Deliver a row change to every matching subscription."""
        for connection in list(self._connections):
            if connection.is_open and connection.accepts(change):
                await connection.deliver(change)

    def drop_all(self) -> None:
        """Drop every open subscription."""
        for connection in list(self._connections):
            connection.drop()
