"""Supabase Realtime change feed over a Phoenix websocket."""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
from collections.abc import Sequence
from typing import Any
from urllib.parse import urlencode

import aiohttp

from chatsync.config.models import SupabaseConfig
from chatsync.domain.exceptions import TransportError
from chatsync.domain.services import (
    FeedFilter,
    RowChange,
    RowChangeCallback,
    RowOperation,
)

logger = logging.getLogger(__name__)

PHOENIX_TOPIC = "phoenix"
PROTOCOL_VERSION = "1.0.0"


def realtime_url(config: SupabaseConfig) -> str:
    """Build the realtime websocket URL for a project URL."""
    base = config.url.rstrip("/")
    if base.startswith("https://"):
        base = "wss://" + base[len("https://") :]
    elif base.startswith("http://"):
        base = "ws://" + base[len("http://") :]
    query = urlencode({"apikey": config.api_key, "vsn": PROTOCOL_VERSION})
    return f"{base}/realtime/v1/websocket?{query}"


def join_payload(
    filters: Sequence[FeedFilter], access_token: str | None
) -> dict[str, Any]:
    changes = []
    for feed_filter in filters:
        entry = {"event": "*", "schema": "public", "table": feed_filter.table}
        expression = feed_filter.to_expression()
        if expression is not None:
            entry["filter"] = expression
        changes.append(entry)

    payload: dict[str, Any] = {
        "config": {
            "broadcast": {"ack": False, "self": False},
            "presence": {"key": ""},
            "postgres_changes": changes,
        }
    }
    if access_token:
        payload["access_token"] = access_token
    return payload


def parse_change(data: dict[str, Any]) -> RowChange:
    """Convert a postgres_changes data object into a RowChange.

    Raises:
        KeyError, ValueError: The data object is malformed.
    """
    return RowChange(
        table=data["table"],
        operation=RowOperation(data["type"]),
        new=data.get("record") or {},
        old=data.get("old_record") or {},
    )


class RealtimeConnection:
    """One joined realtime channel on its own websocket."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        ws: aiohttp.ClientWebSocketResponse,
        topic: str,
        on_change: RowChangeCallback,
        heartbeat_interval: float,
    ) -> None:
        self._session = session
        self._ws = ws
        self._topic = topic
        self._on_change = on_change
        self._heartbeat_interval = heartbeat_interval
        self._refs = itertools.count(1)
        self._join_ref: str | None = None
        self._pending_heartbeat: str | None = None
        self._timed_out = False
        self._closing = False
        self._reader: asyncio.Task[None] | None = None
        self._heartbeat: asyncio.Task[None] | None = None

    @property
    def topic(self) -> str:
        return self._topic

    async def join(self, payload: dict[str, Any], timeout: float) -> None:
        """Join the channel and start reading.

        Raises:
            TransportError: The join was rejected or timed out.
        """
        self._join_ref = self._next_ref()
        await self._send("phx_join", payload, ref=self._join_ref)

        try:
            await asyncio.wait_for(self._await_join_reply(), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise TransportError(f"Timed out joining {self._topic}") from e

        self._reader = asyncio.create_task(self._read())
        self._heartbeat = asyncio.create_task(self._beat())
        logger.info("Joined realtime channel %s", self._topic)

    async def wait_closed(self) -> None:
        if self._reader is None:
            return
        await asyncio.shield(self._reader)

    async def close(self) -> None:
        if self._closing:
            return
        self._closing = True

        if self._heartbeat is not None:
            if self._timed_out:
                # Already closing the socket; let it finish
                await self._heartbeat
            else:
                self._heartbeat.cancel()

        if not self._ws.closed:
            try:
                await self._send("phx_leave", {})
            except (ConnectionResetError, aiohttp.ClientError) as e:
                logger.debug("Could not send phx_leave on %s: %r", self._topic, e)
        await self._ws.close()
        if self._reader is not None:
            try:
                await self._reader
            except TransportError as e:
                logger.debug("Channel %s had already dropped: %s", self._topic, e)
        await self._session.close()
        logger.info("Left realtime channel %s", self._topic)

    async def _await_join_reply(self) -> None:
        while True:
            frame = await self._receive_frame()
            if frame is None:
                raise TransportError(f"Socket closed while joining {self._topic}")
            if frame.get("event") != "phx_reply" or frame.get("ref") != self._join_ref:
                continue
            reply = frame.get("payload") or {}
            if reply.get("status") != "ok":
                raise TransportError(
                    f"Join of {self._topic} rejected: {reply.get('response')}"
                )
            return

    async def _read(self) -> None:
        while True:
            frame = await self._receive_frame()
            if frame is None:
                break
            if not await self._handle_frame(frame):
                break

        if self._heartbeat is not None and not self._timed_out:
            self._heartbeat.cancel()
        if not self._closing:
            logger.warning("Realtime channel %s dropped", self._topic)
            raise TransportError(f"Realtime channel {self._topic} dropped")

    async def _receive_frame(self) -> dict[str, Any] | None:
        """Receive the next JSON frame. Returns None when the socket ends."""
        while True:
            msg = await self._ws.receive()
            if msg.type == aiohttp.WSMsgType.TEXT:
                try:
                    return json.loads(msg.data)
                except json.JSONDecodeError:
                    logger.warning("Ignoring non-JSON frame on %s", self._topic)
                    continue
            if msg.type == aiohttp.WSMsgType.ERROR:
                logger.error(
                    "Websocket error on %s: %r", self._topic, self._ws.exception()
                )
                return None
            if msg.type in (
                aiohttp.WSMsgType.CLOSE,
                aiohttp.WSMsgType.CLOSING,
                aiohttp.WSMsgType.CLOSED,
            ):
                return None

    async def _handle_frame(self, frame: dict[str, Any]) -> bool:
        """Handle one frame. Returns False when the channel has ended."""
        topic = frame.get("topic")
        event = frame.get("event")

        if topic == PHOENIX_TOPIC:
            if event == "phx_reply" and frame.get("ref") == self._pending_heartbeat:
                self._pending_heartbeat = None
            return True
        if topic != self._topic:
            return True

        if event == "postgres_changes":
            data = (frame.get("payload") or {}).get("data") or {}
            try:
                change = parse_change(data)
            except (KeyError, ValueError) as e:
                logger.warning("Dropping malformed change on %s: %r", self._topic, e)
                return True
            await self._on_change(change)
        elif event in ("phx_error", "phx_close"):
            logger.warning("Realtime channel %s received %s", self._topic, event)
            return False
        elif event == "system":
            logger.debug("System message on %s: %r", self._topic, frame.get("payload"))
        return True

    async def _beat(self) -> None:
        while True:
            await asyncio.sleep(self._heartbeat_interval)
            if self._pending_heartbeat is not None:
                logger.warning(
                    "Heartbeat %s unanswered on %s, closing socket",
                    self._pending_heartbeat,
                    self._topic,
                )
                # The reader sees the close and reports the drop
                self._timed_out = True
                await self._ws.close()
                return
            self._pending_heartbeat = self._next_ref()
            try:
                await self._send(
                    "heartbeat",
                    {},
                    ref=self._pending_heartbeat,
                    topic=PHOENIX_TOPIC,
                )
            except (ConnectionResetError, aiohttp.ClientError) as e:
                logger.warning("Heartbeat failed on %s: %r", self._topic, e)
                return

    async def _send(
        self,
        event: str,
        payload: dict[str, Any],
        ref: str | None = None,
        topic: str | None = None,
    ) -> None:
        await self._ws.send_json(
            {
                "topic": topic or self._topic,
                "event": event,
                "payload": payload,
                "ref": ref or self._next_ref(),
                "join_ref": self._join_ref,
            }
        )

    def _next_ref(self) -> str:
        return str(next(self._refs))


class SupabaseRealtimeFeed:
    """ChangeFeed implementation for Supabase Realtime (postgres_changes).

    Each subscription opens its own websocket so that a dropped connection
    only affects the scope it belongs to.
    """

    def __init__(self, config: SupabaseConfig) -> None:
        self._config = config
        self._url = realtime_url(config)

    async def open(
        self,
        name: str,
        filters: Sequence[FeedFilter],
        on_change: RowChangeCallback,
    ) -> RealtimeConnection:
        session = aiohttp.ClientSession()
        try:
            ws = await session.ws_connect(self._url)
        except (aiohttp.ClientError, OSError) as e:
            await session.close()
            raise TransportError(f"Could not connect to realtime: {e}") from e

        connection = RealtimeConnection(
            session,
            ws,
            topic=f"realtime:{name}",
            on_change=on_change,
            heartbeat_interval=self._config.heartbeat_interval_seconds,
        )
        try:
            await connection.join(
                join_payload(filters, self._config.access_token),
                timeout=self._config.timeout_seconds,
            )
        except (TransportError, aiohttp.ClientError, ConnectionResetError) as e:
            await ws.close()
            await session.close()
            if isinstance(e, TransportError):
                raise
            raise TransportError(f"Could not join realtime channel: {e}") from e
        return connection
