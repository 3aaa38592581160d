"""Supabase (PostgREST) implementation of ChatBackend."""

import logging
from collections.abc import Sequence
from dataclasses import replace
from typing import Any

import httpx

from chatsync.config.models import SupabaseConfig
from chatsync.domain.entities import (
    ConversationScope,
    FileAttachment,
    Message,
    Reaction,
    ScopeKind,
)
from chatsync.domain.exceptions import DuplicateReaction, TransportError, WriteRejected
from chatsync.infrastructure.feed.normalizer import (
    FILES_TABLE,
    MESSAGES_TABLE,
    REACTIONS_TABLE,
    RowNormalizer,
)

logger = logging.getLogger(__name__)

MESSAGE_SELECT = f"*,files:{FILES_TABLE}(*)"


class SupabaseBackend:
    """ChatBackend backed by a Supabase project's REST API.

    Writes are performed as the viewer: the access token identifies the
    user to row-level security, and user_id columns are set to viewer_id.
    """

    def __init__(
        self,
        config: SupabaseConfig,
        viewer_id: str,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the backend.

        Args:
            config: Supabase connection settings.
            viewer_id: The current user.
            client: HTTP client to use. Created from config if omitted.
        """
        self._config = config
        self._viewer_id = viewer_id
        self._normalizer = RowNormalizer(viewer_id, nonce_column=config.nonce_column)
        self._client = client or httpx.AsyncClient(
            base_url=f"{config.url.rstrip('/')}/rest/v1",
            headers={
                "apikey": config.api_key,
                "Authorization": f"Bearer {config.access_token or config.api_key}",
            },
            timeout=config.timeout_seconds,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def insert_message(
        self,
        scope: ConversationScope,
        body: str,
        attachments: Sequence[FileAttachment] = (),
        parent_id: int | None = None,
        nonce: str | None = None,
    ) -> Message:
        row: dict[str, Any] = {
            "message": body,
            "user_id": self._viewer_id,
            "parent_message_id": parent_id,
        }
        if scope.kind is ScopeKind.CHANNEL:
            row.update(message_type="channel", channel_id=scope.channel_id)
        else:
            row.update(message_type="direct", receiver_id=scope.peer_id)
        if self._config.nonce_column and nonce is not None:
            row[self._config.nonce_column] = nonce

        rows = await self._request(
            "insert_message",
            "POST",
            f"/{MESSAGES_TABLE}",
            json=row,
            headers={"Prefer": "return=representation"},
        )
        message = self._normalizer.to_message(rows[0])
        logger.debug("Inserted message %d into %s", message.id, scope)

        if attachments:
            file_rows = await self._request(
                "insert_message",
                "POST",
                f"/{FILES_TABLE}",
                json=[
                    {
                        "message_id": message.id,
                        "file_url": attachment.url,
                        "file_type": attachment.file_type,
                    }
                    for attachment in attachments
                ],
                headers={"Prefer": "return=representation"},
            )
            message = replace(
                message,
                attachments=tuple(
                    self._normalizer.to_attachment(file_row) for file_row in file_rows
                ),
            )
        return message

    async def insert_reaction(self, message_id: int, emoji: str) -> None:
        try:
            await self._request(
                "insert_reaction",
                "POST",
                f"/{REACTIONS_TABLE}",
                json={
                    "message_id": message_id,
                    "user_id": self._viewer_id,
                    "emoji": emoji,
                },
                headers={"Prefer": "return=minimal"},
            )
        except WriteRejected as e:
            if e.status == 409:
                raise DuplicateReaction(message_id, emoji) from e
            raise

    async def remove_reaction(self, message_id: int, emoji: str) -> None:
        await self._request(
            "remove_reaction",
            "DELETE",
            f"/{REACTIONS_TABLE}",
            params={
                "message_id": f"eq.{message_id}",
                "user_id": f"eq.{self._viewer_id}",
                "emoji": f"eq.{emoji}",
            },
            headers={"Prefer": "return=minimal"},
        )

    async def fetch_initial_messages(self, scope: ConversationScope) -> list[Message]:
        params = {"select": MESSAGE_SELECT, "order": "inserted_at.asc,id.asc"}
        if scope.kind is ScopeKind.CHANNEL:
            params["channel_id"] = f"eq.{scope.channel_id}"
            params["message_type"] = "eq.channel"
        else:
            viewer, peer = self._viewer_id, scope.peer_id
            params["message_type"] = "eq.direct"
            params["or"] = (
                f"(and(user_id.eq.{viewer},receiver_id.eq.{peer}),"
                f"and(user_id.eq.{peer},receiver_id.eq.{viewer}))"
            )

        rows = await self._request(
            "fetch_initial_messages", "GET", f"/{MESSAGES_TABLE}", params=params
        )
        messages = []
        for row in rows:
            try:
                messages.append(self._normalizer.to_message(row))
            except (KeyError, ValueError, TypeError) as e:
                logger.warning("Skipping malformed message row %r: %r", row.get("id"), e)
        return messages

    async def fetch_reactions(self, message_ids: Sequence[int]) -> list[Reaction]:
        if not message_ids:
            return []
        ids = ",".join(str(message_id) for message_id in message_ids)
        rows = await self._request(
            "fetch_reactions",
            "GET",
            f"/{REACTIONS_TABLE}",
            params={"select": "*", "message_id": f"in.({ids})"},
        )
        return [self._normalizer.to_reaction(row) for row in rows]

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        **kwargs: Any,
    ) -> Any:
        """Perform a REST call and decode the JSON body.

        Raises:
            WriteRejected: The backend answered with an error status.
            TransportError: The backend could not be reached.
        """
        try:
            response = await self._client.request(method, path, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            detail = _error_detail(e.response)
            logger.warning(
                "%s failed with %d: %s", operation, e.response.status_code, detail
            )
            raise WriteRejected(operation, detail, e.response.status_code) from e
        except httpx.HTTPError as e:
            raise TransportError(f"{operation}: {e}") from e

        if not response.content:
            return None
        return response.json()


def _error_detail(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text
    if isinstance(data, dict):
        return str(data.get("message") or data.get("details") or data)
    return str(data)
