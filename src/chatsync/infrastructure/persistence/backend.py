"""SQLite implementation of ChatBackend."""

import logging
from collections import defaultdict
from collections.abc import Callable, Sequence
from contextlib import AbstractAsyncContextManager
from typing import Any

from sqlalchemy import and_, or_
from sqlalchemy.exc import IntegrityError
from sqlmodel import SQLModel, col, select
from sqlmodel.ext.asyncio.session import AsyncSession

from chatsync.domain.entities import (
    ConversationScope,
    FileAttachment,
    Message,
    Reaction,
    ScopeKind,
)
from chatsync.domain.exceptions import DuplicateReaction, WriteRejected
from chatsync.domain.services import RowChange, RowOperation
from chatsync.infrastructure.feed.normalizer import (
    FILES_TABLE,
    MESSAGES_TABLE,
    REACTIONS_TABLE,
    RowNormalizer,
)
from chatsync.infrastructure.persistence.local_feed import LocalChangeFeed
from chatsync.infrastructure.persistence.models import (
    MessageFileModel,
    MessageModel,
    MessageReactionModel,
)

logger = logging.getLogger(__name__)


def _row(model: SQLModel) -> dict[str, Any]:
    return model.model_dump()


class SQLiteChatBackend:
    """SQLite 版 ChatBackend 実装

    メッセージ、添付ファイル、リアクションを SQLite に保存し、
    書き込みごとに行変更を LocalChangeFeed に publish する。
    書き込みはすべて viewer_id のユーザーとして行う。
    """

    def __init__(
        self,
        viewer_id: str,
        session_factory: Callable[[], AbstractAsyncContextManager[AsyncSession]],
        feed: LocalChangeFeed | None = None,
    ) -> None:
        """初期化

        Args:
            viewer_id: 現在のユーザー ID
            session_factory: 非同期セッション生成関数
            feed: 行変更の publish 先（None の場合は publish しない）
        """
        self._viewer_id = viewer_id
        self._session_factory = session_factory
        self._feed = feed
        self._normalizer = RowNormalizer(viewer_id)

    def as_user(self, user_id: str) -> "SQLiteChatBackend":
        """同じデータベースを別ユーザーとして操作するバックエンドを返す"""
        return SQLiteChatBackend(user_id, self._session_factory, self._feed)

    async def insert_message(
        self,
        scope: ConversationScope,
        body: str,
        attachments: Sequence[FileAttachment] = (),
        parent_id: int | None = None,
        nonce: str | None = None,
    ) -> Message:
        """メッセージを保存する

        Args:
            scope: 投稿先の会話
            body: 本文
            attachments: 添付ファイル（message_id は無視される）
            parent_id: スレッドの親メッセージ ID
            nonce: クライアント相関トークン

        Returns:
            保存されたメッセージ

        Raises:
            WriteRejected: 親メッセージが存在しない場合
        """
        async with self._session_factory() as session:
            if parent_id is not None and await session.get(MessageModel, parent_id) is None:
                raise WriteRejected("insert_message", f"unknown parent {parent_id}", 404)

            model = MessageModel(
                message=body,
                message_type="channel" if scope.kind is ScopeKind.CHANNEL else "direct",
                user_id=self._viewer_id,
                channel_id=scope.channel_id,
                receiver_id=scope.peer_id,
                parent_message_id=parent_id,
                client_nonce=nonce,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            assert model.id is not None

            file_models = [
                MessageFileModel(
                    message_id=model.id,
                    file_url=attachment.url,
                    file_type=attachment.file_type,
                )
                for attachment in attachments
            ]
            if file_models:
                session.add_all(file_models)
                await session.commit()
                for file_model in file_models:
                    await session.refresh(file_model)

            message_row = _row(model)
            file_rows = [_row(f) for f in file_models]

        await self._publish(MESSAGES_TABLE, RowOperation.INSERT, new=message_row)
        for file_row in file_rows:
            await self._publish(FILES_TABLE, RowOperation.INSERT, new=file_row)
        return self._normalizer.to_message({**message_row, "files": file_rows})

    async def update_message(self, message_id: int, body: str) -> Message:
        """メッセージ本文を更新する

        Raises:
            WriteRejected: メッセージが存在しない場合
        """
        async with self._session_factory() as session:
            model = await session.get(MessageModel, message_id)
            if model is None:
                raise WriteRejected("update_message", f"unknown message {message_id}", 404)
            model.message = body
            session.add(model)
            await session.commit()
            await session.refresh(model)
            message_row = _row(model)
            file_rows = await self._file_rows(session, [message_id])

        await self._publish(
            MESSAGES_TABLE,
            RowOperation.UPDATE,
            new=message_row,
            old={"id": message_id},
        )
        return self._normalizer.to_message(
            {**message_row, "files": file_rows.get(message_id, [])}
        )

    async def delete_message(self, message_id: int) -> None:
        """メッセージと、その添付ファイル・リアクションを削除する

        返信は削除しない（親を失った返信として残る）。

        Raises:
            WriteRejected: メッセージが存在しない場合
        """
        async with self._session_factory() as session:
            model = await session.get(MessageModel, message_id)
            if model is None:
                raise WriteRejected("delete_message", f"unknown message {message_id}", 404)
            old_row = _row(model)

            files = await session.exec(
                select(MessageFileModel).where(MessageFileModel.message_id == message_id)
            )
            for file_model in files.all():
                await session.delete(file_model)
            reactions = await session.exec(
                select(MessageReactionModel).where(
                    MessageReactionModel.message_id == message_id
                )
            )
            for reaction_model in reactions.all():
                await session.delete(reaction_model)
            await session.delete(model)
            await session.commit()

        await self._publish(MESSAGES_TABLE, RowOperation.DELETE, old=old_row)

    async def insert_reaction(self, message_id: int, emoji: str) -> None:
        """リアクションを追加する

        Raises:
            DuplicateReaction: 既に同じリアクションがある場合
            WriteRejected: メッセージが存在しない場合
        """
        async with self._session_factory() as session:
            if await session.get(MessageModel, message_id) is None:
                raise WriteRejected("insert_reaction", f"unknown message {message_id}", 404)

            model = MessageReactionModel(
                message_id=message_id, user_id=self._viewer_id, emoji=emoji
            )
            session.add(model)
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise DuplicateReaction(message_id, emoji) from e
            await session.refresh(model)
            row = _row(model)

        await self._publish(REACTIONS_TABLE, RowOperation.INSERT, new=row)

    async def remove_reaction(self, message_id: int, emoji: str) -> None:
        """リアクションを削除する（存在しない場合は何もしない）"""
        async with self._session_factory() as session:
            result = await session.exec(
                select(MessageReactionModel).where(
                    MessageReactionModel.message_id == message_id,
                    MessageReactionModel.user_id == self._viewer_id,
                    MessageReactionModel.emoji == emoji,
                )
            )
            model = result.first()
            if model is None:
                logger.debug("No reaction %s on %d to remove", emoji, message_id)
                return
            row = _row(model)
            await session.delete(model)
            await session.commit()

        await self._publish(REACTIONS_TABLE, RowOperation.DELETE, old=row)

    async def fetch_initial_messages(self, scope: ConversationScope) -> list[Message]:
        """会話のメッセージを古い順に取得する"""
        async with self._session_factory() as session:
            statement = select(MessageModel)
            if scope.kind is ScopeKind.CHANNEL:
                statement = statement.where(
                    MessageModel.message_type == "channel",
                    MessageModel.channel_id == scope.channel_id,
                )
            else:
                viewer, peer = self._viewer_id, scope.peer_id
                statement = statement.where(
                    MessageModel.message_type == "direct",
                    or_(
                        and_(
                            col(MessageModel.user_id) == viewer,
                            col(MessageModel.receiver_id) == peer,
                        ),
                        and_(
                            col(MessageModel.user_id) == peer,
                            col(MessageModel.receiver_id) == viewer,
                        ),
                    ),
                )
            statement = statement.order_by(
                col(MessageModel.inserted_at), col(MessageModel.id)
            )
            result = await session.exec(statement)
            models = result.all()
            file_rows = await self._file_rows(
                session, [m.id for m in models if m.id is not None]
            )

        return [
            self._normalizer.to_message({**_row(m), "files": file_rows.get(m.id, [])})
            for m in models
        ]

    async def fetch_reactions(self, message_ids: Sequence[int]) -> list[Reaction]:
        """指定メッセージのリアクションを取得する"""
        if not message_ids:
            return []
        async with self._session_factory() as session:
            result = await session.exec(
                select(MessageReactionModel)
                .where(col(MessageReactionModel.message_id).in_(message_ids))
                .order_by(col(MessageReactionModel.id))
            )
            return [self._normalizer.to_reaction(_row(m)) for m in result.all()]

    async def _file_rows(
        self, session: AsyncSession, message_ids: list[int]
    ) -> dict[int, list[dict[str, Any]]]:
        rows: dict[int, list[dict[str, Any]]] = defaultdict(list)
        if not message_ids:
            return rows
        result = await session.exec(
            select(MessageFileModel)
            .where(col(MessageFileModel.message_id).in_(message_ids))
            .order_by(col(MessageFileModel.id))
        )
        for file_model in result.all():
            rows[file_model.message_id].append(_row(file_model))
        return rows

    async def _publish(
        self,
        table: str,
        operation: RowOperation,
        new: dict[str, Any] | None = None,
        old: dict[str, Any] | None = None,
    ) -> None:
        if self._feed is None:
            return
        await self._feed.publish(
            RowChange(table=table, operation=operation, new=new or {}, old=old or {})
        )
