"""Tests for SQLiteChatBackend."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel, select
from sqlmodel.ext.asyncio.session import AsyncSession

from chatsync.application.services import ViewStateCoordinator
from chatsync.config import SyncConfig
from chatsync.domain.entities import (
    ConversationScope,
    FileAttachment,
    Reaction,
    ReactionCount,
)
from chatsync.domain.exceptions import DuplicateReaction, WriteRejected
from chatsync.domain.services import FeedFilter, RowChange, RowOperation
from chatsync.infrastructure.events import EventDispatcher
from chatsync.infrastructure.feed import EventFeedAdapter, RowNormalizer
from chatsync.infrastructure.persistence import (
    LocalChangeFeed,
    MessageFileModel,
    MessageReactionModel,
    SQLiteChatBackend,
)

CHANNEL = ConversationScope.channel(7)
ALL_TABLES = [
    FeedFilter("messages"),
    FeedFilter("message_files"),
    FeedFilter("message_reactions"),
]


@pytest.fixture
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    """Create in-memory SQLite async engine."""
    engine = create_async_engine("sqlite+aiosqlite:///:memory:")
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine):
    """Create async session factory."""
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    @asynccontextmanager
    async def get_session() -> AsyncGenerator[AsyncSession, None]:
        async with factory() as session:
            yield session

    return get_session


@pytest.fixture
def feed() -> LocalChangeFeed:
    return LocalChangeFeed()


@pytest.fixture
async def published(feed: LocalChangeFeed) -> list[RowChange]:
    changes: list[RowChange] = []

    async def collect(change: RowChange) -> None:
        changes.append(change)

    await feed.open("test", ALL_TABLES, collect)
    return changes


@pytest.fixture
def backend(session_factory, feed: LocalChangeFeed) -> SQLiteChatBackend:
    return SQLiteChatBackend("u1", session_factory, feed)


class TestInsertMessage:
    """insert_message tests."""

    async def test_insert_channel_message(
        self, backend: SQLiteChatBackend, published: list[RowChange]
    ) -> None:
        message = await backend.insert_message(CHANNEL, "hello", nonce="n1")

        assert message.id > 0
        assert message.body == "hello"
        assert message.author_id == "u1"
        assert message.channel_id == 7
        assert message.nonce == "n1"
        assert message.created_at.tzinfo is not None
        assert [(c.table, c.operation) for c in published] == [
            ("messages", RowOperation.INSERT)
        ]
        assert published[0].new["client_nonce"] == "n1"

    async def test_insert_with_attachments(
        self,
        backend: SQLiteChatBackend,
        session_factory,
        published: list[RowChange],
    ) -> None:
        message = await backend.insert_message(
            CHANNEL,
            "see file",
            attachments=[FileAttachment(0, "https://x/a.png", "image/png")],
        )

        assert len(message.attachments) == 1
        assert message.attachments[0].message_id == message.id
        assert message.attachments[0].id is not None
        assert [c.table for c in published] == ["messages", "message_files"]
        async with session_factory() as session:
            result = await session.exec(select(MessageFileModel))
            assert [f.file_url for f in result.all()] == ["https://x/a.png"]

    async def test_reply_to_unknown_parent_rejected(
        self, backend: SQLiteChatBackend, published: list[RowChange]
    ) -> None:
        with pytest.raises(WriteRejected) as exc_info:
            await backend.insert_message(CHANNEL, "reply", parent_id=999)

        assert exc_info.value.status == 404
        assert published == []


class TestFetch:
    """fetch_initial_messages / fetch_reactions tests."""

    async def test_fetch_channel_in_order(self, backend: SQLiteChatBackend) -> None:
        first = await backend.insert_message(CHANNEL, "first")
        second = await backend.insert_message(CHANNEL, "second", parent_id=first.id)
        await backend.insert_message(ConversationScope.channel(8), "elsewhere")
        await backend.insert_message(ConversationScope.direct("u2"), "private")

        messages = await backend.fetch_initial_messages(CHANNEL)

        assert [m.id for m in messages] == [first.id, second.id]
        assert messages[1].parent_id == first.id

    async def test_fetch_direct_pair(self, backend: SQLiteChatBackend) -> None:
        peer = backend.as_user("u2")
        stranger = backend.as_user("u3")
        mine = await backend.insert_message(ConversationScope.direct("u2"), "hi")
        theirs = await peer.insert_message(ConversationScope.direct("u1"), "hey")
        await stranger.insert_message(ConversationScope.direct("u2"), "spam")

        messages = await backend.fetch_initial_messages(ConversationScope.direct("u2"))

        assert [m.id for m in messages] == [mine.id, theirs.id]

    async def test_fetch_includes_attachments(self, backend: SQLiteChatBackend) -> None:
        await backend.insert_message(
            CHANNEL, "file", attachments=[FileAttachment(0, "https://x/doc.pdf", "application/pdf")]
        )

        messages = await backend.fetch_initial_messages(CHANNEL)

        assert messages[0].attachments[0].name == "doc.pdf"

    async def test_fetch_reactions(self, backend: SQLiteChatBackend) -> None:
        message = await backend.insert_message(CHANNEL, "hello")
        await backend.insert_reaction(message.id, "👍")
        await backend.as_user("u2").insert_reaction(message.id, "👍")

        reactions = await backend.fetch_reactions([message.id])

        assert reactions == [
            Reaction(message.id, "👍", "u1"),
            Reaction(message.id, "👍", "u2"),
        ]
        assert await backend.fetch_reactions([]) == []


class TestReactions:
    """insert_reaction / remove_reaction tests."""

    async def test_insert_publishes(
        self, backend: SQLiteChatBackend, published: list[RowChange]
    ) -> None:
        message = await backend.insert_message(CHANNEL, "hello")

        await backend.insert_reaction(message.id, "🎉")

        change = published[-1]
        assert change.table == "message_reactions"
        assert change.operation is RowOperation.INSERT
        assert change.new["emoji"] == "🎉"

    async def test_duplicate(self, backend: SQLiteChatBackend) -> None:
        message = await backend.insert_message(CHANNEL, "hello")
        await backend.insert_reaction(message.id, "👍")

        with pytest.raises(DuplicateReaction):
            await backend.insert_reaction(message.id, "👍")

    async def test_unknown_message(self, backend: SQLiteChatBackend) -> None:
        with pytest.raises(WriteRejected):
            await backend.insert_reaction(999, "👍")

    async def test_remove_publishes_full_row(
        self, backend: SQLiteChatBackend, published: list[RowChange]
    ) -> None:
        message = await backend.insert_message(CHANNEL, "hello")
        await backend.insert_reaction(message.id, "👍")

        await backend.remove_reaction(message.id, "👍")

        change = published[-1]
        assert change.operation is RowOperation.DELETE
        assert change.old["user_id"] == "u1"
        assert await backend.fetch_reactions([message.id]) == []

    async def test_remove_missing_is_noop(
        self, backend: SQLiteChatBackend, published: list[RowChange]
    ) -> None:
        await backend.remove_reaction(1, "👍")

        assert published == []


class TestUpdateAndDelete:
    """update_message / delete_message tests."""

    async def test_update(
        self, backend: SQLiteChatBackend, published: list[RowChange]
    ) -> None:
        message = await backend.insert_message(CHANNEL, "helo")

        updated = await backend.update_message(message.id, "hello")

        assert updated.body == "hello"
        assert published[-1].operation is RowOperation.UPDATE
        assert published[-1].old == {"id": message.id}

    async def test_delete_removes_files_and_reactions(
        self,
        backend: SQLiteChatBackend,
        session_factory,
        published: list[RowChange],
    ) -> None:
        message = await backend.insert_message(
            CHANNEL, "bye", attachments=[FileAttachment(0, "https://x/a.png", "image/png")]
        )
        reply = await backend.insert_message(CHANNEL, "reply", parent_id=message.id)
        await backend.insert_reaction(message.id, "👍")

        await backend.delete_message(message.id)

        assert published[-1].operation is RowOperation.DELETE
        assert published[-1].old["channel_id"] == 7
        remaining = await backend.fetch_initial_messages(CHANNEL)
        assert [m.id for m in remaining] == [reply.id]
        async with session_factory() as session:
            files = await session.exec(select(MessageFileModel))
            reactions = await session.exec(select(MessageReactionModel))
            assert files.all() == []
            assert reactions.all() == []

    async def test_delete_unknown(self, backend: SQLiteChatBackend) -> None:
        with pytest.raises(WriteRejected):
            await backend.delete_message(999)


class TestWithCoordinator:
    """End-to-end tests with the coordinator on the local feed."""

    @pytest.fixture
    async def coordinator(
        self, backend: SQLiteChatBackend, feed: LocalChangeFeed
    ) -> AsyncGenerator[ViewStateCoordinator, None]:
        dispatcher = EventDispatcher()
        adapter = EventFeedAdapter(feed, dispatcher, RowNormalizer("u1"), "u1")
        coordinator = ViewStateCoordinator(backend, adapter, dispatcher, "u1", SyncConfig())
        await coordinator.set_active_scope(CHANNEL)
        yield coordinator
        await coordinator.close()

    async def test_send_shows_exactly_one_message(
        self, coordinator: ViewStateCoordinator
    ) -> None:
        stored = await coordinator.send("hello")

        messages = coordinator.messages()
        assert [m.id for m in messages] == [stored.id]
        assert messages[0].is_provisional is False

    async def test_other_user_activity(
        self, coordinator: ViewStateCoordinator, backend: SQLiteChatBackend
    ) -> None:
        peer = backend.as_user("u2")
        stored = await coordinator.send("hello")

        reply = await peer.insert_message(CHANNEL, "hi back", parent_id=stored.id)
        await peer.insert_reaction(stored.id, "👍")
        await coordinator.react(stored.id, "👍")

        assert coordinator.view()[0].children[0].id == reply.id
        assert coordinator.reactions(stored.id) == {
            "👍": ReactionCount(count=2, reacted_by_current_user=True)
        }

    async def test_delete_propagates(
        self, coordinator: ViewStateCoordinator, backend: SQLiteChatBackend
    ) -> None:
        stored = await coordinator.send("oops")
        await coordinator.react(stored.id, "👍")

        await backend.delete_message(stored.id)

        assert coordinator.messages() == []
        assert coordinator.reactions(stored.id) == {}
