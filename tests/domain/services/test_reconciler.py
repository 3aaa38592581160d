"""Tests for MessageTreeReconciler."""

import random
from datetime import datetime, timedelta, timezone

import pytest

from chatsync.domain.entities import FileAttachment, Message, ThreadNode
from chatsync.domain.services import MessageTreeReconciler

BASE_TIME = datetime(2024, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


def create_message(
    id: int,
    parent_id: int | None = None,
    minutes: int | None = None,
    body: str | None = None,
    attachments: tuple[FileAttachment, ...] = (),
) -> Message:
    """Create a channel message created `minutes` after BASE_TIME."""
    return Message(
        id=id,
        body=body if body is not None else f"message {id}",
        author_id="u1",
        created_at=BASE_TIME + timedelta(minutes=id if minutes is None else minutes),
        channel_id=7,
        parent_id=parent_id,
        attachments=attachments,
    )


def shape(nodes: tuple[ThreadNode, ...]) -> list:
    """Reduce a forest to nested (id, children) pairs for comparison."""
    return [(n.id, shape(n.children)) for n in nodes]


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def reconciler(clock: FakeClock) -> MessageTreeReconciler:
    return MessageTreeReconciler(file_buffer_seconds=30.0, clock=clock)


class TestApplyInsert:
    """apply_insert tests."""

    def test_insert_root(self, reconciler: MessageTreeReconciler) -> None:
        assert reconciler.apply_insert(create_message(1)) is True

        assert shape(reconciler.view()) == [(1, [])]
        assert 1 in reconciler
        assert len(reconciler) == 1

    def test_insert_is_idempotent(self, reconciler: MessageTreeReconciler) -> None:
        """Test that a duplicate insert leaves the tree unchanged."""
        reconciler.apply_insert(create_message(1))
        reconciler.apply_insert(create_message(2, parent_id=1))
        before = reconciler.view()
        version = reconciler.version

        assert reconciler.apply_insert(create_message(2, parent_id=1)) is False

        assert reconciler.view() == before
        assert reconciler.version == version

    def test_replies_nest_under_parent(self, reconciler: MessageTreeReconciler) -> None:
        reconciler.apply_insert(create_message(1))
        reconciler.apply_insert(create_message(2, parent_id=1))
        reconciler.apply_insert(create_message(3, parent_id=2))

        assert shape(reconciler.view()) == [(1, [(2, [(3, [])])])]
        assert reconciler.view()[0].reply_count == 2

    def test_deep_thread(self, reconciler: MessageTreeReconciler) -> None:
        """Test that nesting depth is not limited by recursion."""
        reconciler.apply_insert(create_message(1))
        for message_id in range(2, 1502):
            reconciler.apply_insert(create_message(message_id, parent_id=message_id - 1))

        node = reconciler.view()[0]
        depth = 0
        while node.children:
            node = node.children[0]
            depth += 1

        assert depth == 1500
        assert node.id == 1501
        root = reconciler.view()[0]
        assert root.reply_count == 1500
        assert [n.id for n in root.walk()] == list(range(1, 1502))

    def test_insert_after_delete_is_ignored(
        self, reconciler: MessageTreeReconciler
    ) -> None:
        reconciler.apply_insert(create_message(1))
        reconciler.apply_delete(1)

        assert reconciler.apply_insert(create_message(1)) is False
        assert reconciler.view() == ()


class TestOrdering:
    """Sibling ordering tests."""

    def test_roots_sorted_by_creation_time(
        self, reconciler: MessageTreeReconciler
    ) -> None:
        reconciler.apply_insert(create_message(3, minutes=1))
        reconciler.apply_insert(create_message(1, minutes=3))
        reconciler.apply_insert(create_message(2, minutes=2))

        assert [n.id for n in reconciler.view()] == [3, 2, 1]

    def test_siblings_sorted_regardless_of_arrival(
        self, reconciler: MessageTreeReconciler
    ) -> None:
        """Test that every sibling set is ordered for any arrival order."""
        messages = [create_message(1)] + [
            create_message(i, parent_id=1, minutes=100 - i) for i in range(2, 12)
        ]
        shuffled = messages[:]
        random.Random(4).shuffle(shuffled)
        for message in shuffled:
            reconciler.apply_insert(message)

        children = reconciler.view()[0].children
        timestamps = [child.message.created_at for child in children]

        assert timestamps == sorted(timestamps)

    def test_ties_broken_by_id(self, reconciler: MessageTreeReconciler) -> None:
        reconciler.apply_insert(create_message(5, minutes=0))
        reconciler.apply_insert(create_message(4, minutes=0))

        assert [n.id for n in reconciler.view()] == [4, 5]

    def test_flat_messages(self, reconciler: MessageTreeReconciler) -> None:
        reconciler.apply_insert(create_message(2))
        reconciler.apply_insert(create_message(3, parent_id=2))
        reconciler.apply_insert(create_message(1))

        assert [m.id for m in reconciler.messages()] == [1, 2, 3]


class TestGapTolerance:
    """Out-of-order and missed event tests."""

    def test_orphan_reply_shown_as_root_until_parent_arrives(
        self, reconciler: MessageTreeReconciler
    ) -> None:
        reconciler.apply_insert(create_message(2, parent_id=1))

        assert shape(reconciler.view()) == [(2, [])]

        reconciler.apply_insert(create_message(1))

        assert shape(reconciler.view()) == [(1, [(2, [])])]

    def test_missed_insert_healed_by_update(
        self, reconciler: MessageTreeReconciler
    ) -> None:
        """Test that an update for a missed parent nests its reply under it."""
        reconciler.apply_insert(create_message(2, parent_id=1))

        assert reconciler.apply_update(create_message(1, body="edited")) is True

        assert shape(reconciler.view()) == [(1, [(2, [])])]
        assert reconciler.get(1).body == "edited"


class TestApplyUpdate:
    """apply_update tests."""

    def test_update_body(self, reconciler: MessageTreeReconciler) -> None:
        reconciler.apply_insert(create_message(1))

        assert reconciler.apply_update(create_message(1, body="edited")) is True
        assert reconciler.get(1).body == "edited"

    def test_identical_update_is_noop(self, reconciler: MessageTreeReconciler) -> None:
        reconciler.apply_insert(create_message(1))

        assert reconciler.apply_update(create_message(1)) is False

    def test_update_keeps_attachments(self, reconciler: MessageTreeReconciler) -> None:
        """Test that an update without files keeps the known attachments."""
        attachment = FileAttachment(message_id=1, url="https://x/a.png", file_type="image/png", id=1)
        reconciler.apply_insert(create_message(1, attachments=(attachment,)))

        reconciler.apply_update(create_message(1, body="edited"))

        assert reconciler.get(1).attachments == (attachment,)

    def test_update_moves_reply(self, reconciler: MessageTreeReconciler) -> None:
        reconciler.apply_insert(create_message(1))
        reconciler.apply_insert(create_message(2))
        reconciler.apply_insert(create_message(3, parent_id=1))

        reconciler.apply_update(create_message(3, parent_id=2))

        assert shape(reconciler.view()) == [(1, []), (2, [(3, [])])]

    def test_update_creating_cycle_shows_as_root(
        self, reconciler: MessageTreeReconciler
    ) -> None:
        reconciler.apply_insert(create_message(1))
        reconciler.apply_insert(create_message(2, parent_id=1))

        reconciler.apply_update(create_message(1, parent_id=2))

        assert shape(reconciler.view()) == [(1, [(2, [])])]


class TestApplyDelete:
    """apply_delete tests."""

    def test_delete_leaf(self, reconciler: MessageTreeReconciler) -> None:
        reconciler.apply_insert(create_message(1))
        reconciler.apply_insert(create_message(2, parent_id=1))

        assert reconciler.apply_delete(2) is True

        assert shape(reconciler.view()) == [(1, [])]
        assert 2 not in reconciler

    def test_delete_unknown_is_noop(self, reconciler: MessageTreeReconciler) -> None:
        assert reconciler.apply_delete(99) is False

    def test_delete_is_idempotent(self, reconciler: MessageTreeReconciler) -> None:
        reconciler.apply_insert(create_message(1))

        assert reconciler.apply_delete(1) is True
        assert reconciler.apply_delete(1) is False

    def test_deleted_parent_kept_as_placeholder(
        self, reconciler: MessageTreeReconciler
    ) -> None:
        reconciler.apply_insert(create_message(1))
        reconciler.apply_insert(create_message(2, parent_id=1))

        reconciler.apply_delete(1)

        root = reconciler.view()[0]
        assert root.id == 1
        assert root.deleted is True
        assert root.message.body == ""
        assert [child.id for child in root.children] == [2]
        assert 1 not in reconciler
        assert reconciler.get(1) is None
        assert len(reconciler) == 1

    def test_placeholder_pruned_with_last_reply(
        self, reconciler: MessageTreeReconciler
    ) -> None:
        reconciler.apply_insert(create_message(1))
        reconciler.apply_insert(create_message(2, parent_id=1))
        reconciler.apply_insert(create_message(3, parent_id=2))
        reconciler.apply_delete(1)
        reconciler.apply_delete(2)

        reconciler.apply_delete(3)

        assert reconciler.view() == ()


class TestAttachFile:
    """attach_file tests."""

    def test_attach_to_known_message(self, reconciler: MessageTreeReconciler) -> None:
        reconciler.apply_insert(create_message(1))
        attachment = FileAttachment(message_id=1, url="https://x/a.png", file_type="image/png", id=10)

        assert reconciler.attach_file(attachment) is True
        assert reconciler.attach_file(attachment) is False

        assert reconciler.get(1).attachments == (attachment,)

    def test_file_before_message_is_buffered(
        self, reconciler: MessageTreeReconciler, clock: FakeClock
    ) -> None:
        attachment = FileAttachment(message_id=1, url="https://x/a.png", file_type="image/png", id=10)

        assert reconciler.attach_file(attachment) is False
        clock.now = 10.0
        reconciler.apply_insert(create_message(1))

        assert reconciler.get(1).attachments == (attachment,)

    def test_buffered_file_expires(
        self, reconciler: MessageTreeReconciler, clock: FakeClock
    ) -> None:
        attachment = FileAttachment(message_id=1, url="https://x/a.png", file_type="image/png", id=10)
        reconciler.attach_file(attachment)

        clock.now = 31.0
        reconciler.apply_insert(create_message(1))

        assert reconciler.get(1).attachments == ()

    def test_file_for_deleted_message_ignored(
        self, reconciler: MessageTreeReconciler
    ) -> None:
        reconciler.apply_insert(create_message(1))
        reconciler.apply_delete(1)

        attachment = FileAttachment(message_id=1, url="https://x/a.png", file_type="image/png", id=10)

        assert reconciler.attach_file(attachment) is False


class TestProvisional:
    """confirm_provisional and discard tests."""

    def test_confirm_replaces_provisional(
        self, reconciler: MessageTreeReconciler
    ) -> None:
        """Test that only the confirmed message remains after confirmation."""
        reconciler.apply_insert(create_message(-1, minutes=5))

        assert reconciler.confirm_provisional(-1, create_message(42, minutes=5)) is True

        assert [n.id for n in reconciler.view()] == [42]

    def test_confirm_after_echo(self, reconciler: MessageTreeReconciler) -> None:
        """Test confirming when the stored message already arrived."""
        reconciler.apply_insert(create_message(-1, minutes=5))
        reconciler.apply_insert(create_message(42, minutes=5))

        reconciler.confirm_provisional(-1, create_message(42, minutes=5))

        assert [n.id for n in reconciler.view()] == [42]

    def test_confirm_moves_replies(self, reconciler: MessageTreeReconciler) -> None:
        reconciler.apply_insert(create_message(-1, minutes=5))
        reconciler.apply_insert(create_message(-2, parent_id=-1, minutes=6))

        reconciler.confirm_provisional(-1, create_message(42, minutes=5))

        assert shape(reconciler.view()) == [(42, [(-2, [])])]
        assert reconciler.get(-2).parent_id == 42

    def test_discard(self, reconciler: MessageTreeReconciler) -> None:
        reconciler.apply_insert(create_message(-1))

        assert reconciler.discard(-1) is True
        assert reconciler.discard(-1) is False
        assert reconciler.view() == ()

        # A discarded message is not a deletion
        assert reconciler.apply_insert(create_message(-1)) is True


class TestThread:
    """thread projection tests."""

    def test_thread_of_reply(self, reconciler: MessageTreeReconciler) -> None:
        reconciler.apply_insert(create_message(1))
        reconciler.apply_insert(create_message(2, parent_id=1))
        reconciler.apply_insert(create_message(3, parent_id=2))

        thread = reconciler.thread(2)

        assert thread is not None
        assert shape((thread,)) == [(2, [(3, [])])]

    def test_thread_of_unknown(self, reconciler: MessageTreeReconciler) -> None:
        assert reconciler.thread(1) is None
