"""Tests for reaction aggregation."""

import itertools

import pytest

from chatsync.domain.entities import Reaction, ReactionCount
from chatsync.domain.services import ReactionStore, summarize


class TestSummarize:
    """summarize function tests."""

    def test_counts_and_current_user_flag(self) -> None:
        reactions = [
            Reaction(1, "👍", "u1"),
            Reaction(1, "👍", "u2"),
            Reaction(1, "❤️", "u1"),
        ]

        summary = summarize(reactions, "u1")

        assert summary == {
            "👍": ReactionCount(count=2, reacted_by_current_user=True),
            "❤️": ReactionCount(count=1, reacted_by_current_user=True),
        }

    def test_order_independent(self) -> None:
        """Test that every ordering of the input yields the same summary."""
        reactions = [
            Reaction(1, "👍", "u1"),
            Reaction(1, "👍", "u2"),
            Reaction(1, "❤️", "u3"),
            Reaction(1, "🎉", "u2"),
        ]
        expected = summarize(reactions, "u2")

        for ordering in itertools.permutations(reactions):
            summary = summarize(ordering, "u2")
            assert summary == expected
            assert list(summary) == list(expected)

    def test_duplicates_counted_once(self) -> None:
        summary = summarize([Reaction(1, "👍", "u1"), Reaction(1, "👍", "u1", row_id=3)], "u2")

        assert summary == {"👍": ReactionCount(count=1, reacted_by_current_user=False)}

    def test_sorted_by_count_then_emoji(self) -> None:
        reactions = [
            Reaction(1, "b", "u1"),
            Reaction(1, "a", "u1"),
            Reaction(1, "c", "u1"),
            Reaction(1, "c", "u2"),
        ]

        assert list(summarize(reactions, "u1")) == ["c", "a", "b"]

    def test_emoji_compared_exactly(self) -> None:
        """Test that emoji variants are not merged."""
        summary = summarize([Reaction(1, "❤", "u1"), Reaction(1, "❤️", "u2")], "u1")

        assert len(summary) == 2

    def test_empty(self) -> None:
        assert summarize([], "u1") == {}


class TestReactionStore:
    """ReactionStore tests."""

    @pytest.fixture
    def store(self) -> ReactionStore:
        return ReactionStore("u1")

    def test_add_and_summary(self, store: ReactionStore) -> None:
        assert store.add(Reaction(1, "👍", "u2")) is True

        assert store.summary(1) == {
            "👍": ReactionCount(count=1, reacted_by_current_user=False)
        }
        assert store.summary(2) == {}

    def test_duplicate_add_is_noop(self, store: ReactionStore) -> None:
        store.add(Reaction(1, "👍", "u1"))

        assert store.add(Reaction(1, "👍", "u1")) is False
        assert store.summary(1)["👍"].count == 1

    def test_remove(self, store: ReactionStore) -> None:
        store.add(Reaction(1, "👍", "u1"))

        assert store.remove(Reaction(1, "👍", "u1")) is True
        assert store.remove(Reaction(1, "👍", "u1")) is False
        assert store.summary(1) == {}

    def test_summary_reflects_changes(self, store: ReactionStore) -> None:
        """Test that memoized summaries are invalidated on change."""
        store.add(Reaction(1, "👍", "u2"))
        assert store.summary(1)["👍"].reacted_by_current_user is False

        store.add(Reaction(1, "👍", "u1"))

        assert store.summary(1)["👍"] == ReactionCount(
            count=2, reacted_by_current_user=True
        )

    def test_summary_returns_copy(self, store: ReactionStore) -> None:
        store.add(Reaction(1, "👍", "u2"))

        store.summary(1).clear()

        assert "👍" in store.summary(1)

    def test_remove_by_row_id(self, store: ReactionStore) -> None:
        store.add(Reaction(1, "👍", "u2", row_id=10))

        removed = store.remove_by_row_id(10)

        assert removed == Reaction(1, "👍", "u2")
        assert store.summary(1) == {}
        assert store.remove_by_row_id(10) is None

    def test_row_id_learned_from_duplicate(self, store: ReactionStore) -> None:
        """Test that a later delivery with a row ID makes removal by row work."""
        store.add(Reaction(1, "👍", "u1"))
        store.add(Reaction(1, "👍", "u1", row_id=10))

        assert store.remove_by_row_id(10) is not None
        assert store.contains(1, "👍", "u1") is False

    def test_replaced_row_id_no_longer_resolves(self, store: ReactionStore) -> None:
        """Test that a reaction re-added under a new row ignores deletes of the old row."""
        store.add(Reaction(1, "👍", "u1", row_id=10))
        store.add(Reaction(1, "👍", "u1", row_id=11))

        assert store.remove_by_row_id(10) is None
        assert store.contains(1, "👍", "u1") is True

        assert store.remove_by_row_id(11) == Reaction(1, "👍", "u1")
        assert store.contains(1, "👍", "u1") is False

    def test_contains_and_reactions_for(self, store: ReactionStore) -> None:
        store.add(Reaction(1, "👍", "u1"))

        assert store.contains(1, "👍", "u1") is True
        assert store.contains(1, "👍", "u2") is False
        assert store.reactions_for(1) == frozenset({Reaction(1, "👍", "u1")})

    def test_drop_message(self, store: ReactionStore) -> None:
        store.add(Reaction(1, "👍", "u1", row_id=10))
        store.add(Reaction(2, "👍", "u1"))

        store.drop_message(1)

        assert store.summary(1) == {}
        assert store.remove_by_row_id(10) is None
        assert store.contains(2, "👍", "u1") is True
