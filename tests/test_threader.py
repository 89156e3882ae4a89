"""Unit tests for ThreadResolver reply-graph grouping."""

from __future__ import annotations

from collections.abc import Callable

import pytest

from mbox_ingestor.core.models import MessageRecord
from mbox_ingestor.core.threader import ThreadResolver, parent_candidate

MakeMessage = Callable[..., MessageRecord]


@pytest.fixture
def resolver() -> ThreadResolver:
    """Fresh ThreadResolver instance."""
    return ThreadResolver()


class TestParentCandidate:
    def test_no_references(self, make_message: MakeMessage) -> None:
        assert parent_candidate(make_message("a@x")) == ""

    def test_references_before_in_reply_to(self, make_message: MakeMessage) -> None:
        message = make_message("c@x", references=("a@x", "b@x"), in_reply_to="b@x")
        assert parent_candidate(message) == "a@x"

    def test_in_reply_to_when_no_references(self, make_message: MakeMessage) -> None:
        assert parent_candidate(make_message("b@x", in_reply_to="a@x")) == "a@x"

    def test_self_reference_skipped(self, make_message: MakeMessage) -> None:
        message = make_message("b@x", references=("b@x",), in_reply_to="a@x")
        assert parent_candidate(message) == "a@x"


class TestGrouping:
    def test_reply_joins_parent(self, resolver: ThreadResolver, make_message: MakeMessage) -> None:
        groups = resolver.group(
            [make_message("a@x"), make_message("b@x", hours=1, in_reply_to="a@x")]
        )
        assert len(groups) == 1
        assert groups[0].root_id == "a@x"
        assert groups[0].message_ids == ["a@x", "b@x"]

    def test_absent_ancestor_still_merges(
        self, resolver: ThreadResolver, make_message: MakeMessage
    ) -> None:
        """Two replies to a message outside the batch share its id as root."""
        groups = resolver.group(
            [
                make_message("b@x", references=("a@x",)),
                make_message("c@x", hours=1, references=("a@x", "b@x")),
            ]
        )
        assert len(groups) == 1
        assert groups[0].root_id == "a@x"
        assert set(groups[0].message_ids) == {"b@x", "c@x"}

    def test_chain_resolves_to_top(
        self, resolver: ThreadResolver, make_message: MakeMessage
    ) -> None:
        groups = resolver.group(
            [
                make_message("c@x", hours=2, in_reply_to="b@x"),
                make_message("b@x", hours=1, in_reply_to="a@x"),
                make_message("a@x"),
            ]
        )
        assert len(groups) == 1
        assert groups[0].root_id == "a@x"

    def test_members_ordered_by_date(
        self, resolver: ThreadResolver, make_message: MakeMessage
    ) -> None:
        groups = resolver.group(
            [
                make_message("c@x", hours=2, in_reply_to="a@x"),
                make_message("a@x"),
                make_message("b@x", hours=1, in_reply_to="a@x"),
            ]
        )
        assert groups[0].message_ids == ["a@x", "b@x", "c@x"]

    def test_groups_ordered_by_earliest_message(
        self, resolver: ThreadResolver, make_message: MakeMessage
    ) -> None:
        groups = resolver.group([make_message("late@x", hours=5), make_message("early@x")])
        assert [g.root_id for g in groups] == ["early@x", "late@x"]

    def test_unrelated_messages_with_same_subject_stay_apart(
        self, resolver: ThreadResolver, make_message: MakeMessage
    ) -> None:
        groups = resolver.group(
            [make_message("a@x", subject="Help"), make_message("b@x", subject="Help")]
        )
        assert len(groups) == 2

    def test_duplicate_ids_share_group(
        self, resolver: ThreadResolver, make_message: MakeMessage
    ) -> None:
        groups = resolver.group([make_message("a@x"), make_message("a@x", hours=1)])
        assert len(groups) == 1
        assert len(groups[0].messages) == 2

    def test_reference_cycle_terminates(
        self, resolver: ThreadResolver, make_message: MakeMessage
    ) -> None:
        groups = resolver.group(
            [
                make_message("a@x", in_reply_to="b@x"),
                make_message("b@x", hours=1, in_reply_to="a@x"),
            ]
        )
        assert len(groups) == 1
        assert set(groups[0].message_ids) == {"a@x", "b@x"}

    def test_long_chain_does_not_recurse(
        self, resolver: ThreadResolver, make_message: MakeMessage
    ) -> None:
        messages = [make_message("m0@x")]
        messages += [
            make_message(f"m{i}@x", hours=i, in_reply_to=f"m{i - 1}@x") for i in range(1, 5000)
        ]
        groups = resolver.group(reversed(messages))
        assert len(groups) == 1
        assert groups[0].root_id == "m0@x"

    def test_empty_batch(self, resolver: ThreadResolver) -> None:
        assert resolver.group([]) == []
