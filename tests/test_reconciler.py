"""Tests for Reconciler against a real SQLite store."""

from __future__ import annotations

import sqlite3
from collections.abc import Callable, Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from mbox_ingestor.core.models import MessageRecord, ThreadStatus
from mbox_ingestor.core.parser import MboxParser
from mbox_ingestor.core.threader import ThreadResolver
from mbox_ingestor.pipeline.reconciler import Reconciler
from mbox_ingestor.storage.store import ArchiveStore

MakeMessage = Callable[..., MessageRecord]


@pytest.fixture
def store(tmp_db_path: Path) -> Iterator[ArchiveStore]:
    """Connected ArchiveStore on a temporary database."""
    s = ArchiveStore(tmp_db_path)
    s.connect()
    yield s
    s.close()


@pytest.fixture
def reconciler(store: ArchiveStore) -> Reconciler:
    return Reconciler(store)


def _ingest(reconciler: Reconciler, messages: list[MessageRecord], now: datetime) -> int:
    """Thread a batch and reconcile it, as one ingestion unit would."""
    return reconciler.reconcile(ThreadResolver().group(messages), now=now)


def _snapshot(store: ArchiveStore) -> list[tuple]:
    """Comparable view of every thread's identity and aggregates."""
    return sorted(
        (t.id, t.root_message_id, t.message_count, t.unique_authors, t.last_message_at, t.status)
        for t in store.list_threads(limit=1000)
    )


class TestEndToEnd:
    """Two messages, a patch and a review, produce one in-progress thread."""

    def _batch(self, make_message: MakeMessage) -> list[MessageRecord]:
        return [
            make_message("m1@x", subject="Add feature X", author="Alice"),
            make_message(
                "m2@x",
                hours=1,
                subject="Add feature X",
                author="Bob",
                author_email="bob@example.com",
                in_reply_to="m1@x",
                body="New version, patch attached.\n\nLGTM from me.",
            ),
        ]

    def test_single_in_progress_thread(
        self,
        store: ArchiveStore,
        reconciler: Reconciler,
        make_message: MakeMessage,
        base_time: datetime,
    ) -> None:
        inserted = _ingest(reconciler, self._batch(make_message), base_time + timedelta(hours=2))

        assert inserted == 2
        threads = store.list_threads()
        assert len(threads) == 1
        thread = threads[0]
        assert thread.root_message_id == "m1@x"
        assert thread.first_message_id == "m1@x"
        assert thread.subject == "Add feature X"
        assert thread.first_author == "Alice"
        assert thread.message_count == 2
        assert thread.unique_authors == 2
        assert thread.status is ThreadStatus.IN_PROGRESS
        assert thread.created_at == base_time
        assert thread.last_message_at == base_time + timedelta(hours=1)

    def test_activity_snapshot(
        self,
        store: ArchiveStore,
        reconciler: Reconciler,
        make_message: MakeMessage,
        base_time: datetime,
    ) -> None:
        _ingest(reconciler, self._batch(make_message), base_time + timedelta(hours=2))
        thread = store.list_threads()[0]
        activity = store.get_activity(thread.id)
        assert activity["has_patch"] is True
        assert activity["has_review"] is True
        assert activity["message_count"] == 2
        assert activity["unique_authors"] == 2

    def test_messages_linked_to_thread(
        self,
        store: ArchiveStore,
        reconciler: Reconciler,
        make_message: MakeMessage,
        base_time: datetime,
    ) -> None:
        _ingest(reconciler, self._batch(make_message), base_time + timedelta(hours=2))
        thread = store.list_threads()[0]
        ids = [m["message_id"] for m in store.get_thread_messages(thread.id)]
        assert ids == ["m1@x", "m2@x"]


class TestIdempotence:
    def test_reingest_adds_nothing(
        self,
        store: ArchiveStore,
        reconciler: Reconciler,
        make_message: MakeMessage,
        base_time: datetime,
    ) -> None:
        batch = [
            make_message("a@x"),
            make_message("b@x", hours=1, in_reply_to="a@x", author_email="bob@example.com"),
            make_message("c@x", hours=2),
        ]
        now = base_time + timedelta(days=1)

        assert _ingest(reconciler, batch, now) == 3
        before = _snapshot(store)

        assert _ingest(reconciler, batch, now) == 0
        assert _snapshot(store) == before
        assert store.get_stats()["total_messages"] == 3

    def test_reingest_of_parsed_fixture(
        self, store: ArchiveStore, reconciler: Reconciler, sample_mbox_path: Path
    ) -> None:
        parser = MboxParser()
        now = datetime(2024, 1, 20, tzinfo=UTC)

        first = _ingest(reconciler, parser.parse_file(sample_mbox_path).messages, now)
        before = _snapshot(store)
        second = _ingest(reconciler, MboxParser().parse_file(sample_mbox_path).messages, now)

        assert first == 3
        assert second == 0
        assert _snapshot(store) == before

    def test_reingest_with_repaired_id(
        self, store: ArchiveStore, reconciler: Reconciler, base_time: datetime
    ) -> None:
        data = (
            b"From eve@example.com Tue Jan 16 09:00:00 2024\n"
            b"Message-ID: abc def\n"
            b"From: eve@example.com\n"
            b"Date: Tue, 16 Jan 2024 09:00:00 +0100\n"
            b"Subject: Question about WAL\n"
            b"\n"
            b"Malformed id, but kept.\n"
        )
        now = base_time + timedelta(days=2)

        assert _ingest(reconciler, MboxParser().parse_bytes(data).messages, now) == 1
        assert _ingest(reconciler, MboxParser().parse_bytes(data).messages, now) == 0
        assert store.get_stats()["total_messages"] == 1


class TestCrossBatchMerging:
    def test_replies_to_unseen_root_share_thread(
        self,
        store: ArchiveStore,
        reconciler: Reconciler,
        make_message: MakeMessage,
        base_time: datetime,
    ) -> None:
        now = base_time + timedelta(days=1)
        _ingest(reconciler, [make_message("b@x", references=("a@x",))], now)
        _ingest(reconciler, [make_message("c@x", hours=1, references=("a@x", "b@x"))], now)

        threads = store.list_threads()
        assert len(threads) == 1
        assert threads[0].root_message_id == "a@x"
        assert threads[0].first_message_id == "b@x"
        assert threads[0].message_count == 2

    def test_late_root_joins_existing_thread(
        self,
        store: ArchiveStore,
        reconciler: Reconciler,
        make_message: MakeMessage,
        base_time: datetime,
    ) -> None:
        now = base_time + timedelta(days=1)
        _ingest(reconciler, [make_message("b@x", hours=1, in_reply_to="a@x")], now)
        _ingest(reconciler, [make_message("a@x")], now)

        threads = store.list_threads()
        assert len(threads) == 1
        assert threads[0].message_count == 2

    def test_reply_to_stored_member_joins_thread(
        self,
        store: ArchiveStore,
        reconciler: Reconciler,
        make_message: MakeMessage,
        base_time: datetime,
    ) -> None:
        now = base_time + timedelta(days=1)
        _ingest(
            reconciler,
            [make_message("a@x"), make_message("b@x", hours=1, in_reply_to="a@x")],
            now,
        )
        # Only In-Reply-To the middle message, no References
        _ingest(reconciler, [make_message("c@x", hours=2, in_reply_to="b@x")], now)

        threads = store.list_threads()
        assert len(threads) == 1
        assert threads[0].message_count == 3


class TestOrphanDeletion:
    def test_thread_emptied_by_move_is_deleted(
        self,
        store: ArchiveStore,
        reconciler: Reconciler,
        make_message: MakeMessage,
        base_time: datetime,
    ) -> None:
        now = base_time + timedelta(days=1)
        _ingest(reconciler, [make_message("a@x"), make_message("c@x", hours=2)], now)
        assert len(store.list_threads()) == 2

        # c@x now shows up carrying a reference to a@x
        _ingest(reconciler, [make_message("c@x", hours=2, references=("a@x",))], now)

        threads = store.list_threads()
        assert len(threads) == 1
        assert threads[0].root_message_id == "a@x"
        assert threads[0].message_count == 2
        assert store.get_message("c@x")["thread_id"] == threads[0].id


class TestClassificationOverTime:
    @pytest.mark.parametrize(
        ("days_later", "expected"),
        [
            (1, ThreadStatus.DISCUSSION),
            (10, ThreadStatus.STALLED),
            (40, ThreadStatus.ABANDONED),
        ],
    )
    def test_status_follows_recency(
        self,
        store: ArchiveStore,
        reconciler: Reconciler,
        make_message: MakeMessage,
        base_time: datetime,
        days_later: int,
        expected: ThreadStatus,
    ) -> None:
        _ingest(reconciler, [make_message("a@x")], base_time + timedelta(days=days_later))
        assert store.list_threads()[0].status is expected

    def test_every_thread_reclassified(
        self,
        store: ArchiveStore,
        reconciler: Reconciler,
        make_message: MakeMessage,
        base_time: datetime,
    ) -> None:
        _ingest(reconciler, [make_message("old@x")], base_time + timedelta(days=1))
        # A later batch not touching old@x still refreshes its status
        _ingest(
            reconciler,
            [make_message("new@x", hours=24 * 39)],
            base_time + timedelta(days=40),
        )
        statuses = {t.root_message_id: t.status for t in store.list_threads()}
        assert statuses["old@x"] is ThreadStatus.ABANDONED
        assert statuses["new@x"] is ThreadStatus.DISCUSSION


class TestErrorHandling:
    def test_failed_record_skipped(
        self,
        store: ArchiveStore,
        reconciler: Reconciler,
        make_message: MakeMessage,
        base_time: datetime,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        original = store.upsert_message

        def flaky(message: MessageRecord, thread_id: str) -> bool:
            if message.message_id == "bad@x":
                raise sqlite3.OperationalError("disk I/O error")
            return original(message, thread_id)

        monkeypatch.setattr(store, "upsert_message", flaky)
        inserted = _ingest(
            reconciler,
            [make_message("a@x"), make_message("bad@x", hours=1, in_reply_to="a@x")],
            base_time + timedelta(days=1),
        )

        assert inserted == 1
        assert store.get_message("bad@x") is None
        assert store.list_threads()[0].message_count == 1

    def test_text_sanitized_before_storage(
        self,
        store: ArchiveStore,
        reconciler: Reconciler,
        make_message: MakeMessage,
        base_time: datetime,
    ) -> None:
        _ingest(
            reconciler,
            [make_message("a@x", subject="Sub\x00ject", body="bo\x00dy")],
            base_time + timedelta(days=1),
        )
        stored = store.get_message("a@x")
        assert stored["body"] == "body"
        assert store.list_threads()[0].subject == "Subject"

    def test_empty_batch(self, store: ArchiveStore, reconciler: Reconciler) -> None:
        assert reconciler.reconcile([]) == 0
        assert store.list_threads() == []
