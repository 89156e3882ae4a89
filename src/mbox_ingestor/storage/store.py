"""SQLite-backed durable store for threads, messages and activity snapshots."""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from mbox_ingestor.core.exceptions import StoreError
from mbox_ingestor.core.models import (
    ActivityFeatures,
    MessageRecord,
    SyncSummary,
    ThreadRecord,
    ThreadStatus,
)

logger = logging.getLogger(__name__)

# SQLite's default limit on host parameters is 999
_IN_CHUNK = 500


def to_iso(value: datetime) -> str:
    """Serialize a datetime as a second-precision UTC ISO-8601 string."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="seconds")


def from_iso(value: str | None) -> datetime | None:
    """Parse a stored ISO-8601 timestamp."""
    return datetime.fromisoformat(value) if value else None


class ArchiveStore:
    """Persists threads, messages and per-thread activity in SQLite.

    Tables:
    - threads: one row per conversation, aggregates recomputed from messages
    - messages: one row per message id, linked to its thread
    - thread_activities: derived classifier inputs per thread
    - sync_runs: audit log of ingestion runs

    A single connection is shared across threads behind a re-entrant lock.
    Writers group their statements with transaction(), which holds the lock
    until commit, so readers never see a half-applied batch.
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()

    def connect(self) -> None:
        """Open database connection and ensure schema exists."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._create_tables()

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._conn:
                self._conn.close()
                self._conn = None

    def __enter__(self) -> ArchiveStore:
        self.connect()
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._conn

    def _create_tables(self) -> None:
        """Create tables and indexes if they don't exist."""
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS threads (
                id TEXT PRIMARY KEY,
                subject TEXT NOT NULL DEFAULT '',
                root_message_id TEXT NOT NULL,
                first_message_id TEXT NOT NULL,
                first_author TEXT NOT NULL DEFAULT '',
                first_author_email TEXT NOT NULL DEFAULT '',
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                last_message_at TEXT,
                message_count INTEGER NOT NULL DEFAULT 0,
                unique_authors INTEGER NOT NULL DEFAULT 0,
                status TEXT NOT NULL DEFAULT 'discussion'
            );

            CREATE INDEX IF NOT EXISTS idx_threads_status ON threads(status);
            CREATE INDEX IF NOT EXISTS idx_threads_last_message ON threads(last_message_at);
            CREATE INDEX IF NOT EXISTS idx_threads_root ON threads(root_message_id);
            CREATE INDEX IF NOT EXISTS idx_threads_first_message ON threads(first_message_id);

            CREATE TABLE IF NOT EXISTS messages (
                message_id TEXT PRIMARY KEY,
                thread_id TEXT NOT NULL REFERENCES threads(id) ON DELETE CASCADE,
                in_reply_to TEXT NOT NULL DEFAULT '',
                refs TEXT NOT NULL DEFAULT '[]',
                subject TEXT NOT NULL DEFAULT '',
                raw_subject TEXT NOT NULL DEFAULT '',
                author TEXT NOT NULL DEFAULT '',
                author_email TEXT NOT NULL DEFAULT '',
                body TEXT NOT NULL DEFAULT '',
                transfer_encoding TEXT NOT NULL DEFAULT '',
                created_at TEXT NOT NULL,
                has_patch INTEGER NOT NULL DEFAULT 0,
                patch_status TEXT,
                ingested_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_messages_thread_id ON messages(thread_id);
            CREATE INDEX IF NOT EXISTS idx_messages_created_at ON messages(created_at);
            CREATE INDEX IF NOT EXISTS idx_messages_in_reply_to ON messages(in_reply_to);

            CREATE TABLE IF NOT EXISTS thread_activities (
                thread_id TEXT PRIMARY KEY REFERENCES threads(id) ON DELETE CASCADE,
                message_count INTEGER NOT NULL DEFAULT 0,
                unique_authors INTEGER NOT NULL DEFAULT 0,
                has_patch INTEGER NOT NULL DEFAULT 0,
                has_review INTEGER NOT NULL DEFAULT 0,
                days_since_last_message INTEGER NOT NULL DEFAULT 0,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS sync_runs (
                run_id INTEGER PRIMARY KEY AUTOINCREMENT,
                source TEXT NOT NULL,
                started_at TEXT NOT NULL,
                completed_at TEXT,
                units_total INTEGER DEFAULT 0,
                units_fetched INTEGER DEFAULT 0,
                units_failed INTEGER DEFAULT 0,
                messages_parsed INTEGER DEFAULT 0,
                messages_inserted INTEGER DEFAULT 0
            );
        """)

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Hold the store lock and commit all statements together, or roll back."""
        with self._lock:
            try:
                yield self.conn
                self.conn.commit()
            except Exception:
                self.conn.rollback()
                raise

    # -- writes used inside a reconciliation transaction ---------------------

    def find_thread_by_root(self, root_id: str) -> str | None:
        """Find the thread whose recorded root or first message id equals root_id."""
        with self._lock:
            row = self.conn.execute(
                "SELECT id FROM threads WHERE root_message_id = ? OR first_message_id = ? "
                "ORDER BY created_at LIMIT 1",
                (root_id, root_id),
            ).fetchone()
        return row["id"] if row else None

    def find_thread_of_messages(self, message_ids: Sequence[str]) -> str | None:
        """Return the thread of the first stored message among message_ids, in order."""
        found: dict[str, str] = {}
        with self._lock:
            for start in range(0, len(message_ids), _IN_CHUNK):
                chunk = list(message_ids[start : start + _IN_CHUNK])
                placeholders = ", ".join("?" for _ in chunk)
                rows = self.conn.execute(
                    f"SELECT message_id, thread_id FROM messages "
                    f"WHERE message_id IN ({placeholders})",
                    chunk,
                ).fetchall()
                found.update({row["message_id"]: row["thread_id"] for row in rows})
        for message_id in message_ids:
            if message_id in found:
                return found[message_id]
        return None

    def insert_thread(self, thread: ThreadRecord) -> None:
        """Insert a new thread row (no commit)."""
        with self._lock:
            self.conn.execute(
                """INSERT INTO threads
                   (id, subject, root_message_id, first_message_id, first_author,
                    first_author_email, created_at, updated_at, last_message_at,
                    message_count, unique_authors, status)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    thread.id,
                    thread.subject,
                    thread.root_message_id,
                    thread.first_message_id,
                    thread.first_author,
                    thread.first_author_email,
                    to_iso(thread.created_at),
                    to_iso(thread.updated_at),
                    to_iso(thread.last_message_at) if thread.last_message_at else None,
                    thread.message_count,
                    thread.unique_authors,
                    thread.status.value,
                ),
            )

    def upsert_message(self, message: MessageRecord, thread_id: str) -> bool:
        """Insert a message, or move an existing one to thread_id (no commit).

        An existing row keeps its content; only thread membership and patch
        fields are refreshed.

        Returns:
            True if the message was newly inserted.

        Raises:
            sqlite3.Error: If the statement fails.
        """
        now = to_iso(datetime.now(UTC))
        with self._lock:
            exists = self.conn.execute(
                "SELECT 1 FROM messages WHERE message_id = ?", (message.message_id,)
            ).fetchone()
            self.conn.execute(
                """INSERT INTO messages
                   (message_id, thread_id, in_reply_to, refs, subject, raw_subject, author,
                    author_email, body, transfer_encoding, created_at, has_patch,
                    patch_status, ingested_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(message_id) DO UPDATE SET
                       thread_id = excluded.thread_id,
                       has_patch = excluded.has_patch,
                       patch_status = excluded.patch_status""",
                (
                    message.message_id,
                    thread_id,
                    message.in_reply_to,
                    json.dumps(list(message.references)),
                    message.subject,
                    message.raw_subject,
                    message.author,
                    message.author_email,
                    message.body,
                    message.transfer_encoding,
                    to_iso(message.date),
                    int(message.has_patch),
                    message.patch_status.value if message.patch_status else None,
                    now,
                ),
            )
        return exists is None

    def recompute_thread_aggregates(self) -> None:
        """Recompute every thread's counts and last activity from its messages (no commit)."""
        with self._lock:
            self.conn.execute(
                """UPDATE threads SET
                   message_count = (
                       SELECT COUNT(*) FROM messages m WHERE m.thread_id = threads.id),
                   unique_authors = (
                       SELECT COUNT(DISTINCT m.author_email) FROM messages m
                       WHERE m.thread_id = threads.id),
                   last_message_at = (
                       SELECT MAX(m.created_at) FROM messages m WHERE m.thread_id = threads.id),
                   updated_at = ?""",
                (to_iso(datetime.now(UTC)),),
            )

    def delete_empty_threads(self) -> int:
        """Delete threads with no messages left (no commit). Returns rows deleted."""
        with self._lock:
            cursor = self.conn.execute("DELETE FROM threads WHERE message_count = 0")
        return cursor.rowcount

    def get_thread_aggregates(self) -> list[dict[str, Any]]:
        """Return id, message_count, unique_authors and last_message_at of every thread."""
        with self._lock:
            rows = self.conn.execute(
                "SELECT id, message_count, unique_authors, last_message_at FROM threads"
            ).fetchall()
        return [
            {
                "id": row["id"],
                "message_count": row["message_count"],
                "unique_authors": row["unique_authors"],
                "last_message_at": from_iso(row["last_message_at"]),
            }
            for row in rows
        ]

    def get_thread_bodies(self, thread_id: str) -> list[str]:
        """Return the bodies of all messages in a thread."""
        with self._lock:
            rows = self.conn.execute(
                "SELECT body FROM messages WHERE thread_id = ?", (thread_id,)
            ).fetchall()
        return [row["body"] for row in rows]

    def update_thread_status(self, thread_id: str, status: ThreadStatus) -> None:
        """Set a thread's status (no commit)."""
        with self._lock:
            self.conn.execute(
                "UPDATE threads SET status = ? WHERE id = ?", (status.value, thread_id)
            )

    def upsert_activity(
        self, thread_id: str, features: ActivityFeatures, unique_authors: int
    ) -> None:
        """Write the derived activity snapshot of a thread (no commit)."""
        with self._lock:
            self.conn.execute(
                """INSERT INTO thread_activities
                   (thread_id, message_count, unique_authors, has_patch, has_review,
                    days_since_last_message, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(thread_id) DO UPDATE SET
                       message_count = excluded.message_count,
                       unique_authors = excluded.unique_authors,
                       has_patch = excluded.has_patch,
                       has_review = excluded.has_review,
                       days_since_last_message = excluded.days_since_last_message,
                       updated_at = excluded.updated_at""",
                (
                    thread_id,
                    features.message_count,
                    unique_authors,
                    int(features.has_patch),
                    int(features.has_review),
                    int(features.days_since_last_activity),
                    to_iso(datetime.now(UTC)),
                ),
            )

    # -- reads ---------------------------------------------------------------

    def get_thread(self, thread_id: str) -> ThreadRecord | None:
        """Get a thread by id."""
        with self._lock:
            row = self.conn.execute("SELECT * FROM threads WHERE id = ?", (thread_id,)).fetchone()
        return self._row_to_thread(row) if row else None

    def list_threads(self, status: str | None = None, limit: int = 50) -> list[ThreadRecord]:
        """List threads, most recently active first, optionally filtered by status."""
        query = "SELECT * FROM threads"
        params: list[Any] = []
        if status:
            query += " WHERE status = ?"
            params.append(status)
        query += " ORDER BY last_message_at DESC LIMIT ?"
        params.append(limit)
        with self._lock:
            rows = self.conn.execute(query, params).fetchall()
        return [self._row_to_thread(row) for row in rows]

    def get_thread_messages(self, thread_id: str) -> list[dict[str, Any]]:
        """Get all messages of a thread in chronological order."""
        with self._lock:
            rows = self.conn.execute(
                "SELECT * FROM messages WHERE thread_id = ? ORDER BY created_at ASC",
                (thread_id,),
            ).fetchall()
        return [self._row_to_message(row) for row in rows]

    def get_message(self, message_id: str) -> dict[str, Any] | None:
        """Get a stored message by its message id."""
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM messages WHERE message_id = ?", (message_id,)
            ).fetchone()
        return self._row_to_message(row) if row else None

    def get_activity(self, thread_id: str) -> dict[str, Any] | None:
        """Get the activity snapshot of a thread."""
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM thread_activities WHERE thread_id = ?", (thread_id,)
            ).fetchone()
        if not row:
            return None
        activity = dict(row)
        activity["has_patch"] = bool(activity["has_patch"])
        activity["has_review"] = bool(activity["has_review"])
        return activity

    def count_by_status(self) -> dict[str, int]:
        """Get count of threads grouped by status, including empty statuses."""
        with self._lock:
            rows = self.conn.execute(
                "SELECT status, COUNT(*) as cnt FROM threads GROUP BY status"
            ).fetchall()
        counts = {status.value: 0 for status in ThreadStatus}
        counts.update({row["status"]: row["cnt"] for row in rows})
        return counts

    def get_stats(self) -> dict[str, Any]:
        """Totals of threads and messages, threads by status, and last update time."""
        with self._lock:
            total_threads = self.conn.execute("SELECT COUNT(*) FROM threads").fetchone()[0]
            total_messages = self.conn.execute("SELECT COUNT(*) FROM messages").fetchone()[0]
            last_sync = self.conn.execute("SELECT MAX(updated_at) FROM threads").fetchone()[0]
        return {
            "total_threads": total_threads,
            "total_messages": total_messages,
            "by_status": self.count_by_status(),
            "last_sync": from_iso(last_sync),
        }

    def latest_message_at(self) -> datetime | None:
        """Timestamp of the newest stored message."""
        with self._lock:
            value = self.conn.execute("SELECT MAX(created_at) FROM messages").fetchone()[0]
        return from_iso(value)

    # -- maintenance & audit -------------------------------------------------

    def reset(self) -> None:
        """Delete all threads, messages and activity snapshots."""
        with self.transaction() as conn:
            try:
                conn.execute("DELETE FROM thread_activities")
                conn.execute("DELETE FROM messages")
                conn.execute("DELETE FROM threads")
            except sqlite3.Error as e:
                raise StoreError(f"Failed to reset store: {e}") from e
        logger.info("Store reset: threads, messages and thread_activities cleared")

    def start_run(self, source: str) -> int:
        """Record the start of an ingestion run. Returns the run_id."""
        with self._lock:
            cursor = self.conn.execute(
                "INSERT INTO sync_runs (source, started_at) VALUES (?, ?)",
                (source, to_iso(datetime.now(UTC))),
            )
            self.conn.commit()
        return cursor.lastrowid or 0

    def complete_run(self, run_id: int, summary: SyncSummary) -> None:
        """Record the completion of an ingestion run."""
        with self._lock:
            self.conn.execute(
                """UPDATE sync_runs SET
                   completed_at = ?, units_total = ?, units_fetched = ?, units_failed = ?,
                   messages_parsed = ?, messages_inserted = ?
                   WHERE run_id = ?""",
                (
                    to_iso(datetime.now(UTC)),
                    summary.units_total,
                    summary.units_fetched,
                    summary.units_failed,
                    summary.messages_parsed,
                    summary.messages_inserted,
                    run_id,
                ),
            )
            self.conn.commit()

    @staticmethod
    def _row_to_thread(row: sqlite3.Row) -> ThreadRecord:
        return ThreadRecord(
            id=row["id"],
            subject=row["subject"],
            root_message_id=row["root_message_id"],
            first_message_id=row["first_message_id"],
            first_author=row["first_author"],
            first_author_email=row["first_author_email"],
            created_at=from_iso(row["created_at"]),
            updated_at=from_iso(row["updated_at"]),
            last_message_at=from_iso(row["last_message_at"]),
            message_count=row["message_count"],
            unique_authors=row["unique_authors"],
            status=ThreadStatus(row["status"]),
        )

    @staticmethod
    def _row_to_message(row: sqlite3.Row) -> dict[str, Any]:
        message = dict(row)
        message["references"] = json.loads(message.pop("refs") or "[]")
        message["has_patch"] = bool(message["has_patch"])
        message["created_at"] = from_iso(message["created_at"])
        return message
