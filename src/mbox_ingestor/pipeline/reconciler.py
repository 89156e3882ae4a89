"""Merge threaded batches into the durable store without duplication."""

from __future__ import annotations

import logging
import sqlite3
import threading
import uuid
from collections.abc import Iterable
from datetime import UTC, datetime

from mbox_ingestor.core.classifier import classify, days_since, scan_keywords
from mbox_ingestor.core.models import ActivityFeatures, ThreadGroup, ThreadRecord
from mbox_ingestor.storage.store import ArchiveStore

logger = logging.getLogger(__name__)


class Reconciler:
    """Applies ThreadGroups to an ArchiveStore.

    Each batch runs in one store transaction:
    1. Resolve or create the thread of every group, then upsert its messages.
    2. Recompute every thread's aggregates from its persisted messages.
    3. Delete threads left without messages.
    4. Reclassify every thread and refresh its activity snapshot.

    Step 2 costs one pass over all threads per batch. Counts are never
    maintained incrementally, so messages that move between threads across
    batches leave no stale totals behind.
    """

    def __init__(self, store: ArchiveStore) -> None:
        self._store = store
        self._lock = threading.Lock()

    def reconcile(self, groups: Iterable[ThreadGroup], now: datetime | None = None) -> int:
        """Merge one batch of groups into the store.

        Args:
            groups: ThreadGroups produced by the threading resolver.
            now: Reference time for recency; defaults to the current time.

        Returns:
            The number of newly inserted messages.
        """
        now = now or datetime.now(UTC)
        groups = list(groups)

        with self._lock, self._store.transaction():
            inserted = 0
            for group in groups:
                thread_id = self._resolve_thread(group, now)
                if thread_id is None:
                    continue
                inserted += self._upsert_members(group, thread_id)

            self._store.recompute_thread_aggregates()
            deleted = self._store.delete_empty_threads()
            if deleted:
                logger.info("Deleted %d empty threads", deleted)
            self._reclassify_all(now)

        logger.info("Reconciled %d groups: %d new messages", len(groups), inserted)
        return inserted

    def _resolve_thread(self, group: ThreadGroup, now: datetime) -> str | None:
        """Find the stored thread of a group, creating one when none exists."""
        store = self._store
        try:
            thread_id = store.find_thread_by_root(group.root_id)
            if thread_id is None:
                # The root may be a stored message filed under another thread
                thread_id = store.find_thread_of_messages([group.root_id, *group.message_ids])
            if thread_id is not None:
                return thread_id

            first = group.earliest.sanitized()
            thread = ThreadRecord(
                id=str(uuid.uuid4()),
                subject=first.subject,
                root_message_id=group.root_id,
                first_message_id=first.message_id,
                first_author=first.author,
                first_author_email=first.author_email,
                created_at=first.date,
                updated_at=now,
                last_message_at=first.date,
            )
            store.insert_thread(thread)
            logger.debug("Created thread %s for root %s", thread.id, group.root_id)
            return thread.id
        except sqlite3.Error as e:
            logger.error("Failed to resolve thread for root %s: %s", group.root_id, e)
            return None

    def _upsert_members(self, group: ThreadGroup, thread_id: str) -> int:
        """Upsert every message of a group into thread_id. Returns new inserts."""
        inserted = 0
        for message in group.messages:
            try:
                if self._store.upsert_message(message.sanitized(), thread_id):
                    inserted += 1
            except sqlite3.Error as e:
                logger.error("Failed to store message %s: %s", message.message_id, e)
        return inserted

    def _reclassify_all(self, now: datetime) -> None:
        """Classify every thread from its current aggregates and message bodies."""
        for aggregate in self._store.get_thread_aggregates():
            thread_id = aggregate["id"]
            has_patch, has_review = scan_keywords(self._store.get_thread_bodies(thread_id))
            features = ActivityFeatures(
                has_patch=has_patch,
                has_review=has_review,
                message_count=aggregate["message_count"],
                days_since_last_activity=days_since(aggregate["last_message_at"], now),
            )
            status = classify(features)
            self._store.update_thread_status(thread_id, status)
            self._store.upsert_activity(thread_id, features, aggregate["unique_authors"])
