"""Pipeline orchestrator: fetch → parse → thread → reconcile."""

from __future__ import annotations

import logging
import sqlite3
import threading
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from mbox_ingestor.config.settings import MboxIngestorSettings
from mbox_ingestor.core.archive_client import ArchiveClient
from mbox_ingestor.core.exceptions import MboxIngestorError, SyncInProgressError
from mbox_ingestor.core.models import SyncProgress, SyncSummary, ThreadRecord
from mbox_ingestor.core.parser import MboxParser
from mbox_ingestor.core.threader import ThreadResolver
from mbox_ingestor.pipeline.progress import SyncProgressTracker
from mbox_ingestor.pipeline.reconciler import Reconciler
from mbox_ingestor.storage.archive_cache import ArchiveCache
from mbox_ingestor.storage.store import ArchiveStore

logger = logging.getLogger(__name__)


def months_between(start: tuple[int, int], end: tuple[int, int]) -> list[tuple[int, int]]:
    """(year, month) pairs from start through end inclusive."""
    months = []
    year, month = start
    while (year, month) <= end:
        months.append((year, month))
        month += 1
        if month > 12:
            month = 1
            year += 1
    return months


def compute_month_range(
    latest_message_at: datetime | None,
    now: datetime,
    initial_lookback_days: int = 365,
) -> list[tuple[int, int]]:
    """Months to sync: from the month of the latest stored message through now.

    The latest month is fetched again to pick up late-arriving messages. With
    an empty store, the range starts initial_lookback_days before now. A
    future-dated latest message still yields the current month.
    """
    end = (now.year, now.month)
    if latest_message_at is not None:
        start = (latest_message_at.year, latest_message_at.month)
    else:
        first = now - timedelta(days=initial_lookback_days)
        start = (first.year, first.month)
    return months_between(min(start, end), end)


class MboxIngestor:
    """Runs ingestion of the mailing-list archive into the store.

    Triggers:
    - start_sync():        download the month range in the background
    - start_ingest_file(): ingest one uploaded unit in the background
    - run_sync() / ingest_file(): the same work, synchronously

    At most one run is active at a time; a trigger while a run is active is
    rejected rather than queued.
    """

    def __init__(
        self,
        settings: MboxIngestorSettings | None = None,
        on_progress: Callable[[SyncProgress], None] | None = None,
    ) -> None:
        self._settings = settings or MboxIngestorSettings()
        self._tracker = SyncProgressTracker(on_progress)
        self._parser = MboxParser(
            fallback_id_domain=self._settings.fallback_id_domain,
            min_valid_year=self._settings.min_valid_year,
        )
        self._resolver = ThreadResolver()
        self._worker: threading.Thread | None = None
        self._init_lock = threading.Lock()

        # Components initialized lazily
        self._client: ArchiveClient | None = None
        self._store: ArchiveStore | None = None
        self._cache: ArchiveCache | None = None
        self._reconciler: Reconciler | None = None

    @property
    def progress(self) -> SyncProgress:
        """Current progress snapshot, safe to poll from any thread."""
        return self._tracker.snapshot()

    @property
    def on_progress(self) -> Callable[[SyncProgress], None] | None:
        return self._tracker.on_progress

    @on_progress.setter
    def on_progress(self, callback: Callable[[SyncProgress], None] | None) -> None:
        self._tracker.on_progress = callback

    def _ensure_initialized(
        self,
    ) -> tuple[ArchiveClient, ArchiveStore, ArchiveCache, Reconciler]:
        """Initialize all components if not already done."""
        with self._init_lock:
            return self._initialize_components()

    def _initialize_components(
        self,
    ) -> tuple[ArchiveClient, ArchiveStore, ArchiveCache, Reconciler]:
        settings = self._settings
        if self._cache is None:
            settings.ensure_directories()
            self._cache = ArchiveCache(settings.data_dir, settings.list_name)

        if self._client is None:
            self._client = ArchiveClient(
                self._cache,
                base_url=settings.archive_base_url,
                list_name=settings.list_name,
                username=settings.archive_username,
                password=settings.archive_password,
                timeout_seconds=settings.request_timeout_seconds,
                user_agent=settings.user_agent,
            )

        if self._store is None:
            self._store = ArchiveStore(settings.database_path)
            self._store.connect()

        if self._reconciler is None:
            self._reconciler = Reconciler(self._store)

        return self._client, self._store, self._cache, self._reconciler

    # -- triggers ------------------------------------------------------------

    def start_sync(self, now: datetime | None = None) -> bool:
        """Start a background sync of the remote archive.

        Returns:
            True if the run started, False if another run is active.
        """
        self._ensure_initialized()
        if not self._tracker.try_start():
            logger.warning("Sync requested while a run is active; rejected")
            return False
        self._spawn(self._sync, now)
        return True

    def start_ingest_file(self, name: str, content: bytes) -> bool:
        """Save an uploaded archive unit and ingest it in the background.

        Returns:
            True if the run started, False if another run is active.
        """
        _, _, cache, _ = self._ensure_initialized()
        if not self._tracker.try_start():
            logger.warning("Upload of %s while a run is active; rejected", name)
            return False
        try:
            path = cache.save(name, content)
        except Exception:
            self._tracker.finish()
            raise
        self._spawn(self._ingest_file, path)
        return True

    def run_sync(self, now: datetime | None = None) -> SyncSummary:
        """Sync the remote archive and wait for completion.

        Raises:
            SyncInProgressError: If another run is active.
        """
        self._ensure_initialized()
        if not self._tracker.try_start():
            raise SyncInProgressError("An ingestion run is already active")
        try:
            return self._sync(now)
        finally:
            self._tracker.finish()

    def ingest_file(self, path: Path, now: datetime | None = None) -> SyncSummary:
        """Ingest one local archive unit and wait for completion.

        Raises:
            SyncInProgressError: If another run is active.
        """
        self._ensure_initialized()
        if not self._tracker.try_start():
            raise SyncInProgressError("An ingestion run is already active")
        try:
            return self._ingest_file(path, now)
        finally:
            self._tracker.finish()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the background run ends. Returns False on timeout."""
        worker = self._worker
        if worker is None:
            return True
        worker.join(timeout)
        return not worker.is_alive()

    def _spawn(self, target: Callable[..., Any], *args: Any) -> None:
        self._worker = threading.Thread(
            target=self._run_in_background,
            args=(target, *args),
            name="mbox-ingest",
            daemon=True,
        )
        self._worker.start()

    def _run_in_background(self, target: Callable[..., Any], *args: Any) -> None:
        """Run target, logging any failure instead of letting it escape the thread."""
        try:
            target(*args)
        except Exception:
            logger.exception("Ingestion run failed; progress so far is kept")
        finally:
            self._tracker.finish()

    # -- run bodies (caller holds the running flag) --------------------------

    def _sync(self, now: datetime | None = None) -> SyncSummary:
        client, store, cache, _ = self._ensure_initialized()
        settings = self._settings
        clock = now or datetime.now(UTC)

        months = compute_month_range(
            store.latest_message_at(), clock, settings.initial_lookback_days
        )
        units = [client.unit_for(year, month) for year, month in months]
        summary = SyncSummary(units_total=len(units))
        total = len(units)
        logger.info(
            "Syncing %d month(s) from %s to %s", total, units[0].label, units[-1].label
        )
        self._tracker.update(0, total, "")

        run_id = store.start_run("sync")
        try:
            results = client.fetch_many(
                units,
                workers=settings.download_workers,
                skip_if_exists=settings.skip_existing_downloads,
            )
            for done, result in enumerate(results, start=1):
                self._tracker.update(done, total, result.unit.label)
                if not result.ok:
                    summary.units_failed += 1
                    logger.warning("Skip month %s: %s", result.unit.label, result.error)
                    continue

                logger.info(
                    "Processing %s from %s (took %.1fs)",
                    result.unit.label, result.path, result.duration_seconds,
                )
                if not self._ingest_path(result.path, summary, now):
                    summary.units_failed += 1
                    continue
                summary.units_fetched += 1
                if settings.cleanup_archives:
                    cache.remove(result.path)
        finally:
            store.complete_run(run_id, summary)

        self._tracker.update(total, total, "")
        logger.info("Mbox sync completed: %d new messages stored", summary.messages_inserted)
        return summary

    def _ingest_file(self, path: Path, now: datetime | None = None) -> SyncSummary:
        _, store, _, _ = self._ensure_initialized()
        summary = SyncSummary(units_total=1)
        self._tracker.update(0, 1, path.name)

        run_id = store.start_run("file")
        try:
            if self._ingest_path(path, summary, now):
                summary.units_fetched = 1
            else:
                summary.units_failed = 1
        finally:
            store.complete_run(run_id, summary)

        self._tracker.update(1, 1, "")
        logger.info("Completed processing %s: %d new messages", path, summary.messages_inserted)
        return summary

    def _ingest_path(self, path: Path, summary: SyncSummary, now: datetime | None) -> bool:
        """Parse, thread and reconcile one unit. Returns False if the unit failed."""
        _, _, _, reconciler = self._ensure_initialized()
        try:
            result = self._parser.parse_file(path)
            summary.parse_stats.merge(result.stats)
            summary.messages_parsed += len(result.messages)
            if not result.messages:
                logger.info("No messages in %s, skipping", path)
                return True

            groups = self._resolver.group(result.messages)
            inserted = reconciler.reconcile(groups, now=now)
        except (MboxIngestorError, sqlite3.Error) as e:
            logger.error("Error ingesting %s: %s", path, e)
            return False
        except Exception:
            logger.exception("Unexpected error ingesting %s", path)
            return False

        summary.messages_inserted += inserted
        self._tracker.observe_message_time(max(m.date for m in result.messages))
        logger.info("Stored %d new messages from %s", inserted, path.name)
        return True

    # -- maintenance & queries -----------------------------------------------

    def reset(self) -> None:
        """Clear all threads, messages and activity so the next run starts empty.

        Raises:
            SyncInProgressError: If a run is active.
        """
        _, store, _, _ = self._ensure_initialized()
        if not self._tracker.try_start():
            raise SyncInProgressError("Cannot reset while an ingestion run is active")
        try:
            store.reset()
        finally:
            self._tracker.finish()

    def get_stats(self) -> dict[str, Any]:
        """Get thread and message totals."""
        _, store, _, _ = self._ensure_initialized()
        return store.get_stats()

    def list_threads(self, status: str | None = None, limit: int = 50) -> list[ThreadRecord]:
        """List threads, most recently active first."""
        _, store, _, _ = self._ensure_initialized()
        return store.list_threads(status=status, limit=limit)

    def close(self) -> None:
        """Clean up resources."""
        if self._store:
            self._store.close()
