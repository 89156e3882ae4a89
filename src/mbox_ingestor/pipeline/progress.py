"""Thread-safe progress state of the active ingestion run."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import replace
from datetime import UTC, datetime

from mbox_ingestor.core.models import SyncProgress

logger = logging.getLogger(__name__)


class SyncProgressTracker:
    """Holds run progress behind a single lock.

    Only the active ingestion run writes; any thread may poll snapshot().
    try_start() doubles as the "one run at a time" guard.
    """

    def __init__(self, on_progress: Callable[[SyncProgress], None] | None = None) -> None:
        self._lock = threading.Lock()
        self._state = SyncProgress()
        self._on_progress = on_progress

    @property
    def on_progress(self) -> Callable[[SyncProgress], None] | None:
        return self._on_progress

    @on_progress.setter
    def on_progress(self, callback: Callable[[SyncProgress], None] | None) -> None:
        self._on_progress = callback

    def snapshot(self) -> SyncProgress:
        """Return the current progress (an immutable copy)."""
        with self._lock:
            return self._state

    def try_start(self, months_total: int = 0) -> bool:
        """Mark a run as started unless one is already running.

        Returns:
            False if a run is already active, True if this call started one.
        """
        with self._lock:
            if self._state.is_running:
                return False
            self._state = replace(
                self._state,
                is_running=True,
                months_total=months_total,
                months_done=0,
                current_unit_label="",
            )
            state = self._state
        self._notify(state)
        return True

    def update(self, months_done: int, months_total: int, current_unit_label: str) -> None:
        """Record which unit is being processed and how many are done."""
        with self._lock:
            self._state = replace(
                self._state,
                months_done=months_done,
                months_total=months_total,
                current_unit_label=current_unit_label,
                last_synced_at=datetime.now(UTC),
            )
            state = self._state
        self._notify(state)

    def observe_message_time(self, timestamp: datetime) -> None:
        """Advance latest_message_at if timestamp is newer."""
        with self._lock:
            latest = self._state.latest_message_at
            if latest is not None and timestamp <= latest:
                return
            self._state = replace(self._state, latest_message_at=timestamp)

    def finish(self) -> None:
        """Clear the running flag."""
        with self._lock:
            self._state = replace(self._state, is_running=False, current_unit_label="")
            state = self._state
        self._notify(state)

    def _notify(self, state: SyncProgress) -> None:
        """Send progress update to callback if registered."""
        if self._on_progress:
            try:
                self._on_progress(state)
            except Exception:
                logger.exception("Progress callback failed")
