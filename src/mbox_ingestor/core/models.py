"""Dataclasses and enums for the Mbox Ingestor domain model."""

from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from datetime import datetime
from enum import Enum
from pathlib import Path


class ThreadStatus(str, Enum):
    """Activity status of a thread, derived only by the classifier."""

    IN_PROGRESS = "in-progress"
    DISCUSSION = "discussion"
    STALLED = "stalled"
    ABANDONED = "abandoned"


class PatchStatus(str, Enum):
    """Lifecycle of a patch carried by a message."""

    PROPOSED = "proposed"
    ACCEPTED = "accepted"
    COMMITTED = "committed"
    REJECTED = "rejected"


@dataclass(frozen=True)
class ArchiveUnit:
    """One dated (year, month) mbox snapshot of the mailing list."""

    year: int
    month: int
    name: str
    url: str
    local_path: Path

    @property
    def label(self) -> str:
        return f"{self.year:04d}-{self.month:02d}"


@dataclass(frozen=True)
class FetchResult:
    """Outcome of downloading one archive unit."""

    unit: ArchiveUnit
    path: Path | None = None
    error: Exception | None = None
    duration_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None and self.path is not None


@dataclass(frozen=True)
class MessageRecord:
    """A validated message parsed from an mbox archive unit."""

    message_id: str
    author: str
    author_email: str
    date: datetime
    subject: str = ""
    raw_subject: str = ""
    in_reply_to: str = ""
    references: tuple[str, ...] = field(default_factory=tuple)
    body: str = ""
    transfer_encoding: str = ""
    has_patch: bool = False
    patch_status: PatchStatus | None = None

    def sanitized(self) -> MessageRecord:
        """Return a copy whose text fields are safe to persist."""
        changes = {
            f.name: _sanitize_text(getattr(self, f.name))
            for f in fields(self)
            if isinstance(getattr(self, f.name), str)
        }
        changes["references"] = tuple(_sanitize_text(ref) for ref in self.references)
        return replace(self, **changes)


def _sanitize_text(value: str) -> str:
    """Drop NUL characters and code points that cannot be encoded as UTF-8."""
    return value.replace("\x00", "").encode("utf-8", errors="ignore").decode("utf-8")


@dataclass(frozen=True)
class ThreadGroup:
    """Messages of one batch that share a root id."""

    root_id: str
    messages: tuple[MessageRecord, ...]

    @property
    def earliest(self) -> MessageRecord:
        return min(self.messages, key=lambda m: m.date)

    @property
    def message_ids(self) -> list[str]:
        return [m.message_id for m in self.messages]


@dataclass(frozen=True)
class ThreadRecord:
    """A persisted conversation thread with aggregates derived from its messages."""

    id: str
    subject: str
    root_message_id: str
    first_message_id: str
    first_author: str
    first_author_email: str
    created_at: datetime
    updated_at: datetime
    last_message_at: datetime | None = None
    message_count: int = 0
    unique_authors: int = 0
    status: ThreadStatus = ThreadStatus.DISCUSSION


@dataclass(frozen=True)
class ActivityFeatures:
    """Inputs of the activity classifier."""

    has_patch: bool
    has_review: bool
    message_count: int
    days_since_last_activity: float


@dataclass
class ParseStats:
    """Counts collected while parsing one or more archive units."""

    total: int = 0
    parsed: int = 0
    skipped: int = 0
    invalid_message_id: int = 0
    invalid_from: int = 0
    invalid_date: int = 0
    malformed_message_id: int = 0

    def merge(self, other: ParseStats) -> None:
        """Add another unit's counts into this one."""
        for f in fields(self):
            setattr(self, f.name, getattr(self, f.name) + getattr(other, f.name))


@dataclass(frozen=True)
class ParseResult:
    """Messages and statistics from parsing one archive unit."""

    messages: list[MessageRecord]
    stats: ParseStats


@dataclass(frozen=True)
class SyncProgress:
    """Point-in-time snapshot of an ingestion run's progress."""

    months_total: int = 0
    months_done: int = 0
    current_unit_label: str = ""
    is_running: bool = False
    latest_message_at: datetime | None = None
    last_synced_at: datetime | None = None


@dataclass
class SyncSummary:
    """Mutable totals for one ingestion run."""

    units_total: int = 0
    units_fetched: int = 0
    units_failed: int = 0
    messages_parsed: int = 0
    messages_inserted: int = 0
    parse_stats: ParseStats = field(default_factory=ParseStats)
