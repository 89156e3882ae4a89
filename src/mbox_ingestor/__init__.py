"""Mbox Ingestor - Mirror a mailing-list mbox archive into threaded, classified storage."""

from mbox_ingestor.core.models import (
    ActivityFeatures,
    ArchiveUnit,
    MessageRecord,
    ParseStats,
    PatchStatus,
    SyncProgress,
    SyncSummary,
    ThreadGroup,
    ThreadRecord,
    ThreadStatus,
)
from mbox_ingestor.pipeline.ingestor import MboxIngestor

__all__ = [
    "ActivityFeatures",
    "ArchiveUnit",
    "MboxIngestor",
    "MessageRecord",
    "ParseStats",
    "PatchStatus",
    "SyncProgress",
    "SyncSummary",
    "ThreadGroup",
    "ThreadRecord",
    "ThreadStatus",
]
