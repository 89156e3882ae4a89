"""Custom exceptions for the Mbox Ingestor."""


class MboxIngestorError(Exception):
    """Base exception for all Mbox Ingestor errors."""


class FetchError(MboxIngestorError):
    """Failed to download an archive unit."""

    def __init__(self, message: str, *, unit_label: str = "", status_code: int | None = None):
        super().__init__(message)
        self.unit_label = unit_label
        self.status_code = status_code


class ParseError(MboxIngestorError):
    """Failed to read or parse an mbox archive unit."""


class StoreError(MboxIngestorError):
    """Failed to read from or write to the archive store."""


class SyncInProgressError(MboxIngestorError):
    """An ingestion run is already active."""
