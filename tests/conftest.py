"""Shared fixtures for Mbox Ingestor tests."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from mbox_ingestor.core.models import MessageRecord

FIXTURES_DIR = Path(__file__).parent / "fixtures"

BASE_TIME = datetime(2024, 1, 15, 10, 0, 0, tzinfo=UTC)


@pytest.fixture
def fixtures_dir() -> Path:
    """Path to the test fixtures directory."""
    return FIXTURES_DIR


@pytest.fixture
def sample_mbox_path() -> Path:
    """Mbox unit with valid, rejected and repaired messages."""
    return FIXTURES_DIR / "sample.mbox"


@pytest.fixture
def multipart_mbox_path() -> Path:
    """Mbox unit with one multipart/mixed message carrying an attachment."""
    return FIXTURES_DIR / "multipart.mbox"


@pytest.fixture
def base_time() -> datetime:
    """Fixed reference timestamp for message dates."""
    return BASE_TIME


@pytest.fixture
def make_message() -> Callable[..., MessageRecord]:
    """Factory for MessageRecords with sensible defaults.

    `hours` offsets the date from BASE_TIME.
    """

    def _make(
        message_id: str,
        *,
        hours: float = 0,
        author: str = "Alice",
        author_email: str = "alice@example.com",
        subject: str = "Add feature X",
        in_reply_to: str = "",
        references: tuple[str, ...] = (),
        body: str = "",
        has_patch: bool = False,
    ) -> MessageRecord:
        return MessageRecord(
            message_id=message_id,
            author=author,
            author_email=author_email,
            date=BASE_TIME + timedelta(hours=hours),
            subject=subject,
            raw_subject=subject,
            in_reply_to=in_reply_to,
            references=references,
            body=body,
            has_patch=has_patch,
        )

    return _make


@pytest.fixture
def tmp_data_dir(tmp_path: Path) -> Path:
    """Temporary archive data directory for tests."""
    data = tmp_path / "mbox"
    data.mkdir()
    return data


@pytest.fixture
def tmp_db_path(tmp_path: Path) -> Path:
    """Temporary database path for tests."""
    return tmp_path / "test.db"
