"""Configuration via pydantic-settings with .env support."""

from __future__ import annotations

from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class MboxIngestorSettings(BaseSettings):
    """Application settings loaded from environment variables and .env file."""

    model_config = SettingsConfigDict(
        env_prefix="MBOX_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Remote archive (HTTP Basic Auth is required for raw mbox downloads)
    archive_base_url: str = "https://www.postgresql.org/list/pgsql-hackers/mbox"
    list_name: str = "pgsql-hackers"
    archive_username: str = "archives"
    archive_password: str = "antispam"
    request_timeout_seconds: float = 300.0
    user_agent: str = "mbox-ingestor/1.0"

    # Download pool & caching
    download_workers: int = 4
    skip_existing_downloads: bool = False
    cleanup_archives: bool = False
    initial_lookback_days: int = 365

    # Local paths
    data_dir: Path = Path("data/mbox")
    database_path: Path = Path("data/mbox_ingestor.db")

    # Parsing
    fallback_id_domain: str = "mbox-ingestor.local"
    min_valid_year: int = 1990

    # Logging
    log_level: str = "INFO"

    def ensure_directories(self) -> None:
        """Create data directories if they don't exist."""
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.database_path.parent.mkdir(parents=True, exist_ok=True)
