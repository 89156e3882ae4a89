"""Local archive cache: where downloaded and uploaded mbox units live on disk."""

from __future__ import annotations

import logging
from pathlib import Path

logger = logging.getLogger(__name__)


class ArchiveCache:
    """Store mbox archive units in a local data directory."""

    def __init__(self, data_dir: Path, list_name: str = "pgsql-hackers") -> None:
        self._data_dir = data_dir
        self._list_name = list_name
        self._data_dir.mkdir(parents=True, exist_ok=True)

    @property
    def data_dir(self) -> Path:
        return self._data_dir

    def path_for(self, name: str) -> Path:
        """Local path of an archive unit, confined to the data directory."""
        return self._data_dir / Path(name).name

    def exists(self, name: str) -> bool:
        return self.path_for(name).is_file()

    def save(self, name: str, content: bytes) -> Path:
        """Save an archive unit under its sanitized base name.

        Args:
            name: File name supplied by the caller (directories are dropped).
            content: Raw mbox bytes.

        Returns:
            Path of the saved file.
        """
        if not Path(name).name:
            raise ValueError(f"Invalid archive file name: {name!r}")
        path = self.path_for(name)
        path.write_bytes(content)
        logger.debug("Saved archive unit: %s (%d bytes)", path, len(content))
        return path

    def list_archives(self) -> list[Path]:
        """List cached units: files ending in .mbox or named after the mailing list."""
        return sorted(
            p
            for p in self._data_dir.iterdir()
            if p.is_file() and (p.suffix == ".mbox" or p.name.startswith(self._list_name))
        )

    def remove(self, path: Path) -> bool:
        """Delete a cached unit after ingestion. Returns True if a file was removed."""
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.warning("Failed to clean up archive %s: %s", path, e)
            return False
        logger.info("Cleaned up archive file: %s", path)
        return True
