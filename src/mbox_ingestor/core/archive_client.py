"""HTTP client for monthly mbox archives with a bounded concurrent download pool."""

from __future__ import annotations

import logging
import time
from collections.abc import Generator, Iterable
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path

import requests
from requests.auth import HTTPBasicAuth

from mbox_ingestor.core.exceptions import FetchError
from mbox_ingestor.core.models import ArchiveUnit, FetchResult
from mbox_ingestor.storage.archive_cache import ArchiveCache

logger = logging.getLogger(__name__)

DEFAULT_WORKERS = 3
_CHUNK_SIZE = 64 * 1024


class ArchiveClient:
    """Downloads archive units from the remote mailing-list archive into the local cache."""

    def __init__(
        self,
        cache: ArchiveCache,
        *,
        base_url: str,
        list_name: str,
        username: str = "",
        password: str = "",
        timeout_seconds: float = 300.0,
        user_agent: str = "mbox-ingestor/1.0",
        session: requests.Session | None = None,
    ) -> None:
        self._cache = cache
        self._base_url = base_url.rstrip("/")
        self._list_name = list_name
        self._auth = HTTPBasicAuth(username, password) if username and password else None
        self._timeout = timeout_seconds
        self._session = session or requests.Session()
        self._session.headers["User-Agent"] = user_agent

    def unit_for(self, year: int, month: int) -> ArchiveUnit:
        """Build the archive unit for a (year, month), e.g. pgsql-hackers.202512."""
        name = f"{self._list_name}.{year:04d}{month:02d}"
        return ArchiveUnit(
            year=year,
            month=month,
            name=name,
            url=f"{self._base_url}/{name}",
            local_path=self._cache.path_for(name),
        )

    def fetch(self, unit: ArchiveUnit, *, skip_if_exists: bool = False) -> Path:
        """Download one archive unit into the local cache.

        Args:
            unit: The unit to download.
            skip_if_exists: Reuse an already cached file instead of downloading.

        Returns:
            Local path of the unit.

        Raises:
            FetchError: On network errors, non-200 responses, or write failures.
        """
        dest = unit.local_path
        if skip_if_exists and dest.is_file():
            logger.info("Using cached mbox file: %s", dest)
            return dest

        try:
            response = self._session.get(
                unit.url, auth=self._auth, timeout=self._timeout, stream=True
            )
        except requests.RequestException as e:
            raise FetchError(f"Download {unit.url} failed: {e}", unit_label=unit.label) from e

        with response:
            if response.status_code != 200:
                raise FetchError(
                    f"Download {unit.url} failed: status {response.status_code}",
                    unit_label=unit.label,
                    status_code=response.status_code,
                )

            dest.parent.mkdir(parents=True, exist_ok=True)
            written = 0
            try:
                with dest.open("wb") as f:
                    for chunk in response.iter_content(chunk_size=_CHUNK_SIZE):
                        if chunk:
                            f.write(chunk)
                            written += len(chunk)
            except (OSError, requests.RequestException) as e:
                dest.unlink(missing_ok=True)
                raise FetchError(f"Write {dest} failed: {e}", unit_label=unit.label) from e

        logger.info("Downloaded %s (%d bytes) to %s", unit.name, written, dest)
        return dest

    def fetch_many(
        self,
        units: Iterable[ArchiveUnit],
        *,
        workers: int = DEFAULT_WORKERS,
        skip_if_exists: bool = False,
    ) -> Generator[FetchResult, None, None]:
        """Download units concurrently, yielding one FetchResult per unit as each completes.

        A failed unit is reported in its result and never stops the others.
        This is a generator, so callers can process finished units while the
        rest are still downloading.
        """
        units = list(units)
        if not units:
            return
        if workers <= 0:
            workers = DEFAULT_WORKERS

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="mbox-fetch") as executor:
            futures = {
                executor.submit(self._timed_fetch, unit, skip_if_exists): unit for unit in units
            }
            for future in as_completed(futures):
                yield future.result()

    def _timed_fetch(self, unit: ArchiveUnit, skip_if_exists: bool) -> FetchResult:
        start = time.monotonic()
        try:
            path = self.fetch(unit, skip_if_exists=skip_if_exists)
        except Exception as e:
            logger.warning("Download of %s failed: %s", unit.label, e)
            return FetchResult(unit=unit, error=e, duration_seconds=time.monotonic() - start)
        return FetchResult(unit=unit, path=path, duration_seconds=time.monotonic() - start)
