"""
Model Fetcher
Streams remote model artifacts over HTTP with progress callbacks and retries
"""

from __future__ import annotations

import time
from typing import Callable, Dict, Iterable, List, Optional

import requests

from .config import DEFAULT_BASE_URL, ArtifactSpec, default_artifacts
from .errors import ArtifactDownloadError
from .utils import format_size, format_time, logger

__all__ = [
    "ByteProgressCallback",
    "OverallProgressCallback",
    "FileCompleteCallback",
    "ModelFetcher",
]

# (bytes_loaded, bytes_total); total is 0 when the server does not report it
ByteProgressCallback = Callable[[int, int], None]
# (overall_fraction, current_file, file_fraction, bytes_loaded, bytes_total)
OverallProgressCallback = Callable[[float, str, float, int, int], None]
# (filename, byte_length)
FileCompleteCallback = Callable[[str, int], None]


class ModelFetcher:
    """
    Downloads named files relative to a base URL.

    Every failure (connection error, timeout, non-2xx status, truncated
    body) is retried up to ``max_retries`` attempts in total with a fixed
    ``retry_delay`` between attempts.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        files: Optional[List[ArtifactSpec]] = None,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        timeout: float = 60.0,
        chunk_size: int = 1 << 16,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """
        Args:
            base_url: URL prefix the file names are appended to
            files: Default file list for ``fetch_all``
            max_retries: Total attempts per file (>= 1)
            retry_delay: Seconds to wait between attempts
            timeout: Per-request timeout in seconds
            chunk_size: Streaming chunk size in bytes
            session: Optional pre-configured requests session
            sleep: Sleep function (injectable for tests)
        """
        if max_retries < 1:
            raise ValueError(f"max_retries must be >= 1, got {max_retries}")
        if retry_delay < 0:
            raise ValueError(f"retry_delay must be non-negative, got {retry_delay}")

        self.base_url = base_url if base_url.endswith("/") else base_url + "/"
        self.files = list(files) if files is not None else default_artifacts()
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.timeout = timeout
        self.chunk_size = chunk_size
        self.session = session or requests.Session()
        self._sleep = sleep

    def url_for(self, name: str) -> str:
        return self.base_url + name

    def fetch(self, name: str, on_progress: Optional[ByteProgressCallback] = None) -> bytes:
        """
        Download a single file, retrying on failure.

        Args:
            name: File name relative to ``base_url``
            on_progress: Called with (loaded, total) after each received chunk

        Returns:
            The complete file contents

        Raises:
            ArtifactDownloadError: When every attempt failed
        """
        last_error: Optional[BaseException] = None
        for attempt in range(1, self.max_retries + 1):
            try:
                return self._fetch_once(name, on_progress)
            except (requests.RequestException, IOError) as e:
                last_error = e
                if attempt < self.max_retries:
                    logger.warning(
                        "Download of %s failed (attempt %d/%d): %s. Retrying in %.1fs",
                        name, attempt, self.max_retries, e, self.retry_delay,
                    )
                    self._sleep(self.retry_delay)
                else:
                    logger.error(
                        "Download of %s failed (attempt %d/%d): %s",
                        name, attempt, self.max_retries, e,
                    )
        raise ArtifactDownloadError(name, self.max_retries, last_error) from last_error

    def _fetch_once(self, name: str, on_progress: Optional[ByteProgressCallback]) -> bytes:
        url = self.url_for(name)
        start = time.time()
        with self.session.get(url, stream=True, timeout=self.timeout) as response:
            response.raise_for_status()

            try:
                total = int(response.headers.get("content-length") or 0)
            except ValueError:
                total = 0

            chunks: List[bytes] = []
            loaded = 0
            for chunk in response.iter_content(chunk_size=self.chunk_size):
                if not chunk:
                    continue
                chunks.append(chunk)
                loaded += len(chunk)
                if on_progress is not None:
                    on_progress(loaded, total)

        if total and loaded < total:
            raise IOError(f"Incomplete download of {name}: received {loaded} of {total} bytes")

        logger.info(
            "Downloaded %s (%s) in %s", name, format_size(loaded), format_time(time.time() - start)
        )
        return b"".join(chunks)

    def fetch_all(
        self,
        names: Optional[Iterable[str]] = None,
        on_overall_progress: Optional[OverallProgressCallback] = None,
        on_file_complete: Optional[FileCompleteCallback] = None,
    ) -> Dict[str, bytes]:
        """
        Download several files one after another.

        Overall progress is ``(completed_files + current_file_fraction) /
        total_files``; the current file counts as 0 while its size is
        unknown.

        Args:
            names: Files to download (defaults to every configured file)
            on_overall_progress: Called as (fraction, file, file_fraction, loaded, total)
            on_file_complete: Called as (file, byte_length) after each file

        Returns:
            Mapping of file name to contents, in download order

        Raises:
            ArtifactDownloadError: On the first file that cannot be fetched
        """
        targets = list(names) if names is not None else [spec.name for spec in self.files]
        total_files = len(targets)
        results: Dict[str, bytes] = {}

        for completed, name in enumerate(targets):
            def report(loaded: int, total: int, _name: str = name, _done: int = completed) -> None:
                if on_overall_progress is None:
                    return
                file_fraction = min(loaded / total, 1.0) if total > 0 else 0.0
                overall = (_done + file_fraction) / total_files
                on_overall_progress(overall, _name, file_fraction, loaded, total)

            data = self.fetch(name, on_progress=report)
            results[name] = data
            if on_overall_progress is not None:
                on_overall_progress((completed + 1) / total_files, name, 1.0, len(data), len(data))
            if on_file_complete is not None:
                on_file_complete(name, len(data))

        return results

    def close(self) -> None:
        self.session.close()
