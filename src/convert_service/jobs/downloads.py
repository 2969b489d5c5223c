from __future__ import annotations

import logging
import re
from pathlib import Path
from urllib.parse import unquote, urlsplit

import requests

from .errors import DownloadFailed, FileSizeLimitExceeded

logger = logging.getLogger(__name__)

HEADERS = {
    "User-Agent": "convert-service/0.1",
    "Accept-Encoding": "gzip",
}

CHUNK = 1024 * 1024
DEFAULT_FILENAME = "document.pdf"

_UNSAFE = re.compile(r"[^$\-_.+!'(),a-zA-Z0-9]")


def filename_from_url(url: str) -> str | None:
    """Return the last path segment of ``url``, ignoring the query string."""
    path = urlsplit(url).path
    name = unquote(path.rsplit("/", 1)[-1]) if "/" in path else ""
    return name or None


def sanitize_filename(name: str) -> str:
    """Limit a file name to characters safe in unencoded URLs and on Windows."""
    name = Path(name).name
    if name in ("", ".", ".."):
        return "upload"
    stem, dot, ext = name.rpartition(".")
    if not dot:
        return _UNSAFE.sub("_", name)
    return f"{_UNSAFE.sub('_', stem) or 'upload'}.{_UNSAFE.sub('_', ext)}"


class Downloader:
    """Fetch remote input files to disk with a size limit and retries.

    Transport and HTTP errors are retried up to ``retries`` attempts in total;
    a size-limit breach is not retried.
    """

    def __init__(self, *, retries: int = 2, size_limit: int | None = None, timeout: float = 30.0) -> None:
        self._retries = max(1, retries)
        self._size_limit = size_limit or None
        self._timeout = timeout

    def fetch(self, url: str, dest_dir: str | Path) -> Path:
        dest = Path(dest_dir)
        dest.mkdir(parents=True, exist_ok=True)
        target = dest / sanitize_filename(filename_from_url(url) or DEFAULT_FILENAME)

        last_error: Exception | None = None
        for attempt in range(1, self._retries + 1):
            try:
                self._fetch_once(url, target)
                return target
            except FileSizeLimitExceeded:
                target.unlink(missing_ok=True)
                raise
            except (requests.exceptions.RequestException, OSError) as e:
                target.unlink(missing_ok=True)
                last_error = e
                logger.warning("Download of %s failed on attempt %d/%d: %s", url, attempt, self._retries, e)
        raise DownloadFailed(f"Failed to download {url}: {last_error}")

    def _fetch_once(self, url: str, target: Path) -> None:
        with requests.get(url, timeout=self._timeout, allow_redirects=True, headers=HEADERS, stream=True) as resp:
            resp.raise_for_status()

            declared = resp.headers.get("Content-Length")
            if self._size_limit and declared and declared.isdigit() and int(declared) > self._size_limit:
                raise FileSizeLimitExceeded(f"File size limit exceeded ({self._size_limit} bytes)")

            size = 0
            with target.open("wb") as f_out:
                for chunk in resp.iter_content(chunk_size=CHUNK):
                    if not chunk:
                        continue
                    size += len(chunk)
                    if self._size_limit and size > self._size_limit:
                        raise FileSizeLimitExceeded(f"File size limit exceeded ({self._size_limit} bytes)")
                    f_out.write(chunk)

        if size == 0:
            raise OSError(f"Empty response body from {url}")
