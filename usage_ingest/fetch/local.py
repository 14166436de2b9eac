"""
Fetch adapter reading an export saved on disk.

Used for manual backfills and fixtures; the path given at construction
takes precedence over the configured target URL.
"""

import mimetypes
from pathlib import Path
from typing import Optional
from urllib.parse import unquote, urlparse

from usage_ingest.core.ports import FetchResult
from usage_ingest.errors import UnexpectedError


class LocalFileFetcher:
    """Fetcher returning the bytes of a local file."""

    def __init__(self, path: Optional[str] = None):
        self.path = path

    def fetch(self, target_url: str, timeout: float) -> FetchResult:
        location = self.path or target_url
        if location.startswith("file://"):
            location = unquote(urlparse(location).path)
        path = Path(location)
        try:
            body = path.read_bytes()
        except OSError as e:
            raise UnexpectedError(f"Cannot read export file {path}: {e}") from e
        content_type, _ = mimetypes.guess_type(path.name)
        return FetchResult(body=body, content_type=content_type, source_url=path.resolve().as_uri())
