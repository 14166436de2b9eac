"""
Capability contracts consumed by the orchestrator.

Concrete adapters (HTTP fetch, SQLite repositories, system clock) are wired
at process start; tests substitute in-memory fakes.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Protocol, Sequence

from usage_ingest.storage.models import BlobSaveResult, SourceKind, UpsertResult, UsageEvent


@dataclass(frozen=True)
class FetchResult:
    """Bytes returned by an authenticated fetch."""
    body: bytes
    content_type: Optional[str] = None
    source_url: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)


class Fetcher(Protocol):
    """Authenticated fetch of the upstream export.

    Implementations raise AuthExpiredError, TransientError or
    UnexpectedError; nothing else is part of the contract.
    """

    def fetch(self, target_url: str, timeout: float) -> FetchResult:
        ...


class Clock(Protocol):
    def now(self) -> datetime:
        ...


class SystemClock:
    """Wall clock in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class BlobRepository(Protocol):
    def save_if_new(
        self,
        payload: bytes,
        kind: SourceKind,
        captured_at: datetime,
        retention_count: int,
        source_url: Optional[str] = None,
        content_type: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> BlobSaveResult:
        ...


class EventRepository(Protocol):
    def upsert_events(self, events: Sequence[UsageEvent], ingestion_id: str) -> UpsertResult:
        ...

    def latest_captured_at(self) -> Optional[datetime]:
        ...


class IngestionRepository(Protocol):
    def start(self, source: str, ingested_at: datetime) -> str:
        ...

    def complete(
        self,
        ingestion_id: str,
        content_hash: Optional[str],
        raw_blob_id: Optional[str],
        metadata: Dict[str, Any],
    ) -> None:
        ...

    def fail(
        self,
        ingestion_id: str,
        error: Dict[str, Any],
        content_hash: Optional[str] = None,
        raw_blob_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        ...
