"""
Data models for storage layer.

Defines database entities and the results returned by the repositories.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class SourceKind(Enum):
    """Raw export formats."""
    STRUCTURED = "structured"  # machine-readable JSON rows
    SCRAPED = "scraped"        # dashboard table / CSV export with string cells


class IngestionStatus(Enum):
    """Lifecycle of one pipeline run."""
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class BlobSaveStatus(Enum):
    SAVED = "saved"
    DUPLICATE = "duplicate"


@dataclass(frozen=True)
class RawBlob:
    """Immutable stored copy of one fetched payload.

    Rows are only ever created or evicted, never updated.
    """
    id: str
    captured_at: datetime
    kind: SourceKind
    content_hash: str
    size_bytes: int
    source_url: Optional[str] = None
    content_type: Optional[str] = None
    schema_version: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class BlobSaveResult:
    status: BlobSaveStatus
    blob_id: str
    content_hash: str

    @property
    def saved(self) -> bool:
        return self.status == BlobSaveStatus.SAVED


@dataclass(frozen=True)
class Ingestion:
    """One execution record of the fetch -> normalize -> persist pipeline."""
    id: str
    source: str
    ingested_at: datetime
    status: IngestionStatus
    content_hash: Optional[str] = None
    raw_blob_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class UsageEvent:
    """Canonical, deduplicated record of one logical unit of usage.

    row_hash is the identity of the logical record. captured_at is the
    capture time of the run that produced the event; occurred_at is the
    usage date reported by the export row, when it has one. first_seen_at and
    last_seen_at are owned by the event store and stay None until the
    event has been persisted.
    """
    row_hash: str
    captured_at: datetime
    model: str
    input_with_cache_write_tokens: int
    input_without_cache_write_tokens: int
    cache_read_tokens: int
    output_tokens: int
    total_tokens: int
    api_cost_cents: int
    cost_to_you_cents: int
    billing_period_start: date
    billing_period_end: date
    source: SourceKind
    logic_version: int = 1
    kind: Optional[str] = None
    max_mode: Optional[str] = None
    api_cost_raw: Optional[str] = None
    cost_to_you_raw: Optional[str] = None
    raw_blob_id: Optional[str] = None
    occurred_at: Optional[datetime] = None
    first_seen_at: Optional[datetime] = None
    last_seen_at: Optional[datetime] = None


@dataclass(frozen=True)
class UpsertResult:
    """Outcome of persisting one batch of events."""
    inserted_count: int
    merged_count: int
    row_hashes: List[str] = field(default_factory=list)
