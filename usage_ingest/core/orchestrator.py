"""
Pipeline orchestration for one ingestion run.

A run moves linearly through:

    IDLE -> FETCHING -> DEDUPING -> NORMALIZING -> COMPUTING_DELTA
         -> PERSISTING -> DONE | FAILED

Nothing is persisted before a complete payload has been fetched, events
commit in one transaction, and the ingestion row always ends completed or
failed once run_once() returns or raises.
"""

import sqlite3
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from usage_ingest.errors import (
    InfrastructureError,
    UnexpectedError,
    UsageIngestError,
    describe_error,
)
from usage_ingest.logging_config import get_logger
from usage_ingest.storage.models import SourceKind

from .delta import compute_delta
from .normalize import DEFAULT_LOGIC_VERSION, build_table_hash, normalize
from .ports import (
    BlobRepository,
    Clock,
    EventRepository,
    Fetcher,
    IngestionRepository,
    SystemClock,
)


class RunState(Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    DEDUPING = "deduping"
    NORMALIZING = "normalizing"
    COMPUTING_DELTA = "computing_delta"
    PERSISTING = "persisting"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class RunSummary:
    """Result of a successful run."""
    saved_blob: bool
    new_event_count: int
    ingestion_id: str
    blob_id: Optional[str] = None
    content_hash: Optional[str] = None
    delta_count: int = 0
    merged_count: int = 0


@dataclass(frozen=True)
class OrchestratorSettings:
    target_url: str
    source_kind: SourceKind = SourceKind.SCRAPED
    retention_count: int = 20
    fetch_timeout_seconds: float = 30.0
    logic_version: int = DEFAULT_LOGIC_VERSION


class IngestionOrchestrator:
    """Runs fetch -> dedup-store -> normalize -> delta -> persist once per call.

    Overlapping runs are prevented by the external trigger; the stores'
    uniqueness constraints keep accidental overlap from corrupting state.
    """

    def __init__(
        self,
        fetcher: Fetcher,
        blob_store: BlobRepository,
        event_store: EventRepository,
        ingestion_log: IngestionRepository,
        settings: OrchestratorSettings,
        clock: Optional[Clock] = None,
        logger: Any = None,
    ):
        self.fetcher = fetcher
        self.blob_store = blob_store
        self.event_store = event_store
        self.ingestion_log = ingestion_log
        self.settings = settings
        self.clock = clock or SystemClock()
        self.logger = logger or get_logger(__name__)
        self.state = RunState.IDLE

    def run_once(self) -> RunSummary:
        """Execute one ingestion run.

        Returns:
            RunSummary describing what was stored

        Raises:
            AuthExpiredError: Credential missing or rejected; re-login needed
            TransientError: Timeout, network or upstream failure; retry later
            InfrastructureError: Storage unavailable; retry later
            UnexpectedError: Anything else, with the original as __cause__
        """
        settings = self.settings
        self.state = RunState.IDLE
        captured_at = self.clock.now()

        try:
            ingestion_id = self.ingestion_log.start(settings.source_kind.value, captured_at)
        except Exception as e:
            # No ingestion row exists yet, so there is nothing to mark failed.
            self.state = RunState.FAILED
            error = _classify(e)
            self.logger.error("run.start_failed", **describe_error(error))
            if error is e:
                raise
            raise error from e

        content_hash: Optional[str] = None
        blob_id: Optional[str] = None
        try:
            self._enter(RunState.FETCHING, ingestion_id)
            fetched = self.fetcher.fetch(settings.target_url, timeout=settings.fetch_timeout_seconds)

            self._enter(RunState.DEDUPING, ingestion_id)
            blob = self.blob_store.save_if_new(
                fetched.body,
                settings.source_kind,
                captured_at,
                settings.retention_count,
                source_url=fetched.source_url or settings.target_url,
                content_type=fetched.content_type,
            )
            content_hash = blob.content_hash
            blob_id = blob.blob_id

            # A duplicate blob still flows through; event hashes decide novelty.
            self._enter(RunState.NORMALIZING, ingestion_id)
            events = normalize(
                fetched.body,
                captured_at,
                blob.blob_id,
                settings.source_kind,
                settings.logic_version,
            )

            self._enter(RunState.COMPUTING_DELTA, ingestion_id)
            watermark = self.event_store.latest_captured_at()
            delta = compute_delta(events, watermark)

            self._enter(RunState.PERSISTING, ingestion_id)
            result = self.event_store.upsert_events(delta, ingestion_id)

            table = build_table_hash(events)
            self.ingestion_log.complete(
                ingestion_id,
                content_hash,
                blob_id,
                {
                    **table,
                    "delta_count": len(delta),
                    "inserted_count": result.inserted_count,
                    "merged_count": result.merged_count,
                    "row_hashes": result.row_hashes,
                    "logic_version": settings.logic_version,
                    "bytes": len(fetched.body),
                    "blob_status": blob.status.value,
                    "watermark": watermark.isoformat() if watermark else None,
                },
            )
        except Exception as e:
            failed_stage = self.state
            error = _classify(e)
            self.state = RunState.FAILED
            self._record_failure(ingestion_id, error, failed_stage, content_hash, blob_id)
            if error is e:
                raise
            raise error from e

        self.state = RunState.DONE
        summary = RunSummary(
            saved_blob=blob.saved,
            new_event_count=result.inserted_count,
            ingestion_id=ingestion_id,
            blob_id=blob_id,
            content_hash=content_hash,
            delta_count=len(delta),
            merged_count=result.merged_count,
        )
        self.logger.info(
            "run.completed",
            ingestion_id=ingestion_id,
            saved_blob=summary.saved_blob,
            new_events=summary.new_event_count,
            merged=summary.merged_count,
            delta=summary.delta_count,
        )
        return summary

    def _enter(self, state: RunState, ingestion_id: str) -> None:
        self.state = state
        self.logger.debug("run.state", ingestion_id=ingestion_id, state=state.value)

    def _record_failure(
        self,
        ingestion_id: str,
        error: UsageIngestError,
        stage: RunState,
        content_hash: Optional[str],
        blob_id: Optional[str],
    ) -> None:
        failure: Dict[str, Any] = {**describe_error(error), "stage": stage.value}
        self.logger.error("run.failed", ingestion_id=ingestion_id, **failure)
        try:
            self.ingestion_log.fail(ingestion_id, failure, content_hash=content_hash, raw_blob_id=blob_id)
        except Exception as e:
            # The classified run error still propagates to the caller.
            self.logger.error(
                "run.failure_not_recorded",
                ingestion_id=ingestion_id,
                error=str(e),
            )


def _classify(error: Exception) -> UsageIngestError:
    if isinstance(error, UsageIngestError):
        return error
    if isinstance(error, sqlite3.Error):
        return InfrastructureError(f"Storage failure: {error}")
    return UnexpectedError(
        f"Unexpected failure: {type(error).__name__}: {error}",
        details={"exception": type(error).__name__},
    )
