"""
Idempotent persistence of canonical usage events.

Events are keyed by row_hash. Re-observing an event only advances its
last_seen_at; every observing ingestion is linked through event_ingestion
so each event keeps a full audit trail.
"""

import sqlite3
from datetime import datetime
from typing import List, Optional, Sequence

from usage_ingest.errors import InfrastructureError
from usage_ingest.logging_config import get_logger

from .db import Database, from_db_date, from_db_time, to_db_date, to_db_time
from .models import SourceKind, UpsertResult, UsageEvent

logger = get_logger(__name__)

_EVENT_COLUMNS = (
    "row_hash, captured_at, kind, model, max_mode, "
    "input_with_cache_write_tokens, input_without_cache_write_tokens, "
    "cache_read_tokens, output_tokens, total_tokens, "
    "api_cost_cents, api_cost_raw, cost_to_you_cents, cost_to_you_raw, "
    "billing_period_start, billing_period_end, source, raw_blob_id, occurred_at, "
    "first_seen_at, last_seen_at, logic_version"
)


class EventStore:
    """Repository owning the usage_event and event_ingestion tables."""

    def __init__(self, database: Database):
        self.database = database

    def upsert_events(self, events: Sequence[UsageEvent], ingestion_id: str) -> UpsertResult:
        """Persist a batch of events for one ingestion atomically.

        New row hashes are inserted with first_seen_at = last_seen_at =
        captured_at. Known row hashes only get last_seen_at raised to the
        later of the stored value and the event's captured_at. Every event
        is linked to the ingestion; repeated links are ignored.

        Either the whole batch commits or nothing does.

        Args:
            events: Canonical events to persist
            ingestion_id: Ingestion row the batch belongs to

        Returns:
            UpsertResult with inserted and merged counts

        Raises:
            InfrastructureError: If the transaction fails (nothing persisted)
        """
        inserted = 0
        merged = 0
        row_hashes: List[str] = []

        conn = self.database.connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            for event in events:
                captured_at = to_db_time(event.captured_at)
                exists = conn.execute(
                    "SELECT 1 FROM usage_event WHERE row_hash = ?", (event.row_hash,)
                ).fetchone()
                if exists:
                    conn.execute(
                        """
                        UPDATE usage_event
                        SET last_seen_at = MAX(last_seen_at, ?)
                        WHERE row_hash = ?
                        """,
                        (captured_at, event.row_hash),
                    )
                    merged += 1
                else:
                    conn.execute(
                        f"INSERT INTO usage_event ({_EVENT_COLUMNS}) "
                        "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                        (
                            event.row_hash,
                            captured_at,
                            event.kind,
                            event.model,
                            event.max_mode,
                            event.input_with_cache_write_tokens,
                            event.input_without_cache_write_tokens,
                            event.cache_read_tokens,
                            event.output_tokens,
                            event.total_tokens,
                            event.api_cost_cents,
                            event.api_cost_raw,
                            event.cost_to_you_cents,
                            event.cost_to_you_raw,
                            to_db_date(event.billing_period_start),
                            to_db_date(event.billing_period_end),
                            event.source.value,
                            event.raw_blob_id,
                            to_db_time(event.occurred_at) if event.occurred_at else None,
                            captured_at,
                            captured_at,
                            event.logic_version,
                        ),
                    )
                    inserted += 1
                conn.execute(
                    "INSERT OR IGNORE INTO event_ingestion (row_hash, ingestion_id) VALUES (?, ?)",
                    (event.row_hash, ingestion_id),
                )
                row_hashes.append(event.row_hash)
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise InfrastructureError(f"Failed to persist usage events: {e}") from e
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

        logger.info(
            "events.upserted",
            ingestion_id=ingestion_id,
            inserted=inserted,
            merged=merged,
        )
        return UpsertResult(inserted_count=inserted, merged_count=merged, row_hashes=row_hashes)

    def latest_captured_at(self) -> Optional[datetime]:
        """Watermark: the latest persisted capture timestamp, or None."""
        conn = self.database.connect()
        try:
            row = conn.execute("SELECT MAX(captured_at) FROM usage_event").fetchone()
        finally:
            conn.close()
        return from_db_time(row[0])

    def get_event(self, row_hash: str) -> Optional[UsageEvent]:
        conn = self.database.connect()
        try:
            row = conn.execute(
                f"SELECT {_EVENT_COLUMNS} FROM usage_event WHERE row_hash = ?", (row_hash,)
            ).fetchone()
        finally:
            conn.close()
        return _row_to_event(row) if row else None

    def list_events(self, limit: int = 1000) -> List[UsageEvent]:
        """Return persisted events ordered by capture time (newest first)."""
        conn = self.database.connect()
        try:
            cursor = conn.execute(
                f"SELECT {_EVENT_COLUMNS} FROM usage_event "
                "ORDER BY captured_at DESC, row_hash LIMIT ?",
                (limit,),
            )
            return [_row_to_event(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def ingestions_for_event(self, row_hash: str) -> List[str]:
        """Ids of every ingestion that observed an event, oldest first."""
        conn = self.database.connect()
        try:
            cursor = conn.execute(
                """
                SELECT ei.ingestion_id
                FROM event_ingestion ei
                JOIN ingestion i ON i.id = ei.ingestion_id
                WHERE ei.row_hash = ?
                ORDER BY i.ingested_at, i.id
                """,
                (row_hash,),
            )
            return [row[0] for row in cursor.fetchall()]
        finally:
            conn.close()

    def count_events(self) -> int:
        conn = self.database.connect()
        try:
            return conn.execute("SELECT COUNT(*) FROM usage_event").fetchone()[0]
        finally:
            conn.close()


def _row_to_event(row: tuple) -> UsageEvent:
    return UsageEvent(
        row_hash=row[0],
        captured_at=from_db_time(row[1]),
        kind=row[2],
        model=row[3],
        max_mode=row[4],
        input_with_cache_write_tokens=row[5],
        input_without_cache_write_tokens=row[6],
        cache_read_tokens=row[7],
        output_tokens=row[8],
        total_tokens=row[9],
        api_cost_cents=row[10],
        api_cost_raw=row[11],
        cost_to_you_cents=row[12],
        cost_to_you_raw=row[13],
        billing_period_start=from_db_date(row[14]),
        billing_period_end=from_db_date(row[15]),
        source=SourceKind(row[16]),
        raw_blob_id=row[17],
        occurred_at=from_db_time(row[18]),
        first_seen_at=from_db_time(row[19]),
        last_seen_at=from_db_time(row[20]),
        logic_version=row[21],
    )
