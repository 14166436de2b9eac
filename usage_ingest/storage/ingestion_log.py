"""
Ingestion run records.

One row per pipeline run. A run is created in_progress and moved to a
terminal status exactly once.
"""

import json
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from usage_ingest.errors import UnexpectedError

from .db import Database, from_db_time, to_db_time, utc_now
from .models import Ingestion, IngestionStatus


class IngestionLog:
    """Repository for the ingestion table."""

    def __init__(self, database: Database):
        self.database = database

    def start(self, source: str, ingested_at: datetime) -> str:
        """Create an in_progress ingestion row and return its id."""
        ingestion_id = str(uuid.uuid4())
        conn = self.database.connect()
        try:
            conn.execute(
                """
                INSERT INTO ingestion (id, source, ingested_at, status, metadata)
                VALUES (?, ?, ?, ?, '{}')
                """,
                (ingestion_id, source, to_db_time(ingested_at), IngestionStatus.IN_PROGRESS.value),
            )
            conn.commit()
        finally:
            conn.close()
        return ingestion_id

    def complete(
        self,
        ingestion_id: str,
        content_hash: Optional[str],
        raw_blob_id: Optional[str],
        metadata: Dict[str, Any],
    ) -> None:
        """Mark a run completed. Only valid after its events have committed."""
        self._finish(ingestion_id, IngestionStatus.COMPLETED, content_hash, raw_blob_id, metadata)

    def fail(
        self,
        ingestion_id: str,
        error: Dict[str, Any],
        content_hash: Optional[str] = None,
        raw_blob_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Mark a run failed, recording the classified error."""
        failure_metadata = {**(metadata or {}), "error": error}
        self._finish(ingestion_id, IngestionStatus.FAILED, content_hash, raw_blob_id, failure_metadata)

    def get(self, ingestion_id: str) -> Optional[Ingestion]:
        rows = self._select("WHERE id = ?", (ingestion_id,))
        return rows[0] if rows else None

    def list_recent(self, limit: int = 20) -> List[Ingestion]:
        """Most recent runs first."""
        return self._select("ORDER BY ingested_at DESC, id DESC LIMIT ?", (limit,))

    def _finish(
        self,
        ingestion_id: str,
        status: IngestionStatus,
        content_hash: Optional[str],
        raw_blob_id: Optional[str],
        metadata: Dict[str, Any],
    ) -> None:
        conn = self.database.connect()
        try:
            # An evicted blob leaves raw_blob_id NULL instead of breaking the FK.
            cursor = conn.execute(
                """
                UPDATE ingestion
                SET status = ?,
                    content_hash = ?,
                    raw_blob_id = (SELECT id FROM raw_blobs WHERE id = ?),
                    metadata = ?,
                    finished_at = ?
                WHERE id = ? AND status = ?
                """,
                (
                    status.value,
                    content_hash,
                    raw_blob_id,
                    json.dumps(metadata, sort_keys=True, default=str),
                    to_db_time(utc_now()),
                    ingestion_id,
                    IngestionStatus.IN_PROGRESS.value,
                ),
            )
            conn.commit()
            updated = cursor.rowcount
        finally:
            conn.close()
        if updated != 1:
            raise UnexpectedError(
                f"Ingestion {ingestion_id} is not in progress",
                details={"ingestion_id": ingestion_id, "status": status.value},
            )

    def _select(self, clause: str, params: tuple) -> List[Ingestion]:
        conn = self.database.connect()
        try:
            cursor = conn.execute(
                "SELECT id, source, ingested_at, status, content_hash, raw_blob_id, metadata "
                "FROM ingestion " + clause,
                params,
            )
            return [
                Ingestion(
                    id=row[0],
                    source=row[1],
                    ingested_at=from_db_time(row[2]),
                    status=IngestionStatus(row[3]),
                    content_hash=row[4],
                    raw_blob_id=row[5],
                    metadata=json.loads(row[6]),
                )
                for row in cursor.fetchall()
            ]
        finally:
            conn.close()
