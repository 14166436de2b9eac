"""
Content-addressed raw blob storage.

Fetched payloads are deduplicated by the SHA-256 of their exact bytes and
kept gzip-compressed. Each successful save trims older blobs of the same
kind down to the configured retention count.
"""

import gzip
import json
import sqlite3
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from usage_ingest.core.hashing import sha256_hex
from usage_ingest.errors import InfrastructureError
from usage_ingest.logging_config import get_logger

from .db import Database, from_db_time, to_db_time
from .models import BlobSaveResult, BlobSaveStatus, RawBlob, SourceKind

logger = get_logger(__name__)

SCHEMA_VERSION = "v1"

_DEFAULT_CONTENT_TYPES = {
    SourceKind.STRUCTURED: "application/json",
    SourceKind.SCRAPED: "text/csv",
}


class BlobStore:
    """Repository owning the raw_blobs table."""

    def __init__(self, database: Database):
        self.database = database

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
        """Store payload unless a blob with the same content hash exists.

        Dedup relies on the UNIQUE constraint on content_hash, so two runs
        saving identical bytes at the same time end with one row; the loser
        observes a duplicate.

        Args:
            payload: Exact fetched bytes
            kind: Raw export format
            captured_at: Capture timestamp of the fetch
            retention_count: Number of blobs of this kind to keep
            source_url: URL the payload was fetched from
            content_type: MIME type reported by the fetch
            metadata: Extra metadata merged next to the provenance block

        Returns:
            BlobSaveResult with status saved or duplicate

        Raises:
            ValueError: If retention_count < 1
            InfrastructureError: If the blob cannot be written
        """
        if retention_count < 1:
            raise ValueError("retention_count must be >= 1")

        content_hash = sha256_hex(payload)
        blob_id = str(uuid.uuid4())
        blob_metadata = {
            "provenance": {
                "method": "http_csv" if kind == SourceKind.SCRAPED else "http_json",
                "url": source_url,
                "fetched_at": to_db_time(captured_at),
                "size_bytes": len(payload),
            },
            **(metadata or {}),
        }

        conn = self.database.connect()
        try:
            try:
                conn.execute(
                    """
                    INSERT INTO raw_blobs
                    (id, captured_at, kind, source_url, payload, content_hash,
                     content_type, schema_version, size_bytes, metadata)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        blob_id,
                        to_db_time(captured_at),
                        kind.value,
                        source_url,
                        gzip.compress(payload),
                        content_hash,
                        content_type or _DEFAULT_CONTENT_TYPES[kind],
                        SCHEMA_VERSION,
                        len(payload),
                        json.dumps(blob_metadata, sort_keys=True),
                    ),
                )
                conn.commit()
            except sqlite3.IntegrityError:
                conn.rollback()
                row = conn.execute(
                    "SELECT id FROM raw_blobs WHERE content_hash = ?", (content_hash,)
                ).fetchone()
                if row is None:
                    raise
                logger.info("blob.duplicate", blob_id=row[0], content_hash=content_hash)
                return BlobSaveResult(BlobSaveStatus.DUPLICATE, row[0], content_hash)
        except sqlite3.Error as e:
            raise InfrastructureError(f"Failed to persist raw blob: {e}") from e
        finally:
            conn.close()

        logger.info(
            "blob.saved",
            blob_id=blob_id,
            content_hash=content_hash,
            kind=kind.value,
            size_bytes=len(payload),
        )

        try:
            self.evict(kind, retention_count)
        except (sqlite3.Error, InfrastructureError) as e:
            logger.warning("blob.evict_failed", kind=kind.value, error=str(e))

        return BlobSaveResult(BlobSaveStatus.SAVED, blob_id, content_hash)

    def evict(self, kind: SourceKind, retention_count: int) -> int:
        """Delete blobs of a kind beyond the newest retention_count.

        Returns:
            Number of blobs deleted
        """
        conn = self.database.connect()
        try:
            cursor = conn.execute(
                """
                DELETE FROM raw_blobs
                WHERE kind = ? AND id NOT IN (
                    SELECT id FROM raw_blobs
                    WHERE kind = ?
                    ORDER BY captured_at DESC, id DESC
                    LIMIT ?
                )
                """,
                (kind.value, kind.value, retention_count),
            )
            conn.commit()
            deleted = cursor.rowcount
        finally:
            conn.close()

        if deleted:
            logger.info("blob.evicted", kind=kind.value, deleted=deleted, retained=retention_count)
        return deleted

    def get_payload(self, blob_id: str) -> Optional[bytes]:
        """Return the original (decompressed) bytes of a blob, or None."""
        conn = self.database.connect()
        try:
            row = conn.execute("SELECT payload FROM raw_blobs WHERE id = ?", (blob_id,)).fetchone()
        finally:
            conn.close()
        if row is None:
            return None
        return gzip.decompress(row[0])

    def find_by_hash(self, content_hash: str) -> Optional[RawBlob]:
        blobs = self._select("WHERE content_hash = ?", (content_hash,))
        return blobs[0] if blobs else None

    def list_blobs(self, kind: Optional[SourceKind] = None) -> List[RawBlob]:
        """List blob metadata, newest capture first."""
        if kind is None:
            return self._select("ORDER BY captured_at DESC, id DESC", ())
        return self._select("WHERE kind = ? ORDER BY captured_at DESC, id DESC", (kind.value,))

    def _select(self, clause: str, params: tuple) -> List[RawBlob]:
        conn = self.database.connect()
        try:
            cursor = conn.execute(
                """
                SELECT id, captured_at, kind, content_hash, size_bytes, source_url,
                       content_type, schema_version, metadata
                FROM raw_blobs
                """ + clause,
                params,
            )
            return [
                RawBlob(
                    id=row[0],
                    captured_at=from_db_time(row[1]),
                    kind=SourceKind(row[2]),
                    content_hash=row[3],
                    size_bytes=row[4],
                    source_url=row[5],
                    content_type=row[6],
                    schema_version=row[7],
                    metadata=json.loads(row[8]),
                )
                for row in cursor.fetchall()
            ]
        finally:
            conn.close()
