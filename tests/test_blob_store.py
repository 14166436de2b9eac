"""
Unit tests for the content-addressed blob store.

Covers dedup by content hash, per-kind retention and concurrent saves.
"""

import gzip
import hashlib
import sqlite3
import threading
from unittest.mock import patch

import pytest

from conftest import utc
from usage_ingest.storage.blob_store import BlobStore
from usage_ingest.storage.models import BlobSaveStatus, SourceKind

CSV = b"Date,Model,Cost\n2025-02-10,gpt-5,$1.00\n"


class TestSaveIfNew:
    """Test dedup by content hash."""

    def test_first_save_stores_blob(self, database):
        store = BlobStore(database)

        result = store.save_if_new(CSV, SourceKind.SCRAPED, utc(2025, 2, 10), 5, source_url="https://x/export")

        assert result.status == BlobSaveStatus.SAVED
        assert result.saved
        assert result.content_hash == hashlib.sha256(CSV).hexdigest()
        blob = store.find_by_hash(result.content_hash)
        assert blob.id == result.blob_id
        assert blob.kind == SourceKind.SCRAPED
        assert blob.size_bytes == len(CSV)
        assert blob.content_type == "text/csv"
        assert blob.schema_version == "v1"
        assert blob.metadata["provenance"]["url"] == "https://x/export"
        assert blob.metadata["provenance"]["size_bytes"] == len(CSV)

    def test_identical_bytes_are_duplicate(self, database):
        store = BlobStore(database)

        first = store.save_if_new(CSV, SourceKind.SCRAPED, utc(2025, 2, 10), 5)
        second = store.save_if_new(CSV, SourceKind.SCRAPED, utc(2025, 2, 11), 5)

        assert second.status == BlobSaveStatus.DUPLICATE
        assert not second.saved
        assert second.blob_id == first.blob_id
        assert second.content_hash == first.content_hash
        assert len(store.list_blobs()) == 1

    def test_one_byte_difference_is_new(self, database):
        store = BlobStore(database)

        store.save_if_new(CSV, SourceKind.SCRAPED, utc(2025, 2, 10), 5)
        result = store.save_if_new(CSV + b"\n", SourceKind.SCRAPED, utc(2025, 2, 10), 5)

        assert result.saved
        assert len(store.list_blobs()) == 2

    def test_payload_round_trips_through_gzip(self, database):
        store = BlobStore(database)
        result = store.save_if_new(CSV, SourceKind.SCRAPED, utc(2025, 2, 10), 5)

        assert store.get_payload(result.blob_id) == CSV

        conn = database.connect()
        try:
            stored = conn.execute("SELECT payload FROM raw_blobs").fetchone()[0]
        finally:
            conn.close()
        assert gzip.decompress(stored) == CSV

    def test_unknown_blob_payload_is_none(self, database):
        assert BlobStore(database).get_payload("missing") is None

    @pytest.mark.parametrize("retention", [0, -1])
    def test_retention_below_one_rejected(self, database, retention):
        with pytest.raises(ValueError):
            BlobStore(database).save_if_new(CSV, SourceKind.SCRAPED, utc(2025, 2, 10), retention)


class TestRetention:
    """Test eviction beyond the retention count."""

    def test_keeps_newest_blobs(self, database):
        store = BlobStore(database)
        saved = [
            store.save_if_new(f"payload-{day}".encode(), SourceKind.SCRAPED, utc(2025, 2, day), 3)
            for day in range(1, 6)
        ]

        remaining = store.list_blobs(SourceKind.SCRAPED)

        assert [b.id for b in remaining] == [saved[4].blob_id, saved[3].blob_id, saved[2].blob_id]

    def test_eviction_is_per_kind(self, database):
        store = BlobStore(database)
        structured = store.save_if_new(b'{"rows": []}', SourceKind.STRUCTURED, utc(2025, 1, 1), 1)
        for day in range(1, 4):
            store.save_if_new(f"csv-{day}".encode(), SourceKind.SCRAPED, utc(2025, 2, day), 1)

        assert [b.id for b in store.list_blobs(SourceKind.STRUCTURED)] == [structured.blob_id]
        assert len(store.list_blobs(SourceKind.SCRAPED)) == 1

    def test_evict_returns_deleted_count(self, database):
        store = BlobStore(database)
        for day in range(1, 5):
            store.save_if_new(f"csv-{day}".encode(), SourceKind.SCRAPED, utc(2025, 2, day), 10)

        assert store.evict(SourceKind.SCRAPED, 2) == 2
        assert store.evict(SourceKind.SCRAPED, 2) == 0

    def test_eviction_failure_does_not_fail_save(self, database):
        store = BlobStore(database)
        with patch.object(BlobStore, "evict", side_effect=sqlite3.OperationalError("locked")):
            result = store.save_if_new(CSV, SourceKind.SCRAPED, utc(2025, 2, 10), 1)

        assert result.saved
        assert store.find_by_hash(result.content_hash) is not None


class TestConcurrentSaves:
    """Test that overlapping saves of the same bytes keep one row."""

    def test_parallel_identical_saves(self, database):
        store = BlobStore(database)
        barrier = threading.Barrier(6)
        results = []
        errors = []

        def save():
            barrier.wait()
            try:
                results.append(store.save_if_new(CSV, SourceKind.SCRAPED, utc(2025, 2, 10), 5))
            except Exception as e:  # surfaced by the assertion below
                errors.append(e)

        threads = [threading.Thread(target=save) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert sum(1 for r in results if r.saved) == 1
        assert len({r.blob_id for r in results}) == 1
        assert len(store.list_blobs()) == 1
