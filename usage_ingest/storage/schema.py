"""
Database schema.

Uniqueness constraints on raw_blobs.content_hash and usage_event.row_hash
are what make blob dedup and event upserts safe under overlapping runs.
"""

from .db import get_connection

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS raw_blobs (
        id TEXT PRIMARY KEY,
        captured_at TEXT NOT NULL,
        kind TEXT NOT NULL CHECK (kind IN ('structured', 'scraped')),
        source_url TEXT,
        payload BLOB NOT NULL,
        content_hash TEXT NOT NULL UNIQUE,
        content_type TEXT,
        schema_version TEXT,
        size_bytes INTEGER NOT NULL,
        metadata TEXT NOT NULL DEFAULT '{}'
    )
    """,
    "CREATE INDEX IF NOT EXISTS raw_blobs_kind_captured_at_idx ON raw_blobs (kind, captured_at)",
    """
    CREATE TABLE IF NOT EXISTS ingestion (
        id TEXT PRIMARY KEY,
        source TEXT NOT NULL,
        ingested_at TEXT NOT NULL,
        content_hash TEXT,
        status TEXT NOT NULL CHECK (status IN ('in_progress', 'completed', 'failed')),
        raw_blob_id TEXT REFERENCES raw_blobs (id) ON DELETE SET NULL,
        metadata TEXT NOT NULL DEFAULT '{}',
        finished_at TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS ingestion_ingested_at_idx ON ingestion (ingested_at)",
    "CREATE INDEX IF NOT EXISTS ingestion_content_hash_idx ON ingestion (content_hash)",
    """
    CREATE TABLE IF NOT EXISTS usage_event (
        row_hash TEXT PRIMARY KEY,
        captured_at TEXT NOT NULL,
        kind TEXT,
        model TEXT NOT NULL,
        max_mode TEXT,
        input_with_cache_write_tokens INTEGER NOT NULL,
        input_without_cache_write_tokens INTEGER NOT NULL,
        cache_read_tokens INTEGER NOT NULL,
        output_tokens INTEGER NOT NULL,
        total_tokens INTEGER NOT NULL,
        api_cost_cents INTEGER NOT NULL,
        api_cost_raw TEXT,
        cost_to_you_cents INTEGER NOT NULL,
        cost_to_you_raw TEXT,
        billing_period_start TEXT NOT NULL,
        billing_period_end TEXT NOT NULL,
        source TEXT NOT NULL CHECK (source IN ('structured', 'scraped')),
        raw_blob_id TEXT,
        occurred_at TEXT,
        first_seen_at TEXT NOT NULL,
        last_seen_at TEXT NOT NULL,
        logic_version INTEGER NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS usage_event_captured_at_idx ON usage_event (captured_at)",
    """
    CREATE TABLE IF NOT EXISTS event_ingestion (
        row_hash TEXT NOT NULL REFERENCES usage_event (row_hash) ON DELETE RESTRICT,
        ingestion_id TEXT NOT NULL REFERENCES ingestion (id) ON DELETE RESTRICT,
        PRIMARY KEY (row_hash, ingestion_id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS event_ingestion_ingestion_id_idx ON event_ingestion (ingestion_id)",
)


def initialize_schema(db_path: str) -> None:
    """Create all tables and indexes if they don't exist.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        for statement in SCHEMA_STATEMENTS:
            conn.execute(statement)
        conn.commit()
    finally:
        conn.close()
