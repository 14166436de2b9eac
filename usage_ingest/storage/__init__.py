"""
Storage layer for Usage Ingest.

SQLite-backed repositories for raw blobs, ingestion runs and usage events.
"""
