"""
Usage Ingest.

Incremental, idempotent ingestion of upstream usage exports into a
canonical usage-event ledger.
"""

__version__ = "0.1.0"
