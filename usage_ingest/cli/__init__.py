"""
Command-line interface for Usage Ingest.
"""
