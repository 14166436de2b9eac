"""
Core modules for Usage Ingest.

This package contains the pure pipeline logic (hashing, coercion,
normalization, delta computation) and the run orchestrator.
"""
