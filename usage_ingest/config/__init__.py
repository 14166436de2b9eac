"""
Configuration loading for Usage Ingest.
"""
