"""
Encrypted single-slot credential storage.
"""
