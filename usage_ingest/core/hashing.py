"""
Content and canonical hashing.

Raw payloads are addressed by the SHA-256 of their exact bytes; structured
values are hashed through a canonical JSON encoding so equal values always
produce equal digests.
"""

import hashlib
import json
from typing import Any


def sha256_hex(data: bytes) -> str:
    """Hex-encoded SHA-256 digest of raw bytes."""
    return hashlib.sha256(data).hexdigest()


def canonical_json(value: Any) -> str:
    """Encode a JSON-like value with sorted keys and compact separators."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def stable_hash(value: Any) -> str:
    """SHA-256 hex digest of the canonical JSON encoding of value."""
    return sha256_hex(canonical_json(value).encode("utf-8"))
