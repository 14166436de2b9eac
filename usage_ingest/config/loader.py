"""
Configuration management and loading.

Handles the YAML settings file and the environment-provided encryption key.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from usage_ingest.errors import ValidationError
from usage_ingest.storage.models import SourceKind

DEFAULT_TARGET_URL = "https://cursor.com/api/dashboard/export-usage-events-csv?strategy=tokens"
ENCRYPTION_KEY_ENV = "SESSION_ENCRYPTION_KEY"
CONFIG_PATH_ENV = "USAGE_INGEST_CONFIG"

_SECTIONS = {
    "database": {"path"},
    "fetch": {"target_url", "timeout_seconds", "source_kind"},
    "retention": {"raw_blobs"},
    "sessions": {"directory"},
    "normalization": {"logic_version"},
}


@dataclass(frozen=True)
class IngestConfig:
    """Validated runtime settings."""
    database_path: str = "usage_ingest.db"
    target_url: str = DEFAULT_TARGET_URL
    fetch_timeout_seconds: float = 30.0
    source_kind: SourceKind = SourceKind.SCRAPED
    retention_count: int = 20
    sessions_directory: str = "sessions"
    logic_version: int = 1

    def __post_init__(self):
        """Validate ranges."""
        if not self.database_path:
            raise ValidationError("database.path must not be empty")
        if not self.target_url:
            raise ValidationError("fetch.target_url must not be empty")
        if self.fetch_timeout_seconds <= 0:
            raise ValidationError("fetch.timeout_seconds must be > 0")
        if self.retention_count < 1:
            raise ValidationError("retention.raw_blobs must be >= 1")
        if not self.sessions_directory:
            raise ValidationError("sessions.directory must not be empty")
        if self.logic_version < 1:
            raise ValidationError("normalization.logic_version must be >= 1")


def load_ingest_config(path: Optional[str] = None) -> IngestConfig:
    """Load and validate settings from a YAML file.

    Strict validation ensures no silent misconfiguration: unknown keys and
    wrongly typed values are rejected.

    Args:
        path: Path to YAML configuration file; None returns the defaults

    Returns:
        Validated IngestConfig

    Raises:
        ValidationError: If the file is missing, not YAML, or invalid
    """
    if path is None:
        return IngestConfig()

    config_path = Path(path)
    if not config_path.exists():
        raise ValidationError(f"Config file not found: {path}")

    with open(config_path, "r", encoding="utf-8") as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ValidationError(f"Invalid YAML in config file {path}: {e}") from e

    if raw_config is None:
        return IngestConfig()
    if not isinstance(raw_config, dict):
        raise ValidationError("Configuration must be a mapping")

    unknown_keys = set(raw_config.keys()) - set(_SECTIONS)
    if unknown_keys:
        raise ValidationError(f"Unknown configuration keys: {sorted(unknown_keys)}")

    sections: Dict[str, Dict[str, Any]] = {}
    for name, allowed in _SECTIONS.items():
        data = raw_config.get(name) or {}
        if not isinstance(data, dict):
            raise ValidationError(f"'{name}' must be a dictionary")
        unknown = set(data.keys()) - allowed
        if unknown:
            raise ValidationError(f"Unknown {name} keys: {sorted(unknown)}")
        sections[name] = data

    defaults = IngestConfig()
    return IngestConfig(
        database_path=_get_str(sections["database"], "path", "database", defaults.database_path),
        target_url=_get_str(sections["fetch"], "target_url", "fetch", defaults.target_url),
        fetch_timeout_seconds=_get_number(
            sections["fetch"], "timeout_seconds", "fetch", defaults.fetch_timeout_seconds
        ),
        source_kind=_get_source_kind(sections["fetch"], defaults.source_kind),
        retention_count=_get_int(sections["retention"], "raw_blobs", "retention", defaults.retention_count),
        sessions_directory=_get_str(sections["sessions"], "directory", "sessions", defaults.sessions_directory),
        logic_version=_get_int(
            sections["normalization"], "logic_version", "normalization", defaults.logic_version
        ),
    )


def load_encryption_key(env: Optional[Mapping[str, str]] = None) -> bytes:
    """Read the 32-byte credential encryption key.

    The key is the hex encoding of 32 bytes in SESSION_ENCRYPTION_KEY.

    Args:
        env: Environment mapping, defaults to os.environ

    Returns:
        Raw key bytes

    Raises:
        ValidationError: If the key is absent or malformed
    """
    environ = os.environ if env is None else env
    value = environ.get(ENCRYPTION_KEY_ENV)
    if not value:
        raise ValidationError(f"{ENCRYPTION_KEY_ENV} is not set")
    try:
        key = bytes.fromhex(value.strip())
    except ValueError as e:
        raise ValidationError(f"{ENCRYPTION_KEY_ENV} must be hex-encoded") from e
    if len(key) != 32:
        raise ValidationError(f"{ENCRYPTION_KEY_ENV} must be 32 bytes (64 hex characters)")
    return key


def _get_str(data: Dict, key: str, section: str, default: str) -> str:
    value = data.get(key, default)
    if not isinstance(value, str):
        raise ValidationError(f"'{section}.{key}' must be a string")
    return value


def _get_int(data: Dict, key: str, section: str, default: int) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"'{section}.{key}' must be an integer")
    return value


def _get_number(data: Dict, key: str, section: str, default: float) -> float:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"'{section}.{key}' must be a number")
    return float(value)


def _get_source_kind(data: Dict, default: SourceKind) -> SourceKind:
    value = data.get("source_kind", default.value)
    if not isinstance(value, str):
        raise ValidationError("'fetch.source_kind' must be a string")
    try:
        return SourceKind(value.lower())
    except ValueError:
        valid = [kind.value for kind in SourceKind]
        raise ValidationError(f"'fetch.source_kind' must be one of: {valid}")
