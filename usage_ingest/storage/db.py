"""
Database connection management.

Provides SQLite connections for the repositories and the explicitly
constructed Database handle that owns the file path and schema lifecycle.
"""

import sqlite3
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Optional

from usage_ingest.core.coercion import ensure_utc
from usage_ingest.errors import InfrastructureError

BUSY_TIMEOUT_SECONDS = 30.0


def get_connection(db_path: str) -> sqlite3.Connection:
    """Create and return a SQLite database connection with foreign keys enabled.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection with foreign key constraints enabled

    Raises:
        InfrastructureError: If the database cannot be opened
    """
    path = Path(db_path)
    try:
        conn = sqlite3.connect(str(path), timeout=BUSY_TIMEOUT_SECONDS)
        conn.execute("PRAGMA foreign_keys = ON")
    except sqlite3.Error as e:
        raise InfrastructureError(f"Cannot open database {db_path}: {e}") from e
    return conn


def to_db_time(moment: datetime) -> str:
    """Fixed-width UTC ISO-8601 text; lexical order matches time order."""
    return ensure_utc(moment).isoformat(timespec="microseconds")


def from_db_time(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return ensure_utc(datetime.fromisoformat(value))


def to_db_date(day: date) -> str:
    return day.isoformat()


def from_db_date(value: str) -> date:
    return date.fromisoformat(value)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Database:
    """Handle to the ingestion database.

    Constructed once at process start, opened before use and closed at
    shutdown. Components receive the handle instead of reaching for a
    module-level connection.
    """

    def __init__(self, path: str):
        self.path = path
        self._open = False

    def open(self) -> "Database":
        """Create the schema if needed and mark the handle usable."""
        from .schema import initialize_schema

        initialize_schema(self.path)
        self._open = True
        return self

    def close(self) -> None:
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    def connect(self) -> sqlite3.Connection:
        """Open a short-lived connection; callers must close it.

        Raises:
            InfrastructureError: If the handle has not been opened
        """
        if not self._open:
            raise InfrastructureError(f"Database {self.path} is not open")
        return get_connection(self.path)

    def __enter__(self) -> "Database":
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
