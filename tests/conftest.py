"""
Shared fixtures.
"""

from datetime import date, datetime, timezone

import pytest

from usage_ingest.storage.db import Database
from usage_ingest.storage.models import SourceKind, UsageEvent

TEST_KEY_HEX = "00112233445566778899aabbccddeeff00112233445566778899aabbccddeeff"


@pytest.fixture
def database(tmp_path):
    """Opened database in a temporary directory."""
    db = Database(str(tmp_path / "ingest.db")).open()
    yield db
    db.close()


@pytest.fixture
def encryption_key(monkeypatch):
    """Install a valid SESSION_ENCRYPTION_KEY and return its bytes."""
    monkeypatch.setenv("SESSION_ENCRYPTION_KEY", TEST_KEY_HEX)
    return bytes.fromhex(TEST_KEY_HEX)


def make_event(row_hash: str, captured_at: datetime, model: str = "gpt-5", **overrides) -> UsageEvent:
    fields = dict(
        row_hash=row_hash,
        captured_at=captured_at,
        model=model,
        input_with_cache_write_tokens=100,
        input_without_cache_write_tokens=20,
        cache_read_tokens=300,
        output_tokens=40,
        total_tokens=460,
        api_cost_cents=12,
        cost_to_you_cents=0,
        billing_period_start=date(2025, 2, 1),
        billing_period_end=date(2025, 2, 28),
        source=SourceKind.SCRAPED,
    )
    fields.update(overrides)
    return UsageEvent(**fields)


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)
