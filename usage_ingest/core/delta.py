"""
Incremental delta against the persisted watermark.
"""

from datetime import datetime
from typing import List, Optional, Sequence

from usage_ingest.storage.models import UsageEvent

from .coercion import ensure_utc


def compute_delta(
    events: Sequence[UsageEvent],
    latest_captured_at: Optional[datetime],
) -> List[UsageEvent]:
    """Select events newer than the watermark.

    Without a watermark every event is new and a fresh list is returned.
    Events captured exactly at the watermark were already seen and are
    excluded.

    Args:
        events: Normalized events in input order
        latest_captured_at: Latest persisted capture timestamp, if any

    Returns:
        New list of events, input order preserved
    """
    if latest_captured_at is None:
        return list(events)
    watermark = ensure_utc(latest_captured_at)
    return [event for event in events if ensure_utc(event.captured_at) > watermark]
