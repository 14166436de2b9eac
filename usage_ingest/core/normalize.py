"""
Normalization of raw usage exports into canonical usage events.

Two export formats reach the pipeline:

1. Structured payloads - JSON with machine-readable row fields
2. Scraped tables - the dashboard's CSV export, every cell a string

Both are first mapped onto the same canonical field names and then pass
through one shared builder, so equivalent input always yields identical
events (parity) and identical row hashes.
"""

import csv
import io
import json
from datetime import date, datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from usage_ingest.errors import NormalizationError
from usage_ingest.storage.models import SourceKind, UsageEvent

from .coercion import (
    coerce_cost,
    coerce_text,
    ensure_utc,
    is_blank,
    month_bounds,
    parse_billing_label,
    parse_int_safe,
    parse_timestamp,
)
from .hashing import stable_hash

DEFAULT_LOGIC_VERSION = 1

TOKEN_FIELDS = (
    "input_with_cache_write_tokens",
    "input_without_cache_write_tokens",
    "cache_read_tokens",
    "output_tokens",
)

# Dashboard CSV headers per canonical field; first header present wins.
SCRAPED_COLUMNS: Dict[str, Tuple[str, ...]] = {
    "occurred_at": ("Date",),
    "kind": ("Kind",),
    "model": ("Model",),
    "max_mode": ("Max Mode",),
    "input_with_cache_write_tokens": ("Input (w/ Cache Write)",),
    "input_without_cache_write_tokens": ("Input (w/o Cache Write)",),
    "cache_read_tokens": ("Cache Read",),
    "output_tokens": ("Output Tokens",),
    "total_tokens": ("Total Tokens",),
    "api_cost": ("Cost", "API Cost", "Api Cost", "cost"),
    "cost_to_you": ("Cost to you", "cost_to_you", "Cost to you (you)"),
}

STRUCTURED_DATE_KEYS = ("date", "timestamp", "occurred_at")

RawPayload = Union[bytes, Mapping[str, Any], Sequence[Any]]


def parse_structured_payload(raw: bytes) -> Any:
    """Decode a structured (JSON) export.

    Raises:
        NormalizationError: If the bytes are not valid UTF-8 JSON
    """
    try:
        return json.loads(raw.decode("utf-8-sig"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise NormalizationError(f"Structured payload is not valid JSON: {e}") from e


def parse_scraped_table(raw: bytes) -> List[Dict[str, str]]:
    """Decode a scraped CSV table into rows of trimmed string cells.

    The first line is the header. Blank lines and rows with only empty
    cells are skipped.

    Raises:
        NormalizationError: If the bytes are not decodable CSV
    """
    try:
        text = raw.decode("utf-8-sig")
    except UnicodeDecodeError as e:
        raise NormalizationError(f"Scraped table is not valid UTF-8: {e}") from e

    rows = []
    try:
        reader = csv.DictReader(io.StringIO(text), skipinitialspace=True)
        for record in reader:
            cells = {
                (key or "").strip(): (value.strip() if isinstance(value, str) else "")
                for key, value in record.items()
                if key is not None
            }
            if any(cells.values()):
                rows.append(cells)
    except csv.Error as e:
        raise NormalizationError(f"Scraped table is not valid CSV: {e}") from e
    return rows


def normalize(
    raw_payload: RawPayload,
    captured_at: datetime,
    raw_blob_id: Optional[str],
    kind: SourceKind,
    logic_version: int = DEFAULT_LOGIC_VERSION,
) -> List[UsageEvent]:
    """Normalize a raw export of either format.

    Args:
        raw_payload: Fetched bytes, or an already-decoded payload
        captured_at: Capture timestamp of the run
        raw_blob_id: Blob the payload is stored as
        kind: Export format
        logic_version: Normalization logic version stamped on events

    Returns:
        Events in input row order

    Raises:
        NormalizationError: If the payload is not structurally a row sequence
    """
    if kind == SourceKind.STRUCTURED:
        payload = parse_structured_payload(raw_payload) if isinstance(raw_payload, bytes) else raw_payload
        return normalize_structured(payload, captured_at, raw_blob_id, logic_version)
    rows = parse_scraped_table(raw_payload) if isinstance(raw_payload, bytes) else raw_payload
    return normalize_scraped(rows, captured_at, raw_blob_id, logic_version)


def normalize_structured(
    payload: Any,
    captured_at: datetime,
    raw_blob_id: Optional[str] = None,
    logic_version: int = DEFAULT_LOGIC_VERSION,
) -> List[UsageEvent]:
    """Normalize a structured payload.

    The payload is either {"rows": [...], "billing_period": ...} or a bare
    list of row objects.
    """
    if isinstance(payload, Mapping):
        rows = payload.get("rows")
        billing_label = payload.get("billing_period")
    else:
        rows = payload
        billing_label = None
    _require_row_sequence(rows)

    billing_period = parse_billing_label(billing_label)
    events = []
    for index, row in enumerate(rows):
        if not isinstance(row, Mapping):
            raise NormalizationError(f"Row {index} is not an object", details={"row": index})
        fields = {name: row.get(name) for name in SCRAPED_COLUMNS if name != "occurred_at"}
        fields["occurred_at"] = _first_present(row, STRUCTURED_DATE_KEYS)
        events.append(_build_event(
            fields, captured_at, billing_period, SourceKind.STRUCTURED, raw_blob_id, logic_version
        ))
    return events


def normalize_scraped(
    rows: Any,
    captured_at: datetime,
    raw_blob_id: Optional[str] = None,
    logic_version: int = DEFAULT_LOGIC_VERSION,
) -> List[UsageEvent]:
    """Normalize scraped table rows keyed by dashboard column headers."""
    _require_row_sequence(rows)

    events = []
    for index, row in enumerate(rows):
        if not isinstance(row, Mapping):
            raise NormalizationError(f"Row {index} is not an object", details={"row": index})
        fields = {
            name: _first_present(row, headers)
            for name, headers in SCRAPED_COLUMNS.items()
        }
        events.append(_build_event(
            fields, captured_at, None, SourceKind.SCRAPED, raw_blob_id, logic_version
        ))
    return events


def compute_row_hash(
    model: str,
    billing_period_start: date,
    billing_period_end: date,
    token_counts: Mapping[str, int],
    api_cost_cents: int,
    cost_to_you_cents: int,
    captured_at: datetime,
) -> str:
    """Stable identity of a logical usage row.

    Covers the business fields only and the UTC capture day, so the same
    row captured twice on one day, or through either export format, hashes
    identically.
    """
    return stable_hash({
        "model": model,
        "billing_period_start": billing_period_start.isoformat(),
        "billing_period_end": billing_period_end.isoformat(),
        "input_with_cache_write_tokens": token_counts["input_with_cache_write_tokens"],
        "input_without_cache_write_tokens": token_counts["input_without_cache_write_tokens"],
        "cache_read_tokens": token_counts["cache_read_tokens"],
        "output_tokens": token_counts["output_tokens"],
        "total_tokens": token_counts["total_tokens"],
        "api_cost_cents": api_cost_cents,
        "cost_to_you_cents": cost_to_you_cents,
        "captured_day": ensure_utc(captured_at).date().isoformat(),
    })


def build_table_hash(events: Sequence[UsageEvent]) -> Dict[str, Any]:
    """Order-independent hash of a whole normalized export.

    Returns:
        Mapping with table_hash, billing period bounds and row count
    """
    ordered = sorted(events, key=lambda e: (e.model, e.total_tokens, e.api_cost_cents, e.row_hash))
    first = ordered[0] if ordered else None
    start = first.billing_period_start.isoformat() if first else None
    end = first.billing_period_end.isoformat() if first else None
    view = {
        "billing_period": {"start": start, "end": end},
        "rows": [
            {
                "model": e.model,
                "kind": e.kind,
                "max_mode": e.max_mode,
                **{name: getattr(e, name) for name in TOKEN_FIELDS},
                "total_tokens": e.total_tokens,
                "api_cost_cents": e.api_cost_cents,
                "api_cost_raw": e.api_cost_raw,
                "cost_to_you_cents": e.cost_to_you_cents,
                "cost_to_you_raw": e.cost_to_you_raw,
            }
            for e in ordered
        ],
    }
    return {
        "table_hash": stable_hash(view),
        "billing_period_start": start,
        "billing_period_end": end,
        "row_count": len(events),
    }


def _require_row_sequence(rows: Any) -> None:
    if isinstance(rows, (str, bytes, Mapping)) or not isinstance(rows, Sequence):
        raise NormalizationError(
            "Payload is not a sequence of rows",
            details={"type": type(rows).__name__},
        )


def _first_present(row: Mapping[str, Any], keys: Sequence[str]) -> Any:
    for key in keys:
        if key in row:
            return row[key]
    return None


def _build_event(
    fields: Mapping[str, Any],
    run_captured_at: datetime,
    billing_period: Optional[Tuple[date, date]],
    source: SourceKind,
    raw_blob_id: Optional[str],
    logic_version: int,
) -> UsageEvent:
    # Every event carries the run capture time; the watermark and the
    # capture-day identity both depend on it.
    captured_at = ensure_utc(run_captured_at)
    occurred_at = parse_timestamp(fields.get("occurred_at"))
    if billing_period is None:
        billing_period = month_bounds((occurred_at or captured_at).date())

    tokens = {name: parse_int_safe(fields.get(name)) for name in TOKEN_FIELDS}
    raw_total = fields.get("total_tokens")
    tokens["total_tokens"] = parse_int_safe(sum(tokens.values()) if is_blank(raw_total) else raw_total)

    api_cost_cents, api_cost_raw = coerce_cost(fields.get("api_cost"))
    cost_to_you_cents, cost_to_you_raw = coerce_cost(fields.get("cost_to_you"))
    model = coerce_text(fields.get("model")) or ""

    return UsageEvent(
        row_hash=compute_row_hash(
            model,
            billing_period[0],
            billing_period[1],
            tokens,
            api_cost_cents,
            cost_to_you_cents,
            captured_at,
        ),
        captured_at=captured_at,
        model=model,
        kind=coerce_text(fields.get("kind")),
        max_mode=coerce_text(fields.get("max_mode")),
        input_with_cache_write_tokens=tokens["input_with_cache_write_tokens"],
        input_without_cache_write_tokens=tokens["input_without_cache_write_tokens"],
        cache_read_tokens=tokens["cache_read_tokens"],
        output_tokens=tokens["output_tokens"],
        total_tokens=tokens["total_tokens"],
        api_cost_cents=api_cost_cents,
        api_cost_raw=api_cost_raw,
        cost_to_you_cents=cost_to_you_cents,
        cost_to_you_raw=cost_to_you_raw,
        billing_period_start=billing_period[0],
        billing_period_end=billing_period[1],
        source=source,
        raw_blob_id=raw_blob_id,
        occurred_at=occurred_at,
        logic_version=logic_version,
    )
