"""
Field coercion shared by every normalization path.

Both the structured and the scraped normalizers route every cell through
these helpers; parity between the two formats depends on it. None of the
helpers raise on bad input: they fall back to documented defaults.
"""

import calendar
import re
from datetime import date, datetime, time, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Optional, Tuple

_CURRENCY_STRIP = re.compile(r"[^0-9.\-]")
_ACCOUNTING_NEGATIVE = re.compile(r"\(.*\)")
_MONTH_LABEL = re.compile(r"^\s*([A-Za-z]+)\.?\s+(\d{4})\s*$")
_YEAR_MONTH = re.compile(r"^\s*(\d{4})-(\d{1,2})\s*$")

# Storage holds 64-bit signed integers.
INT64_MIN = -(2 ** 63)
INT64_MAX = 2 ** 63 - 1

_MONTH_NAMES = {
    name.lower(): index
    for index, name in enumerate(calendar.month_name)
    if name
}
_MONTH_NAMES.update({
    name.lower(): index
    for index, name in enumerate(calendar.month_abbr)
    if name
})


def is_blank(value: Any) -> bool:
    """True for None and whitespace-only strings."""
    return value is None or (isinstance(value, str) and value.strip() == "")


def parse_int_safe(value: Any) -> int:
    """Parse a token count.

    Commas and whitespace are stripped and decimals truncated toward zero.
    Blank, non-numeric or out-of-range (beyond 64-bit) input yields 0.

    Args:
        value: Raw cell or field value

    Returns:
        Integer count
    """
    if is_blank(value) or isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value if INT64_MIN <= value <= INT64_MAX else 0
    cleaned = str(value).strip().replace(",", "")
    try:
        number = Decimal(cleaned)
    except InvalidOperation:
        return 0
    if not number.is_finite():
        return 0
    count = int(number)
    return count if INT64_MIN <= count <= INT64_MAX else 0


def parse_currency_to_cents(value: Any) -> Optional[int]:
    """Parse a currency amount in dollars to integer cents.

    Examples:
        "$1,234.56" -> 123456
        "(1.50)"    -> -150
        "0.005"     -> 1 (half-up rounding)

    Args:
        value: Raw cell or field value

    Returns:
        Cents, 0 for blank input, or None when the value is not a number or
        does not fit in 64 bits
    """
    if is_blank(value):
        return 0
    if isinstance(value, bool):
        return None
    raw = str(value).strip()
    accounting_negative = bool(_ACCOUNTING_NEGATIVE.search(raw))
    cleaned = _CURRENCY_STRIP.sub("", raw)
    if cleaned in ("", "-", ".", "-."):
        return None
    try:
        amount = Decimal(cleaned)
    except InvalidOperation:
        return None
    if not amount.is_finite():
        return None
    cents = int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    if accounting_negative and cents > 0:
        cents = -cents
    if not INT64_MIN <= cents <= INT64_MAX:
        return None
    return cents


def coerce_cost(value: Any) -> Tuple[int, Optional[str]]:
    """Coerce a cost field to (cents, raw fallback).

    The raw fallback keeps the original text only when it could not be
    parsed; otherwise it is None.
    """
    cents = parse_currency_to_cents(value)
    if cents is None:
        return 0, str(value).strip()
    return cents, None


def coerce_text(value: Any) -> Optional[str]:
    """Stripped string, or None for blank input."""
    if is_blank(value):
        return None
    return str(value).strip()


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 date or timestamp into an aware UTC datetime.

    Date-only input maps to UTC midnight; naive timestamps are taken as UTC.

    Returns:
        The timestamp, or None if it cannot be parsed
    """
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    if is_blank(value) or not isinstance(value, str):
        return None
    text = value.strip()
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    return ensure_utc(parsed)


def ensure_utc(moment: datetime) -> datetime:
    """Convert to UTC, treating naive datetimes as already UTC."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def month_bounds(moment: date) -> Tuple[date, date]:
    """First and last calendar day of the month containing moment."""
    last_day = calendar.monthrange(moment.year, moment.month)[1]
    return date(moment.year, moment.month, 1), date(moment.year, moment.month, last_day)


def parse_billing_label(label: Any) -> Optional[Tuple[date, date]]:
    """Parse a billing-period label into UTC calendar-month bounds.

    Accepted labels: a mapping with a "start" entry, "YYYY-MM",
    "YYYY-MM-DD" (or a full timestamp) and "February 2025" / "Feb 2025".

    Returns:
        (start, end) dates of the month, or None when unparseable
    """
    if isinstance(label, dict):
        return parse_billing_label(label.get("start"))
    if isinstance(label, (date, datetime)):
        moment = parse_timestamp(label)
        return month_bounds(moment.date()) if moment else None
    if is_blank(label) or not isinstance(label, str):
        return None

    match = _YEAR_MONTH.match(label)
    if match:
        year, month = int(match.group(1)), int(match.group(2))
        if 1 <= month <= 12:
            return month_bounds(date(year, month, 1))
        return None

    match = _MONTH_LABEL.match(label)
    if match:
        month = _MONTH_NAMES.get(match.group(1).lower())
        if month is None:
            return None
        return month_bounds(date(int(match.group(2)), month, 1))

    moment = parse_timestamp(label)
    if moment is None:
        return None
    return month_bounds(moment.date())
