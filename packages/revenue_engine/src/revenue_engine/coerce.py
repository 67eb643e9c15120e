"""Defensive scalar coercion shared by every normalizer.

Raw table cells arrive as whatever the upstream export produced: strings,
floats, NaN, pandas Timestamps, unix epochs. Everything here returns a safe
default instead of raising.
"""

from __future__ import annotations

import math
import re
from datetime import date, datetime, timezone
from typing import Any

import pandas as pd

_NUMERIC_JUNK = re.compile(r"[^0-9.\-]")
_EMAIL_ALIAS = re.compile(r"\+[^@]*(?=@)")
_TRUTHY = {"true", "1", "yes", "y"}

EXCEL_EPOCH = datetime(1899, 12, 30)
EXCEL_SERIAL_MIN = 20000
EXCEL_SERIAL_MAX = 80000


def is_blank(value: Any) -> bool:
    """True for None, NaN/NaT and whitespace-only strings."""
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    try:
        return bool(pd.isna(value))
    except (TypeError, ValueError):
        return False


def to_str(value: Any) -> str:
    if is_blank(value):
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def to_num(value: Any) -> float:
    """Parse a number, stripping currency symbols and separators. Falls back to 0."""
    if is_blank(value):
        return 0.0
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        n = float(value)
    else:
        cleaned = _NUMERIC_JUNK.sub("", str(value)).strip()
        try:
            n = float(cleaned)
        except ValueError:
            return 0.0
    return n if math.isfinite(n) else 0.0


def to_money(value: Any) -> float:
    """Money in display units (not cents), rounded to 2 dp."""
    return round(to_num(value), 2)


def to_int(value: Any) -> int:
    """Non-negative whole number (floors fractions)."""
    return max(0, int(math.floor(to_num(value))))


def to_bool(value: Any) -> bool:
    if value is True:
        return True
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value == 1
    return to_str(value).lower() in _TRUTHY


def to_datetime(value: Any) -> datetime | None:
    """Parse a timestamp into an aware UTC datetime, or None.

    Numbers between 20000 and 80000 are Excel serial dates (1954..2119).
    Other digits-only values are unix epochs (seconds, or millis above 1e12).
    """
    if is_blank(value):
        return None
    if isinstance(value, datetime):
        ts = pd.Timestamp(value)
    elif isinstance(value, date):
        ts = pd.Timestamp(datetime(value.year, value.month, value.day))
    else:
        s = str(value).strip()
        if isinstance(value, (int, float)) or s.isdigit():
            n = to_num(value)
            if n <= 0:
                return None
            if EXCEL_SERIAL_MIN <= n <= EXCEL_SERIAL_MAX:
                ts = pd.Timestamp(EXCEL_EPOCH) + pd.to_timedelta(n, unit="D")
            else:
                unit = "ms" if n > 1e12 else "s"
                ts = pd.to_datetime(n, unit=unit, errors="coerce", utc=True)
        else:
            ts = pd.to_datetime(s, errors="coerce", utc=True)
    if ts is None or pd.isna(ts):
        return None
    if ts.tzinfo is None:
        ts = ts.tz_localize(timezone.utc)
    else:
        ts = ts.tz_convert(timezone.utc)
    return ts.to_pydatetime()


def to_date(value: Any) -> date | None:
    dt = to_datetime(value)
    return dt.date() if dt else None


def normalize_email(value: Any) -> str:
    """Join key for emails: lower-cased, trimmed, ``+alias`` stripped.

    ``User+Test@Example.com`` and ``user@example.com`` map to the same key.
    """
    s = to_str(value).lower()
    if not s:
        return ""
    return _EMAIL_ALIAS.sub("", s)


def month_key(value: date | datetime | None) -> str:
    """``YYYY-MM`` for a date, or empty string."""
    if value is None:
        return ""
    return f"{value.year:04d}-{value.month:02d}"


def parse_month_key(key: str) -> tuple[int, int] | None:
    m = re.match(r"^(\d{4})-(\d{1,2})", str(key or "").strip())
    if not m:
        return None
    year, month = int(m.group(1)), int(m.group(2))
    if not 1 <= month <= 12:
        return None
    return year, month


def shift_month_key(key: str, months: int) -> str:
    parsed = parse_month_key(key)
    if parsed is None:
        return ""
    year, month = parsed
    index = year * 12 + (month - 1) + months
    return f"{index // 12:04d}-{index % 12 + 1:02d}"


def month_diff(start_key: str, end_key: str) -> int:
    a = parse_month_key(start_key)
    b = parse_month_key(end_key)
    if a is None or b is None:
        return 0
    return (b[0] - a[0]) * 12 + (b[1] - a[1])


def month_range(start_key: str, end_key: str) -> list[str]:
    """Inclusive list of month keys from start to end."""
    span = month_diff(start_key, end_key)
    if parse_month_key(start_key) is None or span < 0:
        return []
    return [shift_month_key(start_key, i) for i in range(span + 1)]
