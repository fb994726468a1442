from __future__ import annotations

import calendar
import re
from datetime import date, datetime, timezone
from typing import Optional, Tuple

_PERIOD_RE = re.compile(r"^(\d{4})-?(\d{2})$")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    """
    Serialize an aware datetime as ISO-8601 UTC with seconds precision.
    """
    return value.astimezone(timezone.utc).isoformat(timespec="seconds")


def from_iso(value: str) -> datetime:
    """
    Parse an ISO-8601 timestamp; naive values are taken as UTC.
    """
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_period(value: str) -> Tuple[int, int]:
    """
    Parse a billing period given as YYYYMM or YYYY-MM into (year, month).
    """
    m = _PERIOD_RE.match((value or "").strip())
    if not m:
        raise ValueError(f"Invalid billing period (expected YYYYMM): {value!r}")
    year, month = int(m.group(1)), int(m.group(2))
    if not 1 <= month <= 12:
        raise ValueError(f"Invalid month in billing period: {value!r}")
    return year, month


def format_period(year: int, month: int) -> str:
    return f"{year:04d}-{month:02d}"


def current_period(now: Optional[datetime] = None) -> str:
    now = now or utc_now()
    return format_period(now.year, now.month)


def month_range(year: int, month: int) -> Tuple[date, date]:
    """
    First and last calendar day of the month (leap years included).
    """
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, 1), date(year, month, last_day)
