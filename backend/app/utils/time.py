"""Date helpers for the WebUntis integer date/time formats."""

from datetime import date, datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo


def utcnow() -> datetime:
    """Naive UTC timestamp, the format stored in ``created_at`` columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_ymd(value: date) -> int:
    """Convert a date to the YYYYMMDD integer used by WebUntis."""
    return value.year * 10000 + value.month * 100 + value.day


def from_ymd(value: int) -> date:
    return date(value // 10000, (value % 10000) // 100, value % 100)


def hhmm_to_minutes(value: int) -> int:
    """Convert an HHMM integer (e.g. 1345) to minutes since midnight."""
    return (value // 100) * 60 + value % 100


def format_ymd(value: Optional[int]) -> str:
    if not value:
        return ""
    return f"{value // 10000}-{(value % 10000) // 100:02d}-{value % 100:02d}"


def format_hm(value: Optional[int]) -> str:
    if value is None:
        return ""
    return f"{value // 100:02d}:{value % 100:02d}"


def local_now(tz_name: str, now_utc: Optional[datetime] = None) -> datetime:
    """Current wall-clock time in the given timezone (naive UTC input)."""
    now_utc = now_utc or utcnow()
    return now_utc.replace(tzinfo=timezone.utc).astimezone(ZoneInfo(tz_name))
