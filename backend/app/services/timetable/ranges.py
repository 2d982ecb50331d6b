"""
Date range normalization for timetable cache buckets.

Ranges are expressed as naive datetimes in school-local time. Requests that
span five or more calendar days are treated as week requests and snapped to
the ISO week of their start; shorter requests are snapped to day bounds.
"""

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from app.core.config import settings
from app.utils.time import to_ymd

WEEK_SNAP_MIN_DAYS = 5
END_OF_DAY = time(23, 59, 59, 999000)


@dataclass(frozen=True)
class DateRange:
    start: Optional[datetime] = None
    end: Optional[datetime] = None

    @property
    def bounded(self) -> bool:
        return self.start is not None and self.end is not None

    def shifted(self, days: int) -> "DateRange":
        delta = timedelta(days=days)
        return DateRange(
            self.start + delta if self.start is not None else None,
            self.end + delta if self.end is not None else None,
        )

    def start_ymd(self) -> Optional[int]:
        return to_ymd(self.start.date()) if self.start is not None else None

    def end_ymd(self) -> Optional[int]:
        return to_ymd(self.end.date()) if self.end is not None else None


def to_school_time(value: datetime, tz_name: Optional[str] = None) -> datetime:
    """Convert an aware datetime to naive school-local time; naive input is kept."""
    if value.tzinfo is None:
        return value
    return value.astimezone(ZoneInfo(tz_name or settings.DEFAULT_TIMEZONE)).replace(tzinfo=None)


def start_of_day(value: datetime) -> datetime:
    return datetime.combine(value.date(), time.min)


def end_of_day(value: datetime) -> datetime:
    return datetime.combine(value.date(), END_OF_DAY)


def start_of_iso_week(value: datetime) -> datetime:
    monday = value.date() - timedelta(days=value.weekday())
    return datetime.combine(monday, time.min)


def end_of_iso_week(value: datetime) -> datetime:
    sunday = start_of_iso_week(value).date() + timedelta(days=6)
    return datetime.combine(sunday, END_OF_DAY)


def iso_week_of(value: datetime) -> DateRange:
    return DateRange(start_of_iso_week(value), end_of_iso_week(value))


def day_range(day: date) -> DateRange:
    return DateRange(datetime.combine(day, time.min), datetime.combine(day, END_OF_DAY))


def normalize_range(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    tz_name: Optional[str] = None
) -> DateRange:
    """
    Snap a requested range to its cache bucket.

    The span is measured in calendar days so that snapping is idempotent:
    a normalized week (Monday to Sunday) still spans six days, and a
    normalized day range keeps its original day difference.
    """
    if start is not None:
        start = to_school_time(start, tz_name)
    if end is not None:
        end = to_school_time(end, tz_name)

    if start is None or end is None:
        return DateRange(
            start_of_day(start) if start is not None else None,
            end_of_day(end) if end is not None else None,
        )

    if (end.date() - start.date()).days >= WEEK_SNAP_MIN_DAYS:
        return iso_week_of(start)
    return DateRange(start_of_day(start), end_of_day(end))
