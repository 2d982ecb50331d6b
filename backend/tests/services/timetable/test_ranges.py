"""Tests for timetable range normalization."""

from datetime import date, datetime, timezone

from app.services.timetable.ranges import (
    DateRange, day_range, iso_week_of, normalize_range
)


class TestNormalizeRange:
    """Snapping requested ranges to cache buckets."""

    def test_week_span_snaps_to_iso_week_of_start(self):
        """A Wednesday-to-next-Monday request becomes Monday 00:00 to Sunday 23:59:59.999."""
        window = normalize_range(datetime(2025, 1, 8, 10, 30), datetime(2025, 1, 13, 9, 0))

        assert window.start == datetime(2025, 1, 6, 0, 0)
        assert window.end == datetime(2025, 1, 12, 23, 59, 59, 999000)

    def test_short_span_snaps_to_day_bounds(self):
        window = normalize_range(datetime(2025, 1, 7, 12, 0), datetime(2025, 1, 9, 8, 0))

        assert window.start == datetime(2025, 1, 7, 0, 0)
        assert window.end == datetime(2025, 1, 9, 23, 59, 59, 999000)

    def test_four_day_span_is_not_a_week(self):
        window = normalize_range(datetime(2025, 1, 6), datetime(2025, 1, 10))

        assert window.start == datetime(2025, 1, 6)
        assert window.end.date() == date(2025, 1, 10)

    def test_normalization_is_idempotent(self):
        """Normalizing a normalized range returns the same range."""
        for start, end in [
            (datetime(2025, 1, 8, 10, 30), datetime(2025, 1, 13, 9, 0)),
            (datetime(2025, 1, 7, 12, 0), datetime(2025, 1, 9, 8, 0)),
            (datetime(2025, 1, 7, 12, 0), datetime(2025, 1, 7, 13, 0)),
        ]:
            once = normalize_range(start, end)
            twice = normalize_range(once.start, once.end)
            assert once == twice

    def test_no_bounds_is_unbounded(self):
        window = normalize_range()

        assert window == DateRange(None, None)
        assert not window.bounded

    def test_single_bound_snaps_to_its_day(self):
        window = normalize_range(start=datetime(2025, 1, 7, 15, 0))

        assert window.start == datetime(2025, 1, 7)
        assert window.end is None

    def test_aware_input_is_converted_to_school_time(self):
        """23:30 UTC on Sunday is already Monday in Berlin."""
        window = normalize_range(
            datetime(2025, 1, 5, 23, 30, tzinfo=timezone.utc),
            datetime(2025, 1, 5, 23, 45, tzinfo=timezone.utc),
            tz_name="Europe/Berlin",
        )

        assert window.start == datetime(2025, 1, 6)


class TestDateRange:
    """Helpers on the range value object."""

    def test_shifted_moves_both_bounds(self):
        week = iso_week_of(datetime(2025, 1, 8))
        next_week = week.shifted(7)

        assert next_week.start == datetime(2025, 1, 13)
        assert next_week.end.date() == date(2025, 1, 19)

    def test_ymd_helpers(self):
        window = day_range(date(2025, 3, 4))

        assert window.start_ymd() == 20250304
        assert window.end_ymd() == 20250304
        assert DateRange().start_ymd() is None
