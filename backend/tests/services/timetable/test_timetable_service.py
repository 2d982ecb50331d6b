"""Tests for access-checked timetable operations."""

from contextlib import asynccontextmanager
from datetime import date, datetime, timedelta
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from app.integrations.untis.errors import (
    AccessDeniedError, BadCredentialsError, FetchFailedError, UserNotFoundError
)
from app.schemas.timetable import TimetableSource
from app.services.timetable.cache import CacheResult
from app.services.timetable.service import TimetableService
from tests.factories import make_lesson


class FakeSessions:
    def __init__(self, client):
        self.client = client

    @asynccontextmanager
    async def open(self, user):
        yield self.client


@pytest.fixture
def users():
    return {
        "student": SimpleNamespace(id="student", is_admin=False),
        "other": SimpleNamespace(id="other", is_admin=False),
        "admin": SimpleNamespace(id="admin", is_admin=True),
    }


@pytest.fixture
def store(users):
    store = AsyncMock()
    store.get_user.side_effect = lambda user_id: users.get(user_id)
    return store


@pytest.fixture
def cache():
    cache = AsyncMock()
    snapshot = SimpleNamespace(
        range_start=datetime(2025, 1, 6),
        range_end=datetime(2025, 1, 12, 23, 59, 59, 999000),
        payload=[make_lesson()],
        created_at=datetime(2025, 1, 8, 9, 0),
    )
    cache.get_or_fetch.return_value = CacheResult(snapshot=snapshot, cached=True, stale=False)
    return cache


@pytest.fixture
def client():
    return AsyncMock()


class Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return Clock(datetime(2025, 1, 8, 9, 0))


@pytest.fixture
def service(cache, store, client, clock):
    return TimetableService(cache, store, FakeSessions(client), holiday_ttl_hours=6, clock=clock)


class TestTimetableAccess:
    """Who may read which timetable."""

    @pytest.mark.asyncio
    async def test_user_reads_own_timetable(self, service, cache):
        response = await service.get_or_fetch_timetable_range("student", "student")

        assert response.user_id == "student"
        assert response.source == TimetableSource.CACHE
        assert response.last_updated == datetime(2025, 1, 8, 9, 0)
        cache.get_or_fetch.assert_awaited_once_with("student", None, None)

    @pytest.mark.asyncio
    async def test_admin_reads_any_timetable(self, service):
        response = await service.get_or_fetch_timetable_range("admin", "student")

        assert response.user_id == "student"

    @pytest.mark.asyncio
    async def test_other_user_is_denied(self, service, cache):
        with pytest.raises(AccessDeniedError):
            await service.get_or_fetch_timetable_range("other", "student")
        cache.get_or_fetch.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unknown_requester(self, service):
        with pytest.raises(UserNotFoundError):
            await service.get_or_fetch_timetable_range("ghost", "student")


class TestHolidays:
    """Holiday cache behaviour."""

    @pytest.mark.asyncio
    async def test_holidays_are_cached(self, service, client):
        client.get_holidays.return_value = [{"id": 1, "name": "Winter"}]

        first = await service.get_holidays("student")
        second = await service.get_holidays("student")

        assert first == second == [{"id": 1, "name": "Winter"}]
        assert client.get_holidays.await_count == 1

    @pytest.mark.asyncio
    async def test_holidays_are_refetched_after_ttl(self, service, client, clock):
        client.get_holidays.side_effect = [[{"id": 1}], [{"id": 2}]]

        await service.get_holidays("student")
        clock.now += timedelta(hours=5)
        assert await service.get_holidays("student") == [{"id": 1}]
        clock.now += timedelta(hours=2)
        assert await service.get_holidays("student") == [{"id": 2}]

        assert client.get_holidays.await_count == 2

    @pytest.mark.asyncio
    async def test_expired_cache_is_served_when_upstream_fails(self, service, client, clock):
        client.get_holidays.return_value = [{"id": 1}]
        await service.get_holidays("student")
        clock.now += timedelta(hours=7)
        client.get_holidays.side_effect = FetchFailedError("Untis fetch failed")

        assert await service.get_holidays("student") == [{"id": 1}]

    @pytest.mark.asyncio
    async def test_bad_credentials_always_raise(self, service, client, clock):
        client.get_holidays.return_value = [{"id": 1}]
        await service.get_holidays("student")
        clock.now += timedelta(hours=7)
        client.get_holidays.side_effect = BadCredentialsError("Invalid Untis credentials")

        with pytest.raises(BadCredentialsError):
            await service.get_holidays("student")


class TestExamRefresh:
    """Exam refresh with the weekly lesson fallback."""

    @pytest.mark.asyncio
    async def test_exam_endpoint_results_are_stored(self, service, client, store):
        client.get_exams_for_range.return_value = [
            {"id": 1, "date": 20250110, "startTime": 800, "endTime": 845, "subject": "MA"},
            {"id": 1, "date": 20250110, "startTime": 845, "endTime": 930, "subject": "MA"},
        ]

        count = await service.refresh_exams("student", date(2025, 1, 6), date(2025, 2, 6))

        assert count == 1
        [exam] = store.upsert_exams.await_args.args[1]
        assert (exam.start_time, exam.end_time) == (800, 930)
        client.get_lessons_for_week.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_falls_back_to_exam_lessons(self, service, client, store):
        client.get_exams_for_range.return_value = []
        client.get_lessons_for_week.return_value = [
            make_lesson(id=3, date=20250108, lstype="ex", lstext="Klausur"),
            make_lesson(id=4, date=20250108, start=1000, end=1045),
        ]

        count = await service.refresh_exams("student", date(2025, 1, 6), date(2025, 1, 19))

        assert count == 1
        assert client.get_lessons_for_week.await_count == 2
        [exam] = store.upsert_exams.await_args.args[1]
        assert exam.untis_id == 3
        assert exam.name == "Klausur"


class TestAbsences:

    @pytest.mark.asyncio
    async def test_fetch_absences_parses_records(self, service, client):
        client.get_absences_for_range.return_value = [
            {"id": 7, "startDate": 20250107, "endDate": 20250107, "reason": "ill", "isExcused": True},
        ]

        [absence] = await service.fetch_absences("student", date(2024, 10, 1), date(2025, 4, 1))

        assert absence.untis_id == 7
        assert absence.is_excused
        assert absence.reason == "ill"
