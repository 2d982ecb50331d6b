"""Tests for the background timetable and notification jobs."""

from datetime import date, datetime
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from app.integrations.untis.errors import FetchFailedError
from app.services.notifications.planner import NotificationPlanner
from app.services.timetable.cache import CacheResult
from app.services.timetable.records import AbsenceRecord
from app.tasks.sync_tasks import TimetableSyncJobs, add_months, build_scheduler, chunked
from tests.factories import make_lesson

# Wednesday 2025-01-08 09:00 in Berlin
NOW = datetime(2025, 1, 8, 8, 0)
WEEK_START = datetime(2025, 1, 6)
WEEK_END = datetime(2025, 1, 12, 23, 59, 59, 999000)


def user(user_id="u1"):
    return SimpleNamespace(id=user_id, timezone="Europe/Berlin")


def settings_row(**overrides):
    values = dict(
        push_notifications_enabled=True,
        timetable_changes_enabled=True,
        cancelled_lessons_enabled=True,
        irregular_lessons_enabled=True,
        upcoming_lessons_enabled=False,
        access_requests_enabled=True,
        absences_enabled=False,
        cancelled_lessons_time_scope="day",
        irregular_lessons_time_scope="day",
        device_preferences=None,
    )
    values.update(overrides)
    return SimpleNamespace(**values)


def cache_result(payload, cached=False):
    snapshot = SimpleNamespace(payload=payload, created_at=NOW)
    return CacheResult(snapshot=snapshot, cached=cached, stale=False)


@pytest.fixture
def cache():
    return AsyncMock()


@pytest.fixture
def timetable_store():
    store = AsyncMock()
    store.find_latest_snapshot.return_value = None
    return store


@pytest.fixture
def notification_store():
    store = AsyncMock()
    store.get_admin_settings.return_value = None
    store.get_settings.return_value = settings_row()
    return store


@pytest.fixture
def engine():
    engine = AsyncMock()
    engine.create_many.side_effect = lambda intents: len(intents)
    return engine


@pytest.fixture
def timetable_service():
    return AsyncMock()


@pytest.fixture
def jobs(cache, timetable_service, timetable_store, notification_store, engine):
    return TimetableSyncJobs(
        cache,
        timetable_service,
        timetable_store,
        notification_store,
        engine,
        planner=NotificationPlanner(upcoming_expiry_minutes=60),
        clock=lambda: NOW,
        batch_size=2,
        exam_user_delay=0,
    )


class TestHelpers:

    def test_add_months_clamps_day(self):
        assert add_months(date(2025, 1, 31), 1) == date(2025, 2, 28)
        assert add_months(date(2025, 1, 15), -3) == date(2024, 10, 15)
        assert add_months(date(2024, 11, 30), 3) == date(2025, 2, 28)

    def test_chunked(self):
        assert list(chunked([1, 2, 3, 4, 5], 2)) == [[1, 2], [3, 4], [5]]


class TestWarmCache:

    @pytest.mark.asyncio
    async def test_skips_users_covered_by_change_check(self, jobs, cache, timetable_store, notification_store):
        timetable_store.list_active_user_ids.return_value = ["u1", "u2", "u3"]
        notification_store.list_timetable_refresh_users.return_value = [user("u2")]
        cache.get_or_fetch.side_effect = [cache_result([]), FetchFailedError("down")]

        refreshed = await jobs.warm_cache()

        assert refreshed == 1
        calls = [call.args for call in cache.get_or_fetch.await_args_list]
        assert calls == [("u1", WEEK_START, WEEK_END), ("u3", WEEK_START, WEEK_END)]


class TestTimetableChanges:
    """Interval refresh with change, cancellation and irregular detection."""

    @pytest.mark.asyncio
    async def test_cancelled_lesson_creates_notification(self, jobs, cache, notification_store, engine):
        notification_store.list_timetable_refresh_users.return_value = [user()]
        cache.get_or_fetch.return_value = cache_result(
            [make_lesson(id=5, date=20250108, start=1000, end=1045, code="cancelled")]
        )

        assert await jobs.check_timetable_changes() == 1

        [intent] = engine.create_many.await_args.args[0]
        assert intent.dedupe_key == "cancelled:u1:5:20250108:1000"

    @pytest.mark.asyncio
    async def test_changed_payload_against_previous_snapshot(self, jobs, cache, timetable_store, notification_store, engine):
        notification_store.list_timetable_refresh_users.return_value = [user()]
        timetable_store.find_latest_snapshot.return_value = SimpleNamespace(
            id="snap-1", payload=[make_lesson(id=1, date=20250109, start=800, end=845)]
        )
        cache.get_or_fetch.return_value = cache_result([make_lesson(id=1, date=20250109, start=1000, end=1045)])

        await jobs.check_timetable_changes()

        [intent] = engine.create_many.await_args.args[0]
        assert intent.type.value == "timetable_change"
        assert intent.dedupe_key.startswith("timetable_change:u1:snap-1:")

    @pytest.mark.asyncio
    async def test_cached_result_is_not_compared(self, jobs, cache, timetable_store, notification_store, engine):
        notification_store.list_timetable_refresh_users.return_value = [user()]
        timetable_store.find_latest_snapshot.return_value = SimpleNamespace(payload=[make_lesson(id=1)])
        cache.get_or_fetch.return_value = cache_result([make_lesson(id=2)], cached=True)

        assert await jobs.check_timetable_changes() == 0

    @pytest.mark.asyncio
    async def test_refresh_failure_uses_previous_snapshot(self, jobs, cache, timetable_store, notification_store, engine):
        notification_store.list_timetable_refresh_users.return_value = [user()]
        timetable_store.find_latest_snapshot.return_value = SimpleNamespace(
            payload=[make_lesson(id=5, date=20250108, start=1000, end=1045, code="cancelled")]
        )
        cache.get_or_fetch.side_effect = FetchFailedError("down")

        assert await jobs.check_timetable_changes() == 1

    @pytest.mark.asyncio
    async def test_admin_switch(self, jobs, notification_store, cache):
        notification_store.get_admin_settings.return_value = SimpleNamespace(enable_timetable_notifications=False)

        assert await jobs.check_timetable_changes() == 0
        cache.get_or_fetch.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_one_failing_user_does_not_stop_the_run(self, jobs, cache, notification_store):
        notification_store.list_timetable_refresh_users.return_value = [user("u1"), user("u2")]
        notification_store.get_settings.side_effect = [RuntimeError("db"), settings_row()]
        cache.get_or_fetch.return_value = cache_result(
            [make_lesson(id=5, date=20250108, start=1000, end=1045, code="cancelled")]
        )

        assert await jobs.check_timetable_changes() == 1

    @pytest.mark.asyncio
    async def test_interval_from_admin_settings(self, jobs, notification_store):
        notification_store.get_admin_settings.return_value = SimpleNamespace(timetable_fetch_interval=15)

        assert await jobs.timetable_check_interval() == 900


class TestUpcoming:

    @pytest.mark.asyncio
    async def test_uses_latest_snapshot_with_today(self, jobs, cache, timetable_store, notification_store, engine):
        notification_store.list_upcoming_candidate_users.return_value = [user()]
        notification_store.get_settings.return_value = settings_row(upcoming_lessons_enabled=True)
        timetable_store.find_latest_snapshot.return_value = SimpleNamespace(
            payload=[make_lesson(id=3, date=20250108, start=904, end=950)]
        )

        assert await jobs.check_upcoming() == 1
        cache.get_or_fetch.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_fetches_today_when_snapshot_lacks_it(self, jobs, cache, timetable_store, notification_store):
        notification_store.list_upcoming_candidate_users.return_value = [user()]
        notification_store.get_settings.return_value = settings_row(upcoming_lessons_enabled=True)
        timetable_store.find_latest_snapshot.return_value = SimpleNamespace(payload=[make_lesson(date=20250101)])
        cache.get_or_fetch.return_value = cache_result([make_lesson(id=3, date=20250108, start=905, end=950)])

        assert await jobs.check_upcoming() == 1
        _, start, end = cache.get_or_fetch.await_args.args
        assert start == datetime(2025, 1, 8)
        assert end == datetime(2025, 1, 8, 23, 59, 59, 999000)

    @pytest.mark.asyncio
    async def test_not_opted_in(self, jobs, notification_store, timetable_store):
        notification_store.list_upcoming_candidate_users.return_value = [user()]

        assert await jobs.check_upcoming() == 0
        timetable_store.find_latest_snapshot.assert_not_awaited()


class TestAbsences:

    @pytest.mark.asyncio
    async def test_new_absences_are_notified_and_stored(
        self, jobs, timetable_service, timetable_store, notification_store
    ):
        notification_store.list_absence_notification_users.return_value = [user()]
        notification_store.get_settings.return_value = settings_row(absences_enabled=True)
        fresh = [AbsenceRecord(untis_id=7, start_date=20250107, end_date=20250107)]
        timetable_service.fetch_absences.return_value = fresh
        timetable_store.list_absences.return_value = []

        assert await jobs.check_absences() == 1

        timetable_service.fetch_absences.assert_awaited_once_with("u1", date(2024, 10, 8), date(2025, 4, 8))
        timetable_store.upsert_absences.assert_awaited_once_with("u1", fresh)


class TestExamsAndCleanup:

    @pytest.mark.asyncio
    async def test_exam_refresh_continues_after_failure(self, jobs, timetable_store, timetable_service):
        timetable_store.list_user_ids_with_credentials.return_value = ["u1", "u2"]
        timetable_service.refresh_exams.side_effect = [FetchFailedError("down"), 3]

        assert await jobs.refresh_exams() == 3
        timetable_service.refresh_exams.assert_awaited_with("u2", date(2025, 1, 8), date(2025, 2, 8))

    @pytest.mark.asyncio
    async def test_cleanup(self, jobs, engine):
        engine.cleanup_expired.return_value = 2

        assert await jobs.cleanup() == 2


class TestSchoolLocalDates:
    """Date windows follow the school day, not the UTC date."""

    @pytest.fixture
    def late_jobs(self, cache, timetable_service, timetable_store, notification_store, engine):
        # 2025-01-07 23:30 UTC is already 00:30 on the 8th in Berlin
        return TimetableSyncJobs(
            cache,
            timetable_service,
            timetable_store,
            notification_store,
            engine,
            clock=lambda: datetime(2025, 1, 7, 23, 30),
            exam_user_delay=0,
        )

    @pytest.mark.asyncio
    async def test_absence_window_uses_local_date(self, late_jobs, timetable_service, timetable_store, notification_store):
        notification_store.list_absence_notification_users.return_value = [user()]
        timetable_service.fetch_absences.return_value = []
        timetable_store.list_absences.return_value = []

        await late_jobs.check_absences()

        timetable_service.fetch_absences.assert_awaited_once_with("u1", date(2024, 10, 8), date(2025, 4, 8))

    @pytest.mark.asyncio
    async def test_exam_window_uses_local_date(self, late_jobs, timetable_store, timetable_service):
        timetable_store.list_user_ids_with_credentials.return_value = ["u1"]
        timetable_service.refresh_exams.return_value = 0

        await late_jobs.refresh_exams()

        timetable_service.refresh_exams.assert_awaited_once_with("u1", date(2025, 1, 8), date(2025, 2, 8))


def test_scheduler_has_all_loops(jobs):
    scheduler = build_scheduler(jobs)

    assert set(scheduler.loops) == {
        "timetable-warmup",
        "timetable-changes",
        "upcoming-lessons",
        "absences",
        "exam-refresh",
        "notification-cleanup",
    }
    assert not scheduler.started
