"""Tests for the timetable cache fetch-or-serve decision."""

from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from app.integrations.untis.errors import (
    BadCredentialsError, CredentialDecryptError, FallbackReason, FetchFailedError,
    LoginFailedError, MissingCredentialError, UserNotFoundError
)
from app.services.timetable.cache import TimetableCache
from app.services.timetable.store import TimetableStore
from tests.factories import make_lesson

WEEK_START = datetime(2025, 1, 6)
WEEK_END = datetime(2025, 1, 12, 23, 59, 59, 999000)


class FakeSessions:
    """Stands in for UntisSessionFactory; yields one mock client or raises."""

    def __init__(self, client=None, error=None):
        self.client = client or self.make_client()
        self.error = error
        self.opened = 0

    @staticmethod
    def make_client(lessons=None, homework=None, exams=None):
        client = AsyncMock()
        client.get_lessons_for_range.return_value = lessons if lessons is not None else [make_lesson()]
        client.get_homework_for_range.return_value = homework or {"homeworks": [], "lessons": []}
        client.get_exams_for_range.return_value = exams or []
        return client

    @asynccontextmanager
    async def open(self, user):
        self.opened += 1
        if self.error is not None:
            raise self.error
        yield self.client


class Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def store(session_factory):
    return TimetableStore(session_factory)


@pytest.fixture
def clock():
    return Clock(datetime(2025, 1, 8, 9, 0))


def make_cache(store, sessions, clock):
    return TimetableCache(store, sessions, clock=clock, ttl_seconds=300)


class TestCacheHits:
    """Fresh snapshots are reused only for the exact normalized range."""

    @pytest.mark.asyncio
    async def test_second_request_within_ttl_is_served_from_cache(self, store, clock, create_user):
        await create_user()
        sessions = FakeSessions()
        cache = make_cache(store, sessions, clock)

        first = await cache.get_or_fetch("user-1", WEEK_START, WEEK_END)
        await cache.drain()
        clock.now += timedelta(minutes=2)
        second = await cache.get_or_fetch("user-1", datetime(2025, 1, 7, 10), datetime(2025, 1, 13))

        assert first.source == "live"
        assert second.cached and not second.stale
        assert second.source == "cache"
        assert second.snapshot.id == first.snapshot.id

    @pytest.mark.asyncio
    async def test_expired_snapshot_is_refetched(self, store, clock, create_user):
        await create_user()
        sessions = FakeSessions()
        cache = make_cache(store, sessions, clock)

        first = await cache.get_or_fetch("user-1", WEEK_START, WEEK_END)
        await cache.drain()
        clock.now += timedelta(minutes=6)
        second = await cache.get_or_fetch("user-1", WEEK_START, WEEK_END)
        await cache.drain()

        assert not second.cached
        assert second.snapshot.id != first.snapshot.id

    @pytest.mark.asyncio
    async def test_unknown_user_raises(self, store, clock):
        cache = make_cache(store, FakeSessions(), clock)

        with pytest.raises(UserNotFoundError):
            await cache.get_or_fetch("missing", WEEK_START, WEEK_END)


class TestMissPath:
    """Fetching, enrichment and prefetching on a cache miss."""

    @pytest.mark.asyncio
    async def test_payload_is_enriched_and_records_stored(self, store, clock, create_user):
        await create_user()
        client = FakeSessions.make_client(
            lessons=[make_lesson(id=1, date=20250107, subject="MA")],
            homework={"homeworks": [{"id": 5, "lessonId": 1, "dueDate": 20250107, "text": "p. 4"}], "lessons": []},
            exams=[{"id": 9, "examDate": 20250107, "startTime": 800, "endTime": 845, "subject": "MA"}],
        )
        cache = make_cache(store, FakeSessions(client), clock)

        result = await cache.get_or_fetch("user-1", WEEK_START, WEEK_END)
        await cache.drain()

        [lesson] = result.snapshot.payload
        assert lesson["homework"][0]["id"] == 5
        assert lesson["exams"][0]["id"] == 9
        assert [hw.untis_id for hw in await store.list_homework("user-1")] == [5]
        assert [exam.untis_id for exam in await store.list_exams("user-1")] == [9]

    @pytest.mark.asyncio
    async def test_homework_failure_degrades_to_empty(self, store, clock, create_user):
        await create_user()
        client = FakeSessions.make_client()
        client.get_homework_for_range.side_effect = FetchFailedError("Untis fetch failed")
        cache = make_cache(store, FakeSessions(client), clock)

        result = await cache.get_or_fetch("user-1", WEEK_START, WEEK_END)
        await cache.drain()

        assert not result.stale
        assert len(result.snapshot.payload) == 1

    @pytest.mark.asyncio
    async def test_adjacent_weeks_are_prefetched(self, store, clock, create_user):
        await create_user()
        sessions = FakeSessions()
        cache = make_cache(store, sessions, clock)

        await cache.get_or_fetch("user-1", WEEK_START, WEEK_END)
        await cache.drain()

        previous = await store.find_latest_snapshot(
            "user-1", WEEK_START - timedelta(days=7), WEEK_END - timedelta(days=7), exact=True
        )
        following = await store.find_latest_snapshot(
            "user-1", WEEK_START + timedelta(days=7), WEEK_END + timedelta(days=7), exact=True
        )
        assert previous is not None
        assert following is not None
        assert sessions.opened == 3

    @pytest.mark.asyncio
    async def test_prefetch_skips_week_with_fresh_snapshot(self, store, clock, create_user):
        await create_user()
        next_start, next_end = WEEK_START + timedelta(days=7), WEEK_END + timedelta(days=7)
        existing = await store.create_snapshot(
            "user-1", next_start, next_end, [make_lesson(id=9)], created_at=clock.now - timedelta(minutes=1)
        )
        sessions = FakeSessions()
        cache = make_cache(store, sessions, clock)

        await cache.get_or_fetch("user-1", WEEK_START, WEEK_END)
        await cache.drain()

        following = await store.find_latest_snapshot("user-1", next_start, next_end, exact=True)
        previous = await store.find_latest_snapshot(
            "user-1", WEEK_START - timedelta(days=7), WEEK_END - timedelta(days=7), exact=True
        )
        assert sessions.opened == 2
        assert following.id == existing.id
        assert previous is not None

    @pytest.mark.asyncio
    async def test_prefetch_failure_is_swallowed(self, store, clock, create_user):
        await create_user()
        client = FakeSessions.make_client()
        client.get_lessons_for_range.side_effect = [[make_lesson()], FetchFailedError("down"), FetchFailedError("down")]
        cache = make_cache(store, FakeSessions(client), clock)

        result = await cache.get_or_fetch("user-1", WEEK_START, WEEK_END)
        await cache.drain()

        assert not result.cached

    @pytest.mark.asyncio
    async def test_unbounded_request_fetches_today(self, store, clock, create_user):
        await create_user()
        sessions = FakeSessions()
        cache = make_cache(store, sessions, clock)

        result = await cache.get_or_fetch("user-1")

        assert result.snapshot.range_start is None
        assert result.snapshot.range_end is None
        start_day, end_day = sessions.client.get_lessons_for_range.call_args.args
        assert start_day == end_day == clock.now.date()
        sessions.client.get_homework_for_range.assert_not_called()


class TestFailurePath:
    """Retryable failures fall back to stored snapshots; fatal ones propagate."""

    @pytest.mark.asyncio
    async def test_bad_credentials_serve_stale_snapshot(self, store, clock, create_user):
        await create_user()
        cached = await store.create_snapshot(
            "user-1", WEEK_START, WEEK_END, [make_lesson()], created_at=clock.now - timedelta(hours=2)
        )
        cache = make_cache(store, FakeSessions(error=BadCredentialsError("Invalid Untis credentials")), clock)

        result = await cache.get_or_fetch("user-1", WEEK_START, WEEK_END)

        assert result.stale and result.cached
        assert result.snapshot.id == cached.id
        assert result.fallback_reason == FallbackReason.BAD_CREDENTIALS
        assert result.error_code == "BAD_CREDENTIALS"

    @pytest.mark.asyncio
    async def test_login_failure_falls_back_to_any_range(self, store, clock, create_user):
        await create_user()
        other = await store.create_snapshot(
            "user-1", WEEK_START - timedelta(days=7), WEEK_END - timedelta(days=7), [],
            created_at=clock.now - timedelta(days=1),
        )
        cache = make_cache(store, FakeSessions(error=LoginFailedError("Untis login failed")), clock)

        result = await cache.get_or_fetch("user-1", WEEK_START, WEEK_END)

        assert result.snapshot.id == other.id
        assert result.fallback_reason == FallbackReason.UNTIS_UNAVAILABLE

    @pytest.mark.asyncio
    async def test_retryable_error_without_fallback_propagates(self, store, clock, create_user):
        await create_user()
        cache = make_cache(store, FakeSessions(error=FetchFailedError("Untis fetch failed")), clock)

        with pytest.raises(FetchFailedError):
            await cache.get_or_fetch("user-1", WEEK_START, WEEK_END)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [
        MissingCredentialError("User missing encrypted Untis credential"),
        CredentialDecryptError("Credential decryption failed"),
    ])
    async def test_fatal_errors_always_propagate(self, store, clock, create_user, error):
        await create_user()
        await store.create_snapshot("user-1", WEEK_START, WEEK_END, [], created_at=clock.now - timedelta(hours=1))
        cache = make_cache(store, FakeSessions(error=error), clock)

        with pytest.raises(type(error)):
            await cache.get_or_fetch("user-1", WEEK_START, WEEK_END)


class TestPruning:
    """Retention pruning is throttled per process."""

    @pytest.mark.asyncio
    async def test_prune_runs_once_per_interval(self, clock):
        store = AsyncMock()
        store.prune_snapshots.return_value = 3
        cache = TimetableCache(store, FakeSessions(), clock=clock, prune_interval_hours=6)

        assert await cache.maybe_prune() == 3
        clock.now += timedelta(hours=1)
        assert await cache.maybe_prune() == 0
        clock.now += timedelta(hours=6)
        assert await cache.maybe_prune() == 3
        assert store.prune_snapshots.await_count == 2
