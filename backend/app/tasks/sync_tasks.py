"""
Background jobs that keep timetables warm and drive notifications.

Each job is a plain coroutine; ``build_scheduler`` wires them into periodic
loops. Per-user work runs in small batches and failures are collected per
user so one broken account never stops a run.
"""

import asyncio
import calendar
import logging
from datetime import date, datetime, timedelta
from typing import Awaitable, Callable, Iterable, List, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError

from app.core.config import settings
from app.integrations.untis.errors import UntisServiceError
from app.services.notifications.notification_manager import NotificationEngine
from app.services.notifications.planner import (
    NotificationPlanner, NotificationPreferences, UserNotificationState
)
from app.services.notifications.store import NotificationStore
from app.services.timetable.cache import TimetableCache
from app.services.timetable.ranges import day_range, iso_week_of
from app.services.timetable.records import lessons_from_payload
from app.services.timetable.service import TimetableService
from app.services.timetable.store import TimetableStore
from app.tasks.scheduler import BackgroundScheduler, PeriodicLoop
from app.utils.time import local_now, to_ymd, utcnow

logger = logging.getLogger(__name__)


def add_months(day: date, months: int) -> date:
    """Shift a date by whole months, clamping to the end of shorter months."""
    month_index = day.month - 1 + months
    year = day.year + month_index // 12
    month = month_index % 12 + 1
    return date(year, month, min(day.day, calendar.monthrange(year, month)[1]))


def chunked(items: Sequence, size: int) -> Iterable[Sequence]:
    for index in range(0, len(items), size):
        yield items[index:index + size]


class TimetableSyncJobs:
    """Warmup, change detection, reminders, absences, exams and cleanup."""

    def __init__(
        self,
        cache: TimetableCache,
        timetable_service: TimetableService,
        timetable_store: TimetableStore,
        notification_store: NotificationStore,
        engine: NotificationEngine,
        planner: Optional[NotificationPlanner] = None,
        clock: Callable[[], datetime] = utcnow,
        batch_size: int = None,
        exam_user_delay: float = 2.0
    ):
        self.cache = cache
        self.timetable_service = timetable_service
        self.timetable_store = timetable_store
        self.notification_store = notification_store
        self.engine = engine
        self.planner = planner or NotificationPlanner()
        self.clock = clock
        self.batch_size = batch_size or settings.WARMUP_BATCH_SIZE
        self.exam_user_delay = exam_user_delay

    async def _run_batched(self, label: str, items: Sequence, work: Callable[[object], Awaitable[None]]) -> int:
        """Run ``work`` per item in batches; returns the number of failures."""
        failures = 0
        for batch in chunked(list(items), self.batch_size):
            results = await asyncio.gather(*(work(item) for item in batch), return_exceptions=True)
            for item, result in zip(batch, results):
                if isinstance(result, BaseException):
                    failures += 1
                    logger.warning(f"{label} failed for {getattr(item, 'id', item)}: {result}")
        return failures

    def _school_week(self):
        now_local = local_now(settings.DEFAULT_TIMEZONE, self.clock()).replace(tzinfo=None)
        return iso_week_of(now_local)

    def _local_today(self, timezone: Optional[str] = None) -> date:
        return local_now(timezone or settings.DEFAULT_TIMEZONE, self.clock()).date()

    async def _preferences(self, user_id: str) -> NotificationPreferences:
        return NotificationPreferences.from_model(await self.notification_store.get_settings(user_id))

    # Cache warmup

    async def warm_cache(self) -> int:
        """Refresh this week's timetable for recently active users not covered by the change check."""
        cutoff = self.clock() - timedelta(days=settings.WARMUP_ACTIVE_LOOKBACK_DAYS)
        active_ids = await self.timetable_store.list_active_user_ids(cutoff, settings.WARMUP_MAX_USERS)
        covered = {user.id for user in await self.notification_store.list_timetable_refresh_users()}
        targets = [user_id for user_id in active_ids if user_id not in covered]
        if not targets:
            return 0

        logger.info(f"Refreshing cached timetables for {len(targets)} users")
        week = self._school_week()

        async def refresh(user_id: str) -> None:
            await self.cache.get_or_fetch(user_id, week.start, week.end)

        failures = await self._run_batched("Timetable warmup", targets, refresh)
        return len(targets) - failures

    # Timetable changes, cancellations and irregular lessons

    async def check_timetable_changes(self) -> int:
        admin_settings = await self.notification_store.get_admin_settings()
        if admin_settings is not None and not admin_settings.enable_timetable_notifications:
            logger.debug("Timetable notifications disabled by admin")
            return 0

        users = await self.notification_store.list_timetable_refresh_users()
        week = self._school_week()
        created = 0

        async def check(user) -> None:
            nonlocal created
            created += await self.check_user_timetable(user, week)

        await self._run_batched("Timetable change check", users, check)
        if created:
            logger.info(f"Created {created} timetable notifications")
        return created

    async def check_user_timetable(self, user, week) -> int:
        previous = await self.timetable_store.find_latest_snapshot(user.id, week.start, week.end, exact=True)
        previous_lessons = None
        previous_snapshot_id = None
        try:
            result = await self.cache.get_or_fetch(user.id, week.start, week.end)
            payload = result.snapshot.payload
            if previous is not None and not result.cached:
                previous_lessons = lessons_from_payload(previous.payload)
                previous_snapshot_id = previous.id
        except UntisServiceError as e:
            logger.warning(f"Interval refresh failed for {user.id}: {e.message}")
            if previous is None:
                return 0
            payload = previous.payload

        preferences = await self._preferences(user.id)
        if not preferences.timetable_changes:
            return 0

        state = UserNotificationState(
            user_id=user.id,
            preferences=preferences,
            timezone=user.timezone or settings.DEFAULT_TIMEZONE,
            previous_lessons=previous_lessons,
            previous_snapshot_id=previous_snapshot_id,
        )
        intents = self.planner.decide(state, fresh_lessons=lessons_from_payload(payload), now=self.clock())
        return await self.engine.create_many(intents)

    async def timetable_check_interval(self) -> float:
        """Admin configured interval in seconds."""
        minutes = settings.TIMETABLE_CHECK_INTERVAL_MINUTES
        try:
            admin_settings = await self.notification_store.get_admin_settings()
        except SQLAlchemyError as e:
            logger.warning(f"Could not load admin notification settings: {e}")
            admin_settings = None
        if admin_settings is not None and admin_settings.timetable_fetch_interval:
            minutes = admin_settings.timetable_fetch_interval
        return minutes * 60

    # Upcoming lesson reminders

    async def check_upcoming(self) -> int:
        users = await self.notification_store.list_upcoming_candidate_users()
        created = 0

        async def check(user) -> None:
            nonlocal created
            created += await self.check_user_upcoming(user)

        await self._run_batched("Upcoming lesson check", users, check)
        return created

    async def check_user_upcoming(self, user) -> int:
        preferences = await self._preferences(user.id)
        if not preferences.upcoming_opted_in:
            return 0

        timezone = user.timezone or settings.DEFAULT_TIMEZONE
        now = self.clock()
        today = local_now(timezone, now).date()
        today_ymd = to_ymd(today)

        latest = await self.timetable_store.find_latest_snapshot(user.id)
        lessons = lessons_from_payload(latest.payload if latest is not None else None)
        if not any(lesson.date == today_ymd for lesson in lessons):
            window = day_range(today)
            try:
                result = await self.cache.get_or_fetch(user.id, window.start, window.end)
                lessons = lessons_from_payload(result.snapshot.payload)
            except UntisServiceError as e:
                logger.warning(f"Upcoming fast refresh failed for {user.id}: {e.message}")
                return 0

        state = UserNotificationState(user_id=user.id, preferences=preferences, timezone=timezone)
        intents = self.planner.decide(state, fresh_lessons=lessons, now=now, upcoming_only=True)
        return await self.engine.create_many(intents)

    # Absences

    async def check_absences(self) -> int:
        users = await self.notification_store.list_absence_notification_users()
        created = 0

        async def check(user) -> None:
            nonlocal created
            created += await self.check_user_absences(user)

        await self._run_batched("Absence check", users, check)
        return created

    async def check_user_absences(self, user) -> int:
        today = self._local_today(user.timezone)
        start = add_months(today, -settings.ABSENCE_WINDOW_MONTHS)
        end = add_months(today, settings.ABSENCE_WINDOW_MONTHS)

        fresh = await self.timetable_service.fetch_absences(user.id, start, end)
        known = await self.timetable_store.list_absences(user.id, to_ymd(start), to_ymd(end))

        state = UserNotificationState(
            user_id=user.id,
            preferences=await self._preferences(user.id),
            timezone=user.timezone or settings.DEFAULT_TIMEZONE,
            known_absences={absence.untis_id: absence for absence in known},
        )
        created = await self.engine.create_many(
            self.planner.decide(state, fresh_absences=fresh, now=self.clock())
        )
        await self.timetable_store.upsert_absences(user.id, fresh)
        return created

    # Exams

    async def refresh_exams(self) -> int:
        user_ids = await self.timetable_store.list_user_ids_with_credentials()
        logger.info(f"Refreshing exams for {len(user_ids)} users")
        start = self._local_today()
        end = start + timedelta(days=settings.EXAM_LOOKAHEAD_DAYS)

        total = 0
        for index, user_id in enumerate(user_ids):
            if index and self.exam_user_delay:
                await asyncio.sleep(self.exam_user_delay)
            try:
                total += await self.timetable_service.refresh_exams(user_id, start, end)
            except (UntisServiceError, SQLAlchemyError) as e:
                logger.warning(f"Exam refresh failed for {user_id}: {e}")
        logger.info(f"Exam refresh complete: {total} exams stored")
        return total

    # Cleanup

    async def cleanup(self) -> int:
        return await self.engine.cleanup_expired()


def build_scheduler(jobs: TimetableSyncJobs) -> BackgroundScheduler:
    """Periodic loops for all background jobs."""
    return BackgroundScheduler([
        PeriodicLoop(
            "timetable-warmup",
            jobs.warm_cache,
            interval=settings.WARMUP_INTERVAL_MINUTES * 60,
            initial_delay=settings.WARMUP_INITIAL_DELAY_SECONDS,
        ),
        PeriodicLoop(
            "timetable-changes",
            jobs.check_timetable_changes,
            interval=jobs.timetable_check_interval,
        ),
        PeriodicLoop(
            "upcoming-lessons",
            jobs.check_upcoming,
            interval=settings.UPCOMING_CHECK_INTERVAL_SECONDS,
        ),
        PeriodicLoop(
            "absences",
            jobs.check_absences,
            interval=settings.ABSENCE_CHECK_INTERVAL_MINUTES * 60,
            initial_delay=settings.ABSENCE_INITIAL_DELAY_SECONDS,
        ),
        PeriodicLoop(
            "exam-refresh",
            jobs.refresh_exams,
            interval=settings.EXAM_REFRESH_INTERVAL_HOURS * 3600,
            initial_delay=settings.EXAM_REFRESH_INITIAL_DELAY_SECONDS,
        ),
        PeriodicLoop(
            "notification-cleanup",
            jobs.cleanup,
            interval=settings.NOTIFICATION_CLEANUP_INTERVAL_MINUTES * 60,
        ),
    ])
