"""
Timetable cache: serve a fresh snapshot or fetch from WebUntis.

A snapshot is reused only for the exact normalized range and only while
it is younger than the TTL. Retryable upstream failures are absorbed by
serving the newest stored snapshot marked stale; fatal credential errors
always propagate.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Set, TypeVar

from sqlalchemy.exc import SQLAlchemyError

from app.core.config import settings
from app.integrations.untis.errors import (
    FallbackReason, UntisServiceError, UserNotFoundError, fallback_reason_for
)
from app.integrations.untis.parsing import parse_exams, parse_homework, parse_lessons
from app.integrations.untis.session import UntisSessionFactory
from app.models.timetable import TimetableSnapshot
from app.services.timetable.enrichment import EnrichmentResolver
from app.services.timetable.ranges import DateRange, normalize_range
from app.services.timetable.records import ExamRecord, HomeworkRecord
from app.services.timetable.store import TimetableStore
from app.utils.background import spawn_background
from app.utils.time import local_now, utcnow

logger = logging.getLogger(__name__)

ADJACENT_WEEK_SHIFTS = (-7, 7)

R = TypeVar("R", HomeworkRecord, ExamRecord)


@dataclass
class CacheResult:
    snapshot: TimetableSnapshot
    cached: bool
    stale: bool
    fallback_reason: Optional[FallbackReason] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def source(self) -> str:
        return "cache" if self.cached else "live"


def _merge_records(stored: Iterable[R], fresh: Iterable[R], start_ymd: Optional[int], end_ymd: Optional[int]) -> List[R]:
    """Stored records overlaid with freshly fetched ones inside the window."""
    merged: Dict[int, R] = {record.untis_id: record for record in stored}
    for record in fresh:
        if start_ymd is not None and end_ymd is not None and not (start_ymd <= record.date <= end_ymd):
            continue
        merged[record.untis_id] = record
    return list(merged.values())


class TimetableCache:
    """Fetch-or-serve decision, adjacent week prefetch and retention pruning."""

    def __init__(
        self,
        store: TimetableStore,
        sessions: UntisSessionFactory,
        resolver: Optional[EnrichmentResolver] = None,
        clock: Callable[[], datetime] = utcnow,
        ttl_seconds: int = None,
        max_age_days: int = None,
        history_per_range: int = None,
        prune_interval_hours: int = None
    ):
        self.store = store
        self.sessions = sessions
        self.resolver = resolver or EnrichmentResolver()
        self.clock = clock
        self.ttl = timedelta(seconds=ttl_seconds or settings.TIMETABLE_CACHE_TTL_SECONDS)
        self.max_age = timedelta(days=max_age_days or settings.TIMETABLE_MAX_AGE_DAYS)
        self.history_per_range = history_per_range or settings.TIMETABLE_MAX_HISTORY_PER_RANGE
        self.prune_interval = timedelta(hours=prune_interval_hours or settings.TIMETABLE_PRUNE_INTERVAL_HOURS)

        self._last_prune: Optional[datetime] = None
        self._background_tasks: Set[asyncio.Task] = set()

    async def get_or_fetch(
        self,
        owner_id: str,
        range_start: Optional[datetime] = None,
        range_end: Optional[datetime] = None
    ) -> CacheResult:
        user = await self.store.get_user(owner_id)
        if user is None:
            raise UserNotFoundError("Target user not found", details={"user_id": owner_id})

        window = normalize_range(range_start, range_end)

        if window.bounded:
            try:
                cached = await self.find_fresh(owner_id, window)
            except SQLAlchemyError as e:
                logger.warning(f"Timetable cache lookup failed for {owner_id}: {e}")
                cached = None
            if cached is not None:
                logger.debug(f"Timetable cache hit for {owner_id} {window.start}..{window.end}")
                return CacheResult(snapshot=cached, cached=True, stale=False)

        try:
            snapshot = await self.fetch_and_store(user, window)
        except UntisServiceError as e:
            if not e.retryable:
                raise
            fallback = await self.store.find_latest_snapshot(owner_id, window.start, window.end)
            if fallback is None:
                raise
            logger.warning(
                f"Serving cached timetable for {owner_id} due to {e.code.value}: {e.message}"
            )
            return CacheResult(
                snapshot=fallback,
                cached=True,
                stale=True,
                fallback_reason=fallback_reason_for(e),
                error_code=e.code.value,
                error_message=e.message,
            )

        if window.bounded:
            spawn_background(
                self.prefetch_adjacent(user, window),
                name=f"timetable-prefetch-{owner_id}",
                registry=self._background_tasks,
            )
        return CacheResult(snapshot=snapshot, cached=False, stale=False)

    async def find_fresh(self, owner_id: str, window: DateRange) -> Optional[TimetableSnapshot]:
        return await self.store.find_fresh_snapshot(
            owner_id, window.start, window.end, created_after=self.clock() - self.ttl
        )

    async def fetch_and_store(self, user, window: DateRange) -> TimetableSnapshot:
        """Fetch lessons, homework and exams, enrich and persist a new snapshot."""
        homework: List[HomeworkRecord] = []
        exams: List[ExamRecord] = []

        async with self.sessions.open(user) as client:
            if window.bounded:
                start_day, end_day = window.start.date(), window.end.date()
                raw_lessons = await client.get_lessons_for_range(start_day, end_day)
                try:
                    homework = parse_homework(await client.get_homework_for_range(start_day, end_day))
                except UntisServiceError as e:
                    logger.warning(f"Homework fetch failed for {user.id}, continuing without homework: {e.message}")
                try:
                    exams = parse_exams(await client.get_exams_for_range(start_day, end_day))
                except UntisServiceError as e:
                    logger.warning(f"Exam fetch failed for {user.id}, continuing without exams: {e.message}")
            else:
                today = self._school_today()
                raw_lessons = await client.get_lessons_for_range(today, today)

        await self._persist_records(user.id, homework, exams)

        start_ymd, end_ymd = window.start_ymd(), window.end_ymd()
        if not window.bounded:
            start_ymd = end_ymd = None
        stored_homework, stored_exams = await self._load_records(user.id, start_ymd, end_ymd)

        lessons = self.resolver.enrich(
            parse_lessons(raw_lessons),
            _merge_records(stored_homework, homework, start_ymd, end_ymd),
            _merge_records(stored_exams, exams, start_ymd, end_ymd),
        )
        payload = [lesson.to_dict() for lesson in lessons]

        snapshot = await self.store.create_snapshot(
            user.id, window.start, window.end, payload, created_at=self.clock()
        )
        logger.debug(
            f"Stored timetable for {user.id} {window.start}..{window.end}: "
            f"{len(payload)} lessons, {len(homework)} homework, {len(exams)} exams"
        )
        return snapshot

    async def _persist_records(self, user_id: str, homework: List[HomeworkRecord], exams: List[ExamRecord]) -> None:
        if homework:
            try:
                await self.store.upsert_homework(user_id, homework)
            except SQLAlchemyError as e:
                logger.warning(f"Failed to store homework for {user_id}: {e}")
        if exams:
            try:
                await self.store.upsert_exams(user_id, exams)
            except SQLAlchemyError as e:
                logger.warning(f"Failed to store exams for {user_id}: {e}")

    async def _load_records(self, user_id: str, start_ymd: Optional[int], end_ymd: Optional[int]):
        try:
            return (
                await self.store.list_homework(user_id, start_ymd, end_ymd),
                await self.store.list_exams(user_id, start_ymd, end_ymd),
            )
        except SQLAlchemyError as e:
            logger.warning(f"Failed to load stored homework/exams for {user_id}: {e}")
            return [], []

    def _school_today(self) -> date:
        return local_now(settings.DEFAULT_TIMEZONE, self.clock()).date()

    async def prefetch_adjacent(self, user, window: DateRange) -> None:
        """Warm the previous and next week unless a fresh snapshot already exists."""
        for shift in ADJACENT_WEEK_SHIFTS:
            adjacent = window.shifted(shift)
            try:
                if await self.find_fresh(user.id, adjacent) is not None:
                    continue
                await self.fetch_and_store(user, adjacent)
                logger.debug(f"Prefetched timetable for {user.id} {adjacent.start}..{adjacent.end}")
            except (UntisServiceError, SQLAlchemyError) as e:
                logger.debug(f"Timetable prefetch skipped for {user.id}: {e}")
        await self.maybe_prune()

    async def maybe_prune(self) -> int:
        """Run retention pruning at most once per prune interval."""
        now = self.clock()
        if self._last_prune is not None and now - self._last_prune < self.prune_interval:
            return 0
        self._last_prune = now
        try:
            deleted = await self.store.prune_snapshots(now - self.max_age, self.history_per_range)
        except SQLAlchemyError as e:
            logger.warning(f"Timetable pruning failed: {e}")
            return 0
        if deleted:
            logger.info(f"Pruned {deleted} old timetable snapshots")
        return deleted

    async def drain(self) -> None:
        """Wait for outstanding prefetch tasks."""
        if self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)
