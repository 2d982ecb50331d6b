"""
Timetable operations exposed to the API and the background jobs.
"""

import logging
from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from app.core.config import settings
from app.integrations.untis.errors import (
    AccessDeniedError, BadCredentialsError, UntisServiceError, UserNotFoundError
)
from app.integrations.untis.parsing import exams_from_lessons, parse_absences, parse_exams
from app.integrations.untis.session import UntisSessionFactory
from app.schemas.timetable import TimetableResponse
from app.services.timetable.cache import CacheResult, TimetableCache
from app.services.timetable.records import AbsenceRecord
from app.services.timetable.store import TimetableStore
from app.utils.time import to_ymd, utcnow

logger = logging.getLogger(__name__)


class TimetableService:
    """Access-checked timetable reads plus holiday, exam and absence fetches."""

    def __init__(
        self,
        cache: TimetableCache,
        store: TimetableStore,
        sessions: UntisSessionFactory,
        holiday_ttl_hours: int = None,
        clock: Callable[[], datetime] = utcnow
    ):
        self.cache = cache
        self.store = store
        self.sessions = sessions
        self.clock = clock
        self.holiday_ttl = timedelta(hours=holiday_ttl_hours or settings.HOLIDAY_CACHE_TTL_HOURS)
        self._holiday_cache: Dict[str, Tuple[datetime, List[Dict[str, Any]]]] = {}

    async def _require_user(self, user_id: str):
        user = await self.store.get_user(user_id)
        if user is None:
            raise UserNotFoundError("User not found", details={"user_id": user_id})
        return user

    async def get_or_fetch_timetable_range(
        self,
        requester_id: str,
        target_user_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None
    ) -> TimetableResponse:
        """
        Return the target user's timetable for a range.

        Users may read their own timetable; administrators may read anyone's.
        """
        logger.debug(f"Timetable request by {requester_id} for {target_user_id} ({start} - {end})")
        if requester_id != target_user_id:
            requester = await self._require_user(requester_id)
            if not requester.is_admin:
                raise AccessDeniedError(
                    "Not allowed to view this timetable",
                    details={"requester_id": requester_id, "target_user_id": target_user_id},
                )

        result: CacheResult = await self.cache.get_or_fetch(target_user_id, start, end)
        return TimetableResponse.from_cache_result(target_user_id, result)

    async def get_holidays(self, user_id: str) -> List[Dict[str, Any]]:
        """Holidays for the user's school, cached in memory per user."""
        now = self.clock()
        cached = self._holiday_cache.get(user_id)
        if cached is not None and now - cached[0] < self.holiday_ttl:
            return cached[1]

        user = await self._require_user(user_id)
        try:
            async with self.sessions.open(user) as client:
                holidays = await client.get_holidays()
        except BadCredentialsError:
            raise
        except UntisServiceError as e:
            if not e.retryable or cached is None:
                raise
            logger.warning(f"Holiday fetch failed for {user_id}, serving expired cache: {e.message}")
            return cached[1]

        self._holiday_cache[user_id] = (now, holidays)
        return holidays

    async def refresh_exams(self, user_id: str, start: date, end: date) -> int:
        """
        Fetch and store exams for a date range.

        When the exam endpoint returns nothing the range is walked week by
        week and exam lessons are taken from the timetable instead.
        """
        user = await self._require_user(user_id)
        async with self.sessions.open(user) as client:
            exams = parse_exams(await client.get_exams_for_range(start, end))
            if not exams:
                raw_lessons = []
                week = start - timedelta(days=start.weekday())
                while week <= end:
                    raw_lessons.extend(await client.get_lessons_for_week(week))
                    week += timedelta(days=7)
                start_ymd, end_ymd = to_ymd(start), to_ymd(end)
                exams = [
                    exam for exam in exams_from_lessons(raw_lessons)
                    if start_ymd <= exam.date <= end_ymd
                ]

        await self.store.upsert_exams(user.id, exams)
        logger.debug(f"Refreshed {len(exams)} exams for {user_id}")
        return len(exams)

    async def fetch_absences(self, user_id: str, start: date, end: date) -> List[AbsenceRecord]:
        user = await self._require_user(user_id)
        async with self.sessions.open(user) as client:
            raw = await client.get_absences_for_range(start, end)
        return parse_absences(raw)
