"""
Persistence for timetable snapshots and school records.

Every method opens its own session from the injected factory so callers
running in background tasks never share a session across awaits.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import and_, delete, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models.timetable import Absence, Exam, Homework, TimetableSnapshot
from app.models.user import User
from app.services.timetable.records import AbsenceRecord, ExamRecord, HomeworkRecord
from app.utils.time import utcnow

logger = logging.getLogger(__name__)


def dialect_insert(session: AsyncSession, model):
    """Dialect-specific INSERT supporting ON CONFLICT upserts."""
    name = session.bind.dialect.name if session.bind is not None else "sqlite"
    if name == "postgresql":
        return postgresql.insert(model)
    return sqlite.insert(model)


def _range_filter(start: Optional[datetime], end: Optional[datetime]):
    return and_(
        TimetableSnapshot.range_start.is_(None) if start is None else TimetableSnapshot.range_start == start,
        TimetableSnapshot.range_end.is_(None) if end is None else TimetableSnapshot.range_end == end,
    )


class TimetableStore:
    """Snapshot, homework, exam and absence storage."""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    # Users

    async def get_user(self, user_id: str) -> Optional[User]:
        async with self.session_factory() as session:
            return await session.get(User, user_id)

    async def list_active_user_ids(self, active_since: datetime, limit: int) -> List[str]:
        """Users with stored credentials that were active since the cutoff."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(User.id)
                .where(
                    User.last_active_at >= active_since,
                    User.untis_secret_ciphertext.is_not(None),
                    User.untis_secret_nonce.is_not(None),
                )
                .order_by(User.last_active_at.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def list_user_ids_with_credentials(self) -> List[str]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(User.id).where(User.untis_secret_ciphertext.is_not(None)).order_by(User.id)
            )
            return list(result.scalars().all())

    # Snapshots

    async def create_snapshot(
        self,
        owner_id: str,
        range_start: Optional[datetime],
        range_end: Optional[datetime],
        payload: List[Dict[str, Any]],
        created_at: Optional[datetime] = None
    ) -> TimetableSnapshot:
        snapshot = TimetableSnapshot(
            owner_id=owner_id,
            range_start=range_start,
            range_end=range_end,
            payload=payload,
            created_at=created_at or utcnow(),
        )
        async with self.session_factory() as session:
            session.add(snapshot)
            await session.commit()
            await session.refresh(snapshot)
        return snapshot

    async def find_fresh_snapshot(
        self,
        owner_id: str,
        range_start: datetime,
        range_end: datetime,
        created_after: datetime
    ) -> Optional[TimetableSnapshot]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(TimetableSnapshot)
                .where(
                    TimetableSnapshot.owner_id == owner_id,
                    _range_filter(range_start, range_end),
                    TimetableSnapshot.created_at > created_after,
                )
                .order_by(TimetableSnapshot.created_at.desc())
                .limit(1)
            )
            return result.scalars().first()

    async def find_latest_snapshot(
        self,
        owner_id: str,
        range_start: Optional[datetime] = None,
        range_end: Optional[datetime] = None,
        exact: bool = False
    ) -> Optional[TimetableSnapshot]:
        """Newest snapshot for the exact range, else (unless ``exact``) the newest of any range."""
        async with self.session_factory() as session:
            if exact or range_start is not None or range_end is not None:
                result = await session.execute(
                    select(TimetableSnapshot)
                    .where(TimetableSnapshot.owner_id == owner_id, _range_filter(range_start, range_end))
                    .order_by(TimetableSnapshot.created_at.desc())
                    .limit(1)
                )
                match = result.scalars().first()
                if match is not None or exact:
                    return match

            result = await session.execute(
                select(TimetableSnapshot)
                .where(TimetableSnapshot.owner_id == owner_id)
                .order_by(TimetableSnapshot.created_at.desc())
                .limit(1)
            )
            return result.scalars().first()

    async def prune_snapshots(self, older_than: datetime, keep_per_range: int) -> int:
        """Delete snapshots past max age, then all but the newest per range bucket."""
        deleted = 0
        async with self.session_factory() as session:
            result = await session.execute(
                delete(TimetableSnapshot).where(TimetableSnapshot.created_at < older_than)
            )
            deleted += result.rowcount or 0

            buckets = await session.execute(
                select(
                    TimetableSnapshot.owner_id,
                    TimetableSnapshot.range_start,
                    TimetableSnapshot.range_end,
                ).where(
                    TimetableSnapshot.range_start.is_not(None),
                    TimetableSnapshot.range_end.is_not(None),
                ).distinct()
            )
            for owner_id, range_start, range_end in buckets.all():
                keep = await session.execute(
                    select(TimetableSnapshot.id)
                    .where(TimetableSnapshot.owner_id == owner_id, _range_filter(range_start, range_end))
                    .order_by(TimetableSnapshot.created_at.desc())
                    .limit(keep_per_range)
                )
                keep_ids = list(keep.scalars().all())
                result = await session.execute(
                    delete(TimetableSnapshot).where(
                        TimetableSnapshot.owner_id == owner_id,
                        _range_filter(range_start, range_end),
                        TimetableSnapshot.id.not_in(keep_ids),
                    )
                )
                deleted += result.rowcount or 0

            await session.commit()
        return deleted

    # School records

    async def upsert_homework(self, user_id: str, records: Iterable[HomeworkRecord]) -> int:
        rows = [
            {
                "user_id": user_id,
                "untis_id": hw.untis_id,
                "lesson_id": hw.lesson_id,
                "date": hw.date,
                "subject_id": hw.subject_id,
                "subject": hw.subject,
                "text": hw.text,
                "remark": hw.remark,
                "completed": hw.completed,
                "fetched_at": utcnow(),
            }
            for hw in records
        ]
        return await self._upsert(Homework, rows)

    async def upsert_exams(self, user_id: str, records: Iterable[ExamRecord]) -> int:
        rows = [
            {
                "user_id": user_id,
                "untis_id": exam.untis_id,
                "date": exam.date,
                "start_time": exam.start_time,
                "end_time": exam.end_time,
                "subject_id": exam.subject_id,
                "subject": exam.subject,
                "name": exam.name,
                "text": exam.text,
                "teachers": exam.teachers,
                "rooms": exam.rooms,
                "fetched_at": utcnow(),
            }
            for exam in records
        ]
        return await self._upsert(Exam, rows)

    async def upsert_absences(self, user_id: str, records: Iterable[AbsenceRecord]) -> int:
        rows = [
            {
                "user_id": user_id,
                "untis_id": absence.untis_id,
                "start_date": absence.start_date,
                "end_date": absence.end_date,
                "start_time": absence.start_time,
                "end_time": absence.end_time,
                "reason": absence.reason,
                "is_excused": absence.is_excused,
                "fetched_at": utcnow(),
            }
            for absence in records
        ]
        return await self._upsert(Absence, rows)

    async def _upsert(self, model, rows: List[Dict[str, Any]]) -> int:
        # One row per untis_id; the last occurrence wins
        rows = list({row["untis_id"]: row for row in rows}.values())
        if not rows:
            return 0
        async with self.session_factory() as session:
            stmt = dialect_insert(session, model).values(rows)
            update_columns = {
                key: stmt.excluded[key]
                for key in rows[0]
                if key not in ("user_id", "untis_id")
            }
            stmt = stmt.on_conflict_do_update(
                index_elements=[model.user_id, model.untis_id],
                set_=update_columns,
            )
            await session.execute(stmt)
            await session.commit()
        logger.debug(f"Upserted {len(rows)} rows into {model.__tablename__}")
        return len(rows)

    async def list_homework(self, user_id: str, start_ymd: Optional[int] = None, end_ymd: Optional[int] = None) -> List[HomeworkRecord]:
        stmt = select(Homework).where(Homework.user_id == user_id)
        if start_ymd is not None and end_ymd is not None:
            stmt = stmt.where(Homework.date >= start_ymd, Homework.date <= end_ymd)
        async with self.session_factory() as session:
            result = await session.execute(stmt.order_by(Homework.untis_id))
            return [HomeworkRecord.from_model(row) for row in result.scalars().all()]

    async def list_exams(self, user_id: str, start_ymd: Optional[int] = None, end_ymd: Optional[int] = None) -> List[ExamRecord]:
        stmt = select(Exam).where(Exam.user_id == user_id)
        if start_ymd is not None and end_ymd is not None:
            stmt = stmt.where(Exam.date >= start_ymd, Exam.date <= end_ymd)
        async with self.session_factory() as session:
            result = await session.execute(stmt.order_by(Exam.untis_id))
            return [ExamRecord.from_model(row) for row in result.scalars().all()]

    async def list_absences(self, user_id: str, start_ymd: int, end_ymd: int) -> List[AbsenceRecord]:
        """Absences overlapping the window."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(Absence)
                .where(
                    Absence.user_id == user_id,
                    Absence.start_date <= end_ymd,
                    Absence.end_date >= start_ymd,
                )
                .order_by(Absence.untis_id)
            )
            return [AbsenceRecord.from_model(row) for row in result.scalars().all()]
