"""
SQLAlchemy models for cached timetable snapshots and the school records
(homework, exams, absences) fetched alongside them.
"""

import uuid

from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime, Text, JSON,
    ForeignKey, Index, UniqueConstraint
)

from app.core.database import Base
from app.utils.time import utcnow


class TimetableSnapshot(Base):
    """Timestamped copy of a user's lessons for one date range."""

    __tablename__ = "timetable_snapshots"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    owner_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)

    # Normalized school-local range; both NULL for an unbounded request
    range_start = Column(DateTime, nullable=True)
    range_end = Column(DateTime, nullable=True)

    payload = Column(JSON, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_timetable_snapshots_owner_created", "owner_id", "created_at"),
        Index("ix_timetable_snapshots_owner_range_created", "owner_id", "range_start", "range_end", "created_at"),
    )

    def __repr__(self):
        return f"<TimetableSnapshot(owner={self.owner_id}, range={self.range_start}..{self.range_end}, created={self.created_at})>"


class Homework(Base):
    __tablename__ = "homework"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    untis_id = Column(Integer, nullable=False)

    lesson_id = Column(Integer, nullable=True)
    date = Column(Integer, nullable=False, index=True)  # Due date, YYYYMMDD
    subject_id = Column(Integer, nullable=True)
    subject = Column(String(255), nullable=False, default="")
    text = Column(Text, nullable=False, default="")
    remark = Column(Text, nullable=True)
    completed = Column(Boolean, default=False)

    fetched_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "untis_id", name="uq_homework_user_untis"),
    )


class Exam(Base):
    __tablename__ = "exams"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    untis_id = Column(Integer, nullable=False)

    date = Column(Integer, nullable=False, index=True)  # YYYYMMDD
    start_time = Column(Integer, nullable=False)        # HHMM
    end_time = Column(Integer, nullable=False)          # HHMM
    subject_id = Column(Integer, nullable=True)
    subject = Column(String(255), nullable=False, default="")
    name = Column(String(255), nullable=False, default="")
    text = Column(Text, nullable=True)
    teachers = Column(JSON, nullable=True)
    rooms = Column(JSON, nullable=True)

    fetched_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "untis_id", name="uq_exams_user_untis"),
    )


class Absence(Base):
    __tablename__ = "absences"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    untis_id = Column(Integer, nullable=False)

    start_date = Column(Integer, nullable=False)
    end_date = Column(Integer, nullable=False)
    start_time = Column(Integer, nullable=True)
    end_time = Column(Integer, nullable=True)
    reason = Column(Text, nullable=True)
    is_excused = Column(Boolean, nullable=False, default=False)

    fetched_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "untis_id", name="uq_absences_user_untis"),
    )
