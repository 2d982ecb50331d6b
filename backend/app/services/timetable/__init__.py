"""
Timetable caching and enrichment.

Lessons fetched from WebUntis are enriched with homework and exams and
stored as snapshots per normalized date range; reads are served from the
newest snapshot while it is fresh and fall back to older ones when
WebUntis is unavailable.
"""

from .records import (
    Lesson, LessonParticipant, LessonStatus,
    HomeworkRecord, ExamRecord, AbsenceRecord
)
from .ranges import DateRange, normalize_range
from .enrichment import EnrichmentResolver, ExamPreference, prefer_lesson_for_exam, score_exam_candidate

__all__ = [
    "Lesson",
    "LessonParticipant",
    "LessonStatus",
    "HomeworkRecord",
    "ExamRecord",
    "AbsenceRecord",
    "DateRange",
    "normalize_range",
    "EnrichmentResolver",
    "ExamPreference",
    "prefer_lesson_for_exam",
    "score_exam_candidate"
]
