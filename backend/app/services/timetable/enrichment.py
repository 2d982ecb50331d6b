"""
Attaches homework and exams to timetable lessons.

Homework is linked by lesson id when WebUntis provides one, otherwise by
subject within a one week window around the lesson. Exams are linked by
date plus subject, or by time overlap for exams without a subject. When
one exam lands on several parallel lessons the candidates are scored and
the weaker lessons lose the attachment.
"""

import enum
import logging
from dataclasses import replace
from datetime import timedelta
from itertools import combinations
from typing import Dict, Iterable, List, Set

from app.services.timetable.records import ExamRecord, HomeworkRecord, Lesson
from app.utils.time import from_ymd, hhmm_to_minutes

logger = logging.getLogger(__name__)

HOMEWORK_SUBJECT_WINDOW_DAYS = 7
PLACEHOLDER_TEACHERS = frozenset({"", "---", "?"})

SUBJECT_MATCH_SCORE = 10
REAL_TEACHER_SCORE = 5
HAS_SUBJECT_SCORE = 1


class ExamPreference(str, enum.Enum):
    FIRST = "first"
    SECOND = "second"
    TIE = "tie"


def _norm(value: str) -> str:
    return (value or "").strip().lower()


def subjects_match(a: str, b: str) -> bool:
    """Case-insensitive subject equality; empty subjects never match."""
    if not _norm(a) or not _norm(b):
        return False
    return _norm(a) == _norm(b)


def intervals_overlap(start_a: int, end_a: int, start_b: int, end_b: int) -> bool:
    """Half-open [start, end) overlap on HHMM values."""
    return (
        hhmm_to_minutes(start_a) < hhmm_to_minutes(end_b)
        and hhmm_to_minutes(start_b) < hhmm_to_minutes(end_a)
    )


def lessons_overlap(a: Lesson, b: Lesson) -> bool:
    return a.date == b.date and intervals_overlap(a.start_time, a.end_time, b.start_time, b.end_time)


def score_exam_candidate(lesson: Lesson, exam: ExamRecord) -> int:
    score = 0
    if subjects_match(lesson.subject, exam.subject):
        score += SUBJECT_MATCH_SCORE
    if any(t.name.strip() not in PLACEHOLDER_TEACHERS for t in lesson.teachers):
        score += REAL_TEACHER_SCORE
    if _norm(lesson.subject):
        score += HAS_SUBJECT_SCORE
    return score


def prefer_lesson_for_exam(first: Lesson, second: Lesson, exam: ExamRecord) -> ExamPreference:
    """Decide which of two overlapping lessons should keep an exam."""
    first_score = score_exam_candidate(first, exam)
    second_score = score_exam_candidate(second, exam)
    if first_score > second_score:
        return ExamPreference.FIRST
    if second_score > first_score:
        return ExamPreference.SECOND
    return ExamPreference.TIE


def homework_matches(homework: HomeworkRecord, lesson: Lesson, window_days: int = HOMEWORK_SUBJECT_WINDOW_DAYS) -> bool:
    if homework.lesson_id is not None and homework.lesson_id in lesson.identifier_aliases():
        return True
    if not subjects_match(homework.subject, lesson.subject):
        return False
    if homework.date == lesson.date:
        return True
    try:
        distance = abs(from_ymd(homework.date) - from_ymd(lesson.date))
    except ValueError:
        return False
    return distance <= timedelta(days=window_days)


def exam_matches(exam: ExamRecord, lesson: Lesson) -> bool:
    if exam.date != lesson.date or lesson.is_cancelled:
        return False
    if subjects_match(exam.subject, lesson.subject):
        return True
    if not intervals_overlap(exam.start_time, exam.end_time, lesson.start_time, lesson.end_time):
        return False
    return not _norm(exam.subject) or subjects_match(exam.subject, lesson.subject)


def lesson_sort_key(lesson: Lesson):
    return (
        lesson.date,
        lesson.start_time,
        lesson.end_time,
        _norm(lesson.subject),
        lesson.id if lesson.id is not None else -1,
        tuple(lesson.teacher_names),
        tuple(lesson.room_names),
        lesson.status.value,
    )


class EnrichmentResolver:
    """Pure homework/exam attachment over one batch of lessons."""

    def __init__(self, homework_window_days: int = HOMEWORK_SUBJECT_WINDOW_DAYS):
        self.homework_window_days = homework_window_days

    def enrich(
        self,
        lessons: Iterable[Lesson],
        homework_records: Iterable[HomeworkRecord],
        exam_records: Iterable[ExamRecord]
    ) -> List[Lesson]:
        ordered = sorted(lessons, key=lesson_sort_key)
        homework = sorted(homework_records, key=lambda hw: (hw.untis_id, hw.date))
        exams = sorted(exam_records, key=lambda exam: (exam.untis_id, exam.date, exam.start_time))

        attached_homework = [
            [hw for hw in homework if homework_matches(hw, lesson, self.homework_window_days)]
            for lesson in ordered
        ]

        candidates: Dict[int, List[int]] = {}
        for index, lesson in enumerate(ordered):
            for exam in exams:
                if exam_matches(exam, lesson):
                    candidates.setdefault(exam.untis_id, []).append(index)

        exams_by_id = {exam.untis_id: exam for exam in exams}
        attached_exams: List[List[ExamRecord]] = [[] for _ in ordered]
        for exam_id, indices in candidates.items():
            exam = exams_by_id[exam_id]
            losers = self._conflict_losers(ordered, indices, exam)
            for index in indices:
                if index not in losers:
                    attached_exams[index].append(exam)

        enriched = [
            replace(
                lesson,
                homework=attached_homework[i],
                exams=sorted(attached_exams[i], key=lambda exam: exam.untis_id),
            )
            for i, lesson in enumerate(ordered)
        ]
        logger.debug(
            f"Enriched {len(enriched)} lessons with {len(homework)} homework and {len(exams)} exam records"
        )
        return enriched

    def _conflict_losers(self, lessons: List[Lesson], indices: List[int], exam: ExamRecord) -> Set[int]:
        losers: Set[int] = set()
        for first, second in combinations(indices, 2):
            if not lessons_overlap(lessons[first], lessons[second]):
                continue
            preference = prefer_lesson_for_exam(lessons[first], lessons[second], exam)
            if preference == ExamPreference.FIRST:
                losers.add(second)
            elif preference == ExamPreference.SECOND:
                losers.add(first)
        return losers
