"""Conversion of raw WebUntis responses into timetable records."""

import logging
from typing import Any, Dict, Iterable, List, Optional

from app.services.timetable.records import (
    AbsenceRecord, ExamRecord, HomeworkRecord, Lesson
)

logger = logging.getLogger(__name__)

EXAM_LESSON_TYPES = {"ex"}


def _int_or_none(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _subject_name(value: Any) -> str:
    if isinstance(value, dict):
        return str(value.get("name") or "")
    return str(value or "")


def _subject_id(value: Any) -> Optional[int]:
    if isinstance(value, dict):
        return _int_or_none(value.get("id"))
    return None


def parse_lessons(raw_lessons: Optional[Iterable[Dict[str, Any]]]) -> List[Lesson]:
    if not raw_lessons:
        return []
    return [Lesson.from_dict(raw) for raw in raw_lessons if isinstance(raw, dict)]


def parse_homework(response: Any) -> List[HomeworkRecord]:
    """
    Parse the homework endpoint response.

    The endpoint returns homework items and, separately, the lessons they
    belong to; the subject is taken from the linked lesson when present.
    """
    if isinstance(response, list):
        items, lessons = response, []
    elif isinstance(response, dict):
        items = response.get("homeworks") or []
        lessons = response.get("lessons") or []
    else:
        return []

    subject_by_lesson = {
        lesson["id"]: lesson["subject"]
        for lesson in lessons
        if isinstance(lesson, dict) and isinstance(lesson.get("id"), int) and isinstance(lesson.get("subject"), str)
    }

    records = []
    for item in items:
        untis_id = _int_or_none(item.get("id"))
        due = _int_or_none(item.get("dueDate")) or _int_or_none(item.get("date"))
        if untis_id is None or due is None:
            logger.debug(f"Skipping homework without id or date: {item}")
            continue
        lesson_id = _int_or_none(item.get("lessonId"))
        subject = subject_by_lesson.get(lesson_id) or _subject_name(item.get("subject"))
        records.append(HomeworkRecord(
            untis_id=untis_id,
            date=due,
            subject=subject,
            text=item.get("text") or "",
            lesson_id=lesson_id,
            subject_id=_subject_id(item.get("subject")),
            remark=item.get("remark"),
            completed=bool(item.get("completed")),
        ))
    return records


def merge_exam_entries(exams: Iterable[ExamRecord]) -> List[ExamRecord]:
    """Collapse entries that share an exam id into one spanning min start to max end."""
    merged: Dict[int, ExamRecord] = {}
    for exam in exams:
        existing = merged.get(exam.untis_id)
        if existing is None:
            merged[exam.untis_id] = exam
            continue
        existing.start_time = min(existing.start_time, exam.start_time)
        existing.end_time = max(existing.end_time, exam.end_time)
        existing.subject = existing.subject or exam.subject
        existing.text = existing.text or exam.text
        existing.teachers = existing.teachers or exam.teachers
        existing.rooms = existing.rooms or exam.rooms
    return list(merged.values())


def parse_exams(raw_exams: Optional[Iterable[Dict[str, Any]]]) -> List[ExamRecord]:
    if not raw_exams:
        return []
    records = []
    for raw in raw_exams:
        untis_id = _int_or_none(raw.get("id"))
        exam_date = _int_or_none(raw.get("date")) or _int_or_none(raw.get("examDate"))
        start = _int_or_none(raw.get("startTime"))
        end = _int_or_none(raw.get("endTime"))
        if untis_id is None or exam_date is None or start is None or end is None:
            logger.debug(f"Skipping incomplete exam entry: {raw}")
            continue
        records.append(ExamRecord(
            untis_id=untis_id,
            date=exam_date,
            start_time=start,
            end_time=end,
            subject=_subject_name(raw.get("subject")),
            name=raw.get("name") or "",
            text=raw.get("text"),
            subject_id=_subject_id(raw.get("subject")),
            teachers=raw.get("teachers"),
            rooms=raw.get("rooms"),
        ))
    return merge_exam_entries(records)


def is_exam_lesson(raw: Dict[str, Any]) -> bool:
    return raw.get("lstype") in EXAM_LESSON_TYPES or bool(raw.get("exam"))


def exams_from_lessons(raw_lessons: Optional[Iterable[Dict[str, Any]]]) -> List[ExamRecord]:
    """Build exam records from exam-flagged timetable lessons."""
    records = []
    for raw in raw_lessons or []:
        if not isinstance(raw, dict) or not is_exam_lesson(raw):
            continue
        lesson = Lesson.from_dict(raw)
        exam_info = raw.get("exam") if isinstance(raw.get("exam"), dict) else {}
        untis_id = _int_or_none(exam_info.get("id")) or lesson.id
        if untis_id is None:
            continue
        records.append(ExamRecord(
            untis_id=untis_id,
            date=lesson.date,
            start_time=lesson.start_time,
            end_time=lesson.end_time,
            subject=lesson.subject,
            name=exam_info.get("name") or raw.get("lstext") or lesson.subject,
            text=exam_info.get("text") or raw.get("info"),
            subject_id=lesson.subjects[0].id if lesson.subjects else None,
            teachers=[t.name for t in lesson.teachers] or None,
            rooms=[r.name for r in lesson.rooms] or None,
        ))
    return merge_exam_entries(records)


def parse_absences(raw_absences: Optional[Iterable[Dict[str, Any]]]) -> List[AbsenceRecord]:
    if not raw_absences:
        return []
    records = []
    for raw in raw_absences:
        untis_id = _int_or_none(raw.get("id"))
        start_date = _int_or_none(raw.get("startDate"))
        if untis_id is None or start_date is None:
            continue
        excuse = raw.get("excuse") if isinstance(raw.get("excuse"), dict) else {}
        records.append(AbsenceRecord(
            untis_id=untis_id,
            start_date=start_date,
            end_date=_int_or_none(raw.get("endDate")) or start_date,
            start_time=_int_or_none(raw.get("startTime")),
            end_time=_int_or_none(raw.get("endTime")),
            reason=raw.get("reason") or None,
            is_excused=bool(raw.get("isExcused", excuse.get("isExcused", False))),
        ))
    return records
