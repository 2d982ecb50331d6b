"""Grouping of consecutive lessons into single notifications."""

from typing import List, Sequence

from app.services.timetable.records import Lesson
from app.utils.time import hhmm_to_minutes

MAX_MERGE_GAP_MINUTES = 5


def can_merge_lessons(first: Lesson, second: Lesson) -> bool:
    """
    Whether ``second`` continues ``first`` for notification purposes.

    Subject, teachers, rooms, status and date must all match and the break
    between them must be at most five minutes; overlapping lessons merge.
    """
    if first.subject != second.subject:
        return False
    if first.teacher_names != second.teacher_names:
        return False
    if first.room_names != second.room_names:
        return False
    if first.status != second.status:
        return False
    if first.date != second.date:
        return False
    gap = hhmm_to_minutes(second.start_time) - hhmm_to_minutes(first.end_time)
    return gap <= MAX_MERGE_GAP_MINUTES


def group_lessons(lessons: Sequence[Lesson]) -> List[List[Lesson]]:
    """Split lessons into maximal runs of mergeable neighbours, ordered by (date, start)."""
    if not lessons:
        return []

    ordered = sorted(lessons, key=lambda lesson: (lesson.date, lesson.start_time))
    groups: List[List[Lesson]] = []
    current = [ordered[0]]
    for lesson in ordered[1:]:
        if can_merge_lessons(current[-1], lesson):
            current.append(lesson)
        else:
            groups.append(current)
            current = [lesson]
    groups.append(current)
    return groups


def canonical_signature(lesson: Lesson) -> str:
    """Stable lesson identity for dedupe keys when WebUntis ids are missing."""
    subject = lesson.subject or "unknown"
    teachers = ",".join(lesson.teacher_names) or "no-teacher"
    rooms = ",".join(lesson.room_names) or "no-room"
    return f"{subject}:{teachers}:{rooms}"
