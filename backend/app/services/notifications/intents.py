"""
Notification intents and their idempotency keys.

A dedupe key identifies the real-world event behind a notification, so the
same cancellation or reminder produces the same key on every scheduler
tick and across restarts.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence

from app.models.notifications import NotificationType
from app.services.notifications.grouping import canonical_signature
from app.services.timetable.records import AbsenceRecord, Lesson

FNV_OFFSET_BASIS = 2166136261
FNV_PRIME = 16777619
ACCESS_REQUEST_BASE_LIMIT = 160
ACCESS_REQUEST_BUCKET_MINUTES = 5

_REMINDER_SUFFIX = re.compile(r"\(reminder[^)]+\)", re.IGNORECASE)
_BASE36_DIGITS = "0123456789abcdefghijklmnopqrstuvwxyz"


@dataclass
class NotificationIntent:
    """A notification the engine should create unless it already exists."""
    user_id: str
    type: NotificationType
    title: str
    message: str
    data: Dict[str, Any] = field(default_factory=dict)
    dedupe_key: Optional[str] = None
    expires_at: Optional[datetime] = None


def fnv1a_32(text: str) -> int:
    value = FNV_OFFSET_BASIS
    for char in text:
        value ^= ord(char)
        value = (value * FNV_PRIME) & 0xFFFFFFFF
    return value


def to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36_DIGITS[remainder])
    return "".join(reversed(digits))


def lesson_reference(lesson: Lesson) -> str:
    """Identifier used in single-lesson keys: id, then lessonId, then subject."""
    if lesson.id is not None:
        return str(lesson.id)
    if lesson.extra.get("lessonId") is not None:
        return str(lesson.extra["lessonId"])
    return lesson.subject or "Lesson"


def group_reference(lessons: Iterable[Lesson]) -> str:
    refs = []
    for lesson in lessons:
        if lesson.id is not None:
            refs.append(str(lesson.id))
        elif lesson.extra.get("lessonId") is not None:
            refs.append(str(lesson.extra["lessonId"]))
        else:
            refs.append(canonical_signature(lesson))
    return ",".join(sorted(refs))


def lesson_key(prefix: str, user_id: str, lesson: Lesson, flags: Sequence[str] = ()) -> str:
    parts = [prefix, user_id, lesson_reference(lesson), str(lesson.date), str(lesson.start_time)]
    if flags:
        parts.append("|".join(sorted(flags)))
    return ":".join(parts)


def group_key(prefix: str, user_id: str, group: Sequence[Lesson], flags: Sequence[str] = ()) -> str:
    first, last = group[0], group[-1]
    parts = [
        f"{prefix}_merged",
        user_id,
        group_reference(group),
        str(first.date),
        str(first.start_time),
        str(last.end_time),
    ]
    if flags:
        parts.append("|".join(sorted(flags)))
    return ":".join(parts)


def absence_new_key(user_id: str, absence: AbsenceRecord) -> str:
    return f"absence_new:{user_id}:{absence.untis_id}"


def absence_change_key(user_id: str, absence: AbsenceRecord, changes: List[str]) -> str:
    return f"absence_change:{user_id}:{absence.untis_id}:{','.join(sorted(changes))}"


def five_minute_bucket(now_utc: datetime) -> str:
    bucket = now_utc.replace(
        minute=(now_utc.minute // ACCESS_REQUEST_BUCKET_MINUTES) * ACCESS_REQUEST_BUCKET_MINUTES,
        second=0,
        microsecond=0,
        tzinfo=None,
    )
    return bucket.strftime("%Y-%m-%dT%H:%M:%S.000Z")


def access_request_key(manager_id: str, username: str, message: Optional[str], now_utc: datetime) -> str:
    """
    Key for an access request notification.

    Identical requests inside one five minute window collapse into one;
    a repeated request after a decline gets a new key in a later window.
    """
    cleaned = _REMINDER_SUFFIX.sub("", message or "").strip()[:ACCESS_REQUEST_BASE_LIMIT]
    digest = to_base36(fnv1a_32(f"{username}:{cleaned}"))
    return f"access_req:{manager_id}:v2:{digest}:{five_minute_bucket(now_utc)}"
