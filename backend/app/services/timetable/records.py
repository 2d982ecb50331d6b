"""
In-memory representations of WebUntis data.

Lessons are kept in the WebUntis wire shape (``su``/``te``/``ro`` element
lists, ``code`` status) when serialized into snapshot payloads, so clients
that already understand WebUntis timetables can consume them unchanged.
"""

import enum
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

# Raw keys that carry lesson identifiers besides ``id``
LESSON_ID_ALIASES = ("id", "lsnumber", "lsNumber", "ls", "lessonId")

_LESSON_KEYS = {"id", "date", "startTime", "endTime", "su", "te", "ro", "code", "homework", "exams"}


class LessonStatus(str, enum.Enum):
    REGULAR = "regular"
    CANCELLED = "cancelled"
    IRREGULAR = "irregular"

    @classmethod
    def from_code(cls, code: Optional[str]) -> "LessonStatus":
        if code == cls.CANCELLED.value:
            return cls.CANCELLED
        if code == cls.IRREGULAR.value:
            return cls.IRREGULAR
        return cls.REGULAR


@dataclass
class LessonParticipant:
    """A subject, teacher or room element of a lesson."""
    name: str
    id: Optional[int] = None
    long_name: Optional[str] = None
    original_name: Optional[str] = None  # Set when substituted

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "LessonParticipant":
        return cls(
            name=str(raw.get("name") or ""),
            id=raw.get("id"),
            long_name=raw.get("longname"),
            original_name=raw.get("orgname") or None,
        )

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"name": self.name}
        if self.id is not None:
            result["id"] = self.id
        if self.long_name is not None:
            result["longname"] = self.long_name
        if self.original_name:
            result["orgname"] = self.original_name
        return result


@dataclass
class HomeworkRecord:
    untis_id: int
    date: int  # Due date, YYYYMMDD
    subject: str = ""
    text: str = ""
    lesson_id: Optional[int] = None
    subject_id: Optional[int] = None
    remark: Optional[str] = None
    completed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.untis_id,
            "lessonId": self.lesson_id,
            "date": self.date,
            "subject": {"id": self.subject_id, "name": self.subject},
            "text": self.text,
            "remark": self.remark,
            "completed": self.completed,
        }

    @classmethod
    def from_model(cls, row) -> "HomeworkRecord":
        return cls(
            untis_id=row.untis_id,
            date=row.date,
            subject=row.subject or "",
            text=row.text or "",
            lesson_id=row.lesson_id,
            subject_id=row.subject_id,
            remark=row.remark,
            completed=bool(row.completed),
        )


@dataclass
class ExamRecord:
    untis_id: int
    date: int
    start_time: int
    end_time: int
    subject: str = ""
    name: str = ""
    text: Optional[str] = None
    subject_id: Optional[int] = None
    teachers: Optional[List[Any]] = None
    rooms: Optional[List[Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "id": self.untis_id,
            "date": self.date,
            "startTime": self.start_time,
            "endTime": self.end_time,
            "subject": {"id": self.subject_id, "name": self.subject},
            "name": self.name,
            "text": self.text,
        }
        if self.teachers is not None:
            result["teachers"] = self.teachers
        if self.rooms is not None:
            result["rooms"] = self.rooms
        return result

    @classmethod
    def from_model(cls, row) -> "ExamRecord":
        return cls(
            untis_id=row.untis_id,
            date=row.date,
            start_time=row.start_time,
            end_time=row.end_time,
            subject=row.subject or "",
            name=row.name or "",
            text=row.text,
            subject_id=row.subject_id,
            teachers=row.teachers,
            rooms=row.rooms,
        )


@dataclass
class AbsenceRecord:
    untis_id: int
    start_date: int
    end_date: int
    start_time: Optional[int] = None
    end_time: Optional[int] = None
    reason: Optional[str] = None
    is_excused: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.untis_id,
            "startDate": self.start_date,
            "endDate": self.end_date,
            "startTime": self.start_time,
            "endTime": self.end_time,
            "reason": self.reason,
            "isExcused": self.is_excused,
        }

    @classmethod
    def from_model(cls, row) -> "AbsenceRecord":
        return cls(
            untis_id=row.untis_id,
            start_date=row.start_date,
            end_date=row.end_date,
            start_time=row.start_time,
            end_time=row.end_time,
            reason=row.reason,
            is_excused=bool(row.is_excused),
        )


@dataclass
class Lesson:
    """One timetable period with its attached homework and exams."""
    id: Optional[int]
    date: int
    start_time: int
    end_time: int
    subjects: List[LessonParticipant] = field(default_factory=list)
    teachers: List[LessonParticipant] = field(default_factory=list)
    rooms: List[LessonParticipant] = field(default_factory=list)
    status: LessonStatus = LessonStatus.REGULAR
    homework: List[HomeworkRecord] = field(default_factory=list)
    exams: List[ExamRecord] = field(default_factory=list)
    # Remaining WebUntis fields (lsnumber, info, lstext, activityType, ...)
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def subject(self) -> str:
        if self.subjects and self.subjects[0].name:
            return self.subjects[0].name
        return str(self.extra.get("activityType") or "")

    @property
    def teacher_names(self) -> List[str]:
        return sorted(t.name for t in self.teachers)

    @property
    def room_names(self) -> List[str]:
        return sorted(r.name for r in self.rooms)

    @property
    def is_cancelled(self) -> bool:
        return self.status == LessonStatus.CANCELLED

    @property
    def has_teacher_substitution(self) -> bool:
        return any(t.original_name for t in self.teachers)

    @property
    def has_room_substitution(self) -> bool:
        return any(r.original_name for r in self.rooms)

    @property
    def is_irregular(self) -> bool:
        return (
            self.status == LessonStatus.IRREGULAR
            or self.has_teacher_substitution
            or self.has_room_substitution
        )

    def irregular_flags(self) -> List[str]:
        flags = []
        if self.status == LessonStatus.IRREGULAR:
            flags.append("schedule")
        if self.has_teacher_substitution:
            flags.append("teacher")
        if self.has_room_substitution:
            flags.append("room")
        return flags

    def identifier_aliases(self) -> List[int]:
        aliases = [self.id] + [self.extra.get(key) for key in LESSON_ID_ALIASES[1:]]
        return [value for value in aliases if isinstance(value, int) and not isinstance(value, bool)]

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "Lesson":
        return cls(
            id=raw.get("id"),
            date=int(raw.get("date") or 0),
            start_time=int(raw.get("startTime") or 0),
            end_time=int(raw.get("endTime") or 0),
            subjects=[LessonParticipant.from_dict(s) for s in raw.get("su") or []],
            teachers=[LessonParticipant.from_dict(t) for t in raw.get("te") or []],
            rooms=[LessonParticipant.from_dict(r) for r in raw.get("ro") or []],
            status=LessonStatus.from_code(raw.get("code")),
            extra={k: v for k, v in raw.items() if k not in _LESSON_KEYS},
        )

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = dict(self.extra)
        result.update({
            "id": self.id,
            "date": self.date,
            "startTime": self.start_time,
            "endTime": self.end_time,
            "su": [s.to_dict() for s in self.subjects],
            "te": [t.to_dict() for t in self.teachers],
            "ro": [r.to_dict() for r in self.rooms],
        })
        if self.status != LessonStatus.REGULAR:
            result["code"] = self.status.value
        if self.homework:
            result["homework"] = [hw.to_dict() for hw in self.homework]
        if self.exams:
            result["exams"] = [exam.to_dict() for exam in self.exams]
        return result


def lessons_from_payload(payload: Optional[List[Dict[str, Any]]]) -> List[Lesson]:
    """Rebuild lessons from a stored snapshot payload."""
    if not isinstance(payload, list):
        return []
    return [Lesson.from_dict(item) for item in payload if isinstance(item, dict)]
