"""
Decides which notifications a user should receive.

The planner is pure: it looks at a user's preferences, the previous state
and freshly fetched lessons or absences and returns notification intents.
Whether an intent is new is decided later by the engine via its dedupe key.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

from app.core.config import settings
from app.models.notifications import NotificationTimeScope, NotificationType
from app.services.notifications.grouping import group_lessons
from app.services.notifications.intents import (
    NotificationIntent, absence_change_key, absence_new_key, fnv1a_32,
    group_key, lesson_key, to_base36
)
from app.services.timetable.records import AbsenceRecord, Lesson
from app.utils.time import format_hm, format_ymd, hhmm_to_minutes, local_now, to_ymd, utcnow

logger = logging.getLogger(__name__)

UPCOMING_MIN_MINUTES = 3
UPCOMING_MAX_MINUTES = 5

# Per-device preference keys by notification type
DEVICE_FLAG_KEYS = {
    NotificationType.UPCOMING_LESSON: "upcomingLessonsEnabled",
    NotificationType.CANCELLED_LESSON: "cancelledLessonsEnabled",
    NotificationType.IRREGULAR_LESSON: "irregularLessonsEnabled",
    NotificationType.TIMETABLE_CHANGE: "timetableChangesEnabled",
    NotificationType.ACCESS_REQUEST: "accessRequestsEnabled",
    NotificationType.ABSENCE_NEW: "absencesEnabled",
    NotificationType.ABSENCE_CHANGE: "absencesEnabled",
}


@dataclass
class NotificationPreferences:
    """A user's notification settings, with defaults for users without a row."""
    push_enabled: bool = False
    timetable_changes: bool = True
    cancelled_lessons: bool = True
    irregular_lessons: bool = True
    upcoming_lessons: bool = False
    access_requests: bool = True
    absences: bool = False
    cancelled_scope: str = NotificationTimeScope.DAY.value
    irregular_scope: str = NotificationTimeScope.DAY.value
    device_preferences: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    @classmethod
    def from_model(cls, row) -> "NotificationPreferences":
        if row is None:
            return cls()
        return cls(
            push_enabled=bool(row.push_notifications_enabled),
            timetable_changes=bool(row.timetable_changes_enabled),
            cancelled_lessons=bool(row.cancelled_lessons_enabled),
            irregular_lessons=bool(row.irregular_lessons_enabled),
            upcoming_lessons=row.upcoming_lessons_enabled is True,
            access_requests=row.access_requests_enabled is not False,
            absences=bool(row.absences_enabled),
            cancelled_scope=row.cancelled_lessons_time_scope or NotificationTimeScope.DAY.value,
            irregular_scope=row.irregular_lessons_time_scope or NotificationTimeScope.DAY.value,
            device_preferences=dict(row.device_preferences or {}),
        )

    def type_enabled(self, notification_type: NotificationType) -> bool:
        return {
            NotificationType.TIMETABLE_CHANGE: self.timetable_changes,
            NotificationType.CANCELLED_LESSON: self.cancelled_lessons,
            NotificationType.IRREGULAR_LESSON: self.irregular_lessons,
            NotificationType.UPCOMING_LESSON: self.upcoming_lessons,
            NotificationType.ACCESS_REQUEST: self.access_requests,
            NotificationType.ABSENCE_NEW: self.absences,
            NotificationType.ABSENCE_CHANGE: self.absences,
        }.get(notification_type, True)

    def device_flag(self, endpoint: str, notification_type: NotificationType) -> Optional[bool]:
        entry = self.device_preferences.get(endpoint) or {}
        key = DEVICE_FLAG_KEYS.get(notification_type)
        if key is None:
            return None
        value = entry.get(key)
        return value if isinstance(value, bool) else None

    @property
    def any_device_upcoming(self) -> bool:
        return any(
            isinstance(entry, dict) and entry.get("upcomingLessonsEnabled") is True
            for entry in self.device_preferences.values()
        )

    @property
    def upcoming_opted_in(self) -> bool:
        return self.upcoming_lessons or self.any_device_upcoming

    def should_deliver(self, endpoint: str, notification_type: NotificationType) -> bool:
        """Device override first; without one the user-level flag decides."""
        flag = self.device_flag(endpoint, notification_type)
        if flag is not None:
            return flag
        return self.type_enabled(notification_type)


@dataclass
class UserNotificationState:
    user_id: str
    preferences: NotificationPreferences
    timezone: str = "Europe/Berlin"
    # Lessons of the previous snapshot for change detection
    previous_lessons: Optional[List[Lesson]] = None
    previous_snapshot_id: Optional[str] = None
    known_absences: Dict[int, AbsenceRecord] = field(default_factory=dict)


@dataclass
class _Clock:
    now_utc: datetime
    local: datetime

    @property
    def today(self) -> int:
        return to_ymd(self.local.date())

    @property
    def now_hm(self) -> int:
        return self.local.hour * 100 + self.local.minute

    @property
    def now_minutes(self) -> int:
        return self.local.hour * 60 + self.local.minute

    def week_bounds(self):
        monday = self.local.date() - timedelta(days=self.local.weekday())
        return to_ymd(monday), to_ymd(monday + timedelta(days=6))


def _participant_changes(lesson: Lesson) -> List[str]:
    parts = []
    teachers = ", ".join(f"{t.original_name} → {t.name}" for t in lesson.teachers if t.original_name)
    if teachers:
        parts.append(f"Teacher: {teachers}")
    rooms = ", ".join(f"{r.original_name} → {r.name}" for r in lesson.rooms if r.original_name)
    if rooms:
        parts.append(f"Room: {rooms}")
    return parts


def lesson_signature(lesson: Lesson) -> str:
    return "|".join([
        str(lesson.id),
        str(lesson.date),
        str(lesson.start_time),
        str(lesson.end_time),
        lesson.subject,
        ",".join(lesson.teacher_names),
        ",".join(lesson.room_names),
        lesson.status.value,
    ])


class NotificationPlanner:
    """Turns fresh timetable data into notification intents."""

    def __init__(self, upcoming_expiry_minutes: int = None):
        self.upcoming_expiry = timedelta(
            minutes=upcoming_expiry_minutes or settings.UPCOMING_NOTIFICATION_EXPIRY_MINUTES
        )

    def decide(
        self,
        state: UserNotificationState,
        fresh_lessons: Optional[Sequence[Lesson]] = None,
        fresh_absences: Optional[Sequence[AbsenceRecord]] = None,
        now: Optional[datetime] = None,
        upcoming_only: bool = False
    ) -> List[NotificationIntent]:
        now_utc = now or utcnow()
        clock = _Clock(now_utc=now_utc, local=local_now(state.timezone, now_utc))
        prefs = state.preferences
        intents: List[NotificationIntent] = []

        if fresh_lessons is not None:
            lessons = list(fresh_lessons)
            if upcoming_only:
                intents.extend(self.plan_upcoming(state, lessons, clock))
            elif prefs.timetable_changes:
                if state.previous_lessons is not None:
                    intents.extend(self.plan_timetable_change(state, lessons))
                if prefs.cancelled_lessons:
                    intents.extend(self.plan_cancelled(state, lessons, clock))
                if prefs.irregular_lessons:
                    intents.extend(self.plan_irregular(state, lessons, clock))

        if fresh_absences is not None and prefs.absences:
            intents.extend(self.plan_absences(state, fresh_absences))

        return intents

    def _in_scope(self, lesson: Lesson, scope: str, clock: _Clock) -> bool:
        if scope == NotificationTimeScope.WEEK.value:
            week_start, week_end = clock.week_bounds()
            return week_start <= lesson.date <= week_end
        return lesson.date == clock.today

    def _group_has_ended(self, group: List[Lesson], clock: _Clock) -> bool:
        last = group[-1]
        return last.date < clock.today or (last.date == clock.today and last.end_time < clock.now_hm)

    def _scoped_groups(self, lessons: List[Lesson], scope: str, clock: _Clock) -> List[List[Lesson]]:
        # Earlier lessons of today stay in so they can merge with later ones
        eligible = [
            lesson for lesson in lessons
            if lesson.date >= clock.today and self._in_scope(lesson, scope, clock)
        ]
        return [group for group in group_lessons(eligible) if not self._group_has_ended(group, clock)]

    def plan_cancelled(self, state: UserNotificationState, lessons: List[Lesson], clock: _Clock) -> List[NotificationIntent]:
        cancelled = [lesson for lesson in lessons if lesson.is_cancelled]
        intents = []
        for group in self._scoped_groups(cancelled, state.preferences.cancelled_scope, clock):
            first, last = group[0], group[-1]
            subject = first.subject or "Lesson"
            if len(group) == 1:
                intents.append(NotificationIntent(
                    user_id=state.user_id,
                    type=NotificationType.CANCELLED_LESSON,
                    title="Lesson Cancelled",
                    message=f"{subject} on {format_ymd(first.date)} {format_hm(first.start_time)} has been cancelled",
                    data=first.to_dict(),
                    dedupe_key=lesson_key("cancelled", state.user_id, first),
                ))
            else:
                intents.append(NotificationIntent(
                    user_id=state.user_id,
                    type=NotificationType.CANCELLED_LESSON,
                    title="Lessons Cancelled",
                    message=(
                        f"{subject} lessons on {format_ymd(first.date)} from {format_hm(first.start_time)} "
                        f"to {format_hm(last.end_time)} have been cancelled"
                    ),
                    data={"lessons": [lesson.to_dict() for lesson in group], "merged": True, "count": len(group)},
                    dedupe_key=group_key("cancelled", state.user_id, group),
                ))
        return intents

    def plan_irregular(self, state: UserNotificationState, lessons: List[Lesson], clock: _Clock) -> List[NotificationIntent]:
        irregular = [lesson for lesson in lessons if lesson.is_irregular]
        intents = []
        for group in self._scoped_groups(irregular, state.preferences.irregular_scope, clock):
            first, last = group[0], group[-1]
            subject = first.subject or "Lesson"
            flags = sorted({flag for lesson in group for flag in lesson.irregular_flags()})
            if len(group) == 1:
                own_flags = first.irregular_flags()
                intents.append(NotificationIntent(
                    user_id=state.user_id,
                    type=NotificationType.IRREGULAR_LESSON,
                    title="Irregular Lesson",
                    message=(
                        f"{subject} on {format_ymd(first.date)} {format_hm(first.start_time)} "
                        f"has irregular changes ({', '.join(own_flags)})"
                    ),
                    data=first.to_dict(),
                    dedupe_key=lesson_key("irregular", state.user_id, first, own_flags),
                ))
            else:
                intents.append(NotificationIntent(
                    user_id=state.user_id,
                    type=NotificationType.IRREGULAR_LESSON,
                    title="Irregular Lessons",
                    message=(
                        f"{subject} lessons on {format_ymd(first.date)} from {format_hm(first.start_time)} "
                        f"to {format_hm(last.end_time)} have irregular changes ({', '.join(flags)})"
                    ),
                    data={
                        "lessons": [lesson.to_dict() for lesson in group],
                        "merged": True,
                        "count": len(group),
                        "irregularFlags": flags,
                    },
                    dedupe_key=group_key("irregular", state.user_id, group, flags),
                ))
        return intents

    def plan_upcoming(self, state: UserNotificationState, lessons: List[Lesson], clock: _Clock) -> List[NotificationIntent]:
        if not state.preferences.upcoming_opted_in:
            return []

        eligible = []
        for lesson in lessons:
            if not lesson.start_time or lesson.date != clock.today or lesson.is_cancelled:
                continue
            minutes_until = hhmm_to_minutes(lesson.start_time) - clock.now_minutes
            if UPCOMING_MIN_MINUTES <= minutes_until <= UPCOMING_MAX_MINUTES:
                eligible.append(lesson)

        expires_at = clock.now_utc + self.upcoming_expiry
        intents = []
        for group in group_lessons(eligible):
            first, last = group[0], group[-1]
            subject = first.subject or "Lesson"
            room = ", ".join(r.name for r in first.rooms)
            teacher = ", ".join(t.name for t in first.teachers)
            irregular = any(lesson.is_irregular for lesson in group)
            changes: List[str] = []
            for lesson in group:
                for part in _participant_changes(lesson):
                    if part not in changes:
                        changes.append(part)

            if len(group) == 1:
                title = "Upcoming lesson in 5 minutes"
                headline = f"{subject} @ {format_hm(first.start_time)}"
                data = {"lesson": first.to_dict(), "irregular": irregular, "irregularDetails": changes}
                dedupe_key = lesson_key("upcoming", state.user_id, first)
            else:
                title = "Upcoming lessons in 5 minutes"
                headline = f"{subject} from {format_hm(first.start_time)} to {format_hm(last.end_time)}"
                data = {
                    "lessons": [lesson.to_dict() for lesson in group],
                    "merged": True,
                    "count": len(group),
                    "irregular": irregular,
                    "irregularDetails": changes,
                }
                dedupe_key = group_key("upcoming", state.user_id, group)

            details = [headline]
            if room:
                details.append(f"Room {room}")
            if teacher:
                details.append(f"with {teacher}")
            message = " • ".join(details)
            if irregular and changes:
                message += f" | Irregular: {', '.join(changes)}"

            intents.append(NotificationIntent(
                user_id=state.user_id,
                type=NotificationType.UPCOMING_LESSON,
                title=title,
                message=message,
                data=data,
                dedupe_key=dedupe_key,
                expires_at=expires_at,
            ))
        return intents

    def plan_timetable_change(self, state: UserNotificationState, lessons: List[Lesson]) -> List[NotificationIntent]:
        previous = {lesson_signature(lesson) for lesson in state.previous_lessons or []}
        current = {lesson_signature(lesson) for lesson in lessons}
        if not previous or previous == current:
            return []

        changed = len(previous ^ current)
        digest = to_base36(fnv1a_32("\n".join(sorted(current))))
        # A comparison against the same baseline is reported once
        baseline = state.previous_snapshot_id or to_base36(fnv1a_32("\n".join(sorted(previous))))
        first_day = min((lesson.date for lesson in lessons), default=None)
        week = format_ymd(first_day) if first_day else "this week"
        return [NotificationIntent(
            user_id=state.user_id,
            type=NotificationType.TIMETABLE_CHANGE,
            title="Timetable Changed",
            message=f"Your timetable from {week} has changed ({changed} lesson entries updated)",
            data={"added": len(current - previous), "removed": len(previous - current)},
            dedupe_key=f"timetable_change:{state.user_id}:{baseline}:{digest}",
        )]

    def plan_absences(self, state: UserNotificationState, absences: Sequence[AbsenceRecord]) -> List[NotificationIntent]:
        intents = []
        for fresh in absences:
            existing = state.known_absences.get(fresh.untis_id)
            day = format_ymd(fresh.start_date)
            if existing is None:
                intents.append(NotificationIntent(
                    user_id=state.user_id,
                    type=NotificationType.ABSENCE_NEW,
                    title="New Absence",
                    message=f"New absence recorded for {day}" + (f": {fresh.reason}" if fresh.reason else ""),
                    data=fresh.to_dict(),
                    dedupe_key=absence_new_key(state.user_id, fresh),
                ))
                continue

            changes = []
            if existing.is_excused != fresh.is_excused:
                changes.append("Excused" if fresh.is_excused else "Unexcused")
            if (existing.reason or None) != (fresh.reason or None):
                changes.append(f"Reason: {fresh.reason or 'None'}")
            if changes:
                intents.append(NotificationIntent(
                    user_id=state.user_id,
                    type=NotificationType.ABSENCE_CHANGE,
                    title="Absence Updated",
                    message=f"Absence on {day} updated: {', '.join(changes)}",
                    data={**fresh.to_dict(), "changes": changes},
                    dedupe_key=absence_change_key(state.user_id, fresh, changes),
                ))
        return intents
