from .user import User
from .timetable import TimetableSnapshot, Homework, Exam, Absence
from .notifications import (
    Notification, NotificationSettings, NotificationSubscription,
    AdminNotificationSettings, NotificationType, NotificationTimeScope
)

__all__ = [
    "User",
    "TimetableSnapshot",
    "Homework",
    "Exam",
    "Absence",
    "Notification",
    "NotificationSettings",
    "NotificationSubscription",
    "AdminNotificationSettings",
    "NotificationType",
    "NotificationTimeScope",
]
