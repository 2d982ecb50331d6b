from .webpush_service import PushOutcome, WebPushService
from .intents import NotificationIntent
from .planner import NotificationPlanner, NotificationPreferences, UserNotificationState
from .store import NotificationStore
from .notification_manager import NotificationEngine

__all__ = [
    "PushOutcome",
    "WebPushService",
    "NotificationIntent",
    "NotificationPlanner",
    "NotificationPreferences",
    "UserNotificationState",
    "NotificationStore",
    "NotificationEngine",
]
