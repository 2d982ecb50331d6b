from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime, Text, ForeignKey, JSON, UniqueConstraint, Index
)
from sqlalchemy.sql import func
import enum
import uuid

from app.core.database import Base
from app.utils.time import utcnow


class NotificationType(str, enum.Enum):
    """Types of notifications that can be sent."""
    CANCELLED_LESSON = "cancelled_lesson"
    IRREGULAR_LESSON = "irregular_lesson"
    UPCOMING_LESSON = "upcoming_lesson"
    TIMETABLE_CHANGE = "timetable_change"
    ACCESS_REQUEST = "access_request"
    ABSENCE_NEW = "absence_new"
    ABSENCE_CHANGE = "absence_change"


class NotificationTimeScope(str, enum.Enum):
    DAY = "day"
    WEEK = "week"


class NotificationSettings(Base):
    """User notification preferences and settings."""
    __tablename__ = "notification_settings"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True, index=True)

    # General preferences
    push_notifications_enabled = Column(Boolean, default=False)

    # Notification type preferences
    timetable_changes_enabled = Column(Boolean, default=True)
    cancelled_lessons_enabled = Column(Boolean, default=True)
    irregular_lessons_enabled = Column(Boolean, default=True)
    upcoming_lessons_enabled = Column(Boolean, default=False)
    access_requests_enabled = Column(Boolean, default=True)
    absences_enabled = Column(Boolean, default=False)

    cancelled_lessons_time_scope = Column(String(10), default=NotificationTimeScope.DAY.value)
    irregular_lessons_time_scope = Column(String(10), default=NotificationTimeScope.DAY.value)

    # Per-device overrides keyed by push subscription endpoint
    device_preferences = Column(JSON(none_as_null=True), nullable=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())


class NotificationSubscription(Base):
    """Browser push subscriptions."""
    __tablename__ = "notification_subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)

    endpoint = Column(Text, nullable=False, unique=True)
    p256dh = Column(String(255), nullable=False)
    auth = Column(String(255), nullable=False)
    user_agent = Column(String(500), nullable=True)
    active = Column(Boolean, default=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    def to_subscription_info(self):
        return {
            "endpoint": self.endpoint,
            "keys": {"p256dh": self.p256dh, "auth": self.auth},
        }


class Notification(Base):
    """Individual notification records."""
    __tablename__ = "notifications"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    # Target user
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)

    # Notification metadata
    type = Column(String(50), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    data = Column(JSON, nullable=True)

    # Idempotency key; unique per user when present
    dedupe_key = Column(String(512), nullable=True)

    sent = Column(Boolean, default=False)
    read = Column(Boolean, default=False)
    expires_at = Column(DateTime, nullable=True, index=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "dedupe_key", name="uq_notifications_user_dedupe_key"),
        Index("ix_notifications_user_type_created", "user_id", "type", "created_at"),
    )


class AdminNotificationSettings(Base):
    """Global notification switches managed by administrators."""
    __tablename__ = "admin_notification_settings"

    id = Column(Integer, primary_key=True)
    timetable_fetch_interval = Column(Integer, default=30)  # Minutes
    enable_timetable_notifications = Column(Boolean, default=True)
    enable_access_request_notifications = Column(Boolean, default=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
