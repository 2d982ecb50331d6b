"""
Persistence for notifications, push subscriptions and notification settings.
"""

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import delete, or_, select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.models.notifications import (
    AdminNotificationSettings, Notification, NotificationSettings, NotificationSubscription
)
from app.models.user import User
from app.services.notifications.intents import NotificationIntent
from app.utils.time import utcnow

logger = logging.getLogger(__name__)


class NotificationStore:
    """Notification records and the settings that decide who receives them."""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    # Notifications

    async def find_by_dedupe_key(self, user_id: str, dedupe_key: str) -> Optional[Notification]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Notification)
                .where(Notification.user_id == user_id, Notification.dedupe_key == dedupe_key)
                .limit(1)
            )
            return result.scalars().first()

    async def find_recent_duplicate(
        self,
        user_id: str,
        notification_type: str,
        title: str,
        message: str,
        since: datetime
    ) -> Optional[Notification]:
        """Identical notification created after ``since``; used for intents without a key."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(Notification)
                .where(
                    Notification.user_id == user_id,
                    Notification.type == notification_type,
                    Notification.title == title,
                    Notification.message == message,
                    Notification.created_at >= since,
                )
                .limit(1)
            )
            return result.scalars().first()

    async def create_notification(self, intent: NotificationIntent, created_at: Optional[datetime] = None) -> Notification:
        """Insert a notification; a duplicate dedupe key raises ``IntegrityError``."""
        notification = Notification(
            user_id=intent.user_id,
            type=intent.type.value,
            title=intent.title,
            message=intent.message,
            data=intent.data,
            dedupe_key=intent.dedupe_key,
            expires_at=intent.expires_at,
            created_at=created_at or utcnow(),
        )
        async with self.session_factory() as session:
            session.add(notification)
            await session.commit()
            await session.refresh(notification)
        return notification

    async def mark_sent(self, notification_id: str) -> None:
        async with self.session_factory() as session:
            await session.execute(
                update(Notification).where(Notification.id == notification_id).values(sent=True)
            )
            await session.commit()

    async def delete_expired(self, now: datetime) -> int:
        async with self.session_factory() as session:
            result = await session.execute(
                delete(Notification).where(
                    Notification.expires_at.is_not(None),
                    Notification.expires_at < now,
                )
            )
            await session.commit()
            return result.rowcount or 0

    # Settings and subscriptions

    async def get_settings(self, user_id: str) -> Optional[NotificationSettings]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(NotificationSettings).where(NotificationSettings.user_id == user_id)
            )
            return result.scalars().first()

    async def get_admin_settings(self) -> Optional[AdminNotificationSettings]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(AdminNotificationSettings).order_by(AdminNotificationSettings.id).limit(1)
            )
            return result.scalars().first()

    async def list_active_subscriptions(self, user_id: str) -> List[NotificationSubscription]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(NotificationSubscription)
                .where(NotificationSubscription.user_id == user_id, NotificationSubscription.active.is_(True))
                .order_by(NotificationSubscription.id)
            )
            return list(result.scalars().all())

    async def deactivate_subscription(self, subscription_id: int) -> None:
        async with self.session_factory() as session:
            await session.execute(
                update(NotificationSubscription)
                .where(NotificationSubscription.id == subscription_id)
                .values(active=False)
            )
            await session.commit()

    # Recipients

    async def list_user_manager_ids(self) -> List[str]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(User.id).where(User.is_user_manager.is_(True)).order_by(User.id)
            )
            return list(result.scalars().all())

    async def _list_users_with_settings(self, *conditions) -> List[User]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(User)
                .join(NotificationSettings, NotificationSettings.user_id == User.id)
                .where(
                    User.untis_secret_ciphertext.is_not(None),
                    User.untis_secret_nonce.is_not(None),
                    or_(*conditions),
                )
                .order_by(User.id)
            )
            return list(result.scalars().all())

    async def list_timetable_refresh_users(self) -> List[User]:
        """Users whose weekly timetable the change check refreshes: push or change notifications on."""
        return await self._list_users_with_settings(
            NotificationSettings.push_notifications_enabled.is_(True),
            NotificationSettings.timetable_changes_enabled.is_(True),
        )

    async def list_upcoming_candidate_users(self) -> List[User]:
        """Users that may have upcoming reminders enabled globally or on a device."""
        return await self._list_users_with_settings(
            NotificationSettings.upcoming_lessons_enabled.is_(True),
            NotificationSettings.device_preferences.is_not(None),
        )

    async def list_absence_notification_users(self) -> List[User]:
        return await self._list_users_with_settings(
            NotificationSettings.absences_enabled.is_(True),
        )
