"""Notification engine: idempotent creation and push fan-out."""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from app.core.config import settings
from app.models.notifications import Notification, NotificationSubscription, NotificationType
from app.services.notifications.intents import NotificationIntent, access_request_key
from app.services.notifications.planner import NotificationPreferences
from app.services.notifications.store import NotificationStore
from app.services.notifications.webpush_service import PushOutcome, WebPushService
from app.utils.time import utcnow

logger = logging.getLogger(__name__)


class NotificationEngine:
    """Creates each notification at most once and pushes it to the user's devices."""

    def __init__(
        self,
        store: NotificationStore,
        push: WebPushService,
        clock: Callable[[], datetime] = utcnow,
        legacy_dedupe_days: int = None
    ):
        self.store = store
        self.push = push
        self.clock = clock
        self.legacy_window = timedelta(days=legacy_dedupe_days or settings.NOTIFICATION_LEGACY_DEDUPE_DAYS)
        logger.info("Notification engine initialized")

    async def create(self, intent: NotificationIntent) -> bool:
        """
        Create a notification unless it already exists.

        With a dedupe key the ``(user_id, dedupe_key)`` pair decides; without
        one an identical notification from the last 30 days does. A unique
        violation on insert means another writer won the race.

        Returns:
            True if a new notification was created
        """
        now = self.clock()
        if intent.dedupe_key:
            if await self.store.find_by_dedupe_key(intent.user_id, intent.dedupe_key) is not None:
                logger.debug(f"Skipping duplicate notification {intent.dedupe_key}")
                return False
        elif await self.store.find_recent_duplicate(
            intent.user_id, intent.type.value, intent.title, intent.message, now - self.legacy_window
        ) is not None:
            logger.debug(f"Skipping repeated {intent.type.value} notification for {intent.user_id}")
            return False

        try:
            notification = await self.store.create_notification(intent, created_at=now)
        except IntegrityError:
            logger.debug(f"Notification {intent.dedupe_key} already exists")
            return False

        await self.dispatch(notification)
        return True

    async def create_many(self, intents: List[NotificationIntent]) -> int:
        created = 0
        for intent in intents:
            if await self.create(intent):
                created += 1
        return created

    async def dispatch(self, notification: Notification) -> int:
        """
        Push a stored notification to every eligible active subscription.

        Delivery failures never propagate; gone and oversized subscriptions
        are deactivated. Returns the number of successful deliveries.
        """
        try:
            preferences = NotificationPreferences.from_model(
                await self.store.get_settings(notification.user_id)
            )
            if not preferences.push_enabled:
                return 0
            subscriptions = await self.store.list_active_subscriptions(notification.user_id)
        except SQLAlchemyError as e:
            logger.warning(f"Could not load push targets for {notification.user_id}: {e}")
            return 0

        notification_type = NotificationType(notification.type)
        targets = [
            sub for sub in subscriptions
            if preferences.should_deliver(sub.endpoint, notification_type)
        ]
        if not targets:
            return 0
        if not self.push.is_available():
            logger.warning("VAPID keys not configured - skipping push notification")
            return 0

        payload = self.push.build_payload(notification)
        outcomes = await asyncio.gather(
            *(self._deliver(sub, payload) for sub in targets),
            return_exceptions=True,
        )
        delivered = sum(1 for outcome in outcomes if outcome is PushOutcome.SUCCESS)

        try:
            await self.store.mark_sent(notification.id)
        except SQLAlchemyError as e:
            logger.warning(f"Failed to mark notification {notification.id} as sent: {e}")

        logger.info(f"Push notification sent to {delivered}/{len(targets)} devices for user {notification.user_id}")
        return delivered

    async def _deliver(self, subscription: NotificationSubscription, payload) -> PushOutcome:
        outcome = await self.push.send(subscription.to_subscription_info(), payload)
        if outcome in (PushOutcome.GONE, PushOutcome.TOO_LARGE):
            try:
                await self.store.deactivate_subscription(subscription.id)
                logger.info(f"Marked subscription as inactive: {subscription.endpoint[:50]}...")
            except SQLAlchemyError as e:
                logger.warning(f"Failed to deactivate subscription {subscription.id}: {e}")
        return outcome

    async def notify_access_request(self, username: str, message: Optional[str] = None) -> int:
        """Tell every user manager about a new access request."""
        admin_settings = await self.store.get_admin_settings()
        if admin_settings is not None and admin_settings.enable_access_request_notifications is False:
            return 0

        now = self.clock()
        body = f"{username} has requested access"
        if message:
            body += f": {message}"

        created = 0
        for manager_id in await self.store.list_user_manager_ids():
            intent = NotificationIntent(
                user_id=manager_id,
                type=NotificationType.ACCESS_REQUEST,
                title="New Access Request",
                message=body,
                data={"username": username, "message": message},
                dedupe_key=access_request_key(manager_id, username, message, now),
                expires_at=now + timedelta(days=settings.ACCESS_REQUEST_EXPIRY_DAYS),
            )
            if await self.create(intent):
                created += 1
        return created

    async def cleanup_expired(self) -> int:
        deleted = await self.store.delete_expired(self.clock())
        if deleted:
            logger.info(f"Cleaned up {deleted} expired notifications")
        return deleted
