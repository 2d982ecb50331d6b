"""Web Push transport for browser push notifications."""

import asyncio
import enum
import json
import logging
from typing import Any, Dict, Optional

from pywebpush import webpush, WebPushException

from app.core.config import settings

logger = logging.getLogger(__name__)


class PushOutcome(str, enum.Enum):
    SUCCESS = "success"
    GONE = "gone"
    TOO_LARGE = "too_large"
    ERROR = "error"


class WebPushService:
    """Sends one payload to one browser subscription using VAPID."""

    def __init__(
        self,
        vapid_private_key: Optional[str] = None,
        vapid_subject: Optional[str] = None,
        ttl: Optional[int] = None
    ):
        self.vapid_private_key = vapid_private_key or settings.WEB_PUSH_VAPID_PRIVATE_KEY
        self._vapid_claims = {"sub": vapid_subject or settings.WEB_PUSH_VAPID_SUBJECT}
        self.ttl = ttl or settings.WEB_PUSH_TTL_SECONDS

        if not self.vapid_private_key:
            logger.warning("VAPID keys not configured. Web Push notifications will be disabled.")

    def is_available(self) -> bool:
        """Check if Web Push is configured."""
        return bool(self.vapid_private_key)

    async def send(self, subscription: Dict[str, Any], payload: Dict[str, Any]) -> PushOutcome:
        """
        Deliver a payload to a subscription.

        Args:
            subscription: ``{"endpoint": ..., "keys": {"p256dh": ..., "auth": ...}}``
            payload: JSON-serializable notification body

        Returns:
            ``GONE`` for 404/410 and ``TOO_LARGE`` for 413 so the caller can
            deactivate the subscription; ``ERROR`` for anything else that failed.
        """
        if not self.is_available():
            return PushOutcome.ERROR

        endpoint = subscription.get("endpoint", "unknown")
        try:
            await asyncio.to_thread(
                webpush,
                subscription_info=subscription,
                data=json.dumps(payload),
                vapid_private_key=self.vapid_private_key,
                vapid_claims=dict(self._vapid_claims),
                ttl=self.ttl,
            )
            return PushOutcome.SUCCESS
        except WebPushException as e:
            status_code = e.response.status_code if getattr(e, "response", None) is not None else None
            if status_code in (404, 410):
                logger.info(f"Push subscription expired or invalid: {endpoint}")
                return PushOutcome.GONE
            if status_code == 413:
                logger.warning(f"Notification payload too large for {endpoint}")
                return PushOutcome.TOO_LARGE
            logger.error(f"Web Push error for {endpoint}: {e}")
            return PushOutcome.ERROR
        except Exception as e:
            logger.error(f"Unexpected Web Push error for {endpoint}: {e}")
            return PushOutcome.ERROR

    @staticmethod
    def build_payload(notification) -> Dict[str, Any]:
        """Web Push notification body for a stored notification."""
        return {
            "title": notification.title,
            "body": notification.message,
            "tag": notification.type,
            "data": {
                "notificationId": notification.id,
                "type": notification.type,
                **(notification.data or {}),
            },
        }
