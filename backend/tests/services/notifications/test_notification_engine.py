"""Tests for idempotent notification creation and push fan-out."""

from datetime import datetime, timedelta
from types import SimpleNamespace
from unittest.mock import AsyncMock, Mock

import pytest
from sqlalchemy.exc import IntegrityError

from app.models.notifications import NotificationType
from app.services.notifications.intents import NotificationIntent
from app.services.notifications.notification_manager import NotificationEngine
from app.services.notifications.webpush_service import PushOutcome

NOW = datetime(2025, 1, 8, 9, 0)


class FakeStore:
    """In-memory stand-in for NotificationStore."""

    def __init__(self):
        self.notifications = {}
        self.settings = {}
        self.subscriptions = {}
        self.admin_settings = None
        self.managers = []
        self.deactivated = []
        self.sent = []
        self.find_recent_duplicate = AsyncMock(return_value=None)
        self.delete_expired = AsyncMock(return_value=0)

    async def find_by_dedupe_key(self, user_id, dedupe_key):
        return self.notifications.get((user_id, dedupe_key))

    async def create_notification(self, intent, created_at=None):
        key = (intent.user_id, intent.dedupe_key)
        if intent.dedupe_key and key in self.notifications:
            raise IntegrityError("INSERT", {}, Exception("unique"))
        notification = SimpleNamespace(
            id=f"n{len(self.notifications) + 1}",
            user_id=intent.user_id,
            type=intent.type.value,
            title=intent.title,
            message=intent.message,
            data=intent.data,
            dedupe_key=intent.dedupe_key,
            expires_at=intent.expires_at,
            created_at=created_at,
        )
        self.notifications[key if intent.dedupe_key else (intent.user_id, notification.id)] = notification
        return notification

    async def mark_sent(self, notification_id):
        self.sent.append(notification_id)

    async def get_settings(self, user_id):
        return self.settings.get(user_id)

    async def get_admin_settings(self):
        return self.admin_settings

    async def list_active_subscriptions(self, user_id):
        return list(self.subscriptions.get(user_id, []))

    async def deactivate_subscription(self, subscription_id):
        self.deactivated.append(subscription_id)

    async def list_user_manager_ids(self):
        return list(self.managers)


def settings_row(**overrides):
    values = dict(
        push_notifications_enabled=True,
        timetable_changes_enabled=True,
        cancelled_lessons_enabled=True,
        irregular_lessons_enabled=True,
        upcoming_lessons_enabled=False,
        access_requests_enabled=True,
        absences_enabled=False,
        cancelled_lessons_time_scope="day",
        irregular_lessons_time_scope="day",
        device_preferences=None,
    )
    values.update(overrides)
    return SimpleNamespace(**values)


def subscription(id, endpoint):
    sub = Mock()
    sub.id = id
    sub.endpoint = endpoint
    sub.to_subscription_info.return_value = {"endpoint": endpoint, "keys": {"p256dh": "k", "auth": "a"}}
    return sub


def intent(**kwargs):
    values = dict(
        user_id="u1",
        type=NotificationType.CANCELLED_LESSON,
        title="Lesson Cancelled",
        message="MA on 2025-01-08 10:00 has been cancelled",
        dedupe_key="cancelled:u1:5:20250108:1000",
    )
    values.update(kwargs)
    return NotificationIntent(**values)


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def push():
    push = Mock()
    push.is_available.return_value = True
    push.build_payload.return_value = {"title": "t"}
    push.send = AsyncMock(return_value=PushOutcome.SUCCESS)
    return push


@pytest.fixture
def engine(store, push):
    return NotificationEngine(store, push, clock=lambda: NOW, legacy_dedupe_days=30)


class TestCreate:
    """Creation is idempotent per dedupe key."""

    @pytest.mark.asyncio
    async def test_creates_once_per_key(self, engine, store):
        assert await engine.create(intent()) is True
        assert await engine.create(intent()) is False

        assert len(store.notifications) == 1

    @pytest.mark.asyncio
    async def test_lost_insert_race_is_not_an_error(self, engine, store):
        store.find_by_dedupe_key = AsyncMock(return_value=None)
        await engine.create(intent())

        assert await engine.create(intent()) is False

    @pytest.mark.asyncio
    async def test_legacy_duplicates_without_key(self, engine, store):
        store.find_recent_duplicate.return_value = SimpleNamespace(id="old")

        assert await engine.create(intent(dedupe_key=None)) is False
        since = store.find_recent_duplicate.await_args.args[4]
        assert since == NOW - timedelta(days=30)

    @pytest.mark.asyncio
    async def test_create_many_counts_new_notifications(self, engine):
        intents = [intent(), intent(), intent(dedupe_key="other")]

        assert await engine.create_many(intents) == 2


class TestDispatch:
    """Push fan-out to a user's devices."""

    @pytest.mark.asyncio
    async def test_sends_to_every_active_subscription(self, engine, store, push):
        store.settings["u1"] = settings_row()
        store.subscriptions["u1"] = [subscription(1, "https://push/1"), subscription(2, "https://push/2")]

        await engine.create(intent())

        assert push.send.await_count == 2
        assert store.sent == ["n1"]

    @pytest.mark.asyncio
    async def test_push_disabled_sends_nothing(self, engine, store, push):
        store.settings["u1"] = settings_row(push_notifications_enabled=False)
        store.subscriptions["u1"] = [subscription(1, "https://push/1")]

        assert await engine.create(intent()) is True
        push.send.assert_not_awaited()
        assert store.sent == []

    @pytest.mark.asyncio
    async def test_device_preferences_filter_targets(self, engine, store, push):
        store.settings["u1"] = settings_row(
            device_preferences={"https://push/2": {"cancelledLessonsEnabled": False}}
        )
        store.subscriptions["u1"] = [subscription(1, "https://push/1"), subscription(2, "https://push/2")]

        await engine.create(intent())

        [call] = push.send.await_args_list
        assert call.args[0]["endpoint"] == "https://push/1"

    @pytest.mark.asyncio
    async def test_gone_and_oversized_subscriptions_are_deactivated(self, engine, store, push):
        store.settings["u1"] = settings_row()
        store.subscriptions["u1"] = [
            subscription(1, "https://push/1"),
            subscription(2, "https://push/2"),
            subscription(3, "https://push/3"),
        ]
        push.send.side_effect = [PushOutcome.GONE, PushOutcome.TOO_LARGE, PushOutcome.ERROR]

        delivered = await engine.dispatch(await store.create_notification(intent()))

        assert delivered == 0
        assert store.deactivated == [1, 2]

    @pytest.mark.asyncio
    async def test_without_vapid_keys_nothing_is_sent(self, engine, store, push):
        store.settings["u1"] = settings_row()
        store.subscriptions["u1"] = [subscription(1, "https://push/1")]
        push.is_available.return_value = False

        assert await engine.create(intent()) is True
        push.send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_transport_exception_does_not_propagate(self, engine, store, push):
        store.settings["u1"] = settings_row()
        store.subscriptions["u1"] = [subscription(1, "https://push/1"), subscription(2, "https://push/2")]
        push.send.side_effect = [RuntimeError("boom"), PushOutcome.SUCCESS]

        delivered = await engine.dispatch(await store.create_notification(intent()))

        assert delivered == 1


class TestAccessRequests:

    @pytest.mark.asyncio
    async def test_every_manager_is_notified_once(self, engine, store):
        store.managers = ["m1", "m2"]

        assert await engine.notify_access_request("alice", "please") == 2
        assert await engine.notify_access_request("alice", "please") == 0

        notification = next(iter(store.notifications.values()))
        assert notification.title == "New Access Request"
        assert notification.message == "alice has requested access: please"
        assert notification.expires_at == NOW + timedelta(days=7)

    @pytest.mark.asyncio
    async def test_admin_switch_disables_notifications(self, engine, store):
        store.managers = ["m1"]
        store.admin_settings = SimpleNamespace(enable_access_request_notifications=False)

        assert await engine.notify_access_request("alice") == 0
        assert store.notifications == {}


class TestCleanup:

    @pytest.mark.asyncio
    async def test_cleanup_deletes_expired(self, engine, store):
        store.delete_expired.return_value = 4

        assert await engine.cleanup_expired() == 4
        store.delete_expired.assert_awaited_once_with(NOW)
