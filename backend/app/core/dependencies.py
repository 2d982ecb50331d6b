"""
Application service wiring.

The container is built once at startup and stored on ``app.state``; route
handlers reach services through the ``get_*`` dependencies.
"""

from dataclasses import dataclass
from typing import Optional

from fastapi import Request
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.core.crypto import CredentialCipher
from app.core.database import AsyncSessionLocal
from app.integrations.untis.session import UntisSessionFactory
from app.services.notifications.notification_manager import NotificationEngine
from app.services.notifications.store import NotificationStore
from app.services.notifications.webpush_service import WebPushService
from app.services.timetable.cache import TimetableCache
from app.services.timetable.service import TimetableService
from app.services.timetable.store import TimetableStore
from app.tasks.scheduler import BackgroundScheduler
from app.tasks.sync_tasks import TimetableSyncJobs, build_scheduler


@dataclass
class ServiceContainer:
    timetable_store: TimetableStore
    notification_store: NotificationStore
    cache: TimetableCache
    timetable_service: TimetableService
    engine: NotificationEngine
    jobs: TimetableSyncJobs
    scheduler: BackgroundScheduler


def build_container(
    session_factory: Optional[async_sessionmaker] = None,
    sessions: Optional[UntisSessionFactory] = None,
    push: Optional[WebPushService] = None
) -> ServiceContainer:
    session_factory = session_factory or AsyncSessionLocal
    sessions = sessions or UntisSessionFactory(CredentialCipher())

    timetable_store = TimetableStore(session_factory)
    notification_store = NotificationStore(session_factory)
    cache = TimetableCache(timetable_store, sessions)
    timetable_service = TimetableService(cache, timetable_store, sessions)
    engine = NotificationEngine(notification_store, push or WebPushService())
    jobs = TimetableSyncJobs(cache, timetable_service, timetable_store, notification_store, engine)

    return ServiceContainer(
        timetable_store=timetable_store,
        notification_store=notification_store,
        cache=cache,
        timetable_service=timetable_service,
        engine=engine,
        jobs=jobs,
        scheduler=build_scheduler(jobs),
    )


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.services


def get_timetable_service(request: Request) -> TimetableService:
    return get_container(request).timetable_service
