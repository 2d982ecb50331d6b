"""
Background task management for timetable sync and notifications.
"""

from .scheduler import BackgroundScheduler, PeriodicLoop
from .sync_tasks import TimetableSyncJobs, build_scheduler

__all__ = [
    "BackgroundScheduler",
    "PeriodicLoop",
    "TimetableSyncJobs",
    "build_scheduler",
]
