"""
Utility modules for the timetable sync backend.
"""

from .background import spawn_background
from .time import utcnow, to_ymd, from_ymd, hhmm_to_minutes, format_ymd, format_hm, local_now

__all__ = [
    "spawn_background",
    "utcnow",
    "to_ymd",
    "from_ymd",
    "hhmm_to_minutes",
    "format_ymd",
    "format_hm",
    "local_now",
]
