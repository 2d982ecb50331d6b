"""
Pydantic schemas for timetable responses
"""

from pydantic import BaseModel
from datetime import datetime
from typing import List, Dict, Any, Optional
from enum import Enum


class TimetableSource(str, Enum):
    """Where a timetable response came from"""
    CACHE = "cache"
    LIVE = "live"


class TimetableResponse(BaseModel):
    """Timetable for one user and normalized date range"""
    user_id: str
    range_start: Optional[datetime] = None
    range_end: Optional[datetime] = None
    payload: List[Dict[str, Any]]
    cached: bool
    stale: bool
    source: TimetableSource
    last_updated: Optional[datetime] = None
    fallback_reason: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    @classmethod
    def from_cache_result(cls, user_id: str, result) -> "TimetableResponse":
        snapshot = result.snapshot
        return cls(
            user_id=user_id,
            range_start=snapshot.range_start,
            range_end=snapshot.range_end,
            payload=snapshot.payload if isinstance(snapshot.payload, list) else [],
            cached=result.cached,
            stale=result.stale,
            source=TimetableSource(result.source),
            last_updated=snapshot.created_at,
            fallback_reason=result.fallback_reason.value if result.fallback_reason else None,
            error_code=result.error_code,
            error_message=result.error_message,
        )


class HolidayListResponse(BaseModel):
    """Holidays of the user's school"""
    holidays: List[Dict[str, Any]]