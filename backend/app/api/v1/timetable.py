"""
API endpoints for timetables.
"""
from fastapi import APIRouter, HTTPException, Depends, Query
from datetime import datetime
from typing import Optional
import logging

from app.core.dependencies import get_timetable_service
from app.core.security import get_current_user_id
from app.integrations.untis.errors import UntisServiceError
from app.schemas.timetable import HolidayListResponse, TimetableResponse
from app.services.timetable.service import TimetableService

router = APIRouter()
logger = logging.getLogger(__name__)


def to_http_exception(error: UntisServiceError) -> HTTPException:
    return HTTPException(
        status_code=error.status_code,
        detail={"error": error.message, "code": error.code.value}
    )


@router.get("/me", response_model=TimetableResponse)
async def get_my_timetable(
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    user_id: str = Depends(get_current_user_id),
    service: TimetableService = Depends(get_timetable_service)
):
    """Timetable of the authenticated user."""
    try:
        return await service.get_or_fetch_timetable_range(user_id, user_id, start, end)
    except UntisServiceError as e:
        logger.warning(f"Timetable request failed for {user_id}: {e.code.value} {e.message}")
        raise to_http_exception(e)


@router.get("/user/{target_user_id}", response_model=TimetableResponse)
async def get_user_timetable(
    target_user_id: str,
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    user_id: str = Depends(get_current_user_id),
    service: TimetableService = Depends(get_timetable_service)
):
    """Timetable of another user; allowed for administrators."""
    try:
        return await service.get_or_fetch_timetable_range(user_id, target_user_id, start, end)
    except UntisServiceError as e:
        logger.warning(
            f"Timetable request by {user_id} for {target_user_id} failed: {e.code.value} {e.message}"
        )
        raise to_http_exception(e)


@router.get("/holidays", response_model=HolidayListResponse)
async def get_holidays(
    user_id: str = Depends(get_current_user_id),
    service: TimetableService = Depends(get_timetable_service)
):
    try:
        return HolidayListResponse(holidays=await service.get_holidays(user_id))
    except UntisServiceError as e:
        raise to_http_exception(e)
