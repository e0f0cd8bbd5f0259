from datetime import date, datetime

from fastapi import APIRouter, Query

from app.core.config import get_settings
from app.schemas.scheduling import (
    AvailabilityCheckResponse,
    DayAvailabilityResponse,
    SchedulingSlotsResponse,
)
from app.services.scheduling_service import SchedulingService

router = APIRouter(prefix="/scheduling", tags=["scheduling"])


@router.get("/availability", response_model=AvailabilityCheckResponse)
def check_availability(
    start: datetime,
    duration_minutes: int = Query(default=60, ge=15, le=480),
) -> AvailabilityCheckResponse:
    service = SchedulingService(get_settings())
    return service.check_availability(start, duration_minutes)


@router.get("/slots", response_model=SchedulingSlotsResponse)
def get_slots(
    start_from: datetime | None = Query(default=None),
    days_ahead: int = Query(default=7, ge=1, le=60),
    duration_minutes: int | None = Query(default=None, ge=15, le=480),
    granularity_minutes: int | None = Query(default=None, ge=5, le=240),
) -> SchedulingSlotsResponse:
    service = SchedulingService(get_settings())
    return service.list_slots(
        start_from=start_from,
        days_ahead=days_ahead,
        duration_minutes=duration_minutes,
        granularity_minutes=granularity_minutes,
    )


@router.get("/days/{day}", response_model=DayAvailabilityResponse)
def get_day(
    day: date,
    duration_minutes: int | None = Query(default=None, ge=15, le=480),
) -> DayAvailabilityResponse:
    service = SchedulingService(get_settings())
    return service.get_day(day, duration_minutes)
