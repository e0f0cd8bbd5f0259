from fastapi import APIRouter, Response, status

from app.core.config import get_settings
from app.schemas.appointment import (
    AppointmentCancelRequest,
    AppointmentCreateRequest,
    AppointmentRescheduleRequest,
    AppointmentResponse,
    BookingResponse,
)
from app.services.booking_service import BookingState
from app.services.scheduling_service import SchedulingService

router = APIRouter(prefix="/appointments", tags=["appointments"])

_BOOKING_STATUS_CODES = {
    BookingState.committed.value: status.HTTP_201_CREATED,
    BookingState.rejected.value: status.HTTP_409_CONFLICT,
    BookingState.failed.value: status.HTTP_503_SERVICE_UNAVAILABLE,
}


@router.post("", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
def create_appointment(payload: AppointmentCreateRequest, response: Response) -> BookingResponse:
    service = SchedulingService(get_settings())
    result = service.book(payload)
    response.status_code = _BOOKING_STATUS_CODES.get(result.state, status.HTTP_201_CREATED)
    return result


@router.get("/{appointment_id}", response_model=AppointmentResponse)
def get_appointment(appointment_id: str) -> AppointmentResponse:
    service = SchedulingService(get_settings())
    return service.get_appointment(appointment_id)


@router.post("/{appointment_id}/cancel", response_model=AppointmentResponse)
def cancel_appointment(
    appointment_id: str,
    payload: AppointmentCancelRequest | None = None,
) -> AppointmentResponse:
    service = SchedulingService(get_settings())
    return service.cancel(appointment_id, payload or AppointmentCancelRequest())


@router.post("/{appointment_id}/reschedule", response_model=BookingResponse)
def reschedule_appointment(
    appointment_id: str,
    payload: AppointmentRescheduleRequest,
    response: Response,
) -> BookingResponse:
    service = SchedulingService(get_settings())
    result = service.reschedule(appointment_id, payload)
    if not result.success:
        response.status_code = _BOOKING_STATUS_CODES[result.state]
    return result
