from datetime import UTC, date, datetime

from fastapi import HTTPException, status

from app.core.config import Settings
from app.schemas.appointment import (
    AppointmentCancelRequest,
    AppointmentCreateRequest,
    AppointmentRescheduleRequest,
    AppointmentResponse,
    BookingResponse,
)
from app.schemas.scheduling import (
    AvailabilityCheckResponse,
    BusyBlockResponse,
    DayAvailabilityResponse,
    SchedulingSlot,
    SchedulingSlotsResponse,
)
from app.services.appointment_models import AppointmentDraft, AppointmentRecord
from app.services.availability_service import (
    AvailabilityEngine,
    OpenSlot,
    SlotProposal,
)
from app.services.booking_service import (
    AppointmentNotFoundError,
    AppointmentStateError,
    BookingCoordinator,
    BookingResult,
    build_booking_coordinator,
)


class SchedulingService:
    def __init__(
        self,
        settings: Settings,
        engine: AvailabilityEngine | None = None,
        coordinator: BookingCoordinator | None = None,
    ) -> None:
        self.settings = settings
        self.coordinator = coordinator or build_booking_coordinator(settings)
        self.engine = engine or self.coordinator.engine

    def check_availability(self, start: datetime, duration_minutes: int) -> AvailabilityCheckResponse:
        proposal = SlotProposal(start=start, duration_minutes=duration_minutes)
        decision = self.engine.can_book(proposal)
        interval = self.engine.interval_for(proposal)
        return AvailabilityCheckResponse(
            start=interval.start,
            end=interval.end,
            available=decision.available,
            conflict_reason=decision.conflict_reason,
        )

    def list_slots(
        self,
        *,
        start_from: datetime | None,
        days_ahead: int,
        duration_minutes: int | None,
        granularity_minutes: int | None,
    ) -> SchedulingSlotsResponse:
        duration = duration_minutes or self.settings.default_appointment_duration_minutes
        slots = self.engine.list_open_slots(
            start_from or datetime.now(UTC),
            days_ahead,
            duration,
            granularity_minutes=granularity_minutes or self.settings.slot_granularity_minutes,
            limit=self.settings.open_slots_max_results,
        )
        return SchedulingSlotsResponse(
            duration_minutes=duration,
            items=[_to_slot_schema(slot) for slot in slots],
        )

    def get_day(self, day: date, duration_minutes: int | None) -> DayAvailabilityResponse:
        availability = self.engine.day_availability(
            day,
            duration_minutes or self.settings.default_appointment_duration_minutes,
            granularity_minutes=self.settings.slot_granularity_minutes,
        )
        return DayAvailabilityResponse(
            date=availability.day,
            is_open=availability.window is not None,
            opens_at=availability.window.start if availability.window else None,
            closes_at=availability.window.end if availability.window else None,
            slots=[_to_slot_schema(slot) for slot in availability.slots],
            busy_blocks=[
                BusyBlockResponse(
                    starts_at=block.start,
                    ends_at=block.end,
                    source=block.source.value,
                    reference_id=block.reference_id,
                )
                for block in availability.busy_blocks
            ],
        )

    def book(self, payload: AppointmentCreateRequest) -> BookingResponse:
        proposal = SlotProposal(start=payload.scheduled_at, duration_minutes=payload.duration_minutes)
        draft = AppointmentDraft(
            client_name=payload.client_name,
            pet_name=payload.pet_name,
            client_phone=payload.client_phone,
            services=list(payload.services),
            notes=payload.notes,
            source=payload.source,
        )
        return _to_booking_schema(self.coordinator.propose_and_commit(proposal, draft))

    def get_appointment(self, appointment_id: str) -> AppointmentResponse:
        record = self.coordinator.store.get_by_id(appointment_id)
        if not record:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Appointment not found.",
            )
        return _to_appointment_schema(record)

    def cancel(self, appointment_id: str, payload: AppointmentCancelRequest) -> AppointmentResponse:
        try:
            record = self.coordinator.cancel(appointment_id, reason=payload.reason)
        except AppointmentNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        except AppointmentStateError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        return _to_appointment_schema(record)

    def reschedule(self, appointment_id: str, payload: AppointmentRescheduleRequest) -> BookingResponse:
        try:
            result = self.coordinator.reschedule(
                appointment_id,
                payload.scheduled_at,
                new_duration_minutes=payload.duration_minutes,
            )
        except AppointmentNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        except AppointmentStateError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        return _to_booking_schema(result)


def _to_slot_schema(slot: OpenSlot) -> SchedulingSlot:
    return SchedulingSlot(starts_at=slot.start, ends_at=slot.end, label=slot.label)


def _to_appointment_schema(record: AppointmentRecord) -> AppointmentResponse:
    return AppointmentResponse(
        id=record.id,
        scheduled_at=record.scheduled_at,
        end_time=record.end_time,
        duration=record.duration,
        status=record.status,
        client_name=record.client_name,
        pet_name=record.pet_name,
        client_phone=record.client_phone,
        services=list(record.services),
        notes=record.notes,
        source=record.source,
        created_at=record.created_at,
        cancelled_at=record.cancelled_at,
        cancel_reason=record.cancel_reason,
    )


def _to_booking_schema(result: BookingResult) -> BookingResponse:
    return BookingResponse(
        success=result.success,
        state=result.state.value,
        appointment_id=result.appointment_id,
        appointment=_to_appointment_schema(result.appointment) if result.appointment else None,
        error=result.error.message if result.error else None,
        error_kind=result.error.kind.value if result.error else None,
    )
