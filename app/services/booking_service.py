from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum

from app.core.config import Settings
from app.services.appointment_models import (
    OCCUPYING_STATUSES,
    AppointmentDraft,
    AppointmentRecord,
    AppointmentStatus,
)
from app.services.appointment_store import (
    AppointmentStore,
    AppointmentStoreError,
    create_appointment_store,
)
from app.services.availability_service import (
    AvailabilityEngine,
    SlotProposal,
    build_availability_engine,
)
from app.services.google_calendar_client import GoogleCalendarClient

logger = logging.getLogger(__name__)

SLOT_NO_LONGER_AVAILABLE_REASON = "This time slot is no longer available"
TRANSIENT_FAILURE_MESSAGE = "We couldn't save your booking right now. Please try again in a moment."


class BookingState(StrEnum):
    validating = "validating"
    committing = "committing"
    committed = "committed"
    rejected = "rejected"
    failed = "failed"


class BookingErrorKind(StrEnum):
    unavailable = "unavailable"
    race_lost = "race_lost"
    transient_failure = "transient_failure"


class AppointmentNotFoundError(Exception):
    pass


class AppointmentStateError(Exception):
    pass


@dataclass(frozen=True)
class BookingError:
    kind: BookingErrorKind
    message: str


@dataclass(frozen=True)
class BookingResult:
    state: BookingState
    appointment: AppointmentRecord | None = None
    error: BookingError | None = None

    @property
    def success(self) -> bool:
        return self.state == BookingState.committed

    @property
    def appointment_id(self) -> str | None:
        return self.appointment.id if self.appointment else None


class BookingEventType(StrEnum):
    booked = "appointment.booked"
    cancelled = "appointment.cancelled"
    rescheduled = "appointment.rescheduled"


@dataclass(frozen=True)
class BookingEvent:
    event_type: BookingEventType
    appointment: AppointmentRecord
    occurred_at: datetime


class BookingEventPublisher(ABC):
    @abstractmethod
    def publish(self, event: BookingEvent) -> None:
        raise NotImplementedError


class LoggingBookingEventPublisher(BookingEventPublisher):
    def publish(self, event: BookingEvent) -> None:
        logger.info(
            "Booking event type=%s appointment_id=%s scheduled_at=%s status=%s",
            event.event_type.value,
            event.appointment.id,
            event.appointment.scheduled_at.isoformat(),
            event.appointment.status.value,
        )


class BookingCoordinator:
    """Validate-then-commit booking with a second check serialized against the write.

    The first ``can_book`` is an optimistic filter. The decisive check runs
    again inside the store's ``serialized_write`` context, so of two concurrent
    requests for overlapping time at most one is committed; the other sees the
    winner during its re-check and is rejected as a race loss.
    """

    def __init__(
        self,
        *,
        engine: AvailabilityEngine,
        store: AppointmentStore,
        publisher: BookingEventPublisher | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.engine = engine
        self.store = store
        self.publisher = publisher or LoggingBookingEventPublisher()
        self._clock = clock or (lambda: datetime.now(UTC))

    def propose_and_commit(self, proposal: SlotProposal, draft: AppointmentDraft) -> BookingResult:
        logger.info(
            "Booking attempt state=%s start=%s duration=%s pet=%s",
            BookingState.validating.value,
            proposal.start.isoformat(),
            proposal.duration_minutes,
            draft.pet_name,
        )
        decision = self.engine.can_book(proposal)
        if not decision.available:
            return _rejected(BookingErrorKind.unavailable, decision.conflict_reason)

        interval = self.engine.interval_for(proposal)
        logger.info(
            "Booking attempt state=%s start=%s end=%s",
            BookingState.committing.value,
            interval.start.isoformat(),
            interval.end.isoformat(),
        )
        try:
            with self.store.serialized_write(interval.expanded(self.engine.buffer_minutes)):
                recheck = self.engine.can_book(proposal)
                if not recheck.available:
                    logger.info(
                        "Booking lost race start=%s reason=%s",
                        interval.start.isoformat(),
                        recheck.conflict_reason,
                    )
                    return _rejected(BookingErrorKind.race_lost, SLOT_NO_LONGER_AVAILABLE_REASON)
                record = self.store.insert(draft, interval)
        except AppointmentStoreError:
            logger.exception("Booking commit failed start=%s", interval.start.isoformat())
            return BookingResult(
                state=BookingState.failed,
                error=BookingError(
                    kind=BookingErrorKind.transient_failure,
                    message=TRANSIENT_FAILURE_MESSAGE,
                ),
            )

        logger.info(
            "Booking attempt state=%s appointment_id=%s start=%s",
            BookingState.committed.value,
            record.id,
            record.scheduled_at.isoformat(),
        )
        self._publish(BookingEventType.booked, record)
        return BookingResult(state=BookingState.committed, appointment=record)

    def cancel(self, appointment_id: str, reason: str | None = None) -> AppointmentRecord:
        record = self.store.get_by_id(appointment_id)
        if not record:
            raise AppointmentNotFoundError(f"Appointment {appointment_id} not found.")
        if record.status == AppointmentStatus.CANCELLED:
            raise AppointmentStateError("Appointment is already cancelled.")
        if record.status == AppointmentStatus.COMPLETED:
            raise AppointmentStateError("Cannot cancel a completed appointment.")

        updated = self.store.update(
            appointment_id,
            {
                "status": AppointmentStatus.CANCELLED,
                "cancelled_at": self._clock(),
                "cancel_reason": reason.strip() if reason and reason.strip() else None,
            },
        )
        if not updated:
            raise AppointmentNotFoundError(f"Appointment {appointment_id} not found.")
        logger.info("Appointment cancelled appointment_id=%s", appointment_id)
        self._publish(BookingEventType.cancelled, updated)
        return updated

    def reschedule(
        self,
        appointment_id: str,
        new_start: datetime,
        new_duration_minutes: int | None = None,
    ) -> BookingResult:
        record = self.store.get_by_id(appointment_id)
        if not record:
            raise AppointmentNotFoundError(f"Appointment {appointment_id} not found.")
        if record.status not in OCCUPYING_STATUSES:
            raise AppointmentStateError(
                f"Cannot reschedule a {record.status.value.lower().replace('_', ' ')} appointment.",
            )

        proposal = SlotProposal(start=new_start, duration_minutes=new_duration_minutes or record.duration)
        # The appointment's current block must not count against its own new time.
        decision = self.engine.can_book(proposal, ignore_appointment_id=record.id)
        if not decision.available:
            return _rejected(BookingErrorKind.unavailable, decision.conflict_reason)

        interval = self.engine.interval_for(proposal)
        try:
            with self.store.serialized_write(interval.expanded(self.engine.buffer_minutes)):
                recheck = self.engine.can_book(proposal, ignore_appointment_id=record.id)
                if not recheck.available:
                    return _rejected(BookingErrorKind.race_lost, SLOT_NO_LONGER_AVAILABLE_REASON)
                updated = self.store.update(
                    appointment_id,
                    {
                        "scheduled_at": interval.start,
                        "end_time": interval.end,
                        "duration": proposal.duration_minutes,
                    },
                )
        except AppointmentStoreError:
            logger.exception("Reschedule commit failed appointment_id=%s", appointment_id)
            return BookingResult(
                state=BookingState.failed,
                error=BookingError(
                    kind=BookingErrorKind.transient_failure,
                    message=TRANSIENT_FAILURE_MESSAGE,
                ),
            )
        if not updated:
            raise AppointmentNotFoundError(f"Appointment {appointment_id} not found.")

        logger.info(
            "Appointment rescheduled appointment_id=%s scheduled_at=%s",
            appointment_id,
            updated.scheduled_at.isoformat(),
        )
        self._publish(BookingEventType.rescheduled, updated)
        return BookingResult(state=BookingState.committed, appointment=updated)

    def _publish(self, event_type: BookingEventType, record: AppointmentRecord) -> None:
        event = BookingEvent(event_type=event_type, appointment=record, occurred_at=self._clock())
        try:
            self.publisher.publish(event)
        except Exception:
            # The appointment is already stored; a failed notification must not undo it.
            logger.exception(
                "Booking event publish failed type=%s appointment_id=%s",
                event_type.value,
                record.id,
            )


def _rejected(kind: BookingErrorKind, reason: str | None) -> BookingResult:
    return BookingResult(
        state=BookingState.rejected,
        error=BookingError(kind=kind, message=reason or SLOT_NO_LONGER_AVAILABLE_REASON),
    )


def build_booking_coordinator(
    settings: Settings,
    store: AppointmentStore | None = None,
    calendar_client: GoogleCalendarClient | None = None,
    publisher: BookingEventPublisher | None = None,
    clock: Callable[[], datetime] | None = None,
) -> BookingCoordinator:
    appointment_store = store or create_appointment_store(settings)
    engine = build_availability_engine(
        settings,
        store=appointment_store,
        calendar_client=calendar_client,
        clock=clock,
    )
    return BookingCoordinator(
        engine=engine,
        store=appointment_store,
        publisher=publisher,
        clock=clock,
    )
