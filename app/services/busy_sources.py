import logging
from abc import ABC, abstractmethod

from app.services.appointment_store import AppointmentStore
from app.services.google_calendar_client import GoogleCalendarClient, GoogleCalendarError
from app.services.time_intervals import BusyBlock, BusySource, TimeInterval

logger = logging.getLogger(__name__)

DEFAULT_APPOINTMENT_BUFFER_MINUTES = 15


class BusyTimeProvider(ABC):
    @abstractmethod
    def fetch(self, interval: TimeInterval) -> list[BusyBlock]:
        raise NotImplementedError


class LocalAppointmentSource(BusyTimeProvider):
    """Busy blocks for booked appointments, each padded by the buffer on both sides.

    Store failures propagate as ``AppointmentStoreError``; an empty calendar is
    just an empty list.
    """

    def __init__(
        self,
        store: AppointmentStore,
        buffer_minutes: int = DEFAULT_APPOINTMENT_BUFFER_MINUTES,
    ) -> None:
        self.store = store
        self.buffer_minutes = buffer_minutes

    def fetch(
        self,
        interval: TimeInterval,
        *,
        ignore_appointment_id: str | None = None,
    ) -> list[BusyBlock]:
        appointments = self.store.find_occupying(interval.expanded(self.buffer_minutes))
        return [
            BusyBlock(
                interval=appointment.interval.expanded(self.buffer_minutes),
                source=BusySource.local,
                reference_id=appointment.id,
            )
            for appointment in appointments
            if appointment.id != ignore_appointment_id
        ]


class RemoteCalendarSource(BusyTimeProvider):
    def __init__(self, client: GoogleCalendarClient | None) -> None:
        self.client = client

    def is_configured(self) -> bool:
        return self.client is not None and self.client.is_configured()

    def fetch(self, interval: TimeInterval) -> list[BusyBlock]:
        client = self.client
        if client is None or not client.is_configured():
            logger.debug("Google Calendar not configured, skipping remote busy times")
            return []

        try:
            busy_intervals = client.query_free_busy(
                time_min=interval.start,
                time_max=interval.end,
            )
        except (GoogleCalendarError, OSError) as exc:
            # The remote calendar is advisory; local data alone still decides.
            logger.warning(
                "Google Calendar busy lookup failed start=%s end=%s error=%s",
                interval.start.isoformat(),
                interval.end.isoformat(),
                exc,
            )
            return []

        logger.info(
            "Google Calendar busy lookup start=%s end=%s busy_count=%s",
            interval.start.isoformat(),
            interval.end.isoformat(),
            len(busy_intervals),
        )
        return [
            BusyBlock(interval=busy_interval, source=BusySource.remote)
            for busy_interval in busy_intervals
        ]
