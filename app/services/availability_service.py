from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, timedelta

from app.core.config import Settings
from app.services.appointment_store import AppointmentStore, create_appointment_store
from app.services.busy_sources import LocalAppointmentSource, RemoteCalendarSource
from app.services.business_hours import BusinessHoursPolicy, parse_weekly_schedule
from app.services.google_calendar_client import GoogleCalendarClient, create_google_calendar_client
from app.services.time_intervals import (
    BusyBlock,
    TimeInterval,
    merge_busy_blocks,
    overlaps_any,
)

logger = logging.getLogger(__name__)

SLOT_ALREADY_BOOKED_REASON = "This time slot is already booked"


@dataclass(frozen=True)
class SlotProposal:
    start: datetime
    duration_minutes: int

    def __post_init__(self) -> None:
        if self.duration_minutes <= 0:
            raise ValueError(f"Duration must be positive, got {self.duration_minutes} minutes.")

    @property
    def end(self) -> datetime:
        return self.start + timedelta(minutes=self.duration_minutes)


@dataclass(frozen=True)
class AvailabilityDecision:
    available: bool
    conflict_reason: str | None = None


@dataclass(frozen=True)
class OpenSlot:
    start: datetime
    end: datetime
    label: str


@dataclass(frozen=True)
class DayAvailability:
    day: date
    window: TimeInterval | None
    slots: list[OpenSlot] = field(default_factory=list)
    busy_blocks: list[BusyBlock] = field(default_factory=list)


class AvailabilityEngine:
    """Combines booked appointments, the remote calendar and business hours.

    ``can_book`` is the authority for reserving a slot. ``list_open_slots`` and
    ``day_availability`` only enumerate choices to present to a customer.
    All arithmetic is done on UTC instants; business-local time is used only to
    find day boundaries and to build labels.
    """

    def __init__(
        self,
        *,
        policy: BusinessHoursPolicy,
        local_source: LocalAppointmentSource,
        remote_source: RemoteCalendarSource,
        buffer_minutes: int = 15,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.policy = policy
        self.local_source = local_source
        self.remote_source = remote_source
        self.buffer_minutes = buffer_minutes
        self._clock = clock or (lambda: datetime.now(UTC))

    def interval_for(self, proposal: SlotProposal) -> TimeInterval:
        return TimeInterval.from_duration(self._to_utc(proposal.start), proposal.duration_minutes)

    def can_book(
        self,
        proposal: SlotProposal,
        *,
        ignore_appointment_id: str | None = None,
    ) -> AvailabilityDecision:
        interval = self.interval_for(proposal)

        hours_check = self.policy.is_within_hours(interval)
        if not hours_check.ok:
            logger.info(
                "Slot rejected by business hours start=%s duration=%s reason=%s",
                interval.start.isoformat(),
                proposal.duration_minutes,
                hours_check.reason,
            )
            return AvailabilityDecision(available=False, conflict_reason=hours_check.reason)

        busy_blocks = self._busy_blocks(
            interval.expanded(self.buffer_minutes),
            ignore_appointment_id=ignore_appointment_id,
        )
        if overlaps_any(interval, busy_blocks):
            logger.info(
                "Slot conflicts with busy time start=%s end=%s busy_blocks=%s",
                interval.start.isoformat(),
                interval.end.isoformat(),
                _describe_blocks(busy_blocks),
            )
            return AvailabilityDecision(available=False, conflict_reason=SLOT_ALREADY_BOOKED_REASON)

        logger.info(
            "Slot available start=%s end=%s",
            interval.start.isoformat(),
            interval.end.isoformat(),
        )
        return AvailabilityDecision(available=True)

    def list_open_slots(
        self,
        start_from: datetime,
        days: int,
        duration_minutes: int,
        granularity_minutes: int = 30,
        limit: int | None = None,
    ) -> list[OpenSlot]:
        _validate_slot_walk(duration_minutes, granularity_minutes)
        first_day = self.policy.local_date(start_from)
        now = self._clock()

        slots: list[OpenSlot] = []
        for offset in range(max(days, 0)):
            day = first_day + timedelta(days=offset)
            window = self.policy.window_for(day)
            if window is None:
                continue
            utc_window = _window_to_utc(window)
            # Busy time is fetched once per day, not once per candidate.
            busy_blocks = self._busy_blocks(utc_window.expanded(self.buffer_minutes))
            for slot in self._walk_day(utc_window, busy_blocks, duration_minutes, granularity_minutes, now):
                slots.append(slot)
                if limit is not None and len(slots) >= limit:
                    return slots
        return slots

    def day_availability(
        self,
        day: date,
        duration_minutes: int,
        granularity_minutes: int = 30,
    ) -> DayAvailability:
        _validate_slot_walk(duration_minutes, granularity_minutes)
        window = self.policy.window_for(day)
        if window is None:
            return DayAvailability(day=day, window=None)

        utc_window = _window_to_utc(window)
        busy_blocks = self._busy_blocks(utc_window.expanded(self.buffer_minutes))
        slots = list(
            self._walk_day(utc_window, busy_blocks, duration_minutes, granularity_minutes, self._clock()),
        )
        return DayAvailability(day=day, window=window, slots=slots, busy_blocks=busy_blocks)

    def _walk_day(
        self,
        window: TimeInterval,
        busy_blocks: list[BusyBlock],
        duration_minutes: int,
        granularity_minutes: int,
        now: datetime,
    ) -> Iterator[OpenSlot]:
        duration = timedelta(minutes=duration_minutes)
        step = timedelta(minutes=granularity_minutes)
        candidate_start = window.start
        while candidate_start + duration <= window.end:
            candidate = TimeInterval(start=candidate_start, end=candidate_start + duration)
            if candidate.start > now and not overlaps_any(candidate, busy_blocks):
                yield OpenSlot(
                    start=candidate.start,
                    end=candidate.end,
                    label=format_slot_label(self.policy.to_local(candidate.start)),
                )
            candidate_start += step

    def _busy_blocks(
        self,
        interval: TimeInterval,
        *,
        ignore_appointment_id: str | None = None,
    ) -> list[BusyBlock]:
        local_blocks = self.local_source.fetch(interval, ignore_appointment_id=ignore_appointment_id)
        remote_blocks = self.remote_source.fetch(interval)
        merged = merge_busy_blocks([*local_blocks, *remote_blocks])
        logger.debug(
            "Busy blocks start=%s end=%s local=%s remote=%s merged=%s",
            interval.start.isoformat(),
            interval.end.isoformat(),
            len(local_blocks),
            len(remote_blocks),
            len(merged),
        )
        return merged

    def _to_utc(self, value: datetime) -> datetime:
        return self.policy.to_local(value).astimezone(UTC)


def format_slot_label(local_start: datetime) -> str:
    hour = local_start.hour % 12 or 12
    meridiem = "AM" if local_start.hour < 12 else "PM"
    return f"{local_start:%A} at {hour}:{local_start:%M} {meridiem}"


def _window_to_utc(window: TimeInterval) -> TimeInterval:
    return TimeInterval(start=window.start.astimezone(UTC), end=window.end.astimezone(UTC))


def _validate_slot_walk(duration_minutes: int, granularity_minutes: int) -> None:
    if duration_minutes <= 0:
        raise ValueError(f"Duration must be positive, got {duration_minutes} minutes.")
    if granularity_minutes <= 0:
        raise ValueError(f"Granularity must be positive, got {granularity_minutes} minutes.")


def _describe_blocks(blocks: list[BusyBlock]) -> str:
    return ", ".join(
        f"{block.source.value}:{block.start.isoformat()}/{block.end.isoformat()}" for block in blocks
    )


def build_business_hours_policy(settings: Settings) -> BusinessHoursPolicy:
    return BusinessHoursPolicy(
        parse_weekly_schedule(settings.business_hours),
        settings.business_timezone,
    )


def build_availability_engine(
    settings: Settings,
    store: AppointmentStore | None = None,
    calendar_client: GoogleCalendarClient | None = None,
    clock: Callable[[], datetime] | None = None,
) -> AvailabilityEngine:
    appointment_store = store or create_appointment_store(settings)
    return AvailabilityEngine(
        policy=build_business_hours_policy(settings),
        local_source=LocalAppointmentSource(
            appointment_store,
            buffer_minutes=settings.appointment_buffer_minutes,
        ),
        remote_source=RemoteCalendarSource(calendar_client or create_google_calendar_client(settings)),
        buffer_minutes=settings.appointment_buffer_minutes,
        clock=clock,
    )
