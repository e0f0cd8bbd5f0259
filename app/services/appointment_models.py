from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Any

from app.services.time_intervals import TimeInterval


class AppointmentStatus(StrEnum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    CHECKED_IN = "CHECKED_IN"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    NO_SHOW = "NO_SHOW"


# Only these statuses hold a place on the calendar.
OCCUPYING_STATUSES: frozenset[AppointmentStatus] = frozenset(
    {
        AppointmentStatus.PENDING,
        AppointmentStatus.CONFIRMED,
        AppointmentStatus.CHECKED_IN,
        AppointmentStatus.IN_PROGRESS,
    },
)


@dataclass
class AppointmentDraft:
    client_name: str
    pet_name: str
    client_phone: str | None = None
    services: list[str] = field(default_factory=list)
    notes: str | None = None
    source: str | None = None
    status: AppointmentStatus = AppointmentStatus.PENDING


@dataclass
class AppointmentRecord:
    id: str
    scheduled_at: datetime
    end_time: datetime
    duration: int
    status: AppointmentStatus
    client_name: str = ""
    pet_name: str = ""
    client_phone: str | None = None
    services: list[str] = field(default_factory=list)
    notes: str | None = None
    source: str | None = None
    created_at: datetime | None = None
    cancelled_at: datetime | None = None
    cancel_reason: str | None = None

    @property
    def interval(self) -> TimeInterval:
        return TimeInterval(start=self.scheduled_at, end=self.end_time)

    @property
    def is_occupying(self) -> bool:
        return self.status in OCCUPYING_STATUSES

    def to_document(self) -> dict[str, Any]:
        return {
            "scheduled_at": self.scheduled_at,
            "end_time": self.end_time,
            "duration": self.duration,
            "status": self.status.value,
            "client_name": self.client_name,
            "pet_name": self.pet_name,
            "client_phone": self.client_phone,
            "services": list(self.services),
            "notes": self.notes,
            "source": self.source,
            "created_at": self.created_at,
            "cancelled_at": self.cancelled_at,
            "cancel_reason": self.cancel_reason,
        }

    @classmethod
    def from_document(cls, document: Mapping[str, Any]) -> AppointmentRecord:
        scheduled_at = _as_utc(document["scheduled_at"])
        duration = int(document.get("duration") or 0)
        raw_end_time = document.get("end_time")
        end_time = _as_utc(raw_end_time) if raw_end_time else scheduled_at + timedelta(minutes=duration)
        raw_services = document.get("services")
        return cls(
            id=str(document.get("_id", "")),
            scheduled_at=scheduled_at,
            end_time=end_time,
            duration=duration,
            status=AppointmentStatus(document.get("status", AppointmentStatus.PENDING.value)),
            client_name=str(document.get("client_name") or ""),
            pet_name=str(document.get("pet_name") or ""),
            client_phone=document.get("client_phone"),
            services=[str(service) for service in raw_services] if isinstance(raw_services, list) else [],
            notes=document.get("notes"),
            source=document.get("source"),
            created_at=_as_utc(document["created_at"]) if document.get("created_at") else None,
            cancelled_at=_as_utc(document["cancelled_at"]) if document.get("cancelled_at") else None,
            cancel_reason=document.get("cancel_reason"),
        )


def build_appointment_record(
    *,
    record_id: str,
    draft: AppointmentDraft,
    interval: TimeInterval,
    created_at: datetime | None = None,
) -> AppointmentRecord:
    return AppointmentRecord(
        id=record_id,
        scheduled_at=interval.start,
        end_time=interval.end,
        duration=interval.duration_minutes(),
        status=draft.status,
        client_name=draft.client_name.strip(),
        pet_name=draft.pet_name.strip(),
        client_phone=draft.client_phone,
        services=list(draft.services),
        notes=draft.notes,
        source=draft.source,
        created_at=created_at or datetime.now(UTC),
    )


def _as_utc(value: datetime) -> datetime:
    # pymongo hands back naive UTC datetimes unless the client is tz-aware.
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)
