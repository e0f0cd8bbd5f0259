from datetime import date, datetime

from pydantic import BaseModel, Field


class AvailabilityCheckResponse(BaseModel):
    start: datetime
    end: datetime
    available: bool
    conflict_reason: str | None = None


class SchedulingSlot(BaseModel):
    starts_at: datetime
    ends_at: datetime
    label: str


class SchedulingSlotsResponse(BaseModel):
    duration_minutes: int
    items: list[SchedulingSlot]


class BusyBlockResponse(BaseModel):
    starts_at: datetime
    ends_at: datetime
    source: str
    reference_id: str | None = None


class DayAvailabilityResponse(BaseModel):
    date: date
    is_open: bool
    opens_at: datetime | None = None
    closes_at: datetime | None = None
    slots: list[SchedulingSlot] = Field(default_factory=list)
    busy_blocks: list[BusyBlockResponse] = Field(default_factory=list)
