from datetime import datetime

from pydantic import BaseModel, Field, field_validator

from app.services.appointment_models import AppointmentStatus


class AppointmentCreateRequest(BaseModel):
    scheduled_at: datetime
    duration_minutes: int = Field(default=60, ge=15, le=480)
    client_name: str = Field(min_length=1, max_length=200)
    pet_name: str = Field(min_length=1, max_length=100)
    client_phone: str | None = Field(default=None, max_length=40)
    services: list[str] = Field(default_factory=list)
    notes: str | None = Field(default=None, max_length=2000)
    source: str | None = Field(default=None, max_length=40)

    @field_validator("client_name", "pet_name", mode="after")
    @classmethod
    def require_non_blank(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("must not be blank")
        return cleaned

    @field_validator("services", mode="after")
    @classmethod
    def normalize_services(cls, value: list[str]) -> list[str]:
        return [service.strip() for service in value if service.strip()]


class AppointmentCancelRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


class AppointmentRescheduleRequest(BaseModel):
    scheduled_at: datetime
    duration_minutes: int | None = Field(default=None, ge=15, le=480)


class AppointmentResponse(BaseModel):
    id: str
    scheduled_at: datetime
    end_time: datetime
    duration: int
    status: AppointmentStatus
    client_name: str
    pet_name: str
    client_phone: str | None = None
    services: list[str] = Field(default_factory=list)
    notes: str | None = None
    source: str | None = None
    created_at: datetime | None = None
    cancelled_at: datetime | None = None
    cancel_reason: str | None = None


class BookingResponse(BaseModel):
    success: bool
    state: str
    appointment_id: str | None = None
    appointment: AppointmentResponse | None = None
    error: str | None = None
    error_kind: str | None = None
