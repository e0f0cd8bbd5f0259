from functools import lru_cache
from typing import Annotated

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from app.services.business_hours import parse_weekly_schedule

ALLOWED_ENV_FIELD_NAMES = frozenset(
    {
        "app_name",
        "app_env",
        "app_version",
        "api_prefix",
        "allowed_origins",
        "log_level",
        "appointments_store",
        "mongodb_uri",
        "mongodb_db_name",
        "mongodb_appointments_collection",
        "mongodb_booking_locks_collection",
        "mongodb_connect_timeout_ms",
        "booking_lock_timeout_seconds",
        "business_timezone",
        "business_hours",
        "appointment_buffer_minutes",
        "slot_granularity_minutes",
        "default_appointment_duration_minutes",
        "open_slots_max_results",
        "google_calendar_client_id",
        "google_calendar_client_secret",
        "google_calendar_redirect_uri",
        "google_calendar_refresh_token",
        "google_calendar_id",
        "google_calendar_api_timeout_seconds",
    },
)


class Settings(BaseSettings):
    app_name: str = "Looking Glass Booking API"
    app_env: str = "development"
    app_version: str = "0.1.0"
    api_prefix: str = "/api"
    allowed_origins: Annotated[list[str], NoDecode] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]
    log_level: str = "INFO"
    appointments_store: str = "mongodb"
    mongodb_uri: str = "mongodb://localhost:27017"
    mongodb_db_name: str = "looking_glass"
    mongodb_appointments_collection: str = "appointments"
    mongodb_booking_locks_collection: str = "booking_locks"
    mongodb_connect_timeout_ms: int = 2000
    booking_lock_timeout_seconds: float = 5.0
    business_timezone: str = "America/Los_Angeles"
    business_hours: str = "mon-fri=10:00-17:00;sat=10:00-15:00;sun=closed"
    appointment_buffer_minutes: int = 15
    slot_granularity_minutes: int = 30
    default_appointment_duration_minutes: int = 60
    open_slots_max_results: int = 12
    google_calendar_client_id: str = ""
    google_calendar_client_secret: str = ""
    google_calendar_redirect_uri: str = "http://localhost:8000/api/integrations/google-calendar/callback"
    google_calendar_refresh_token: str = ""
    google_calendar_id: str = "primary"
    google_calendar_api_timeout_seconds: float = 5.0

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        def _filter_allowed_env_fields(source):
            return {
                field_name: raw_value
                for field_name, raw_value in source().items()
                if field_name in ALLOWED_ENV_FIELD_NAMES
            }

        return (
            init_settings,
            lambda: _filter_allowed_env_fields(env_settings),
            lambda: _filter_allowed_env_fields(dotenv_settings),
            file_secret_settings,
        )

    @field_validator("allowed_origins", mode="before")
    @classmethod
    def parse_allowed_origins(cls, value: str | list[str]) -> list[str]:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("appointments_store", mode="before")
    @classmethod
    def normalize_appointments_store(cls, value: str) -> str:
        return value.strip().lower()

    @field_validator("business_timezone", mode="before")
    @classmethod
    def normalize_business_timezone(cls, value: str) -> str:
        cleaned = value.strip()
        return cleaned or "America/Los_Angeles"

    @field_validator("business_hours", mode="before")
    @classmethod
    def normalize_business_hours(cls, value: str) -> str:
        cleaned = value.strip().lower()
        # A malformed schedule fails when settings load, not per request.
        parse_weekly_schedule(cleaned)
        return cleaned

    @field_validator("appointment_buffer_minutes", mode="before")
    @classmethod
    def normalize_buffer_minutes(cls, value: int | str) -> int:
        parsed_value = int(value)
        if parsed_value < 0:
            return 15
        return parsed_value

    @field_validator("slot_granularity_minutes", mode="before")
    @classmethod
    def normalize_granularity_minutes(cls, value: int | str) -> int:
        parsed_value = int(value)
        if parsed_value <= 0:
            return 30
        return parsed_value

    @field_validator("default_appointment_duration_minutes", mode="before")
    @classmethod
    def normalize_default_duration(cls, value: int | str) -> int:
        parsed_value = int(value)
        if parsed_value <= 0:
            return 60
        return parsed_value

    @field_validator("open_slots_max_results", mode="before")
    @classmethod
    def normalize_open_slots_max_results(cls, value: int | str) -> int:
        parsed_value = int(value)
        if parsed_value <= 0:
            return 12
        return parsed_value

    @field_validator("booking_lock_timeout_seconds", mode="before")
    @classmethod
    def normalize_booking_lock_timeout(cls, value: float | str) -> float:
        parsed_value = float(value)
        if parsed_value <= 0:
            return 5.0
        return parsed_value

    @field_validator("google_calendar_api_timeout_seconds", mode="before")
    @classmethod
    def normalize_google_calendar_timeout(cls, value: float | str) -> float:
        parsed_value = float(value)
        if parsed_value <= 0:
            return 5.0
        return parsed_value


@lru_cache
def get_settings() -> Settings:
    return Settings()
