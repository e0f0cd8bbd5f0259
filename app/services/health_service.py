from datetime import UTC, datetime

from app.core.config import Settings
from app.schemas.health import HealthResponse
from app.services.google_calendar_client import create_google_calendar_client


class HealthService:
    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    def get_status(self) -> HealthResponse:
        calendar_client = create_google_calendar_client(self.settings)
        return HealthResponse(
            status="ok",
            service=self.settings.app_name,
            version=self.settings.app_version,
            environment=self.settings.app_env,
            appointments_store=self.settings.appointments_store,
            google_calendar_configured=calendar_client.is_configured(),
            business_timezone=self.settings.business_timezone,
            timestamp=datetime.now(UTC),
        )
