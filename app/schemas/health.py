from datetime import datetime

from pydantic import BaseModel


class HealthResponse(BaseModel):
    status: str = "ok"
    service: str
    version: str
    environment: str
    appointments_store: str
    google_calendar_configured: bool
    business_timezone: str
    timestamp: datetime
