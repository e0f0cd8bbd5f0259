from pydantic import BaseModel


class GoogleCalendarStatusResponse(BaseModel):
    oauth_client_configured: bool
    refresh_token_configured: bool
    calendar_id: str


class GoogleCalendarConnectionResponse(BaseModel):
    status: str = "connected"
    calendar_id: str
    refresh_token: str | None = None
    refresh_token_env_var: str = "GOOGLE_CALENDAR_REFRESH_TOKEN"
