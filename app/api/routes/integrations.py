import logging
import secrets

from fastapi import APIRouter, Cookie, HTTPException, Query, status
from fastapi.responses import RedirectResponse

from app.core.config import get_settings
from app.schemas.integration import GoogleCalendarConnectionResponse, GoogleCalendarStatusResponse
from app.services.google_calendar_client import GoogleCalendarError, create_google_calendar_client

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/integrations", tags=["integrations"])
_GOOGLE_OAUTH_STATE_COOKIE = "google_calendar_oauth_state"


@router.get("/google-calendar/status", response_model=GoogleCalendarStatusResponse)
def get_google_calendar_status() -> GoogleCalendarStatusResponse:
    settings = get_settings()
    credentials = create_google_calendar_client(settings).credentials
    return GoogleCalendarStatusResponse(
        oauth_client_configured=credentials.can_authorize(),
        refresh_token_configured=bool(credentials.refresh_token),
        calendar_id=settings.google_calendar_id,
    )


@router.get("/google-calendar/connect")
def start_google_calendar_oauth() -> RedirectResponse:
    settings = get_settings()
    credentials = create_google_calendar_client(settings).credentials
    if not credentials.can_authorize():
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=(
                "Google Calendar OAuth is not configured. "
                "Define GOOGLE_CALENDAR_CLIENT_ID, GOOGLE_CALENDAR_CLIENT_SECRET and "
                "GOOGLE_CALENDAR_REDIRECT_URI."
            ),
        )

    state_token = secrets.token_urlsafe(24)
    response = RedirectResponse(url=credentials.authorization_url(state_token), status_code=302)
    response.set_cookie(
        _GOOGLE_OAUTH_STATE_COOKIE,
        state_token,
        max_age=600,
        httponly=True,
        samesite="lax",
    )
    return response


@router.get("/google-calendar/callback", response_model=GoogleCalendarConnectionResponse)
def finish_google_calendar_oauth(
    code: str | None = Query(default=None),
    state: str | None = Query(default=None),
    error: str | None = Query(default=None),
    expected_state: str | None = Cookie(default=None, alias=_GOOGLE_OAUTH_STATE_COOKIE),
) -> GoogleCalendarConnectionResponse:
    if error:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Google Calendar authorization failed: {error}",
        )
    if not code or not state:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="Missing code or state.",
        )
    if not expected_state or not secrets.compare_digest(state, expected_state):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid OAuth state.",
        )

    settings = get_settings()
    client = create_google_calendar_client(settings)
    if not client.credentials.can_authorize():
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Google Calendar OAuth is not configured.",
        )

    try:
        token_payload = client.credentials.exchange_code(code)
    except GoogleCalendarError as exc:
        logger.warning("Google Calendar code exchange failed error=%s", exc)
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc

    refresh_token = str(token_payload.get("refresh_token", "")).strip() or None
    logger.info(
        "Google Calendar connected calendar_id=%s refresh_token_issued=%s",
        settings.google_calendar_id,
        bool(refresh_token),
    )
    # Takes effect once stored in GOOGLE_CALENDAR_REFRESH_TOKEN and the service restarts.
    return GoogleCalendarConnectionResponse(
        calendar_id=settings.google_calendar_id,
        refresh_token=refresh_token,
    )
