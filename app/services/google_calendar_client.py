import http.client
import json
import logging
import threading
import time
from collections.abc import Callable
from datetime import UTC, datetime
from functools import lru_cache
from typing import Any
from urllib import error, parse, request

from app.core.config import Settings
from app.services.time_intervals import TimeInterval

logger = logging.getLogger(__name__)

_GOOGLE_CALENDAR_SCOPES = (
    "https://www.googleapis.com/auth/calendar.readonly",
    "https://www.googleapis.com/auth/calendar.events",
)


class GoogleCalendarError(Exception):
    pass


class GoogleOAuthCredentials:
    """Refresh-token backed access token provider for the business calendar.

    Access tokens are cached on the instance and refreshed once they are within
    ``refresh_skew_seconds`` of expiring.
    """

    def __init__(
        self,
        *,
        client_id: str = "",
        client_secret: str = "",
        refresh_token: str = "",
        redirect_uri: str = "",
        timeout_seconds: float = 10.0,
        refresh_skew_seconds: float = 60.0,
        oauth_token_url: str = "https://oauth2.googleapis.com/token",
        authorization_base_url: str = "https://accounts.google.com/o/oauth2/v2/auth",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.client_id = client_id.strip()
        self.client_secret = client_secret.strip()
        self.refresh_token = refresh_token.strip().strip('"').strip("'")
        self.redirect_uri = redirect_uri.strip()
        self.timeout_seconds = timeout_seconds
        self.refresh_skew_seconds = refresh_skew_seconds
        self.oauth_token_url = oauth_token_url
        self.authorization_base_url = authorization_base_url
        self._clock = clock
        self._access_token = ""
        self._expires_at = 0.0
        self._lock = threading.Lock()

    def is_configured(self) -> bool:
        return bool(self.refresh_token and self.client_id and self.client_secret)

    def can_authorize(self) -> bool:
        return bool(self.client_id and self.client_secret and self.redirect_uri)

    def authorization_url(self, state: str | None = None) -> str:
        if not self.can_authorize():
            raise GoogleCalendarError("Google OAuth client is not configured.")
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": " ".join(_GOOGLE_CALENDAR_SCOPES),
            "access_type": "offline",
            # Consent is forced so Google always returns a refresh token.
            "prompt": "consent",
        }
        if state:
            params["state"] = state
        return f"{self.authorization_base_url}?{parse.urlencode(params)}"

    def exchange_code(self, code: str) -> dict[str, Any]:
        cleaned_code = code.strip()
        if not cleaned_code:
            raise GoogleCalendarError("Google OAuth authorization code is empty.")
        if not self.can_authorize():
            raise GoogleCalendarError("Google OAuth client is not configured.")
        # The tokens go back to the operator; the running credentials keep
        # using the configured refresh token.
        return self._request_token(
            {
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "code": cleaned_code,
                "grant_type": "authorization_code",
                "redirect_uri": self.redirect_uri,
            },
        )

    def get_access_token(self, timeout_seconds: float | None = None) -> str:
        with self._lock:
            if self._access_token and self._clock() < self._expires_at - self.refresh_skew_seconds:
                return self._access_token
            if not self.is_configured():
                raise GoogleCalendarError("Google Calendar refresh token flow is not configured.")
            payload = self._request_token(
                {
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "refresh_token": self.refresh_token,
                    "grant_type": "refresh_token",
                },
                timeout_seconds=timeout_seconds,
            )
            self._access_token = payload["access_token"].strip()
            self._expires_at = self._clock() + _token_lifetime_seconds(payload)
            return self._access_token

    def invalidate(self) -> None:
        with self._lock:
            self._access_token = ""
            self._expires_at = 0.0

    def _request_token(
        self,
        form: dict[str, str],
        *,
        timeout_seconds: float | None = None,
    ) -> dict[str, Any]:
        body = parse.urlencode(form).encode("utf-8")
        req = request.Request(
            self.oauth_token_url,
            data=body,
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            method="POST",
        )
        timeout = self.timeout_seconds if timeout_seconds is None else timeout_seconds
        try:
            with request.urlopen(req, timeout=timeout) as response:
                response_body = response.read()
        except TimeoutError as exc:
            raise GoogleCalendarError("Google OAuth token request timed out.") from exc
        except error.HTTPError as exc:
            body_text = exc.read().decode("utf-8", errors="ignore")
            raise GoogleCalendarError(
                f"Google OAuth token HTTP {exc.code}: {body_text or 'empty response body'}",
            ) from exc
        except error.URLError as exc:
            raise GoogleCalendarError(
                f"Google OAuth token connection error: {exc.reason}",
            ) from exc
        except (http.client.HTTPException, OSError) as exc:
            raise GoogleCalendarError(f"Google OAuth token response was interrupted: {exc!r}") from exc

        try:
            payload = json.loads(response_body.decode("utf-8"))
        except ValueError as exc:
            raise GoogleCalendarError("Google OAuth token endpoint returned invalid JSON.") from exc

        if not isinstance(payload, dict):
            raise GoogleCalendarError("Google OAuth token response is not a JSON object.")
        if payload.get("error"):
            description = payload.get("error_description") or payload.get("error")
            raise GoogleCalendarError(f"Google OAuth token request failed: {description}")
        new_access_token = payload.get("access_token")
        if not isinstance(new_access_token, str) or not new_access_token.strip():
            raise GoogleCalendarError("Google OAuth token response did not include access_token.")
        return payload


class GoogleCalendarClient:
    """Read-only free/busy client for the business calendar.

    ``timeout_seconds`` bounds a whole lookup, token refresh and retry included;
    each request only gets what is left of it.
    """

    def __init__(
        self,
        *,
        credentials: GoogleOAuthCredentials,
        calendar_id: str = "primary",
        timeout_seconds: float = 5.0,
        api_base_url: str = "https://www.googleapis.com/calendar/v3",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.credentials = credentials
        self.calendar_id = calendar_id.strip() or "primary"
        self.timeout_seconds = timeout_seconds
        self.api_base_url = api_base_url.rstrip("/")
        self._clock = clock

    def is_configured(self) -> bool:
        return self.credentials.is_configured()

    def query_free_busy(self, *, time_min: datetime, time_max: datetime) -> list[TimeInterval]:
        payload = {
            "timeMin": _to_rfc3339(time_min),
            "timeMax": _to_rfc3339(time_max),
            "items": [{"id": self.calendar_id}],
        }
        deadline = self._clock() + self.timeout_seconds
        response_payload = self._request_json("POST", "/freeBusy", payload=payload, deadline=deadline)

        calendars = response_payload.get("calendars")
        if not isinstance(calendars, dict):
            raise GoogleCalendarError("Google Calendar freeBusy response missing calendars.")
        calendar_payload = calendars.get(self.calendar_id)
        if calendar_payload is None:
            return []
        if not isinstance(calendar_payload, dict):
            raise GoogleCalendarError("Google Calendar freeBusy calendar entry is not an object.")

        errors = calendar_payload.get("errors")
        if isinstance(errors, list) and errors:
            reasons = ", ".join(
                str(entry.get("reason", "unknown")) for entry in errors if isinstance(entry, dict)
            )
            raise GoogleCalendarError(f"Google Calendar freeBusy reported errors: {reasons or 'unknown'}")

        raw_busy = calendar_payload.get("busy") or []
        if not isinstance(raw_busy, list):
            raise GoogleCalendarError("Google Calendar freeBusy busy list is malformed.")
        return [self._parse_busy_entry(entry) for entry in raw_busy]

    def _parse_busy_entry(self, entry: Any) -> TimeInterval:
        if not isinstance(entry, dict):
            raise GoogleCalendarError("Google Calendar busy entry is not an object.")
        start = self._parse_datetime(entry.get("start"))
        end = self._parse_datetime(entry.get("end"))
        try:
            return TimeInterval(start=start, end=end)
        except ValueError as exc:
            raise GoogleCalendarError("Google Calendar busy entry ends before it starts.") from exc

    def _parse_datetime(self, raw_value: Any) -> datetime:
        if not isinstance(raw_value, str) or not raw_value.strip():
            raise GoogleCalendarError("Google Calendar busy entry is missing a timestamp.")
        normalized = raw_value.strip().replace("Z", "+00:00")
        try:
            parsed = datetime.fromisoformat(normalized)
        except ValueError as exc:
            raise GoogleCalendarError("Google Calendar busy timestamp is not valid ISO format.") from exc
        if parsed.tzinfo is None:
            return parsed.replace(tzinfo=UTC)
        return parsed

    def _remaining_seconds(self, deadline: float) -> float:
        remaining = deadline - self._clock()
        if remaining <= 0:
            raise GoogleCalendarError(
                f"Google Calendar lookup ran past its {self.timeout_seconds:g}s budget.",
            )
        return remaining

    def _request_json(
        self,
        method: str,
        path: str,
        payload: dict[str, Any] | None = None,
        *,
        deadline: float,
        allow_refresh: bool = True,
    ) -> dict[str, Any]:
        access_token = self.credentials.get_access_token(
            timeout_seconds=self._remaining_seconds(deadline),
        )
        target = f"{self.api_base_url}{path}"
        raw_payload: bytes | None = None
        if payload is not None:
            raw_payload = json.dumps(payload).encode("utf-8")

        req = request.Request(
            target,
            data=raw_payload,
            method=method,
            headers={
                "Authorization": f"Bearer {access_token}",
                "Content-Type": "application/json",
            },
        )

        try:
            with request.urlopen(req, timeout=self._remaining_seconds(deadline)) as response:
                response_body = response.read()
        except TimeoutError as exc:
            raise GoogleCalendarError("Google Calendar API request timed out.") from exc
        except error.HTTPError as exc:
            if exc.code == 401 and allow_refresh:
                logger.info("Google Calendar rejected access token, refreshing path=%s", path)
                self.credentials.invalidate()
                return self._request_json(
                    method,
                    path,
                    payload,
                    deadline=deadline,
                    allow_refresh=False,
                )
            body = exc.read().decode("utf-8", errors="ignore")
            raise GoogleCalendarError(
                f"Google Calendar API HTTP {exc.code}: {body or 'empty response body'}",
            ) from exc
        except error.URLError as exc:
            raise GoogleCalendarError(
                f"Google Calendar API connection error: {exc.reason}",
            ) from exc
        except (http.client.HTTPException, OSError) as exc:
            raise GoogleCalendarError(f"Google Calendar API response was interrupted: {exc!r}") from exc

        try:
            parsed_body = json.loads(response_body.decode("utf-8"))
        except ValueError as exc:
            raise GoogleCalendarError("Google Calendar API returned invalid JSON.") from exc

        if not isinstance(parsed_body, dict):
            raise GoogleCalendarError("Google Calendar API response is not a JSON object.")
        if isinstance(parsed_body.get("error"), dict):
            message = parsed_body["error"].get("message") or "unknown error"
            raise GoogleCalendarError(f"Google Calendar API error: {message}")
        return parsed_body


def _token_lifetime_seconds(payload: dict[str, Any]) -> float:
    expires_in = payload.get("expires_in")
    try:
        return float(expires_in) if expires_in is not None else 3600.0
    except (TypeError, ValueError):
        return 3600.0


def _to_rfc3339(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat().replace("+00:00", "Z")


def create_google_calendar_client(settings: Settings) -> GoogleCalendarClient:
    return _create_google_calendar_client_cached(
        client_id=settings.google_calendar_client_id,
        client_secret=settings.google_calendar_client_secret,
        refresh_token=settings.google_calendar_refresh_token,
        redirect_uri=settings.google_calendar_redirect_uri,
        calendar_id=settings.google_calendar_id,
        timeout_seconds=settings.google_calendar_api_timeout_seconds,
    )


@lru_cache
def _create_google_calendar_client_cached(
    *,
    client_id: str,
    client_secret: str,
    refresh_token: str,
    redirect_uri: str,
    calendar_id: str,
    timeout_seconds: float,
) -> GoogleCalendarClient:
    credentials = GoogleOAuthCredentials(
        client_id=client_id,
        client_secret=client_secret,
        refresh_token=refresh_token,
        redirect_uri=redirect_uri,
        timeout_seconds=timeout_seconds,
    )
    return GoogleCalendarClient(
        credentials=credentials,
        calendar_id=calendar_id,
        timeout_seconds=timeout_seconds,
    )


def clear_google_calendar_client_cache() -> None:
    _create_google_calendar_client_cached.cache_clear()
