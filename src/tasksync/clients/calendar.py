"""Google Calendar client: free/busy lookup and event create/delete.

Authenticates with an OAuth refresh token and caches the short-lived access
token. Every request goes through the shared retry policy in
:mod:`tasksync.clients.http`; a 401 triggers one forced token refresh.

Task events use deterministic identifiers (see :func:`generate_event_id`), so
re-running a half-finished cycle re-creates the same event instead of a
duplicate: a 409 on insert is resolved by updating the existing event.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from datetime import UTC, datetime, timedelta
from typing import Any, Literal
from urllib.parse import quote
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator, model_validator

from tasksync.clients.http import send_with_retry
from tasksync.engine.intervals import merge_busy_periods
from tasksync.engine.types import BusyPeriod

logger = logging.getLogger(__name__)

GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"

TASK_EVENT_ID_PREFIX = "cts"
BREAK_EVENT_ID_PREFIX = "ctb"
# Google event ids: base32hex characters, 5 to 1024 long.
_EVENT_ID_DISALLOWED = re.compile(r"[^a-v0-9]")
_EVENT_ID_MIN_LENGTH = 5

BREAK_EVENT_COLOR_ID = "8"


class CalendarError(RuntimeError):
    """Base error raised by the Google Calendar client."""


class CalendarCredentialError(CalendarError):
    """Raised when Google credential JSON is missing or invalid."""


class CalendarTokenRefreshError(CalendarError):
    """Raised when refresh-token exchange fails."""


class CalendarRequestError(CalendarError):
    """Raised when a Google Calendar API request fails."""

    def __init__(self, *, status_code: int, message: str) -> None:
        self.status_code = status_code
        self.message = message
        super().__init__(f"Google Calendar API request failed ({status_code}): {message}")


def generate_event_id(task_uid: str, attempt: int = 0, prefix: str = TASK_EVENT_ID_PREFIX) -> str:
    """Return a deterministic Google event id for a task placement attempt.

    The uid is lowercased and reduced to Google's allowed character set. Short
    stems are right-padded with ``0`` before the attempt number is appended, so
    different attempts for one uid never produce the same id.
    """
    sanitized = _EVENT_ID_DISALLOWED.sub("", task_uid.lower())
    stem = f"{prefix}{sanitized}".ljust(_EVENT_ID_MIN_LENGTH - 1, "0")
    return f"{stem}{attempt}"


class GoogleOAuthCredentials(BaseModel):
    """OAuth client credentials required for refresh-token exchange."""

    model_config = ConfigDict(extra="forbid")

    client_id: str = Field(min_length=1)
    client_secret: str = Field(min_length=1)
    refresh_token: str = Field(min_length=1)

    @field_validator("client_id", "client_secret", "refresh_token")
    @classmethod
    def _normalize_non_empty(cls, value: str, info: ValidationInfo) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError(f"{info.field_name} must be a non-empty string")
        return normalized

    @classmethod
    def from_json(cls, raw_value: str) -> GoogleOAuthCredentials:
        try:
            payload = json.loads(raw_value)
        except json.JSONDecodeError as exc:
            raise CalendarCredentialError(f"Credential JSON must be valid JSON: {exc.msg}") from exc

        if not isinstance(payload, dict):
            raise CalendarCredentialError("Credential JSON must decode to a JSON object")

        credential_data = {
            key: _extract_google_credential_value(payload, key)
            for key in ("client_id", "client_secret", "refresh_token")
        }

        missing = sorted(key for key, value in credential_data.items() if value is None)
        if missing:
            raise CalendarCredentialError(
                f"Credential JSON is missing required field(s): {', '.join(missing)}"
            )

        invalid = sorted(
            key
            for key, value in credential_data.items()
            if not isinstance(value, str) or not value.strip()
        )
        if invalid:
            raise CalendarCredentialError(
                f"Credential JSON must contain non-empty string field(s): {', '.join(invalid)}"
            )

        return cls(**{key: str(value) for key, value in credential_data.items()})


def _extract_google_credential_value(payload: dict[str, Any], key: str) -> Any:
    if key in payload:
        return payload[key]

    # Client secret files downloaded from the console nest the fields.
    for nested_key in ("installed", "web"):
        nested = payload.get(nested_key)
        if isinstance(nested, dict) and key in nested:
            return nested[key]
    return None


def _coerce_expires_in_seconds(value: Any) -> int:
    if isinstance(value, bool):
        return 3600
    if isinstance(value, int | float):
        return int(value) if value > 0 else 3600
    return 3600


def _safe_google_error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            message = error_payload.get("message")
            if isinstance(message, str) and message.strip():
                return " ".join(message.split())[:200]
        if isinstance(error_payload, str) and error_payload.strip():
            return " ".join(error_payload.split())[:200]

    raw_text = response.text.strip()
    if raw_text:
        return " ".join(raw_text.split())[:200]
    return "Request failed without an error payload"


def _google_rfc3339(value: datetime) -> str:
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).isoformat().replace("+00:00", "Z")


def _parse_google_datetime(value: str) -> datetime:
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError as exc:
        raise ValueError(f"Google Calendar returned an invalid dateTime: {value}") from exc
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


class _GoogleOAuthClient:
    """Refresh-token OAuth helper with lightweight access-token caching."""

    def __init__(
        self,
        credentials: GoogleOAuthCredentials,
        http_client: httpx.AsyncClient,
    ) -> None:
        self._credentials = credentials
        self._http_client = http_client
        self._access_token: str | None = None
        self._access_token_expires_at: datetime | None = None
        self._refresh_lock = asyncio.Lock()

    async def get_access_token(self, *, force_refresh: bool = False) -> str:
        if not force_refresh and self._token_is_fresh():
            assert self._access_token is not None
            return self._access_token

        async with self._refresh_lock:
            if not force_refresh and self._token_is_fresh():
                assert self._access_token is not None
                return self._access_token

            await self._refresh_access_token()
            assert self._access_token is not None
            return self._access_token

    def _token_is_fresh(self) -> bool:
        if self._access_token is None or self._access_token_expires_at is None:
            return False
        return datetime.now(UTC) < self._access_token_expires_at

    async def _refresh_access_token(self) -> None:
        try:
            response = await self._http_client.post(
                GOOGLE_OAUTH_TOKEN_URL,
                data={
                    "client_id": self._credentials.client_id,
                    "client_secret": self._credentials.client_secret,
                    "refresh_token": self._credentials.refresh_token,
                    "grant_type": "refresh_token",
                },
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise CalendarTokenRefreshError(
                f"Google OAuth token refresh request failed: {exc}"
            ) from exc

        if response.status_code < 200 or response.status_code >= 300:
            raise CalendarTokenRefreshError(
                "Google OAuth token refresh failed "
                f"({response.status_code}): {_safe_google_error_message(response)}"
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise CalendarTokenRefreshError(
                "Google OAuth token endpoint returned invalid JSON"
            ) from exc

        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not isinstance(access_token, str) or not access_token.strip():
            raise CalendarTokenRefreshError(
                "Google OAuth token response is missing a non-empty access_token"
            )

        expires_in_raw = payload.get("expires_in") if isinstance(payload, dict) else None
        # Refresh early to avoid edge-of-expiration failures.
        refresh_ttl_seconds = max(_coerce_expires_in_seconds(expires_in_raw) - 60, 30)

        self._access_token = access_token.strip()
        self._access_token_expires_at = datetime.now(UTC) + timedelta(seconds=refresh_ttl_seconds)


class EventSpec(BaseModel):
    """A timed event to insert into a calendar."""

    event_id: str | None = None
    summary: str = Field(min_length=1)
    description: str | None = None
    start_at: datetime
    end_at: datetime
    timezone: str = "UTC"
    color_id: str | None = None
    transparency: Literal["opaque", "transparent"] = "opaque"

    @field_validator("timezone")
    @classmethod
    def _validate_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown timezone: {value!r}") from exc
        return value

    @model_validator(mode="after")
    def _validate_bounds(self) -> EventSpec:
        if self.start_at.tzinfo is None or self.end_at.tzinfo is None:
            raise ValueError("event boundaries must be timezone-aware")
        if self.end_at <= self.start_at:
            raise ValueError("end_at must be after start_at")
        return self

    def to_google_body(self) -> dict[str, Any]:
        tz = ZoneInfo(self.timezone)
        body: dict[str, Any] = {
            "summary": self.summary,
            "status": "confirmed",
            "start": {
                "dateTime": self.start_at.astimezone(tz).isoformat(),
                "timeZone": self.timezone,
            },
            "end": {
                "dateTime": self.end_at.astimezone(tz).isoformat(),
                "timeZone": self.timezone,
            },
            "transparency": self.transparency,
        }
        if self.event_id is not None:
            body["id"] = self.event_id
        if self.description:
            body["description"] = self.description
        if self.color_id is not None:
            body["colorId"] = self.color_id
        return body


class CreatedEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str


class GoogleCalendarClient:
    """Authenticated Google Calendar v3 client."""

    def __init__(
        self,
        credentials: GoogleOAuthCredentials,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=30.0)
        self._oauth = _GoogleOAuthClient(credentials, self._http_client)

    @classmethod
    def from_credentials_json(
        cls, raw_value: str | None, http_client: httpx.AsyncClient | None = None
    ) -> GoogleCalendarClient:
        if raw_value is None or not raw_value.strip():
            raise CalendarCredentialError("Google Calendar credentials are not configured")
        return cls(GoogleOAuthCredentials.from_json(raw_value), http_client=http_client)

    async def _request_once(
        self,
        *,
        method: str,
        url: str,
        params: dict[str, Any] | None,
        json_body: dict[str, Any] | None,
        force_refresh: bool,
    ) -> httpx.Response:
        access_token = await self._oauth.get_access_token(force_refresh=force_refresh)
        return await self._http_client.request(
            method,
            url,
            params=params,
            json=json_body,
            headers={"Authorization": f"Bearer {access_token}"},
        )

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> httpx.Response:
        url = f"{GOOGLE_CALENDAR_API_BASE_URL}{path}"
        refreshed = False

        async def send() -> httpx.Response:
            nonlocal refreshed
            response = await self._request_once(
                method=method, url=url, params=params, json_body=json_body, force_refresh=False
            )
            if response.status_code == 401 and not refreshed:
                refreshed = True
                response = await self._request_once(
                    method=method, url=url, params=params, json_body=json_body, force_refresh=True
                )
            return response

        try:
            return await send_with_retry(send, service="Google Calendar")
        except httpx.TransportError as exc:
            raise CalendarError(f"Google Calendar request failed: {exc}") from exc

    async def _request_json(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        response = await self._request(method, path, params=params, json_body=json_body)
        return self._decode(response)

    @staticmethod
    def _decode(response: httpx.Response) -> dict[str, Any]:
        if response.status_code < 200 or response.status_code >= 300:
            raise CalendarRequestError(
                status_code=response.status_code,
                message=_safe_google_error_message(response),
            )
        if response.status_code == 204:
            return {}
        try:
            payload = response.json()
        except ValueError as exc:
            raise CalendarError(
                "Google Calendar API returned invalid JSON for a successful response"
            ) from exc
        if not isinstance(payload, dict):
            raise CalendarError("Google Calendar API returned an unexpected JSON payload shape")
        return payload

    async def get_busy(
        self,
        calendar_ids: list[str],
        time_min: datetime,
        time_max: datetime,
    ) -> list[BusyPeriod]:
        """Return merged busy periods across *calendar_ids* in ``[time_min, time_max)``."""
        if not calendar_ids:
            return []
        if time_max <= time_min:
            raise ValueError("time_max must be after time_min")

        payload = await self._request_json(
            "POST",
            "/freeBusy",
            json_body={
                "timeMin": _google_rfc3339(time_min),
                "timeMax": _google_rfc3339(time_max),
                "items": [{"id": calendar_id} for calendar_id in calendar_ids],
            },
        )
        calendars_payload = payload.get("calendars")
        if not isinstance(calendars_payload, dict):
            raise CalendarError("Google Calendar freeBusy response missing calendars object")

        periods: list[BusyPeriod] = []
        for calendar_id in calendar_ids:
            calendar_payload = calendars_payload.get(calendar_id)
            if not isinstance(calendar_payload, dict):
                logger.warning("freeBusy response has no entry for calendar %s", calendar_id)
                continue
            errors = calendar_payload.get("errors")
            if errors:
                logger.warning("freeBusy reported errors for calendar %s: %s", calendar_id, errors)
            for window in calendar_payload.get("busy") or []:
                if not isinstance(window, dict):
                    continue
                start_raw = window.get("start")
                end_raw = window.get("end")
                if not isinstance(start_raw, str) or not isinstance(end_raw, str):
                    raise CalendarError(
                        "Google Calendar freeBusy busy windows must include start/end"
                    )
                start_at = _parse_google_datetime(start_raw)
                end_at = _parse_google_datetime(end_raw)
                if end_at > start_at:
                    periods.append(BusyPeriod(start=start_at, end=end_at))

        return merge_busy_periods(periods)

    async def create_event(self, calendar_id: str, spec: EventSpec) -> CreatedEvent:
        """Insert *spec*; an already-existing deterministic id is overwritten in place."""
        encoded_calendar_id = quote(calendar_id, safe="")
        body = spec.to_google_body()
        response = await self._request(
            "POST", f"/calendars/{encoded_calendar_id}/events", json_body=body
        )

        if response.status_code == 409 and spec.event_id is not None:
            logger.info(
                "Event %s already exists in calendar %s; updating it instead",
                spec.event_id,
                calendar_id,
            )
            encoded_event_id = quote(spec.event_id, safe="")
            response = await self._request(
                "PUT",
                f"/calendars/{encoded_calendar_id}/events/{encoded_event_id}",
                json_body=body,
            )

        payload = self._decode(response)
        try:
            return CreatedEvent.model_validate(payload)
        except ValueError as exc:
            raise CalendarError("Google Calendar create response is missing an event id") from exc

    async def delete_event(self, calendar_id: str, event_id: str) -> None:
        """Delete an event. Missing or already-deleted events count as success."""
        normalized_event_id = event_id.strip()
        if not normalized_event_id:
            raise ValueError("event_id must be a non-empty string")

        encoded_calendar_id = quote(calendar_id, safe="")
        encoded_event_id = quote(normalized_event_id, safe="")
        response = await self._request(
            "DELETE", f"/calendars/{encoded_calendar_id}/events/{encoded_event_id}"
        )

        if response.status_code in (404, 410):
            logger.debug("delete_event: event '%s' already gone", normalized_event_id)
            return
        if response.status_code < 200 or response.status_code >= 300:
            raise CalendarRequestError(
                status_code=response.status_code,
                message=_safe_google_error_message(response),
            )

    async def shutdown(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()
