"""Unit tests for GoogleCalendarClient.

Covers:
- deterministic event id generation
- credential JSON parsing (flat and console-download shapes)
- freeBusy request shape and merging across calendars
- create_event body, 409 recovery via PUT
- delete_event treating 404/410 as success
- one forced token refresh on 401
- retry on 5xx through the shared policy
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from pydantic import ValidationError

from tasksync.clients.calendar import (
    BREAK_EVENT_ID_PREFIX,
    GOOGLE_CALENDAR_API_BASE_URL,
    CalendarCredentialError,
    CalendarRequestError,
    CalendarTokenRefreshError,
    EventSpec,
    GoogleCalendarClient,
    GoogleOAuthCredentials,
    generate_event_id,
)
from tasksync.engine.types import BusyPeriod

pytestmark = pytest.mark.unit


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_credentials_json() -> str:
    return json.dumps(
        {
            "client_id": "client-id",
            "client_secret": "client-secret",
            "refresh_token": "refresh-token",
        }
    )


def _mock_response(
    *,
    status_code: int,
    method: str = "GET",
    url: str = GOOGLE_CALENDAR_API_BASE_URL,
    json_body: dict | None = None,
    text: str = "",
) -> httpx.Response:
    request = httpx.Request(method, url)
    if json_body is not None:
        return httpx.Response(status_code=status_code, json=json_body, request=request)
    return httpx.Response(status_code=status_code, text=text, request=request)


def _token_response(token: str = "access-token") -> MagicMock:
    response = MagicMock()
    response.status_code = 200
    response.json.return_value = {"access_token": token, "expires_in": 3600}
    return response


def _make_mock_http_client(*responses: httpx.Response) -> MagicMock:
    """Mock httpx.AsyncClient with a valid token endpoint and queued API responses."""
    mock_client = MagicMock(spec=httpx.AsyncClient)
    mock_client.post = AsyncMock(return_value=_token_response())
    mock_client.request = AsyncMock(side_effect=list(responses))
    return mock_client


def _make_client(mock_client: MagicMock) -> GoogleCalendarClient:
    return GoogleCalendarClient.from_credentials_json(
        _make_credentials_json(), http_client=mock_client
    )


def _spec(**overrides) -> EventSpec:
    values = {
        "event_id": "ctstask10",
        "summary": "📅 Write report",
        "start_at": datetime(2025, 3, 3, 9, 0, tzinfo=UTC),
        "end_at": datetime(2025, 3, 3, 11, 0, tzinfo=UTC),
        "timezone": "UTC",
    }
    values.update(overrides)
    return EventSpec(**values)


@pytest.fixture
def no_sleep():
    with patch("tasksync.clients.http.asyncio.sleep", new_callable=AsyncMock) as sleep:
        yield sleep


# ---------------------------------------------------------------------------
# Event ids
# ---------------------------------------------------------------------------


class TestGenerateEventId:
    def test_is_deterministic(self):
        assert generate_event_id("abc-123", 0) == generate_event_id("abc-123", 0)

    def test_changes_with_attempt(self):
        assert generate_event_id("abc", 0) != generate_event_id("abc", 1)

    @pytest.mark.parametrize("uid", ["xyz", "", "WXYZ-_"])
    def test_attempts_differ_when_uid_sanitizes_to_nothing(self, uid):
        ids = {generate_event_id(uid, attempt) for attempt in (0, 1, 10, 100)}
        assert len(ids) == 4
        assert generate_event_id(uid, 1) == "cts01"
        assert generate_event_id(uid, 10) == "cts010"

    def test_lowercases_and_strips_disallowed_characters(self):
        assert generate_event_id("AbC-Wxyz_9", 2) == "ctsabc92"

    def test_only_base32hex_characters(self):
        event_id = generate_event_id("Task/ÜID with spaces & z", 3)
        assert all(ch in "abcdefghijklmnopqrstuv0123456789" for ch in event_id)

    def test_short_ids_are_padded(self):
        assert generate_event_id("1", 0) == "cts10"
        assert generate_event_id("", 0) == "cts00"

    def test_break_prefix(self):
        event_id = generate_event_id("task1", 0, prefix=BREAK_EVENT_ID_PREFIX)
        assert event_id.startswith("ctb")
        assert event_id != generate_event_id("task1", 0)


# ---------------------------------------------------------------------------
# Credentials and event spec validation
# ---------------------------------------------------------------------------


class TestCredentials:
    def test_flat_json(self):
        creds = GoogleOAuthCredentials.from_json(_make_credentials_json())
        assert creds.client_id == "client-id"
        assert creds.refresh_token == "refresh-token"

    def test_nested_installed_shape(self):
        raw = json.dumps(
            {
                "installed": {"client_id": "cid", "client_secret": "secret"},
                "refresh_token": "rt",
            }
        )
        creds = GoogleOAuthCredentials.from_json(raw)
        assert (creds.client_id, creds.client_secret, creds.refresh_token) == (
            "cid",
            "secret",
            "rt",
        )

    def test_missing_fields_are_reported(self):
        with pytest.raises(CalendarCredentialError, match="refresh_token"):
            GoogleOAuthCredentials.from_json(json.dumps({"client_id": "a", "client_secret": "b"}))

    def test_invalid_json(self):
        with pytest.raises(CalendarCredentialError, match="valid JSON"):
            GoogleOAuthCredentials.from_json("{not json")

    def test_blank_credentials_rejected(self):
        with pytest.raises(CalendarCredentialError, match="not configured"):
            GoogleCalendarClient.from_credentials_json("   ")


class TestEventSpec:
    def test_rejects_end_before_start(self):
        with pytest.raises(ValidationError, match="end_at must be after start_at"):
            _spec(end_at=datetime(2025, 3, 3, 8, 0, tzinfo=UTC))

    def test_rejects_naive_datetimes(self):
        with pytest.raises(ValidationError, match="timezone-aware"):
            _spec(
                start_at=datetime(2025, 3, 3, 9, 0),
                end_at=datetime(2025, 3, 3, 10, 0),
            )

    def test_rejects_unknown_timezone(self):
        with pytest.raises(ValidationError, match="Unknown timezone"):
            _spec(timezone="Mars/Olympus_Mons")

    def test_google_body_uses_local_time(self):
        body = _spec(timezone="Europe/Berlin", description="notes").to_google_body()
        assert body["id"] == "ctstask10"
        assert body["start"] == {
            "dateTime": "2025-03-03T10:00:00+01:00",
            "timeZone": "Europe/Berlin",
        }
        assert body["description"] == "notes"
        assert body["transparency"] == "opaque"
        assert "colorId" not in body


# ---------------------------------------------------------------------------
# freeBusy
# ---------------------------------------------------------------------------


class TestGetBusy:
    async def test_merges_busy_windows_across_calendars(self):
        response = _mock_response(
            status_code=200,
            method="POST",
            json_body={
                "calendars": {
                    "primary": {
                        "busy": [
                            {"start": "2025-03-03T09:00:00Z", "end": "2025-03-03T10:00:00Z"},
                        ]
                    },
                    "work@example.com": {
                        "busy": [
                            {"start": "2025-03-03T09:30:00Z", "end": "2025-03-03T11:00:00Z"},
                            {"start": "2025-03-03T14:00:00Z", "end": "2025-03-03T15:00:00Z"},
                        ]
                    },
                }
            },
        )
        mock_client = _make_mock_http_client(response)
        client = _make_client(mock_client)

        busy = await client.get_busy(
            ["primary", "work@example.com"],
            datetime(2025, 3, 3, 0, 0, tzinfo=UTC),
            datetime(2025, 3, 4, 0, 0, tzinfo=UTC),
        )

        assert busy == [
            BusyPeriod(
                start=datetime(2025, 3, 3, 9, 0, tzinfo=UTC),
                end=datetime(2025, 3, 3, 11, 0, tzinfo=UTC),
            ),
            BusyPeriod(
                start=datetime(2025, 3, 3, 14, 0, tzinfo=UTC),
                end=datetime(2025, 3, 3, 15, 0, tzinfo=UTC),
            ),
        ]

        call = mock_client.request.await_args
        assert call.args == ("POST", f"{GOOGLE_CALENDAR_API_BASE_URL}/freeBusy")
        assert call.kwargs["json"] == {
            "timeMin": "2025-03-03T00:00:00Z",
            "timeMax": "2025-03-04T00:00:00Z",
            "items": [{"id": "primary"}, {"id": "work@example.com"}],
        }
        assert call.kwargs["headers"] == {"Authorization": "Bearer access-token"}

    async def test_calendar_with_errors_is_skipped(self):
        response = _mock_response(
            status_code=200,
            json_body={"calendars": {"shared": {"errors": [{"reason": "notFound"}]}}},
        )
        client = _make_client(_make_mock_http_client(response))

        busy = await client.get_busy(
            ["shared"],
            datetime(2025, 3, 3, tzinfo=UTC),
            datetime(2025, 3, 4, tzinfo=UTC),
        )

        assert busy == []

    async def test_no_calendars_makes_no_request(self):
        mock_client = _make_mock_http_client()
        client = _make_client(mock_client)

        assert await client.get_busy([], datetime.now(UTC), datetime.now(UTC)) == []
        mock_client.request.assert_not_awaited()

    async def test_inverted_range_rejected(self):
        client = _make_client(_make_mock_http_client())
        with pytest.raises(ValueError, match="time_max must be after time_min"):
            await client.get_busy(
                ["primary"],
                datetime(2025, 3, 4, tzinfo=UTC),
                datetime(2025, 3, 3, tzinfo=UTC),
            )


# ---------------------------------------------------------------------------
# create/delete
# ---------------------------------------------------------------------------


class TestCreateEvent:
    async def test_posts_event_body(self):
        response = _mock_response(status_code=200, json_body={"id": "ctstask10"})
        mock_client = _make_mock_http_client(response)
        client = _make_client(mock_client)

        created = await client.create_event(
            "work@example.com", _spec(color_id="8", transparency="transparent")
        )

        assert created.id == "ctstask10"
        call = mock_client.request.await_args
        assert call.args == (
            "POST",
            f"{GOOGLE_CALENDAR_API_BASE_URL}/calendars/work%40example.com/events",
        )
        body = call.kwargs["json"]
        assert body["id"] == "ctstask10"
        assert body["summary"] == "📅 Write report"
        assert body["colorId"] == "8"
        assert body["transparency"] == "transparent"

    async def test_conflict_updates_existing_event(self):
        conflict = _mock_response(status_code=409, json_body={"error": {"message": "duplicate"}})
        updated = _mock_response(status_code=200, json_body={"id": "ctstask10"})
        mock_client = _make_mock_http_client(conflict, updated)
        client = _make_client(mock_client)

        created = await client.create_event("primary", _spec())

        assert created.id == "ctstask10"
        methods = [call.args[0] for call in mock_client.request.await_args_list]
        assert methods == ["POST", "PUT"]
        assert mock_client.request.await_args.args[1].endswith(
            "/calendars/primary/events/ctstask10"
        )

    async def test_client_error_raises(self):
        forbidden = _mock_response(
            status_code=403, json_body={"error": {"message": "Insufficient permissions"}}
        )
        client = _make_client(_make_mock_http_client(forbidden))

        with pytest.raises(CalendarRequestError) as exc_info:
            await client.create_event("primary", _spec())

        assert exc_info.value.status_code == 403
        assert "Insufficient permissions" in str(exc_info.value)

    async def test_server_errors_are_retried(self, no_sleep):
        mock_client = _make_mock_http_client(
            _mock_response(status_code=503, text="unavailable"),
            _mock_response(status_code=200, json_body={"id": "ctstask10"}),
        )
        client = _make_client(mock_client)

        created = await client.create_event("primary", _spec())

        assert created.id == "ctstask10"
        assert mock_client.request.await_count == 2
        no_sleep.assert_awaited_once_with(1.0)

    async def test_unauthorized_forces_one_token_refresh(self):
        mock_client = _make_mock_http_client(
            _mock_response(status_code=401, json_body={"error": {"message": "expired"}}),
            _mock_response(status_code=200, json_body={"id": "ctstask10"}),
        )
        mock_client.post = AsyncMock(
            side_effect=[_token_response("stale"), _token_response("fresh")]
        )
        client = _make_client(mock_client)

        await client.create_event("primary", _spec())

        assert mock_client.post.await_count == 2
        headers = [call.kwargs["headers"] for call in mock_client.request.await_args_list]
        assert headers == [
            {"Authorization": "Bearer stale"},
            {"Authorization": "Bearer fresh"},
        ]

    async def test_token_refresh_failure(self):
        mock_client = _make_mock_http_client()
        failed = MagicMock()
        failed.status_code = 400
        failed.json.return_value = {"error": "invalid_grant"}
        failed.text = ""
        mock_client.post = AsyncMock(return_value=failed)
        client = _make_client(mock_client)

        with pytest.raises(CalendarTokenRefreshError, match="invalid_grant"):
            await client.create_event("primary", _spec())


class TestDeleteEvent:
    async def test_sends_delete(self):
        mock_client = _make_mock_http_client(_mock_response(status_code=204))
        client = _make_client(mock_client)

        await client.delete_event("primary", "ctstask10")

        call = mock_client.request.await_args
        assert call.args == (
            "DELETE",
            f"{GOOGLE_CALENDAR_API_BASE_URL}/calendars/primary/events/ctstask10",
        )

    @pytest.mark.parametrize("status_code", [404, 410])
    async def test_missing_event_counts_as_deleted(self, status_code):
        client = _make_client(_make_mock_http_client(_mock_response(status_code=status_code)))

        await client.delete_event("primary", "ctstask10")

    async def test_other_errors_raise(self):
        response = _mock_response(status_code=403, json_body={"error": {"message": "nope"}})
        client = _make_client(_make_mock_http_client(response))

        with pytest.raises(CalendarRequestError) as exc_info:
            await client.delete_event("primary", "ctstask10")
        assert exc_info.value.status_code == 403

    async def test_blank_event_id_rejected(self):
        client = _make_client(_make_mock_http_client())
        with pytest.raises(ValueError, match="event_id"):
            await client.delete_event("primary", "  ")


class TestShutdown:
    async def test_injected_client_is_not_closed(self):
        mock_client = _make_mock_http_client()
        mock_client.aclose = AsyncMock()
        client = _make_client(mock_client)

        await client.shutdown()

        mock_client.aclose.assert_not_awaited()
