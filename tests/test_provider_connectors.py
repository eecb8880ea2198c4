from __future__ import annotations

from datetime import datetime
import json
import time
from urllib.error import HTTPError, URLError
from urllib.parse import parse_qs, urlparse

import pytest

from unical.connectors.base import (
    Attendee,
    ConnectorAuthError,
    ConnectorConfigError,
    ConnectorCursorExpiredError,
    ConnectorError,
    ConnectorTransientError,
    FetchTimeoutError,
)
from unical.connectors.http import request_json
from unical.connectors.provider_a import ProviderAConnector
from unical.connectors.provider_b import ProviderBConnector
from unical.connectors.provider_c import API_VERSION, ProviderCConnector
from unical.models import EventSource
from unical.timeutil import UTC, TimeRange

WINDOW = TimeRange(
    start=datetime(2026, 3, 1, 0, 0, tzinfo=UTC),
    end=datetime(2026, 3, 10, 0, 0, tzinfo=UTC),
)


class _ResponseStub:
    def __init__(self, payload: bytes):
        self.payload = payload

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def read(self) -> bytes:
        return self.payload


def _json_response(payload: dict) -> _ResponseStub:
    return _ResponseStub(json.dumps(payload).encode("utf-8"))


def _query(request) -> dict[str, str]:
    return {key: values[0] for key, values in parse_qs(urlparse(request.full_url).query).items()}


def _http_error(request, code: int) -> HTTPError:
    return HTTPError(request.full_url, code, "error", hdrs=None, fp=None)


def test_request_json_maps_http_failures(monkeypatch) -> None:
    def _raise(code):
        def _urlopen(request, timeout):
            raise _http_error(request, code)

        return _urlopen

    cases = [
        (401, ConnectorAuthError),
        (403, ConnectorAuthError),
        (404, ConnectorConfigError),
        (410, ConnectorCursorExpiredError),
        (429, ConnectorTransientError),
        (503, ConnectorTransientError),
    ]
    for code, expected in cases:
        monkeypatch.setattr("unical.connectors.http.urlopen", _raise(code))
        with pytest.raises(expected):
            request_json("https://calendar.test/x", headers={}, timeout_sec=1.0, provider="Test")

    def _unreachable(request, timeout):
        raise URLError("connection refused")

    monkeypatch.setattr("unical.connectors.http.urlopen", _unreachable)
    with pytest.raises(ConnectorTransientError, match="unreachable"):
        request_json("https://calendar.test/x", headers={}, timeout_sec=1.0, provider="Test")

    monkeypatch.setattr("unical.connectors.http.urlopen", lambda request, timeout: _ResponseStub(b"[1, 2]"))
    with pytest.raises(ConnectorError, match="response is invalid"):
        request_json("https://calendar.test/x", headers={}, timeout_sec=1.0, provider="Test")


def test_request_json_reports_timeouts_as_fetch_timeouts(monkeypatch) -> None:
    def _slow(request, timeout):
        raise TimeoutError("timed out")

    monkeypatch.setattr("unical.connectors.http.urlopen", _slow)

    with pytest.raises(FetchTimeoutError):
        request_json("https://calendar.test/x", headers={}, timeout_sec=0.1, provider="Test")


def test_connectors_require_https_and_credentials() -> None:
    with pytest.raises(ConnectorConfigError, match="https"):
        ProviderAConnector(token="t", user_uri="https://api.test/users/U", base_url="http://api.test")
    with pytest.raises(ConnectorConfigError, match="token and user_uri"):
        ProviderAConnector.from_config({"token": "t"})
    with pytest.raises(ConnectorConfigError, match="needs a token"):
        ProviderBConnector.from_config({"calendar_id": "primary"})
    with pytest.raises(ConnectorConfigError, match="token and location_id"):
        ProviderCConnector.from_config({"token": "t"})


def test_provider_a_pages_normalizes_and_reports_removals(monkeypatch) -> None:
    requests = []
    pages = {
        None: {
            "collection": [
                {
                    "uri": "https://api.test/scheduled_events/AAA",
                    "name": "Intro dive",
                    "status": "active",
                    "start_time": "2026-03-02T09:30:00Z",
                    "end_time": "2026-03-02T10:30:00Z",
                    "location": {"type": "physical", "location": "Dock 3"},
                    "event_guests": [{"email": "guest@example.com", "name": "Guest"}, {"name": "no email"}],
                },
                {"uri": "https://api.test/scheduled_events/BBB", "status": "canceled"},
                {"name": "missing uri", "start_time": "2026-03-02T09:00:00Z"},
            ],
            "pagination": {"next_page_token": "page-2"},
        },
        "page-2": {
            "collection": [
                {
                    "uri": "https://api.test/scheduled_events/CCC",
                    "name": "Refresher",
                    "status": "active",
                    "start_time": "2026-03-03T14:00:00Z",
                }
            ],
            "pagination": {"next_page_token": None},
        },
    }

    def _urlopen(request, timeout):
        requests.append(request)
        return _json_response(pages[_query(request).get("page_token")])

    monkeypatch.setattr("unical.connectors.http.urlopen", _urlopen)
    connector = ProviderAConnector(token="secret", user_uri="https://api.test/users/U1")

    result = connector.fetch_events("U1", WINDOW)

    assert result.error is None
    assert result.pages_fetched == 2
    assert result.normalization_errors == 1
    assert [event.source_id for event in result.events] == ["AAA", "CCC"]
    assert [removed.source_id for removed in result.removed] == ["BBB"]

    first, second = result.events
    assert first.source == EventSource.PROVIDER_A
    assert first.location == "Dock 3"
    assert first.attendees == (Attendee(email="guest@example.com", display_name="Guest"),)
    assert first.event_type == "booking"
    assert second.end_time == datetime(2026, 3, 3, 15, 0, tzinfo=UTC)

    params = _query(requests[0])
    assert params["user"] == "https://api.test/users/U1"
    assert params["min_start_time"] == "2026-02-28T00:00:00+00:00"
    assert params["max_start_time"] == "2026-03-10T00:00:00+00:00"
    assert requests[0].get_header("Authorization") == "Bearer secret"


def test_provider_a_keeps_first_page_when_second_page_fails(monkeypatch) -> None:
    def _urlopen(request, timeout):
        if _query(request).get("page_token") == "page-2":
            raise _http_error(request, 503)
        return _json_response(
            {
                "collection": [
                    {
                        "uri": "https://api.test/scheduled_events/AAA",
                        "status": "active",
                        "start_time": "2026-03-02T09:30:00Z",
                        "end_time": "2026-03-02T10:30:00Z",
                    }
                ],
                "pagination": {"next_page_token": "page-2"},
            }
        )

    monkeypatch.setattr("unical.connectors.http.urlopen", _urlopen)

    result = ProviderAConnector(token="t", user_uri="u").fetch_events("U1", WINDOW)

    assert isinstance(result.error, ConnectorTransientError)
    assert result.partial is True
    assert result.failed is False
    assert [event.source_id for event in result.events] == ["AAA"]


def test_provider_a_rejected_credentials_fail_the_fetch(monkeypatch) -> None:
    def _urlopen(request, timeout):
        raise _http_error(request, 401)

    monkeypatch.setattr("unical.connectors.http.urlopen", _urlopen)

    result = ProviderAConnector(token="expired", user_uri="u").fetch_events("U1", WINDOW)

    assert isinstance(result.error, ConnectorAuthError)
    assert result.failed is True
    assert result.fetched_count == 0


def test_expired_deadline_fails_without_a_request(monkeypatch) -> None:
    def _urlopen(request, timeout):
        raise AssertionError("no request expected")

    monkeypatch.setattr("unical.connectors.http.urlopen", _urlopen)

    result = ProviderAConnector(token="t", user_uri="u").fetch_events(
        "U1",
        WINDOW,
        deadline=time.monotonic() - 1,
    )

    assert isinstance(result.error, FetchTimeoutError)
    assert result.failed is True


def test_provider_b_falls_back_to_full_window_when_sync_token_expires(monkeypatch) -> None:
    requests = []

    def _urlopen(request, timeout):
        params = _query(request)
        requests.append(params)
        if "syncToken" in params:
            raise _http_error(request, 410)
        return _json_response(
            {
                "items": [
                    {
                        "id": "g-1",
                        "status": "confirmed",
                        "summary": "Board meeting",
                        "start": {"dateTime": "2026-03-02T10:15:00"},
                        "end": {"dateTime": "2026-03-02T11:00:00"},
                        "attendees": [{"email": "a@example.com", "displayName": "A"}],
                        "eventType": "default",
                    },
                    {
                        "id": "g-2",
                        "summary": "Offsite",
                        "start": {"date": "2026-03-04"},
                        "end": {"date": "2026-03-06"},
                    },
                    {"id": "g-3", "status": "cancelled"},
                    {"id": "g-4", "start": {}},
                ],
                "nextSyncToken": "sync-new",
            }
        )

    monkeypatch.setattr("unical.connectors.http.urlopen", _urlopen)
    connector = ProviderBConnector(token="t", timezone_name="Europe/Berlin")

    result = connector.fetch_events("U1", WINDOW, cursor="sync-old")

    assert [params.get("syncToken") for params in requests] == ["sync-old", None]
    assert requests[1]["timeMin"] == "2026-03-01T00:00:00+00:00"
    assert result.error is None
    assert result.cursor == "sync-new"
    assert result.cursor_kind == "sync_token"
    assert result.normalization_errors == 1
    assert [removed.source_id for removed in result.removed] == ["g-3"]

    timed, all_day = result.events
    assert timed.start_time == datetime(2026, 3, 2, 9, 15, tzinfo=UTC)
    assert timed.attendees == (Attendee(email="a@example.com", display_name="A"),)
    assert timed.event_type == "default"
    assert all_day.all_day is True
    assert all_day.start_time == datetime(2026, 3, 3, 23, 0, tzinfo=UTC)
    assert all_day.end_time == datetime(2026, 3, 5, 23, 0, tzinfo=UTC)


def test_provider_b_uses_stored_sync_token(monkeypatch) -> None:
    seen = []

    def _urlopen(request, timeout):
        seen.append(_query(request))
        return _json_response({"items": [], "nextSyncToken": "sync-2"})

    monkeypatch.setattr("unical.connectors.http.urlopen", _urlopen)

    result = ProviderBConnector(token="t").fetch_events("U1", WINDOW, cursor="sync-1")

    assert seen[0]["syncToken"] == "sync-1"
    assert "timeMin" not in seen[0]
    assert result.cursor == "sync-2"


def test_provider_b_delta_update_moved_out_of_window_becomes_a_removal(monkeypatch) -> None:
    def _urlopen(request, timeout):
        return _json_response(
            {
                "items": [
                    {
                        "id": "g-moved",
                        "summary": "Pushed to next month",
                        "start": {"dateTime": "2026-04-02T10:00:00Z"},
                        "end": {"dateTime": "2026-04-02T11:00:00Z"},
                    },
                    {
                        "id": "g-kept",
                        "summary": "Still this week",
                        "start": {"dateTime": "2026-03-03T10:00:00Z"},
                        "end": {"dateTime": "2026-03-03T11:00:00Z"},
                    },
                ],
                "nextSyncToken": "sync-2",
            }
        )

    monkeypatch.setattr("unical.connectors.http.urlopen", _urlopen)
    connector = ProviderBConnector(token="t")

    delta = connector.fetch_events("U1", WINDOW, cursor="sync-1")
    full = connector.fetch_events("U1", WINDOW)

    assert [event.source_id for event in delta.events] == ["g-kept"]
    assert [(removed.source, removed.source_id, removed.owner_id) for removed in delta.removed] == [
        (EventSource.PROVIDER_B, "g-moved", "U1")
    ]
    assert [event.source_id for event in full.events] == ["g-kept"]
    assert full.removed == []


def test_provider_c_reads_epoch_millis_and_defaults_duration(monkeypatch) -> None:
    start = datetime(2026, 3, 2, 9, 30, tzinfo=UTC)
    requests = []

    def _urlopen(request, timeout):
        requests.append(request)
        return _json_response(
            {
                "events": [
                    {
                        "id": "E7",
                        "title": "Consultation",
                        "startTime": int(start.timestamp() * 1000),
                        "appointmentStatus": "confirmed",
                        "notes": "bring logbook",
                        "address": "Front desk",
                        "contact": {"email": "lead@example.com", "fullName": "Lead"},
                        "appointmentType": "consult",
                    },
                    {"id": "E8", "deleted": True},
                    {"id": "E9", "appointmentStatus": "Cancelled"},
                    {"title": "no id"},
                ],
                "meta": {},
            }
        )

    monkeypatch.setattr("unical.connectors.http.urlopen", _urlopen)
    connector = ProviderCConnector.from_config({"token": "t", "location_id": "LOC", "user_id": "usr"})

    result = connector.fetch_events("U1", WINDOW)

    (event,) = result.events
    assert event.source == EventSource.PROVIDER_C
    assert event.start_time == start
    assert event.end_time == datetime(2026, 3, 2, 10, 30, tzinfo=UTC)
    assert event.description == "bring logbook"
    assert event.location == "Front desk"
    assert event.attendees == (Attendee(email="lead@example.com", display_name="Lead"),)
    assert event.event_type == "consult"
    assert sorted(removed.source_id for removed in result.removed) == ["E8", "E9"]
    assert result.normalization_errors == 1

    params = _query(requests[0])
    assert params["locationId"] == "LOC"
    assert params["userId"] == "usr"
    assert "calendarId" not in params
    assert params["startTime"] == str(int(WINDOW.start.timestamp() * 1000))
    assert requests[0].get_header("Version") == API_VERSION


def test_provider_c_all_day_events_cover_whole_local_days(monkeypatch) -> None:
    monkeypatch.setattr(
        "unical.connectors.http.urlopen",
        lambda request, timeout: _json_response(
            {
                "events": [
                    {
                        "id": "E1",
                        "allDay": True,
                        "startTime": "2026-03-02T08:00:00",
                        "endTime": "2026-03-02T09:00:00",
                    }
                ]
            }
        ),
    )
    connector = ProviderCConnector(token="t", location_id="LOC", timezone_name="Europe/Berlin")

    (event,) = connector.fetch_events("U1", WINDOW).events

    assert event.all_day is True
    assert event.start_time == datetime(2026, 3, 1, 23, 0, tzinfo=UTC)
    assert event.end_time == datetime(2026, 3, 2, 23, 0, tzinfo=UTC)
