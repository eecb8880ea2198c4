"""Provider-C: CRM calendar API (``/calendars/events``, ``Version`` header)."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta, timezone
from typing import Any
from zoneinfo import ZoneInfo

from unical.connectors.base import (
    ConnectorConfigError,
    FetchResult,
    MalformedEventError,
    NormalizedEvent,
    RemovedEvent,
    optional_text,
    parse_attendees,
)
from unical.connectors.http import PagedJsonConnector, request_json, require_https
from unical.models import EventSource
from unical.timeutil import UTC, TimeRange, parse_provider_datetime, resolve_timezone, whole_day_span

DEFAULT_BASE_URL = "https://services.leadconnectorhq.com"
API_VERSION = "2021-04-15"
_DEFAULT_DURATION = timedelta(hours=1)
_REMOVED_STATUSES = {"cancelled", "canceled", "deleted"}


@dataclass
class ProviderCConnector(PagedJsonConnector):
    token: str
    location_id: str
    user_id: str | None = None
    calendar_id: str | None = None
    base_url: str = DEFAULT_BASE_URL
    timezone_name: str = "UTC"
    timeout_sec: float = 20.0
    _tz: ZoneInfo | timezone = field(init=False, repr=False, default=UTC)

    source = EventSource.PROVIDER_C
    provider_name = "Provider-C"

    def __post_init__(self) -> None:
        require_https(self.base_url, provider=self.provider_name)
        self._tz = resolve_timezone(self.timezone_name)

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> ProviderCConnector:
        token = str(config.get("token") or "").strip()
        location_id = str(config.get("location_id") or "").strip()
        if not token or not location_id:
            raise ConnectorConfigError("Provider-C connection needs token and location_id.")
        return cls(
            token=token,
            location_id=location_id,
            user_id=optional_text(config.get("user_id")),
            calendar_id=optional_text(config.get("calendar_id")),
            base_url=str(config.get("base_url") or DEFAULT_BASE_URL).strip(),
            timezone_name=str(config.get("timezone") or "UTC").strip(),
            timeout_sec=float(config.get("timeout_sec") or 20.0),
        )

    def _request_page(
        self,
        owner_id: str,
        time_range: TimeRange,
        *,
        page_token: str | None,
        cursor: str | None,
        timeout_sec: float,
    ) -> dict[str, Any]:
        del owner_id, cursor
        return request_json(
            f"{self.base_url.rstrip('/')}/calendars/events",
            headers={"Authorization": f"Bearer {self.token}", "Version": API_VERSION},
            params={
                "locationId": self.location_id,
                "userId": self.user_id,
                "calendarId": self.calendar_id,
                "startTime": int(time_range.start.timestamp() * 1000),
                "endTime": int(time_range.end.timestamp() * 1000),
                "page": page_token,
            },
            timeout_sec=timeout_sec,
            provider=self.provider_name,
        )

    def _page_items(self, payload: dict[str, Any]) -> list[Any]:
        items = payload.get("events")
        return items if isinstance(items, list) else []

    def _next_page_token(self, payload: dict[str, Any]) -> str | None:
        meta = payload.get("meta")
        if not isinstance(meta, dict):
            return None
        return optional_text(meta.get("nextPage"))

    def _collect_item(
        self,
        result: FetchResult,
        owner_id: str,
        time_range: TimeRange,
        item: Any,
        *,
        delta: bool = False,
    ) -> None:
        if not isinstance(item, dict):
            raise MalformedEventError("Event payload is not an object.")

        source_id = optional_text(item.get("id"))
        if source_id is None:
            raise MalformedEventError("Event has no id.")
        status = str(item.get("appointmentStatus") or "").strip().lower()
        if item.get("deleted") is True or status in _REMOVED_STATUSES:
            result.removed.append(RemovedEvent(source=self.source, source_id=source_id, owner_id=owner_id))
            return

        start_time = parse_provider_datetime(item.get("startTime"), default_tz=self._tz)
        end_raw = item.get("endTime")
        end_time = parse_provider_datetime(end_raw, default_tz=self._tz) if end_raw else start_time + _DEFAULT_DURATION
        all_day = bool(item.get("allDay"))
        if all_day:
            start_time, end_time = whole_day_span(start_time, end_time, self._tz)
        if not time_range.intersects(start_time, end_time, all_day=all_day):
            self._outside_window(result, owner_id, source_id, delta=delta)
            return

        attendees = parse_attendees(item.get("attendees"), email_keys=("email",), name_keys=("name", "fullName"))
        contact = item.get("contact")
        if not attendees and isinstance(contact, dict):
            attendees = parse_attendees([contact], email_keys=("email",), name_keys=("name", "fullName"))

        result.events.append(
            NormalizedEvent(
                source=self.source,
                source_id=source_id,
                owner_id=owner_id,
                start_time=start_time,
                end_time=end_time,
                title=optional_text(item.get("title")),
                description=optional_text(item.get("notes")),
                location=optional_text(item.get("address")),
                attendees=attendees,
                all_day=all_day,
                event_type=optional_text(item.get("appointmentType")),
            )
        )
