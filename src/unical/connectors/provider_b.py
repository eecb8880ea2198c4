"""Provider-B: Google-Calendar-style events API with a ``syncToken`` delta feed."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, time, timezone
import logging
from typing import Any
from urllib.parse import quote
from zoneinfo import ZoneInfo

from unical.connectors.base import (
    ConnectorConfigError,
    ConnectorCursorExpiredError,
    FetchResult,
    MalformedEventError,
    NormalizedEvent,
    RemovedEvent,
    optional_text,
    parse_attendees,
)
from unical.connectors.http import PagedJsonConnector, request_json, require_https
from unical.models import EventSource
from unical.timeutil import (
    TimeRange,
    UTC,
    day_bounds,
    dt_to_db,
    parse_date_ymd,
    parse_provider_datetime,
    resolve_timezone,
)

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://www.googleapis.com/calendar/v3"
CURSOR_KIND_SYNC_TOKEN = "sync_token"
_PAGE_SIZE = 250


@dataclass
class ProviderBConnector(PagedJsonConnector):
    token: str
    calendar_id: str = "primary"
    base_url: str = DEFAULT_BASE_URL
    timezone_name: str = "UTC"
    timeout_sec: float = 20.0
    _tz: ZoneInfo | timezone = field(init=False, repr=False, default=UTC)

    source = EventSource.PROVIDER_B
    provider_name = "Provider-B"

    def __post_init__(self) -> None:
        require_https(self.base_url, provider=self.provider_name)
        self._tz = resolve_timezone(self.timezone_name)

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> ProviderBConnector:
        token = str(config.get("token") or "").strip()
        if not token:
            raise ConnectorConfigError("Provider-B connection needs a token.")
        return cls(
            token=token,
            calendar_id=str(config.get("calendar_id") or "primary").strip(),
            base_url=str(config.get("base_url") or DEFAULT_BASE_URL).strip(),
            timezone_name=str(config.get("timezone") or "UTC").strip(),
            timeout_sec=float(config.get("timeout_sec") or 20.0),
        )

    def fetch_events(
        self,
        owner_id: str,
        time_range: TimeRange,
        *,
        cursor: str | None = None,
        deadline: float | None = None,
    ) -> FetchResult:
        result = super().fetch_events(owner_id, time_range, cursor=cursor, deadline=deadline)
        if cursor and isinstance(result.error, ConnectorCursorExpiredError):
            logger.info("provider_sync_token_expired source=%s owner_id=%s", self.source.value, owner_id)
            result = super().fetch_events(owner_id, time_range, cursor=None, deadline=deadline)
        return result

    def _request_page(
        self,
        owner_id: str,
        time_range: TimeRange,
        *,
        page_token: str | None,
        cursor: str | None,
        timeout_sec: float,
    ) -> dict[str, Any]:
        del owner_id
        params: dict[str, Any] = {
            "singleEvents": "true",
            "showDeleted": "true",
            "maxResults": _PAGE_SIZE,
            "pageToken": page_token,
        }
        if cursor:
            params["syncToken"] = cursor
        else:
            params["timeMin"] = dt_to_db(time_range.start)
            params["timeMax"] = dt_to_db(time_range.end)

        calendar = quote(self.calendar_id, safe="")
        return request_json(
            f"{self.base_url.rstrip('/')}/calendars/{calendar}/events",
            headers={"Authorization": f"Bearer {self.token}"},
            params=params,
            timeout_sec=timeout_sec,
            provider=self.provider_name,
        )

    def _page_items(self, payload: dict[str, Any]) -> list[Any]:
        items = payload.get("items")
        return items if isinstance(items, list) else []

    def _next_page_token(self, payload: dict[str, Any]) -> str | None:
        return optional_text(payload.get("nextPageToken"))

    def _next_cursor(self, payload: dict[str, Any]) -> str | None:
        return optional_text(payload.get("nextSyncToken"))

    def _cursor_kind(self) -> str | None:
        return CURSOR_KIND_SYNC_TOKEN

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
        if str(item.get("status") or "").strip().lower() == "cancelled":
            result.removed.append(RemovedEvent(source=self.source, source_id=source_id, owner_id=owner_id))
            return

        start_time, end_time, all_day = self._parse_span(item.get("start"), item.get("end"))
        if not time_range.intersects(start_time, end_time, all_day=all_day):
            self._outside_window(result, owner_id, source_id, delta=delta)
            return

        result.events.append(
            NormalizedEvent(
                source=self.source,
                source_id=source_id,
                owner_id=owner_id,
                start_time=start_time,
                end_time=end_time,
                title=optional_text(item.get("summary")),
                description=optional_text(item.get("description")),
                location=optional_text(item.get("location")),
                attendees=parse_attendees(
                    item.get("attendees"),
                    email_keys=("email",),
                    name_keys=("displayName",),
                ),
                all_day=all_day,
                event_type=optional_text(item.get("eventType")),
            )
        )

    def _parse_span(self, start: object, end: object) -> tuple[datetime, datetime, bool]:
        if not isinstance(start, dict):
            raise MalformedEventError("Event has no start.")
        end = end if isinstance(end, dict) else {}

        if start.get("dateTime"):
            start_time = parse_provider_datetime(start["dateTime"], default_tz=self._tz)
            end_time = parse_provider_datetime(end["dateTime"], default_tz=self._tz) if end.get("dateTime") else start_time
            return start_time, end_time, False

        if not start.get("date"):
            raise MalformedEventError("Event start has neither dateTime nor date.")

        tz = resolve_timezone(optional_text(start.get("timeZone"))) if start.get("timeZone") else self._tz
        first_day = parse_date_ymd(str(start["date"]))
        start_time, first_day_end = day_bounds(first_day, tz)
        # end.date is exclusive: the day after the last covered day.
        if end.get("date"):
            last_exclusive = parse_date_ymd(str(end["date"]))
            if last_exclusive > first_day:
                end_time = datetime.combine(last_exclusive, time.min, tzinfo=tz).astimezone(UTC)
                return start_time, end_time, True
        return start_time, first_day_end, True
