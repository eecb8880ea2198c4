"""Provider-A: scheduling-link booking service (``/scheduled_events`` JSON API)."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Any

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
from unical.timeutil import TimeRange, dt_to_db, parse_provider_datetime

DEFAULT_BASE_URL = "https://api.calendly.com"
_PAGE_SIZE = 100
_DEFAULT_DURATION = timedelta(hours=1)
# Listing filters on start time only; widen the lower bound so long bookings
# that began before the window are still returned.
_START_SLACK = timedelta(days=1)
_CANCELLED_STATUSES = {"canceled", "cancelled"}


@dataclass
class ProviderAConnector(PagedJsonConnector):
    token: str
    user_uri: str
    base_url: str = DEFAULT_BASE_URL
    timeout_sec: float = 20.0

    source = EventSource.PROVIDER_A
    provider_name = "Provider-A"

    def __post_init__(self) -> None:
        require_https(self.base_url, provider=self.provider_name)

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> ProviderAConnector:
        token = str(config.get("token") or "").strip()
        user_uri = str(config.get("user_uri") or "").strip()
        if not token or not user_uri:
            raise ConnectorConfigError("Provider-A connection needs token and user_uri.")
        return cls(
            token=token,
            user_uri=user_uri,
            base_url=str(config.get("base_url") or DEFAULT_BASE_URL).strip(),
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
            f"{self.base_url.rstrip('/')}/scheduled_events",
            headers={"Authorization": f"Bearer {self.token}"},
            params={
                "user": self.user_uri,
                "min_start_time": dt_to_db(time_range.start - _START_SLACK),
                "max_start_time": dt_to_db(time_range.end),
                "count": _PAGE_SIZE,
                "sort": "start_time:asc",
                "page_token": page_token,
            },
            timeout_sec=timeout_sec,
            provider=self.provider_name,
        )

    def _page_items(self, payload: dict[str, Any]) -> list[Any]:
        items = payload.get("collection")
        return items if isinstance(items, list) else []

    def _next_page_token(self, payload: dict[str, Any]) -> str | None:
        pagination = payload.get("pagination")
        if not isinstance(pagination, dict):
            return None
        return optional_text(pagination.get("next_page_token"))

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
            raise MalformedEventError("Scheduled event payload is not an object.")

        source_id = _source_id_from_uri(item.get("uri"))
        status = str(item.get("status") or "").strip().lower()
        if status in _CANCELLED_STATUSES:
            result.removed.append(RemovedEvent(source=self.source, source_id=source_id, owner_id=owner_id))
            return

        start_time = parse_provider_datetime(item.get("start_time"))
        end_raw = item.get("end_time")
        end_time = parse_provider_datetime(end_raw) if end_raw else start_time + _DEFAULT_DURATION
        if not time_range.intersects(start_time, end_time):
            self._outside_window(result, owner_id, source_id, delta=delta)
            return

        location = item.get("location")
        attendees_raw = item.get("invitees") if item.get("invitees") is not None else item.get("event_guests")
        result.events.append(
            NormalizedEvent(
                source=self.source,
                source_id=source_id,
                owner_id=owner_id,
                start_time=start_time,
                end_time=end_time,
                title=optional_text(item.get("name")),
                description=optional_text(item.get("description")),
                location=optional_text(location.get("location")) if isinstance(location, dict) else optional_text(location),
                attendees=parse_attendees(attendees_raw, email_keys=("email",), name_keys=("name",)),
                event_type="booking",
            )
        )


def _source_id_from_uri(uri: object) -> str:
    value = optional_text(uri)
    if value is None:
        raise MalformedEventError("Scheduled event has no uri.")
    return value.rstrip("/").rsplit("/", maxsplit=1)[-1]
