from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
import hashlib
import time
from typing import Protocol

from unical.models import EventSource
from unical.timeutil import TimeRange


class ConnectorError(RuntimeError):
    """Raised when a calendar connector cannot read remote events."""

    transient = False


class ConnectorTransientError(ConnectorError):
    """Timeouts, rate limits, 5xx and unreachable endpoints; retried next cycle."""

    transient = True


class FetchTimeoutError(ConnectorTransientError):
    """The per-source fetch budget ran out."""


class ConnectorAuthError(ConnectorError):
    """Credentials rejected or revoked by the provider."""


class ConnectorConfigError(ConnectorError):
    """The connection is missing settings the connector needs."""


class ConnectorCursorExpiredError(ConnectorError):
    """The provider no longer accepts the stored delta cursor."""


class MalformedEventError(ValueError):
    """A single upstream event cannot be normalized."""


@dataclass(frozen=True)
class Attendee:
    email: str
    display_name: str | None = None

    def to_dict(self) -> dict[str, str | None]:
        return {"email": self.email, "display_name": self.display_name}


@dataclass(frozen=True)
class NormalizedEvent:
    source: EventSource
    source_id: str
    owner_id: str
    start_time: datetime
    end_time: datetime
    title: str | None = None
    description: str | None = None
    location: str | None = None
    attendees: tuple[Attendee, ...] = ()
    all_day: bool = False
    event_type: str | None = None

    def __post_init__(self) -> None:
        if not self.source_id:
            raise MalformedEventError("Event is missing its source id.")
        if self.start_time.tzinfo is None or self.end_time.tzinfo is None:
            raise MalformedEventError(f"Event {self.source_id} has naive timestamps.")
        if self.end_time < self.start_time:
            raise MalformedEventError(f"Event {self.source_id} ends before it starts.")


@dataclass(frozen=True)
class RemovedEvent:
    """Marker for an event the source reports as cancelled or deleted."""

    source: EventSource
    source_id: str
    owner_id: str


@dataclass
class FetchResult:
    source: EventSource
    owner_id: str
    events: list[NormalizedEvent] = field(default_factory=list)
    removed: list[RemovedEvent] = field(default_factory=list)
    normalization_errors: int = 0
    pages_fetched: int = 0
    error: ConnectorError | None = None
    cursor: str | None = None
    cursor_kind: str | None = None

    @property
    def partial(self) -> bool:
        return self.error is not None and bool(self.events or self.removed)

    @property
    def failed(self) -> bool:
        return self.error is not None and not (self.events or self.removed)

    @property
    def fetched_count(self) -> int:
        return len(self.events) + len(self.removed)


class CalendarConnector(Protocol):
    source: EventSource

    def fetch_events(
        self,
        owner_id: str,
        time_range: TimeRange,
        *,
        cursor: str | None = None,
        deadline: float | None = None,
    ) -> FetchResult: ...


def make_event_id(source: EventSource | str, source_id: str) -> str:
    raw = f"{EventSource(source).value}:{source_id}"
    return "evt_" + hashlib.sha256(raw.encode("utf-8")).hexdigest()[:32]


def remaining_seconds(deadline: float | None, default: float) -> float:
    """Time budget for the next request, clamped by a ``time.monotonic`` deadline."""
    if deadline is None:
        return default
    remaining = deadline - time.monotonic()
    if remaining <= 0:
        raise FetchTimeoutError("Fetch deadline exceeded.")
    return min(default, remaining)


def parse_attendees(raw: object, *, email_keys: tuple[str, ...], name_keys: tuple[str, ...]) -> tuple[Attendee, ...]:
    """Build attendees from a list of provider dicts; unusable entries are dropped."""
    if not isinstance(raw, list):
        return ()

    attendees: list[Attendee] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        email = next((str(item[key]).strip() for key in email_keys if item.get(key)), "")
        if not email:
            continue
        name = next((str(item[key]).strip() for key in name_keys if item.get(key)), None)
        attendees.append(Attendee(email=email, display_name=name or None))
    return tuple(attendees)


def optional_text(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None
