from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
import logging
from typing import Any
from zoneinfo import ZoneInfo

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from unical.connectors.base import (
    ConnectorTransientError,
    FetchResult,
    MalformedEventError,
    NormalizedEvent,
    RemovedEvent,
    optional_text,
)
from unical.models import EventSource, InternalBooking
from unical.timeutil import UTC, TimeRange, day_bounds, parse_date_ymd, parse_time_hhmm, resolve_timezone

logger = logging.getLogger(__name__)

CANCELLED_STATUS = "CANCELLED"


@dataclass
class InternalBookingConnector:
    """Reads the internal booking table; never writes."""

    engine: Engine
    timezone_name: str = "UTC"
    _tz: ZoneInfo | timezone = field(init=False, repr=False, default=UTC)

    source = EventSource.INTERNAL

    def __post_init__(self) -> None:
        self._tz = resolve_timezone(self.timezone_name)

    @classmethod
    def from_config(cls, config: dict[str, Any], *, engine: Engine) -> InternalBookingConnector:
        return cls(engine=engine, timezone_name=str(config.get("timezone") or "UTC").strip())

    def fetch_events(
        self,
        owner_id: str,
        time_range: TimeRange,
        *,
        cursor: str | None = None,
        deadline: float | None = None,
    ) -> FetchResult:
        del cursor, deadline
        result = FetchResult(source=self.source, owner_id=owner_id)
        first_day = time_range.start.astimezone(self._tz).date() - timedelta(days=1)
        last_day = time_range.end.astimezone(self._tz).date()

        try:
            with Session(self.engine) as session:
                bookings = session.exec(
                    select(InternalBooking)
                    .where(InternalBooking.owner_id == owner_id)
                    .where(InternalBooking.operation_date >= first_day.isoformat())
                    .where(InternalBooking.operation_date <= last_day.isoformat())
                    .order_by(InternalBooking.operation_date, InternalBooking.id)
                ).all()
        except SQLAlchemyError as exc:
            result.error = ConnectorTransientError(f"Internal booking store unavailable: {exc.__class__.__name__}.")
            logger.warning("internal_fetch_failed owner_id=%s error_type=%s", owner_id, exc.__class__.__name__)
            return result

        result.pages_fetched = 1
        for booking in bookings:
            if booking.status.strip().upper() == CANCELLED_STATUS:
                result.removed.append(RemovedEvent(source=self.source, source_id=booking.id, owner_id=owner_id))
                continue
            try:
                event = self._normalize(booking)
            except (MalformedEventError, ValueError) as exc:
                result.normalization_errors += 1
                logger.warning(
                    "internal_booking_skipped booking_id=%s error_type=%s",
                    booking.id,
                    exc.__class__.__name__,
                )
                continue
            if time_range.intersects(event.start_time, event.end_time, all_day=event.all_day):
                result.events.append(event)
        return result

    def _normalize(self, booking: InternalBooking) -> NormalizedEvent:
        day = parse_date_ymd(booking.operation_date)
        if not booking.start_time and not booking.end_time:
            start_time, end_time = day_bounds(day, self._tz)
            all_day = True
        else:
            if not booking.start_time:
                raise MalformedEventError(f"Booking {booking.id} has an end time but no start time.")
            start_time = self._combine(day, booking.start_time)
            end_time = self._combine(day, booking.end_time) if booking.end_time else start_time
            all_day = False

        return NormalizedEvent(
            source=self.source,
            source_id=booking.id,
            owner_id=booking.owner_id,
            start_time=start_time,
            end_time=end_time,
            title=optional_text(booking.title),
            description=optional_text(booking.description),
            location=optional_text(booking.location),
            all_day=all_day,
            event_type=optional_text(booking.type),
        )

    def _combine(self, day: date, hhmm: str) -> datetime:
        return datetime.combine(day, parse_time_hhmm(hhmm), tzinfo=self._tz).astimezone(UTC)
