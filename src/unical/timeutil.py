from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
import re
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dateutil import parser as date_parser

UTC = timezone.utc


@dataclass(frozen=True)
class TimeRange:
    """Half-open interval ``[start, end)`` of tz-aware instants."""

    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if self.start.tzinfo is None or self.end.tzinfo is None:
            raise ValueError("TimeRange requires tz-aware datetimes")
        if self.end < self.start:
            raise ValueError("TimeRange end must not be earlier than start")

    def intersects(self, start: datetime, end: datetime, *, all_day: bool = False) -> bool:
        """Whether an event ``[start, end)`` falls into this window.

        Zero-length events count when their instant lies inside the window.
        All-day events ending exactly at the window start are still included.
        """
        if start >= self.end:
            return False
        if all_day:
            return end >= self.start
        if start == end:
            return start >= self.start
        return end > self.start


def to_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        raise ValueError("to_utc requires a tz-aware datetime")
    return dt.astimezone(UTC)


def dt_to_db(dt: datetime) -> str:
    """Convert tz-aware datetime to a UTC ISO-8601 string for DB storage.

    Second precision keeps every stored value the same width, so string order
    in SQL matches chronological order.
    """
    return to_utc(dt).replace(microsecond=0).isoformat()


def db_to_dt(s: str) -> datetime:
    """Parse ISO-8601 string from DB into a datetime."""
    return datetime.fromisoformat(s)


def now_utc() -> datetime:
    return datetime.now(UTC)


def now_iso() -> str:
    return dt_to_db(now_utc())


def resolve_timezone(name: str | None) -> ZoneInfo | timezone:
    if not name:
        return UTC
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return UTC


def parse_date_ymd(s: str) -> date:
    """Parse strict YYYY-MM-DD string into a date. Raises ValueError."""
    return datetime.strptime(s, "%Y-%m-%d").date()


def parse_time_hhmm(s: str) -> time:
    """Parse HH:MM (optionally HH:MM:SS) into a time. Raises ValueError."""
    if not re.fullmatch(r"\d{2}:\d{2}(:\d{2})?", s):
        raise ValueError("Time must match HH:MM")

    hour = int(s[0:2])
    minute = int(s[3:5])
    second = int(s[6:8]) if len(s) == 8 else 0

    if not (0 <= hour <= 23 and 0 <= minute <= 59 and 0 <= second <= 59):
        raise ValueError("Hour/minute out of range")

    return time(hour=hour, minute=minute, second=second)


def parse_provider_datetime(value: object, *, default_tz: ZoneInfo | timezone = UTC) -> datetime:
    """Parse a provider timestamp into a UTC datetime. Raises ValueError.

    Accepts ISO-8601 strings (naive values are read in ``default_tz``) and
    epoch milliseconds as int or digit-only string.
    """
    if isinstance(value, bool) or value is None:
        raise ValueError(f"Unsupported datetime value: {value!r}")
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000, tz=UTC)
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"Unsupported datetime value: {value!r}")

    raw = value.strip()
    if raw.isdigit():
        return datetime.fromtimestamp(int(raw) / 1000, tz=UTC)
    try:
        parsed = date_parser.isoparse(raw)
    except (ValueError, OverflowError) as exc:
        raise ValueError(f"Unparseable datetime value: {raw}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=default_tz)
    return parsed.astimezone(UTC)


def day_bounds(day: date, tz: ZoneInfo | timezone = UTC) -> tuple[datetime, datetime]:
    """Whole-day boundaries ``[midnight, next midnight)`` of ``day`` in ``tz``, as UTC."""
    start = datetime.combine(day, time.min, tzinfo=tz)
    end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=tz)
    return start.astimezone(UTC), end.astimezone(UTC)


def whole_day_span(
    start: datetime,
    end: datetime,
    tz: ZoneInfo | timezone = UTC,
) -> tuple[datetime, datetime]:
    """Widen ``[start, end)`` to whole local days in ``tz``, returned as UTC."""
    first_day = start.astimezone(tz).date()
    last_day = (end - timedelta(microseconds=1)).astimezone(tz).date() if end > start else first_day
    if last_day < first_day:
        last_day = first_day
    span_start, _ = day_bounds(first_day, tz)
    _, span_end = day_bounds(last_day, tz)
    return span_start, span_end


def build_sync_window(
    *,
    lookback_days: int,
    lookahead_days: int,
    now: datetime | None = None,
) -> TimeRange:
    current = to_utc(now) if now is not None else now_utc()
    return TimeRange(
        start=current - timedelta(days=lookback_days),
        end=current + timedelta(days=lookahead_days),
    )
