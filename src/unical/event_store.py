from __future__ import annotations

from datetime import datetime
import json
import logging
import threading
from typing import Iterable

from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from unical.config import REMOVAL_MODE_HARD, REMOVAL_MODE_TOMBSTONE
from unical.connectors.base import NormalizedEvent, make_event_id
from unical.models import EventSource, EventSyncStatus, UnifiedEvent
from unical.timeutil import TimeRange, db_to_dt, dt_to_db, now_iso

logger = logging.getLogger(__name__)


def event_span(row: UnifiedEvent) -> tuple[datetime, datetime]:
    return db_to_dt(row.start_time), db_to_dt(row.end_time)


def event_attendees(row: UnifiedEvent) -> list[dict[str, str | None]]:
    return json.loads(row.attendees_json or "[]")


def _event_sort_key(row: UnifiedEvent) -> tuple[datetime, str, str]:
    return db_to_dt(row.start_time), EventSource(row.source).value, row.source_id


def _row_values(event: NormalizedEvent) -> dict[str, object]:
    return {
        "owner_id": event.owner_id,
        "title": event.title,
        "description": event.description,
        "location": event.location,
        "start_time": dt_to_db(event.start_time),
        "end_time": dt_to_db(event.end_time),
        "attendees_json": json.dumps([attendee.to_dict() for attendee in event.attendees], ensure_ascii=False),
        "all_day": event.all_day,
        "event_type": event.event_type,
    }


class EventStore:
    """Idempotent event persistence keyed by ``(source, source_id)``.

    Every mutation runs in its own session and transaction while holding the
    store lock, so concurrent writers for one event never interleave.
    """

    def __init__(self, engine: Engine, *, removal_mode: str = REMOVAL_MODE_TOMBSTONE) -> None:
        if removal_mode not in (REMOVAL_MODE_HARD, REMOVAL_MODE_TOMBSTONE):
            raise ValueError(f"Unknown removal_mode: {removal_mode}.")
        self.engine = engine
        self.removal_mode = removal_mode
        self._lock = threading.RLock()

    @property
    def lock(self) -> threading.RLock:
        return self._lock

    def upsert(self, event: NormalizedEvent) -> bool:
        """Insert or update one event; returns whether any stored field changed."""
        with self._lock:
            try:
                return self._upsert_once(event)
            except IntegrityError:
                # Another writer inserted the same (source, source_id) first.
                logger.info(
                    "event_upsert_retry source=%s source_id=%s",
                    event.source.value,
                    event.source_id,
                )
                return self._upsert_once(event)

    def _upsert_once(self, event: NormalizedEvent) -> bool:
        event_id = make_event_id(event.source, event.source_id)
        values = _row_values(event)
        timestamp = now_iso()

        with Session(self.engine) as session:
            try:
                row = session.get(UnifiedEvent, event_id)
                if row is None:
                    row = UnifiedEvent(
                        id=event_id,
                        source=event.source,
                        source_id=event.source_id,
                        sync_status=EventSyncStatus.PENDING,
                        last_synced_at=timestamp,
                        created_at=timestamp,
                        updated_at=timestamp,
                        **values,
                    )
                    session.add(row)
                    session.commit()
                    return True

                changed = any(getattr(row, name) != value for name, value in values.items())
                if row.is_deleted:
                    changed = True
                    row.is_deleted = 0
                    row.deleted_at = None
                if changed:
                    for name, value in values.items():
                        setattr(row, name, value)
                    row.sync_status = EventSyncStatus.PENDING
                    row.updated_at = timestamp
                row.last_synced_at = timestamp
                session.add(row)
                session.commit()
                return changed
            except Exception:
                session.rollback()
                raise

    def delete(self, source: EventSource | str, source_id: str) -> bool:
        """Remove an event; returns whether a live row was removed. Idempotent."""
        event_id = make_event_id(source, source_id)
        with self._lock, Session(self.engine) as session:
            row = session.get(UnifiedEvent, event_id)
            if row is None:
                return False
            if self.removal_mode == REMOVAL_MODE_HARD:
                was_live = not row.is_deleted
                session.delete(row)
                session.commit()
                return was_live
            if row.is_deleted:
                return False
            timestamp = now_iso()
            row.is_deleted = 1
            row.deleted_at = timestamp
            row.updated_at = timestamp
            session.add(row)
            session.commit()
            return True

    def list_by_owner_in_range(self, owner_id: str, time_range: TimeRange) -> list[UnifiedEvent]:
        """Live events intersecting ``time_range``, ordered by start, source, source id."""
        with Session(self.engine) as session:
            rows = session.exec(
                select(UnifiedEvent)
                .where(UnifiedEvent.owner_id == owner_id)
                .where(UnifiedEvent.is_deleted == 0)
                .where(UnifiedEvent.start_time < dt_to_db(time_range.end))
                .where(UnifiedEvent.end_time >= dt_to_db(time_range.start))
            ).all()

        matching = [
            row
            for row in rows
            if time_range.intersects(*event_span(row), all_day=row.all_day)
        ]
        return sorted(matching, key=_event_sort_key)

    def get(self, event_id: str) -> UnifiedEvent | None:
        with Session(self.engine) as session:
            return session.get(UnifiedEvent, event_id)

    def get_many(self, event_ids: Iterable[str]) -> list[UnifiedEvent]:
        """Rows for the known ids, tombstoned ones included; unknown ids are skipped."""
        ids = sorted(set(event_ids))
        if not ids:
            return []
        with Session(self.engine) as session:
            rows = session.exec(
                select(UnifiedEvent).where(UnifiedEvent.id.in_(ids))  # type: ignore[union-attr]
            ).all()
        return sorted(rows, key=_event_sort_key)

    def set_sync_status(self, event_ids: Iterable[str], status: EventSyncStatus) -> int:
        ids = sorted(set(event_ids))
        if not ids:
            return 0
        with self._lock, Session(self.engine) as session:
            rows = session.exec(
                select(UnifiedEvent).where(UnifiedEvent.id.in_(ids))  # type: ignore[union-attr]
            ).all()
            updated = 0
            for row in rows:
                if row.sync_status == status:
                    continue
                row.sync_status = status
                session.add(row)
                updated += 1
            session.commit()
        return updated

    def owner_ids(self) -> list[str]:
        with Session(self.engine) as session:
            owners = session.exec(
                select(UnifiedEvent.owner_id).where(UnifiedEvent.is_deleted == 0).distinct()
            ).all()
        return sorted(owners)
