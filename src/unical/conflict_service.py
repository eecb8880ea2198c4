from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
import hashlib
from itertools import combinations
import json
import logging
from typing import Iterable

from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from unical.config import AllDayPolicy
from unical.event_store import EventStore, event_attendees, event_span
from unical.models import (
    Conflict,
    ConflictSeverity,
    ConflictStatus,
    ConflictType,
    EventSource,
    EventSyncStatus,
    UnifiedEvent,
)
from unical.timeutil import TimeRange, db_to_dt, dt_to_db, now_iso

logger = logging.getLogger(__name__)

HIGH_OVERLAP_RATIO = 0.8
MEDIUM_OVERLAP_RATIO = 0.5
DUPLICATE_TITLE_SIMILARITY = 0.8


class ConflictNotFoundError(LookupError):
    """Raised when a conflict id does not exist."""


@dataclass(frozen=True)
class ConflictCluster:
    event_ids: tuple[str, ...]
    severity: ConflictSeverity
    window_start: datetime
    window_end: datetime
    conflict_type: ConflictType = ConflictType.TIME_OVERLAP

    @property
    def conflict_id(self) -> str:
        return make_conflict_id(self.event_ids)


@dataclass(frozen=True)
class DetectionResult:
    owner_id: str
    clusters: int
    created: int
    reactivated: int
    deactivated: int
    conflicted_events: int


@dataclass
class _Interval:
    event_id: str
    source: EventSource
    source_id: str
    start: datetime
    end: datetime


def make_conflict_id(event_ids: Iterable[str]) -> str:
    raw = "|".join(sorted(set(event_ids)))
    return "cfl_" + hashlib.sha256(raw.encode("utf-8")).hexdigest()[:32]


def conflict_event_ids(conflict: Conflict) -> list[str]:
    return json.loads(conflict.event_ids_json)


def overlap_severity(first: tuple[datetime, datetime], second: tuple[datetime, datetime]) -> ConflictSeverity:
    """Severity from the overlap as a share of the shorter event."""
    overlap = min(first[1], second[1]) - max(first[0], second[0])
    shorter = min(first[1] - first[0], second[1] - second[0])
    if overlap <= timedelta(0) or shorter <= timedelta(0):
        return ConflictSeverity.LOW
    ratio = overlap / shorter
    if ratio > HIGH_OVERLAP_RATIO:
        return ConflictSeverity.HIGH
    if ratio > MEDIUM_OVERLAP_RATIO:
        return ConflictSeverity.MEDIUM
    return ConflictSeverity.LOW


_SEVERITY_RANK = {ConflictSeverity.LOW: 0, ConflictSeverity.MEDIUM: 1, ConflictSeverity.HIGH: 2}


def title_similarity(first: str | None, second: str | None) -> float:
    """Jaccard similarity of the lower-cased word sets."""
    first_words = set((first or "").lower().split())
    second_words = set((second or "").lower().split())
    union = first_words | second_words
    if not union:
        return 0.0
    return len(first_words & second_words) / len(union)


def _primary_attendee_email(event: UnifiedEvent) -> str | None:
    attendees = event_attendees(event)
    if not attendees:
        return None
    email = (attendees[0].get("email") or "").strip().lower()
    return email or None


def _same_meeting(first: UnifiedEvent, second: UnifiedEvent) -> bool:
    if title_similarity(first.title, second.title) > DUPLICATE_TITLE_SIMILARITY:
        return True
    first_email = _primary_attendee_email(first)
    return first_email is not None and first_email == _primary_attendee_email(second)


def classify_cluster(events: list[UnifiedEvent]) -> ConflictType:
    """``duplicate`` when one meeting was booked in several sources.

    Every member must share the same start and end, and every cross-source
    pair must have similar titles or the same primary attendee.
    """
    if len({(event.start_time, event.end_time) for event in events}) != 1:
        return ConflictType.TIME_OVERLAP
    for first, second in combinations(events, 2):
        if first.source == second.source:
            continue
        if not _same_meeting(first, second):
            return ConflictType.TIME_OVERLAP
    return ConflictType.DUPLICATE


def _blocking_intervals(events: list[UnifiedEvent], policy: AllDayPolicy) -> list[_Interval]:
    intervals: list[_Interval] = []
    for event in events:
        if event.all_day and not policy.blocks(event.event_type):
            continue
        start, end = event_span(event)
        intervals.append(
            _Interval(
                event_id=event.id,
                source=EventSource(event.source),
                source_id=event.source_id,
                start=start,
                end=end,
            )
        )
    intervals.sort(key=lambda item: (item.start, item.source.value, item.source_id))
    return intervals


def find_conflict_clusters(events: list[UnifiedEvent], policy: AllDayPolicy) -> list[ConflictCluster]:
    """Cluster cross-source overlaps among one owner's events.

    Interval sweep over events sorted by start: each event is compared with
    the events still active at its start, and every cross-source overlap is
    merged into a cluster with union-find. Same-source overlaps never link two
    events directly, though both may end up in one cluster through a third.
    """
    intervals = _blocking_intervals(events, policy)
    parent: dict[str, str] = {}
    pair_severity: dict[str, ConflictSeverity] = {}

    def find(event_id: str) -> str:
        root = parent.setdefault(event_id, event_id)
        while root != parent[root]:
            parent[root] = parent[parent[root]]
            root = parent[root]
        return root

    def union(first: str, second: str) -> None:
        first_root, second_root = find(first), find(second)
        if first_root != second_root:
            parent[max(first_root, second_root)] = min(first_root, second_root)

    active: list[_Interval] = []
    for current in intervals:
        active = [item for item in active if item.end > current.start]
        for other in active:
            if other.source == current.source:
                continue
            if not (other.start < current.end and current.start < other.end):
                continue
            union(other.event_id, current.event_id)
            severity = overlap_severity((other.start, other.end), (current.start, current.end))
            for event_id in (other.event_id, current.event_id):
                known = pair_severity.get(event_id, ConflictSeverity.LOW)
                if _SEVERITY_RANK[severity] >= _SEVERITY_RANK[known]:
                    pair_severity[event_id] = severity
        active.append(current)

    members: dict[str, list[_Interval]] = {}
    for item in intervals:
        if item.event_id in parent:
            members.setdefault(find(item.event_id), []).append(item)

    by_id = {event.id: event for event in events}
    clusters: list[ConflictCluster] = []
    for group in members.values():
        severity = max(
            (pair_severity.get(item.event_id, ConflictSeverity.LOW) for item in group),
            key=_SEVERITY_RANK.__getitem__,
        )
        clusters.append(
            ConflictCluster(
                event_ids=tuple(sorted(item.event_id for item in group)),
                severity=severity,
                window_start=min(item.start for item in group),
                window_end=max(item.end for item in group),
                conflict_type=classify_cluster([by_id[item.event_id] for item in group]),
            )
        )
    clusters.sort(key=lambda cluster: (cluster.window_start, cluster.event_ids))
    return clusters


def _events_span(events: list[UnifiedEvent]) -> TimeRange | None:
    spans = [event_span(event) for event in events]
    if not spans:
        return None
    start = min(start for start, _ in spans)
    end = max(end for _, end in spans)
    if end <= start:
        return None
    return TimeRange(start=start, end=end)


class ConflictDetector:
    """Persists conflict clusters for one owner at a time.

    A detection pass holds the event store lock, so no upsert lands between
    reading the owner's events and writing their statuses.
    """

    def __init__(self, engine: Engine, store: EventStore, *, policy: AllDayPolicy | None = None) -> None:
        self.engine = engine
        self.store = store
        self.policy = policy or AllDayPolicy()

    def detect(
        self,
        owner_id: str,
        time_range: TimeRange,
        *,
        reconciled_ids: Iterable[str] = (),
    ) -> DetectionResult:
        """Re-cluster the owner's events around ``time_range`` and persist the result.

        Events in ``reconciled_ids`` leave ``pending`` in the same transaction
        that writes the conflicts; other pending events are left untouched.
        """
        reconciled = set(reconciled_ids)
        with self.store.lock:
            events = self._connected_events(owner_id, time_range)
            clusters = find_conflict_clusters(events, self.policy)

            conflicted = {event_id for cluster in clusters for event_id in cluster.event_ids}
            clear = {
                event.id
                for event in events
                if event.id not in conflicted
                and (event.sync_status != EventSyncStatus.PENDING or event.id in reconciled)
            }
            created, reactivated, deactivated = self._persist(
                owner_id,
                time_range,
                clusters,
                statuses={EventSyncStatus.CONFLICT: conflicted, EventSyncStatus.SYNCED: clear},
            )

        logger.info(
            "conflict_detection_completed owner_id=%s clusters=%s created=%s reactivated=%s deactivated=%s",
            owner_id,
            len(clusters),
            created,
            reactivated,
            deactivated,
        )
        return DetectionResult(
            owner_id=owner_id,
            clusters=len(clusters),
            created=created,
            reactivated=reactivated,
            deactivated=deactivated,
            conflicted_events=len(conflicted),
        )

    def _connected_events(self, owner_id: str, time_range: TimeRange) -> list[UnifiedEvent]:
        """Events in the range plus every live event reachable from them by overlap.

        A cluster that straddles the range edge is always seen whole, so a
        sliding sync window never splits it into a new conflict.
        """
        events = self.store.list_by_owner_in_range(owner_id, time_range)
        while True:
            span = _events_span(events)
            if span is None:
                return events
            known = {event.id for event in events}
            # Strict overlap; all-day rows that only touch the span edge stay out.
            extra = [
                event
                for event in self.store.list_by_owner_in_range(owner_id, span)
                if event.id not in known and span.intersects(*event_span(event))
            ]
            if not extra:
                return events
            events = events + extra

    def _persist(
        self,
        owner_id: str,
        time_range: TimeRange,
        clusters: list[ConflictCluster],
        *,
        statuses: dict[EventSyncStatus, set[str]],
    ) -> tuple[int, int, int]:
        timestamp = now_iso()
        created = 0
        reactivated = 0
        deactivated = 0
        wanted = {cluster.conflict_id: cluster for cluster in clusters}
        member_ids = {event_id for cluster in clusters for event_id in cluster.event_ids}

        with Session(self.engine) as session:
            try:
                for conflict_id, cluster in wanted.items():
                    row = session.get(Conflict, conflict_id)
                    if row is None:
                        session.add(
                            Conflict(
                                id=conflict_id,
                                owner_id=owner_id,
                                event_ids_json=json.dumps(list(cluster.event_ids)),
                                type=cluster.conflict_type,
                                severity=cluster.severity,
                                status=ConflictStatus.OPEN,
                                is_active=1,
                                window_start=dt_to_db(cluster.window_start),
                                window_end=dt_to_db(cluster.window_end),
                                detected_at=timestamp,
                                updated_at=timestamp,
                            )
                        )
                        created += 1
                        continue

                    if not row.is_active:
                        row.is_active = 1
                        row.status = ConflictStatus.OPEN
                        row.resolved_at = None
                        row.resolved_by = None
                        reactivated += 1
                    row.type = cluster.conflict_type
                    row.severity = cluster.severity
                    row.window_start = dt_to_db(cluster.window_start)
                    row.window_end = dt_to_db(cluster.window_end)
                    row.updated_at = timestamp
                    session.add(row)

                stale = session.exec(
                    select(Conflict)
                    .where(Conflict.owner_id == owner_id)
                    .where(Conflict.is_active == 1)
                ).all()
                for row in stale:
                    if row.id in wanted:
                        continue
                    in_range = time_range.intersects(db_to_dt(row.window_start), db_to_dt(row.window_end))
                    if not in_range and member_ids.isdisjoint(conflict_event_ids(row)):
                        continue
                    row.is_active = 0
                    row.updated_at = timestamp
                    session.add(row)
                    deactivated += 1

                for status, event_ids in statuses.items():
                    _apply_sync_status(session, event_ids, status)

                session.commit()
            except Exception:
                session.rollback()
                logger.error("conflict_persist_failed owner_id=%s", owner_id)
                raise

        return created, reactivated, deactivated

    def list_conflicts(
        self,
        owner_id: str,
        status: ConflictStatus | None = None,
        *,
        include_inactive: bool = False,
    ) -> list[Conflict]:
        query = select(Conflict).where(Conflict.owner_id == owner_id)
        if status is not None:
            query = query.where(Conflict.status == status)
        if not include_inactive:
            query = query.where(Conflict.is_active == 1)
        with Session(self.engine) as session:
            return list(session.exec(query.order_by(Conflict.window_start, Conflict.id)).all())

    def get_conflict(self, conflict_id: str) -> Conflict:
        with Session(self.engine) as session:
            row = session.get(Conflict, conflict_id)
        if row is None:
            raise ConflictNotFoundError(f"Conflict {conflict_id} not found.")
        return row

    def resolve_conflict(self, conflict_id: str, resolved_by: str | None = None) -> Conflict:
        return self._set_status(conflict_id, ConflictStatus.RESOLVED, resolved_by=resolved_by)

    def reopen_conflict(self, conflict_id: str) -> Conflict:
        return self._set_status(conflict_id, ConflictStatus.OPEN, resolved_by=None)

    def _set_status(self, conflict_id: str, status: ConflictStatus, *, resolved_by: str | None) -> Conflict:
        with self.store.lock, Session(self.engine) as session:
            row = session.get(Conflict, conflict_id)
            if row is None:
                raise ConflictNotFoundError(f"Conflict {conflict_id} not found.")
            if row.status != status:
                timestamp = now_iso()
                row.status = status
                row.updated_at = timestamp
                row.resolved_at = timestamp if status == ConflictStatus.RESOLVED else None
                row.resolved_by = resolved_by if status == ConflictStatus.RESOLVED else None
                session.add(row)
                session.commit()
                session.refresh(row)
                logger.info("conflict_status_changed conflict_id=%s status=%s", conflict_id, status.value)
            return row

    def count_open_conflicts(self, owner_ids: Iterable[str] | None = None) -> int:
        query = (
            select(Conflict)
            .where(Conflict.status == ConflictStatus.OPEN)
            .where(Conflict.is_active == 1)
        )
        if owner_ids is not None:
            owners = sorted(set(owner_ids))
            if not owners:
                return 0
            query = query.where(Conflict.owner_id.in_(owners))  # type: ignore[union-attr]
        with Session(self.engine) as session:
            return len(session.exec(query).all())


def _apply_sync_status(session: Session, event_ids: set[str], status: EventSyncStatus) -> None:
    if not event_ids:
        return
    rows = session.exec(
        select(UnifiedEvent).where(UnifiedEvent.id.in_(sorted(event_ids)))  # type: ignore[union-attr]
    ).all()
    for row in rows:
        if row.sync_status != status:
            row.sync_status = status
            session.add(row)
