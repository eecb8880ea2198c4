from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping, Sequence
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
import json
import logging
import time

from sqlmodel import Session, select

from unical.config import ConfigurationError, EngineConfig
from unical.conflict_service import ConflictDetector
from unical.connections import SourceBinding, mark_connections_synced
from unical.connectors.base import (
    ConnectorAuthError,
    ConnectorConfigError,
    ConnectorCursorExpiredError,
    ConnectorError,
    ConnectorTransientError,
    FetchResult,
    FetchTimeoutError,
    make_event_id,
)
from unical.event_store import EventStore
from unical.models import EventSource, RunStatus, SourceSyncStatus, SyncRun, SyncState
from unical.timeutil import TimeRange, build_sync_window, dt_to_db, now_iso

logger = logging.getLogger(__name__)

BindingsProvider = Callable[[], Mapping[EventSource, Sequence[SourceBinding]]]

TRIGGER_MANUAL = "manual"
TRIGGER_PERIODIC = "periodic"
DEFAULT_GRACE_SEC = 1.0


class SyncPhase(StrEnum):
    IDLE = "idle"
    FETCHING = "fetching"
    MERGING = "merging"
    DETECTING = "detecting"
    DONE = "done"


@dataclass(frozen=True)
class RunScope:
    """Which sources and owners one cycle covers; ``None`` means all."""

    sources: frozenset[EventSource] | None = None
    owner_ids: frozenset[str] | None = None

    @classmethod
    def build(
        cls,
        sources: Iterable[EventSource | str] | None = None,
        owner_ids: Iterable[str] | None = None,
    ) -> RunScope:
        try:
            source_set = frozenset(EventSource(source) for source in sources) if sources else None
        except ValueError as exc:
            raise ConfigurationError(f"Unknown calendar source in scope: {exc}") from exc
        owner_set = frozenset(owner.strip() for owner in owner_ids if owner.strip()) if owner_ids else None
        return cls(sources=source_set or None, owner_ids=owner_set or None)

    def to_dict(self) -> dict[str, list[str] | None]:
        return {
            "sources": sorted(source.value for source in self.sources) if self.sources else None,
            "owner_ids": sorted(self.owner_ids) if self.owner_ids else None,
        }


@dataclass
class SourceRunResult:
    source: EventSource
    status: RunStatus = RunStatus.SUCCESS
    events_fetched: int = 0
    events_upserted: int = 0
    events_removed: int = 0
    normalization_errors: int = 0
    merge_errors: int = 0
    owners_failed: int = 0
    elapsed_sec: float = 0.0
    error: str | None = None

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "status": self.status.value,
            "events_fetched": self.events_fetched,
            "events_upserted": self.events_upserted,
            "events_removed": self.events_removed,
            "normalization_errors": self.normalization_errors,
            "merge_errors": self.merge_errors,
            "owners_failed": self.owners_failed,
            "elapsed_sec": round(self.elapsed_sec, 3),
        }
        if self.error is not None:
            payload["error"] = self.error
        return payload


@dataclass(frozen=True)
class SyncRunSummary:
    run_id: int
    status: RunStatus
    trigger: str
    scope: RunScope
    window: TimeRange
    per_source: dict[EventSource, SourceRunResult]
    conflicts_found: int
    touched_owners: tuple[str, ...]
    detection_errors: int
    started_at: str
    finished_at: str
    elapsed_sec: float

    @property
    def exit_code(self) -> int:
        if self.status == RunStatus.SUCCESS:
            return 0
        if self.status == RunStatus.PARTIAL:
            return 2
        return 1


@dataclass
class _OwnerFetch:
    owner_id: str
    result: FetchResult
    elapsed_sec: float = 0.0


@dataclass
class _SourceFetch:
    source: EventSource
    owners: list[_OwnerFetch] = field(default_factory=list)
    elapsed_sec: float = 0.0


class SyncOrchestrator:
    """Runs one fetch, merge and detect cycle across the enabled sources.

    Sources are fetched in parallel, one worker per source; a worker that
    outlives its timeout is abandoned, its finished owners are kept and the
    remaining owners recorded as timed out.
    Only configuration problems raise; every source, merge and detection
    failure is recorded on the run instead.
    """

    def __init__(
        self,
        config: EngineConfig,
        store: EventStore,
        detector: ConflictDetector,
        bindings_provider: BindingsProvider,
        *,
        grace_sec: float = DEFAULT_GRACE_SEC,
    ) -> None:
        self.config = config
        self.store = store
        self.detector = detector
        self.bindings_provider = bindings_provider
        self.engine = store.engine
        self.grace_sec = grace_sec
        self.phase = SyncPhase.IDLE

    def run_cycle(
        self,
        scope: RunScope | None = None,
        *,
        trigger: str = TRIGGER_MANUAL,
        now: datetime | None = None,
    ) -> SyncRunSummary:
        scope = scope or RunScope()
        bindings = self._scoped_bindings(scope)
        window = build_sync_window(
            lookback_days=self.config.lookback_days,
            lookahead_days=self.config.lookahead_days,
            now=now,
        )

        started_at = now_iso()
        started_clock = time.perf_counter()
        run_id = self._open_run(trigger=trigger, scope=scope, started_at=started_at)
        logger.info(
            "sync_run_started run_id=%s trigger=%s sources=%s window_start=%s window_end=%s",
            run_id,
            trigger,
            ",".join(source.value for source in bindings),
            dt_to_db(window.start),
            dt_to_db(window.end),
        )

        self._set_phase(SyncPhase.FETCHING, run_id)
        fetched = self._fetch_all(bindings, window)

        self._set_phase(SyncPhase.MERGING, run_id)
        per_source: dict[EventSource, SourceRunResult] = {}
        changed_ids: dict[str, set[str]] = {}
        touched_owners: set[str] = set()
        for source, source_fetch in fetched.items():
            per_source[source] = self._merge_source(source_fetch, changed_ids, touched_owners)

        self._set_phase(SyncPhase.DETECTING, run_id)
        detection_errors = 0
        for owner_id in sorted(touched_owners):
            try:
                self.detector.detect(owner_id, window, reconciled_ids=changed_ids.get(owner_id, ()))
            except Exception as exc:
                detection_errors += 1
                logger.error(
                    "conflict_detection_failed run_id=%s owner_id=%s error_type=%s",
                    run_id,
                    owner_id,
                    exc.__class__.__name__,
                )

        scoped_owners = {binding.owner_id for source_bindings in bindings.values() for binding in source_bindings}
        conflicts_found = self.detector.count_open_conflicts(scoped_owners)
        status = _run_status(per_source.values())
        if detection_errors:
            status = RunStatus.PARTIAL

        finished_at = now_iso()
        elapsed_sec = time.perf_counter() - started_clock
        self._close_run(
            run_id=run_id,
            status=status,
            per_source=per_source,
            conflicts_found=conflicts_found,
            finished_at=finished_at,
        )
        self._persist_source_state(fetched, finished_at)
        self._set_phase(SyncPhase.DONE, run_id)

        if elapsed_sec > self.config.cycle_budget_sec:
            logger.warning(
                "sync_run_over_budget run_id=%s elapsed_sec=%.3f budget_sec=%s",
                run_id,
                elapsed_sec,
                self.config.cycle_budget_sec,
            )
        logger.info(
            "sync_run_completed run_id=%s status=%s conflicts_found=%s touched_owners=%s elapsed_sec=%.3f",
            run_id,
            status.value,
            conflicts_found,
            len(touched_owners),
            elapsed_sec,
        )
        self.phase = SyncPhase.IDLE

        return SyncRunSummary(
            run_id=run_id,
            status=status,
            trigger=trigger,
            scope=scope,
            window=window,
            per_source=per_source,
            conflicts_found=conflicts_found,
            touched_owners=tuple(sorted(touched_owners)),
            detection_errors=detection_errors,
            started_at=started_at,
            finished_at=finished_at,
            elapsed_sec=elapsed_sec,
        )

    def _set_phase(self, phase: SyncPhase, run_id: int) -> None:
        self.phase = phase
        logger.debug("sync_phase_changed run_id=%s phase=%s", run_id, phase.value)

    def _scoped_bindings(self, scope: RunScope) -> dict[EventSource, list[SourceBinding]]:
        enabled = self.config.enabled_sources
        if not enabled:
            raise ConfigurationError("At least one calendar source must be enabled.")
        if scope.sources is not None:
            disabled = sorted(source.value for source in scope.sources - enabled)
            if disabled:
                raise ConfigurationError(f"Sources are not enabled: {', '.join(disabled)}.")
            sources = scope.sources
        else:
            sources = enabled

        available = self.bindings_provider()
        bindings: dict[EventSource, list[SourceBinding]] = {}
        for source in sorted(sources, key=lambda item: item.value):
            source_bindings = [
                binding
                for binding in available.get(source, ())
                if scope.owner_ids is None or binding.owner_id in scope.owner_ids
            ]
            if not source_bindings:
                logger.info("sync_source_unbound source=%s", source.value)
                continue
            bindings[source] = source_bindings

        if not bindings:
            raise ConfigurationError("No calendar connections match the sync scope.")
        return bindings

    def _fetch_all(
        self,
        bindings: dict[EventSource, list[SourceBinding]],
        window: TimeRange,
    ) -> dict[EventSource, _SourceFetch]:
        cursors = self._load_cursors(bindings)
        timeout_sec = self.config.per_source_timeout_sec
        deadline = time.monotonic() + timeout_sec

        progress = {source: _SourceFetch(source=source) for source in bindings}
        pool = ThreadPoolExecutor(max_workers=len(bindings), thread_name_prefix="unical-sync")
        futures: dict[EventSource, Future[_SourceFetch]] = {
            source: pool.submit(self._fetch_source, progress[source], source_bindings, window, cursors, deadline)
            for source, source_bindings in bindings.items()
        }
        fetched: dict[EventSource, _SourceFetch] = {}
        try:
            for source, future in futures.items():
                wait_sec = max(0.0, deadline + self.grace_sec - time.monotonic())
                try:
                    fetched[source] = future.result(timeout=wait_sec)
                except FutureTimeoutError:
                    future.cancel()
                    logger.warning("sync_source_timed_out source=%s timeout_sec=%s", source.value, timeout_sec)
                    fetched[source] = _timed_out(progress[source], bindings[source], timeout_sec)
        finally:
            # Abandoned workers finish in the background; owners they complete later are dropped.
            pool.shutdown(wait=False, cancel_futures=True)
        return fetched

    def _fetch_source(
        self,
        source_fetch: _SourceFetch,
        bindings: list[SourceBinding],
        window: TimeRange,
        cursors: dict[tuple[EventSource, str], str],
        deadline: float,
    ) -> _SourceFetch:
        """Fetch each owner in turn, appending to ``source_fetch`` as owners finish."""
        source = source_fetch.source
        started_at = time.perf_counter()
        for binding in bindings:
            owner_started = time.perf_counter()
            if time.monotonic() >= deadline:
                result = FetchResult(
                    source=source,
                    owner_id=binding.owner_id,
                    error=FetchTimeoutError("Fetch deadline exceeded."),
                )
            else:
                result = self._fetch_owner(source, binding, window, cursors.get((source, binding.owner_id)), deadline)
            source_fetch.owners.append(
                _OwnerFetch(
                    owner_id=binding.owner_id,
                    result=result,
                    elapsed_sec=time.perf_counter() - owner_started,
                )
            )
        source_fetch.elapsed_sec = time.perf_counter() - started_at
        return source_fetch

    def _fetch_owner(
        self,
        source: EventSource,
        binding: SourceBinding,
        window: TimeRange,
        cursor: str | None,
        deadline: float,
    ) -> FetchResult:
        try:
            return binding.connector.fetch_events(binding.owner_id, window, cursor=cursor, deadline=deadline)
        except ConnectorError as exc:
            error: ConnectorError = exc
        except Exception as exc:
            error = ConnectorError(f"Connector raised {exc.__class__.__name__}.")
        logger.warning(
            "sync_source_fetch_raised source=%s owner_id=%s error_type=%s",
            source.value,
            binding.owner_id,
            error.__class__.__name__,
        )
        return FetchResult(source=source, owner_id=binding.owner_id, error=error)

    def _merge_source(
        self,
        source_fetch: _SourceFetch,
        changed_ids: dict[str, set[str]],
        touched_owners: set[str],
    ) -> SourceRunResult:
        source = source_fetch.source
        outcome = SourceRunResult(source=source, elapsed_sec=source_fetch.elapsed_sec)
        owner_statuses: list[RunStatus] = []

        for owner_fetch in source_fetch.owners:
            result = owner_fetch.result
            outcome.events_fetched += result.fetched_count
            outcome.normalization_errors += result.normalization_errors

            for event in result.events:
                try:
                    if self.store.upsert(event):
                        outcome.events_upserted += 1
                        touched_owners.add(event.owner_id)
                        changed_ids.setdefault(event.owner_id, set()).add(make_event_id(event.source, event.source_id))
                except Exception as exc:
                    outcome.merge_errors += 1
                    logger.error(
                        "sync_merge_failed source=%s source_id=%s error_type=%s",
                        source.value,
                        event.source_id,
                        exc.__class__.__name__,
                    )

            for removed in result.removed:
                try:
                    if self.store.delete(removed.source, removed.source_id):
                        outcome.events_removed += 1
                        touched_owners.add(removed.owner_id)
                except Exception as exc:
                    outcome.merge_errors += 1
                    logger.error(
                        "sync_merge_failed source=%s source_id=%s error_type=%s",
                        source.value,
                        removed.source_id,
                        exc.__class__.__name__,
                    )

            owner_status = _fetch_status(result)
            owner_statuses.append(owner_status)
            if owner_status == RunStatus.FAILED:
                outcome.owners_failed += 1
            if result.error is not None and outcome.error is None:
                outcome.error = _sanitize_reason(source=source, error=result.error)

        outcome.status = _aggregate_status(owner_statuses)
        logger.info(
            "sync_source_merged source=%s status=%s fetched=%s upserted=%s removed=%s normalization_errors=%s",
            source.value,
            outcome.status.value,
            outcome.events_fetched,
            outcome.events_upserted,
            outcome.events_removed,
            outcome.normalization_errors,
        )
        return outcome

    def _load_cursors(self, bindings: dict[EventSource, list[SourceBinding]]) -> dict[tuple[EventSource, str], str]:
        sources = [source.value for source in bindings]
        with Session(self.engine) as session:
            states = session.exec(
                select(SyncState).where(SyncState.source.in_(sources))  # type: ignore[union-attr]
            ).all()
        return {
            (EventSource(state.source), state.scope): state.cursor
            for state in states
            if state.cursor
        }

    def _open_run(self, *, trigger: str, scope: RunScope, started_at: str) -> int:
        with Session(self.engine) as session:
            run = SyncRun(
                trigger=trigger,
                status=RunStatus.FAILED,
                scope_json=json.dumps(scope.to_dict(), sort_keys=True),
                per_source_json="{}",
                started_at=started_at,
            )
            session.add(run)
            session.commit()
            session.refresh(run)
            assert run.id is not None
            return run.id

    def _close_run(
        self,
        *,
        run_id: int,
        status: RunStatus,
        per_source: dict[EventSource, SourceRunResult],
        conflicts_found: int,
        finished_at: str,
    ) -> None:
        with Session(self.engine) as session:
            run = session.get(SyncRun, run_id)
            if run is None:
                return
            run.status = status
            run.per_source_json = json.dumps(
                {source.value: outcome.to_dict() for source, outcome in per_source.items()},
                sort_keys=True,
            )
            run.conflicts_found = conflicts_found
            run.finished_at = finished_at
            session.add(run)
            session.commit()

    def _persist_source_state(self, fetched: dict[EventSource, _SourceFetch], finished_at: str) -> None:
        synced_pairs: list[tuple[str, EventSource]] = []
        with Session(self.engine) as session:
            try:
                for source, source_fetch in fetched.items():
                    for owner_fetch in source_fetch.owners:
                        result = owner_fetch.result
                        status = _fetch_status(result)
                        _upsert_source_status(
                            session,
                            owner_id=owner_fetch.owner_id,
                            source=source,
                            status=status,
                            error_message=(
                                _sanitize_reason(source=source, error=result.error)
                                if result.error is not None
                                else None
                            ),
                            events_synced=result.fetched_count,
                            timestamp=finished_at,
                        )
                        if status == RunStatus.SUCCESS:
                            synced_pairs.append((owner_fetch.owner_id, source))
                            if result.cursor:
                                _upsert_cursor(
                                    session,
                                    source=source,
                                    scope=owner_fetch.owner_id,
                                    cursor=result.cursor,
                                    cursor_kind=result.cursor_kind,
                                    timestamp=finished_at,
                                )
                session.commit()
            except Exception:
                session.rollback()
                logger.error("sync_state_persist_failed")
                raise
        mark_connections_synced(self.engine, synced_pairs, timestamp=finished_at)


def _timed_out(progress: _SourceFetch, bindings: list[SourceBinding], timeout_sec: float) -> _SourceFetch:
    """Owners finished before the timeout keep their results; the rest time out."""
    finished = list(progress.owners)
    finished_ids = {owner_fetch.owner_id for owner_fetch in finished}
    unfinished = [
        _OwnerFetch(
            owner_id=binding.owner_id,
            result=FetchResult(
                source=progress.source,
                owner_id=binding.owner_id,
                error=FetchTimeoutError("Source fetch timed out."),
            ),
        )
        for binding in bindings
        if binding.owner_id not in finished_ids
    ]
    return _SourceFetch(source=progress.source, owners=finished + unfinished, elapsed_sec=timeout_sec)


def _fetch_status(result: FetchResult) -> RunStatus:
    if result.error is None:
        return RunStatus.SUCCESS
    if result.partial:
        return RunStatus.PARTIAL
    return RunStatus.FAILED


def _aggregate_status(statuses: Iterable[RunStatus]) -> RunStatus:
    values = list(statuses)
    if not values or all(status == RunStatus.SUCCESS for status in values):
        return RunStatus.SUCCESS
    if all(status == RunStatus.FAILED for status in values):
        return RunStatus.FAILED
    return RunStatus.PARTIAL


def _run_status(outcomes: Iterable[SourceRunResult]) -> RunStatus:
    """A run is ``partial`` as soon as any source did not fully succeed, even if all failed."""
    if all(outcome.status == RunStatus.SUCCESS for outcome in outcomes):
        return RunStatus.SUCCESS
    return RunStatus.PARTIAL


def _sanitize_reason(*, source: EventSource, error: Exception) -> str:
    if isinstance(error, ConnectorAuthError):
        reason = f"{source.value} authentication failed"
    elif isinstance(error, ConnectorConfigError):
        reason = f"{source.value} connection misconfigured"
    elif isinstance(error, ConnectorCursorExpiredError):
        reason = f"{source.value} sync cursor expired"
    elif isinstance(error, FetchTimeoutError):
        reason = f"{source.value} fetch timed out"
    elif isinstance(error, ConnectorTransientError):
        reason = f"{source.value} temporarily unavailable"
    elif isinstance(error, ConnectorError):
        reason = f"{source.value} connector unavailable"
    else:
        reason = f"{source.value} unexpected error"
    return f"{error.__class__.__name__}: {reason}"


def _upsert_source_status(
    session: Session,
    *,
    owner_id: str,
    source: EventSource,
    status: RunStatus,
    error_message: str | None,
    events_synced: int,
    timestamp: str,
) -> None:
    row = session.exec(
        select(SourceSyncStatus)
        .where(SourceSyncStatus.owner_id == owner_id)
        .where(SourceSyncStatus.source == source.value)
    ).first()
    if row is None:
        row = SourceSyncStatus(owner_id=owner_id, source=source.value, status=status.value, last_sync_at=timestamp)
    row.status = status.value
    row.error_message = error_message
    row.events_synced = events_synced
    row.last_sync_at = timestamp
    session.add(row)


def _upsert_cursor(
    session: Session,
    *,
    source: EventSource,
    scope: str,
    cursor: str,
    cursor_kind: str | None,
    timestamp: str,
) -> None:
    state = session.exec(
        select(SyncState)
        .where(SyncState.source == source.value)
        .where(SyncState.scope == scope)
    ).first()
    if state is None:
        state = SyncState(source=source.value, scope=scope, updated_at=timestamp)
    state.cursor = cursor
    state.cursor_kind = cursor_kind
    state.updated_at = timestamp
    session.add(state)
