from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
import logging

from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from unical.config import EngineConfig, load_engine_config
from unical.conflict_service import ConflictDetector, conflict_event_ids
from unical.connections import load_bindings
from unical.event_store import EventStore
from unical.lease import StoreLease
from unical.models import Conflict, ConflictStatus, EventSource, SourceSyncStatus, SyncRun, UnifiedEvent
from unical.scheduler import SyncScheduler
from unical.sync_runner import BindingsProvider, SyncOrchestrator, SyncRunSummary
from unical.timeutil import TimeRange, dt_to_db

logger = logging.getLogger(__name__)

# Lease TTL in multiples of cycle_budget_sec; overrunning cycles are only logged.
LEASE_TTL_BUDGETS = 2


class CalendarSyncService:
    """Inbound API over the engine: sync triggers and last-known-good reads.

    Reads never depend on the most recent cycle having succeeded.
    """

    def __init__(
        self,
        engine: Engine,
        config: EngineConfig,
        *,
        bindings_provider: BindingsProvider | None = None,
    ) -> None:
        self.engine = engine
        self.config = config
        self.store = EventStore(engine, removal_mode=config.removal_mode)
        self.detector = ConflictDetector(engine, self.store, policy=config.all_day_policy)
        self.orchestrator = SyncOrchestrator(
            config,
            self.store,
            self.detector,
            bindings_provider or (lambda: load_bindings(engine)),
        )
        self.scheduler = SyncScheduler(
            self.orchestrator,
            lease=StoreLease(engine, ttl_sec=config.cycle_budget_sec * LEASE_TTL_BUDGETS),
        )

    @classmethod
    def from_engine(cls, engine: Engine, **kwargs) -> CalendarSyncService:
        with Session(engine) as session:
            config = load_engine_config(session)
        return cls(engine, config, **kwargs)

    def run_sync(
        self,
        sources: Iterable[EventSource | str] | None = None,
        owner_ids: Iterable[str] | None = None,
        *,
        wait: bool = False,
    ) -> SyncRunSummary:
        return self.scheduler.run_now(sources=sources, owner_ids=owner_ids, wait=wait)

    def list_events(self, owner_id: str, time_range: TimeRange) -> list[UnifiedEvent]:
        return self.store.list_by_owner_in_range(owner_id, time_range)

    def list_conflicts(
        self,
        owner_id: str,
        status: ConflictStatus | None = None,
        *,
        include_inactive: bool = False,
    ) -> list[Conflict]:
        return self.detector.list_conflicts(owner_id, status, include_inactive=include_inactive)

    def resolve_conflict(self, conflict_id: str, resolved_by: str | None = None) -> Conflict:
        return self.detector.resolve_conflict(conflict_id, resolved_by=resolved_by)

    def reopen_conflict(self, conflict_id: str) -> Conflict:
        return self.detector.reopen_conflict(conflict_id)

    def conflict_events(self, conflict_id: str) -> tuple[Conflict, list[UnifiedEvent]]:
        """A conflict with its member events, including ones removed since detection."""
        conflict = self.detector.get_conflict(conflict_id)
        return conflict, self.store.get_many(conflict_event_ids(conflict))

    def list_sync_runs(self, limit: int = 20) -> list[SyncRun]:
        if limit < 1:
            raise ValueError("limit must be >= 1.")
        with Session(self.engine) as session:
            return list(
                session.exec(
                    select(SyncRun).order_by(SyncRun.id.desc()).limit(limit)  # type: ignore[union-attr]
                ).all()
            )

    def source_statuses(self, owner_id: str | None = None) -> list[SourceSyncStatus]:
        query = select(SourceSyncStatus).order_by(SourceSyncStatus.owner_id, SourceSyncStatus.source)
        if owner_id is not None:
            query = query.where(SourceSyncStatus.owner_id == owner_id)
        with Session(self.engine) as session:
            return list(session.exec(query).all())

    def prune_sync_runs(self, older_than: datetime) -> int:
        """Delete finished runs that started before ``older_than``."""
        cutoff = dt_to_db(older_than)
        with Session(self.engine) as session:
            runs = session.exec(
                select(SyncRun)
                .where(SyncRun.started_at < cutoff)
                .where(SyncRun.finished_at.is_not(None))  # type: ignore[union-attr]
            ).all()
            for run in runs:
                session.delete(run)
            session.commit()
        logger.info("sync_runs_pruned cutoff=%s deleted=%s", cutoff, len(runs))
        return len(runs)

    def start_scheduler(self, *, run_immediately: bool = False) -> None:
        self.scheduler.start(run_immediately=run_immediately)

    def stop_scheduler(self, timeout: float | None = None) -> None:
        self.scheduler.stop(timeout)
