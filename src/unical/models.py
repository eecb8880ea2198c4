from __future__ import annotations

from datetime import datetime, timezone
from enum import StrEnum

from sqlalchemy import CheckConstraint, Column, Enum as SQLEnum, Index, UniqueConstraint
from sqlmodel import Field, SQLModel


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def _enum_column(enum_cls: type[StrEnum], name: str) -> Column:
    return Column(
        SQLEnum(
            enum_cls,
            name=name,
            native_enum=False,
            create_constraint=True,
            values_callable=lambda members: [member.value for member in members],
        ),
        nullable=False,
    )


class EventSource(StrEnum):
    INTERNAL = "internal"
    PROVIDER_A = "providerA"
    PROVIDER_B = "providerB"
    PROVIDER_C = "providerC"


class EventSyncStatus(StrEnum):
    SYNCED = "synced"
    PENDING = "pending"
    CONFLICT = "conflict"


class ConflictStatus(StrEnum):
    OPEN = "open"
    RESOLVED = "resolved"


class ConflictType(StrEnum):
    TIME_OVERLAP = "time_overlap"
    DUPLICATE = "duplicate"


class ConflictSeverity(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class RunStatus(StrEnum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


class Settings(SQLModel, table=True):
    __tablename__ = "settings"

    key: str = Field(primary_key=True)
    value: str


class UnifiedEvent(SQLModel, table=True):
    __tablename__ = "unified_events"
    __table_args__ = (
        CheckConstraint(
            "julianday(end_time) >= julianday(start_time)",
            name="ck_unified_events_end_not_before_start",
        ),
        UniqueConstraint("source", "source_id", name="uq_unified_events_source_source_id"),
        Index("ix_unified_events_owner_range", "owner_id", "start_time", "end_time"),
    )

    id: str = Field(primary_key=True)
    source: EventSource = Field(sa_column=_enum_column(EventSource, "event_source"))
    source_id: str
    owner_id: str
    title: str | None = None
    description: str | None = None
    location: str | None = None
    start_time: str
    end_time: str
    attendees_json: str = Field(default="[]")
    all_day: bool = Field(default=False)
    event_type: str | None = None
    sync_status: EventSyncStatus = Field(
        default=EventSyncStatus.PENDING,
        sa_column=_enum_column(EventSyncStatus, "event_sync_status"),
    )
    last_synced_at: str | None = None
    is_deleted: int = Field(default=0)
    deleted_at: str | None = None
    created_at: str = Field(default_factory=_now_iso)
    updated_at: str = Field(default_factory=_now_iso)


class Conflict(SQLModel, table=True):
    __tablename__ = "conflicts"
    __table_args__ = (
        Index("ix_conflicts_owner_status", "owner_id", "status"),
    )

    id: str = Field(primary_key=True)
    owner_id: str
    event_ids_json: str
    type: ConflictType = Field(
        default=ConflictType.TIME_OVERLAP,
        sa_column=_enum_column(ConflictType, "conflict_type"),
    )
    severity: ConflictSeverity = Field(
        default=ConflictSeverity.LOW,
        sa_column=_enum_column(ConflictSeverity, "conflict_severity"),
    )
    status: ConflictStatus = Field(
        default=ConflictStatus.OPEN,
        sa_column=_enum_column(ConflictStatus, "conflict_status"),
    )
    is_active: int = Field(default=1)
    window_start: str
    window_end: str
    detected_at: str
    updated_at: str
    resolved_at: str | None = None
    resolved_by: str | None = None


class SyncLease(SQLModel, table=True):
    """Store-wide mutual exclusion for sync cycles across processes."""

    __tablename__ = "sync_leases"

    name: str = Field(primary_key=True)
    holder: str
    acquired_at: str
    expires_at: str


class SyncRun(SQLModel, table=True):
    __tablename__ = "sync_runs"

    id: int | None = Field(default=None, primary_key=True)
    trigger: str = Field(default="manual")
    status: RunStatus = Field(sa_column=_enum_column(RunStatus, "run_status"))
    scope_json: str = Field(default="{}")
    per_source_json: str = Field(default="{}")
    conflicts_found: int = Field(default=0)
    started_at: str = Field(index=True)
    finished_at: str | None = None


class CalendarConnection(SQLModel, table=True):
    __tablename__ = "calendar_connections"
    __table_args__ = (
        UniqueConstraint("owner_id", "source", name="uq_calendar_connections_owner_source"),
    )

    id: int | None = Field(default=None, primary_key=True)
    owner_id: str = Field(index=True)
    source: EventSource = Field(sa_column=_enum_column(EventSource, "connection_source"))
    connection_name: str | None = None
    provider_config_json: str = Field(default="{}")
    is_active: int = Field(default=1)
    sync_enabled: int = Field(default=1)
    last_sync_at: str | None = None
    created_at: str = Field(default_factory=_now_iso)
    updated_at: str = Field(default_factory=_now_iso)


class SourceSyncStatus(SQLModel, table=True):
    __tablename__ = "source_sync_status"
    __table_args__ = (
        UniqueConstraint("owner_id", "source", name="uq_source_sync_status_owner_source"),
    )

    id: int | None = Field(default=None, primary_key=True)
    owner_id: str
    source: str
    status: str
    error_message: str | None = None
    events_synced: int = Field(default=0)
    last_sync_at: str


class SyncState(SQLModel, table=True):
    __tablename__ = "sync_state"
    __table_args__ = (
        UniqueConstraint("source", "scope", name="uq_sync_state_source_scope"),
    )

    id: int | None = Field(default=None, primary_key=True)
    source: str
    scope: str
    cursor: str | None = None
    cursor_kind: str | None = None
    updated_at: str


class InternalBooking(SQLModel, table=True):
    __tablename__ = "internal_bookings"

    id: str = Field(primary_key=True)
    owner_id: str = Field(index=True)
    title: str
    description: str | None = None
    location: str | None = None
    operation_date: str  # YYYY-MM-DD
    start_time: str | None = None  # HH:MM
    end_time: str | None = None  # HH:MM
    type: str = Field(default="OTHER")
    status: str = Field(default="SCHEDULED")
    updated_at: str = Field(default_factory=_now_iso)
