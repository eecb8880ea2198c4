"""create unified calendar schema

Revision ID: 3c1d9e2a7b40
Revises:
Create Date: 2026-10-19 09:10:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "3c1d9e2a7b40"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

_SOURCES = ("internal", "providerA", "providerB", "providerC")


def _enum(name: str, values: tuple[str, ...]) -> sa.Enum:
    return sa.Enum(*values, name=name, native_enum=False, create_constraint=True)


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        "settings",
        sa.Column("key", sa.Text(), nullable=False),
        sa.Column("value", sa.Text(), nullable=False),
        sa.PrimaryKeyConstraint("key"),
    )
    op.create_table(
        "unified_events",
        sa.Column("id", sa.Text(), nullable=False),
        sa.Column("source", _enum("event_source", _SOURCES), nullable=False),
        sa.Column("source_id", sa.Text(), nullable=False),
        sa.Column("owner_id", sa.Text(), nullable=False),
        sa.Column("title", sa.Text(), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("location", sa.Text(), nullable=True),
        sa.Column("start_time", sa.Text(), nullable=False),
        sa.Column("end_time", sa.Text(), nullable=False),
        sa.Column("attendees_json", sa.Text(), nullable=False, server_default=sa.text("'[]'")),
        sa.Column("all_day", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("event_type", sa.Text(), nullable=True),
        sa.Column(
            "sync_status",
            _enum("event_sync_status", ("synced", "pending", "conflict")),
            nullable=False,
        ),
        sa.Column("last_synced_at", sa.Text(), nullable=True),
        sa.Column("is_deleted", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("deleted_at", sa.Text(), nullable=True),
        sa.Column("created_at", sa.Text(), nullable=False),
        sa.Column("updated_at", sa.Text(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("source", "source_id", name="uq_unified_events_source_source_id"),
        sa.CheckConstraint(
            "julianday(end_time) >= julianday(start_time)",
            name="ck_unified_events_end_not_before_start",
        ),
    )
    op.create_index(
        "ix_unified_events_owner_range",
        "unified_events",
        ["owner_id", "start_time", "end_time"],
    )
    op.create_table(
        "conflicts",
        sa.Column("id", sa.Text(), nullable=False),
        sa.Column("owner_id", sa.Text(), nullable=False),
        sa.Column("event_ids_json", sa.Text(), nullable=False),
        sa.Column("severity", _enum("conflict_severity", ("low", "medium", "high")), nullable=False),
        sa.Column("status", _enum("conflict_status", ("open", "resolved")), nullable=False),
        sa.Column("is_active", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("window_start", sa.Text(), nullable=False),
        sa.Column("window_end", sa.Text(), nullable=False),
        sa.Column("detected_at", sa.Text(), nullable=False),
        sa.Column("updated_at", sa.Text(), nullable=False),
        sa.Column("resolved_at", sa.Text(), nullable=True),
        sa.Column("resolved_by", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_conflicts_owner_status", "conflicts", ["owner_id", "status"])
    op.create_table(
        "sync_runs",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("trigger", sa.Text(), nullable=False),
        sa.Column("status", _enum("run_status", ("success", "partial", "failed")), nullable=False),
        sa.Column("scope_json", sa.Text(), nullable=False),
        sa.Column("per_source_json", sa.Text(), nullable=False),
        sa.Column("conflicts_found", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("started_at", sa.Text(), nullable=False),
        sa.Column("finished_at", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_sync_runs_started_at", "sync_runs", ["started_at"])
    op.create_table(
        "calendar_connections",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("owner_id", sa.Text(), nullable=False),
        sa.Column("source", _enum("connection_source", _SOURCES), nullable=False),
        sa.Column("connection_name", sa.Text(), nullable=True),
        sa.Column("provider_config_json", sa.Text(), nullable=False, server_default=sa.text("'{}'")),
        sa.Column("is_active", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("sync_enabled", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("last_sync_at", sa.Text(), nullable=True),
        sa.Column("created_at", sa.Text(), nullable=False),
        sa.Column("updated_at", sa.Text(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("owner_id", "source", name="uq_calendar_connections_owner_source"),
    )
    op.create_index("ix_calendar_connections_owner_id", "calendar_connections", ["owner_id"])
    op.create_table(
        "source_sync_status",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("owner_id", sa.Text(), nullable=False),
        sa.Column("source", sa.Text(), nullable=False),
        sa.Column("status", sa.Text(), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("events_synced", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("last_sync_at", sa.Text(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("owner_id", "source", name="uq_source_sync_status_owner_source"),
    )
    op.create_table(
        "sync_state",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("source", sa.Text(), nullable=False),
        sa.Column("scope", sa.Text(), nullable=False),
        sa.Column("cursor", sa.Text(), nullable=True),
        sa.Column("cursor_kind", sa.Text(), nullable=True),
        sa.Column("updated_at", sa.Text(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("source", "scope", name="uq_sync_state_source_scope"),
    )
    op.create_table(
        "internal_bookings",
        sa.Column("id", sa.Text(), nullable=False),
        sa.Column("owner_id", sa.Text(), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("location", sa.Text(), nullable=True),
        sa.Column("operation_date", sa.Text(), nullable=False),
        sa.Column("start_time", sa.Text(), nullable=True),
        sa.Column("end_time", sa.Text(), nullable=True),
        sa.Column("type", sa.Text(), nullable=False, server_default=sa.text("'OTHER'")),
        sa.Column("status", sa.Text(), nullable=False, server_default=sa.text("'SCHEDULED'")),
        sa.Column("updated_at", sa.Text(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_internal_bookings_owner_id", "internal_bookings", ["owner_id"])


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index("ix_internal_bookings_owner_id", table_name="internal_bookings")
    op.drop_table("internal_bookings")
    op.drop_table("sync_state")
    op.drop_table("source_sync_status")
    op.drop_index("ix_calendar_connections_owner_id", table_name="calendar_connections")
    op.drop_table("calendar_connections")
    op.drop_index("ix_sync_runs_started_at", table_name="sync_runs")
    op.drop_table("sync_runs")
    op.drop_index("ix_conflicts_owner_status", table_name="conflicts")
    op.drop_table("conflicts")
    op.drop_index("ix_unified_events_owner_range", table_name="unified_events")
    op.drop_table("unified_events")
    op.drop_table("settings")
