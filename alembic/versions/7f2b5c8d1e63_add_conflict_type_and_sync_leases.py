"""add conflict type and sync leases

Revision ID: 7f2b5c8d1e63
Revises: 3c1d9e2a7b40
Create Date: 2026-10-19 15:40:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "7f2b5c8d1e63"
down_revision: Union[str, Sequence[str], None] = "3c1d9e2a7b40"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    with op.batch_alter_table("conflicts", recreate="always") as batch_op:
        batch_op.add_column(
            sa.Column(
                "type",
                sa.Enum(
                    "time_overlap",
                    "duplicate",
                    name="conflict_type",
                    native_enum=False,
                    create_constraint=True,
                ),
                nullable=False,
                server_default=sa.text("'time_overlap'"),
            )
        )

    op.create_table(
        "sync_leases",
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("holder", sa.Text(), nullable=False),
        sa.Column("acquired_at", sa.Text(), nullable=False),
        sa.Column("expires_at", sa.Text(), nullable=False),
        sa.PrimaryKeyConstraint("name"),
    )


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_table("sync_leases")
    with op.batch_alter_table("conflicts", recreate="always") as batch_op:
        batch_op.drop_column("type")
