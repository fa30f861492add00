"""Create todo task table."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261012_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "todo_tasks",
        sa.Column("owner_id", sa.String(length=128), nullable=False),
        sa.Column("task_id", sa.String(length=64), nullable=False),
        sa.Column("text", sa.Text(), nullable=False),
        sa.Column("is_completed", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("reminder_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reminder_recipient", sa.String(length=320), nullable=True),
        sa.Column("reminder_note", sa.Text(), nullable=True),
        sa.Column("reminder_active", sa.Boolean(), nullable=False),
        sa.Column("schedule_handle", sa.String(length=64), nullable=True),
        sa.PrimaryKeyConstraint("owner_id", "task_id"),
    )


def downgrade() -> None:
    op.drop_table("todo_tasks")
