"""Realtime tables: study_sessions and notifications.

Revision ID: 001_realtime_tables
Revises:
Create Date: 2026-10-19
"""

from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

revision: str = "001_realtime_tables"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Create study_sessions and notifications."""
    op.create_table(
        "study_sessions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("course_id", sa.String(64), nullable=False),
        sa.Column("lesson_id", sa.String(64), nullable=True),
        sa.Column("duration_minutes", sa.Integer(), server_default="0", nullable=False),
        sa.Column("session_type", sa.String(32), server_default="course_study", nullable=False),
        sa.Column("metadata", postgresql.JSONB(), server_default="{}", nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_study_sessions_user_started", "study_sessions", ["user_id", "started_at"])
    op.execute(
        "ALTER TABLE study_sessions ADD CONSTRAINT ck_study_sessions_duration "
        "CHECK (duration_minutes >= 0)"
    )
    op.execute(
        "ALTER TABLE study_sessions ADD CONSTRAINT ck_study_sessions_type "
        "CHECK (session_type IN ('lesson', 'course_study'))"
    )

    op.create_table(
        "notifications",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("title", sa.String(256), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("type", sa.String(32), server_default="general", nullable=False),
        sa.Column("is_read", sa.Boolean(), server_default="false", nullable=False),
        sa.Column("action_url", sa.String(512), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_notifications_user_created", "notifications", ["user_id", "created_at"])
    op.execute(
        "ALTER TABLE notifications ADD CONSTRAINT ck_notifications_type "
        "CHECK (type IN ('course', 'appointment', 'achievement', 'general'))"
    )
    # A read notification always carries its read timestamp
    op.execute(
        "ALTER TABLE notifications ADD CONSTRAINT ck_notifications_read_at "
        "CHECK (NOT is_read OR read_at IS NOT NULL)"
    )


def downgrade() -> None:
    """Drop realtime tables."""
    op.drop_index("ix_notifications_user_created", table_name="notifications")
    op.drop_table("notifications")
    op.drop_index("ix_study_sessions_user_started", table_name="study_sessions")
    op.drop_table("study_sessions")
