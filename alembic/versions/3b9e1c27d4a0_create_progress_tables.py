"""create progress tables

Revision ID: 3b9e1c27d4a0
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""

from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "3b9e1c27d4a0"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "course_progress",
        sa.Column("user_id", sa.String(length=128), primary_key=True),
        sa.Column("course_id", sa.String(length=128), primary_key=True),
        sa.Column("current_chapter_id", sa.String(length=128), nullable=True),
        sa.Column(
            "completed_chapters",
            postgresql.ARRAY(sa.String()),
            nullable=False,
            server_default="{}",
        ),
        sa.Column("chapter_progress", postgresql.JSONB(), nullable=False, server_default="{}"),
        sa.Column("last_positions", postgresql.JSONB(), nullable=False, server_default="{}"),
        sa.Column("progress", sa.Float(), nullable=False, server_default="0"),
        sa.Column("last_accessed_at", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("is_completed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("time_spent", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("interaction_count", sa.Integer(), nullable=False, server_default="0"),
    )

    op.create_table(
        "quiz_attempts",
        sa.Column("user_id", sa.String(length=128), primary_key=True),
        sa.Column("id", sa.String(length=128), primary_key=True),
        sa.Column("quiz_id", sa.String(length=128), nullable=False),
        sa.Column("score", sa.Float(), nullable=False),
        sa.Column("max_score", sa.Float(), nullable=False),
        sa.Column("accuracy", sa.Float(), nullable=False),
        sa.Column("time_spent", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.BigInteger(), nullable=False),
        sa.Column("answers", postgresql.JSONB(), nullable=False, server_default="[]"),
    )
    op.create_index("ix_quiz_attempts_user_quiz", "quiz_attempts", ["user_id", "quiz_id"])

    op.create_table(
        "user_streaks",
        sa.Column("user_id", sa.String(length=128), primary_key=True),
        sa.Column("current_streak", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("longest_streak", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_activity_date", sa.String(length=10), nullable=True),
    )

    op.create_table(
        "applied_events",
        sa.Column("user_id", sa.String(length=128), primary_key=True),
        sa.Column("event_id", sa.String(length=128), primary_key=True),
        sa.Column("applied_at", sa.BigInteger(), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("applied_events")
    op.drop_table("user_streaks")
    op.drop_index("ix_quiz_attempts_user_quiz", table_name="quiz_attempts")
    op.drop_table("quiz_attempts")
    op.drop_table("course_progress")
