"""add_scheduled_messages

Revision ID: 002_add_scheduled_messages
Revises: 001_initial_schema
Create Date: 2025-09-08 00:00:00.000000 UTC

Creates the scheduled_messages table — the durable delivery queue.
The partial unique index allows one pending job per (session_id, message_type).
"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

revision: str = "002_add_scheduled_messages"
down_revision: Union[str, None] = "001_initial_schema"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "scheduled_messages",
        sa.Column("id", sa.String(36), nullable=False, comment="UUID row identifier"),
        sa.Column(
            "job_id",
            sa.String(160),
            nullable=False,
            comment="Queue handle used for cancellation",
        ),
        sa.Column("session_id", sa.String(64), nullable=False),
        sa.Column("recipient", sa.String(64), nullable=False, comment="Transport address"),
        sa.Column("message_type", sa.String(50), nullable=False),
        sa.Column("message_content", sa.Text(), nullable=False, comment="Rendered text"),
        sa.Column("media_url", sa.String(500), nullable=True),
        sa.Column("fire_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("locked_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("transport_message_id", sa.String(128), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("job_id", name="uq_scheduled_messages_job_id"),
        sa.ForeignKeyConstraint(
            ["session_id"],
            ["sessions.id"],
            name="fk_scheduled_messages_session_id",
            ondelete="CASCADE",
        ),
        sa.CheckConstraint(
            "status IN ('pending', 'sent', 'failed', 'cancelled')",
            name="ck_scheduled_messages_status",
        ),
    )
    op.create_index("ix_scheduled_messages_session_id", "scheduled_messages", ["session_id"])
    op.create_index(
        "ix_scheduled_messages_status_fire_at",
        "scheduled_messages",
        ["status", "fire_at"],
    )
    op.create_index(
        "uq_scheduled_messages_pending_type",
        "scheduled_messages",
        ["session_id", "message_type"],
        unique=True,
        postgresql_where=sa.text("status = 'pending'"),
    )


def downgrade() -> None:
    op.drop_index("uq_scheduled_messages_pending_type", table_name="scheduled_messages")
    op.drop_index("ix_scheduled_messages_status_fire_at", table_name="scheduled_messages")
    op.drop_index("ix_scheduled_messages_session_id", table_name="scheduled_messages")
    op.drop_table("scheduled_messages")
