"""initial_schema

Revision ID: 001_initial_schema
Revises:
Create Date: 2025-09-01 00:00:00.000000 UTC

Creates the sessions table: one row per funnel instance, with a partial unique
index so a recipient has at most one active session.
"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "001_initial_schema"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "sessions",
        sa.Column(
            "id",
            sa.String(64),
            nullable=False,
            comment="Opaque session id, embedded in the chatbot link",
        ),
        sa.Column(
            "recipient",
            sa.String(32),
            nullable=False,
            comment="Normalised phone number (digits only)",
        ),
        sa.Column(
            "chat_id",
            sa.String(64),
            nullable=False,
            comment="Transport address, e.g. 972501234567@c.us",
        ),
        sa.Column("status", sa.String(16), nullable=False, comment="active | completed | expired"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "expires_at",
            sa.DateTime(timezone=True),
            nullable=False,
            comment="created_at + TTL; an active session past this is read as expired",
        ),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "form_sent_at",
            sa.DateTime(timezone=True),
            nullable=True,
            comment="Stage-zero of the form funnel",
        ),
        sa.Column("form_completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "appointment_sent_at",
            sa.DateTime(timezone=True),
            nullable=True,
            comment="Stage-zero of the appointment funnel",
        ),
        sa.Column("appointment_scheduled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "reminders_sent",
            postgresql.JSONB(),
            nullable=False,
            server_default=sa.text("""'{"form": [], "appointment": []}'::jsonb"""),
            comment="Stages dispatched per funnel: {form: [...], appointment: [...]}",
        ),
        sa.Column(
            "payload",
            postgresql.JSONB(),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
            comment="Form answers and CRM lead id. Must not be logged.",
        ),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "status IN ('active', 'completed', 'expired')",
            name="ck_sessions_status",
        ),
    )
    op.create_index("ix_sessions_recipient", "sessions", ["recipient"])
    op.create_index(
        "uq_sessions_active_recipient",
        "sessions",
        ["recipient"],
        unique=True,
        postgresql_where=sa.text("status = 'active'"),
    )


def downgrade() -> None:
    op.drop_index("uq_sessions_active_recipient", table_name="sessions")
    op.drop_index("ix_sessions_recipient", table_name="sessions")
    op.drop_table("sessions")
