"""add_session_closed_at

Revision ID: 003_add_session_closed_at
Revises: 002_add_scheduled_messages
Create Date: 2025-10-02 00:00:00.000000 UTC

Adds sessions.closed_at: set when an operator takes a session out of the
funnel. A closed session is never scanned by the sweep and never sent to.
"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

revision: str = "003_add_session_closed_at"
down_revision: Union[str, None] = "002_add_scheduled_messages"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.add_column(
        "sessions",
        sa.Column(
            "closed_at",
            sa.DateTime(timezone=True),
            nullable=True,
            comment="Set by admin clear-session; no reminders after this",
        ),
    )


def downgrade() -> None:
    op.drop_column("sessions", "closed_at")
