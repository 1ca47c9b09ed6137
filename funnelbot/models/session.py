"""
models/session.py — SQLAlchemy ORM model for one user's funnel session.

Table: sessions

Source of truth for funnel progress. The partial unique index guarantees at
most one 'active' session per recipient; a new trigger expires the old one
before inserting.
"""
from datetime import datetime
from typing import Optional

from sqlalchemy import CheckConstraint, Index, String, text
from sqlalchemy.orm import Mapped, mapped_column

from funnelbot.database import Base, JSONDict, UTCDateTime, utcnow


def empty_reminders_sent() -> dict:
    return {"form": [], "appointment": []}


class SessionORM(Base):
    """
    ORM model for a funnel session.

    reminders_sent: {"form": [1, 2], "appointment": [1]} — stages already delivered,
                    ascending, never repeated.
    payload:        form answers attached on completion plus the CRM lead id.
                    Never logged.
    """
    __tablename__ = "sessions"
    __table_args__ = (
        CheckConstraint(
            "status IN ('active', 'completed', 'expired')",
            name="ck_sessions_status",
        ),
        Index(
            "uq_sessions_active_recipient",
            "recipient",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
    )

    id: Mapped[str] = mapped_column(
        String(64),
        primary_key=True,
        comment="Opaque session id, embedded in the chatbot link",
    )
    recipient: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        index=True,
        comment="Normalised phone number (digits only)",
    )
    chat_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        comment="Transport address, e.g. 972501234567@c.us",
    )
    status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default="active",
        comment="active | completed | expired",
    )
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
        comment="created_at + TTL; an active session past this is read as expired",
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    form_sent_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime,
        nullable=True,
        comment="Stage-zero of the form funnel",
    )
    form_completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    appointment_sent_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime,
        nullable=True,
        comment="Stage-zero of the appointment funnel",
    )
    appointment_scheduled_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    closed_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime,
        nullable=True,
        comment="Set by admin clear-session; no reminders after this",
    )
    reminders_sent: Mapped[dict] = mapped_column(
        JSONDict,
        nullable=False,
        default=empty_reminders_sent,
        comment="Stages dispatched per funnel: {form: [...], appointment: [...]}",
    )
    payload: Mapped[dict] = mapped_column(
        JSONDict,
        nullable=False,
        default=dict,
        comment="Form answers and CRM lead id. Must not be logged.",
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )
