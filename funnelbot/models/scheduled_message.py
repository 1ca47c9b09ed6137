"""
models/scheduled_message.py — SQLAlchemy ORM for the durable job queue.

Table: scheduled_messages
One row per planned outbound message. The table IS the queue: workers claim
due pending rows with a lease (locked_until) and write the outcome back.
"""
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import CheckConstraint, ForeignKey, Index, Integer, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from funnelbot.database import Base, UTCDateTime, utcnow


class ScheduledMessageORM(Base):
    """
    ORM model for one scheduled outbound message.

    job_id:       external handle, "{message_type}_{session_id}_{epoch_ms}".
    status:       pending → sent | failed | cancelled. Terminal rows are never updated.
    retry_count:  failed send attempts so far; the job turns 'failed' at max_attempts.
    locked_until: worker lease; a pending row with a live lease is in flight.
    """
    __tablename__ = "scheduled_messages"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'sent', 'failed', 'cancelled')",
            name="ck_scheduled_messages_status",
        ),
        Index(
            "uq_scheduled_messages_pending_type",
            "session_id",
            "message_type",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
        Index("ix_scheduled_messages_status_fire_at", "status", "fire_at"),
    )

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
        comment="UUID row identifier",
    )
    job_id: Mapped[str] = mapped_column(
        String(160),
        nullable=False,
        unique=True,
        comment="Queue handle used for cancellation",
    )
    session_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    recipient: Mapped[str] = mapped_column(String(64), nullable=False, comment="Transport address")
    message_type: Mapped[str] = mapped_column(String(50), nullable=False)
    message_content: Mapped[str] = mapped_column(Text, nullable=False, comment="Rendered text")
    media_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    fire_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    locked_until: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    sent_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    transport_message_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )
