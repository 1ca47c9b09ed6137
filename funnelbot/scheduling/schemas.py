"""
schemas.py — Pydantic v2 data contracts for the scheduling engine.

Defines:
  - SessionStatus / JobStatus / Funnel   (closed enums mirrored by DB check constraints)
  - RemindersSent                        (per-funnel stage lists)
  - FunnelSession                        (domain view of a sessions row)
  - ScheduledJob                         (domain view of a scheduled_messages row)
  - FunnelRule                           (one reminder-policy rule)

Store and queue functions return these, never ORM instances, so callers
stay persistence-agnostic.
"""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class SessionStatus(str, Enum):
    active = "active"
    completed = "completed"
    expired = "expired"


class JobStatus(str, Enum):
    pending = "pending"
    sent = "sent"
    failed = "failed"
    cancelled = "cancelled"


class Funnel(str, Enum):
    form = "form"
    appointment = "appointment"


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------

class RemindersSent(BaseModel):
    """Stages already dispatched, per funnel. Ascending, no repeats."""
    model_config = ConfigDict(extra="forbid")

    form: List[int] = Field(default_factory=list)
    appointment: List[int] = Field(default_factory=list)

    def for_funnel(self, funnel: Funnel) -> List[int]:
        return self.form if funnel == Funnel.form else self.appointment


class FunnelSession(BaseModel):
    """
    One user's progress through the funnel.

    completed_at is set iff status == completed. payload holds the form answers
    and is opaque to the engine.
    """
    model_config = ConfigDict(extra="forbid")

    session_id: str
    recipient: str
    chat_id: str
    status: SessionStatus
    created_at: datetime
    expires_at: datetime
    completed_at: Optional[datetime] = None
    form_sent_at: Optional[datetime] = None
    form_completed_at: Optional[datetime] = None
    appointment_sent_at: Optional[datetime] = None
    appointment_scheduled_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    reminders_sent: RemindersSent = Field(default_factory=RemindersSent)
    payload: dict = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------

class ScheduledJob(BaseModel):
    """A planned outbound message as seen by the orchestrator and worker."""
    model_config = ConfigDict(extra="forbid")

    id: str
    job_id: str
    session_id: str
    recipient: str
    message_type: str
    message_content: str
    media_url: Optional[str] = None
    fire_at: datetime
    status: JobStatus
    retry_count: int = 0
    max_attempts: int = 3
    sent_at: Optional[datetime] = None
    error_message: Optional[str] = None


# ---------------------------------------------------------------------------
# Reminder policy rules
# ---------------------------------------------------------------------------

class FunnelRule(BaseModel):
    """
    One reminder stage: fire once `delay_minutes` have passed since stage zero,
    and only while the local hour is inside `window` (start inclusive, end exclusive).
    """
    model_config = ConfigDict(extra="forbid", frozen=True)

    stage: int = Field(ge=1)
    delay_minutes: int = Field(ge=0)
    window: Optional[Tuple[int, int]] = None

    @field_validator("window")
    @classmethod
    def _check_window(cls, v: Optional[Tuple[int, int]]) -> Optional[Tuple[int, int]]:
        if v is not None:
            start, end = v
            if not (0 <= start < end <= 24):
                raise ValueError(f"window must satisfy 0 <= start < end <= 24, got {v}")
        return v
