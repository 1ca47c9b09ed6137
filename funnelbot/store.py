"""
store.py — Session Store: persistence and state machine for funnel sessions.

Provides a consistent, high-level API for creating, reading and moving sessions.
Routes, the orchestrator, the sweep and the worker use these functions — none
of them touch SessionORM directly.

State machine:
  active → completed   mark_completed()  (form submitted; appointment funnel clock starts)
  active → expired     TTL lapse (lazy, on read), superseding trigger, or admin
  completed / expired are terminal; a new trigger always creates a fresh session.
  closed_at (admin clear-session) takes a session out of both funnels whatever its status.

Design principles:
  - All functions are async and accept an AsyncSession parameter
  - flush() only — caller / get_db() / session_scope() handles commit
  - Every path that leaves 'active' cancels the session's pending jobs first;
    a cancellation failure is logged and never blocks the transition
  - Logs only session_id / recipient — never form answers
  - Returns FunnelSession (Pydantic), not ORM instances
"""
import logging
import re
import uuid
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from funnelbot.config import settings
from funnelbot.database import utcnow
from funnelbot.errors import InvalidTransitionError, NotFoundError
from funnelbot.models.session import SessionORM, empty_reminders_sent
from funnelbot.scheduling import queue
from funnelbot.scheduling.schemas import (
    Funnel,
    FunnelSession,
    RemindersSent,
    SessionStatus,
)

logger = logging.getLogger(__name__)

_NON_DIGITS = re.compile(r"\D")


# ---------------------------------------------------------------------------
# Identity helpers
# ---------------------------------------------------------------------------

def normalize_recipient(phone: str) -> str:
    """Strip everything but digits: '+972 50-123-4567' → '972501234567'."""
    digits = _NON_DIGITS.sub("", phone or "")
    if not digits:
        raise ValueError(f"Recipient has no digits: {phone!r}")
    return digits


def default_chat_id(recipient: str) -> str:
    return f"{recipient}@c.us"


def make_session_id(now: datetime) -> str:
    return f"session_{int(now.timestamp() * 1000)}_{uuid.uuid4().hex[:9]}"


def _to_session(orm: SessionORM) -> FunnelSession:
    return FunnelSession(
        session_id=orm.id,
        recipient=orm.recipient,
        chat_id=orm.chat_id,
        status=SessionStatus(orm.status),
        created_at=orm.created_at,
        expires_at=orm.expires_at,
        completed_at=orm.completed_at,
        form_sent_at=orm.form_sent_at,
        form_completed_at=orm.form_completed_at,
        appointment_sent_at=orm.appointment_sent_at,
        appointment_scheduled_at=orm.appointment_scheduled_at,
        closed_at=orm.closed_at,
        reminders_sent=RemindersSent.model_validate(orm.reminders_sent or empty_reminders_sent()),
        payload=dict(orm.payload or {}),
    )


async def _load(db: AsyncSession, session_id: str, for_update: bool = False) -> Optional[SessionORM]:
    stmt = select(SessionORM).where(SessionORM.id == session_id)
    if for_update:
        stmt = stmt.with_for_update()
    result = await db.execute(stmt.execution_options(populate_existing=True))
    return result.scalar_one_or_none()


async def _cancel_jobs_quietly(db: AsyncSession, session_id: str, reason: str) -> int:
    """Cancel all pending jobs of a session inside a savepoint; log and carry on if it fails."""
    try:
        async with db.begin_nested():
            return await queue.cancel_by_filter(db, session_id, "*", reason=reason)
    except SQLAlchemyError:
        logger.warning(
            "Job cancellation failed session_id=%s reason=%s — continuing; worker recheck covers it",
            session_id, reason, exc_info=True,
        )
        return 0


async def _expire(db: AsyncSession, orm: SessionORM, reason: str) -> int:
    cancelled = await _cancel_jobs_quietly(db, orm.id, reason)
    orm.status = SessionStatus.expired.value
    await db.flush()
    logger.info("Expired session session_id=%s reason=%s jobs_cancelled=%d", orm.id, reason, cancelled)
    return cancelled


async def _expire_if_lapsed(db: AsyncSession, orm: SessionORM, now: datetime) -> None:
    if orm.status == SessionStatus.active.value and orm.expires_at <= now:
        await _expire(db, orm, reason="ttl")


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------

async def create_session(
    db: AsyncSession,
    recipient: str,
    chat_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> FunnelSession:
    """
    Start a fresh funnel session for `recipient`.

    Any active session for the recipient is expired first (its pending jobs
    cancelled), then the new one is inserted with TTL settings.session_ttl_hours.
    Both writes share the caller's transaction.
    """
    now = now or utcnow()
    recipient = normalize_recipient(recipient)

    result = await db.execute(
        select(SessionORM)
        .where(
            SessionORM.recipient == recipient,
            SessionORM.status == SessionStatus.active.value,
        )
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    for old in result.scalars().all():
        await _expire(db, old, reason="superseded")

    orm = SessionORM(
        id=make_session_id(now),
        recipient=recipient,
        chat_id=chat_id or default_chat_id(recipient),
        status=SessionStatus.active.value,
        created_at=now,
        expires_at=now + timedelta(hours=settings.session_ttl_hours),
        form_sent_at=now,
        reminders_sent=empty_reminders_sent(),
        payload={},
    )
    db.add(orm)
    await db.flush()
    logger.info("Created session session_id=%s recipient=%s", orm.id, recipient)
    return _to_session(orm)


# ---------------------------------------------------------------------------
# Reads (with lazy expiry)
# ---------------------------------------------------------------------------

async def get_session(
    db: AsyncSession,
    session_id: str,
    now: Optional[datetime] = None,
) -> Optional[FunnelSession]:
    """
    Return the session, or None if unknown.

    An active session past expires_at is flipped to expired (and its jobs
    cancelled) before it is returned.
    """
    orm = await _load(db, session_id)
    if orm is None:
        return None
    await _expire_if_lapsed(db, orm, now or utcnow())
    return _to_session(orm)


async def require_session(
    db: AsyncSession,
    session_id: str,
    now: Optional[datetime] = None,
) -> FunnelSession:
    session = await get_session(db, session_id, now)
    if session is None:
        raise NotFoundError("session", session_id)
    return session


async def get_active_session_by_recipient(
    db: AsyncSession,
    recipient: str,
    now: Optional[datetime] = None,
) -> Optional[FunnelSession]:
    now = now or utcnow()
    result = await db.execute(
        select(SessionORM)
        .where(
            SessionORM.recipient == normalize_recipient(recipient),
            SessionORM.status == SessionStatus.active.value,
        )
        .execution_options(populate_existing=True)
    )
    orm = result.scalar_one_or_none()
    if orm is None:
        return None
    await _expire_if_lapsed(db, orm, now)
    return _to_session(orm) if orm.status == SessionStatus.active.value else None


async def list_active_sessions(
    db: AsyncSession,
    now: Optional[datetime] = None,
) -> List[FunnelSession]:
    now = now or utcnow()
    result = await db.execute(
        select(SessionORM)
        .where(
            SessionORM.status == SessionStatus.active.value,
            SessionORM.expires_at > now,
        )
        .order_by(SessionORM.created_at.desc())
    )
    return [_to_session(o) for o in result.scalars().all()]


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------

async def mark_completed(
    db: AsyncSession,
    session_id: str,
    payload: Optional[dict] = None,
    now: Optional[datetime] = None,
) -> Tuple[FunnelSession, bool]:
    """
    active → completed. Stamps completed_at, form_completed_at and
    appointment_sent_at (appointment funnel stage zero) and stores the payload.

    Returns (session, changed). A second call on a completed session returns
    the stored record with changed=False.

    Raises:
        NotFoundError: unknown session_id.
        InvalidTransitionError: session is expired (including lazily expired now).
    """
    now = now or utcnow()
    orm = await _load(db, session_id, for_update=True)
    if orm is None:
        raise NotFoundError("session", session_id)
    await _expire_if_lapsed(db, orm, now)

    if orm.status == SessionStatus.completed.value:
        logger.info("Session already completed session_id=%s — no-op", session_id)
        return _to_session(orm), False
    if orm.status != SessionStatus.active.value:
        raise InvalidTransitionError(session_id, orm.status, "complete")

    orm.status = SessionStatus.completed.value
    orm.completed_at = now
    orm.form_completed_at = now
    orm.appointment_sent_at = now
    orm.payload = {**(orm.payload or {}), **(payload or {})}
    await db.flush()
    logger.info("Marked session completed session_id=%s", session_id)
    return _to_session(orm), True


async def find_session_for_booking(
    db: AsyncSession,
    recipient: str,
) -> Optional[FunnelSession]:
    """Most recent session of `recipient` that was sent the appointment link."""
    result = await db.execute(
        select(SessionORM)
        .where(
            SessionORM.recipient == normalize_recipient(recipient),
            SessionORM.appointment_sent_at.is_not(None),
        )
        .order_by(SessionORM.created_at.desc())
        .limit(1)
    )
    orm = result.scalar_one_or_none()
    return _to_session(orm) if orm is not None else None


async def mark_appointment_scheduled(
    db: AsyncSession,
    session_id: str,
    now: Optional[datetime] = None,
) -> Tuple[FunnelSession, bool]:
    """
    Stamp appointment_scheduled_at. Once set, appointment reminders are skipped
    at dispatch even if already enqueued. Returns (session, changed).
    """
    now = now or utcnow()
    orm = await _load(db, session_id, for_update=True)
    if orm is None:
        raise NotFoundError("session", session_id)
    if orm.appointment_scheduled_at is not None:
        return _to_session(orm), False
    orm.appointment_scheduled_at = now
    await db.flush()
    logger.info("Appointment scheduled session_id=%s", session_id)
    return _to_session(orm), True


async def expire_session(
    db: AsyncSession,
    session_id: str,
    reason: str = "admin",
    now: Optional[datetime] = None,
) -> Tuple[FunnelSession, int]:
    """
    Force a session out of the funnel and cancel its pending jobs.

    active → expired. Completed sessions keep their terminal status but still
    lose their pending jobs. Either way closed_at is stamped, which keeps the
    sweep from scanning the session and the worker from sending to it.
    Returns (session, jobs_cancelled).
    """
    orm = await _load(db, session_id, for_update=True)
    if orm is None:
        raise NotFoundError("session", session_id)
    if orm.closed_at is None:
        orm.closed_at = now or utcnow()
    if orm.status == SessionStatus.active.value:
        cancelled = await _expire(db, orm, reason)
    else:
        cancelled = await _cancel_jobs_quietly(db, orm.id, reason)
        await db.flush()
    return _to_session(orm), cancelled


async def cleanup_expired_sessions(
    db: AsyncSession,
    now: Optional[datetime] = None,
) -> List[str]:
    """Write back lazy expiry for every active session past its TTL. Returns their ids."""
    now = now or utcnow()
    result = await db.execute(
        select(SessionORM)
        .where(
            SessionORM.status == SessionStatus.active.value,
            SessionORM.expires_at <= now,
        )
        .with_for_update(skip_locked=True)
    )
    lapsed = list(result.scalars().all())
    for orm in lapsed:
        await _expire(db, orm, reason="ttl")
    if lapsed:
        logger.info("Cleaned up %d expired session(s)", len(lapsed))
    return [orm.id for orm in lapsed]


# ---------------------------------------------------------------------------
# Funnel bookkeeping
# ---------------------------------------------------------------------------

async def record_reminder_sent(
    db: AsyncSession,
    session_id: str,
    funnel: Funnel,
    stage: int,
) -> bool:
    """
    Append `stage` to reminders_sent[funnel].

    Refuses (returns False) a stage already present or lower than the highest
    one recorded, keeping each list ascending without repeats.
    """
    orm = await _load(db, session_id, for_update=True)
    if orm is None:
        raise NotFoundError("session", session_id)
    current = dict(orm.reminders_sent or empty_reminders_sent())
    stages = list(current.get(funnel.value, []))
    if stage in stages or (stages and stage < max(stages)):
        logger.info(
            "Reminder stage not recorded session_id=%s funnel=%s stage=%d sent=%s",
            session_id, funnel.value, stage, stages,
        )
        return False
    current[funnel.value] = stages + [stage]
    orm.reminders_sent = current
    await db.flush()
    return True


async def set_crm_lead_id(db: AsyncSession, session_id: str, lead_id: str) -> None:
    orm = await _load(db, session_id, for_update=True)
    if orm is None:
        raise NotFoundError("session", session_id)
    orm.payload = {**(orm.payload or {}), "crm_lead_id": lead_id}
    await db.flush()
    logger.info("Stored CRM lead id session_id=%s", session_id)


# ---------------------------------------------------------------------------
# Funnel scans — used by the sweep and the status endpoint
# ---------------------------------------------------------------------------

def _awaiting_clauses(funnel: Funnel, now: datetime) -> list:
    if funnel == Funnel.form:
        return [
            SessionORM.status == SessionStatus.active.value,
            SessionORM.closed_at.is_(None),
            SessionORM.form_sent_at.is_not(None),
            SessionORM.form_completed_at.is_(None),
            SessionORM.expires_at > now,
        ]
    horizon = now - timedelta(days=settings.appointment_funnel_days)
    return [
        SessionORM.status == SessionStatus.completed.value,
        SessionORM.closed_at.is_(None),
        SessionORM.appointment_sent_at.is_not(None),
        SessionORM.appointment_scheduled_at.is_(None),
        SessionORM.appointment_sent_at > horizon,
    ]


async def list_awaiting(
    db: AsyncSession,
    funnel: Funnel,
    now: Optional[datetime] = None,
) -> List[FunnelSession]:
    """Sessions still waiting on the funnel's objective (form or booking)."""
    result = await db.execute(
        select(SessionORM)
        .where(*_awaiting_clauses(funnel, now or utcnow()))
        .order_by(SessionORM.created_at)
    )
    return [_to_session(o) for o in result.scalars().all()]


async def count_awaiting(
    db: AsyncSession,
    funnel: Funnel,
    now: Optional[datetime] = None,
) -> int:
    result = await db.execute(
        select(func.count()).select_from(SessionORM).where(*_awaiting_clauses(funnel, now or utcnow()))
    )
    return result.scalar_one()


async def count_sessions_by_status(db: AsyncSession) -> dict:
    result = await db.execute(
        select(SessionORM.status, func.count()).group_by(SessionORM.status)
    )
    counts = {s.value: 0 for s in SessionStatus}
    for status, count in result.all():
        counts[status] = count
    return counts
