"""
queue.py — Job Scheduler: durable delayed work queue over scheduled_messages.

Operations:
  - enqueue(...)            one pending job per (session, message_type); re-enqueue is a no-op
  - cancel(job_id)          pending → cancelled, returns whether anything changed
  - cancel_by_filter(...)   cancel a session's pending jobs by type pattern ("*", "appointment_*")
  - dequeue_due(...)        claim due pending jobs under a lease (FOR UPDATE SKIP LOCKED on Postgres)
  - mark_sent / mark_failure / defer
  - queue_stats / list_session_jobs / taken_types

Only pending rows are ever updated, so sent/failed/cancelled are terminal.
All functions flush(); the caller's get_db()/session_scope() commits.
"""
import logging
import uuid
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from funnelbot.config import settings
from funnelbot.database import utcnow
from funnelbot.messaging.templates import MessageType, RenderedMessage
from funnelbot.models.scheduled_message import ScheduledMessageORM
from funnelbot.scheduling.business_calendar import BusinessCalendar, Window, get_calendar
from funnelbot.scheduling.schemas import JobStatus, ScheduledJob

logger = logging.getLogger(__name__)

RECENT_FAILURES_LIMIT = 10

# Jobs cancelled by an operator stay cancelled: their stage is never re-enqueued
ADMIN_CANCEL_REASON = "admin"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def make_job_id(message_type: str, session_id: str, now: datetime) -> str:
    """Queue handle: {message_type}_{session_id}_{epoch_ms}_{rand}."""
    return f"{message_type}_{session_id}_{int(now.timestamp() * 1000)}_{uuid.uuid4().hex[:6]}"


def backoff_delay(retry_count: int, base_seconds: Optional[int] = None) -> timedelta:
    """Exponential backoff after the n-th failure: base, 2*base, 4*base, ..."""
    base = settings.job_backoff_base_seconds if base_seconds is None else base_seconds
    return timedelta(seconds=base * 2 ** max(retry_count - 1, 0))


def type_pattern_to_like(pattern: str) -> str:
    """Glob-style type pattern → SQL LIKE with '\\' as escape ('*' is the only wildcard)."""
    escaped = pattern.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return escaped.replace("*", "%")


def send_window(message_type: str, calendar: BusinessCalendar) -> Optional[Window]:
    """Hour window a message type may go out in: the evening window or the day's hours."""
    return calendar.evening_window if MessageType(message_type).evening else None


def _to_job(orm: ScheduledMessageORM) -> ScheduledJob:
    return ScheduledJob(
        id=orm.id,
        job_id=orm.job_id,
        session_id=orm.session_id,
        recipient=orm.recipient,
        message_type=orm.message_type,
        message_content=orm.message_content,
        media_url=orm.media_url,
        fire_at=orm.fire_at,
        status=JobStatus(orm.status),
        retry_count=orm.retry_count,
        max_attempts=orm.max_attempts,
        sent_at=orm.sent_at,
        error_message=orm.error_message,
    )


async def _pending_for(
    db: AsyncSession, session_id: str, message_type: str
) -> Optional[ScheduledMessageORM]:
    result = await db.execute(
        select(ScheduledMessageORM).where(
            ScheduledMessageORM.session_id == session_id,
            ScheduledMessageORM.message_type == message_type,
            ScheduledMessageORM.status == JobStatus.pending.value,
        )
    )
    return result.scalar_one_or_none()


# ---------------------------------------------------------------------------
# Enqueue
# ---------------------------------------------------------------------------

async def enqueue(
    db: AsyncSession,
    session_id: str,
    recipient: str,
    message: RenderedMessage,
    fire_at: datetime,
    now: Optional[datetime] = None,
) -> ScheduledJob:
    """
    Schedule `message` for `recipient` at `fire_at`.

    If a pending job of the same type already exists for the session it is
    returned unchanged. The partial unique index backs this up when two
    writers race; the loser re-reads the winner's row.
    """
    now = now or utcnow()
    message_type = MessageType(message.message_type).value
    existing = await _pending_for(db, session_id, message_type)
    if existing is not None:
        logger.info(
            "Job already pending session_id=%s type=%s job_id=%s",
            session_id, message_type, existing.job_id,
        )
        return _to_job(existing)

    orm = ScheduledMessageORM(
        job_id=make_job_id(message_type, session_id, now),
        session_id=session_id,
        recipient=recipient,
        message_type=message_type,
        message_content=message.content,
        media_url=message.media_url,
        fire_at=fire_at,
        status=JobStatus.pending.value,
        retry_count=0,
        max_attempts=settings.job_max_attempts,
    )
    try:
        async with db.begin_nested():
            db.add(orm)
            await db.flush()
    except IntegrityError:
        existing = await _pending_for(db, session_id, message_type)
        if existing is None:
            raise
        return _to_job(existing)

    logger.info(
        "Enqueued job_id=%s session_id=%s type=%s fire_at=%s",
        orm.job_id, session_id, message_type, fire_at.isoformat(),
    )
    return _to_job(orm)


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------

async def _lock_pending(db: AsyncSession, *criteria) -> List[ScheduledMessageORM]:
    result = await db.execute(
        select(ScheduledMessageORM)
        .where(ScheduledMessageORM.status == JobStatus.pending.value, *criteria)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


def _set_cancelled(rows: List[ScheduledMessageORM], reason: Optional[str]) -> None:
    for row in rows:
        row.status = JobStatus.cancelled.value
        row.error_message = reason
        row.locked_until = None


async def cancel(db: AsyncSession, job_id: str, reason: Optional[str] = None) -> bool:
    """Cancel one job if it is still pending. Returns False for terminal or unknown jobs."""
    rows = await _lock_pending(db, ScheduledMessageORM.job_id == job_id)
    _set_cancelled(rows, reason)
    await db.flush()
    if rows:
        logger.info("Cancelled job_id=%s reason=%s", job_id, reason)
    return bool(rows)


async def cancel_by_filter(
    db: AsyncSession,
    session_id: str,
    pattern: str = "*",
    message_types: Optional[Iterable[str]] = None,
    reason: Optional[str] = None,
) -> int:
    """
    Cancel every pending job of a session whose type matches `pattern`
    (and, if given, is one of `message_types`). Returns the number cancelled.
    """
    criteria = [ScheduledMessageORM.session_id == session_id]
    if pattern != "*":
        criteria.append(
            ScheduledMessageORM.message_type.like(type_pattern_to_like(pattern), escape="\\")
        )
    if message_types is not None:
        types = [MessageType(t).value for t in message_types]
        criteria.append(ScheduledMessageORM.message_type.in_(types))
    rows = await _lock_pending(db, *criteria)
    _set_cancelled(rows, reason)
    await db.flush()
    logger.info(
        "Cancelled %d pending job(s) session_id=%s pattern=%s reason=%s",
        len(rows), session_id, pattern, reason,
    )
    return len(rows)


async def cancel_all_pending(db: AsyncSession, reason: Optional[str] = None) -> Dict[str, int]:
    """Cancel every pending job. Returns {session_id: jobs_cancelled}."""
    rows = await _lock_pending(db)
    _set_cancelled(rows, reason)
    await db.flush()
    per_session: Dict[str, int] = {}
    for row in rows:
        per_session[row.session_id] = per_session.get(row.session_id, 0) + 1
    logger.warning(
        "Cancelled ALL pending jobs count=%d sessions=%d reason=%s",
        len(rows), len(per_session), reason,
    )
    return per_session


# ---------------------------------------------------------------------------
# Dequeue and outcomes
# ---------------------------------------------------------------------------

async def dequeue_due(
    db: AsyncSession,
    now: Optional[datetime] = None,
    limit: Optional[int] = None,
    lease_seconds: Optional[int] = None,
) -> List[ScheduledJob]:
    """
    Claim up to `limit` due pending jobs, oldest fire time first.

    A claimed job keeps status 'pending' with locked_until set; other workers
    skip it until the lease lapses, so a crashed worker's jobs come back.
    """
    now = now or utcnow()
    limit = limit or settings.worker_batch_size
    lease = timedelta(seconds=lease_seconds or settings.job_lease_seconds)
    result = await db.execute(
        select(ScheduledMessageORM)
        .where(
            ScheduledMessageORM.status == JobStatus.pending.value,
            ScheduledMessageORM.fire_at <= now,
            or_(
                ScheduledMessageORM.locked_until.is_(None),
                ScheduledMessageORM.locked_until <= now,
            ),
        )
        .order_by(ScheduledMessageORM.fire_at)
        .limit(limit)
        .with_for_update(skip_locked=True)
    )
    rows = list(result.scalars().all())
    for row in rows:
        row.locked_until = now + lease
    await db.flush()
    if rows:
        logger.debug("Claimed %d due job(s)", len(rows))
    return [_to_job(r) for r in rows]


async def lock_job(db: AsyncSession, job_id: str) -> Optional[ScheduledMessageORM]:
    """Row-lock a job for the send step and return its current state."""
    result = await db.execute(
        select(ScheduledMessageORM)
        .where(ScheduledMessageORM.job_id == job_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def mark_sent(
    db: AsyncSession,
    job_id: str,
    now: Optional[datetime] = None,
    transport_message_id: Optional[str] = None,
) -> bool:
    orm = await lock_job(db, job_id)
    if orm is None or orm.status != JobStatus.pending.value:
        return False
    orm.status = JobStatus.sent.value
    orm.sent_at = now or utcnow()
    orm.transport_message_id = transport_message_id
    orm.locked_until = None
    orm.error_message = None
    await db.flush()
    return True


async def defer(db: AsyncSession, job_id: str, fire_at: datetime) -> bool:
    """Move a pending job to a later fire time and release its lease. No attempt is counted."""
    orm = await lock_job(db, job_id)
    if orm is None or orm.status != JobStatus.pending.value:
        return False
    orm.fire_at = fire_at
    orm.locked_until = None
    await db.flush()
    logger.info("Deferred job_id=%s to %s", job_id, fire_at.isoformat())
    return True


async def mark_failure(
    db: AsyncSession,
    job_id: str,
    error: str,
    now: Optional[datetime] = None,
    permanent: bool = False,
    calendar: Optional[BusinessCalendar] = None,
) -> Optional[JobStatus]:
    """
    Record a failed send attempt.

    Increments retry_count and stores the error. While attempts remain the job
    stays pending and is re-armed after backoff_delay(), rolled forward to the
    next instant its message type may be sent at; otherwise, or when
    `permanent`, it becomes terminal 'failed'. Returns the resulting status,
    or None if the job was no longer pending.
    """
    now = now or utcnow()
    calendar = calendar or get_calendar()
    orm = await lock_job(db, job_id)
    if orm is None or orm.status != JobStatus.pending.value:
        return None
    orm.retry_count += 1
    orm.error_message = error[:2000]
    orm.locked_until = None
    if permanent or orm.retry_count >= orm.max_attempts:
        orm.status = JobStatus.failed.value
        logger.error(
            "Job failed permanently job_id=%s attempts=%d error=%s",
            job_id, orm.retry_count, error,
        )
    else:
        orm.fire_at = calendar.next_sendable_instant(
            now + backoff_delay(orm.retry_count),
            send_window(orm.message_type, calendar),
        )
        logger.warning(
            "Job send failed, retrying job_id=%s attempt=%d next=%s error=%s",
            job_id, orm.retry_count, orm.fire_at.isoformat(), error,
        )
    await db.flush()
    return JobStatus(orm.status)


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

async def get_job(db: AsyncSession, job_id: str) -> Optional[ScheduledJob]:
    result = await db.execute(
        select(ScheduledMessageORM).where(ScheduledMessageORM.job_id == job_id)
    )
    orm = result.scalar_one_or_none()
    return _to_job(orm) if orm is not None else None


async def list_session_jobs(db: AsyncSession, session_id: str) -> List[ScheduledJob]:
    result = await db.execute(
        select(ScheduledMessageORM)
        .where(ScheduledMessageORM.session_id == session_id)
        .order_by(ScheduledMessageORM.fire_at, ScheduledMessageORM.created_at)
    )
    return [_to_job(r) for r in result.scalars().all()]


async def taken_types(
    db: AsyncSession, session_id: str, message_types: Iterable[str]
) -> set[str]:
    """
    Types among `message_types` that already own a job for the session which
    is not cancelled, or was cancelled by an operator.
    """
    types = [MessageType(t).value for t in message_types]
    result = await db.execute(
        select(ScheduledMessageORM.message_type)
        .where(
            ScheduledMessageORM.session_id == session_id,
            ScheduledMessageORM.message_type.in_(types),
            or_(
                ScheduledMessageORM.status != JobStatus.cancelled.value,
                ScheduledMessageORM.error_message == ADMIN_CANCEL_REASON,
            ),
        )
        .distinct()
    )
    return set(result.scalars().all())


async def queue_stats(db: AsyncSession) -> dict:
    """Counts per status plus the most recent failures with their error strings."""
    result = await db.execute(
        select(ScheduledMessageORM.status, func.count())
        .group_by(ScheduledMessageORM.status)
    )
    counts = {s.value: 0 for s in JobStatus}
    for status, count in result.all():
        counts[status] = count

    failures = await db.execute(
        select(ScheduledMessageORM)
        .where(ScheduledMessageORM.error_message.is_not(None))
        .where(ScheduledMessageORM.status != JobStatus.cancelled.value)
        .order_by(ScheduledMessageORM.updated_at.desc())
        .limit(RECENT_FAILURES_LIMIT)
    )
    recent = [
        {
            "job_id": r.job_id,
            "session_id": r.session_id,
            "message_type": r.message_type,
            "status": r.status,
            "retry_count": r.retry_count,
            "error_message": r.error_message,
        }
        for r in failures.scalars().all()
    ]
    return {"counts": counts, "recent_failures": recent}
