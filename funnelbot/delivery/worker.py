"""
worker.py — Delivery Worker: claim due jobs, re-check the session, send, record.

Per job (process_job):
  1. row-lock the job; anything no longer pending is skipped
  2. re-read the session from the database (never the cache), applying lazy expiry
  3. appointment-funnel types need a completed, unbooked session;
     form-funnel types need an active session; a closed session gets nothing;
     otherwise cancel and skip
  4. outside the message type's sending hours the job is deferred to the next
     sendable instant, with no attempt counted
  5. send via the Transport; sent → mark_sent (+ record the reminder stage),
     transient failure → retry with backoff, permanent failure → failed

Cancellation is cooperative: once step 5 starts the send is not aborted. The
row lock makes a concurrent cancel wait and then find the job no longer pending.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from funnelbot import store
from funnelbot.config import settings
from funnelbot.database import AsyncSessionLocal, session_scope, utcnow
from funnelbot.delivery.transport import Transport
from funnelbot.errors import PermanentDeliveryFailure, TransientDeliveryFailure
from funnelbot.messaging.templates import MessageType
from funnelbot.scheduling import queue
from funnelbot.scheduling.business_calendar import BusinessCalendar, get_calendar
from funnelbot.scheduling.schemas import Funnel, FunnelSession, JobStatus, SessionStatus

logger = logging.getLogger(__name__)


@dataclass
class DeliveryOutcome:
    job_id: str
    result: str                       # sent | cancelled | deferred | retrying | failed | skipped | error
    session_id: Optional[str] = None
    detail: Optional[str] = None


def dispatch_block_reason(session: FunnelSession, message_type: MessageType) -> Optional[str]:
    """Why this message must not go out for this session right now, or None."""
    if session.closed_at is not None:
        return "session_closed"
    if message_type.funnel == Funnel.appointment:
        if session.status != SessionStatus.completed:
            return f"session_{session.status.value}"
        if session.appointment_scheduled_at is not None:
            return "appointment_booked"
    elif session.status != SessionStatus.active:
        return f"session_{session.status.value}"

    stage = message_type.stage
    if stage is not None:
        sent = session.reminders_sent.for_funnel(message_type.funnel)
        if sent and stage <= max(sent):
            return "stage_already_sent"
    return None


async def process_job(
    db: AsyncSession,
    job_id: str,
    transport: Transport,
    now: Optional[datetime] = None,
    calendar: Optional[BusinessCalendar] = None,
) -> DeliveryOutcome:
    now = now or utcnow()
    calendar = calendar or get_calendar()
    job = await queue.lock_job(db, job_id)
    if job is None or job.status != JobStatus.pending.value:
        return DeliveryOutcome(job_id, "skipped", detail="not pending")
    session_id = job.session_id

    try:
        message_type = MessageType(job.message_type)
    except ValueError:
        await queue.cancel(db, job_id, reason="unknown_message_type")
        return DeliveryOutcome(job_id, "cancelled", session_id, "unknown_message_type")

    session = await store.get_session(db, session_id, now)
    if session is None:
        await queue.cancel(db, job_id, reason="session_missing")
        return DeliveryOutcome(job_id, "cancelled", session_id, "session_missing")

    # lazy expiry above may have cancelled this very job
    job = await queue.lock_job(db, job_id)
    if job is None or job.status != JobStatus.pending.value:
        return DeliveryOutcome(job_id, "cancelled", session_id, f"session_{session.status.value}")

    reason = dispatch_block_reason(session, message_type)
    if reason is not None:
        await queue.cancel(db, job_id, reason=reason)
        logger.info("Skipped stale job job_id=%s type=%s reason=%s", job_id, message_type.value, reason)
        return DeliveryOutcome(job_id, "cancelled", session_id, reason)

    window = queue.send_window(message_type.value, calendar)
    if not calendar.is_sendable(now, window):
        fire_at = calendar.next_sendable_instant(now, window)
        await queue.defer(db, job_id, fire_at)
        return DeliveryOutcome(job_id, "deferred", session_id, fire_at.isoformat())

    try:
        result = await transport.send(job.recipient, job.message_content, job.media_url)
    except TransientDeliveryFailure as exc:
        status = await queue.mark_failure(db, job_id, str(exc), now, calendar=calendar)
        outcome = "failed" if status == JobStatus.failed else "retrying"
        return DeliveryOutcome(job_id, outcome, session_id, str(exc))
    except PermanentDeliveryFailure as exc:
        await queue.mark_failure(db, job_id, str(exc), now, permanent=True, calendar=calendar)
        return DeliveryOutcome(job_id, "failed", session_id, str(exc))

    await queue.mark_sent(db, job_id, now, transport_message_id=result.message_id)
    if message_type.stage is not None:
        await store.record_reminder_sent(db, session_id, message_type.funnel, message_type.stage)
    logger.info("Sent job_id=%s session_id=%s type=%s", job_id, session_id, message_type.value)
    return DeliveryOutcome(job_id, "sent", session_id)


class DeliveryWorker:
    """Polls the queue and delivers due jobs with bounded concurrency."""

    def __init__(
        self,
        transport: Transport,
        factory: async_sessionmaker = AsyncSessionLocal,
        concurrency: Optional[int] = None,
        batch_size: Optional[int] = None,
        poll_interval: Optional[float] = None,
        on_session_changed: Optional[Callable[[str], Awaitable[None]]] = None,
        calendar: Optional[BusinessCalendar] = None,
    ) -> None:
        self.transport = transport
        self.factory = factory
        self.concurrency = concurrency or settings.worker_concurrency
        self.batch_size = batch_size or settings.worker_batch_size
        self.poll_interval = poll_interval or settings.worker_poll_interval_seconds
        self.on_session_changed = on_session_changed
        self.calendar = calendar or get_calendar()

    async def run_once(self, now: Optional[datetime] = None) -> List[DeliveryOutcome]:
        """Claim one batch of due jobs and deliver them."""
        async with session_scope(self.factory) as db:
            jobs = await queue.dequeue_due(db, now=now, limit=self.batch_size)
        if not jobs:
            return []

        semaphore = asyncio.Semaphore(self.concurrency)

        async def _bounded(job_id: str) -> DeliveryOutcome:
            async with semaphore:
                return await self._deliver(job_id, now)

        return list(await asyncio.gather(*(_bounded(j.job_id) for j in jobs)))

    async def _deliver(self, job_id: str, now: Optional[datetime]) -> DeliveryOutcome:
        try:
            async with session_scope(self.factory) as db:
                outcome = await process_job(db, job_id, self.transport, now, self.calendar)
        except Exception as exc:
            logger.exception("Unexpected error delivering job_id=%s", job_id)
            async with session_scope(self.factory) as db:
                await queue.mark_failure(
                    db, job_id, f"{type(exc).__name__}: {exc}", now, calendar=self.calendar
                )
            return DeliveryOutcome(job_id, "error", detail=str(exc))

        if outcome.session_id and self.on_session_changed is not None:
            await self.on_session_changed(outcome.session_id)
        return outcome

    async def run_forever(self, stop: asyncio.Event) -> None:
        logger.info(
            "Delivery worker started concurrency=%d batch=%d poll=%ss",
            self.concurrency, self.batch_size, self.poll_interval,
        )
        while not stop.is_set():
            try:
                outcomes = await self.run_once()
            except Exception:
                logger.exception("Delivery worker poll failed")
                outcomes = []
            if len(outcomes) >= self.batch_size:
                continue
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Delivery worker stopped")
