"""
sweep.py — periodic reminder sweep.

Every settings.sweep_interval_seconds, inside business hours only:
  1. expire active sessions past their TTL
  2. for each session still awaiting the form / a booking, ask the Reminder
     Policy for the next stage and enqueue it for immediate delivery

A stage counts as taken when it is already in reminders_sent or already owns
a non-cancelled job (pre-scheduled chain, in-flight, sent or failed), so the
sweep never duplicates the orchestrator's chain and never resurrects a stage
whose retries were exhausted.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from funnelbot import store
from funnelbot.config import settings
from funnelbot.database import AsyncSessionLocal, session_scope, utcnow
from funnelbot.messaging.templates import render, staged_type
from funnelbot.scheduling import policy, queue
from funnelbot.scheduling.business_calendar import BusinessCalendar, get_calendar
from funnelbot.scheduling.schemas import Funnel, FunnelSession, ScheduledJob

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    skipped: bool = False
    sessions_expired: int = 0
    scanned: int = 0
    enqueued: List[ScheduledJob] = field(default_factory=list)
    expired_session_ids: List[str] = field(default_factory=list)

    @property
    def changed_session_ids(self) -> List[str]:
        """Sessions whose snapshot this pass changed, in first-seen order."""
        ids = self.expired_session_ids + [j.session_id for j in self.enqueued]
        return list(dict.fromkeys(ids))


def _stage_zero(session: FunnelSession, funnel: Funnel) -> Optional[datetime]:
    return session.form_sent_at if funnel == Funnel.form else session.appointment_sent_at


def _variables(session: FunnelSession, funnel: Funnel) -> dict:
    if funnel == Funnel.form:
        return {"chatbot_url": settings.chatbot_url(session.session_id)}
    return {"appointment_url": settings.appointment_url}


async def _sweep_funnel(
    db: AsyncSession,
    funnel: Funnel,
    now: datetime,
    calendar: BusinessCalendar,
    report: SweepReport,
) -> None:
    rules = policy.rules_for(funnel, settings.reminder_test_mode)
    stage_types = {r.stage: staged_type(funnel, r.stage) for r in rules}
    for session in await store.list_awaiting(db, funnel, now):
        report.scanned += 1
        stage_zero = _stage_zero(session, funnel)
        if stage_zero is None:
            continue
        taken = await queue.taken_types(db, session.session_id, [t.value for t in stage_types.values()])
        already = set(session.reminders_sent.for_funnel(funnel))
        already |= {stage for stage, t in stage_types.items() if t.value in taken}

        stage = policy.next_stage(stage_zero, already, rules, now, calendar)
        if stage is None:
            continue
        job = await queue.enqueue(
            db, session.session_id, session.chat_id,
            render(stage_types[stage], _variables(session, funnel)),
            fire_at=now, now=now,
        )
        report.enqueued.append(job)
        logger.info(
            "Sweep enqueued reminder session_id=%s funnel=%s stage=%d",
            session.session_id, funnel.value, stage,
        )


async def run_sweep(
    db: AsyncSession,
    now: Optional[datetime] = None,
    calendar: Optional[BusinessCalendar] = None,
) -> SweepReport:
    """One sweep pass. Skipped entirely outside business hours."""
    now = now or utcnow()
    calendar = calendar or get_calendar()
    if not calendar.is_sendable(now):
        logger.debug("Sweep skipped — outside business hours at %s", now.isoformat())
        return SweepReport(skipped=True)

    report = SweepReport()
    report.expired_session_ids = await store.cleanup_expired_sessions(db, now)
    report.sessions_expired = len(report.expired_session_ids)
    for funnel in (Funnel.form, Funnel.appointment):
        await _sweep_funnel(db, funnel, now, calendar, report)
    logger.info(
        "Sweep done scanned=%d enqueued=%d expired=%d",
        report.scanned, len(report.enqueued), report.sessions_expired,
    )
    return report


async def reminder_stats(db: AsyncSession, now: Optional[datetime] = None) -> dict:
    """Sessions awaiting each funnel plus the active rule tables."""
    now = now or utcnow()
    test_mode = settings.reminder_test_mode
    return {
        "awaiting_form_reminders": await store.count_awaiting(db, Funnel.form, now),
        "awaiting_appointment_reminders": await store.count_awaiting(db, Funnel.appointment, now),
        "test_mode": test_mode,
        "timing": {
            funnel.value: [r.model_dump() for r in policy.rules_for(funnel, test_mode)]
            for funnel in (Funnel.form, Funnel.appointment)
        },
    }


async def sweep_forever(
    stop: asyncio.Event,
    factory: async_sessionmaker = AsyncSessionLocal,
    interval: Optional[float] = None,
    on_session_changed: Optional[Callable[[str], Awaitable[None]]] = None,
) -> None:
    """
    Background loop started from the app lifespan. `on_session_changed` is
    awaited for every touched session once the pass has committed.
    """
    interval = interval or settings.sweep_interval_seconds
    logger.info("Reminder sweep started interval=%ss", interval)
    while not stop.is_set():
        try:
            async with session_scope(factory) as db:
                report = await run_sweep(db)
            if on_session_changed is not None:
                for session_id in report.changed_session_ids:
                    await on_session_changed(session_id)
        except Exception:
            logger.exception("Reminder sweep pass failed")
        try:
            await asyncio.wait_for(stop.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass
    logger.info("Reminder sweep stopped")
