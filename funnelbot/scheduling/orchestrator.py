"""
orchestrator.py — Scheduling Orchestrator.

Turns funnel events into queue writes:

  start_funnel()            trigger → new session, introduction + chatbot link now,
                            19:00 reminder and +1h testimonial video
  complete_form()           mark completed (row lock) → cancel form-funnel jobs → summary +
                            appointment link now → 4-stage appointment chain
  sync_crm_lead()           best-effort CRM upsert, run after the completion commits
  record_appointment_booked()  stamp booking → cancel everything still pending
  force_expire()            admin path → close and expire session, cancel everything pending

The appointment chain is sequential: stage N+1 is computed from stage N's
resolved fire time, so a push past a weekend or holiday shifts every later stage.

Cancellation happens here eagerly AND the worker re-checks session state before
every send; either alone keeps stale reminders from going out.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, List, Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from funnelbot import store
from funnelbot.config import settings
from funnelbot.database import utcnow
from funnelbot.errors import NotFoundError
from funnelbot.messaging.crm import CRMClient
from funnelbot.messaging.templates import MessageType, render, types_in_funnel
from funnelbot.scheduling import queue
from funnelbot.scheduling.business_calendar import BusinessCalendar, get_calendar
from funnelbot.scheduling.schemas import Funnel, FunnelSession, ScheduledJob

logger = logging.getLogger(__name__)

# Gap between two back-to-back immediate messages so they arrive in order
FOLLOW_ON_GAP = timedelta(seconds=2)

APPOINTMENT_CHAIN = [
    MessageType.appointment_reminder_1,
    MessageType.appointment_reminder_2,
    MessageType.appointment_reminder_3,
    MessageType.appointment_reminder_4,
]

# Webhook form keys → summary template variables
_FORM_SUMMARY_KEYS = {
    "age": "age_group",
    "goal": "financial_goal",
    "status": "marital_status",
    "employment": "employment_status",
    "pension": "pension_contributions",
    "salary": "monthly_salary",
    "pensionAmount": "pension_capital",
    "savings": "savings_and_investments",
    "investments": "investment_location",
    "mortgage": "mortgage",
}


@dataclass
class FunnelStart:
    session: FunnelSession
    chatbot_url: str
    jobs: List[ScheduledJob] = field(default_factory=list)
    reused: bool = False


@dataclass
class FormCompletion:
    session: FunnelSession
    changed: bool
    jobs: List[ScheduledJob] = field(default_factory=list)
    form_jobs_cancelled: int = 0
    crm_lead_id: Optional[str] = None


@dataclass
class BookingResult:
    session: FunnelSession
    changed: bool
    jobs_cancelled: int


# ---------------------------------------------------------------------------
# Pure timing helpers
# ---------------------------------------------------------------------------

def appointment_chain_times(
    start: datetime,
    calendar: BusinessCalendar,
    stages: int = len(APPOINTMENT_CHAIN),
) -> List[datetime]:
    """Fire times for the appointment chain; each derived from the previous resolved time."""
    times: List[datetime] = []
    previous = start
    for _ in range(stages):
        previous = calendar.next_evening_slot(previous)
        times.append(previous)
    return times


def summary_variables(
    form_data: dict,
    name: Optional[str] = None,
    lead_id: Optional[str] = None,
) -> dict[str, Any]:
    variables: dict[str, Any] = {
        "name": name or form_data.get("name") or "there",
        "appointment_url": settings.appointment_url,
        "lead_id": lead_id or None,
    }
    for form_key, var_name in _FORM_SUMMARY_KEYS.items():
        value = form_data.get(form_key)
        if value not in (None, ""):
            variables[var_name] = str(value)
    return variables


# ---------------------------------------------------------------------------
# Trigger
# ---------------------------------------------------------------------------

async def start_funnel(
    db: AsyncSession,
    recipient: str,
    chat_id: Optional[str] = None,
    now: Optional[datetime] = None,
    calendar: Optional[BusinessCalendar] = None,
    reuse_active: bool = False,
) -> FunnelStart:
    """
    Handle a trigger from `recipient`.

    By default any active session is superseded. With reuse_active=True an
    existing active session is kept and only re-sent its link.
    """
    now = now or utcnow()
    calendar = calendar or get_calendar()

    if reuse_active:
        existing = await store.get_active_session_by_recipient(db, recipient, now)
        if existing is not None:
            url = settings.chatbot_url(existing.session_id)
            job = await queue.enqueue(
                db, existing.session_id, existing.chat_id,
                render(MessageType.active_session_reminder, {"chatbot_url": url}),
                fire_at=now, now=now,
            )
            logger.info("Re-sent link to active session session_id=%s", existing.session_id)
            return FunnelStart(session=existing, chatbot_url=url, jobs=[job], reused=True)

    session = await store.create_session(db, recipient, chat_id=chat_id, now=now)
    url = settings.chatbot_url(session.session_id)
    reminder_at, video_at = calendar.one_time_reminder_times(now)

    plan = [
        (render(MessageType.introduction), now),
        (render(MessageType.chatbot_link, {"chatbot_url": url}), now + FOLLOW_ON_GAP),
        (render(MessageType.form_reminder_19pm, {"chatbot_url": url}), reminder_at),
        (render(MessageType.video_testimonial, {"video_url": settings.testimonial_video_url}), video_at),
    ]
    jobs = [
        await queue.enqueue(db, session.session_id, session.chat_id, message, fire_at=at, now=now)
        for message, at in plan
    ]
    logger.info(
        "Funnel started session_id=%s reminder_at=%s video_at=%s",
        session.session_id, reminder_at.isoformat(), video_at.isoformat(),
    )
    return FunnelStart(session=session, chatbot_url=url, jobs=jobs)


# ---------------------------------------------------------------------------
# Form completion
# ---------------------------------------------------------------------------

async def schedule_appointment_chain(
    db: AsyncSession,
    session: FunnelSession,
    start: datetime,
    calendar: BusinessCalendar,
    now: Optional[datetime] = None,
) -> List[ScheduledJob]:
    message_vars = {"appointment_url": settings.appointment_url}
    times = appointment_chain_times(start, calendar)
    jobs = []
    for message_type, fire_at in zip(APPOINTMENT_CHAIN, times):
        jobs.append(
            await queue.enqueue(
                db, session.session_id, session.chat_id,
                render(message_type, message_vars),
                fire_at=fire_at, now=now,
            )
        )
    return jobs


async def complete_form(
    db: AsyncSession,
    session_id: str,
    form_data: Optional[dict] = None,
    name: Optional[str] = None,
    lead_id: Optional[str] = None,
    now: Optional[datetime] = None,
    calendar: Optional[BusinessCalendar] = None,
) -> FormCompletion:
    """
    Form submitted for `session_id`.

    The completion is decided under the session row lock taken by
    store.mark_completed(); only the caller that flips the status schedules
    anything. Repeat or concurrent submissions return changed=False and
    write no jobs. The CRM upsert is left to sync_crm_lead(), after commit.

    Raises:
        NotFoundError: unknown session.
        InvalidTransitionError: session expired.
        TemplateVariablesError: summary variables invalid (nothing is written).
    """
    now = now or utcnow()
    calendar = calendar or get_calendar()
    form_data = form_data or {}

    summary = render(MessageType.form_summary, summary_variables(form_data, name, lead_id))
    link = render(MessageType.appointment_link, {"appointment_url": settings.appointment_url})

    session, changed = await store.mark_completed(db, session_id, payload=form_data, now=now)
    if not changed:
        return FormCompletion(session=session, changed=False)

    cancelled = await queue.cancel_by_filter(
        db, session_id, "*",
        message_types=[t.value for t in types_in_funnel(Funnel.form)],
        reason="form_completed",
    )
    jobs = [
        await queue.enqueue(db, session_id, session.chat_id, summary, fire_at=now, now=now),
        await queue.enqueue(db, session_id, session.chat_id, link, fire_at=now + FOLLOW_ON_GAP, now=now),
    ]
    jobs += await schedule_appointment_chain(db, session, now, calendar, now=now)

    logger.info(
        "Form completed session_id=%s form_jobs_cancelled=%d jobs_scheduled=%d",
        session_id, cancelled, len(jobs),
    )
    return FormCompletion(
        session=session,
        changed=changed,
        jobs=jobs,
        form_jobs_cancelled=cancelled,
    )


async def sync_crm_lead(
    db: AsyncSession,
    session: FunnelSession,
    form_data: Optional[dict] = None,
    name: Optional[str] = None,
    crm: Optional[CRMClient] = None,
) -> Optional[str]:
    """
    Best-effort CRM upsert for a completed session; stores the returned lead id.

    Run it after the completion is committed so the HTTP call never holds the
    session row lock. Every CRM failure is logged and returns None.
    """
    crm = crm or CRMClient()
    if not crm.enabled:
        return None
    lead = {"name": name, "phone": session.recipient, "session_id": session.session_id, **(form_data or {})}
    try:
        lead_id = await crm.upsert_lead(lead)
    except (httpx.HTTPError, ValueError) as exc:
        logger.warning("CRM upsert failed session_id=%s: %s", session.session_id, exc)
        return None
    if lead_id:
        await store.set_crm_lead_id(db, session.session_id, lead_id)
    return lead_id


# ---------------------------------------------------------------------------
# Booking and expiry
# ---------------------------------------------------------------------------

async def record_appointment_booked(
    db: AsyncSession,
    session_id: Optional[str] = None,
    recipient: Optional[str] = None,
    now: Optional[datetime] = None,
) -> BookingResult:
    """Stamp the booking on the session (by id, else by recipient) and cancel its pending jobs."""
    if session_id is None and recipient is None:
        raise ValueError("session_id or recipient is required")
    now = now or utcnow()
    if session_id is None:
        found = await store.find_session_for_booking(db, recipient)
        if found is None:
            raise NotFoundError("session for recipient", store.normalize_recipient(recipient))
        session_id = found.session_id

    session, changed = await store.mark_appointment_scheduled(db, session_id, now=now)
    cancelled = await queue.cancel_by_filter(db, session_id, "*", reason="appointment_booked")
    return BookingResult(session=session, changed=changed, jobs_cancelled=cancelled)


async def force_expire(
    db: AsyncSession,
    session_id: Optional[str] = None,
    recipient: Optional[str] = None,
    now: Optional[datetime] = None,
) -> BookingResult:
    """Admin: expire a session (by id, else the recipient's active one) and cancel its jobs."""
    if session_id is None and recipient is None:
        raise ValueError("session_id or recipient is required")
    if session_id is None:
        active = await store.get_active_session_by_recipient(db, recipient, now)
        if active is None:
            raise NotFoundError("active session for recipient", store.normalize_recipient(recipient))
        session_id = active.session_id
    before = await store.require_session(db, session_id, now)
    session, cancelled = await store.expire_session(db, session_id, reason=queue.ADMIN_CANCEL_REASON, now=now)
    return BookingResult(
        session=session,
        changed=before.closed_at is None,
        jobs_cancelled=cancelled,
    )
