"""
Funnel HTTP routes — POST /api/bot/trigger,
                     POST /api/bot/form-completed,
                     POST /api/bot/appointment-scheduled,
                     GET  /api/bot/status,
                     GET  /api/sessions/{session_id},
                     POST /api/admin/clear-session,
                     POST /api/admin/cancel-pending,
                     POST /api/admin/cleanup-expired

Thin layer: parse, call the orchestrator / store, commit, invalidate the session cache.
Mutating routes commit before invalidating, so a concurrent snapshot read can
never re-cache the pre-commit state.
Domain errors (NotFoundError, InvalidTransitionError, TemplateVariablesError)
are turned into the standard error envelope by the handlers in main.py.
"""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from funnelbot import store
from funnelbot.cache import cache_session, get_cached_session, invalidate_session
from funnelbot.database import get_db, utcnow
from funnelbot.errors import NotFoundError
from funnelbot.scheduling import orchestrator, queue
from funnelbot.scheduling.business_calendar import get_calendar
from funnelbot.scheduling.sweep import reminder_stats
from funnelbot.webhooks.schemas import (
    CountResponse,
    FormCompletedRequest,
    FormCompletedResponse,
    SessionActionResponse,
    SessionOrPhoneRequest,
    TriggerRequest,
    TriggerResponse,
)

router = APIRouter(prefix="/api", tags=["funnel"])
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _redis(request: Request):
    """Redis client from lifespan, or None when running without it (tests, local dev)."""
    return getattr(request.app.state, "redis", None)


async def _commit_and_invalidate(db: AsyncSession, request: Request, *session_ids: str) -> None:
    await db.commit()
    client = _redis(request)
    for session_id in session_ids:
        await invalidate_session(client, session_id)


def _require_session_or_phone(body: SessionOrPhoneRequest) -> None:
    if not body.session_id and not body.phone:
        raise HTTPException(status_code=400, detail="session_id or phone is required")


# ---------------------------------------------------------------------------
# Webhooks
# ---------------------------------------------------------------------------

@router.post("/bot/trigger", response_model=TriggerResponse)
async def trigger(
    body: TriggerRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> TriggerResponse:
    """Start (or, with reset=false, resume) the funnel for a phone number."""
    result = await orchestrator.start_funnel(
        db, body.phone, chat_id=body.chat_id, reuse_active=not body.reset
    )
    await _commit_and_invalidate(db, request, result.session.session_id)
    return TriggerResponse(
        session=result.session,
        chatbot_url=result.chatbot_url,
        reused=result.reused,
        jobs=result.jobs,
    )


@router.post("/bot/form-completed", response_model=FormCompletedResponse)
async def form_completed(
    body: FormCompletedRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> FormCompletedResponse:
    """
    Form webhook. Cancels pending form reminders, completes the session and
    schedules the summary, the appointment link and the appointment reminders.

    Returns:
      200: completed (changed=true) or already completed (changed=false)
      404: unknown session
      409: session expired
    """
    result = await orchestrator.complete_form(
        db, body.session_id, form_data=body.form_data, name=body.name, lead_id=body.lead_id
    )
    await _commit_and_invalidate(db, request, body.session_id)
    if result.changed:
        result.crm_lead_id = await orchestrator.sync_crm_lead(
            db, result.session, body.form_data, body.name
        )
        if result.crm_lead_id:
            await _commit_and_invalidate(db, request, body.session_id)
    return FormCompletedResponse(
        session=result.session,
        changed=result.changed,
        form_jobs_cancelled=result.form_jobs_cancelled,
        crm_lead_id=result.crm_lead_id,
        jobs=result.jobs,
    )


@router.post("/bot/appointment-scheduled", response_model=SessionActionResponse)
async def appointment_scheduled(
    body: SessionOrPhoneRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> SessionActionResponse:
    """Booking webhook: stamp the booking and cancel every pending job of the session."""
    _require_session_or_phone(body)
    result = await orchestrator.record_appointment_booked(
        db, session_id=body.session_id, recipient=body.phone
    )
    await _commit_and_invalidate(db, request, result.session.session_id)
    return SessionActionResponse(
        session=result.session,
        changed=result.changed,
        jobs_cancelled=result.jobs_cancelled,
    )


# ---------------------------------------------------------------------------
# Status
# ---------------------------------------------------------------------------

@router.get("/bot/status")
async def bot_status(db: AsyncSession = Depends(get_db)) -> dict:
    """Sessions per status, sessions awaiting each reminder funnel, queue health."""
    now = utcnow()
    return {
        "sessions": await store.count_sessions_by_status(db),
        "reminders": await reminder_stats(db, now),
        "queue": await queue.queue_stats(db),
        "operating_hours": get_calendar().status(now),
    }


@router.get("/sessions/{session_id}")
async def get_session_snapshot(
    session_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> dict:
    """Session record plus its jobs. Served from Redis when cached."""
    client = _redis(request)
    if client is not None:
        cached = await get_cached_session(client, session_id)
        if cached is not None:
            return cached

    session = await store.get_session(db, session_id)
    if session is None:
        raise NotFoundError("session", session_id)
    jobs = await queue.list_session_jobs(db, session_id)
    snapshot = {
        "session": session.model_dump(mode="json"),
        "jobs": [j.model_dump(mode="json") for j in jobs],
    }
    if client is not None:
        await cache_session(client, session_id, snapshot)
    return snapshot


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------

@router.post("/admin/clear-session", response_model=SessionActionResponse)
async def clear_session(
    body: SessionOrPhoneRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> SessionActionResponse:
    """Force-expire a session (by id, else the phone's active session) and cancel its jobs."""
    _require_session_or_phone(body)
    result = await orchestrator.force_expire(db, session_id=body.session_id, recipient=body.phone)
    await _commit_and_invalidate(db, request, result.session.session_id)
    logger.info("Admin cleared session session_id=%s", result.session.session_id)
    return SessionActionResponse(
        session=result.session,
        changed=result.changed,
        jobs_cancelled=result.jobs_cancelled,
    )


@router.post("/admin/cancel-pending", response_model=CountResponse)
async def cancel_pending(request: Request, db: AsyncSession = Depends(get_db)) -> CountResponse:
    """Cancel every pending job. Cancelled stages are never re-enqueued by the sweep."""
    per_session = await queue.cancel_all_pending(db, reason=queue.ADMIN_CANCEL_REASON)
    await _commit_and_invalidate(db, request, *per_session)
    return CountResponse(count=sum(per_session.values()), at=utcnow())


@router.post("/admin/cleanup-expired", response_model=CountResponse)
async def cleanup_expired(request: Request, db: AsyncSession = Depends(get_db)) -> CountResponse:
    expired = await store.cleanup_expired_sessions(db)
    await _commit_and_invalidate(db, request, *expired)
    return CountResponse(count=len(expired), at=utcnow())
