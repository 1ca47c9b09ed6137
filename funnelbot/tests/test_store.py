"""
test_store.py — Session Store state machine on an in-memory SQLite database.

Groups:
  1. Creation and the one-active-session-per-recipient rule
  2. Lazy TTL expiry
  3. Transitions: complete, book, admin expire
  4. Reminder bookkeeping and funnel scans
"""
from __future__ import annotations

from datetime import timedelta

import pytest

from funnelbot import store
from funnelbot.errors import InvalidTransitionError, NotFoundError
from funnelbot.messaging.templates import MessageType, render
from funnelbot.scheduling import queue
from funnelbot.scheduling.schemas import Funnel, JobStatus, SessionStatus
from funnelbot.tests.helpers import local

NOW = local(2026, 10, 19, 10, 0)   # Monday
PHONE = "+972 50-123-4567"
RECIPIENT = "972501234567"


async def _pending_intro(db, session):
    return await queue.enqueue(
        db, session.session_id, session.chat_id, render(MessageType.introduction),
        fire_at=NOW + timedelta(hours=1), now=NOW,
    )


# ===========================================================================
# TEST GROUP 1: Creation
# ===========================================================================

def test_normalize_recipient() -> None:
    assert store.normalize_recipient(PHONE) == RECIPIENT
    assert store.default_chat_id(RECIPIENT) == "972501234567@c.us"
    with pytest.raises(ValueError):
        store.normalize_recipient("+-- ")


@pytest.mark.asyncio
async def test_create_session_defaults(db) -> None:
    session = await store.create_session(db, PHONE, now=NOW)
    assert session.status == SessionStatus.active
    assert session.recipient == RECIPIENT
    assert session.chat_id == "972501234567@c.us"
    assert session.form_sent_at == NOW
    assert session.expires_at == NOW + timedelta(hours=24)
    assert session.completed_at is None
    assert session.reminders_sent.form == [] and session.reminders_sent.appointment == []
    assert session.session_id.startswith("session_")


@pytest.mark.asyncio
async def test_new_trigger_supersedes_active_session(db) -> None:
    first = await store.create_session(db, PHONE, now=NOW)
    job = await _pending_intro(db, first)

    second = await store.create_session(db, RECIPIENT, now=NOW + timedelta(minutes=5))

    assert second.session_id != first.session_id
    old = await store.get_session(db, first.session_id, now=NOW + timedelta(minutes=5))
    assert old.status == SessionStatus.expired
    assert (await queue.get_job(db, job.job_id)).status == JobStatus.cancelled
    active = await store.get_active_session_by_recipient(db, PHONE, now=NOW + timedelta(minutes=5))
    assert active.session_id == second.session_id
    counts = await store.count_sessions_by_status(db)
    assert counts["active"] == 1 and counts["expired"] == 1


# ===========================================================================
# TEST GROUP 2: Lazy TTL expiry
# ===========================================================================

@pytest.mark.asyncio
async def test_read_after_ttl_expires_and_cancels_jobs(db) -> None:
    session = await store.create_session(db, PHONE, now=NOW)
    job = await _pending_intro(db, session)

    still_active = await store.get_session(db, session.session_id, now=NOW + timedelta(hours=23, minutes=59))
    assert still_active.status == SessionStatus.active

    lapsed = await store.get_session(db, session.session_id, now=NOW + timedelta(hours=24))
    assert lapsed.status == SessionStatus.expired
    assert (await queue.get_job(db, job.job_id)).status == JobStatus.cancelled


@pytest.mark.asyncio
async def test_active_lookup_hides_lapsed_session(db) -> None:
    await store.create_session(db, PHONE, now=NOW)
    assert await store.get_active_session_by_recipient(db, PHONE, now=NOW + timedelta(days=2)) is None


@pytest.mark.asyncio
async def test_cleanup_expired_sessions(db) -> None:
    lapsed = await store.create_session(db, "972500000001", now=NOW)
    await store.create_session(db, "972500000002", now=NOW + timedelta(hours=12))

    assert await store.cleanup_expired_sessions(db, now=NOW + timedelta(hours=25)) == [lapsed.session_id]
    counts = await store.count_sessions_by_status(db)
    assert counts == {"active": 1, "completed": 0, "expired": 1}


@pytest.mark.asyncio
async def test_unknown_session(db) -> None:
    assert await store.get_session(db, "session_missing", now=NOW) is None
    with pytest.raises(NotFoundError):
        await store.require_session(db, "session_missing", now=NOW)


# ===========================================================================
# TEST GROUP 3: Transitions
# ===========================================================================

@pytest.mark.asyncio
async def test_mark_completed_is_idempotent(db) -> None:
    session = await store.create_session(db, PHONE, now=NOW)
    done_at = NOW + timedelta(hours=2)

    completed, changed = await store.mark_completed(db, session.session_id, {"age": "35-44"}, now=done_at)
    assert changed is True
    assert completed.status == SessionStatus.completed
    assert completed.completed_at == done_at
    assert completed.form_completed_at == done_at
    assert completed.appointment_sent_at == done_at
    assert completed.payload == {"age": "35-44"}

    again, changed = await store.mark_completed(db, session.session_id, {"age": "other"}, now=done_at + timedelta(hours=1))
    assert changed is False
    assert again.completed_at == done_at
    assert again.payload == {"age": "35-44"}


@pytest.mark.asyncio
async def test_completed_session_does_not_expire(db) -> None:
    session = await store.create_session(db, PHONE, now=NOW)
    await store.mark_completed(db, session.session_id, {}, now=NOW + timedelta(hours=1))
    later = await store.get_session(db, session.session_id, now=NOW + timedelta(days=5))
    assert later.status == SessionStatus.completed


@pytest.mark.asyncio
async def test_mark_completed_on_expired_session_rejected(db) -> None:
    session = await store.create_session(db, PHONE, now=NOW)
    with pytest.raises(InvalidTransitionError) as exc_info:
        await store.mark_completed(db, session.session_id, {}, now=NOW + timedelta(hours=30))
    assert exc_info.value.current == "expired"


@pytest.mark.asyncio
async def test_mark_completed_unknown_session(db) -> None:
    with pytest.raises(NotFoundError):
        await store.mark_completed(db, "session_missing", {}, now=NOW)


@pytest.mark.asyncio
async def test_mark_appointment_scheduled(db) -> None:
    session = await store.create_session(db, PHONE, now=NOW)
    await store.mark_completed(db, session.session_id, {}, now=NOW)
    assert (await store.find_session_for_booking(db, PHONE)).session_id == session.session_id

    booked, changed = await store.mark_appointment_scheduled(db, session.session_id, now=NOW + timedelta(hours=3))
    assert changed is True
    assert booked.appointment_scheduled_at == NOW + timedelta(hours=3)
    _, changed = await store.mark_appointment_scheduled(db, session.session_id, now=NOW + timedelta(hours=4))
    assert changed is False


@pytest.mark.asyncio
async def test_find_session_for_booking_requires_appointment_link(db) -> None:
    await store.create_session(db, PHONE, now=NOW)
    assert await store.find_session_for_booking(db, PHONE) is None


@pytest.mark.asyncio
async def test_expire_session_on_completed_keeps_status(db) -> None:
    session = await store.create_session(db, PHONE, now=NOW)
    await store.mark_completed(db, session.session_id, {}, now=NOW)
    job = await _pending_intro(db, session)

    expired, cancelled = await store.expire_session(db, session.session_id, now=NOW)
    assert expired.status == SessionStatus.completed
    assert expired.closed_at == NOW
    assert cancelled == 1
    assert (await queue.get_job(db, job.job_id)).status == JobStatus.cancelled


@pytest.mark.asyncio
async def test_closed_sessions_leave_both_funnels(db) -> None:
    waiting_form = await store.create_session(db, "972500000001", now=NOW)
    waiting_booking = await store.create_session(db, "972500000002", now=NOW)
    await store.mark_completed(db, waiting_booking.session_id, {}, now=NOW)

    await store.expire_session(db, waiting_form.session_id, now=NOW)
    await store.expire_session(db, waiting_booking.session_id, now=NOW)

    later = NOW + timedelta(hours=2)
    assert await store.list_awaiting(db, Funnel.form, later) == []
    assert await store.list_awaiting(db, Funnel.appointment, later) == []
    assert await store.count_awaiting(db, Funnel.appointment, later) == 0


# ===========================================================================
# TEST GROUP 4: Reminder bookkeeping and scans
# ===========================================================================

@pytest.mark.asyncio
async def test_record_reminder_sent_is_monotonic(db) -> None:
    session = await store.create_session(db, PHONE, now=NOW)
    sid = session.session_id

    assert await store.record_reminder_sent(db, sid, Funnel.form, 1) is True
    assert await store.record_reminder_sent(db, sid, Funnel.form, 1) is False
    assert await store.record_reminder_sent(db, sid, Funnel.form, 3) is True
    assert await store.record_reminder_sent(db, sid, Funnel.form, 2) is False
    assert await store.record_reminder_sent(db, sid, Funnel.appointment, 1) is True

    reloaded = await store.get_session(db, sid, now=NOW)
    assert reloaded.reminders_sent.form == [1, 3]
    assert reloaded.reminders_sent.appointment == [1]


@pytest.mark.asyncio
async def test_list_awaiting_by_funnel(db) -> None:
    waiting_form = await store.create_session(db, "972500000001", now=NOW)
    waiting_booking = await store.create_session(db, "972500000002", now=NOW)
    booked = await store.create_session(db, "972500000003", now=NOW)
    await store.mark_completed(db, waiting_booking.session_id, {}, now=NOW)
    await store.mark_completed(db, booked.session_id, {}, now=NOW)
    await store.mark_appointment_scheduled(db, booked.session_id, now=NOW)

    later = NOW + timedelta(hours=2)
    form_ids = [s.session_id for s in await store.list_awaiting(db, Funnel.form, later)]
    appt_ids = [s.session_id for s in await store.list_awaiting(db, Funnel.appointment, later)]
    assert form_ids == [waiting_form.session_id]
    assert appt_ids == [waiting_booking.session_id]
    assert await store.count_awaiting(db, Funnel.appointment, later) == 1

    # Past the appointment horizon nothing is awaited any more
    assert await store.count_awaiting(db, Funnel.appointment, NOW + timedelta(days=8)) == 0
