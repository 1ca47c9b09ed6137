"""
test_sweep.py — periodic reminder sweep over both funnels.
"""
from __future__ import annotations

from datetime import timedelta

import pytest

from funnelbot import store
from funnelbot.config import settings
from funnelbot.scheduling import orchestrator, queue
from funnelbot.scheduling.schemas import Funnel, JobStatus
from funnelbot.scheduling.sweep import reminder_stats, run_sweep
from funnelbot.tests.helpers import local

MONDAY_0900 = local(2026, 10, 19, 9, 0)


@pytest.mark.asyncio
async def test_sweep_skipped_outside_business_hours(db, calendar) -> None:
    await store.create_session(db, "972501234567", now=local(2026, 10, 24, 9, 0))
    report = await run_sweep(db, now=local(2026, 10, 24, 11, 0), calendar=calendar)
    assert report.skipped is True
    assert report.enqueued == []


@pytest.mark.asyncio
async def test_form_stage_one_enqueued_once(db, calendar) -> None:
    session = await store.create_session(db, "972501234567", now=MONDAY_0900)

    early = await run_sweep(db, now=MONDAY_0900 + timedelta(minutes=30), calendar=calendar)
    assert early.scanned == 1 and early.enqueued == []

    report = await run_sweep(db, now=MONDAY_0900 + timedelta(hours=1), calendar=calendar)
    assert [j.message_type for j in report.enqueued] == ["form_reminder_1"]
    assert report.enqueued[0].fire_at == MONDAY_0900 + timedelta(hours=1)
    assert settings.chatbot_url(session.session_id) in report.enqueued[0].message_content

    again = await run_sweep(db, now=MONDAY_0900 + timedelta(hours=1, minutes=5), calendar=calendar)
    assert again.enqueued == []


@pytest.mark.asyncio
async def test_failed_stage_is_not_resurrected(db, calendar) -> None:
    session = await store.create_session(db, "972501234567", now=MONDAY_0900)
    report = await run_sweep(db, now=MONDAY_0900 + timedelta(hours=1), calendar=calendar)
    await queue.mark_failure(db, report.enqueued[0].job_id, "rejected", permanent=True)

    later = await run_sweep(db, now=MONDAY_0900 + timedelta(hours=3), calendar=calendar)
    assert later.enqueued == []
    jobs = await queue.list_session_jobs(db, session.session_id)
    assert [j.message_type for j in jobs] == ["form_reminder_1"]


@pytest.mark.asyncio
async def test_sweep_expires_lapsed_sessions_first(db, calendar) -> None:
    await store.create_session(db, "972501234567", now=local(2026, 10, 18, 9, 0))
    report = await run_sweep(db, now=MONDAY_0900 + timedelta(hours=1), calendar=calendar)
    assert report.sessions_expired == 1
    assert report.scanned == 0
    assert report.enqueued == []


@pytest.mark.asyncio
async def test_appointment_stage_one_for_completed_session(db, calendar) -> None:
    session = await store.create_session(db, "972501234567", now=MONDAY_0900)
    await store.mark_completed(db, session.session_id, {}, now=MONDAY_0900)

    report = await run_sweep(db, now=MONDAY_0900 + timedelta(hours=1), calendar=calendar)
    assert [j.message_type for j in report.enqueued] == ["appointment_reminder_1"]
    assert settings.appointment_url in report.enqueued[0].message_content


@pytest.mark.asyncio
async def test_sweep_leaves_scheduled_chain_alone(db, calendar) -> None:
    started = await orchestrator.start_funnel(db, "972501234567", now=MONDAY_0900, calendar=calendar)
    await orchestrator.complete_form(db, started.session.session_id, {}, now=MONDAY_0900, calendar=calendar)
    report = await run_sweep(db, now=MONDAY_0900 + timedelta(hours=2), calendar=calendar)
    assert report.scanned == 1
    assert report.enqueued == []


@pytest.mark.asyncio
async def test_booked_session_gets_no_reminders(db, calendar) -> None:
    session = await store.create_session(db, "972501234567", now=MONDAY_0900)
    await store.mark_completed(db, session.session_id, {}, now=MONDAY_0900)
    await store.mark_appointment_scheduled(db, session.session_id, now=MONDAY_0900)

    report = await run_sweep(db, now=MONDAY_0900 + timedelta(hours=2), calendar=calendar)
    assert report.scanned == 0


@pytest.mark.asyncio
async def test_force_expired_completed_session_gets_no_reminders(db, calendar) -> None:
    session = await store.create_session(db, "972501234567", now=MONDAY_0900)
    await store.mark_completed(db, session.session_id, {}, now=MONDAY_0900)

    result = await orchestrator.force_expire(db, session.session_id, now=MONDAY_0900 + timedelta(minutes=30))
    assert result.changed is True

    report = await run_sweep(db, now=MONDAY_0900 + timedelta(hours=2), calendar=calendar)
    assert report.scanned == 0
    assert report.enqueued == []


@pytest.mark.asyncio
async def test_force_expire_after_form_leaves_nothing_to_send(db, calendar) -> None:
    started = await orchestrator.start_funnel(db, "972501234567", now=MONDAY_0900, calendar=calendar)
    sid = started.session.session_id
    await orchestrator.complete_form(db, sid, {}, now=MONDAY_0900, calendar=calendar)
    await orchestrator.force_expire(db, sid, now=MONDAY_0900 + timedelta(minutes=30))

    for hours in (2, 25):
        report = await run_sweep(db, now=MONDAY_0900 + timedelta(hours=hours), calendar=calendar)
        assert report.enqueued == []
    jobs = await queue.list_session_jobs(db, sid)
    assert all(j.status != JobStatus.pending for j in jobs)


@pytest.mark.asyncio
async def test_admin_cancelled_stage_is_not_re_enqueued(db, calendar) -> None:
    session = await store.create_session(db, "972501234567", now=MONDAY_0900)
    await store.mark_completed(db, session.session_id, {}, now=MONDAY_0900)
    first = await run_sweep(db, now=MONDAY_0900 + timedelta(hours=1), calendar=calendar)
    assert [j.message_type for j in first.enqueued] == ["appointment_reminder_1"]

    cancelled = await queue.cancel_all_pending(db, reason=queue.ADMIN_CANCEL_REASON)
    assert cancelled == {session.session_id: 1}

    later = await run_sweep(db, now=MONDAY_0900 + timedelta(hours=2), calendar=calendar)
    assert later.enqueued == []


@pytest.mark.asyncio
async def test_report_lists_every_changed_session(db, calendar) -> None:
    lapsed = await store.create_session(db, "972500000001", now=local(2026, 10, 18, 9, 0))
    fresh = await store.create_session(db, "972500000002", now=MONDAY_0900)

    report = await run_sweep(db, now=MONDAY_0900 + timedelta(hours=1), calendar=calendar)
    assert report.expired_session_ids == [lapsed.session_id]
    assert [j.session_id for j in report.enqueued] == [fresh.session_id]
    assert report.changed_session_ids == [lapsed.session_id, fresh.session_id]


@pytest.mark.asyncio
async def test_test_mode_walks_stages_in_minutes(db, calendar, monkeypatch) -> None:
    monkeypatch.setattr(settings, "reminder_test_mode", True)
    session = await store.create_session(db, "972501234567", now=MONDAY_0900)
    sid = session.session_id

    first = await run_sweep(db, now=MONDAY_0900 + timedelta(minutes=1), calendar=calendar)
    assert [j.message_type for j in first.enqueued] == ["form_reminder_1"]
    await queue.mark_sent(db, first.enqueued[0].job_id, now=MONDAY_0900 + timedelta(minutes=1))
    await store.record_reminder_sent(db, sid, Funnel.form, 1)

    second = await run_sweep(db, now=MONDAY_0900 + timedelta(minutes=2), calendar=calendar)
    assert [j.message_type for j in second.enqueued] == ["form_reminder_2"]


@pytest.mark.asyncio
async def test_reminder_stats(db) -> None:
    await store.create_session(db, "972500000001", now=MONDAY_0900)
    done = await store.create_session(db, "972500000002", now=MONDAY_0900)
    await store.mark_completed(db, done.session_id, {}, now=MONDAY_0900)

    stats = await reminder_stats(db, now=MONDAY_0900 + timedelta(hours=1))
    assert stats["awaiting_form_reminders"] == 1
    assert stats["awaiting_appointment_reminders"] == 1
    assert stats["test_mode"] is False
    assert [r["stage"] for r in stats["timing"]["appointment"]] == [1, 2, 3, 4]
