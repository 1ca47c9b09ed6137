"""
test_orchestrator.py — funnel events turned into queue writes.

Reference dates (October 2026): Mon 19, Thu 22, Fri 23 (short day), Sat 24,
Sun 25, Mon 26, Tue 27, Wed 28. No holidays in that range.

External CRM calls go through httpx.MockTransport — no network.
"""
from __future__ import annotations

import json
from datetime import timedelta

import httpx
import pytest

from funnelbot import store
from funnelbot.config import settings
from funnelbot.errors import InvalidTransitionError, NotFoundError
from funnelbot.messaging.crm import CRMClient
from funnelbot.scheduling import orchestrator, queue
from funnelbot.scheduling.business_calendar import BusinessCalendar
from funnelbot.scheduling.schemas import JobStatus, SessionStatus
from funnelbot.tests.helpers import local

PHONE = "972501234567"
THURSDAY_1730 = local(2026, 10, 22, 17, 30)
FORM_DATA = {"age": "35-44", "goal": "Retirement", "salary": "", "mortgage": "Yes"}


def _crm(handler) -> CRMClient:
    return CRMClient(
        url="https://crm.test/leads",
        api_key="k",
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


async def _pending_by_type(db, session_id):
    return {
        j.message_type: j
        for j in await queue.list_session_jobs(db, session_id)
        if j.status == JobStatus.pending
    }


# ===========================================================================
# Pure helpers
# ===========================================================================

def test_appointment_chain_times_regular_week(calendar: BusinessCalendar) -> None:
    times = orchestrator.appointment_chain_times(local(2026, 10, 19, 10), calendar)
    assert times == [
        local(2026, 10, 20, 19),
        local(2026, 10, 21, 19),
        local(2026, 10, 22, 19),
        local(2026, 10, 25, 9),    # Friday evening is closed
    ]


def test_appointment_chain_shift_propagates(calendar: BusinessCalendar) -> None:
    """Stage 1 pushed off Friday to Sunday 09:00; later stages follow the shifted time."""
    times = orchestrator.appointment_chain_times(local(2026, 10, 22, 10), calendar)
    assert times == [
        local(2026, 10, 25, 9),
        local(2026, 10, 26, 19),
        local(2026, 10, 27, 19),
        local(2026, 10, 28, 19),
    ]
    assert all(a < b for a, b in zip(times, times[1:]))


def test_summary_variables_maps_form_keys() -> None:
    variables = orchestrator.summary_variables(FORM_DATA, name="Dana", lead_id="L-1")
    assert variables["name"] == "Dana"
    assert variables["age_group"] == "35-44"
    assert variables["financial_goal"] == "Retirement"
    assert variables["mortgage"] == "Yes"
    assert "monthly_salary" not in variables
    assert variables["appointment_url"] == settings.appointment_url


# ===========================================================================
# start_funnel
# ===========================================================================

@pytest.mark.asyncio
async def test_start_funnel_schedules_four_messages(db, calendar) -> None:
    started = await orchestrator.start_funnel(db, "+972-50-123-4567", now=THURSDAY_1730, calendar=calendar)

    assert started.session.status == SessionStatus.active
    assert started.session.session_id in started.chatbot_url
    jobs = {j.message_type: j for j in started.jobs}
    assert list(jobs) == ["introduction", "chatbot_link", "form_reminder_19pm", "video_testimonial"]
    assert jobs["introduction"].fire_at == THURSDAY_1730
    assert jobs["chatbot_link"].fire_at == THURSDAY_1730 + timedelta(seconds=2)
    assert jobs["form_reminder_19pm"].fire_at == local(2026, 10, 22, 19)
    assert jobs["video_testimonial"].fire_at == local(2026, 10, 22, 20)
    assert jobs["video_testimonial"].media_url == settings.testimonial_video_url
    assert started.chatbot_url in jobs["chatbot_link"].message_content
    assert all(j.recipient == "972501234567@c.us" for j in started.jobs)


@pytest.mark.asyncio
async def test_start_funnel_late_thursday_rolls_to_sunday(db, calendar) -> None:
    started = await orchestrator.start_funnel(db, PHONE, now=local(2026, 10, 22, 18, 30), calendar=calendar)
    jobs = {j.message_type: j for j in started.jobs}
    assert jobs["form_reminder_19pm"].fire_at == local(2026, 10, 25, 9)
    assert jobs["video_testimonial"].fire_at == local(2026, 10, 25, 10)


@pytest.mark.asyncio
async def test_retrigger_supersedes_previous_session(db, calendar) -> None:
    first = await orchestrator.start_funnel(db, PHONE, now=THURSDAY_1730, calendar=calendar)
    second = await orchestrator.start_funnel(
        db, PHONE, now=THURSDAY_1730 + timedelta(minutes=10), calendar=calendar
    )

    assert second.session.session_id != first.session.session_id
    assert await _pending_by_type(db, first.session.session_id) == {}
    assert len(await _pending_by_type(db, second.session.session_id)) == 4


@pytest.mark.asyncio
async def test_trigger_reusing_active_session_resends_link(db, calendar) -> None:
    first = await orchestrator.start_funnel(db, PHONE, now=THURSDAY_1730, calendar=calendar)
    again = await orchestrator.start_funnel(
        db, PHONE, now=THURSDAY_1730 + timedelta(minutes=10), calendar=calendar, reuse_active=True
    )
    assert again.reused is True
    assert again.session.session_id == first.session.session_id
    assert [j.message_type for j in again.jobs] == ["active_session_reminder"]
    assert first.chatbot_url in again.jobs[0].message_content


# ===========================================================================
# complete_form
# ===========================================================================

@pytest.mark.asyncio
async def test_complete_form_swaps_form_jobs_for_appointment_chain(db, calendar) -> None:
    started = await orchestrator.start_funnel(db, PHONE, now=local(2026, 10, 22, 9, 0), calendar=calendar)
    sid = started.session.session_id
    done_at = local(2026, 10, 22, 10, 0)

    result = await orchestrator.complete_form(
        db, sid, FORM_DATA, name="Dana", now=done_at, calendar=calendar
    )

    assert result.changed is True
    assert result.session.status == SessionStatus.completed
    assert result.form_jobs_cancelled == 4
    pending = await _pending_by_type(db, sid)
    assert set(pending) == {
        "form_summary", "appointment_link",
        "appointment_reminder_1", "appointment_reminder_2",
        "appointment_reminder_3", "appointment_reminder_4",
    }
    assert pending["form_summary"].fire_at == done_at
    assert "Dana" in pending["form_summary"].message_content
    assert pending["appointment_link"].fire_at == done_at + timedelta(seconds=2)
    assert pending["appointment_reminder_1"].fire_at == local(2026, 10, 25, 9)
    assert pending["appointment_reminder_4"].fire_at == local(2026, 10, 28, 19)


@pytest.mark.asyncio
async def test_complete_form_twice_schedules_nothing_new(db, calendar) -> None:
    started = await orchestrator.start_funnel(db, PHONE, now=local(2026, 10, 19, 9), calendar=calendar)
    sid = started.session.session_id
    await orchestrator.complete_form(db, sid, FORM_DATA, now=local(2026, 10, 19, 10), calendar=calendar)
    before = len(await queue.list_session_jobs(db, sid))

    again = await orchestrator.complete_form(db, sid, FORM_DATA, now=local(2026, 10, 19, 11), calendar=calendar)
    assert again.changed is False
    assert again.jobs == []
    assert len(await queue.list_session_jobs(db, sid)) == before


@pytest.mark.asyncio
async def test_complete_form_on_expired_session(db, calendar) -> None:
    started = await orchestrator.start_funnel(db, PHONE, now=local(2026, 10, 19, 9), calendar=calendar)
    with pytest.raises(InvalidTransitionError):
        await orchestrator.complete_form(
            db, started.session.session_id, FORM_DATA,
            now=local(2026, 10, 20, 10), calendar=calendar,
        )


@pytest.mark.asyncio
async def test_complete_form_unknown_session(db, calendar) -> None:
    with pytest.raises(NotFoundError):
        await orchestrator.complete_form(db, "session_missing", {}, calendar=calendar)


@pytest.mark.asyncio
async def test_complete_form_after_concurrent_completion_schedules_nothing(db, calendar) -> None:
    started = await orchestrator.start_funnel(db, PHONE, now=local(2026, 10, 19, 9), calendar=calendar)
    sid = started.session.session_id
    # Another request completed the session first
    await store.mark_completed(db, sid, FORM_DATA, now=local(2026, 10, 19, 10))

    result = await orchestrator.complete_form(db, sid, FORM_DATA, now=local(2026, 10, 19, 10), calendar=calendar)

    assert result.changed is False
    assert result.jobs == []
    assert result.form_jobs_cancelled == 0
    types = [j.message_type for j in await queue.list_session_jobs(db, sid)]
    assert "form_summary" not in types
    assert "appointment_reminder_1" not in types


# ===========================================================================
# CRM lead sync
# ===========================================================================

@pytest.mark.asyncio
async def test_crm_lead_id_stored_on_success(db, calendar) -> None:
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"id": 4242})

    started = await orchestrator.start_funnel(db, PHONE, now=local(2026, 10, 19, 9), calendar=calendar)
    sid = started.session.session_id
    result = await orchestrator.complete_form(
        db, sid, FORM_DATA, name="Dana", now=local(2026, 10, 19, 10), calendar=calendar
    )
    lead_id = await orchestrator.sync_crm_lead(db, result.session, FORM_DATA, "Dana", crm=_crm(handler))

    assert lead_id == "4242"
    assert seen[0].headers["Authorization"] == "k"
    assert json.loads(seen[0].content)["session_id"] == sid
    stored = await store.get_session(db, sid, now=local(2026, 10, 19, 10))
    assert stored.payload["crm_lead_id"] == "4242"
    assert stored.payload["age"] == "35-44"


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(503, text="down"),
        httpx.Response(200, json=[{"id": 1}]),
        httpx.Response(200, text="<html>"),
    ],
)
@pytest.mark.asyncio
async def test_crm_failure_is_not_fatal(db, calendar, response) -> None:
    started = await orchestrator.start_funnel(db, PHONE, now=local(2026, 10, 19, 9), calendar=calendar)
    result = await orchestrator.complete_form(
        db, started.session.session_id, FORM_DATA, now=local(2026, 10, 19, 10), calendar=calendar,
    )
    lead_id = await orchestrator.sync_crm_lead(
        db, result.session, FORM_DATA, crm=_crm(lambda request: response)
    )

    assert lead_id is None
    assert result.changed is True
    assert len(result.jobs) == 6
    stored = await store.get_session(db, started.session.session_id, now=local(2026, 10, 19, 10))
    assert "crm_lead_id" not in stored.payload


@pytest.mark.asyncio
async def test_crm_disabled_is_a_no_op(db, calendar) -> None:
    started = await orchestrator.start_funnel(db, PHONE, now=local(2026, 10, 19, 9), calendar=calendar)
    assert await orchestrator.sync_crm_lead(db, started.session, FORM_DATA, crm=CRMClient(url="")) is None


# ===========================================================================
# Booking and admin expiry
# ===========================================================================

@pytest.mark.asyncio
async def test_booking_by_recipient_cancels_pending(db, calendar) -> None:
    started = await orchestrator.start_funnel(db, PHONE, now=local(2026, 10, 19, 9), calendar=calendar)
    sid = started.session.session_id
    await orchestrator.complete_form(db, sid, FORM_DATA, now=local(2026, 10, 19, 10), calendar=calendar)

    booked = await orchestrator.record_appointment_booked(db, recipient="+972 50 123 4567", now=local(2026, 10, 19, 12))
    assert booked.changed is True
    assert booked.session.appointment_scheduled_at == local(2026, 10, 19, 12)
    assert booked.jobs_cancelled == 6
    assert await _pending_by_type(db, sid) == {}


@pytest.mark.asyncio
async def test_booking_requires_a_known_session(db) -> None:
    with pytest.raises(ValueError):
        await orchestrator.record_appointment_booked(db)
    with pytest.raises(NotFoundError):
        await orchestrator.record_appointment_booked(db, recipient="972509999999")


@pytest.mark.asyncio
async def test_force_expire_by_recipient(db, calendar) -> None:
    started = await orchestrator.start_funnel(db, PHONE, now=local(2026, 10, 19, 9), calendar=calendar)
    result = await orchestrator.force_expire(db, recipient=PHONE, now=local(2026, 10, 19, 9, 5))
    assert result.changed is True
    assert result.session.status == SessionStatus.expired
    assert result.jobs_cancelled == 4
    assert await _pending_by_type(db, started.session.session_id) == {}
