"""
policy.py — Reminder Policy: which funnel stage (if any) may be sent now.

next_stage() is pure: every input, `now` included, is a parameter, so the
decision can be tested against literal timestamps.

Rule tables:
  form funnel         stage 1 @ 1h, stage 2 @ 24h in 09–12, stage 3 @ 48h in 18–20
  appointment funnel  stage 1 @ 1h, stage 2 @ 24h, stage 3 @ 48h, stage 4 @ 72h in 09–15
Test mode shrinks the delays to 1–4 minutes and drops the windows.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Sequence

from funnelbot.scheduling.business_calendar import BusinessCalendar
from funnelbot.scheduling.schemas import Funnel, FunnelRule

FORM_RULES: List[FunnelRule] = [
    FunnelRule(stage=1, delay_minutes=60),
    FunnelRule(stage=2, delay_minutes=1440, window=(9, 12)),
    FunnelRule(stage=3, delay_minutes=2880, window=(18, 20)),
]

APPOINTMENT_RULES: List[FunnelRule] = [
    FunnelRule(stage=1, delay_minutes=60),
    FunnelRule(stage=2, delay_minutes=1440),
    FunnelRule(stage=3, delay_minutes=2880),
    FunnelRule(stage=4, delay_minutes=4320, window=(9, 15)),
]

TEST_FORM_RULES: List[FunnelRule] = [
    FunnelRule(stage=1, delay_minutes=1),
    FunnelRule(stage=2, delay_minutes=2),
    FunnelRule(stage=3, delay_minutes=3),
]

TEST_APPOINTMENT_RULES: List[FunnelRule] = [
    FunnelRule(stage=1, delay_minutes=1),
    FunnelRule(stage=2, delay_minutes=2),
    FunnelRule(stage=3, delay_minutes=3),
    FunnelRule(stage=4, delay_minutes=4),
]


def rules_for(funnel: Funnel, test_mode: bool = False) -> List[FunnelRule]:
    if funnel == Funnel.form:
        return TEST_FORM_RULES if test_mode else FORM_RULES
    return TEST_APPOINTMENT_RULES if test_mode else APPOINTMENT_RULES


def next_stage(
    stage_zero: datetime,
    already_sent: Iterable[int],
    rules: Sequence[FunnelRule],
    now: datetime,
    calendar: BusinessCalendar,
) -> Optional[int]:
    """
    Return the stage eligible to send at `now`, or None.

    Only the lowest unsent stage above the highest sent one is a candidate, so
    stages go out in order. The candidate is returned once its delay from
    stage_zero has elapsed and, if it has a window, `now` falls inside it.
    A candidate held back by its window stays the candidate for the next sweep.
    """
    sent = set(already_sent)
    floor = max(sent, default=0)
    for rule in sorted(rules, key=lambda r: r.stage):
        if rule.stage in sent or rule.stage <= floor:
            continue
        if now - stage_zero < timedelta(minutes=rule.delay_minutes):
            return None
        if rule.window is not None and not calendar.is_within_window(now, *rule.window):
            return None
        return rule.stage
    return None


def max_stage(rules: Sequence[FunnelRule]) -> int:
    return max((r.stage for r in rules), default=0)
