"""
business_calendar.py — "is instant T a valid sending time" for one fixed region.

Pure functions over a BusinessCalendar value:
  - is_sendable(at, window)            business day, not a holiday, hour inside the day's hours
  - is_within_window(at, start, end)   same, with a per-rule hour window
  - next_sendable_instant(from_, ...)  roll forward to the next valid window start
  - one_time_reminder_times(trigger)   the 19:00 reminder and the +1h follow-up
  - next_evening_slot(after)           next day 19:00, re-validated (appointment chain)

Hour windows are [start, end): an instant at hour == end is outside.

Per-rule windows replace the weekly hours on full business days. On short days
(Friday) the rule window is intersected with the short day's hours, so nothing
is ever sent on Friday after 15:00. Saturdays and holidays are always blocked.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from functools import lru_cache
from typing import FrozenSet, Mapping, Optional, Tuple
from zoneinfo import ZoneInfo

from funnelbot.config import Settings, settings
from funnelbot.errors import CalendarViolation

logger = logging.getLogger(__name__)

Window = Tuple[int, int]

# Python weekday numbers (Monday == 0)
MONDAY, TUESDAY, WEDNESDAY, THURSDAY, FRIDAY, SATURDAY, SUNDAY = range(7)

ONE_TIME_CUTOFF_HOUR = 18     # trigger at/after 18:00 → reminder moves to the next day
ONE_TIME_REMINDER_HOUR = 19
FOLLOW_UP_OFFSET = timedelta(hours=1)


@dataclass(frozen=True)
class BusinessCalendar:
    """Weekly hours table plus holiday list, evaluated in `tz` local time."""

    tz: ZoneInfo
    weekly_hours: Mapping[int, Window]
    short_days: FrozenSet[int] = frozenset()
    holidays: FrozenSet[date] = frozenset()
    evening_window: Optional[Window] = None
    max_roll_days: int = 14

    @classmethod
    def from_settings(cls, s: Settings = settings) -> "BusinessCalendar":
        start, end = s.business_start_hour, s.business_end_hour
        weekly = {day: (start, end) for day in (SUNDAY, MONDAY, TUESDAY, WEDNESDAY, THURSDAY)}
        weekly[FRIDAY] = (start, s.short_day_end_hour)
        return cls(
            tz=ZoneInfo(s.region_timezone),
            weekly_hours=weekly,
            short_days=frozenset({FRIDAY}),
            holidays=s.holiday_dates,
            evening_window=(start, s.evening_window_end_hour),
            max_roll_days=s.calendar_max_roll_days,
        )

    # ------------------------------------------------------------------
    # Local-time helpers
    # ------------------------------------------------------------------

    def to_local(self, at: datetime) -> datetime:
        if at.tzinfo is None:
            raise ValueError("Calendar requires timezone-aware datetimes")
        return at.astimezone(self.tz)

    def at_hour(self, day: date, hour: int) -> datetime:
        return datetime.combine(day, time(hour), tzinfo=self.tz)

    def is_blocked_day(self, day: date) -> bool:
        return day in self.holidays or day.weekday() not in self.weekly_hours

    def hours_for(self, day: date, window: Optional[Window] = None) -> Optional[Window]:
        """Effective [start, end) hours for a local day, or None when blocked."""
        if self.is_blocked_day(day):
            return None
        base = self.weekly_hours[day.weekday()]
        if window is None:
            return base
        if day.weekday() in self.short_days:
            start, end = max(base[0], window[0]), min(base[1], window[1])
            return (start, end) if start < end else None
        return window

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def is_sendable(self, at: datetime, window: Optional[Window] = None) -> bool:
        local = self.to_local(at)
        hours = self.hours_for(local.date(), window)
        if hours is None:
            return False
        start, end = hours
        return start <= local.hour < end

    def is_within_window(self, at: datetime, start_hour: int, end_hour: int) -> bool:
        return self.is_sendable(at, (start_hour, end_hour))

    def next_sendable_instant(self, from_: datetime, window: Optional[Window] = None) -> datetime:
        """
        Earliest instant >= from_ that is sendable.

        Returns from_ unchanged (in local time) if it is already sendable,
        otherwise the start of the next valid window. Rolls over blocked days
        one at a time, at most max_roll_days times.
        """
        candidate = self.to_local(from_)
        for _ in range(self.max_roll_days + 1):
            hours = self.hours_for(candidate.date(), window)
            if hours is not None:
                start, end = hours
                if candidate.hour < start:
                    return self.at_hour(candidate.date(), start)
                if candidate.hour < end:
                    return candidate
            candidate = self.at_hour(candidate.date() + timedelta(days=1), 0)
        raise CalendarViolation(
            f"No sendable instant within {self.max_roll_days} days of {from_.isoformat()}"
        )

    def one_time_reminder_times(self, trigger_at: datetime) -> Tuple[datetime, datetime]:
        """
        Fire times for the one-time 19:00 reminder and its +1h follow-up.

        Trigger before 18:00 → 19:00 the same day; at/after 18:00 → 19:00 the
        next calendar day. Either candidate is rolled forward if blocked.
        """
        local = self.to_local(trigger_at)
        day = local.date()
        if local.hour >= ONE_TIME_CUTOFF_HOUR:
            day += timedelta(days=1)
        first = self.next_sendable_instant(
            self.at_hour(day, ONE_TIME_REMINDER_HOUR), self.evening_window
        )
        second = first + FOLLOW_UP_OFFSET
        if not self.is_sendable(second, self.evening_window):
            second = self.next_sendable_instant(second, self.evening_window)
        return first, second

    def next_evening_slot(self, after: datetime) -> datetime:
        """19:00 on the day after `after`, pushed forward past blocked days."""
        local = self.to_local(after)
        candidate = self.at_hour(local.date() + timedelta(days=1), ONE_TIME_REMINDER_HOUR)
        return self.next_sendable_instant(candidate, self.evening_window)

    def status(self, at: datetime) -> dict:
        """Operating-hours summary for status endpoints."""
        local = self.to_local(at)
        if local.date() in self.holidays:
            reason = "holiday"
        elif local.weekday() not in self.weekly_hours:
            reason = "closed_day"
        elif not self.is_sendable(local):
            reason = "outside_hours"
        else:
            reason = None
        return {
            "is_open": reason is None,
            "reason": reason,
            "local_time": local.isoformat(),
            "timezone": str(self.tz),
            "next_open": None if reason is None else self.next_sendable_instant(local).isoformat(),
        }


@lru_cache(maxsize=1)
def get_calendar() -> BusinessCalendar:
    """Calendar built from the settings singleton."""
    cal = BusinessCalendar.from_settings()
    logger.info(
        "Business calendar loaded tz=%s holidays=%d", cal.tz, len(cal.holidays)
    )
    return cal


def is_sendable_now(now: Optional[datetime] = None, calendar: Optional[BusinessCalendar] = None) -> bool:
    cal = calendar or get_calendar()
    return cal.is_sendable(now or datetime.now(timezone.utc))
