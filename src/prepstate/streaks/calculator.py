"""Streak calculation over a calendar of qualifying days.

Days are taken in one pinned reference timezone. A day qualifies when the
user logged at least ``min_daily_attempts`` attempts on it; that filtering
happens in ``activity_calendar`` and ``qualifying_days``, so ``compute_streak``
only sees an already-filtered set of dates and an explicit ``today``.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, tzinfo
from zoneinfo import ZoneInfo

from prepstate.events.schemas import AttemptEvent

RECENT_DAYS_WINDOW = 7


def reference_zone(name: str) -> ZoneInfo:
    """Resolve the configured reference timezone name."""
    return ZoneInfo(name)


def local_day(dt: datetime, tz: tzinfo) -> date:
    """Calendar day of ``dt`` in the reference timezone."""
    return dt.astimezone(tz).date()


def activity_calendar(events: Iterable[AttemptEvent], tz: tzinfo) -> dict[date, int]:
    """Attempts per reference-timezone day. Repeated event keys count once."""
    seen: set[str] = set()
    counts: Counter[date] = Counter()
    for event in events:
        if event.event_key in seen:
            continue
        seen.add(event.event_key)
        counts[local_day(event.occurred_at, tz)] += 1
    return dict(counts)


def qualifying_days(counts: Mapping[date, int], min_attempts: int) -> frozenset[date]:
    return frozenset(day for day, n in counts.items() if n >= min_attempts)


@dataclass(frozen=True)
class DayActivity:
    day: date
    attempts: int
    qualifies: bool


@dataclass(frozen=True)
class StreakState:
    current_streak: int = 0
    longest_streak: int = 0
    activity_dates: frozenset[date] = field(default_factory=frozenset)
    questions_today: int = 0
    recent_days: tuple[DayActivity, ...] = ()


def current_run(activity_dates: frozenset[date] | set[date], today: date) -> int:
    """Consecutive qualifying days ending today, or ending yesterday if today
    has not qualified yet.
    """
    day = today if today in activity_dates else today - timedelta(days=1)
    run = 0
    while day in activity_dates:
        run += 1
        day -= timedelta(days=1)
    return run


def longest_run(activity_dates: Iterable[date]) -> int:
    best = 0
    run = 0
    previous: date | None = None
    for day in sorted(set(activity_dates)):
        if previous is not None and day - previous == timedelta(days=1):
            run += 1
        else:
            run = 1
        best = max(best, run)
        previous = day
    return best


def compute_streak(
    activity_dates: Iterable[date],
    today: date,
    longest_record: int = 0,
) -> StreakState:
    """Current and longest streak for a set of qualifying days.

    ``longest_record`` is the previously persisted best; the returned
    longest streak never drops below it.
    """
    dates = frozenset(activity_dates)
    current = current_run(dates, today)
    longest = max(longest_run(dates), current, longest_record)
    return StreakState(current_streak=current, longest_streak=longest, activity_dates=dates)


def recent_days(
    counts: Mapping[date, int],
    today: date,
    min_attempts: int,
    window: int = RECENT_DAYS_WINDOW,
) -> tuple[DayActivity, ...]:
    """Per-day attempts for the last ``window`` days, oldest first."""
    days = []
    for offset in range(window - 1, -1, -1):
        day = today - timedelta(days=offset)
        n = counts.get(day, 0)
        days.append(DayActivity(day=day, attempts=n, qualifies=n >= min_attempts))
    return tuple(days)


def streak_for_events(
    events: Iterable[AttemptEvent],
    now: datetime,
    tz: tzinfo,
    min_attempts: int,
    longest_record: int = 0,
) -> StreakState:
    """Full streak read for a user's events at ``now``."""
    counts = activity_calendar(events, tz)
    today = local_day(now, tz)
    state = compute_streak(qualifying_days(counts, min_attempts), today, longest_record)
    return StreakState(
        current_streak=state.current_streak,
        longest_streak=state.longest_streak,
        activity_dates=state.activity_dates,
        questions_today=counts.get(today, 0),
        recent_days=recent_days(counts, today, min_attempts),
    )
