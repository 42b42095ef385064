"""
Streak tracking. Pure functions, no DB access.

Calendar days are UTC days. Naive datetimes are read as UTC.
"""
import math
from dataclasses import dataclass, replace
from datetime import date, datetime, timezone

MILESTONES: tuple[int, ...] = (7, 14, 30, 60, 100, 365)


@dataclass(frozen=True)
class StreakState:
    current_streak: int = 0
    longest_streak: int = 0
    last_active_date: datetime | None = None


@dataclass(frozen=True)
class StreakUpdate:
    state: StreakState
    changed: bool
    milestone: int | None = None

    @property
    def celebrate_milestone(self) -> bool:
        return self.milestone is not None


def utc_day(moment: datetime) -> date:
    if moment.tzinfo is None:
        return moment.date()
    return moment.astimezone(timezone.utc).date()


def days_between(earlier: datetime, later: datetime) -> int:
    """Whole calendar days from `earlier` to `later` (negative if reversed)."""
    return (utc_day(later) - utc_day(earlier)).days


def apply_activity(state: StreakState, now: datetime) -> StreakUpdate:
    """
    Returns the streak after one qualifying activity at `now`.
    Same-day repeats are no-ops; a milestone only fires on the consecutive-day path.
    """
    if state.last_active_date is None:
        new_streak = 1
        milestone = None
    else:
        diff_days = days_between(state.last_active_date, now)
        # <= 0 also absorbs a stored date in the future (clock skew)
        if diff_days <= 0:
            return StreakUpdate(state=state, changed=False)
        if diff_days == 1:
            new_streak = state.current_streak + 1
            milestone = new_streak if new_streak in MILESTONES else None
        else:
            new_streak = 1
            milestone = None

    new_state = StreakState(
        current_streak=new_streak,
        longest_streak=max(state.longest_streak, new_streak),
        last_active_date=now,
    )
    return StreakUpdate(state=new_state, changed=True, milestone=milestone)


def days_inactive(state: StreakState, now: datetime) -> int:
    if state.last_active_date is None:
        return 0
    return max(days_between(state.last_active_date, now), 0)


def is_active(state: StreakState, now: datetime) -> bool:
    """One-day grace: yesterday's streak still shows today."""
    if state.last_active_date is None:
        return False
    return days_inactive(state, now) <= 1


def displayed_state(state: StreakState, now: datetime) -> StreakState:
    """Lapsed streaks read as 0 until the next activity rewrites them."""
    if is_active(state, now):
        return state
    return replace(state, current_streak=0)


def current_milestone(streak: int) -> int:
    crossed = [m for m in MILESTONES if streak >= m]
    return crossed[-1] if crossed else 0


def next_milestone(streak: int) -> int | None:
    for m in MILESTONES:
        if m > streak:
            return m
    return None


def progress_to_next(streak: int) -> int:
    """Percent of the way from the last crossed milestone to the next one."""
    upper = next_milestone(streak)
    if upper is None:
        return 100
    lower = current_milestone(streak)
    # half-up, so 12.5 reads as 13
    return int(math.floor(100 * (streak - lower) / (upper - lower) + 0.5))


def streak_summary(state: StreakState, now: datetime) -> dict:
    active = is_active(state, now)
    shown = state.current_streak if active else 0
    return {
        "current_streak": shown,
        "longest_streak": state.longest_streak,
        "last_active_date": state.last_active_date.isoformat() if state.last_active_date else None,
        "is_active": active,
        "days_inactive": days_inactive(state, now),
        "current_milestone": current_milestone(state.current_streak),
        "next_milestone": next_milestone(state.current_streak),
        "progress_to_next": progress_to_next(state.current_streak),
    }
