from datetime import datetime, timedelta, timezone

from athena.engine.streak import (
    MILESTONES, StreakState, apply_activity, current_milestone, days_inactive,
    displayed_state, is_active, next_milestone, progress_to_next, streak_summary,
)

NOW = datetime(2026, 2, 27, 15, 30, tzinfo=timezone.utc)
YESTERDAY = NOW - timedelta(days=1)
TWO_DAYS_AGO = NOW - timedelta(days=2)


def _state(current, longest=None, last=YESTERDAY):
    return StreakState(current_streak=current, longest_streak=longest if longest is not None else current,
                       last_active_date=last)


class TestApplyActivity:
    def test_first_activity_ever_starts_streak_at_1(self):
        update = apply_activity(StreakState(), NOW)
        assert update.state.current_streak == 1
        assert update.state.longest_streak == 1
        assert update.state.last_active_date == NOW
        assert update.milestone is None

    def test_consecutive_day_increments_streak(self):
        update = apply_activity(_state(5), NOW)
        assert update.state.current_streak == 6
        assert update.state.longest_streak == 6
        assert update.changed

    def test_consecutive_day_keeps_larger_longest(self):
        update = apply_activity(_state(5, longest=40), NOW)
        assert update.state.current_streak == 6
        assert update.state.longest_streak == 40

    def test_same_day_is_a_no_op(self):
        state = _state(5, longest=9, last=NOW - timedelta(hours=3))
        update = apply_activity(state, NOW)
        assert update.state == state
        assert not update.changed
        assert update.milestone is None

    def test_broken_streak_resets_to_1(self):
        update = apply_activity(_state(10, last=TWO_DAYS_AGO), NOW)
        assert update.state.current_streak == 1
        assert update.state.longest_streak == 10
        assert update.milestone is None

    def test_last_active_is_full_timestamp_not_midnight(self):
        update = apply_activity(_state(1), NOW)
        assert update.state.last_active_date == NOW

    def test_day_boundary_is_utc_midnight(self):
        late = datetime(2026, 2, 26, 23, 59, tzinfo=timezone.utc)
        early = datetime(2026, 2, 27, 0, 1, tzinfo=timezone.utc)
        update = apply_activity(_state(3, last=late), early)
        assert update.state.current_streak == 4

    def test_offset_timestamps_are_compared_in_utc(self):
        # 01:00 at +02:00 is still the previous UTC day
        plus_two = timezone(timedelta(hours=2))
        last = datetime(2026, 2, 27, 1, 0, tzinfo=plus_two)
        update = apply_activity(_state(3, last=last), NOW)
        assert update.state.current_streak == 4

    def test_future_last_active_is_treated_as_today(self):
        state = _state(4, last=NOW + timedelta(days=2))
        update = apply_activity(state, NOW)
        assert not update.changed
        assert update.state == state


class TestMilestones:
    def test_every_milestone_fires_on_consecutive_day(self):
        for m in MILESTONES:
            update = apply_activity(_state(m - 1), NOW)
            assert update.milestone == m
            assert update.celebrate_milestone

    def test_non_milestone_does_not_fire(self):
        for n in (1, 5, 8, 29, 364, 400):
            assert apply_activity(_state(n), NOW).milestone is None

    def test_reset_never_fires(self):
        update = apply_activity(_state(6, last=TWO_DAYS_AGO), NOW)
        assert update.state.current_streak == 1
        assert update.milestone is None

    def test_same_day_repeat_does_not_fire_twice(self):
        first = apply_activity(_state(6), NOW)
        assert first.milestone == 7
        second = apply_activity(first.state, NOW + timedelta(hours=2))
        assert second.milestone is None
        assert second.state.current_streak == 7

    def test_reaching_7_after_a_reset_still_fires(self):
        day = datetime(2026, 3, 1, 9, tzinfo=timezone.utc)
        state = _state(12, last=day - timedelta(days=5))
        fired = []
        for i in range(7):
            update = apply_activity(state, day + timedelta(days=i))
            state = update.state
            fired.append(update.milestone)
        assert state.current_streak == 7
        assert fired == [None] * 6 + [7]
        assert state.longest_streak == 12


class TestScenarios:
    def test_new_user_first_activity(self):
        update = apply_activity(StreakState(), NOW)
        assert (update.state.current_streak, update.state.longest_streak) == (1, 1)

    def test_skip_a_day_resets_but_keeps_longest(self):
        day1 = datetime(2026, 5, 1, 10, tzinfo=timezone.utc)
        state = apply_activity(StreakState(), day1).state
        state = apply_activity(state, day1 + timedelta(days=1)).state
        assert (state.current_streak, state.longest_streak) == (2, 2)
        state = apply_activity(state, day1 + timedelta(days=3)).state
        assert (state.current_streak, state.longest_streak) == (1, 2)

    def test_longest_never_decreases(self):
        start = datetime(2026, 1, 1, 8, tzinfo=timezone.utc)
        gaps = [0, 1, 1, 0, 3, 1, 1, 1, 5, 1, 0, 1, 2, 1]
        state = StreakState()
        moment = start
        longest_seen = 0
        for gap in gaps:
            moment = moment + timedelta(days=gap)
            state = apply_activity(state, moment).state
            assert state.longest_streak >= longest_seen
            assert state.longest_streak >= state.current_streak
            longest_seen = state.longest_streak


class TestReadSide:
    def test_active_today_and_yesterday(self):
        assert is_active(_state(3, last=NOW), NOW)
        assert is_active(_state(3, last=YESTERDAY), NOW)

    def test_inactive_after_two_days(self):
        assert not is_active(_state(3, last=TWO_DAYS_AGO), NOW)
        assert days_inactive(_state(3, last=TWO_DAYS_AGO), NOW) == 2

    def test_never_active_is_inactive(self):
        assert not is_active(StreakState(), NOW)
        assert days_inactive(StreakState(), NOW) == 0

    def test_displayed_state_zeroes_lapsed_streak(self):
        shown = displayed_state(_state(9, longest=11, last=TWO_DAYS_AGO), NOW)
        assert shown.current_streak == 0
        assert shown.longest_streak == 11

    def test_summary_shape_for_lapsed_streak(self):
        summary = streak_summary(_state(9, longest=11, last=NOW - timedelta(days=4)), NOW)
        assert summary["current_streak"] == 0
        assert summary["longest_streak"] == 11
        assert summary["is_active"] is False
        assert summary["days_inactive"] == 4
        assert summary["current_milestone"] == 7
        assert summary["next_milestone"] == 14


class TestProgress:
    def test_bracketing_milestones(self):
        assert current_milestone(0) == 0
        assert next_milestone(0) == 7
        assert current_milestone(20) == 14
        assert next_milestone(20) == 30

    def test_progress_from_zero(self):
        assert progress_to_next(0) == 0
        assert progress_to_next(3) == 43

    def test_progress_rounds_half_up(self):
        # (16 - 14) / (30 - 14) = 12.5%
        assert progress_to_next(16) == 13

    def test_progress_on_a_milestone_is_zero(self):
        assert progress_to_next(30) == 0

    def test_progress_past_last_milestone_is_100(self):
        assert next_milestone(365) is None
        assert progress_to_next(365) == 100
        assert progress_to_next(1000) == 100
