"""
Unit tests for the FSRS scheduler.
"""

import math
from datetime import datetime, timedelta, timezone

import pytest

from recall.delivery.models import DEFAULT_DIFFICULTY, CardMemoryState, Grade
from recall.delivery.scheduler import (
    DEFAULT_WEIGHTS,
    MIN_STABILITY,
    FSRSConfig,
    FSRSScheduler,
    elapsed_days,
    retrievability,
)

NOW = datetime(2026, 3, 10, 9, 0, tzinfo=timezone.utc)


def mature_state(**overrides) -> CardMemoryState:
    values = dict(
        user_id="u1",
        card_id="c1",
        deck_id="d1",
        difficulty=5.0,
        stability=10.0,
        retrievability=0.9,
        reps=3,
        lapses=0,
        interval=10.0,
        review_date=NOW - timedelta(days=10),
        next_review=NOW,
    )
    values.update(overrides)
    return CardMemoryState(**values)


@pytest.fixture
def scheduler():
    return FSRSScheduler()


class TestFirstReview:
    """Tests for grading a card with no history."""

    def test_good_on_unseen_card(self, scheduler):
        """A first Good uses the initial stability for that grade."""
        result = scheduler.schedule(None, Grade.GOOD, 0)

        assert result.reps == 1
        assert result.lapses == 0
        assert result.stability == pytest.approx(DEFAULT_WEIGHTS[2])
        assert result.difficulty == pytest.approx(7.2102 - math.exp(0.5316 * 2) + 1)
        assert result.interval == 3
        assert result.retrievability == 0.0

    def test_again_on_unseen_card(self, scheduler):
        """A first Again is a lapse with the relearn interval."""
        result = scheduler.schedule(None, Grade.AGAIN, 0)

        assert result.reps == 1
        assert result.lapses == 1
        assert result.stability == pytest.approx(DEFAULT_WEIGHTS[0])
        assert result.difficulty == pytest.approx(DEFAULT_DIFFICULTY)
        assert result.interval == 1.0

    def test_seeded_state_matches_unseen(self, scheduler):
        """A seeded default state schedules exactly like no state."""
        seeded = CardMemoryState.seed("u1", "c1", "d1", NOW)

        assert scheduler.schedule(seeded, Grade.GOOD, 0) == scheduler.schedule(None, Grade.GOOD, 0)
        assert scheduler.schedule(seeded, Grade.AGAIN, 0) == scheduler.schedule(None, Grade.AGAIN, 0)


class TestReviewUpdates:
    """Tests for grading cards with history."""

    @pytest.mark.parametrize("elapsed", [0, 1, 5, 10, 40])
    def test_good_increments_reps_only(self, scheduler, elapsed):
        """Good always adds one rep and never a lapse."""
        state = mature_state(lapses=2)
        result = scheduler.schedule(state, Grade.GOOD, elapsed)

        assert result.reps == state.reps + 1
        assert result.lapses == 2
        assert result.interval >= 1

    @pytest.mark.parametrize("elapsed", [0, 1, 5, 10, 40])
    def test_again_counts_lapse_and_shortens_interval(self, scheduler, elapsed):
        """Again adds a lapse and falls back to the relearn interval."""
        state = mature_state()
        result = scheduler.schedule(state, Grade.AGAIN, elapsed)

        assert result.reps == state.reps + 1
        assert result.lapses == state.lapses + 1
        assert result.interval <= state.interval
        assert result.interval == scheduler.config.relearn_interval

    def test_again_reduces_stability(self, scheduler):
        """A lapse never leaves stability higher than before."""
        state = mature_state()
        result = scheduler.schedule(state, Grade.AGAIN, 10)

        assert result.stability < state.stability
        assert result.stability >= MIN_STABILITY

    def test_good_after_due_grows_stability(self, scheduler):
        """Recalling a card at its due date strengthens it."""
        state = mature_state()
        result = scheduler.schedule(state, Grade.GOOD, 10)

        assert result.stability > state.stability
        assert result.interval > state.interval

    def test_retrievability_computed_before_update(self, scheduler):
        """The reported retrievability reflects forgetting since the last review."""
        state = mature_state()
        result = scheduler.schedule(state, Grade.GOOD, 10)

        assert result.retrievability == pytest.approx(0.9)

    def test_same_day_review_uses_short_term_formula(self, scheduler):
        """A second review on the same day scales stability by exp(w17 * (G - 3 + w18))."""
        state = mature_state()
        result = scheduler.schedule(state, Grade.GOOD, 0)

        expected = state.stability * math.exp(DEFAULT_WEIGHTS[17] * DEFAULT_WEIGHTS[18])
        assert result.stability == pytest.approx(expected)

    def test_again_then_good_on_separate_days(self, scheduler):
        """Again then Good the next day: lapses=1, reps=2 and a longer interval."""
        first = scheduler.schedule(None, Grade.AGAIN, 0)
        state = CardMemoryState.seed("u1", "c1", "d1", NOW).apply(first, NOW)

        second = scheduler.schedule(state, Grade.GOOD, 1)

        assert second.lapses == 1
        assert second.reps == 2
        assert second.interval > first.interval


class TestBounds:
    """Tests for clamping and floors."""

    def test_difficulty_never_exceeds_ten(self, scheduler):
        state = mature_state(difficulty=9.9)
        for _ in range(20):
            result = scheduler.schedule(state, Grade.AGAIN, 1)
            state = state.apply(result, NOW)
        assert state.difficulty <= 10.0

    def test_difficulty_never_below_one(self, scheduler):
        state = mature_state(difficulty=1.0)
        for _ in range(20):
            result = scheduler.schedule(state, Grade.GOOD, 1)
            state = state.apply(result, NOW)
        assert state.difficulty >= 1.0

    def test_stability_floor(self, scheduler):
        """Repeated same-day lapses cannot push stability under the floor."""
        state = mature_state(stability=0.15)
        for _ in range(10):
            state = state.apply(scheduler.schedule(state, Grade.AGAIN, 0), NOW)
        assert state.stability == pytest.approx(MIN_STABILITY)

    def test_maximum_interval(self):
        scheduler = FSRSScheduler(FSRSConfig(maximum_interval=30))
        result = scheduler.schedule(mature_state(stability=500.0), Grade.GOOD, 500)
        assert result.interval == 30

    def test_values_stay_finite(self, scheduler):
        result = scheduler.schedule(mature_state(stability=1e6), Grade.GOOD, 1e6)
        assert all(
            math.isfinite(v)
            for v in (result.difficulty, result.stability, result.retrievability, result.interval)
        )

    def test_higher_retention_gives_shorter_intervals(self):
        relaxed = FSRSScheduler(FSRSConfig(desired_retention=0.8))
        strict = FSRSScheduler(FSRSConfig(desired_retention=0.95))
        state = mature_state()

        assert strict.schedule(state, Grade.GOOD, 10).interval < relaxed.schedule(state, Grade.GOOD, 10).interval


class TestConfig:
    def test_rejects_wrong_weight_count(self):
        with pytest.raises(ValueError):
            FSRSConfig(weights=(1.0, 2.0))

    def test_rejects_out_of_range_retention(self):
        with pytest.raises(ValueError):
            FSRSConfig(desired_retention=1.5)

    def test_preview_lists_both_grades(self, scheduler):
        preview = scheduler.preview(mature_state(), NOW)

        assert set(preview) == {Grade.AGAIN, Grade.GOOD}
        assert preview[Grade.AGAIN] == 1.0
        assert preview[Grade.GOOD] > preview[Grade.AGAIN]


class TestElapsedDays:
    """Tests for the calendar-day elapsed time helper."""

    def test_never_reviewed(self):
        assert elapsed_days(None, NOW) == 0

    def test_same_calendar_day(self):
        assert elapsed_days(NOW.replace(hour=1), NOW.replace(hour=23)) == 0

    def test_crossing_midnight_counts_a_day(self):
        late = datetime(2026, 3, 9, 23, 30, tzinfo=timezone.utc)
        early = datetime(2026, 3, 10, 0, 30, tzinfo=timezone.utc)
        assert elapsed_days(late, early) == 1

    def test_clock_going_backwards(self):
        assert elapsed_days(NOW + timedelta(days=3), NOW) == 0

    def test_naive_timestamps_are_utc(self):
        assert elapsed_days(datetime(2026, 3, 1, 12, 0), NOW) == 9

    def test_retrievability_edges(self):
        assert retrievability(5, 0) == 0.0
        assert retrievability(0, 3.0) == pytest.approx(1.0)
        assert retrievability(3.0, 3.0) == pytest.approx(0.9)
