"""
FSRS Spaced Repetition Scheduler.

Implements the FSRS-5 memory model reduced to two grades:
- AGAIN (1) - failed recall, counts as a lapse
- GOOD (3)  - successful recall

Each card has:
- Difficulty (D): how hard the card is, clamped to [1, 10]
- Stability (S): days until recall probability decays to 90%
- Retrievability (R): probability of recall after t days, derived from S

The scheduler is pure: it never touches storage or the clock. Callers pass
the elapsed days and apply the returned ScheduleResult to the stored state.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime

from loguru import logger

from .models import DEFAULT_DIFFICULTY, CardMemoryState, Grade, ScheduleResult, as_utc

# Forgetting curve shape
DECAY = -0.5
FACTOR = 0.9 ** (1 / DECAY) - 1

MIN_DIFFICULTY = 1.0
MAX_DIFFICULTY = 10.0
MIN_STABILITY = 0.1  # days

DEFAULT_WEIGHTS: tuple[float, ...] = (
    0.4072,
    1.1829,
    3.1262,
    15.4722,
    7.2102,
    0.5316,
    1.0651,
    0.0234,
    1.616,
    0.1544,
    1.0824,
    1.9813,
    0.0953,
    0.2975,
    2.2042,
    0.2407,
    2.9466,
    0.5034,
    0.6567,
)


def elapsed_days(review_date: datetime | None, now: datetime) -> int:
    """
    Whole calendar days between the last review and now (UTC dates).

    Returns 0 for a card that was never graded, and never a negative value
    even if the clock moved backwards.
    """
    if review_date is None:
        return 0
    days = (as_utc(now).date() - as_utc(review_date).date()).days
    return max(0, days)


def retrievability(elapsed: float, stability: float) -> float:
    """Probability of recall after `elapsed` days at the given stability."""
    if stability <= 0:
        return 0.0
    return (1 + FACTOR * max(0.0, elapsed) / stability) ** DECAY


# =============================================================================
# FSRS Algorithm
# =============================================================================


@dataclass
class FSRSConfig:
    """Configuration for the FSRS scheduler."""

    weights: tuple[float, ...] = DEFAULT_WEIGHTS
    desired_retention: float = 0.9
    maximum_interval: int = 36500  # days
    relearn_interval: float = 1.0  # days after AGAIN

    def __post_init__(self) -> None:
        if len(self.weights) != 19:
            raise ValueError(f"FSRS-5 needs 19 weights, got {len(self.weights)}")
        if not 0 < self.desired_retention < 1:
            raise ValueError("desired_retention must be between 0 and 1")


class FSRSScheduler:
    """
    Computes the next memory state of a card after a grade.

    Stability grows on success by an amount that shrinks with difficulty,
    with current stability and with retrievability (reviewing a card you were
    about to forget strengthens it most). A failure resets stability to a
    fraction of its former value and schedules a short relearn interval.
    """

    def __init__(self, config: FSRSConfig | None = None):
        """
        Initialize FSRS scheduler.

        Args:
            config: Custom configuration (uses defaults if None)
        """
        self.config = config or FSRSConfig()
        self.w = self.config.weights

    @classmethod
    def from_settings(cls, settings) -> FSRSScheduler:
        """Build a scheduler from application Settings."""
        return cls(FSRSConfig(**settings.get_scheduler_config()))

    def schedule(
        self,
        state: CardMemoryState | None,
        grade: Grade,
        elapsed: float,
    ) -> ScheduleResult:
        """
        Calculate the memory state after grading a card.

        Args:
            state: Current state, or None for a card never seen before
            grade: AGAIN or GOOD
            elapsed: Days since the last review (0 for a first review)

        Returns:
            ScheduleResult with updated D/S/R, counters and interval (days)
        """
        grade = Grade(grade)
        elapsed = max(0.0, float(elapsed))

        reps = state.reps if state else 0
        lapses = state.lapses if state else 0
        difficulty = state.difficulty if state else DEFAULT_DIFFICULTY
        stability = state.stability if state else 0.0

        # Forgetting happens before the update
        r = retrievability(elapsed, stability)

        if reps == 0 or stability <= 0:
            new_stability = self._initial_stability(grade)
            new_difficulty = self._initial_difficulty(int(grade))
        else:
            if elapsed < 1:
                new_stability = self._short_term_stability(stability, grade)
            elif grade == Grade.AGAIN:
                new_stability = self._forget_stability(difficulty, stability, r)
            else:
                new_stability = self._recall_stability(difficulty, stability, r)
            new_difficulty = self._next_difficulty(difficulty, grade)

        new_stability = max(MIN_STABILITY, new_stability)
        new_difficulty = _clamp(new_difficulty, MIN_DIFFICULTY, MAX_DIFFICULTY)

        if grade == Grade.AGAIN:
            interval = self.config.relearn_interval
            lapses += 1
        else:
            interval = self._next_interval(new_stability)

        result = ScheduleResult(
            difficulty=new_difficulty,
            stability=new_stability,
            retrievability=r,
            reps=reps + 1,
            lapses=lapses,
            interval=interval,
        )

        logger.debug(
            "Scheduled grade={} elapsed={}d: D {:.3f}->{:.3f}, S {:.3f}->{:.3f}, R={:.3f}, interval={}d",
            grade.name,
            elapsed,
            difficulty,
            result.difficulty,
            stability,
            result.stability,
            r,
            result.interval,
        )

        return result

    def preview(self, state: CardMemoryState | None, now: datetime) -> dict[Grade, float]:
        """
        Interval each grade would produce if the card were graded at `now`.

        Returns:
            Mapping of Grade to interval in days
        """
        elapsed = elapsed_days(state.review_date if state else None, now)
        return {grade: self.schedule(state, grade, elapsed).interval for grade in Grade}

    # -------------------------------------------------------------------------
    # Memory model equations
    # -------------------------------------------------------------------------

    def _initial_stability(self, grade: Grade) -> float:
        return self.w[int(grade) - 1]

    def _initial_difficulty(self, rating: int) -> float:
        # D0(G) = w4 - e^(w5 * (G - 1)) + 1
        return self.w[4] - math.exp(self.w[5] * (rating - 1)) + 1

    def _next_difficulty(self, difficulty: float, grade: Grade) -> float:
        delta = -self.w[6] * (int(grade) - 3)
        damped = difficulty + delta * (10 - difficulty) / 9
        # Mean reversion toward the difficulty of an "Easy" first answer
        target = self._initial_difficulty(4)
        return self.w[7] * target + (1 - self.w[7]) * damped

    def _short_term_stability(self, stability: float, grade: Grade) -> float:
        return stability * math.exp(self.w[17] * (int(grade) - 3 + self.w[18]))

    def _recall_stability(self, difficulty: float, stability: float, r: float) -> float:
        w = self.w
        growth = (
            math.exp(w[8])
            * (11 - difficulty)
            * stability ** -w[9]
            * (math.exp(w[10] * (1 - r)) - 1)
        )
        return stability * (1 + growth)

    def _forget_stability(self, difficulty: float, stability: float, r: float) -> float:
        w = self.w
        post_lapse = (
            w[11]
            * difficulty ** -w[12]
            * ((stability + 1) ** w[13] - 1)
            * math.exp(w[14] * (1 - r))
        )
        return min(stability, post_lapse)

    def _next_interval(self, stability: float) -> float:
        r = self.config.desired_retention
        interval = stability / FACTOR * (r ** (1 / DECAY) - 1)
        return float(_clamp(round(interval), 1, self.config.maximum_interval))


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))
