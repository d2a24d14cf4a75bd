"""
Study Session Orchestrator.

Sequences the selected cards of one deck, applies the scheduler on every
grade and tracks completion and resumption.

Phases:
    Loading -> Active(showing) -> Complete
    Loading -> Failed (load error)

`showing` is False only while a grade is being written, which blocks a
second submission for the same card. Complete is terminal; studying again
needs a new start() (restart() begins an extra-study pass).
"""

from __future__ import annotations

import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import TypeVar, Union

from loguru import logger

from recall.errors import GradeWriteError, InvalidTransitionError, RecallError
from recall.retry import DEFAULT_ATTEMPTS, DEFAULT_BACKOFF, retry_async
from recall.storage.interface import StorageInterface

from .models import Card, CardMemoryState, DailyStudyLedger, Grade, SessionMode, utc_now
from .scheduler import FSRSScheduler, elapsed_days
from .selector import DueCardSelector, select_session

T = TypeVar("T")

# =============================================================================
# Phases
# =============================================================================


@dataclass(frozen=True)
class Loading:
    pass


@dataclass(frozen=True)
class Active:
    showing: bool = True  # False while a grade is in flight
    answer_shown: bool = False


@dataclass(frozen=True)
class Complete:
    pass


@dataclass(frozen=True)
class Failed:
    error: RecallError


SessionPhase = Union[Loading, Active, Complete, Failed]


class StudyStatus(str, Enum):
    """What the deck screen should offer."""

    NEVER_STUDIED = "never_studied"
    STUDY = "study"
    CONTINUE = "continue"
    STUDY_AGAIN = "study_again"


@dataclass
class SessionCounters:
    """Per-session counters. In extra-study they are display-only."""

    new_cards: int = 0  # new cards consumed today
    reviews: int = 0  # review cards completed today
    correct: int = 0
    again: int = 0

    @property
    def graded(self) -> int:
        return self.correct + self.again

    @property
    def accuracy(self) -> float:
        return self.correct / self.graded if self.graded else 0.0


@dataclass(frozen=True)
class SessionView:
    """Snapshot handed to the UI."""

    current_card: Card | None
    showing_card: bool
    is_complete: bool
    is_loading: bool
    error: RecallError | None
    mode: SessionMode
    position: int  # 1-based index of the current card, 0 if none
    total: int
    counters: SessionCounters = field(default_factory=SessionCounters)

    @property
    def remaining(self) -> int:
        if self.is_complete:
            return 0
        return max(0, self.total - self.position + 1) if self.position else self.total


# =============================================================================
# Orchestrator
# =============================================================================


class StudySession:
    """
    Stateful controller for one study session.

    Key rules:
    1. grade() is accepted only while the current card is showing
    2. A grade is persisted (state + ledger + resume index) in one write
       before the session advances
    3. A failed write leaves the session on the same card
    4. A normal session resumes at the persisted last studied index
    """

    def __init__(
        self,
        store: StorageInterface,
        user_id: str,
        scheduler: FSRSScheduler | None = None,
        selector: DueCardSelector | None = None,
        new_card_cap: int = 20,
        clock: Callable[[], datetime] = utc_now,
        rng: random.Random | None = None,
        retry_attempts: int = DEFAULT_ATTEMPTS,
        retry_backoff: float = DEFAULT_BACKOFF,
    ):
        """
        Initialize the session.

        Args:
            store: Local store (shared with other sessions of the same user)
            user_id: Learner studying
            scheduler: FSRSScheduler (creates default if None)
            selector: DueCardSelector (built from store/user/cap if None)
            new_card_cap: Daily new-card limit per deck
            clock: Returns the current UTC time
            rng: Random source for new-card ordering
            retry_attempts: Attempts for store calls hitting contention
            retry_backoff: Initial backoff between attempts (seconds)
        """
        self.store = store
        self.user_id = user_id
        self.scheduler = scheduler or FSRSScheduler()
        self.new_card_cap = new_card_cap
        self.selector = selector or DueCardSelector(
            store,
            user_id,
            new_card_cap=new_card_cap,
            rng=rng,
            retry_attempts=retry_attempts,
            retry_backoff=retry_backoff,
        )
        self.clock = clock
        self.retry_attempts = retry_attempts
        self.retry_backoff = retry_backoff

        self.deck_id: str | None = None
        self.mode = SessionMode.NORMAL
        self.cards: list[Card] = []
        self.current_index = 0
        self.counters = SessionCounters()
        self._phase: SessionPhase = Loading()
        self._in_flight = False

    # -------------------------------------------------------------------------
    # State accessors
    # -------------------------------------------------------------------------

    @property
    def phase(self) -> SessionPhase:
        return self._phase

    @property
    def is_complete(self) -> bool:
        return isinstance(self._phase, Complete)

    @property
    def current_card(self) -> Card | None:
        if isinstance(self._phase, Active) and self.current_index < len(self.cards):
            return self.cards[self.current_index]
        return None

    def view(self) -> SessionView:
        phase = self._phase
        card = self.current_card
        return SessionView(
            current_card=card,
            showing_card=isinstance(phase, Active) and phase.showing,
            is_complete=isinstance(phase, Complete),
            is_loading=isinstance(phase, Loading),
            error=phase.error if isinstance(phase, Failed) else None,
            mode=self.mode,
            position=self.current_index + 1 if card else 0,
            total=len(self.cards),
            counters=replace(self.counters),
        )

    async def _retry(self, operation: Callable[[], Awaitable[T]], description: str) -> T:
        return await retry_async(
            operation,
            attempts=self.retry_attempts,
            backoff=self.retry_backoff,
            description=description,
        )

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    async def start(self, deck_id: str, mode: SessionMode = SessionMode.NORMAL) -> SessionView:
        """
        Load today's cards for a deck and enter the first card.

        Load errors (missing deck, store unavailable after retries) put the
        session in the Failed phase; they are reported through view().error.
        """
        if self._in_flight:
            raise InvalidTransitionError(
                "Cannot start while a grade is being saved", operation="start", deck_id=deck_id
            )

        self._in_flight = True
        self._phase = Loading()
        self.deck_id = deck_id
        self.mode = SessionMode(mode)
        self.cards = []
        self.current_index = 0
        self.counters = SessionCounters()

        try:
            now = self.clock()
            try:
                selection, ledger = await self.selector.select(deck_id, self.mode, now)
                if self.mode == SessionMode.NORMAL:
                    resumed = await self._resumed_cards(deck_id, ledger)
                else:
                    resumed = []
            except RecallError as exc:
                logger.error("Failed to load deck {}: {} ({})", deck_id, exc, exc.context())
                self._phase = Failed(exc)
                return self.view()

            if self.mode == SessionMode.NORMAL:
                self.cards = resumed + selection.cards
                self.current_index = min(ledger.last_studied_index, len(resumed))
                self.counters.new_cards = ledger.new_cards_graded
                self.counters.reviews = ledger.reviews_graded
            else:
                self.cards = selection.cards

            if self.current_index >= len(self.cards):
                self._phase = Complete()
            else:
                self._phase = Active(showing=True)

            logger.info(
                "Session started for {} ({}): {} cards, resuming at {}, {} new today",
                deck_id,
                self.mode.value,
                len(self.cards),
                self.current_index,
                self.counters.new_cards,
            )
            return self.view()
        finally:
            self._in_flight = False

    async def _resumed_cards(self, deck_id: str, ledger: DailyStudyLedger) -> list[Card]:
        """Cards graded earlier today, in the order they were graded."""
        if not ledger.graded_card_ids:
            return []
        cards = await self._retry(
            lambda: self.store.get_cards_for_deck(deck_id), f"get_cards_for_deck({deck_id})"
        )
        by_id = {card.id: card for card in cards}
        return [by_id[card_id] for card_id in ledger.graded_card_ids if card_id in by_id]

    def show_answer(self) -> SessionView:
        """Reveal the back of the current card."""
        phase = self._phase
        if not isinstance(phase, Active) or not phase.showing:
            raise InvalidTransitionError(
                f"Cannot show answer in phase {type(phase).__name__}",
                operation="show_answer",
                deck_id=self.deck_id,
            )
        self._phase = Active(showing=True, answer_shown=True)
        return self.view()

    async def grade(self, value: Grade | int | str) -> CardMemoryState | None:
        """
        Grade the current card and advance.

        In extra-study mode the grade only counts toward the session's
        correct/again tally; the stored memory state is returned unchanged.

        Returns:
            The persisted memory state, or None if grading is not allowed now
            (session complete, loading, or a grade already in flight)

        Raises:
            GradeWriteError: The state could not be saved; the same card is
                showing again and may be re-graded
        """
        phase = self._phase
        if not isinstance(phase, Active) or not phase.showing or self._in_flight:
            logger.debug("Ignoring grade in phase {}", type(phase).__name__)
            return None

        grade = Grade.parse(value)
        card = self.cards[self.current_index]
        deck_id = self.deck_id

        # Block re-submission before the first await
        self._phase = Active(showing=False)
        self._in_flight = True
        try:
            now = self.clock()
            next_index = self.current_index + 1
            try:
                state = await self._retry(
                    lambda: self.store.get_memory_state(self.user_id, card.id),
                    f"get_memory_state({card.id})",
                )
                if state is None:
                    state = CardMemoryState.seed(self.user_id, card.id, card.deck_id, now)
                was_new = state.is_new

                if self.mode == SessionMode.EXTRA:
                    # Replay only: memory state and ledger stay as graded today
                    updated = state
                else:
                    elapsed = 0 if was_new else elapsed_days(state.review_date, now)
                    result = self.scheduler.schedule(state, grade, elapsed)
                    updated = state.apply(result, now)
                    await self._retry(
                        lambda: self.store.record_grade(
                            self.user_id,
                            card.deck_id,
                            updated,
                            was_new,
                            now.date(),
                            next_index,
                        ),
                        f"record_grade({card.id})",
                    )
            except RecallError as exc:
                self._phase = Active(showing=True, answer_shown=phase.answer_shown)
                logger.error("Failed to save grade for card {} in {}: {}", card.id, deck_id, exc)
                raise GradeWriteError(
                    f"Failed to save grade for card {card.id}: {exc}",
                    operation="grade",
                    card_id=card.id,
                    deck_id=deck_id,
                ) from exc

            self.current_index = next_index
            if self.current_index >= len(self.cards):
                self._phase = Complete()
            else:
                self._phase = Active(showing=True)

            self._count(grade, was_new)

            logger.debug(
                "Graded {} as {}: reps={}, lapses={}, next_review={}",
                card.id,
                grade.name,
                updated.reps,
                updated.lapses,
                updated.next_review,
            )
            if self.is_complete:
                logger.info(
                    "Session complete for {} ({}): {} graded, {} correct",
                    deck_id,
                    self.mode.value,
                    self.counters.graded,
                    self.counters.correct,
                )
            return updated
        finally:
            self._in_flight = False

    def _count(self, grade: Grade, was_new: bool) -> None:
        if grade == Grade.GOOD:
            self.counters.correct += 1
        else:
            self.counters.again += 1
        if self.mode == SessionMode.EXTRA:
            return
        if was_new:
            self.counters.new_cards += 1
        else:
            self.counters.reviews += 1

    async def restart(self) -> SessionView:
        """Start an extra-study pass over the cards graded today."""
        if self.deck_id is None:
            raise InvalidTransitionError("No deck to restart", operation="restart")
        return await self.start(self.deck_id, SessionMode.EXTRA)

    async def reload(self) -> SessionView:
        """Re-run start() for the same deck and mode."""
        if self.deck_id is None:
            raise InvalidTransitionError("No deck to reload", operation="reload")
        return await self.start(self.deck_id, self.mode)

    # -------------------------------------------------------------------------
    # Deck status
    # -------------------------------------------------------------------------

    async def status(self, deck_id: str) -> StudyStatus:
        """
        Decide which action to offer for a deck.

        - NEVER_STUDIED: no card in the deck has ever been graded
        - CONTINUE: today's session was interrupted with cards left
        - STUDY_AGAIN: studied today and nothing is left
        - STUDY: otherwise
        """
        now = self.clock()
        cards = await self._retry(
            lambda: self.store.get_cards_for_deck(deck_id), f"get_cards_for_deck({deck_id})"
        )
        states = await self._retry(
            lambda: self.store.get_memory_states(self.user_id, deck_id),
            f"get_memory_states({deck_id})",
        )
        ledger = await self.selector.load_ledger(deck_id, now)

        if not any(s.reps > 0 for s in states.values()):
            return StudyStatus.NEVER_STUDIED

        remaining = select_session(
            deck_id, cards, states, ledger, self.new_card_cap, SessionMode.NORMAL, now
        ).total_cards

        if (
            ledger.last_studied_index > 0
            and ledger.new_cards_graded < self.new_card_cap
            and remaining > 0
        ):
            return StudyStatus.CONTINUE
        if ledger.has_studied and remaining == 0:
            return StudyStatus.STUDY_AGAIN
        return StudyStatus.STUDY
