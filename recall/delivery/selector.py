"""
Due-Card Selector.

Builds today's working set for a deck:
1. Cards already graded today are excluded (normal mode)
2. Due cards come first in the queue, oldest due date first
3. New cards fill the remaining daily quota
4. The presented list is ordered by sort_order

Extra-study mode replays exactly the cards graded today.
"""

from __future__ import annotations

import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import TypeVar

from loguru import logger

from recall.errors import DeckNotFoundError
from recall.retry import DEFAULT_ATTEMPTS, DEFAULT_BACKOFF, retry_async
from recall.storage.interface import StorageInterface

from .models import Card, CardMemoryState, DailyStudyLedger, SessionMode, as_utc, utc_now

T = TypeVar("T")


@dataclass
class SessionSelection:
    """Result of one selection call."""

    cards: list[Card] = field(default_factory=list)  # presentation order
    due_cards: list[Card] = field(default_factory=list)
    new_cards: list[Card] = field(default_factory=list)
    seeds: list[CardMemoryState] = field(default_factory=list)  # states to create

    @property
    def queue(self) -> list[Card]:
        """Scheduling priority: due before new."""
        return self.due_cards + self.new_cards

    @property
    def total_cards(self) -> int:
        return len(self.cards)

    @property
    def is_empty(self) -> bool:
        return not self.cards


def select_session(
    deck_id: str,
    all_cards: list[Card],
    memory_states: dict[str, CardMemoryState],
    ledger: DailyStudyLedger,
    new_card_cap: int,
    mode: SessionMode = SessionMode.NORMAL,
    now: datetime | None = None,
    rng: random.Random | None = None,
) -> SessionSelection:
    """
    Choose the cards for a session. Pure: no I/O, randomness only via `rng`.

    Cards admitted earlier today (seeded states with reps == 0) take the new
    quota before unseen cards, so reloading never admits more than the cap.

    Args:
        deck_id: Deck being studied
        all_cards: Every card of the deck
        memory_states: Learner's states in this deck keyed by card id
        ledger: What was graded in this deck today
        new_card_cap: Maximum new cards per deck per day
        mode: NORMAL or EXTRA
        now: Evaluation time (defaults to current UTC time)
        rng: Random source used to shuffle unseen cards

    Returns:
        SessionSelection; `seeds` lists the default states to persist
    """
    now = as_utc(now) if now else utc_now()
    graded_today = set(ledger.graded_card_ids)

    if mode == SessionMode.EXTRA:
        replay = sorted((c for c in all_cards if c.id in graded_today), key=_presentation_key)
        logger.debug("Extra study for {}: {} cards graded today", deck_id, len(replay))
        return SessionSelection(cards=replay, due_cards=list(replay))

    due: list[tuple[datetime, Card]] = []
    admitted: list[Card] = []
    unseen: list[Card] = []

    for card in all_cards:
        if card.id in graded_today:
            continue
        state = memory_states.get(card.id)
        if state is None:
            unseen.append(card)
        elif state.is_new:
            admitted.append(card)
        elif state.is_due(now):
            due.append((state.next_review or now, card))

    due.sort(key=lambda item: (item[0], item[1].sort_order))
    due_cards = [card for _, card in due]

    quota = max(0, new_card_cap - ledger.new_cards_graded)
    admitted.sort(key=_presentation_key)
    unseen.sort(key=_presentation_key)

    # Fixed order only for a deck the learner has never touched
    if memory_states:
        (rng or random).shuffle(unseen)

    new_cards = (admitted + unseen)[:quota]
    seeds = [
        CardMemoryState.seed(ledger.user_id, card.id, deck_id, now)
        for card in new_cards
        if card.id not in memory_states
    ]

    selection = SessionSelection(
        cards=sorted(due_cards + new_cards, key=_presentation_key),
        due_cards=due_cards,
        new_cards=new_cards,
        seeds=seeds,
    )

    logger.debug(
        "Selected for {}: {} due + {} new (quota {}, {} new graded today, {} excluded)",
        deck_id,
        len(due_cards),
        len(new_cards),
        quota,
        ledger.new_cards_graded,
        len(graded_today),
    )
    return selection


def _presentation_key(card: Card) -> tuple[int, str]:
    return (card.sort_order, card.id)


class DueCardSelector:
    """
    Loads deck data from the store, runs select_session and seeds new cards.

    Store reads and the seeding write are retried on transient contention;
    once retries are exhausted the RetryableError propagates to the caller.
    """

    def __init__(
        self,
        store: StorageInterface,
        user_id: str,
        new_card_cap: int = 20,
        rng: random.Random | None = None,
        retry_attempts: int = DEFAULT_ATTEMPTS,
        retry_backoff: float = DEFAULT_BACKOFF,
    ):
        self.store = store
        self.user_id = user_id
        self.new_card_cap = new_card_cap
        self.rng = rng
        self.retry_attempts = retry_attempts
        self.retry_backoff = retry_backoff

    async def _retry(self, operation: Callable[[], Awaitable[T]], description: str) -> T:
        return await retry_async(
            operation,
            attempts=self.retry_attempts,
            backoff=self.retry_backoff,
            description=description,
        )

    async def load_ledger(self, deck_id: str, now: datetime) -> DailyStudyLedger:
        return await self._retry(
            lambda: self.store.get_ledger(self.user_id, deck_id, now.date()),
            f"get_ledger({deck_id})",
        )

    async def select(
        self,
        deck_id: str,
        mode: SessionMode = SessionMode.NORMAL,
        now: datetime | None = None,
    ) -> tuple[SessionSelection, DailyStudyLedger]:
        """
        Select today's cards for a deck.

        Returns:
            (selection, today's ledger)

        Raises:
            DeckNotFoundError: The deck has no cards and is not stored locally
            RetryableError: The store stayed unavailable after all retries
        """
        now = as_utc(now) if now else utc_now()

        cards = await self._retry(
            lambda: self.store.get_cards_for_deck(deck_id), f"get_cards_for_deck({deck_id})"
        )
        if not cards:
            deck = await self._retry(lambda: self.store.get_deck(deck_id), f"get_deck({deck_id})")
            if deck is None:
                raise DeckNotFoundError(
                    f"Deck not found: {deck_id}", operation="select", deck_id=deck_id
                )

        states = await self._retry(
            lambda: self.store.get_memory_states(self.user_id, deck_id),
            f"get_memory_states({deck_id})",
        )
        ledger = await self.load_ledger(deck_id, now)

        selection = select_session(
            deck_id,
            cards,
            states,
            ledger,
            self.new_card_cap,
            mode=mode,
            now=now,
            rng=self.rng,
        )

        if selection.seeds:
            await self._retry(
                lambda: self.store.seed_memory_states(self.user_id, selection.seeds),
                f"seed_memory_states({deck_id})",
            )

        return selection, ledger
