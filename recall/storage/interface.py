"""
Storage capability set the study engine depends on.

The selector, session and sync service only talk to a StorageInterface; the
concrete backend (local SQLite today) is constructed by the caller and passed
in. A store handle belongs to one database file; switching learners means
passing a different user_id, not mutating the handle.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import date, datetime
from pathlib import Path

from recall.delivery.models import Card, CardMemoryState, DailyStudyLedger, Deck


class StorageInterface(ABC):
    """Async read/write contract for decks, cards and per-user progress."""

    # -------------------------------------------------------------------------
    # Content
    # -------------------------------------------------------------------------

    @abstractmethod
    async def store_deck(self, deck: Deck) -> None:
        """Insert or replace a deck (keeps its last_sync)."""

    @abstractmethod
    async def store_cards(self, cards: list[Card]) -> int:
        """Insert or replace cards in one transaction. Returns the count."""

    @abstractmethod
    async def get_deck(self, deck_id: str) -> Deck | None: ...

    @abstractmethod
    async def get_all_decks(self) -> list[Deck]: ...

    @abstractmethod
    async def get_cards_for_deck(self, deck_id: str) -> list[Card]:
        """All cards of a deck ordered by sort_order."""

    # -------------------------------------------------------------------------
    # Memory state
    # -------------------------------------------------------------------------

    @abstractmethod
    async def get_memory_states(self, user_id: str, deck_id: str) -> dict[str, CardMemoryState]:
        """All memory states of a user in a deck, keyed by card id."""

    @abstractmethod
    async def get_memory_state(self, user_id: str, card_id: str) -> CardMemoryState | None: ...

    @abstractmethod
    async def seed_memory_states(self, user_id: str, states: list[CardMemoryState]) -> int:
        """
        Insert default states for newly admitted cards, atomically.

        Existing states are left untouched. Returns the number inserted.
        """

    @abstractmethod
    async def record_grade(
        self,
        user_id: str,
        deck_id: str,
        state: CardMemoryState,
        was_new: bool,
        study_date: date,
        last_studied_index: int | None = None,
    ) -> None:
        """
        Persist one graded card as a single atomic unit.

        Writes the new memory state, marks the card as graded on study_date
        and, when given, stores the deck's last studied index.
        """

    # -------------------------------------------------------------------------
    # Daily ledger and per-deck scalars
    # -------------------------------------------------------------------------

    @abstractmethod
    async def get_ledger(self, user_id: str, deck_id: str, study_date: date) -> DailyStudyLedger: ...

    @abstractmethod
    async def get_last_studied_index(self, user_id: str, deck_id: str, study_date: date) -> int: ...

    @abstractmethod
    async def set_last_studied_index(
        self, user_id: str, deck_id: str, study_date: date, index: int
    ) -> None: ...

    @abstractmethod
    async def get_last_sync(self, deck_id: str) -> datetime | None: ...

    @abstractmethod
    async def set_last_sync(self, deck_id: str, when: datetime) -> None: ...

    # -------------------------------------------------------------------------
    # Stats & maintenance
    # -------------------------------------------------------------------------

    @abstractmethod
    async def get_due_counts(self, user_id: str, now: datetime) -> dict[str, int]:
        """Number of due (already graded) cards per deck id."""

    @abstractmethod
    async def get_streak(self, user_id: str, today: date) -> int:
        """Consecutive days, ending today or yesterday, with at least one grade."""

    @abstractmethod
    async def clear_progress(self, user_id: str, deck_id: str | None = None) -> tuple[int, Path | None]:
        """
        Delete a user's progress (optionally for one deck only).

        A JSON backup is written first. Returns (states deleted, backup path).
        """

    @abstractmethod
    async def close(self) -> None: ...

    async def __aenter__(self) -> StorageInterface:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
