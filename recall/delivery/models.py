"""
Core data model for the study engine.

- Card / Deck: immutable content references, read-only to the engine
- CardMemoryState: per (user, card) memory model state
- ScheduleResult: the scheduler's pure output
- DailyStudyLedger: what a learner graded in a deck on one calendar day
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta, timezone
from enum import Enum, IntEnum
from typing import Any

# Initial difficulty of an unseen card (FSRS weight w4)
DEFAULT_DIFFICULTY = 7.2102


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Normalize a timestamp to aware UTC; naive values are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Grade(IntEnum):
    """Review outcome. Values follow the FSRS rating scale."""

    AGAIN = 1  # Failed recall
    GOOD = 3  # Successful recall

    @classmethod
    def parse(cls, value: Grade | int | str) -> Grade:
        """Accept a Grade, its rating number, or its name ("again"/"good")."""
        if isinstance(value, Grade):
            return value
        if isinstance(value, str):
            try:
                return cls[value.strip().upper()]
            except KeyError:
                raise ValueError(f"Unknown grade: {value!r}") from None
        return cls(value)


class SessionMode(str, Enum):
    """NORMAL: capped new + due cards. EXTRA: replay of today's graded cards."""

    NORMAL = "normal"
    EXTRA = "extra"


# =============================================================================
# Content
# =============================================================================


@dataclass(frozen=True)
class Card:
    """A flashcard belonging to a deck."""

    id: str
    deck_id: str
    front: str
    back: str
    sort_order: int = 0

    # Optional media references
    front_image: str | None = None
    back_image: str | None = None
    audio: str | None = None
    language: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any], deck_id: str | None = None) -> Card:
        """
        Create a Card from a dictionary (JSON or remote payload).

        Args:
            data: Card fields; deck_id may be omitted when passed explicitly
            deck_id: Owning deck, overrides data["deck_id"]

        Returns:
            Card instance
        """
        return cls(
            id=str(data["id"]),
            deck_id=str(deck_id or data["deck_id"]),
            front=data.get("front", ""),
            back=data.get("back", ""),
            sort_order=int(data.get("sort_order", 0)),
            front_image=data.get("front_image"),
            back_image=data.get("back_image"),
            audio=data.get("audio"),
            language=data.get("language"),
        )


@dataclass(frozen=True)
class Deck:
    """A named collection of cards."""

    id: str
    name: str
    description: str = ""
    category: str | None = None
    language: str | None = None
    last_sync: datetime | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Deck:
        return cls(
            id=str(data["id"]),
            name=data.get("name") or str(data["id"]),
            description=data.get("description") or "",
            category=data.get("category"),
            language=data.get("language"),
        )


# =============================================================================
# Memory State
# =============================================================================


@dataclass(frozen=True)
class ScheduleResult:
    """Scheduler output for one grade. Dates are applied by the caller."""

    difficulty: float
    stability: float
    retrievability: float
    reps: int
    lapses: int
    interval: float


@dataclass
class CardMemoryState:
    """
    Memory state of one card for one learner.

    A state with reps == 0 has never been graded: it was seeded when the
    card was admitted into a session as new.
    """

    user_id: str
    card_id: str
    deck_id: str
    difficulty: float = DEFAULT_DIFFICULTY
    stability: float = 0.0
    retrievability: float = 0.0
    reps: int = 0
    lapses: int = 0
    interval: float = 0.0  # days
    review_date: datetime | None = None  # last grade
    next_review: datetime | None = None  # scheduled due date

    @classmethod
    def seed(cls, user_id: str, card_id: str, deck_id: str, now: datetime) -> CardMemoryState:
        """Default state for a card admitted as new; due immediately."""
        return cls(user_id=user_id, card_id=card_id, deck_id=deck_id, next_review=now)

    @property
    def is_new(self) -> bool:
        """True if the card has never been graded."""
        return self.reps == 0

    def is_due(self, now: datetime) -> bool:
        """Check if this card is due for review."""
        return self.next_review is None or self.next_review <= now

    def apply(self, result: ScheduleResult, now: datetime) -> CardMemoryState:
        """Return the state after a grade at `now` produced `result`."""
        return replace(
            self,
            difficulty=result.difficulty,
            stability=result.stability,
            retrievability=result.retrievability,
            reps=result.reps,
            lapses=result.lapses,
            interval=result.interval,
            review_date=now,
            next_review=now + timedelta(days=result.interval),
        )

    def to_record(self) -> dict[str, Any]:
        """Serialize for remote sync (ISO timestamps)."""
        return {
            "user_id": self.user_id,
            "card_id": self.card_id,
            "deck_id": self.deck_id,
            "difficulty": self.difficulty,
            "stability": self.stability,
            "retrievability": self.retrievability,
            "reps": self.reps,
            "lapses": self.lapses,
            "interval": self.interval,
            "review_date": self.review_date.isoformat() if self.review_date else None,
            "next_review": self.next_review.isoformat() if self.next_review else None,
        }


# =============================================================================
# Daily Ledger
# =============================================================================


@dataclass
class DailyStudyLedger:
    """What one learner graded in one deck on one calendar day."""

    user_id: str
    deck_id: str
    study_date: date
    graded_card_ids: list[str] = field(default_factory=list)  # first-grade order
    new_card_ids: list[str] = field(default_factory=list)
    last_studied_index: int = 0

    @classmethod
    def empty(cls, user_id: str, deck_id: str, study_date: date) -> DailyStudyLedger:
        return cls(user_id=user_id, deck_id=deck_id, study_date=study_date)

    @property
    def new_cards_graded(self) -> int:
        return len(self.new_card_ids)

    @property
    def reviews_graded(self) -> int:
        return len(self.graded_card_ids) - len(self.new_card_ids)

    @property
    def has_studied(self) -> bool:
        return bool(self.graded_card_ids)

    def was_graded(self, card_id: str) -> bool:
        return card_id in self.graded_card_ids
