"""
Error taxonomy for the recall engine.

Every error carries the failing operation and, where known, the card or deck
it concerned, so callers can retry or tell the learner what went wrong.
Only subclasses of RetryableError are retried by retry_async.
"""

from __future__ import annotations


class RecallError(Exception):
    """Base class for all engine errors."""

    def __init__(
        self,
        message: str,
        *,
        operation: str | None = None,
        card_id: str | None = None,
        deck_id: str | None = None,
    ) -> None:
        super().__init__(message)
        self.operation = operation
        self.card_id = card_id
        self.deck_id = deck_id

    def context(self) -> dict[str, str | None]:
        """Return the error context for logging/UI."""
        return {
            "operation": self.operation,
            "card_id": self.card_id,
            "deck_id": self.deck_id,
        }


class RetryableError(RecallError):
    """A transient failure; the same call may succeed if repeated."""


class StoreContentionError(RetryableError):
    """The local store was locked, busy or mid-close."""


class StorageUnavailableError(RetryableError):
    """The local store could not be opened or reached at all."""


class OfflineError(RecallError):
    """A remote collaborator is unreachable."""


class DeckNotFoundError(RecallError):
    """The requested deck exists neither locally nor remotely."""


class GradeWriteError(RecallError):
    """Persisting a grade failed; memory state was not advanced."""


class InvalidTransitionError(RecallError):
    """A session operation was requested in a phase that does not allow it."""
