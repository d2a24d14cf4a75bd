"""
Deck loading - local-first with network refresh.

Decks are read from the local store when cached. When a DeckSource is
configured the cached copy is refreshed from the network; an offline or
failed refresh keeps the cached copy. A deck that is neither cached nor
available from the source raises DeckNotFoundError.

Also imports decks from JSON files:

    {
        "deck": {"id": "spanish-101", "name": "Spanish 101", "description": "..."},
        "cards": [{"id": "c1", "front": "hola", "back": "hello"}, ...]
    }
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path

from loguru import logger

from recall.errors import DeckNotFoundError, OfflineError, RecallError
from recall.retry import DEFAULT_ATTEMPTS, DEFAULT_BACKOFF, retry_async
from recall.storage.interface import StorageInterface
from recall.sync.remote import DeckSource, parse_deck_payload

from .models import Card, Deck


@dataclass
class LoadedDeck:
    deck: Deck
    cards: list[Card] = field(default_factory=list)
    from_cache: bool = False
    refreshed: bool = False

    @property
    def card_count(self) -> int:
        return len(self.cards)


class DeckLoader:
    """Loads decks from the local store, refreshing from a DeckSource."""

    def __init__(
        self,
        store: StorageInterface,
        source: DeckSource | None = None,
        retry_attempts: int = DEFAULT_ATTEMPTS,
        retry_backoff: float = DEFAULT_BACKOFF,
    ):
        self.store = store
        self.source = source
        self.retry_attempts = retry_attempts
        self.retry_backoff = retry_backoff

    async def _cached(self, deck_id: str) -> LoadedDeck | None:
        deck = await retry_async(
            lambda: self.store.get_deck(deck_id),
            attempts=self.retry_attempts,
            backoff=self.retry_backoff,
            description=f"get_deck({deck_id})",
        )
        if deck is None:
            return None
        cards = await retry_async(
            lambda: self.store.get_cards_for_deck(deck_id),
            attempts=self.retry_attempts,
            backoff=self.retry_backoff,
            description=f"get_cards_for_deck({deck_id})",
        )
        if not cards:
            return None
        return LoadedDeck(deck=deck, cards=cards, from_cache=True)

    async def load(self, deck_id: str, refresh: bool = True) -> LoadedDeck:
        """
        Load a deck, preferring the local copy.

        Args:
            deck_id: Deck to load
            refresh: Refresh a cached deck from the source when one is configured

        Raises:
            DeckNotFoundError: Not cached and not available from the source
        """
        cached = await self._cached(deck_id)

        if cached is not None:
            logger.debug("Deck {} loaded from cache ({} cards)", deck_id, cached.card_count)
            if self.source is None or not refresh:
                return cached
            try:
                return await self.refresh(deck_id)
            except RecallError as e:
                logger.warning("Refresh of deck {} failed, using cached copy: {}", deck_id, e)
            return cached

        if self.source is None:
            raise DeckNotFoundError(f"Deck not found: {deck_id}", operation="load", deck_id=deck_id)

        try:
            return await self.refresh(deck_id)
        except OfflineError as e:
            raise DeckNotFoundError(
                f"Deck {deck_id} is not cached and the network is unavailable",
                operation="load",
                deck_id=deck_id,
            ) from e

    async def refresh(self, deck_id: str) -> LoadedDeck:
        """Fetch a deck from the source and store it locally."""
        if self.source is None:
            raise RecallError("No deck source configured", operation="refresh", deck_id=deck_id)

        fetched = await self.source.fetch_deck(deck_id)
        if fetched is None:
            raise DeckNotFoundError(f"Deck not found: {deck_id}", operation="refresh", deck_id=deck_id)

        deck, cards = fetched
        await self.save(deck, cards)
        logger.info("Deck {} refreshed from network ({} cards)", deck_id, len(cards))
        return LoadedDeck(deck=deck, cards=cards, refreshed=True)

    async def save(self, deck: Deck, cards: list[Card]) -> None:
        await retry_async(
            lambda: self.store.store_deck(deck),
            attempts=self.retry_attempts,
            backoff=self.retry_backoff,
            description=f"store_deck({deck.id})",
        )
        await retry_async(
            lambda: self.store.store_cards(cards),
            attempts=self.retry_attempts,
            backoff=self.retry_backoff,
            description=f"store_cards({deck.id})",
        )

    async def import_file(self, path: Path | str) -> LoadedDeck:
        """
        Import a deck from a JSON file into the local store.

        Raises:
            RecallError: The file is missing or not a valid deck file
        """
        path = Path(path)
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
            deck, cards = parse_deck_payload(data)
        except FileNotFoundError as e:
            raise RecallError(f"Deck file not found: {path}", operation="import") from e
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            raise RecallError(f"Invalid deck file {path}: {e}", operation="import") from e

        await self.save(deck, cards)
        logger.info("Imported deck {} ({} cards) from {}", deck.id, len(cards), path)
        return LoadedDeck(deck=deck, cards=cards)
