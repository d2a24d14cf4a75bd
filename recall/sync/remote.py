"""
Remote collaborators for progress sync and deck refresh.

- RemoteStore: progress backend contract (list existing, bulk insert, update)
- HttpRemoteStore: document store reached over HTTP (httpx)
- SqlRemoteStore: relational progress table (SQLAlchemy Core)
- DeckSource / HttpDeckSource: network source of deck content

Unreachable remotes raise OfflineError so callers can fall back to local data.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import httpx
from loguru import logger
from sqlalchemy import (
    Column,
    Float,
    Integer,
    MetaData,
    String,
    Table,
    UniqueConstraint,
    create_engine,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.pool import StaticPool

from recall.delivery.models import Card, Deck
from recall.errors import OfflineError, RecallError

PROGRESS_FIELDS = (
    "user_id",
    "deck_id",
    "card_id",
    "difficulty",
    "stability",
    "retrievability",
    "reps",
    "lapses",
    "interval",
    "review_date",
    "next_review",
    "synced_at",
)


@dataclass
class InsertResult:
    """Outcome of a bulk insert; failures are keyed by card id."""

    succeeded: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def has_failures(self) -> bool:
        return bool(self.failed)


class RemoteStore(ABC):
    """Progress records on a remote backend, one per (user, card)."""

    @abstractmethod
    async def list_existing(self, user_id: str, deck_id: str) -> dict[str, dict[str, Any]]:
        """Existing remote records of a deck keyed by card id (each has an "id")."""

    @abstractmethod
    async def insert_many(self, records: list[dict[str, Any]]) -> InsertResult: ...

    @abstractmethod
    async def update(self, remote_id: str, record: dict[str, Any]) -> None: ...

    async def close(self) -> None:
        return None


# =============================================================================
# HTTP document store
# =============================================================================


class HttpRemoteStore(RemoteStore):
    """HTTP client for the remote progress document store."""

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        timeout_seconds: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ):
        """
        Initialize the remote store client.

        Args:
            base_url: Base URL of the progress API
            api_key: Optional bearer token
            timeout_seconds: Request timeout
            client: Preconfigured client (tests pass one with a mock transport)
        """
        self.base_url = base_url.rstrip("/")
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self.client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_seconds),
            headers=headers,
            follow_redirects=True,
        )

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        url = f"{self.base_url}{path}"
        try:
            response = await self.client.request(method, url, **kwargs)
            response.raise_for_status()
            return response
        except (httpx.NetworkError, httpx.TimeoutException) as e:
            logger.warning("Remote store unreachable ({} {}): {}", method, path, e)
            raise OfflineError(f"Remote store unreachable: {e}", operation=f"{method} {path}") from e
        except httpx.HTTPStatusError as e:
            logger.error("Remote store error {} on {} {}", e.response.status_code, method, path)
            raise RecallError(
                f"Remote store returned {e.response.status_code}", operation=f"{method} {path}"
            ) from e

    async def list_existing(self, user_id: str, deck_id: str) -> dict[str, dict[str, Any]]:
        response = await self._request(
            "GET", f"/decks/{deck_id}/progress", params={"user_id": user_id}
        )
        return {record["card_id"]: record for record in response.json()}

    async def insert_many(self, records: list[dict[str, Any]]) -> InsertResult:
        if not records:
            return InsertResult()
        response = await self._request("POST", "/progress/bulk", json={"records": records})
        data = response.json()
        return InsertResult(
            succeeded=list(data.get("succeeded", [])),
            failed={item["card_id"]: item.get("error", "") for item in data.get("failed", [])},
        )

    async def update(self, remote_id: str, record: dict[str, Any]) -> None:
        await self._request("PUT", f"/progress/{remote_id}", json=record)


# =============================================================================
# Relational table
# =============================================================================

metadata = MetaData()

progress_table = Table(
    "progress",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String, nullable=False),
    Column("deck_id", String, nullable=False, index=True),
    Column("card_id", String, nullable=False),
    Column("difficulty", Float, nullable=False),
    Column("stability", Float, nullable=False),
    Column("retrievability", Float, nullable=False),
    Column("reps", Integer, nullable=False),
    Column("lapses", Integer, nullable=False),
    Column("interval", Float, nullable=False),
    Column("review_date", String),
    Column("next_review", String),
    Column("synced_at", String),
    UniqueConstraint("user_id", "card_id", name="uq_progress_user_card"),
)


class SqlRemoteStore(RemoteStore):
    """
    Progress table in a relational database, accessed with SQLAlchemy Core.

    Blocking engine calls run in a worker thread. Every insert runs in its own
    transaction, so one rejected row never rolls back the others.
    """

    def __init__(self, database_url: str | None = None, engine: Engine | None = None):
        if engine is None:
            if not database_url:
                raise ValueError("database_url or engine is required")
            engine = _make_engine(database_url)
        self.engine = engine
        self._schema_ready = False

    def create_tables(self) -> None:
        metadata.create_all(self.engine)
        self._schema_ready = True

    def _with_schema(self, fn, *args: Any) -> Any:
        if not self._schema_ready:
            self.create_tables()
        return fn(*args)

    async def _run(self, operation: str, fn, *args: Any) -> Any:
        try:
            return await asyncio.to_thread(self._with_schema, fn, *args)
        except OperationalError as e:
            logger.warning("Remote database unreachable during {}: {}", operation, e)
            raise OfflineError(f"Remote database unreachable: {e}", operation=operation) from e

    async def list_existing(self, user_id: str, deck_id: str) -> dict[str, dict[str, Any]]:
        return await self._run("list_existing", self._list_existing, user_id, deck_id)

    def _list_existing(self, user_id: str, deck_id: str) -> dict[str, dict[str, Any]]:
        query = select(progress_table).where(
            progress_table.c.user_id == user_id,
            progress_table.c.deck_id == deck_id,
        )
        with self.engine.connect() as conn:
            rows = conn.execute(query).mappings().all()
        return {row["card_id"]: {**row, "id": str(row["id"])} for row in rows}

    async def insert_many(self, records: list[dict[str, Any]]) -> InsertResult:
        return await self._run("insert_many", self._insert_many, records)

    def _insert_many(self, records: list[dict[str, Any]]) -> InsertResult:
        result = InsertResult()
        for record in records:
            values = {key: record.get(key) for key in PROGRESS_FIELDS}
            try:
                with self.engine.begin() as conn:
                    conn.execute(insert(progress_table).values(**values))
                result.succeeded.append(record["card_id"])
            except OperationalError:
                raise
            except SQLAlchemyError as e:
                logger.warning("Insert failed for card {}: {}", record["card_id"], e)
                result.failed[record["card_id"]] = str(e.__cause__ or e)
        return result

    async def update(self, remote_id: str, record: dict[str, Any]) -> None:
        await self._run("update", self._update, remote_id, record)

    def _update(self, remote_id: str, record: dict[str, Any]) -> None:
        values = {key: record.get(key) for key in PROGRESS_FIELDS if key in record}
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    update(progress_table)
                    .where(progress_table.c.id == int(remote_id))
                    .values(**values)
                )
        except OperationalError:
            raise
        except SQLAlchemyError as e:
            raise RecallError(
                f"Remote update failed: {e}", operation="update", card_id=record.get("card_id")
            ) from e

    async def close(self) -> None:
        await asyncio.to_thread(self.engine.dispose)


def _make_engine(database_url: str) -> Engine:
    """Create an engine; in-memory SQLite shares one connection across threads."""
    if database_url.startswith("sqlite") and (":memory:" in database_url or database_url.rstrip("/") == "sqlite:"):
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(database_url, pool_pre_ping=True)


# =============================================================================
# Deck source
# =============================================================================


class DeckSource(ABC):
    """Network source of deck content."""

    @abstractmethod
    async def fetch_deck(self, deck_id: str) -> tuple[Deck, list[Card]] | None:
        """Return the deck and its cards, or None if the source does not have it."""

    async def close(self) -> None:
        return None


class HttpDeckSource(DeckSource):
    """Fetches decks from GET {base}/decks/{deck_id} as {"deck": {...}, "cards": [...]}."""

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_seconds),
            follow_redirects=True,
        )

    async def close(self) -> None:
        await self.client.aclose()

    async def fetch_deck(self, deck_id: str) -> tuple[Deck, list[Card]] | None:
        try:
            response = await self.client.get(f"{self.base_url}/decks/{deck_id}")
        except (httpx.NetworkError, httpx.TimeoutException) as e:
            raise OfflineError(
                f"Deck source unreachable: {e}", operation="fetch_deck", deck_id=deck_id
            ) from e

        if response.status_code == 404:
            return None
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise RecallError(
                f"Deck source returned {response.status_code}",
                operation="fetch_deck",
                deck_id=deck_id,
            ) from e

        return parse_deck_payload(response.json())


def parse_deck_payload(data: dict[str, Any]) -> tuple[Deck, list[Card]]:
    """
    Parse {"deck": {...}, "cards": [...]}.

    Cards without an explicit sort_order keep their position in the list.
    """
    deck = Deck.from_dict(data["deck"])
    cards = []
    for position, raw in enumerate(data.get("cards", [])):
        raw = {"sort_order": position, **raw}
        cards.append(Card.from_dict(raw, deck_id=deck.id))
    return deck, cards
