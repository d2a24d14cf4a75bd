"""
SQLite State Store for the recall engine.

Provides local durable persistence for:
- Decks and cards (cached content)
- Memory state per (user, card)
- Daily study ledger (which cards were graded on which day, resume index)
- Per-deck last sync time

Database location: ~/.recall/state.db

Every multi-record write (seeding new cards, recording a grade) runs in a
single transaction, so a crash mid-write never leaves a half-updated state.
"""

from __future__ import annotations

import asyncio
import json
import sqlite3
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Any

import aiosqlite
from loguru import logger

from recall.delivery.models import Card, CardMemoryState, DailyStudyLedger, Deck, as_utc, utc_now
from recall.errors import RecallError, StorageUnavailableError, StoreContentionError

from .interface import StorageInterface

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS decks (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        description TEXT DEFAULT '',
        category TEXT,
        language TEXT,
        last_sync TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS cards (
        id TEXT PRIMARY KEY,
        deck_id TEXT NOT NULL,
        front TEXT NOT NULL,
        back TEXT NOT NULL,
        sort_order INTEGER DEFAULT 0,
        front_image TEXT,
        back_image TEXT,
        audio TEXT,
        language TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS card_state (
        user_id TEXT NOT NULL,
        card_id TEXT NOT NULL,
        deck_id TEXT NOT NULL,
        difficulty REAL NOT NULL,
        stability REAL NOT NULL DEFAULT 0,
        retrievability REAL NOT NULL DEFAULT 0,
        reps INTEGER NOT NULL DEFAULT 0,
        lapses INTEGER NOT NULL DEFAULT 0,
        interval REAL NOT NULL DEFAULT 0,
        review_date TEXT,
        next_review TEXT,
        PRIMARY KEY (user_id, card_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS study_days (
        user_id TEXT NOT NULL,
        deck_id TEXT NOT NULL,
        study_date TEXT NOT NULL,
        last_studied_index INTEGER NOT NULL DEFAULT 0,
        PRIMARY KEY (user_id, deck_id, study_date)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS study_day_cards (
        user_id TEXT NOT NULL,
        deck_id TEXT NOT NULL,
        study_date TEXT NOT NULL,
        card_id TEXT NOT NULL,
        position INTEGER NOT NULL,
        was_new INTEGER NOT NULL DEFAULT 0,
        PRIMARY KEY (user_id, deck_id, study_date, card_id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_cards_deck ON cards(deck_id)",
    "CREATE INDEX IF NOT EXISTS idx_card_state_user ON card_state(user_id, deck_id)",
    "CREATE INDEX IF NOT EXISTS idx_card_state_next_review ON card_state(next_review)",
]


def _ts(value: datetime | None) -> str | None:
    """Fixed-width UTC ISO format, so string comparison follows time order."""
    if value is None:
        return None
    return as_utc(value).isoformat(timespec="microseconds")


def _parse_ts(value: str | None) -> datetime | None:
    if not value:
        return None
    return as_utc(datetime.fromisoformat(value))


def _row_to_state(row: sqlite3.Row) -> CardMemoryState:
    return CardMemoryState(
        user_id=row["user_id"],
        card_id=row["card_id"],
        deck_id=row["deck_id"],
        difficulty=row["difficulty"],
        stability=row["stability"],
        retrievability=row["retrievability"],
        reps=row["reps"],
        lapses=row["lapses"],
        interval=row["interval"],
        review_date=_parse_ts(row["review_date"]),
        next_review=_parse_ts(row["next_review"]),
    )


def _row_to_card(row: sqlite3.Row) -> Card:
    return Card(
        id=row["id"],
        deck_id=row["deck_id"],
        front=row["front"],
        back=row["back"],
        sort_order=row["sort_order"],
        front_image=row["front_image"],
        back_image=row["back_image"],
        audio=row["audio"],
        language=row["language"],
    )


def _row_to_deck(row: sqlite3.Row) -> Deck:
    return Deck(
        id=row["id"],
        name=row["name"],
        description=row["description"] or "",
        category=row["category"],
        language=row["language"],
        last_sync=_parse_ts(row["last_sync"]),
    )


def _state_params(state: CardMemoryState) -> tuple:
    return (
        state.user_id,
        state.card_id,
        state.deck_id,
        state.difficulty,
        state.stability,
        state.retrievability,
        state.reps,
        state.lapses,
        state.interval,
        _ts(state.review_date),
        _ts(state.next_review),
    )


class StateStore(StorageInterface):
    """
    aiosqlite-backed implementation of StorageInterface.

    The connection is opened lazily and reopened after close(), so a call
    racing a close fails with StoreContentionError and succeeds on retry.
    """

    DEFAULT_DB_PATH = Path.home() / ".recall" / "state.db"

    def __init__(
        self,
        db_path: Path | str | None = None,
        backup_dir: Path | None = None,
        busy_timeout: float = 5.0,
    ):
        """
        Initialize the state store.

        Args:
            db_path: Database file, or ":memory:" (defaults to ~/.recall/state.db)
            backup_dir: Where clear_progress() writes JSON backups
            busy_timeout: Seconds SQLite waits on a locked database before failing
        """
        if db_path is None:
            db_path = self.DEFAULT_DB_PATH
        self.db_path = db_path if str(db_path) == ":memory:" else Path(db_path)
        self.backup_dir = backup_dir
        self.busy_timeout = busy_timeout
        self._db: aiosqlite.Connection | None = None
        self._connect_lock = asyncio.Lock()

    @property
    def is_memory(self) -> bool:
        return str(self.db_path) == ":memory:"

    async def connect(self) -> StateStore:
        """Open the database and create the schema if needed."""
        if self._db is not None:
            return self
        async with self._connect_lock:
            # Another caller may have opened it while we waited
            if self._db is not None:
                return self
            try:
                if not self.is_memory:
                    Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
                db = await aiosqlite.connect(str(self.db_path), timeout=self.busy_timeout)
                db.row_factory = aiosqlite.Row
                for statement in SCHEMA:
                    await db.execute(statement)
                await db.commit()
            except (OSError, sqlite3.Error) as exc:
                raise StorageUnavailableError(
                    f"Cannot open local store at {self.db_path}: {exc}",
                    operation="connect",
                ) from exc
            self._db = db
        logger.debug("StateStore opened at {}", self.db_path)
        return self

    async def close(self) -> None:
        """Close the database connection."""
        if self._db is not None:
            db, self._db = self._db, None
            await db.close()
            logger.debug("StateStore closed")

    async def __aenter__(self) -> StateStore:
        return await self.connect()

    # =========================================================================
    # Internals
    # =========================================================================

    def _translate(self, exc: Exception, operation: str, **context: Any) -> Exception:
        """Map sqlite/aiosqlite failures onto the engine's error taxonomy."""
        message = str(exc).lower()
        if "locked" in message or "busy" in message or "closed" in message:
            return StoreContentionError(f"{operation}: {exc}", operation=operation, **context)
        if "unable to open" in message:
            return StorageUnavailableError(f"{operation}: {exc}", operation=operation, **context)
        if isinstance(exc, sqlite3.Error):
            return RecallError(f"{operation}: {exc}", operation=operation, **context)
        return exc

    @asynccontextmanager
    async def _transaction(self, operation: str, **context: Any) -> AsyncIterator[aiosqlite.Connection]:
        """Run the enclosed statements as one atomic unit."""
        await self.connect()
        db = self._db
        try:
            yield db
            await db.commit()
        except (sqlite3.Error, ValueError) as exc:
            try:
                await db.rollback()
            except (sqlite3.Error, ValueError) as rollback_exc:
                logger.debug("Rollback after failed {} also failed: {}", operation, rollback_exc)
            translated = self._translate(exc, operation, **context)
            if translated is exc:
                raise
            raise translated from exc

    async def _fetchall(self, operation: str, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        await self.connect()
        db = self._db
        try:
            async with db.execute(sql, params) as cursor:
                return list(await cursor.fetchall())
        except (sqlite3.Error, ValueError) as exc:
            translated = self._translate(exc, operation)
            if translated is exc:
                raise
            raise translated from exc

    async def _fetchone(self, operation: str, sql: str, params: tuple = ()) -> sqlite3.Row | None:
        rows = await self._fetchall(operation, sql, params)
        return rows[0] if rows else None

    # =========================================================================
    # Content
    # =========================================================================

    async def store_deck(self, deck: Deck) -> None:
        async with self._transaction("store_deck", deck_id=deck.id) as db:
            await db.execute(
                """
                INSERT INTO decks (id, name, description, category, language)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    description = excluded.description,
                    category = excluded.category,
                    language = excluded.language
                """,
                (deck.id, deck.name, deck.description, deck.category, deck.language),
            )

    async def store_cards(self, cards: list[Card]) -> int:
        if not cards:
            return 0
        async with self._transaction("store_cards", deck_id=cards[0].deck_id) as db:
            await db.executemany(
                """
                INSERT OR REPLACE INTO cards (
                    id, deck_id, front, back, sort_order,
                    front_image, back_image, audio, language
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        c.id,
                        c.deck_id,
                        c.front,
                        c.back,
                        c.sort_order,
                        c.front_image,
                        c.back_image,
                        c.audio,
                        c.language,
                    )
                    for c in cards
                ],
            )
        logger.debug("Stored {} cards for deck {}", len(cards), cards[0].deck_id)
        return len(cards)

    async def get_deck(self, deck_id: str) -> Deck | None:
        row = await self._fetchone("get_deck", "SELECT * FROM decks WHERE id = ?", (deck_id,))
        return _row_to_deck(row) if row else None

    async def get_all_decks(self) -> list[Deck]:
        rows = await self._fetchall("get_all_decks", "SELECT * FROM decks ORDER BY name")
        return [_row_to_deck(row) for row in rows]

    async def get_cards_for_deck(self, deck_id: str) -> list[Card]:
        rows = await self._fetchall(
            "get_cards_for_deck",
            "SELECT * FROM cards WHERE deck_id = ? ORDER BY sort_order, id",
            (deck_id,),
        )
        return [_row_to_card(row) for row in rows]

    # =========================================================================
    # Memory State
    # =========================================================================

    async def get_memory_states(self, user_id: str, deck_id: str) -> dict[str, CardMemoryState]:
        rows = await self._fetchall(
            "get_memory_states",
            "SELECT * FROM card_state WHERE user_id = ? AND deck_id = ?",
            (user_id, deck_id),
        )
        return {row["card_id"]: _row_to_state(row) for row in rows}

    async def get_memory_state(self, user_id: str, card_id: str) -> CardMemoryState | None:
        row = await self._fetchone(
            "get_memory_state",
            "SELECT * FROM card_state WHERE user_id = ? AND card_id = ?",
            (user_id, card_id),
        )
        return _row_to_state(row) if row else None

    async def seed_memory_states(self, user_id: str, states: list[CardMemoryState]) -> int:
        if not states:
            return 0
        async with self._transaction("seed_memory_states", deck_id=states[0].deck_id) as db:
            cursor = await db.executemany(
                """
                INSERT OR IGNORE INTO card_state (
                    user_id, card_id, deck_id, difficulty, stability, retrievability,
                    reps, lapses, interval, review_date, next_review
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [_state_params(s) for s in states if s.user_id == user_id],
            )
            inserted = max(0, cursor.rowcount)
        logger.debug("Seeded {} new memory states for user {}", inserted, user_id)
        return inserted

    async def record_grade(
        self,
        user_id: str,
        deck_id: str,
        state: CardMemoryState,
        was_new: bool,
        study_date: date,
        last_studied_index: int | None = None,
    ) -> None:
        day = study_date.isoformat()
        async with self._transaction("record_grade", card_id=state.card_id, deck_id=deck_id) as db:
            await db.execute(
                """
                INSERT INTO card_state (
                    user_id, card_id, deck_id, difficulty, stability, retrievability,
                    reps, lapses, interval, review_date, next_review
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id, card_id) DO UPDATE SET
                    deck_id = excluded.deck_id,
                    difficulty = excluded.difficulty,
                    stability = excluded.stability,
                    retrievability = excluded.retrievability,
                    reps = excluded.reps,
                    lapses = excluded.lapses,
                    interval = excluded.interval,
                    review_date = excluded.review_date,
                    next_review = excluded.next_review
                """,
                _state_params(state),
            )
            # First grade of the day wins; later grades keep the original position
            await db.execute(
                """
                INSERT OR IGNORE INTO study_day_cards
                    (user_id, deck_id, study_date, card_id, position, was_new)
                SELECT ?, ?, ?, ?, COUNT(*), ?
                FROM study_day_cards
                WHERE user_id = ? AND deck_id = ? AND study_date = ?
                """,
                (user_id, deck_id, day, state.card_id, int(was_new), user_id, deck_id, day),
            )
            await db.execute(
                """
                INSERT OR IGNORE INTO study_days (user_id, deck_id, study_date, last_studied_index)
                VALUES (?, ?, ?, 0)
                """,
                (user_id, deck_id, day),
            )
            if last_studied_index is not None:
                await db.execute(
                    """
                    UPDATE study_days SET last_studied_index = ?
                    WHERE user_id = ? AND deck_id = ? AND study_date = ?
                    """,
                    (last_studied_index, user_id, deck_id, day),
                )

    # =========================================================================
    # Daily Ledger
    # =========================================================================

    async def get_ledger(self, user_id: str, deck_id: str, study_date: date) -> DailyStudyLedger:
        day = study_date.isoformat()
        rows = await self._fetchall(
            "get_ledger",
            """
            SELECT card_id, was_new FROM study_day_cards
            WHERE user_id = ? AND deck_id = ? AND study_date = ?
            ORDER BY position
            """,
            (user_id, deck_id, day),
        )
        ledger = DailyStudyLedger.empty(user_id, deck_id, study_date)
        ledger.graded_card_ids = [row["card_id"] for row in rows]
        ledger.new_card_ids = [row["card_id"] for row in rows if row["was_new"]]
        ledger.last_studied_index = await self.get_last_studied_index(user_id, deck_id, study_date)
        return ledger

    async def get_last_studied_index(self, user_id: str, deck_id: str, study_date: date) -> int:
        row = await self._fetchone(
            "get_last_studied_index",
            """
            SELECT last_studied_index FROM study_days
            WHERE user_id = ? AND deck_id = ? AND study_date = ?
            """,
            (user_id, deck_id, study_date.isoformat()),
        )
        return row["last_studied_index"] if row else 0

    async def set_last_studied_index(
        self, user_id: str, deck_id: str, study_date: date, index: int
    ) -> None:
        async with self._transaction("set_last_studied_index", deck_id=deck_id) as db:
            await db.execute(
                """
                INSERT INTO study_days (user_id, deck_id, study_date, last_studied_index)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(user_id, deck_id, study_date) DO UPDATE SET
                    last_studied_index = excluded.last_studied_index
                """,
                (user_id, deck_id, study_date.isoformat(), index),
            )

    async def get_last_sync(self, deck_id: str) -> datetime | None:
        row = await self._fetchone(
            "get_last_sync", "SELECT last_sync FROM decks WHERE id = ?", (deck_id,)
        )
        return _parse_ts(row["last_sync"]) if row else None

    async def set_last_sync(self, deck_id: str, when: datetime) -> None:
        async with self._transaction("set_last_sync", deck_id=deck_id) as db:
            await db.execute("UPDATE decks SET last_sync = ? WHERE id = ?", (_ts(when), deck_id))

    # =========================================================================
    # Stats & Maintenance
    # =========================================================================

    async def get_due_counts(self, user_id: str, now: datetime) -> dict[str, int]:
        rows = await self._fetchall(
            "get_due_counts",
            """
            SELECT deck_id, COUNT(*) AS cnt FROM card_state
            WHERE user_id = ? AND reps > 0 AND next_review <= ?
            GROUP BY deck_id
            """,
            (user_id, _ts(now)),
        )
        return {row["deck_id"]: row["cnt"] for row in rows}

    async def get_streak(self, user_id: str, today: date) -> int:
        rows = await self._fetchall(
            "get_streak",
            """
            SELECT DISTINCT study_date FROM study_day_cards
            WHERE user_id = ?
            ORDER BY study_date DESC
            """,
            (user_id,),
        )
        studied = {date.fromisoformat(row["study_date"]) for row in rows}

        # A streak is still alive if the learner has not studied yet today
        day = today if today in studied else today - timedelta(days=1)
        streak = 0
        while day in studied:
            streak += 1
            day -= timedelta(days=1)
        return streak

    async def clear_progress(
        self, user_id: str, deck_id: str | None = None
    ) -> tuple[int, Path | None]:
        """
        Reset review state for a user.

        DANGER: This deletes learning progress! A JSON backup is written first.

        Args:
            user_id: Learner whose progress is cleared
            deck_id: If provided, only clear progress in this deck

        Returns:
            (number of memory states deleted, backup file or None if nothing to clear)
        """
        scope = "user_id = ?" + (" AND deck_id = ?" if deck_id else "")
        params: tuple = (user_id, deck_id) if deck_id else (user_id,)

        states = await self._fetchall("clear_progress", f"SELECT * FROM card_state WHERE {scope}", params)
        days = await self._fetchall("clear_progress", f"SELECT * FROM study_days WHERE {scope}", params)
        day_cards = await self._fetchall(
            "clear_progress", f"SELECT * FROM study_day_cards WHERE {scope}", params
        )
        if not states and not day_cards and not days:
            return 0, None

        backup_dir = self.backup_dir
        if backup_dir is None:
            backup_dir = Path.cwd() / "backups" if self.is_memory else self.db_path.parent / "backups"
        backup_dir.mkdir(parents=True, exist_ok=True)
        timestamp = utc_now().strftime("%Y%m%d_%H%M%S_%f")
        backup_file = backup_dir / f"progress_backup_{timestamp}.json"

        backup = {
            "timestamp": timestamp,
            "user_id": user_id,
            "deck_id": deck_id,
            "card_state": [dict(row) for row in states],
            "study_days": [dict(row) for row in days],
            "study_day_cards": [dict(row) for row in day_cards],
        }
        with open(backup_file, "w", encoding="utf-8") as f:
            json.dump(backup, f, indent=2, default=str)
        logger.info("Progress backup saved: {}", backup_file)

        async with self._transaction("clear_progress", deck_id=deck_id) as db:
            cursor = await db.execute(f"DELETE FROM card_state WHERE {scope}", params)
            deleted = cursor.rowcount
            await db.execute(f"DELETE FROM study_day_cards WHERE {scope}", params)
            await db.execute(f"DELETE FROM study_days WHERE {scope}", params)

        logger.info("Cleared {} memory states for user {} (deck={})", deleted, user_id, deck_id or "all")
        return deleted, backup_file
