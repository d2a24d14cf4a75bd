"""
Integration Tests for the Study Flow.

Tests the core learning path on a temporary SQLite file:
1. DeckLoader imports a deck file
2. StudySession selects, grades and persists progress
3. A new store handle resumes from what was persisted
4. SyncService pushes progress to a SQL remote
5. clear_progress resets with a backup
"""

import random

import pytest

from recall.delivery.deck_loader import DeckLoader
from recall.delivery.models import Grade, SessionMode
from recall.delivery.session import StudySession, StudyStatus
from recall.storage.state_store import StateStore
from recall.sync.remote import SqlRemoteStore
from recall.sync.sync_service import SyncService

pytestmark = pytest.mark.integration

USER = "learner-1"
DECK = "spanish-101"


def new_session(store, clock, **kwargs) -> StudySession:
    return StudySession(store, USER, clock=clock, rng=random.Random(0), retry_backoff=0, **kwargs)


class TestStudyFlow:
    """End-to-end study over several days."""

    @pytest.mark.asyncio
    async def test_full_day_then_next_day(self, tmp_path, sample_deck_file, clock):
        db_path = tmp_path / "state.db"

        async with StateStore(db_path, backup_dir=tmp_path / "backups") as store:
            await DeckLoader(store).import_file(sample_deck_file)

            session = new_session(store, clock)
            view = await session.start(DECK)
            assert [c.id for c in session.cards] == ["hola", "adios", "gracias"]
            assert view.current_card.id == "hola"

            await session.grade(Grade.AGAIN)
            await session.grade(Grade.GOOD)
            await session.grade(Grade.GOOD)
            assert session.is_complete

        # Reopen the file: nothing left today
        async with StateStore(db_path) as store:
            assert await new_session(store, clock).status(DECK) == StudyStatus.STUDY_AGAIN

            clock.advance(days=1)
            session = new_session(store, clock)
            view = await session.start(DECK)

            assert view.total == 1
            assert view.current_card.id == "hola"

            state = await session.grade(Grade.GOOD)

            assert state.reps == 2
            assert state.lapses == 1
            assert state.interval > 1
            assert session.is_complete

    @pytest.mark.asyncio
    async def test_interrupted_session_resumes(self, tmp_path, sample_deck_file, clock):
        db_path = tmp_path / "state.db"

        async with StateStore(db_path) as store:
            await DeckLoader(store).import_file(sample_deck_file)
            session = new_session(store, clock)
            await session.start(DECK)
            await session.grade(Grade.GOOD)

        clock.advance(hours=2)
        async with StateStore(db_path) as store:
            session = new_session(store, clock)
            assert await session.status(DECK) == StudyStatus.CONTINUE

            view = await session.start(DECK)

            assert view.current_card.id == "adios"
            assert view.position == 2
            assert session.counters.new_cards == 1

    @pytest.mark.asyncio
    async def test_new_card_cap_across_sessions(self, tmp_path, make_cards, sample_deck, clock):
        async with StateStore(tmp_path / "state.db") as store:
            await store.store_deck(sample_deck)
            await store.store_cards(make_cards(25))

            session = new_session(store, clock, new_card_cap=20)
            view = await session.start(DECK)
            assert view.total == 20
            for _ in range(5):
                await session.grade(Grade.GOOD)

            # A second handle on the same day still sees only 20 new cards
            reloaded = new_session(store, clock, new_card_cap=20)
            view = await reloaded.start(DECK)

            assert view.total == 20
            assert view.position == 6
            assert len(await store.get_memory_states(USER, DECK)) == 20

    @pytest.mark.asyncio
    async def test_extra_study_after_completion(self, tmp_path, sample_deck_file, clock):
        async with StateStore(tmp_path / "state.db") as store:
            await DeckLoader(store).import_file(sample_deck_file)
            session = new_session(store, clock)
            await session.start(DECK)
            for _ in range(3):
                await session.grade(Grade.GOOD)

            view = await session.restart()

            assert view.mode == SessionMode.EXTRA
            assert view.total == 3
            while not session.is_complete:
                await session.grade(Grade.GOOD)

            ledger = await store.get_ledger(USER, DECK, clock().date())
            assert ledger.graded_card_ids == ["hola", "adios", "gracias"]
            states = await store.get_memory_states(USER, DECK)
            assert {s.reps for s in states.values()} == {1}


class TestSyncAndReset:
    """Sync to a SQL remote file, then reset local progress."""

    @pytest.mark.asyncio
    async def test_sync_then_reset(self, tmp_path, sample_deck_file, clock):
        remote = SqlRemoteStore(f"sqlite:///{tmp_path / 'remote.db'}")

        async with StateStore(tmp_path / "state.db", backup_dir=tmp_path / "backups") as store:
            await DeckLoader(store).import_file(sample_deck_file)
            session = new_session(store, clock)
            await session.start(DECK)
            await session.grade(Grade.GOOD)
            await session.grade(Grade.AGAIN)

            service = SyncService(store, remote, USER, retry_backoff=0)
            first = await service.sync(DECK, now=clock())
            second = await service.sync(DECK, now=clock())

            assert first.inserted == 2
            assert second.inserted == 0
            assert await store.get_last_sync(DECK) == clock()

            deleted, backup = await store.clear_progress(USER, DECK)

            assert deleted == 3  # two graded + one seeded
            assert backup.exists()
            assert await new_session(store, clock).status(DECK) == StudyStatus.NEVER_STUDIED

        await remote.close()
