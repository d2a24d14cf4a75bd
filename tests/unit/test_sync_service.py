"""
Unit tests for the sync service.
"""

from datetime import timedelta

import httpx
import pytest
from rich.console import Console

from recall.delivery import cli
from recall.delivery.models import CardMemoryState
from recall.errors import OfflineError, RecallError
from recall.sync.remote import HttpRemoteStore, InsertResult, RemoteStore, SqlRemoteStore
from recall.sync.sync_service import SyncReport, SyncService

DECK = "spanish-101"
USER = "learner-1"


class FakeRemote(RemoteStore):
    """In-memory remote that can reject chosen cards or go offline."""

    def __init__(self, reject: set[str] | None = None, offline: bool = False):
        self.records: dict[str, dict] = {}
        self.reject = reject or set()
        self.offline = offline
        self.insert_calls = 0
        self.update_calls = 0
        self.fail_updates = False

    async def list_existing(self, user_id, deck_id):
        if self.offline:
            raise OfflineError("connection refused", operation="list_existing")
        return {
            card_id: record
            for card_id, record in self.records.items()
            if record["user_id"] == user_id and record["deck_id"] == deck_id
        }

    async def insert_many(self, records):
        self.insert_calls += 1
        result = InsertResult()
        for record in records:
            if record["card_id"] in self.reject:
                result.failed[record["card_id"]] = "rejected"
                continue
            self.records[record["card_id"]] = {**record, "id": str(len(self.records) + 1)}
            result.succeeded.append(record["card_id"])
        return result

    async def update(self, remote_id, record):
        self.update_calls += 1
        if self.fail_updates:
            raise RecallError("conflict", operation="update")
        for card_id, existing in self.records.items():
            if existing["id"] == remote_id:
                self.records[card_id] = {**record, "id": remote_id}


def graded(card_id, now, reps=1):
    return CardMemoryState(
        user_id=USER,
        card_id=card_id,
        deck_id=DECK,
        difficulty=5.0,
        stability=3.0,
        reps=reps,
        interval=3.0,
        review_date=now,
        next_review=now + timedelta(days=3),
    )


@pytest.fixture
def progress_store(deck_store, fixed_now):
    """deck_store with two graded cards and one seeded, ungraded card."""

    async def _fill():
        day = fixed_now.date()
        await deck_store.record_grade(USER, DECK, graded("spanish-101-card-000", fixed_now), True, day)
        await deck_store.record_grade(USER, DECK, graded("spanish-101-card-001", fixed_now), True, day)
        await deck_store.seed_memory_states(
            USER, [CardMemoryState.seed(USER, "spanish-101-card-002", DECK, fixed_now)]
        )
        return deck_store

    return _fill


class TestSync:
    """Tests for pushing progress."""

    @pytest.mark.asyncio
    async def test_first_sync_inserts_graded_cards(self, progress_store, fixed_now):
        store = await progress_store()
        remote = FakeRemote()

        report = await SyncService(store, remote, USER).sync(DECK, now=fixed_now)

        assert report.ok
        assert report.inserted == 2
        assert set(remote.records) == {"spanish-101-card-000", "spanish-101-card-001"}
        assert remote.records["spanish-101-card-000"]["synced_at"] == fixed_now.isoformat()
        assert await store.get_last_sync(DECK) == fixed_now

    @pytest.mark.asyncio
    async def test_second_sync_inserts_nothing(self, progress_store, fixed_now):
        store = await progress_store()
        remote = FakeRemote()
        service = SyncService(store, remote, USER)

        await service.sync(DECK, now=fixed_now)
        report = await service.sync(DECK, now=fixed_now + timedelta(hours=1))

        assert report.inserted == 0
        assert report.updated == 0
        assert report.unchanged == 2
        assert remote.insert_calls == 1
        assert len(remote.records) == 2

    @pytest.mark.asyncio
    async def test_new_grade_updates_existing_record(self, progress_store, fixed_now):
        store = await progress_store()
        remote = FakeRemote()
        service = SyncService(store, remote, USER)
        await service.sync(DECK, now=fixed_now)

        later = fixed_now + timedelta(days=3)
        await store.record_grade(
            USER, DECK, graded("spanish-101-card-000", later, reps=2), False, later.date()
        )
        report = await service.sync(DECK, now=later)

        assert report.updated == 1
        assert report.unchanged == 1
        assert remote.records["spanish-101-card-000"]["reps"] == 2

    @pytest.mark.asyncio
    async def test_partial_failure_is_reported(self, progress_store, fixed_now):
        """One rejected insert is reported; the other is kept and last_sync is not recorded."""
        store = await progress_store()
        remote = FakeRemote(reject={"spanish-101-card-001"})

        report = await SyncService(store, remote, USER).sync(DECK, now=fixed_now)

        assert not report.ok
        assert report.inserted == 1
        assert report.failed == 1
        assert report.errors == {"spanish-101-card-001": "rejected"}
        assert report.synced_at is None
        assert await store.get_last_sync(DECK) is None
        assert (await store.get_memory_state(USER, "spanish-101-card-001")).reps == 1

    @pytest.mark.asyncio
    async def test_update_failure_is_counted(self, progress_store, fixed_now):
        store = await progress_store()
        remote = FakeRemote()
        service = SyncService(store, remote, USER)
        await service.sync(DECK, now=fixed_now)

        later = fixed_now + timedelta(days=3)
        await store.record_grade(
            USER, DECK, graded("spanish-101-card-000", later, reps=2), False, later.date()
        )
        remote.fail_updates = True
        report = await service.sync(DECK, now=later)

        assert report.failed == 1
        assert "spanish-101-card-000" in report.errors
        assert report.synced_at == later

    @pytest.mark.asyncio
    async def test_offline_remote(self, progress_store, fixed_now):
        store = await progress_store()

        report = await SyncService(store, FakeRemote(offline=True), USER).sync(DECK, now=fixed_now)

        assert report.offline
        assert not report.ok
        assert await store.get_last_sync(DECK) is None
        assert len(await store.get_memory_states(USER, DECK)) == 3

    @pytest.mark.asyncio
    async def test_nothing_graded(self, deck_store, fixed_now):
        remote = FakeRemote()

        report = await SyncService(deck_store, remote, USER).sync(DECK, now=fixed_now)

        assert report.ok
        assert remote.insert_calls == 0

    @pytest.mark.asyncio
    async def test_rejected_bulk_insert_is_reported(self, progress_store, fixed_now):
        """A server error on the bulk endpoint fails every record instead of raising."""
        store = await progress_store()

        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "GET":
                return httpx.Response(200, json=[])
            return httpx.Response(500, json={"detail": "boom"})

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        remote = HttpRemoteStore("https://progress.example.test", client=client)

        report = await SyncService(store, remote, USER).sync(DECK, now=fixed_now)
        await remote.close()

        assert not report.offline
        assert report.inserted == 0
        assert report.failed == 2
        assert set(report.errors) == {"spanish-101-card-000", "spanish-101-card-001"}
        assert report.synced_at is None
        assert await store.get_last_sync(DECK) is None

    @pytest.mark.asyncio
    async def test_sql_remote_end_to_end(self, progress_store, fixed_now):
        store = await progress_store()
        remote = SqlRemoteStore("sqlite://")
        service = SyncService(store, remote, USER)

        first = await service.sync(DECK, now=fixed_now)
        second = await service.sync(DECK, now=fixed_now)
        existing = await remote.list_existing(USER, DECK)
        await remote.close()

        assert first.inserted == 2
        assert second.inserted == 0
        assert second.unchanged == 2
        assert set(existing) == {"spanish-101-card-000", "spanish-101-card-001"}


class TestSyncReport:
    def test_to_dict_limits_errors(self):
        report = SyncReport(deck_id=DECK, failed=12, errors={f"c{i}": "boom" for i in range(12)})

        data = report.to_dict()

        assert len(data["errors"]) == 10
        assert data["failed"] == 12
        assert data["synced_at"] is None


class TestSyncReportDisplay:
    """Tests for the sync command's summary output."""

    @pytest.fixture
    def output(self, monkeypatch):
        recorder = Console(record=True, width=200)
        monkeypatch.setattr(cli, "console", recorder)
        return recorder

    def test_update_failure_with_recorded_sync(self, output, fixed_now):
        report = SyncReport(
            deck_id=DECK, updated=1, failed=1, errors={"c1": "conflict"}, synced_at=fixed_now
        )

        cli._display_sync_report(report)

        text = output.export_text()
        assert "1 records failed" in text
        assert "last sync not recorded" not in text
        assert "c1: conflict" in text

    def test_insert_failure_without_recorded_sync(self, output):
        report = SyncReport(deck_id=DECK, inserted=1, failed=1, errors={"c2": "rejected"})

        cli._display_sync_report(report)

        assert "1 records failed (last sync not recorded)" in output.export_text()
