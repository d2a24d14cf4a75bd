"""
Pytest Configuration and Fixtures.

This file configures pytest and provides shared fixtures for all tests.
"""
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
import pytest_asyncio

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from recall.delivery.models import Card, Deck  # noqa: E402
from recall.storage.state_store import StateStore  # noqa: E402

DECK_ID = "spanish-101"
USER_ID = "learner-1"


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests (temporary SQLite files)")
    config.addinivalue_line("markers", "smoke: Smoke tests for CLI commands")
    config.addinivalue_line("markers", "slow: Slow tests")


def pytest_collection_modifyitems(config, items):
    """Automatically mark tests based on their location."""
    for item in items:
        # Mark based on test file location
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)
        elif "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)
        elif "smoke" in str(item.fspath):
            item.add_marker(pytest.mark.smoke)


class FakeClock:
    """Controllable UTC clock for sessions and selectors."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, days: float = 0, hours: float = 0) -> datetime:
        self.now = self.now + timedelta(days=days, hours=hours)
        return self.now


@pytest.fixture(scope="session")
def project_root():
    """Return the project root directory."""
    return PROJECT_ROOT


@pytest.fixture
def fixed_now():
    """A fixed mid-morning UTC timestamp."""
    return datetime(2026, 3, 10, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock(fixed_now):
    """Clock starting at fixed_now."""
    return FakeClock(fixed_now)


@pytest.fixture
def sample_deck():
    """Provide a sample deck for testing."""
    return Deck(id=DECK_ID, name="Spanish 101", description="Basic vocabulary")


@pytest.fixture
def make_cards():
    """Factory building n cards for a deck, sort_order 0..n-1."""

    def _make(count: int, deck_id: str = DECK_ID) -> list[Card]:
        return [
            Card(
                id=f"{deck_id}-card-{i:03d}",
                deck_id=deck_id,
                front=f"front {i}",
                back=f"back {i}",
                sort_order=i,
            )
            for i in range(count)
        ]

    return _make


@pytest.fixture
def sample_cards(make_cards):
    """Three cards in sort order."""
    return make_cards(3)


@pytest.fixture
def sample_deck_file(tmp_path):
    """A deck JSON file with three cards, no explicit sort_order."""
    import json

    path = tmp_path / "spanish.json"
    path.write_text(
        json.dumps(
            {
                "deck": {"id": DECK_ID, "name": "Spanish 101", "description": "Basic vocabulary"},
                "cards": [
                    {"id": "hola", "front": "hola", "back": "hello"},
                    {"id": "adios", "front": "adiós", "back": "goodbye"},
                    {"id": "gracias", "front": "gracias", "back": "thank you"},
                ],
            }
        ),
        encoding="utf-8",
    )
    return path


@pytest_asyncio.fixture
async def store(tmp_path):
    """Empty StateStore on a temporary SQLite file."""
    state_store = StateStore(tmp_path / "state.db", backup_dir=tmp_path / "backups")
    await state_store.connect()
    yield state_store
    await state_store.close()


@pytest_asyncio.fixture
async def deck_store(store, sample_deck, sample_cards):
    """StateStore holding the sample deck and its three cards."""
    await store.store_deck(sample_deck)
    await store.store_cards(sample_cards)
    return store
