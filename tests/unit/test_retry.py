"""
Unit tests for bounded retry.
"""

import pytest

from recall.errors import DeckNotFoundError, StoreContentionError
from recall.retry import retry_async


class Flaky:
    def __init__(self, failures: int, error=None):
        self.failures = failures
        self.calls = 0
        self.error = error or StoreContentionError("database is locked", operation="test")

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return "ok"


class TestRetry:
    @pytest.mark.asyncio
    async def test_succeeds_first_time(self):
        op = Flaky(0)
        assert await retry_async(op, backoff=0) == "ok"
        assert op.calls == 1

    @pytest.mark.asyncio
    async def test_retries_contention(self):
        op = Flaky(2)
        assert await retry_async(op, attempts=3, backoff=0) == "ok"
        assert op.calls == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_attempts(self):
        op = Flaky(5)
        with pytest.raises(StoreContentionError):
            await retry_async(op, attempts=3, backoff=0)
        assert op.calls == 3

    @pytest.mark.asyncio
    async def test_non_retryable_raises_immediately(self):
        op = Flaky(1, error=DeckNotFoundError("gone", operation="test"))
        with pytest.raises(DeckNotFoundError):
            await retry_async(op, attempts=3, backoff=0)
        assert op.calls == 1

    @pytest.mark.asyncio
    async def test_backoff_doubles(self, monkeypatch):
        delays = []

        async def fake_sleep(seconds):
            delays.append(seconds)

        monkeypatch.setattr("recall.retry.asyncio.sleep", fake_sleep)
        await retry_async(Flaky(3), attempts=4, backoff=0.5)

        assert delays == [0.5, 1.0, 2.0]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("attempts", [1, 0, -2])
    async def test_single_attempt_reraises_original_error(self, attempts):
        op = Flaky(1)
        with pytest.raises(StoreContentionError) as exc_info:
            await retry_async(op, attempts=attempts, backoff=0)
        assert exc_info.value is op.error
        assert op.calls == 1
