"""Tests for bounded retry of transient failures."""

from __future__ import annotations

import pytest

from services.errors import NetworkFailure, StoreError
from services.retry import backoff_delay, with_backoff


class Flaky:
    """Fails with the given errors, then returns 'ok'."""

    def __init__(self, *errors):
        self.errors = list(errors)
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return "ok"


class TestBackoffDelay:
    def test_doubles_and_caps(self):
        assert backoff_delay(1, 0.5, 8.0, jitter=0) == 0.5
        assert backoff_delay(3, 0.5, 8.0, jitter=0) == 2.0
        assert backoff_delay(10, 0.5, 8.0, jitter=0) == 8.0

    def test_jitter_stays_in_band(self):
        for _ in range(50):
            assert 0.75 <= backoff_delay(1, 1.0, 8.0, jitter=0.25) <= 1.25


@pytest.mark.asyncio
class TestWithBackoff:
    async def test_retries_network_failures(self, settings):
        operation = Flaky(NetworkFailure(), NetworkFailure())
        assert await with_backoff(operation, settings=settings) == "ok"
        assert operation.calls == 3

    async def test_gives_up_after_attempts(self, settings):
        operation = Flaky(*(NetworkFailure() for _ in range(5)))
        with pytest.raises(NetworkFailure):
            await with_backoff(operation, settings=settings)
        assert operation.calls == settings.retry_attempts

    async def test_other_errors_are_not_retried(self, settings):
        operation = Flaky(StoreError("bad request", status_code=400))
        with pytest.raises(StoreError):
            await with_backoff(operation, settings=settings)
        assert operation.calls == 1

    async def test_attempts_override(self, settings):
        operation = Flaky(NetworkFailure())
        with pytest.raises(NetworkFailure):
            await with_backoff(operation, settings=settings, attempts=1)
        assert operation.calls == 1
