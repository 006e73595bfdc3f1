"""Tests for the shared retry policy."""

import asyncio
import random

import httpx
import pytest

from formfill.errors import ProviderTransportError
from formfill.services.retry import RetryPolicy


def _status_error(status: int) -> httpx.HTTPStatusError:
    request = httpx.Request("POST", "https://example.test/v1")
    response = httpx.Response(status, request=request)
    return httpx.HTTPStatusError(f"HTTP {status}", request=request, response=response)


class Recorder:
    def __init__(self, outcomes):
        self.outcomes = list(outcomes)
        self.calls = 0
        self.sleeps: list[float] = []

    async def fn(self):
        self.calls += 1
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)


def _policy(rec: Recorder, **kw) -> RetryPolicy:
    defaults = dict(timeout_seconds=1.0, max_retries=2, base_delay_seconds=0.5, rng=random.Random(1), sleep=rec.sleep)
    defaults.update(kw)
    return RetryPolicy(**defaults)


class TestRetryPolicy:
    @pytest.mark.asyncio
    async def test_returns_first_success(self):
        rec = Recorder(["ok"])
        assert await _policy(rec).run(rec.fn) == "ok"
        assert rec.calls == 1
        assert rec.sleeps == []

    @pytest.mark.asyncio
    async def test_retries_transport_errors_then_succeeds(self):
        rec = Recorder([httpx.ConnectError("boom"), _status_error(503), "ok"])
        assert await _policy(rec).run(rec.fn) == "ok"
        assert rec.calls == 3
        assert len(rec.sleeps) == 2

    @pytest.mark.asyncio
    async def test_exhausted_retries_raise_transport_error(self):
        rec = Recorder([_status_error(429)] * 3)
        with pytest.raises(ProviderTransportError) as exc:
            await _policy(rec).run(rec.fn, label="openai:test")
        assert exc.value.status_code == 429
        assert rec.calls == 3

    @pytest.mark.asyncio
    async def test_non_retryable_status_fails_at_once(self):
        rec = Recorder([_status_error(401), "never"])
        with pytest.raises(ProviderTransportError):
            await _policy(rec).run(rec.fn)
        assert rec.calls == 1

    @pytest.mark.asyncio
    async def test_timeout_is_a_transport_error(self):
        rec = Recorder([])

        async def slow():
            rec.calls += 1
            await asyncio.sleep(1)

        with pytest.raises(ProviderTransportError, match="timed out"):
            await _policy(rec, timeout_seconds=0.01, max_retries=1).run(slow)
        assert rec.calls == 2

    @pytest.mark.asyncio
    async def test_other_exceptions_propagate(self):
        rec = Recorder([KeyError("bug")])
        with pytest.raises(KeyError):
            await _policy(rec).run(rec.fn)


class TestBackoff:
    def test_delay_is_jittered_exponential(self):
        policy = RetryPolicy(base_delay_seconds=0.5, rng=random.Random(3))
        for attempt in range(4):
            delay = policy.backoff_delay(attempt)
            nominal = 0.5 * 2 ** attempt
            assert 0.5 * nominal <= delay <= 1.5 * nominal
