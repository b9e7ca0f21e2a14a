from __future__ import annotations

import asyncio

import pytest

from src.retry import backoff_delay_s, is_retryable_error, is_retryable_http_status, with_retry
from src.sandbox_backends.errors import BackendError, ProvisionError, TransportError


def _transport_error() -> TransportError:
    return TransportError(method="POST", url="http://x/sessions", timeout_s=1, elapsed_s=1, aborted=True)


def test_retryable_statuses():
    assert is_retryable_http_status(429)
    assert is_retryable_http_status(503)
    assert not is_retryable_http_status(404)
    assert not is_retryable_http_status(None)


def test_retryable_errors():
    assert is_retryable_error(_transport_error())
    assert is_retryable_error(BackendError("x", status_code=502))
    assert not is_retryable_error(BackendError("x", status_code=400))
    assert not is_retryable_error(ValueError("x"))

    wrapped = ProvisionError("create failed")
    wrapped.__cause__ = BackendError("bad", status_code=422)
    assert not is_retryable_error(wrapped)
    assert is_retryable_error(ProvisionError("no cause"))


def test_backoff_delay():
    assert backoff_delay_s(1, delay_s=2.0, backoff=2.0, max_delay_s=None) == 2.0
    assert backoff_delay_s(3, delay_s=2.0, backoff=2.0, max_delay_s=None) == 8.0
    assert backoff_delay_s(5, delay_s=2.0, backoff=2.0, max_delay_s=10.0) == 10.0


def test_with_retry_succeeds_after_transient_failures(monkeypatch):
    sleeps: list[float] = []

    async def fake_sleep(s):
        sleeps.append(s)

    monkeypatch.setattr("src.retry.asyncio.sleep", fake_sleep)
    calls = {"n": 0}

    async def flaky():
        calls["n"] += 1
        if calls["n"] < 3:
            raise _transport_error()
        return "ok"

    retried = []
    result = asyncio.run(
        with_retry(
            flaky,
            retries=2,
            delay_s=1.0,
            backoff=2.0,
            is_retryable=is_retryable_error,
            on_retry=lambda attempt, exc, wait: retried.append(attempt),
        )
    )

    assert result == "ok"
    assert sleeps == [1.0, 2.0]
    assert retried == [1, 2]


def test_with_retry_stops_on_non_retryable(monkeypatch):
    async def fake_sleep(s):
        raise AssertionError("should not sleep")

    monkeypatch.setattr("src.retry.asyncio.sleep", fake_sleep)

    async def broken():
        raise BackendError("bad request", status_code=400)

    with pytest.raises(BackendError):
        asyncio.run(with_retry(broken, is_retryable=is_retryable_error))


def test_with_retry_gives_up_after_retries(monkeypatch):
    async def fake_sleep(s):
        return None

    monkeypatch.setattr("src.retry.asyncio.sleep", fake_sleep)
    calls = {"n": 0}

    async def always():
        calls["n"] += 1
        raise _transport_error()

    with pytest.raises(TransportError):
        asyncio.run(with_retry(always, retries=2))
    assert calls["n"] == 3
