from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx
import pytest

from copilot_gateway.errors import PoolExhausted, UpstreamRejected, UpstreamUnavailable
from copilot_gateway.gateway.retry import (
    RetryPolicy,
    compute_delay,
    error_status,
    invoke_with_retry,
    is_retryable,
)


class _FlakyCall:
    def __init__(self, failures: list[BaseException], result: Any = "ok") -> None:
        self._failures = list(failures)
        self._result = result
        self.calls = 0

    async def __call__(self) -> Any:
        self.calls += 1
        if self._failures:
            raise self._failures.pop(0)
        return self._result


class _RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def _rejected(status_code: int) -> UpstreamRejected:
    return UpstreamRejected(f"status {status_code}", status_code=status_code)


def test_retryable_status_succeeds_after_max_attempts_minus_one_failures() -> None:
    call = _FlakyCall([_rejected(503), _rejected(503)])
    sleep = _RecordingSleep()
    retried: list[int] = []
    policy = RetryPolicy(max_attempts=3, on_retry=lambda attempt, exc: retried.append(attempt))

    result = asyncio.run(invoke_with_retry(call, policy, sleep=sleep, rng=lambda: 0.5))

    assert result == "ok"
    assert call.calls == 3
    assert retried == [1, 2]
    assert sleep.delays == [1.0, 2.0]


def test_non_retryable_status_is_raised_immediately() -> None:
    call = _FlakyCall([_rejected(400)])
    sleep = _RecordingSleep()

    with pytest.raises(UpstreamRejected) as excinfo:
        asyncio.run(invoke_with_retry(call, RetryPolicy(), sleep=sleep))

    assert excinfo.value.status_code == 400
    assert call.calls == 1
    assert sleep.delays == []


def test_exhaustion_reraises_last_error_unchanged(caplog: Any) -> None:
    last = _rejected(502)
    call = _FlakyCall([_rejected(500), _rejected(503), last])

    with caplog.at_level(logging.INFO):
        with pytest.raises(UpstreamRejected) as excinfo:
            asyncio.run(invoke_with_retry(call, RetryPolicy(), sleep=_RecordingSleep()))

    assert excinfo.value is last
    assert call.calls == 3
    assert caplog.text.count("retry_scheduled") == 2


def test_transport_failures_are_retried() -> None:
    request = httpx.Request("POST", "https://api.githubcopilot.com/chat/completions")
    call = _FlakyCall(
        [
            httpx.ConnectError("refused", request=request),
            UpstreamUnavailable("read timeout"),
        ]
    )

    result = asyncio.run(invoke_with_retry(call, RetryPolicy(), sleep=_RecordingSleep()))

    assert result == "ok"
    assert call.calls == 3


def test_pool_exhaustion_is_not_retried() -> None:
    call = _FlakyCall([PoolExhausted()])

    with pytest.raises(PoolExhausted):
        asyncio.run(invoke_with_retry(call, RetryPolicy(), sleep=_RecordingSleep()))

    assert call.calls == 1


def test_compute_delay_applies_symmetric_jitter_and_cap() -> None:
    policy = RetryPolicy(initial_delay_seconds=1.0, max_delay_seconds=30.0, backoff_multiplier=2.0)

    assert compute_delay(1, policy, lambda: 0.0) == pytest.approx(0.8)
    assert compute_delay(1, policy, lambda: 1.0) == pytest.approx(1.2)
    assert compute_delay(3, policy, lambda: 0.5) == pytest.approx(4.0)
    assert compute_delay(10, policy, lambda: 1.0) == 30.0


def test_error_status_reads_response_status() -> None:
    request = httpx.Request("GET", "https://example.test")
    response = httpx.Response(429, request=request)
    exc = httpx.HTTPStatusError("too many", request=request, response=response)

    assert error_status(exc) == 429
    assert is_retryable(exc, {429})
    assert not is_retryable(exc, {503})
    assert error_status(ValueError("nope")) is None
