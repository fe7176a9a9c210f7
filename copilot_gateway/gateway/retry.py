from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable, Collection
from dataclasses import dataclass, field
from typing import TypeVar

import httpx

from copilot_gateway.errors import PoolExhausted, RateLimitExceeded, UpstreamUnavailable

logger = logging.getLogger("uvicorn.error")

T = TypeVar("T")

DEFAULT_RETRYABLE_STATUSES = frozenset({429, 500, 502, 503, 504})


@dataclass(slots=True)
class RetryPolicy:
    max_attempts: int = 3
    initial_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0
    backoff_multiplier: float = 2.0
    retryable_statuses: frozenset[int] = field(
        default_factory=lambda: DEFAULT_RETRYABLE_STATUSES
    )
    jitter_ratio: float = 0.2
    on_retry: Callable[[int, BaseException], None] | None = None


def error_status(exc: BaseException) -> int | None:
    for attr in ("status_code", "status"):
        value = getattr(exc, attr, None)
        if isinstance(value, int):
            return value
    response = getattr(exc, "response", None)
    if isinstance(response, httpx.Response):
        return response.status_code
    return None


def is_network_error(exc: BaseException) -> bool:
    return isinstance(
        exc,
        (httpx.TransportError, UpstreamUnavailable, TimeoutError, ConnectionError),
    )


def is_retryable(exc: BaseException, retryable_statuses: Collection[int]) -> bool:
    # Local admission failures carry an HTTP status but never reached upstream.
    if isinstance(exc, (PoolExhausted, RateLimitExceeded)):
        return False
    status = error_status(exc)
    if status is not None and status in retryable_statuses:
        return True
    return is_network_error(exc)


def compute_delay(
    attempt: int,
    policy: RetryPolicy,
    rng: Callable[[], float] = random.random,
) -> float:
    base = policy.initial_delay_seconds * (policy.backoff_multiplier ** (attempt - 1))
    jitter = base * policy.jitter_ratio * (2.0 * rng() - 1.0)
    return max(0.0, min(policy.max_delay_seconds, base + jitter))


async def invoke_with_retry(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy | None = None,
    *,
    sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    rng: Callable[[], float] = random.random,
    operation: str = "upstream_call",
) -> T:
    """Run ``fn`` until it succeeds, a non-retryable error occurs, or attempts run out.

    Exhaustion re-raises the last error unchanged.
    """
    opts = policy or RetryPolicy()
    max_attempts = max(1, int(opts.max_attempts))
    attempt = 1
    while True:
        try:
            return await fn()
        except Exception as exc:
            if attempt >= max_attempts or not is_retryable(exc, opts.retryable_statuses):
                raise
            delay = compute_delay(attempt, opts, rng)
            logger.info(
                "retry_scheduled operation=%s attempt=%d max_attempts=%d delay_seconds=%.2f status=%s error_type=%s",
                operation,
                attempt,
                max_attempts,
                delay,
                error_status(exc),
                exc.__class__.__name__,
            )
            if opts.on_retry is not None:
                opts.on_retry(attempt, exc)
            await sleep(delay)
            attempt += 1
