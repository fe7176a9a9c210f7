from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable

from copilot_gateway.errors import RateLimitExceeded

logger = logging.getLogger("uvicorn.error")


class RequestPacer:
    """Minimum interval between upstream requests for a shared credential.

    Independent of the pool's per-account rate-limit flags.
    """

    def __init__(
        self,
        *,
        min_interval_seconds: float | None = None,
        wait: bool = False,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> None:
        self.min_interval_seconds = min_interval_seconds
        self.wait = wait
        self._clock = clock
        self._sleep = sleep
        self._last_request_at: float | None = None

    @property
    def last_request_at(self) -> float | None:
        return self._last_request_at

    async def check(self) -> None:
        interval = self.min_interval_seconds
        if interval is None or interval <= 0:
            return

        now = self._clock()
        if self._last_request_at is None:
            self._last_request_at = now
            return

        elapsed = now - self._last_request_at
        if elapsed >= interval:
            self._last_request_at = now
            return

        remaining = interval - elapsed
        if not self.wait:
            logger.warning("rate_limit_exceeded wait_seconds=%.2f", remaining)
            raise RateLimitExceeded(retry_after_seconds=remaining)

        # Reserve the slot before sleeping so concurrent callers queue behind it.
        self._last_request_at = now + remaining
        logger.warning("rate_limit_waiting wait_seconds=%.2f", remaining)
        await self._sleep(remaining)
