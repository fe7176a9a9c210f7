from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any

from copilot_gateway.errors import GatewayError, UpstreamRejected
from copilot_gateway.gateway.pool import Credential, CredentialPool
from copilot_gateway.gateway.upstream import UpstreamToken

logger = logging.getLogger("uvicorn.error")

UserLookup = Callable[[str], Awaitable[dict[str, Any]]]

_AUTH_FAILURE_STATUSES = frozenset({401, 403})


class TokenManager:
    """Short-lived Copilot tokens per pool credential.

    Tokens are exchanged on first use and then kept fresh by one background
    task per credential, which refreshes ``refresh_in - 60`` seconds after each
    exchange. A failed refresh is retried ``refresh_retries`` times with a
    linear ``attempt * retry_backoff_seconds`` backoff; after that the stale
    token stays in place. An exchange made on behalf of a request is attempted
    once.
    """

    def __init__(
        self,
        pool: CredentialPool,
        *,
        user_lookup: UserLookup | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
        refresh_retries: int = 3,
        retry_backoff_seconds: float = 5.0,
        refresh_skew_seconds: int = 60,
        auto_refresh: bool = True,
    ) -> None:
        self._pool = pool
        self._user_lookup = user_lookup
        self._clock = clock
        self._sleep = sleep
        self._refresh_retries = max(0, int(refresh_retries))
        self._retry_backoff_seconds = max(0.0, float(retry_backoff_seconds))
        self._refresh_skew_seconds = refresh_skew_seconds
        self._auto_refresh = auto_refresh
        self._tokens: dict[str, UpstreamToken] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}

    def cached(self, account_id: str) -> UpstreamToken | None:
        return self._tokens.get(account_id)

    def invalidate(self, account_id: str) -> None:
        if self._tokens.pop(account_id, None) is not None:
            logger.info("copilot_token_invalidated account=%s", account_id)

    async def get_token(self, credential: Credential) -> str:
        current = self._tokens.get(credential.id)
        if current is not None and not current.is_expiring(
            self._clock(), self._refresh_skew_seconds
        ):
            return current.token
        # Request path: one exchange, retries belong to the caller.
        token = await self.refresh(credential, force=False, retries=0)
        return token.token

    async def refresh(
        self,
        credential: Credential,
        *,
        force: bool = True,
        retries: int | None = None,
    ) -> UpstreamToken:
        lock = self._locks.setdefault(credential.id, asyncio.Lock())
        async with lock:
            current = self._tokens.get(credential.id)
            if (
                not force
                and current is not None
                and not current.is_expiring(self._clock(), self._refresh_skew_seconds)
            ):
                return current
            token = await self._exchange(credential, stale=current, retries=retries)
        if token is not current:
            self._tokens[credential.id] = token
            await self._resolve_login(credential)
        if self._auto_refresh:
            self._schedule(credential.id)
        return token

    async def _exchange(
        self,
        credential: Credential,
        *,
        stale: UpstreamToken | None,
        retries: int | None = None,
    ) -> UpstreamToken:
        max_retries = self._refresh_retries if retries is None else max(0, retries)
        attempt = 0
        while True:
            try:
                token = await self._pool.refresh_upstream_token(credential)
            except GatewayError as exc:
                if isinstance(exc, UpstreamRejected) and exc.status_code in _AUTH_FAILURE_STATUSES:
                    self._pool.report_auth_failure(credential.id, f"Token exchange rejected ({exc.status_code})")
                    self._tokens.pop(credential.id, None)
                    raise
                if attempt >= max_retries:
                    if stale is None:
                        raise
                    logger.error(
                        "copilot_token_refresh_degraded account=%s attempts=%d error=%s action=keep_stale",
                        credential.login,
                        attempt + 1,
                        exc,
                    )
                    return stale
                attempt += 1
                delay = attempt * self._retry_backoff_seconds
                logger.warning(
                    "copilot_token_refresh_retry account=%s attempt=%d delay_seconds=%.1f error=%s",
                    credential.login,
                    attempt,
                    delay,
                    exc,
                )
                await self._sleep(delay)
                continue
            logger.debug(
                "copilot_token_refreshed account=%s expires_at=%d refresh_in=%d",
                credential.login,
                token.expires_at,
                token.refresh_in,
            )
            return token

    async def _resolve_login(self, credential: Credential) -> None:
        if self._user_lookup is None or credential.login != credential.id:
            return
        try:
            user = await self._user_lookup(credential.token)
        except GatewayError as exc:
            logger.debug("github_user_lookup_failed account=%s error=%s", credential.id, exc)
            return
        login = str(user.get("login") or "").strip()
        if login:
            self._pool.set_login(credential.id, login)
            logger.info("github_user_resolved account=%s login=%s", credential.id, login)

    def _schedule(self, account_id: str) -> None:
        task = self._tasks.get(account_id)
        if task is not None and not task.done():
            return
        self._tasks[account_id] = asyncio.create_task(
            self._refresh_loop(account_id), name=f"copilot-token-{account_id}"
        )

    async def _refresh_loop(self, account_id: str) -> None:
        while True:
            token = self._tokens.get(account_id)
            if token is None:
                return
            delay = max(1.0, float(token.refresh_in - self._refresh_skew_seconds))
            await asyncio.sleep(delay)
            credential = self._pool.get(account_id)
            if credential is None or not credential.active:
                self._tokens.pop(account_id, None)
                return
            try:
                async with self._locks.setdefault(account_id, asyncio.Lock()):
                    refreshed = await self._exchange(credential, stale=self._tokens.get(account_id))
                self._tokens[account_id] = refreshed
            except GatewayError as exc:
                logger.error("copilot_token_refresh_failed account=%s error=%s", credential.login, exc)
                return

    async def close(self) -> None:
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
