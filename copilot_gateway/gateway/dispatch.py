from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Literal, TypeVar

import httpx
from pydantic import ValidationError

from copilot_gateway.errors import GatewayError, UpstreamRejected, UpstreamUnavailable
from copilot_gateway.gateway.anthropic_translation import openai_response_to_anthropic
from copilot_gateway.gateway.cache import CacheKeyOptions, ResponseCache
from copilot_gateway.gateway.pacing import RequestPacer
from copilot_gateway.gateway.pool import Credential, CredentialPool
from copilot_gateway.gateway.retry import RetryPolicy, invoke_with_retry
from copilot_gateway.gateway.stream_translation import (
    openai_passthrough_stream,
    translate_stream,
)
from copilot_gateway.gateway.tokens import TokenManager
from copilot_gateway.gateway.upstream import CopilotClient, parse_retry_after_seconds

logger = logging.getLogger("uvicorn.error")

T = TypeVar("T")

Target = Literal["openai", "anthropic"]


@dataclass(slots=True)
class ChatRequest:
    """An OpenAI-shaped chat payload plus the protocol the caller speaks."""

    payload: dict[str, Any]
    target: Target = "openai"

    @property
    def model(self) -> str:
        return str(self.payload.get("model") or "")

    @property
    def messages(self) -> list[dict[str, Any]]:
        messages = self.payload.get("messages")
        return messages if isinstance(messages, list) else []

    @property
    def stream(self) -> bool:
        return bool(self.payload.get("stream"))


@dataclass(slots=True)
class CompleteResponse:
    body: dict[str, Any]
    from_cache: bool = False
    cache_key: str | None = None
    account_id: str | None = None


@dataclass(slots=True)
class EventStream:
    events: AsyncIterator[bytes]
    account_id: str | None = None
    media_type: str = "text/event-stream"


def error_envelope(exc: GatewayError, target: Target) -> tuple[int, dict[str, Any]]:
    if target == "anthropic":
        return exc.status_code, exc.to_anthropic_error()
    return exc.status_code, exc.to_openai_error()


class DispatchOrchestrator:
    """Cache lookup, credential selection and the retried upstream call, in that order."""

    def __init__(
        self,
        *,
        pool: CredentialPool,
        cache: ResponseCache,
        client: CopilotClient,
        tokens: TokenManager,
        pacer: RequestPacer | None = None,
        retry_policy: RetryPolicy | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> None:
        self.pool = pool
        self.cache = cache
        self.client = client
        self.tokens = tokens
        self.pacer = pacer or RequestPacer()
        self.retry_policy = retry_policy or RetryPolicy()
        self._clock = clock
        self._sleep = sleep
        self._drains: set[asyncio.Task[None]] = set()

    async def dispatch_chat(self, request: ChatRequest) -> CompleteResponse | EventStream:
        if request.stream:
            return await self._dispatch_stream(request)

        cache_key = self._cache_key(request)
        if cache_key is not None:
            entry = self.cache.get(cache_key)
            if entry is not None:
                logger.info(
                    "cache_hit key=%s model=%s saved_tokens=%d",
                    cache_key,
                    entry.model,
                    entry.input_tokens + entry.output_tokens,
                )
                return CompleteResponse(
                    body=self._render(entry.response, request.target),
                    from_cache=True,
                    cache_key=cache_key,
                )

        payload = request.payload
        body, credential = await self._invoke(
            lambda token: self.client.create_chat_completion(payload, token),
            operation="chat_completions",
        )
        if cache_key is not None:
            usage = body.get("usage") if isinstance(body.get("usage"), dict) else {}
            self.cache.put(
                cache_key,
                body,
                model=request.model,
                input_tokens=int(usage.get("prompt_tokens") or 0),
                output_tokens=int(usage.get("completion_tokens") or 0),
            )
        return CompleteResponse(
            body=self._render(body, request.target),
            cache_key=cache_key,
            account_id=credential.id,
        )

    async def _dispatch_stream(self, request: ChatRequest) -> EventStream:
        payload = request.payload
        upstream, credential = await self._invoke(
            lambda token: self.client.open_chat_stream(payload, token),
            operation="chat_completions_stream",
        )
        chunks = self.client.iter_sse_json(upstream)
        if request.target == "anthropic":
            events = translate_stream(chunks)
        else:
            events = openai_passthrough_stream(chunks)
        return EventStream(
            events=self._forward(events, upstream),
            account_id=credential.id,
        )

    async def dispatch_embeddings(self, payload: dict[str, Any]) -> dict[str, Any]:
        body, _ = await self._invoke(
            lambda token: self.client.create_embeddings(payload, token),
            operation="embeddings",
        )
        return body

    # Administrative

    def cache_stats(self) -> dict[str, Any]:
        return self.cache.stats()

    def cache_clear(self) -> None:
        self.cache.clear()

    def cache_delete(self, key: str) -> bool:
        return self.cache.delete(key)

    def pool_status(self) -> dict[str, Any]:
        return self.pool.status()

    def pool_accounts_status(self) -> list[dict[str, Any]]:
        return self.pool.accounts_status()

    @property
    def pending_drains(self) -> set[asyncio.Task[None]]:
        return set(self._drains)

    async def close(self) -> None:
        tasks = list(self._drains)
        self._drains.clear()
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass

    # Internals

    def _cache_key(self, request: ChatRequest) -> str | None:
        if not self.cache.enabled:
            return None
        try:
            options = CacheKeyOptions.from_request(request.payload)
        except ValidationError as exc:
            logger.info(
                "cache_bypassed model=%s reason=unsupported_options errors=%d",
                request.model,
                exc.error_count(),
            )
            return None
        return self.cache.key(request.model, request.messages, options)

    @staticmethod
    def _render(body: dict[str, Any], target: Target) -> dict[str, Any]:
        if target == "anthropic":
            return openai_response_to_anthropic(body)
        return body

    async def _invoke(
        self,
        call: Callable[[str], Awaitable[T]],
        *,
        operation: str,
    ) -> tuple[T, Credential]:
        async def attempt() -> tuple[T, Credential]:
            await self.pacer.check()
            credential = self.pool.select()
            token = await self.tokens.get_token(credential)
            try:
                result = await call(token)
            except UpstreamRejected as exc:
                self._report_rejected(credential, exc)
                raise
            except (UpstreamUnavailable, httpx.TransportError) as exc:
                self.pool.report_error(credential.id, str(exc))
                raise
            self.pool.report_success(credential.id)
            return result, credential

        return await invoke_with_retry(
            attempt, self.retry_policy, sleep=self._sleep, operation=operation
        )

    def _report_rejected(self, credential: Credential, exc: UpstreamRejected) -> None:
        message = f"HTTP {exc.status_code}"
        if exc.status_code == 429:
            if self.pool.enabled:
                retry_after = parse_retry_after_seconds(exc.headers)
                self.pool.report_rate_limited(credential.id, self._clock() + retry_after)
            self.pool.report_error(credential.id, message)
            return
        if exc.status_code == 401:
            self.tokens.invalidate(credential.id)
        self.pool.report_error(credential.id, message)

    async def _forward(
        self, events: AsyncIterator[bytes], upstream: httpx.Response
    ) -> AsyncIterator[bytes]:
        detached = False
        try:
            async for event in events:
                yield event
        except (GeneratorExit, asyncio.CancelledError):
            # Client went away: the upstream call runs to completion unread.
            detached = True
            task = asyncio.create_task(
                _drain(events, upstream), name="copilot-stream-drain"
            )
            self._drains.add(task)
            task.add_done_callback(self._drains.discard)
            raise
        finally:
            if not detached:
                await upstream.aclose()


async def _drain(events: AsyncIterator[bytes], upstream: httpx.Response) -> None:
    discarded = 0
    try:
        async for _ in events:
            discarded += 1
    except (GatewayError, httpx.HTTPError) as exc:
        logger.info("upstream_stream_drain_failed error=%s", exc)
    finally:
        await upstream.aclose()
    logger.debug("upstream_stream_drained discarded_events=%d", discarded)
