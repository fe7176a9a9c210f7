from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from typing import Any

import httpx
import pytest

from copilot_gateway.errors import PoolExhausted, UpstreamRejected
from copilot_gateway.gateway.cache import CacheConfig, ResponseCache
from copilot_gateway.gateway.dispatch import (
    ChatRequest,
    CompleteResponse,
    DispatchOrchestrator,
    EventStream,
    error_envelope,
)
from copilot_gateway.gateway.pool import CredentialPool
from copilot_gateway.gateway.tokens import TokenManager
from copilot_gateway.gateway.upstream import CopilotClient

CHAT_REQUEST = {"model": "gpt-4o", "messages": [{"role": "user", "content": "hello"}]}


class _Clock:
    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class _FakeCopilot:
    """Token exchange plus chat/embeddings endpoints, keyed by account."""

    def __init__(self) -> None:
        self.chat_calls: list[str] = []
        self.rate_limited: set[str] = set()
        self.chat_status = 200
        self.stream_lines: list[str] = []
        self.token_status = 200
        self.token_calls = 0
        self.stream_body: httpx.AsyncByteStream | None = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/copilot_internal/v2/token":
            self.token_calls += 1
            if self.token_status != 200:
                return httpx.Response(self.token_status, json={"message": "token service error"})
            github_token = request.headers["authorization"].removeprefix("token ")
            return httpx.Response(
                200,
                json={"token": f"cop-{github_token}", "expires_at": 4_000_000_000, "refresh_in": 1500},
            )
        account = request.headers["authorization"].removeprefix("Bearer cop-")
        if request.url.path == "/embeddings":
            return httpx.Response(200, json={"data": [{"embedding": [0.1]}], "account": account})
        self.chat_calls.append(account)
        if account in self.rate_limited:
            return httpx.Response(429, headers={"retry-after": "30"}, json={"error": {"message": "rate limited"}})
        if self.chat_status != 200:
            return httpx.Response(self.chat_status, json={"error": {"message": "bad request", "type": "invalid"}})
        if json.loads(request.content).get("stream"):
            if self.stream_body is not None:
                return httpx.Response(200, headers={"content-type": "text/event-stream"}, stream=self.stream_body)
            body = "".join(f"{line}\n\n" for line in self.stream_lines)
            return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=body.encode())
        return httpx.Response(
            200,
            json={
                "id": "chatcmpl-1",
                "model": "gpt-4o",
                "choices": [
                    {"index": 0, "message": {"role": "assistant", "content": "hi"}, "finish_reason": "stop"}
                ],
                "usage": {"prompt_tokens": 12, "completion_tokens": 5},
            },
        )


class _RecordingStream(httpx.AsyncByteStream):
    def __init__(self, lines: list[str]) -> None:
        self.lines = lines
        self.sent = 0
        self.closed = False

    async def __aiter__(self) -> AsyncIterator[bytes]:
        for line in self.lines:
            self.sent += 1
            yield f"{line}\n\n".encode()

    async def aclose(self) -> None:
        self.closed = True


async def _no_sleep(_: float) -> None:
    return None


def _orchestrator(
    fake: _FakeCopilot,
    *,
    tokens: list[str],
    strategy: Any = "round-robin",
    cache_enabled: bool = False,
    clock: _Clock | None = None,
) -> DispatchOrchestrator:
    clock = clock or _Clock()
    client = CopilotClient(
        github_api_base_url="https://github.test",
        copilot_base_url="https://copilot.test",
        transport=httpx.MockTransport(fake),
    )
    pool = CredentialPool(strategy=strategy, token_exchanger=client.get_copilot_token, clock=clock)
    for token in tokens:
        pool.add_account(token, login=token.removeprefix("gho_"))
    return DispatchOrchestrator(
        pool=pool,
        cache=ResponseCache(CacheConfig(enabled=cache_enabled), clock=clock),
        client=client,
        tokens=TokenManager(pool, auto_refresh=False),
        clock=clock,
        sleep=_no_sleep,
    )


def test_identical_request_is_served_from_cache_second_time() -> None:
    fake = _FakeCopilot()
    dispatcher = _orchestrator(fake, tokens=["gho_a"], cache_enabled=True)

    async def scenario() -> list[Any]:
        first = await dispatcher.dispatch_chat(ChatRequest(payload=dict(CHAT_REQUEST)))
        second = await dispatcher.dispatch_chat(ChatRequest(payload=dict(CHAT_REQUEST)))
        await dispatcher.client.close()
        return [first, second]

    first, second = asyncio.run(scenario())

    assert isinstance(first, CompleteResponse) and isinstance(second, CompleteResponse)
    assert first.from_cache is False
    assert second.from_cache is True
    assert second.body == first.body
    assert first.cache_key == second.cache_key
    assert fake.chat_calls == ["gho_a"]
    stats = dispatcher.cache_stats()
    assert stats["saved_tokens"] == 17
    assert stats["hits"] == 1
    assert stats["misses"] == 1


def test_rate_limited_account_is_skipped_until_reset() -> None:
    fake = _FakeCopilot()
    clock = _Clock()
    dispatcher = _orchestrator(fake, tokens=["gho_a", "gho_b"], clock=clock)
    fake.rate_limited.add("gho_a")

    async def dispatch_accounts(count: int) -> list[str | None]:
        accounts: list[str | None] = []
        for _ in range(count):
            result = await dispatcher.dispatch_chat(ChatRequest(payload=dict(CHAT_REQUEST)))
            assert isinstance(result, CompleteResponse)
            accounts.append(dispatcher.pool.get(result.account_id).login)
        return accounts

    async def scenario() -> tuple[list[str | None], list[str | None]]:
        during = await dispatch_accounts(4)
        fake.rate_limited.clear()
        clock.now += 31
        after = await dispatch_accounts(2)
        await dispatcher.client.close()
        return during, after

    during, after = asyncio.run(scenario())

    assert during == ["b", "b", "b", "b"]
    assert fake.chat_calls[:2] == ["gho_a", "gho_b"]
    assert "gho_a" not in fake.chat_calls[2:5]
    assert after == ["a", "b"]
    limited = next(item for item in dispatcher.pool_accounts_status() if item["login"] == "a")
    assert limited["rate_limited"] is False
    assert limited["error_count"] == 1


def test_stream_request_is_translated_and_never_cached() -> None:
    fake = _FakeCopilot()
    fake.stream_lines = [
        'data: {"id":"c1","model":"gpt-4o","choices":[{"index":0,"delta":{"content":"Hi"},"finish_reason":null}]}',
        'data: {"id":"c1","model":"gpt-4o","choices":[{"index":0,"delta":{},"finish_reason":"stop"}]}',
        "data: [DONE]",
    ]
    dispatcher = _orchestrator(fake, tokens=["gho_a"], cache_enabled=True)

    async def scenario() -> list[bytes]:
        payload = {**CHAT_REQUEST, "stream": True}
        result = await dispatcher.dispatch_chat(ChatRequest(payload=payload, target="anthropic"))
        assert isinstance(result, EventStream)
        frames = [frame async for frame in result.events]
        await dispatcher.client.close()
        return frames

    frames = asyncio.run(scenario())

    event_types = [frame.split(b"\n", 1)[0] for frame in frames]
    assert event_types == [
        b"event: message_start",
        b"event: content_block_start",
        b"event: content_block_delta",
        b"event: content_block_stop",
        b"event: message_delta",
        b"event: message_stop",
    ]
    assert len(dispatcher.cache) == 0


def test_openai_stream_passes_chunks_through() -> None:
    fake = _FakeCopilot()
    fake.stream_lines = ['data: {"id":"c1","choices":[]}', "data: [DONE]"]
    dispatcher = _orchestrator(fake, tokens=["gho_a"])

    async def scenario() -> list[bytes]:
        result = await dispatcher.dispatch_chat(ChatRequest(payload={**CHAT_REQUEST, "stream": True}))
        assert isinstance(result, EventStream)
        frames = [frame async for frame in result.events]
        await dispatcher.client.close()
        return frames

    assert asyncio.run(scenario()) == [b'data: {"id":"c1","choices":[]}\n\n', b"data: [DONE]\n\n"]


def test_anthropic_target_gets_translated_body() -> None:
    fake = _FakeCopilot()
    dispatcher = _orchestrator(fake, tokens=["gho_a"])

    async def scenario() -> Any:
        result = await dispatcher.dispatch_chat(ChatRequest(payload=dict(CHAT_REQUEST), target="anthropic"))
        await dispatcher.client.close()
        return result

    result = asyncio.run(scenario())

    assert result.body["type"] == "message"
    assert result.body["content"] == [{"type": "text", "text": "hi"}]
    assert result.body["stop_reason"] == "end_turn"


def test_non_retryable_rejection_is_surfaced_once() -> None:
    fake = _FakeCopilot()
    fake.chat_status = 400
    dispatcher = _orchestrator(fake, tokens=["gho_a"])

    async def scenario() -> None:
        try:
            await dispatcher.dispatch_chat(ChatRequest(payload=dict(CHAT_REQUEST)))
        finally:
            await dispatcher.client.close()

    with pytest.raises(UpstreamRejected) as excinfo:
        asyncio.run(scenario())

    assert fake.chat_calls == ["gho_a"]
    status_code, body = error_envelope(excinfo.value, "openai")
    assert status_code == 400
    assert body == {"error": {"message": "bad request", "type": "invalid"}}
    status_code, body = error_envelope(excinfo.value, "anthropic")
    assert body == {"type": "error", "error": {"type": "invalid_request_error", "message": "bad request"}}
    assert dispatcher.pool.credentials[0].error_count == 1


def test_exhausted_pool_maps_to_overloaded_envelope() -> None:
    fake = _FakeCopilot()
    dispatcher = _orchestrator(fake, tokens=["gho_a"])
    dispatcher.pool.pause(dispatcher.pool.credentials[0].id)

    async def scenario() -> None:
        try:
            await dispatcher.dispatch_chat(ChatRequest(payload=dict(CHAT_REQUEST)))
        finally:
            await dispatcher.client.close()

    with pytest.raises(PoolExhausted) as excinfo:
        asyncio.run(scenario())

    assert fake.chat_calls == []
    status_code, body = error_envelope(excinfo.value, "anthropic")
    assert status_code == 503
    assert body["error"]["type"] == "overloaded_error"


def test_embeddings_use_selected_account() -> None:
    fake = _FakeCopilot()
    dispatcher = _orchestrator(fake, tokens=["gho_a"])

    async def scenario() -> dict[str, Any]:
        body = await dispatcher.dispatch_embeddings({"model": "text-embedding-3-small", "input": ["x"]})
        await dispatcher.client.close()
        return body

    body = asyncio.run(scenario())

    assert body["account"] == "gho_a"
    assert dispatcher.pool.credentials[0].request_count == 1


def test_failing_token_exchange_is_retried_only_by_invoker() -> None:
    fake = _FakeCopilot()
    fake.token_status = 500
    dispatcher = _orchestrator(fake, tokens=["gho_a"])

    async def scenario() -> None:
        try:
            await dispatcher.dispatch_chat(ChatRequest(payload=dict(CHAT_REQUEST)))
        finally:
            await dispatcher.client.close()

    with pytest.raises(UpstreamRejected) as excinfo:
        asyncio.run(scenario())

    assert excinfo.value.status_code == 500
    assert fake.token_calls == dispatcher.retry_policy.max_attempts == 3
    assert fake.chat_calls == []


STREAM_LINES = [
    'data: {"id":"c1","model":"gpt-4o","choices":[{"index":0,"delta":{"content":"Hi"},"finish_reason":null}]}',
    'data: {"id":"c1","model":"gpt-4o","choices":[{"index":0,"delta":{"content":" there"},"finish_reason":null}]}',
    'data: {"id":"c1","model":"gpt-4o","choices":[{"index":0,"delta":{},"finish_reason":"stop"}]}',
    "data: [DONE]",
]


def test_client_disconnect_lets_upstream_stream_complete() -> None:
    fake = _FakeCopilot()
    body = _RecordingStream(STREAM_LINES)
    fake.stream_body = body
    dispatcher = _orchestrator(fake, tokens=["gho_a"])

    async def scenario() -> bytes:
        result = await dispatcher.dispatch_chat(
            ChatRequest(payload={**CHAT_REQUEST, "stream": True}, target="anthropic")
        )
        assert isinstance(result, EventStream)
        first = await anext(result.events)
        await result.events.aclose()
        drains = dispatcher.pending_drains
        assert len(drains) == 1
        await asyncio.gather(*drains)
        await dispatcher.client.close()
        return first

    first = asyncio.run(scenario())

    assert first.startswith(b"event: message_start")
    assert body.sent == len(STREAM_LINES)
    assert body.closed is True
    assert dispatcher.pending_drains == set()


def test_fully_consumed_stream_closes_upstream_immediately() -> None:
    fake = _FakeCopilot()
    body = _RecordingStream(STREAM_LINES)
    fake.stream_body = body
    dispatcher = _orchestrator(fake, tokens=["gho_a"])

    async def scenario() -> list[bytes]:
        result = await dispatcher.dispatch_chat(ChatRequest(payload={**CHAT_REQUEST, "stream": True}))
        assert isinstance(result, EventStream)
        frames = [frame async for frame in result.events]
        await dispatcher.client.close()
        return frames

    frames = asyncio.run(scenario())

    assert frames[-1] == b"data: [DONE]\n\n"
    assert body.closed is True
    assert dispatcher.pending_drains == set()
