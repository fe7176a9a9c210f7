"""Re-encode Copilot (OpenAI-style) chat chunks as Anthropic stream events.

One ``AnthropicStreamState`` belongs to one client connection. Chunks must be
fed in arrival order; each call returns the events to emit for that chunk.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

import httpx

from copilot_gateway.errors import GatewayError

logger = logging.getLogger("uvicorn.error")

STREAM_ERROR_MESSAGE = "An unexpected error occurred during streaming."

_STOP_REASONS = {
    "stop": "end_turn",
    "length": "max_tokens",
    "tool_calls": "tool_use",
    "content_filter": "end_turn",
}


@dataclass(slots=True)
class ToolCallBlock:
    id: str
    name: str
    block_index: int


@dataclass(slots=True)
class AnthropicStreamState:
    message_start_sent: bool = False
    content_block_index: int = 0
    content_block_open: bool = False
    tool_calls: dict[int, ToolCallBlock] = field(default_factory=dict)
    finished: bool = False

    @property
    def tool_block_open(self) -> bool:
        if not self.content_block_open:
            return False
        return any(
            call.block_index == self.content_block_index
            for call in self.tool_calls.values()
        )


def map_stop_reason(finish_reason: str | None) -> str | None:
    if finish_reason is None:
        return None
    return _STOP_REASONS.get(finish_reason, "end_turn")


def _usage(chunk: dict[str, Any]) -> dict[str, Any]:
    usage = chunk.get("usage")
    return usage if isinstance(usage, dict) else {}


def _cached_tokens(chunk: dict[str, Any]) -> int | None:
    details = _usage(chunk).get("prompt_tokens_details")
    if not isinstance(details, dict):
        return None
    cached = details.get("cached_tokens")
    return int(cached) if isinstance(cached, (int, float)) else None


def _token_usage(chunk: dict[str, Any], *, output_tokens: int) -> dict[str, Any]:
    prompt_tokens = int(_usage(chunk).get("prompt_tokens") or 0)
    cached = _cached_tokens(chunk)
    usage: dict[str, Any] = {
        "input_tokens": prompt_tokens - (cached or 0),
        "output_tokens": output_tokens,
    }
    if cached is not None:
        usage["cache_read_input_tokens"] = cached
    return usage


def _message_start(chunk: dict[str, Any]) -> dict[str, Any]:
    return {
        "type": "message_start",
        "message": {
            "id": chunk.get("id"),
            "type": "message",
            "role": "assistant",
            "content": [],
            "model": chunk.get("model"),
            "stop_reason": None,
            "stop_sequence": None,
            "usage": _token_usage(chunk, output_tokens=0),
        },
    }


def _close_block(state: AnthropicStreamState) -> dict[str, Any]:
    event = {"type": "content_block_stop", "index": state.content_block_index}
    state.content_block_index += 1
    state.content_block_open = False
    return event


def _handle_text(state: AnthropicStreamState, text: str, events: list[dict[str, Any]]) -> None:
    if state.tool_block_open:
        events.append(_close_block(state))
    if not state.content_block_open:
        events.append(
            {
                "type": "content_block_start",
                "index": state.content_block_index,
                "content_block": {"type": "text", "text": ""},
            }
        )
        state.content_block_open = True
    events.append(
        {
            "type": "content_block_delta",
            "index": state.content_block_index,
            "delta": {"type": "text_delta", "text": text},
        }
    )


def _handle_new_tool_call(
    state: AnthropicStreamState,
    position: int,
    call_id: str,
    name: str,
    events: list[dict[str, Any]],
) -> None:
    if state.content_block_open:
        events.append(_close_block(state))
    block_index = state.content_block_index
    state.tool_calls[position] = ToolCallBlock(id=call_id, name=name, block_index=block_index)
    events.append(
        {
            "type": "content_block_start",
            "index": block_index,
            "content_block": {"type": "tool_use", "id": call_id, "name": name, "input": {}},
        }
    )
    state.content_block_open = True


def _handle_tool_arguments(
    state: AnthropicStreamState,
    position: int,
    arguments: str,
    events: list[dict[str, Any]],
) -> None:
    call = state.tool_calls.get(position)
    if call is None:
        return
    events.append(
        {
            "type": "content_block_delta",
            "index": call.block_index,
            "delta": {"type": "input_json_delta", "partial_json": arguments},
        }
    )


def _handle_finish(
    state: AnthropicStreamState,
    chunk: dict[str, Any],
    finish_reason: str,
    events: list[dict[str, Any]],
) -> None:
    if state.content_block_open:
        events.append(_close_block(state))
    events.append(
        {
            "type": "message_delta",
            "delta": {"stop_reason": map_stop_reason(finish_reason), "stop_sequence": None},
            "usage": _token_usage(
                chunk, output_tokens=int(_usage(chunk).get("completion_tokens") or 0)
            ),
        }
    )
    events.append({"type": "message_stop"})
    state.finished = True


def translate_chunk(chunk: dict[str, Any], state: AnthropicStreamState) -> list[dict[str, Any]]:
    events: list[dict[str, Any]] = []
    if state.finished:
        return events

    choices = chunk.get("choices")
    if not isinstance(choices, list) or not choices:
        return events
    choice = choices[0] if isinstance(choices[0], dict) else {}
    delta = choice.get("delta")
    if not isinstance(delta, dict):
        delta = {}

    if not state.message_start_sent:
        events.append(_message_start(chunk))
        state.message_start_sent = True

    content = delta.get("content")
    if isinstance(content, str) and content:
        _handle_text(state, content, events)

    tool_calls = delta.get("tool_calls")
    if isinstance(tool_calls, list):
        for tool_call in tool_calls:
            if not isinstance(tool_call, dict):
                continue
            position = tool_call.get("index")
            if not isinstance(position, int):
                continue
            function = tool_call.get("function")
            if not isinstance(function, dict):
                function = {}
            call_id = tool_call.get("id")
            name = function.get("name")
            if call_id and name and position not in state.tool_calls:
                _handle_new_tool_call(state, position, str(call_id), str(name), events)
            arguments = function.get("arguments")
            if isinstance(arguments, str) and arguments:
                _handle_tool_arguments(state, position, arguments, events)

    finish_reason = choice.get("finish_reason")
    if finish_reason:
        _handle_finish(state, chunk, str(finish_reason), events)

    return events


def translate_error(message: str = STREAM_ERROR_MESSAGE) -> dict[str, Any]:
    return {"type": "error", "error": {"type": "api_error", "message": message}}


def format_sse(event: dict[str, Any]) -> bytes:
    data = json.dumps(event, separators=(",", ":"), ensure_ascii=False)
    return f"event: {event['type']}\ndata: {data}\n\n".encode("utf-8")


async def translate_stream(
    chunks: AsyncIterator[dict[str, Any]],
    state: AnthropicStreamState | None = None,
) -> AsyncIterator[bytes]:
    """Drive the translator over a live chunk stream, framing events as SSE.

    A transport failure, or an upstream stream that ends without a finish
    reason, produces one terminal ``error`` event.
    """
    stream_state = state or AnthropicStreamState()
    try:
        async for chunk in chunks:
            for event in translate_chunk(chunk, stream_state):
                yield format_sse(event)
    except (GatewayError, httpx.HTTPError) as exc:
        logger.warning("stream_translation_error error_type=%s error=%s", exc.__class__.__name__, exc)
        yield format_sse(translate_error())
        return
    if not stream_state.finished:
        logger.warning("stream_translation_truncated block_index=%d", stream_state.content_block_index)
        yield format_sse(translate_error())


async def openai_passthrough_stream(
    chunks: AsyncIterator[dict[str, Any]],
) -> AsyncIterator[bytes]:
    """Forward upstream chunks unchanged as OpenAI ``data:`` frames."""
    try:
        async for chunk in chunks:
            data = json.dumps(chunk, separators=(",", ":"), ensure_ascii=False)
            yield f"data: {data}\n\n".encode("utf-8")
    except (GatewayError, httpx.HTTPError) as exc:
        logger.warning("stream_passthrough_error error_type=%s error=%s", exc.__class__.__name__, exc)
        error = {"error": {"message": STREAM_ERROR_MESSAGE, "type": "api_error"}}
        yield f"data: {json.dumps(error, separators=(',', ':'))}\n\n".encode("utf-8")
        return
    yield b"data: [DONE]\n\n"
