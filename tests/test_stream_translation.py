from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from typing import Any

from copilot_gateway.errors import UpstreamUnavailable
from copilot_gateway.gateway.stream_translation import (
    AnthropicStreamState,
    format_sse,
    map_stop_reason,
    openai_passthrough_stream,
    translate_chunk,
    translate_error,
    translate_stream,
)


def _chunk(
    delta: dict[str, Any] | None = None,
    finish_reason: str | None = None,
    usage: dict[str, Any] | None = None,
) -> dict[str, Any]:
    chunk: dict[str, Any] = {
        "id": "chatcmpl-1",
        "model": "gpt-4o",
        "choices": [{"index": 0, "delta": delta or {}, "finish_reason": finish_reason}],
    }
    if usage is not None:
        chunk["usage"] = usage
    return chunk


def _tool_delta(position: int, *, arguments: str = "", call_id: str | None = None, name: str | None = None) -> dict[str, Any]:
    function: dict[str, Any] = {"arguments": arguments}
    call: dict[str, Any] = {"index": position, "function": function}
    if call_id is not None:
        call["id"] = call_id
        call["type"] = "function"
    if name is not None:
        function["name"] = name
    return {"tool_calls": [call]}


def _run(chunks: list[dict[str, Any]]) -> list[dict[str, Any]]:
    state = AnthropicStreamState()
    events: list[dict[str, Any]] = []
    for chunk in chunks:
        events.extend(translate_chunk(chunk, state))
    return events


def _types(events: list[dict[str, Any]]) -> list[str]:
    return [event["type"] for event in events]


def test_text_stream_produces_single_text_block() -> None:
    events = _run(
        [
            _chunk({"content": "Hello"}),
            _chunk({"content": " world"}),
            _chunk(finish_reason="stop"),
        ]
    )

    assert _types(events) == [
        "message_start",
        "content_block_start",
        "content_block_delta",
        "content_block_delta",
        "content_block_stop",
        "message_delta",
        "message_stop",
    ]
    assert events[1]["content_block"] == {"type": "text", "text": ""}
    assert [e["delta"]["text"] for e in events if e["type"] == "content_block_delta"] == ["Hello", " world"]
    assert events[5]["delta"]["stop_reason"] == "end_turn"


def test_tool_call_stream_concatenates_arguments_in_one_block() -> None:
    events = _run(
        [
            _chunk(_tool_delta(0, call_id="call_1", name="search")),
            _chunk(_tool_delta(0, arguments='{"q":')),
            _chunk(_tool_delta(0, arguments='"x"}')),
            _chunk(finish_reason="tool_calls"),
        ]
    )

    starts = [e for e in events if e["type"] == "content_block_start"]
    stops = [e for e in events if e["type"] == "content_block_stop"]
    assert len(starts) == 1 and len(stops) == 1
    assert starts[0]["content_block"] == {"type": "tool_use", "id": "call_1", "name": "search", "input": {}}
    partial = "".join(
        e["delta"]["partial_json"] for e in events if e["type"] == "content_block_delta"
    )
    assert partial == '{"q":"x"}'
    assert json.loads(partial) == {"q": "x"}
    message_delta = next(e for e in events if e["type"] == "message_delta")
    assert message_delta["delta"]["stop_reason"] == "tool_use"


def test_repeated_tool_header_at_same_position_keeps_one_block() -> None:
    events = _run(
        [
            _chunk(_tool_delta(0, call_id="call_1", name="search", arguments='{"q":')),
            _chunk(_tool_delta(0, call_id="call_1", name="search", arguments='"x"}')),
            _chunk(finish_reason="tool_calls"),
        ]
    )

    starts = [e for e in events if e["type"] == "content_block_start"]
    stops = [e for e in events if e["type"] == "content_block_stop"]
    assert len(starts) == 1 and len(stops) == 1
    assert starts[0]["index"] == 0
    deltas = [e for e in events if e["type"] == "content_block_delta"]
    assert [e["index"] for e in deltas] == [0, 0]
    assert "".join(e["delta"]["partial_json"] for e in deltas) == '{"q":"x"}'


def test_blocks_close_in_order_with_increasing_indices() -> None:
    events = _run(
        [
            _chunk({"content": "Let me check."}),
            _chunk(_tool_delta(0, call_id="call_1", name="search")),
            _chunk(_tool_delta(1, call_id="call_2", name="fetch")),
            _chunk(_tool_delta(0, arguments="{}")),
            _chunk({"content": "Done."}),
            _chunk(finish_reason="stop"),
        ]
    )

    opened = [e["index"] for e in events if e["type"] == "content_block_start"]
    closed = [e["index"] for e in events if e["type"] == "content_block_stop"]
    assert opened == [0, 1, 2, 3]
    assert closed == [0, 1, 2, 3]
    args = next(e for e in events if e.get("delta", {}).get("type") == "input_json_delta")
    assert args["index"] == 1


def test_unknown_tool_position_is_dropped() -> None:
    events = _run(
        [
            _chunk({"content": "hi"}),
            _chunk(_tool_delta(5, arguments='{"a":1}')),
        ]
    )
    assert _types(events) == ["message_start", "content_block_start", "content_block_delta"]


def test_message_start_reports_uncached_and_cached_input_tokens() -> None:
    events = _run(
        [
            _chunk(
                {"content": "x"},
                usage={"prompt_tokens": 100, "prompt_tokens_details": {"cached_tokens": 40}},
            )
        ]
    )
    usage = events[0]["message"]["usage"]
    assert usage == {"input_tokens": 60, "output_tokens": 0, "cache_read_input_tokens": 40}


def test_usage_omits_cache_read_when_not_reported() -> None:
    events = _run(
        [
            _chunk({"content": "x"}),
            _chunk(finish_reason="length", usage={"prompt_tokens": 7, "completion_tokens": 3}),
        ]
    )
    message_delta = next(e for e in events if e["type"] == "message_delta")
    assert message_delta["usage"] == {"input_tokens": 7, "output_tokens": 3}
    assert message_delta["delta"]["stop_reason"] == "max_tokens"


def test_no_events_after_finish_or_for_empty_choices() -> None:
    state = AnthropicStreamState()
    assert translate_chunk({"id": "x", "choices": []}, state) == []
    translate_chunk(_chunk({"content": "a"}), state)
    translate_chunk(_chunk(finish_reason="stop"), state)

    assert state.finished is True
    assert translate_chunk(_chunk({"content": "late"}), state) == []


def test_stop_reason_mapping() -> None:
    assert map_stop_reason("stop") == "end_turn"
    assert map_stop_reason("length") == "max_tokens"
    assert map_stop_reason("tool_calls") == "tool_use"
    assert map_stop_reason("content_filter") == "end_turn"
    assert map_stop_reason(None) is None


def test_format_sse_frames_event() -> None:
    frame = format_sse({"type": "message_stop"})
    assert frame == b'event: message_stop\ndata: {"type":"message_stop"}\n\n'


async def _chunks_then_fail(chunks: list[dict[str, Any]]) -> AsyncIterator[dict[str, Any]]:
    for chunk in chunks:
        yield chunk
    raise UpstreamUnavailable("connection reset")


async def _chunks(chunks: list[dict[str, Any]]) -> AsyncIterator[dict[str, Any]]:
    for chunk in chunks:
        yield chunk


async def _collect(frames: AsyncIterator[bytes]) -> list[bytes]:
    return [frame async for frame in frames]


def test_translate_stream_emits_error_event_on_upstream_failure(caplog: Any) -> None:
    with caplog.at_level(logging.WARNING):
        frames = asyncio.run(_collect(translate_stream(_chunks_then_fail([_chunk({"content": "Hel"})]))))

    assert frames[0].startswith(b"event: message_start\n")
    assert frames[-1] == format_sse(translate_error())
    assert b"An unexpected error occurred during streaming." in frames[-1]
    assert "stream_translation_error" in caplog.text


def test_translate_stream_flags_truncated_upstream() -> None:
    frames = asyncio.run(_collect(translate_stream(_chunks([_chunk({"content": "Hel"})]))))
    assert frames[-1].startswith(b"event: error\n")


def test_translate_stream_completes_without_error() -> None:
    frames = asyncio.run(
        _collect(translate_stream(_chunks([_chunk({"content": "ok"}), _chunk(finish_reason="stop")])))
    )
    assert frames[-1] == b'event: message_stop\ndata: {"type":"message_stop"}\n\n'
    assert not any(frame.startswith(b"event: error") for frame in frames)


def test_openai_passthrough_appends_done_marker() -> None:
    frames = asyncio.run(_collect(openai_passthrough_stream(_chunks([{"id": "a", "choices": []}]))))
    assert frames == [b'data: {"id":"a","choices":[]}\n\n', b"data: [DONE]\n\n"]
