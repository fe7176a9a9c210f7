"""Anthropic Messages <-> OpenAI chat completions, for non-streamed bodies.

Streaming responses go through ``stream_translation`` instead.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from copilot_gateway.gateway.stream_translation import map_stop_reason

logger = logging.getLogger("uvicorn.error")

_PASSTHROUGH_FIELDS = ("model", "max_tokens", "temperature", "top_p", "stream")


def anthropic_request_to_openai(payload: dict[str, Any]) -> dict[str, Any]:
    translated: dict[str, Any] = {
        field: payload[field] for field in _PASSTHROUGH_FIELDS if field in payload
    }

    messages: list[dict[str, Any]] = []
    system = _system_text(payload.get("system"))
    if system:
        messages.append({"role": "system", "content": system})
    for message in payload.get("messages") or []:
        if not isinstance(message, dict):
            continue
        if message.get("role") == "assistant":
            messages.append(_assistant_message(message.get("content")))
        else:
            messages.extend(_user_messages(message.get("content")))
    translated["messages"] = messages

    stop_sequences = payload.get("stop_sequences")
    if stop_sequences:
        translated["stop"] = list(stop_sequences)

    metadata = payload.get("metadata")
    if isinstance(metadata, dict) and metadata.get("user_id"):
        translated["user"] = str(metadata["user_id"])

    tools = payload.get("tools")
    if isinstance(tools, list) and tools:
        translated["tools"] = [
            {
                "type": "function",
                "function": {
                    "name": tool.get("name"),
                    "description": tool.get("description", ""),
                    "parameters": tool.get("input_schema") or {"type": "object", "properties": {}},
                },
            }
            for tool in tools
            if isinstance(tool, dict)
        ]

    tool_choice = _tool_choice(payload.get("tool_choice"))
    if tool_choice is not None:
        translated["tool_choice"] = tool_choice
    return translated


def _system_text(system: Any) -> str:
    if isinstance(system, str):
        return system
    if isinstance(system, list):
        return "\n\n".join(
            str(block.get("text") or "")
            for block in system
            if isinstance(block, dict) and block.get("type") == "text"
        )
    return ""


def _tool_choice(choice: Any) -> str | dict[str, Any] | None:
    if not isinstance(choice, dict):
        return None
    choice_type = choice.get("type")
    if choice_type == "auto":
        return "auto"
    if choice_type == "any":
        return "required"
    if choice_type == "none":
        return "none"
    if choice_type == "tool" and choice.get("name"):
        return {"type": "function", "function": {"name": choice["name"]}}
    return None


def _user_messages(content: Any) -> list[dict[str, Any]]:
    if not isinstance(content, list):
        return [{"role": "user", "content": content if isinstance(content, str) else ""}]

    # Tool results must directly follow the assistant turn that requested them.
    tool_messages: list[dict[str, Any]] = []
    parts: list[dict[str, Any]] = []
    for block in content:
        if not isinstance(block, dict):
            continue
        block_type = block.get("type")
        if block_type == "tool_result":
            tool_messages.append(
                {
                    "role": "tool",
                    "tool_call_id": block.get("tool_use_id"),
                    "content": _tool_result_text(block.get("content")),
                }
            )
        elif block_type == "text":
            parts.append({"type": "text", "text": str(block.get("text") or "")})
        elif block_type == "image":
            image_url = _image_url(block.get("source"))
            if image_url:
                parts.append({"type": "image_url", "image_url": {"url": image_url}})

    messages = list(tool_messages)
    if parts:
        if all(part["type"] == "text" for part in parts):
            text = "\n\n".join(part["text"] for part in parts)
            messages.append({"role": "user", "content": text})
        else:
            messages.append({"role": "user", "content": parts})
    return messages


def _assistant_message(content: Any) -> dict[str, Any]:
    if not isinstance(content, list):
        return {"role": "assistant", "content": content if isinstance(content, str) else ""}

    texts: list[str] = []
    tool_calls: list[dict[str, Any]] = []
    for block in content:
        if not isinstance(block, dict):
            continue
        if block.get("type") == "text":
            texts.append(str(block.get("text") or ""))
        elif block.get("type") == "tool_use":
            tool_calls.append(
                {
                    "id": block.get("id"),
                    "type": "function",
                    "function": {
                        "name": block.get("name"),
                        "arguments": json.dumps(block.get("input") or {}, ensure_ascii=False),
                    },
                }
            )
    message: dict[str, Any] = {
        "role": "assistant",
        "content": "\n\n".join(texts) if texts else None,
    }
    if tool_calls:
        message["tool_calls"] = tool_calls
    return message


def _tool_result_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "\n\n".join(
            str(block.get("text") or "")
            for block in content
            if isinstance(block, dict) and block.get("type") == "text"
        )
    return ""


def _image_url(source: Any) -> str | None:
    if not isinstance(source, dict):
        return None
    if source.get("type") == "base64" and source.get("data"):
        media_type = source.get("media_type") or "image/png"
        return f"data:{media_type};base64,{source['data']}"
    if source.get("type") == "url" and source.get("url"):
        return str(source["url"])
    return None


def openai_response_to_anthropic(response: dict[str, Any]) -> dict[str, Any]:
    content: list[dict[str, Any]] = []
    finish_reason: str | None = None
    for choice in response.get("choices") or []:
        if not isinstance(choice, dict):
            continue
        message = choice.get("message")
        if isinstance(message, dict):
            text = message.get("content")
            if isinstance(text, str) and text:
                content.append({"type": "text", "text": text})
            for tool_call in message.get("tool_calls") or []:
                content.append(_tool_use_block(tool_call))
        if choice.get("finish_reason"):
            finish_reason = str(choice["finish_reason"])

    usage = response.get("usage") if isinstance(response.get("usage"), dict) else {}
    details = usage.get("prompt_tokens_details")
    cached = details.get("cached_tokens") if isinstance(details, dict) else None
    token_usage: dict[str, Any] = {
        "input_tokens": int(usage.get("prompt_tokens") or 0) - int(cached or 0),
        "output_tokens": int(usage.get("completion_tokens") or 0),
    }
    if cached is not None:
        token_usage["cache_read_input_tokens"] = int(cached)

    return {
        "id": response.get("id"),
        "type": "message",
        "role": "assistant",
        "model": response.get("model"),
        "content": content,
        "stop_reason": map_stop_reason(finish_reason),
        "stop_sequence": None,
        "usage": token_usage,
    }


def _tool_use_block(tool_call: Any) -> dict[str, Any]:
    function = tool_call.get("function") if isinstance(tool_call, dict) else None
    function = function if isinstance(function, dict) else {}
    arguments = function.get("arguments")
    try:
        parsed = json.loads(arguments) if arguments else {}
    except ValueError:
        logger.warning("tool_call_arguments_invalid name=%s", function.get("name"))
        parsed = {}
    return {
        "type": "tool_use",
        "id": tool_call.get("id") if isinstance(tool_call, dict) else None,
        "name": function.get("name"),
        "input": parsed if isinstance(parsed, dict) else {},
    }
