from __future__ import annotations

import json
import logging
import time
import uuid
from collections.abc import AsyncIterator
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any

import httpx

from copilot_gateway.errors import UpstreamRejected, UpstreamUnavailable

logger = logging.getLogger("uvicorn.error")

EDITOR_PLUGIN_VERSION = "copilot-chat/0.22.4"
USER_AGENT = "GitHubCopilotChat/0.22.4"
GITHUB_API_VERSION = "2025-04-01"


@dataclass(slots=True)
class UpstreamToken:
    token: str
    expires_at: int
    refresh_in: int

    def is_expiring(self, now: float | None = None, skew_seconds: int = 60) -> bool:
        current = time.time() if now is None else now
        return self.expires_at <= int(current) + skew_seconds


def _request_error_details(exc: httpx.RequestError) -> dict[str, Any]:
    details: dict[str, Any] = {
        "error": str(exc).strip() or repr(exc),
        "error_type": exc.__class__.__name__.strip() or "RequestError",
        "is_timeout": isinstance(exc, httpx.TimeoutException),
    }
    request = getattr(exc, "_request", None)
    if isinstance(request, httpx.Request):
        details["request_method"] = request.method
        details["request_url"] = str(request.url)
    return details


def _unavailable(exc: httpx.RequestError, operation: str) -> UpstreamUnavailable:
    details = _request_error_details(exc)
    logger.warning(
        "upstream_request_error operation=%s error_type=%s is_timeout=%s error=%s",
        operation,
        details["error_type"],
        details["is_timeout"],
        details["error"],
    )
    return UpstreamUnavailable(
        f"{operation} failed: {details['error_type']}: {details['error']}"
    )


def _rejected(response: httpx.Response, body: bytes, operation: str) -> UpstreamRejected:
    headers = {name.lower(): value for name, value in response.headers.items()}
    return UpstreamRejected(
        f"{operation} failed with status {response.status_code}",
        status_code=response.status_code,
        body=body,
        headers=headers,
    )


class CopilotClient:
    """HTTP access to the GitHub token endpoints and the Copilot chat API."""

    def __init__(
        self,
        *,
        github_api_base_url: str = "https://api.github.com",
        copilot_base_url: str = "https://api.githubcopilot.com",
        vscode_version: str = "1.95.0",
        timeout_seconds: float = 120.0,
        connect_timeout_seconds: float = 5.0,
        auxiliary_timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.github_api_base_url = github_api_base_url.rstrip("/")
        self.copilot_base_url = copilot_base_url.rstrip("/")
        self.vscode_version = vscode_version
        connect_timeout = max(0.1, min(float(connect_timeout_seconds), timeout_seconds))
        self._chat_timeout = httpx.Timeout(
            timeout=max(0.1, float(timeout_seconds)),
            connect=connect_timeout,
        )
        self._auxiliary_timeout = httpx.Timeout(max(0.1, float(auxiliary_timeout_seconds)))
        self.client = httpx.AsyncClient(
            timeout=self._chat_timeout,
            limits=httpx.Limits(max_connections=256, max_keepalive_connections=64),
            transport=transport,
        )

    async def close(self) -> None:
        await self.client.aclose()

    def github_headers(self, github_token: str) -> dict[str, str]:
        return {
            "content-type": "application/json",
            "accept": "application/json",
            "authorization": f"token {github_token}",
            "editor-version": f"vscode/{self.vscode_version}",
            "editor-plugin-version": EDITOR_PLUGIN_VERSION,
            "user-agent": USER_AGENT,
            "x-github-api-version": GITHUB_API_VERSION,
            "x-vscode-user-agent-library-version": "electron-fetch",
        }

    def copilot_headers(self, copilot_token: str, *, vision: bool = False) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {copilot_token}",
            "content-type": "application/json",
            "copilot-integration-id": "vscode-chat",
            "editor-version": f"vscode/{self.vscode_version}",
            "editor-plugin-version": EDITOR_PLUGIN_VERSION,
            "user-agent": USER_AGENT,
            "openai-intent": "conversation-panel",
            "x-github-api-version": GITHUB_API_VERSION,
            "x-request-id": str(uuid.uuid4()),
            "x-vscode-user-agent-library-version": "electron-fetch",
        }
        if vision:
            headers["copilot-vision-request"] = "true"
        return headers

    async def get_copilot_token(self, github_token: str) -> UpstreamToken:
        url = f"{self.github_api_base_url}/copilot_internal/v2/token"
        body = await self._get_json(
            url,
            headers=self.github_headers(github_token),
            operation="copilot_token",
        )
        token = str(body.get("token") or "").strip()
        if not token:
            raise UpstreamUnavailable("copilot_token response is missing a token")
        now = int(time.time())
        expires_at = _as_int(body.get("expires_at"), default=now + 1500)
        refresh_in = _as_int(body.get("refresh_in"), default=max(60, expires_at - now))
        return UpstreamToken(token=token, expires_at=expires_at, refresh_in=refresh_in)

    async def get_user(self, github_token: str) -> dict[str, Any]:
        url = f"{self.github_api_base_url}/user"
        return await self._get_json(
            url,
            headers={
                "authorization": f"token {github_token}",
                "content-type": "application/json",
                "accept": "application/json",
            },
            operation="github_user",
        )

    async def create_chat_completion(
        self, payload: dict[str, Any], copilot_token: str
    ) -> dict[str, Any]:
        return await self._post_json(
            f"{self.copilot_base_url}/chat/completions",
            payload=payload,
            headers=self.copilot_headers(copilot_token, vision=_has_image_content(payload)),
            operation="chat_completions",
        )

    async def create_embeddings(
        self, payload: dict[str, Any], copilot_token: str
    ) -> dict[str, Any]:
        return await self._post_json(
            f"{self.copilot_base_url}/embeddings",
            payload=payload,
            headers=self.copilot_headers(copilot_token),
            operation="embeddings",
        )

    async def open_chat_stream(
        self, payload: dict[str, Any], copilot_token: str
    ) -> httpx.Response:
        """Send a streaming chat request; the caller owns closing the response."""
        request = self.client.build_request(
            "POST",
            f"{self.copilot_base_url}/chat/completions",
            json={**payload, "stream": True},
            headers=self.copilot_headers(copilot_token, vision=_has_image_content(payload)),
        )
        try:
            response = await self.client.send(request, stream=True)
        except httpx.RequestError as exc:
            raise _unavailable(exc, "chat_completions_stream") from exc
        if response.status_code >= 400:
            try:
                body = await response.aread()
            finally:
                await response.aclose()
            raise _rejected(response, body, "chat_completions_stream")
        return response

    @staticmethod
    async def iter_sse_json(upstream: httpx.Response) -> AsyncIterator[dict[str, Any]]:
        try:
            async for line in upstream.aiter_lines():
                if not line or not line.startswith("data:"):
                    continue
                payload = line[5:].strip()
                if not payload or payload == "[DONE]":
                    continue
                try:
                    parsed = json.loads(payload)
                except ValueError:
                    continue
                if isinstance(parsed, dict):
                    yield parsed
        except httpx.RequestError as exc:
            raise _unavailable(exc, "chat_completions_stream") from exc

    async def _get_json(
        self, url: str, *, headers: dict[str, str], operation: str
    ) -> dict[str, Any]:
        try:
            response = await self.client.get(
                url, headers=headers, timeout=self._auxiliary_timeout
            )
        except httpx.RequestError as exc:
            raise _unavailable(exc, operation) from exc
        return _decode_json_response(response, operation)

    async def _post_json(
        self,
        url: str,
        *,
        payload: dict[str, Any],
        headers: dict[str, str],
        operation: str,
    ) -> dict[str, Any]:
        try:
            response = await self.client.post(url, json=payload, headers=headers)
        except httpx.RequestError as exc:
            raise _unavailable(exc, operation) from exc
        return _decode_json_response(response, operation)


def _decode_json_response(response: httpx.Response, operation: str) -> dict[str, Any]:
    if response.status_code >= 400:
        raise _rejected(response, response.content, operation)
    try:
        body = response.json()
    except ValueError as exc:
        raise UpstreamUnavailable(f"{operation} returned invalid JSON") from exc
    if not isinstance(body, dict):
        raise UpstreamUnavailable(f"{operation} returned a non-object JSON body")
    return body


def _has_image_content(payload: dict[str, Any]) -> bool:
    messages = payload.get("messages")
    if not isinstance(messages, list):
        return False
    for message in messages:
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, list):
            continue
        for part in content:
            if isinstance(part, dict) and part.get("type") == "image_url":
                return True
    return False


def _as_int(value: Any, *, default: int) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return default


def parse_retry_after_seconds(
    headers: dict[str, str] | httpx.Headers, default_seconds: float = 60.0
) -> float:
    raw = None
    for name, value in headers.items():
        if name.lower() == "retry-after":
            raw = value
            break
    if not raw:
        return default_seconds

    value = raw.strip()
    if not value:
        return default_seconds

    try:
        seconds = float(value)
        if seconds > 0:
            return seconds
    except (TypeError, ValueError):
        pass

    try:
        retry_dt = parsedate_to_datetime(value)
        if retry_dt.tzinfo is None:
            retry_dt = retry_dt.replace(tzinfo=timezone.utc)
        delta = (retry_dt - datetime.now(timezone.utc)).total_seconds()
        if delta > 0:
            return float(delta)
    except (TypeError, ValueError):
        pass

    return default_seconds
