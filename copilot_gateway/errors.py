from __future__ import annotations

import json
from typing import Any

from fastapi import status

_ANTHROPIC_STATUS_TYPES = {
    400: "invalid_request_error",
    401: "authentication_error",
    403: "permission_error",
    404: "not_found_error",
    413: "request_too_large",
    429: "rate_limit_error",
    503: "overloaded_error",
    529: "overloaded_error",
}


class GatewayError(Exception):
    """Base class for failures the dispatch pipeline surfaces to callers."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    openai_type: str = "api_error"
    anthropic_type: str = "api_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_openai_error(self) -> dict[str, Any]:
        return {"error": {"message": self.message, "type": self.openai_type}}

    def to_anthropic_error(self) -> dict[str, Any]:
        return {
            "type": "error",
            "error": {"type": self.anthropic_type, "message": self.message},
        }


class UpstreamUnavailable(GatewayError):
    status_code = status.HTTP_502_BAD_GATEWAY
    openai_type = "upstream_unavailable"
    anthropic_type = "api_error"


class UpstreamRejected(GatewayError):
    """Non-retryable (or retries exhausted) HTTP status returned by Copilot."""

    anthropic_type = "api_error"
    openai_type = "upstream_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: int,
        body: bytes = b"",
        headers: dict[str, str] | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body
        self.headers = dict(headers or {})

    @property
    def status(self) -> int:
        return self.status_code

    def body_text(self) -> str:
        return self.body.decode("utf-8", errors="replace").strip()

    def body_json(self) -> Any:
        try:
            return json.loads(self.body) if self.body else None
        except ValueError:
            return None

    def to_openai_error(self) -> dict[str, Any]:
        upstream = self.body_json()
        if isinstance(upstream, dict) and isinstance(upstream.get("error"), dict):
            return upstream
        return {
            "error": {
                "message": self.body_text() or self.message,
                "type": self.openai_type,
                "code": self.status_code,
            }
        }

    def to_anthropic_error(self) -> dict[str, Any]:
        upstream = self.body_json()
        message = self.body_text() or self.message
        if isinstance(upstream, dict) and isinstance(upstream.get("error"), dict):
            message = str(upstream["error"].get("message") or message)
        return {
            "type": "error",
            "error": {
                "type": _ANTHROPIC_STATUS_TYPES.get(self.status_code, self.anthropic_type),
                "message": message,
            },
        }


class PoolExhausted(GatewayError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    openai_type = "service_unavailable"
    anthropic_type = "overloaded_error"

    def __init__(self, message: str = "No eligible upstream account available") -> None:
        super().__init__(message)


class RateLimitExceeded(GatewayError):
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    openai_type = "rate_limit_exceeded"
    anthropic_type = "rate_limit_error"

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        *,
        retry_after_seconds: float | None = None,
    ) -> None:
        super().__init__(message)
        self.retry_after_seconds = retry_after_seconds


class CacheCorrupt(GatewayError):
    pass


class ConfigInvalid(GatewayError):
    pass
