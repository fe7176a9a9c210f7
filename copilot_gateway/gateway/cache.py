from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from copilot_gateway.errors import CacheCorrupt
from copilot_gateway.runtime.bounded_maps import RecencyList
from copilot_gateway.utils.persistence import JsonFileStore

logger = logging.getLogger("uvicorn.error")

CACHE_KEY_VERSION = 1

# Field order of the canonical key payload. Changing it changes every key.
_OPTION_FIELDS = (
    "temperature",
    "max_tokens",
    "accountId",
    "top_p",
    "frequency_penalty",
    "presence_penalty",
    "seed",
    "stop",
    "response_format",
    "tool_choice",
    "user",
    "logit_bias",
    "logprobs",
    "n",
    "tools",
)


class CacheKeyOptions(BaseModel):
    """Request options that change the content of an answer.

    Only fields explicitly present on the request take part in the key; an
    explicit ``null`` is distinct from an absent field. ``stream`` is a
    delivery flag and is deliberately not modelled here.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    version: int = CACHE_KEY_VERSION
    temperature: float | None = None
    max_tokens: int | None = None
    account_id: str | None = Field(default=None, alias="accountId")
    top_p: float | None = None
    frequency_penalty: float | None = None
    presence_penalty: float | None = None
    seed: int | None = None
    stop: str | list[str] | None = None
    response_format: dict[str, Any] | None = None
    tool_choice: str | dict[str, Any] | None = None
    user: str | None = None
    logit_bias: dict[str, float] | None = None
    logprobs: bool | None = None
    n: int | None = None
    tools: list[Any] | None = None

    @classmethod
    def from_request(
        cls, payload: dict[str, Any], *, account_id: str | None = None
    ) -> CacheKeyOptions:
        options = cls.model_validate(payload)
        if account_id is not None:
            options.account_id = account_id
        return options

    def key_fields(self) -> dict[str, Any]:
        present = self.model_dump(by_alias=True, exclude_unset=True)
        if self.account_id is not None:
            present["accountId"] = self.account_id
        fields: dict[str, Any] = {}
        for name in _OPTION_FIELDS:
            if name not in present:
                continue
            value = present[name]
            if name == "tools":
                if value is None:
                    continue
                value = _compact_json(value)
            fields[name] = value
        return fields


def normalize_messages(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    normalized: list[dict[str, Any]] = []
    for message in messages:
        content = message.get("content")
        item: dict[str, Any] = {
            "role": message.get("role"),
            "content": content if isinstance(content, str) else _compact_json(content),
        }
        # Tool turns carry their payload outside content.
        if message.get("tool_calls"):
            item["tool_calls"] = _compact_json(message["tool_calls"])
        if message.get("tool_call_id"):
            item["tool_call_id"] = str(message["tool_call_id"])
        normalized.append(item)
    return normalized


def build_cache_key(
    model: str,
    messages: list[dict[str, Any]],
    options: CacheKeyOptions | None = None,
) -> str:
    payload: dict[str, Any] = {"model": model, "messages": normalize_messages(messages)}
    if options is not None:
        payload.update(options.key_fields())
    digest = hashlib.sha256(_compact_json(payload).encode("utf-8")).hexdigest()
    return f"{model}_{digest[:16]}"


def _compact_json(value: Any) -> str:
    return json.dumps(
        _canonical_numbers(value),
        separators=(",", ":"),
        ensure_ascii=False,
    )


def _canonical_numbers(value: Any) -> Any:
    # Integral floats serialize as integers (1.0 -> 1).
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, dict):
        return {key: _canonical_numbers(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_canonical_numbers(item) for item in value]
    return value


@dataclass(slots=True)
class CacheEntry:
    key: str
    response: Any
    model: str
    input_tokens: int
    output_tokens: int
    created_at: float
    last_accessed: float
    hits: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> CacheEntry:
        return cls(
            key=str(payload["key"]),
            response=payload.get("response"),
            model=str(payload.get("model") or ""),
            input_tokens=int(payload.get("input_tokens") or 0),
            output_tokens=int(payload.get("output_tokens") or 0),
            created_at=float(payload["created_at"]),
            last_accessed=float(payload.get("last_accessed") or payload["created_at"]),
            hits=int(payload.get("hits") or 0),
        )


@dataclass(slots=True)
class CacheConfig:
    enabled: bool = False
    max_size: int = 1000
    ttl_seconds: int = 3600


class ResponseCache:
    """Bounded, time-boxed memo of upstream chat responses.

    Entries live in a key map; recency is tracked separately by a
    ``RecencyList`` so the coldest entry is evicted in O(1).
    """

    def __init__(
        self,
        config: CacheConfig | None = None,
        *,
        store: JsonFileStore | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config or CacheConfig()
        self._store = store
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._recency: RecencyList[str] = RecencyList()
        self._hits = 0
        self._misses = 0
        self._saved_tokens = 0
        self._dirty = False

    @property
    def config(self) -> CacheConfig:
        return self._config

    @property
    def enabled(self) -> bool:
        return self._config.enabled

    @property
    def dirty(self) -> bool:
        return self._dirty

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    @staticmethod
    def key(
        model: str,
        messages: list[dict[str, Any]],
        options: CacheKeyOptions | None = None,
    ) -> str:
        return build_cache_key(model, messages, options)

    def get(self, key: str) -> CacheEntry | None:
        if not self._config.enabled:
            return None

        entry = self._entries.get(key)
        if entry is None:
            self._misses += 1
            return None

        now = self._clock()
        if self._is_expired(entry, now):
            self._remove(key)
            self._misses += 1
            self._dirty = True
            return None

        entry.last_accessed = now
        entry.hits += 1
        self._hits += 1
        self._saved_tokens += entry.input_tokens + entry.output_tokens
        self._recency.touch(key)
        self._dirty = True
        return entry

    def put(
        self,
        key: str,
        response: Any,
        *,
        model: str,
        input_tokens: int = 0,
        output_tokens: int = 0,
    ) -> CacheEntry | None:
        if not self._config.enabled:
            return None

        now = self._clock()
        entry = CacheEntry(
            key=key,
            response=response,
            model=model,
            input_tokens=int(input_tokens),
            output_tokens=int(output_tokens),
            created_at=now,
            last_accessed=now,
        )
        self._entries[key] = entry
        self._recency.touch(key)
        self._dirty = True
        self.evict()
        return entry

    def evict(self) -> int:
        evicted = 0
        while len(self._entries) > self._config.max_size:
            key = self._recency.pop_oldest()
            if key is None:
                break
            self._entries.pop(key, None)
            evicted += 1
        if evicted:
            self._dirty = True
            logger.debug("cache_evicted count=%d size=%d", evicted, len(self._entries))
        return evicted

    def delete(self, key: str) -> bool:
        if key not in self._entries:
            return False
        self._remove(key)
        self._dirty = True
        return True

    def clear(self) -> None:
        self._entries.clear()
        self._recency.clear()
        self._dirty = True
        logger.info("cache_cleared")

    def stats(self) -> dict[str, Any]:
        total = self._hits + self._misses
        return {
            "enabled": self._config.enabled,
            "size": len(self._entries),
            "max_size": self._config.max_size,
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": round(self._hits / total, 2) if total > 0 else 0,
            "saved_tokens": self._saved_tokens,
        }

    def entries(self) -> list[CacheEntry]:
        return [self._entries[key] for key in self._recency]

    def update_config(
        self,
        *,
        enabled: bool | None = None,
        max_size: int | None = None,
        ttl_seconds: int | None = None,
    ) -> None:
        if enabled is not None:
            self._config.enabled = enabled
        if max_size is not None:
            self._config.max_size = max(1, int(max_size))
        if ttl_seconds is not None:
            self._config.ttl_seconds = max(1, int(ttl_seconds))
        if not self._config.enabled:
            self._entries.clear()
            self._recency.clear()
        self.evict()
        logger.debug(
            "cache_config_updated enabled=%s max_size=%d ttl_seconds=%d",
            self._config.enabled,
            self._config.max_size,
            self._config.ttl_seconds,
        )

    def reset_stats(self) -> None:
        self._hits = 0
        self._misses = 0
        self._saved_tokens = 0
        self._dirty = True

    # Persistence

    def to_document(self) -> dict[str, Any]:
        return {
            "entries": [entry.to_dict() for entry in self._entries.values()],
            "stats": {
                "hits": self._hits,
                "misses": self._misses,
                "saved_tokens": self._saved_tokens,
            },
        }

    def load(self) -> None:
        if self._store is None or not self._config.enabled:
            return
        try:
            self._load_document(self._store.load(default=None))
        except (CacheCorrupt, ValueError, OSError) as exc:
            logger.warning(
                "cache_file_corrupt path=%s error=%s action=discard",
                self._store.path,
                exc,
            )
            self._entries.clear()
            self._recency.clear()
            try:
                self._store.discard()
            except OSError as discard_exc:
                logger.warning("cache_file_discard_failed error=%s", discard_exc)
            return
        logger.debug("cache_loaded entries=%d", len(self._entries))

    def _load_document(self, payload: Any) -> None:
        self._entries.clear()
        self._recency.clear()
        if payload is None:
            return
        if not isinstance(payload, dict):
            raise CacheCorrupt("cache document must be an object")
        raw_entries = payload.get("entries") or []
        if not isinstance(raw_entries, list):
            raise CacheCorrupt("cache entries must be a list")
        try:
            loaded = [CacheEntry.from_dict(raw) for raw in raw_entries]
        except (KeyError, TypeError, ValueError) as exc:
            raise CacheCorrupt(f"malformed cache entry: {exc}") from exc

        now = self._clock()
        valid = [entry for entry in loaded if not self._is_expired(entry, now)]
        # Oldest access first, so the last touched ends up most recent.
        valid.sort(key=lambda entry: entry.last_accessed)
        for entry in valid:
            self._entries[entry.key] = entry
            self._recency.touch(entry.key)

        stats = payload.get("stats")
        if isinstance(stats, dict):
            self._hits = int(stats.get("hits") or 0)
            self._misses = int(stats.get("misses") or 0)
            self._saved_tokens = int(stats.get("saved_tokens") or 0)
        self.evict()

    def save(self) -> bool:
        if self._store is None or not self._dirty:
            return False
        document = self.to_document()
        self._dirty = False
        try:
            self._store.write(document)
        except OSError as exc:
            self._dirty = True
            logger.error("cache_save_failed error=%s", exc)
            return False
        logger.debug("cache_saved entries=%d", len(document["entries"]))
        return True

    async def save_async(self) -> bool:
        if self._store is None or not self._dirty:
            return False
        document = self.to_document()
        self._dirty = False
        try:
            await asyncio.to_thread(self._store.write, document)
        except OSError as exc:
            self._dirty = True
            logger.error("cache_save_failed error=%s", exc)
            return False
        logger.debug("cache_saved entries=%d", len(document["entries"]))
        return True

    def _is_expired(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.created_at > self._config.ttl_seconds

    def _remove(self, key: str) -> None:
        self._entries.pop(key, None)
        self._recency.discard(key)
