from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from copilot_gateway.errors import ConfigInvalid
from copilot_gateway.utils.persistence import YamlFileStore

logger = logging.getLogger("uvicorn.error")

PoolStrategy = Literal["sticky", "round-robin", "least-recently-used"]

_STRATEGY_ALIASES = {
    "sticky": "sticky",
    "round-robin": "round-robin",
    "round_robin": "round-robin",
    "roundrobin": "round-robin",
    "least-recently-used": "least-recently-used",
    "least_recently_used": "least-recently-used",
    "lru": "least-recently-used",
}


class PoolAccountConfig(BaseModel):
    token: str
    label: str | None = None

    @field_validator("token")
    @classmethod
    def _strip_token(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("pool account token must not be empty")
        return normalized


class GatewayConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    pool_enabled: bool = Field(default=False, alias="poolEnabled")
    pool_strategy: PoolStrategy = Field(default="sticky", alias="poolStrategy")
    pool_accounts: list[PoolAccountConfig] = Field(
        default_factory=list, alias="poolAccounts"
    )
    cache_enabled: bool = Field(default=False, alias="cacheEnabled")
    cache_max_size: int = Field(default=1000, alias="cacheMaxSize", ge=1)
    cache_ttl_seconds: int = Field(default=3600, alias="cacheTtlSeconds", ge=1)

    @field_validator("pool_strategy", mode="before")
    @classmethod
    def _normalize_strategy(cls, value: Any) -> Any:
        if isinstance(value, str):
            return _STRATEGY_ALIASES.get(value.strip().lower(), value)
        return value


def parse_gateway_config(payload: Any) -> GatewayConfig:
    if payload is None:
        return GatewayConfig()
    if not isinstance(payload, dict):
        raise ConfigInvalid("gateway config must be a mapping")
    try:
        return GatewayConfig.model_validate(payload)
    except ValidationError as exc:
        raise ConfigInvalid(str(exc)) from exc


def load_gateway_config(config_path: str | Path) -> GatewayConfig:
    store = YamlFileStore(config_path)
    try:
        payload = store.load(default=None)
        return parse_gateway_config(payload)
    except (ConfigInvalid, yaml.YAMLError, OSError) as exc:
        logger.warning(
            "gateway_config_invalid path=%s error=%s fallback=defaults",
            store.path,
            exc,
        )
        return GatewayConfig()


def write_gateway_config(config_path: str | Path, config: GatewayConfig) -> None:
    YamlFileStore(config_path).write(config.model_dump(mode="json"))
