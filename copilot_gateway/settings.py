from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    gateway_config_path: str = "gateway.yaml"
    data_dir: str = "~/.config/copilot-api"
    github_token: str | None = None
    account_type: str = "individual"
    github_api_base_url: str = "https://api.github.com"
    copilot_base_url: str | None = None
    vscode_version: str = "1.95.0"
    upstream_timeout_seconds: float = 120.0
    upstream_connect_timeout_seconds: float = 5.0
    auxiliary_timeout_seconds: float = 10.0
    rate_limit_seconds: float | None = None
    rate_limit_wait: bool = False
    retry_max_attempts: int = 3
    retry_initial_delay_seconds: float = 1.0
    retry_max_delay_seconds: float = 30.0
    retry_backoff_multiplier: float = 2.0
    retry_statuses: str = "429,500,502,503,504"
    pool_save_debounce_seconds: float = 0.5
    cache_save_interval_seconds: float = 300.0

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )

    @property
    def data_path(self) -> Path:
        return Path(self.data_dir).expanduser()

    @property
    def pool_state_path(self) -> Path:
        return self.data_path / "account-pool.json"

    @property
    def cache_path(self) -> Path:
        return self.data_path / "request-cache.json"

    @property
    def retry_statuses_list(self) -> list[int]:
        statuses: list[int] = []
        for item in _split_csv(self.retry_statuses):
            try:
                statuses.append(int(item))
            except ValueError:
                continue
        return statuses or [429, 500, 502, 503, 504]

    @property
    def resolved_copilot_base_url(self) -> str:
        if self.copilot_base_url:
            return self.copilot_base_url.rstrip("/")
        if self.account_type == "individual":
            return "https://api.githubcopilot.com"
        return f"https://api.{self.account_type}.githubcopilot.com"


def _split_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


@lru_cache
def get_settings() -> Settings:
    return Settings()
