from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field

import httpx

from copilot_gateway.config import GatewayConfig, load_gateway_config
from copilot_gateway.gateway.cache import CacheConfig, ResponseCache
from copilot_gateway.gateway.dispatch import DispatchOrchestrator
from copilot_gateway.gateway.pacing import RequestPacer
from copilot_gateway.gateway.pool import CredentialPool
from copilot_gateway.gateway.retry import RetryPolicy
from copilot_gateway.gateway.tokens import TokenManager
from copilot_gateway.gateway.upstream import CopilotClient
from copilot_gateway.runtime.persistence_tasks import PeriodicSaver
from copilot_gateway.settings import Settings
from copilot_gateway.utils.persistence import JsonFileStore

logger = logging.getLogger("uvicorn.error")


@dataclass(slots=True)
class GatewayContext:
    """Every long-lived gateway component, built once per server instance."""

    settings: Settings
    config: GatewayConfig
    client: CopilotClient
    pool: CredentialPool
    cache: ResponseCache
    tokens: TokenManager
    dispatcher: DispatchOrchestrator
    cache_saver: PeriodicSaver
    started_at: float = field(default_factory=time.monotonic)

    @property
    def uptime_seconds(self) -> float:
        return time.monotonic() - self.started_at

    async def start(self) -> None:
        self.pool.load()
        if self.config.pool_enabled:
            self.pool.configure(self.config.pool_accounts)
            if not self.config.pool_accounts:
                logger.warning("pool_enabled_without_accounts")
        elif self.settings.github_token:
            self.pool.add_account(self.settings.github_token)
        else:
            logger.warning("no_github_token_configured requests_will_fail=true")
        self.cache.load()
        await self.pool.start()
        if self.cache.enabled:
            await self.cache_saver.start()
        logger.info(
            "gateway_started pool_enabled=%s strategy=%s accounts=%d cache_enabled=%s cache_entries=%d",
            self.pool.enabled,
            self.pool.strategy,
            len(self.pool.credentials),
            self.cache.enabled,
            len(self.cache),
        )

    async def shutdown(self) -> None:
        """Persist state, then release background tasks and the HTTP client.

        Each step logs its own failure so the remaining steps still run.
        """
        try:
            await self.pool.stop()
            self.pool.flush()
        except Exception as exc:
            logger.error("shutdown_pool_flush_failed error=%s", exc)
        try:
            await self.cache_saver.stop()
            self.cache.save()
        except Exception as exc:
            logger.error("shutdown_cache_save_failed error=%s", exc)
        await self.dispatcher.close()
        await self.tokens.close()
        await self.client.close()
        logger.info("gateway_stopped")


def build_gateway_context(
    settings: Settings,
    *,
    config: GatewayConfig | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> GatewayContext:
    gateway_config = config or load_gateway_config(settings.gateway_config_path)
    client = CopilotClient(
        github_api_base_url=settings.github_api_base_url,
        copilot_base_url=settings.resolved_copilot_base_url,
        vscode_version=settings.vscode_version,
        timeout_seconds=settings.upstream_timeout_seconds,
        connect_timeout_seconds=settings.upstream_connect_timeout_seconds,
        auxiliary_timeout_seconds=settings.auxiliary_timeout_seconds,
        transport=transport,
    )
    pool = CredentialPool(
        strategy=gateway_config.pool_strategy,
        enabled=gateway_config.pool_enabled,
        store=JsonFileStore(settings.pool_state_path) if gateway_config.pool_enabled else None,
        token_exchanger=client.get_copilot_token,
        save_debounce_seconds=settings.pool_save_debounce_seconds,
    )
    cache = ResponseCache(
        CacheConfig(
            enabled=gateway_config.cache_enabled,
            max_size=gateway_config.cache_max_size,
            ttl_seconds=gateway_config.cache_ttl_seconds,
        ),
        store=JsonFileStore(settings.cache_path),
    )
    tokens = TokenManager(pool, user_lookup=client.get_user)
    dispatcher = DispatchOrchestrator(
        pool=pool,
        cache=cache,
        client=client,
        tokens=tokens,
        pacer=RequestPacer(
            min_interval_seconds=settings.rate_limit_seconds,
            wait=settings.rate_limit_wait,
        ),
        retry_policy=RetryPolicy(
            max_attempts=max(1, settings.retry_max_attempts),
            initial_delay_seconds=settings.retry_initial_delay_seconds,
            max_delay_seconds=settings.retry_max_delay_seconds,
            backoff_multiplier=settings.retry_backoff_multiplier,
            retryable_statuses=frozenset(settings.retry_statuses_list),
        ),
    )
    return GatewayContext(
        settings=settings,
        config=gateway_config,
        client=client,
        pool=pool,
        cache=cache,
        tokens=tokens,
        dispatcher=dispatcher,
        cache_saver=PeriodicSaver(
            name="request-cache",
            save=cache.save_async,
            interval_seconds=settings.cache_save_interval_seconds,
        ),
    )
