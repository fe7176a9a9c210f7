from __future__ import annotations

import hashlib
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any

from copilot_gateway.config import PoolAccountConfig, PoolStrategy
from copilot_gateway.errors import ConfigInvalid, PoolExhausted
from copilot_gateway.gateway.upstream import UpstreamToken
from copilot_gateway.runtime.persistence_tasks import DebouncedWriter
from copilot_gateway.utils.persistence import JsonFileStore

logger = logging.getLogger("uvicorn.error")

STRATEGIES: tuple[PoolStrategy, ...] = ("sticky", "round-robin", "least-recently-used")

TokenExchanger = Callable[[str], Awaitable[UpstreamToken]]


def credential_id_for_token(token: str) -> str:
    digest = hashlib.sha256(token.encode("utf-8")).hexdigest()
    return f"acct-{digest[:12]}"


@dataclass(slots=True)
class Credential:
    id: str
    token: str
    login: str
    active: bool = True
    rate_limited: bool = False
    rate_limit_reset_at: float | None = None
    paused: bool = False
    request_count: int = 0
    error_count: int = 0
    last_used: float | None = None
    last_error: str | None = None

    @property
    def eligible(self) -> bool:
        return self.active and not self.rate_limited and not self.paused

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Credential:
        token = str(payload.get("token") or "").strip()
        if not token:
            raise ConfigInvalid("persisted account is missing its token")
        account_id = str(payload.get("id") or "").strip() or credential_id_for_token(token)
        return cls(
            id=account_id,
            token=token,
            login=str(payload.get("login") or account_id),
            active=bool(payload.get("active", True)),
            rate_limited=bool(payload.get("rate_limited", False)),
            rate_limit_reset_at=_optional_float(payload.get("rate_limit_reset_at")),
            paused=bool(payload.get("paused", False)),
            request_count=int(payload.get("request_count") or 0),
            error_count=int(payload.get("error_count") or 0),
            last_used=_optional_float(payload.get("last_used")),
            last_error=payload.get("last_error"),
        )


@dataclass(slots=True)
class PoolState:
    accounts: list[Credential] = field(default_factory=list)
    current_index: int = 0
    sticky_account_id: str | None = None
    last_selected_id: str | None = None


class CredentialPool:
    """Upstream accounts, their health flags and the selection policy.

    Mutations never yield to the event loop, so each one is atomic with
    respect to concurrent requests. Every change invalidates the cached
    eligible view and asks the debounced writer to persist the pool.
    """

    def __init__(
        self,
        *,
        strategy: PoolStrategy = "sticky",
        enabled: bool = True,
        store: JsonFileStore | None = None,
        token_exchanger: TokenExchanger | None = None,
        clock: Callable[[], float] = time.time,
        save_debounce_seconds: float = 0.5,
    ) -> None:
        if strategy not in STRATEGIES:
            raise ValueError(f"unknown pool strategy: {strategy}")
        self.strategy: PoolStrategy = strategy
        self.enabled = enabled
        self._state = PoolState()
        self._store = store
        self._token_exchanger = token_exchanger
        self._clock = clock
        self._eligible: list[Credential] | None = None
        self._eligible_version = 0
        self._writer = DebouncedWriter(
            name="account-pool",
            snapshot=self.to_document,
            write=self._write_document,
            delay_seconds=save_debounce_seconds,
        )

    @property
    def credentials(self) -> list[Credential]:
        return list(self._state.accounts)

    @property
    def state(self) -> PoolState:
        return self._state

    @property
    def writer(self) -> DebouncedWriter:
        return self._writer

    @property
    def eligible_version(self) -> int:
        return self._eligible_version

    def get(self, account_id: str) -> Credential | None:
        for credential in self._state.accounts:
            if credential.id == account_id:
                return credential
        return None

    def current(self) -> Credential | None:
        if self._state.last_selected_id is None:
            return None
        return self.get(self._state.last_selected_id)

    def eligible(self) -> list[Credential]:
        if self._eligible is None:
            self._eligible = [c for c in self._state.accounts if c.eligible]
        return self._eligible

    def invalidate_eligible(self) -> None:
        self._eligible = None
        self._eligible_version += 1

    # Membership

    def configure(self, accounts: list[PoolAccountConfig]) -> None:
        """Sync pool membership with the configured account list.

        Known tokens keep their runtime state; tokens no longer configured are
        deactivated rather than dropped.
        """
        configured_tokens: set[str] = set()
        for account in accounts:
            configured_tokens.add(account.token)
            existing = self._find_by_token(account.token)
            if existing is None:
                self.add_account(account.token, login=account.label)
                continue
            if account.label and existing.login != account.label:
                existing.login = account.label
        for credential in self._state.accounts:
            if credential.token not in configured_tokens and credential.active:
                credential.active = False
                logger.info("pool_account_deactivated account=%s reason=unconfigured", credential.login)
        self._changed()

    def add_account(self, token: str, *, login: str | None = None) -> Credential:
        existing = self._find_by_token(token)
        if existing is not None:
            existing.active = True
            self._changed()
            return existing
        account_id = credential_id_for_token(token)
        credential = Credential(id=account_id, token=token, login=login or account_id)
        self._state.accounts.append(credential)
        self._changed()
        return credential

    def remove_account(self, account_id: str) -> bool:
        return self.deactivate(account_id)

    # Selection

    def select(self, strategy: PoolStrategy | None = None) -> Credential:
        chosen_strategy = strategy or self.strategy
        self._expire_rate_limits()
        eligible = self.eligible()
        if not eligible:
            raise PoolExhausted()

        previous_id = self._state.last_selected_id
        if chosen_strategy == "round-robin":
            credential = self._select_round_robin()
        elif chosen_strategy == "least-recently-used":
            credential = self._select_least_recently_used(eligible)
        else:
            credential = self._select_sticky(eligible)

        if previous_id is not None and previous_id != credential.id:
            previous = self.get(previous_id)
            reason = "ineligible" if previous is not None and not previous.eligible else chosen_strategy
            logger.info(
                "pool_account_rotated from=%s to=%s reason=%s",
                previous.login if previous is not None else previous_id,
                credential.login,
                reason,
            )
        self._state.last_selected_id = credential.id
        self._writer.request()
        return credential

    def _select_sticky(self, eligible: list[Credential]) -> Credential:
        sticky_id = self._state.sticky_account_id
        if sticky_id is not None:
            for credential in eligible:
                if credential.id == sticky_id:
                    return credential
        credential = self._next_eligible_after(sticky_id)
        self._state.sticky_account_id = credential.id
        return credential

    def _select_round_robin(self) -> Credential:
        accounts = self._state.accounts
        total = len(accounts)
        start = self._state.current_index % total
        for offset in range(total):
            position = (start + offset) % total
            credential = accounts[position]
            if credential.eligible:
                self._state.current_index = (position + 1) % total
                return credential
        raise PoolExhausted()

    def _select_least_recently_used(self, eligible: list[Credential]) -> Credential:
        # min() keeps the first of equal keys, which is configuration order.
        return min(
            eligible,
            key=lambda c: c.last_used if c.last_used is not None else float("-inf"),
        )

    def _next_eligible_after(self, account_id: str | None) -> Credential:
        accounts = self._state.accounts
        start = 0
        if account_id is not None:
            for position, credential in enumerate(accounts):
                if credential.id == account_id:
                    start = position + 1
                    break
        total = len(accounts)
        for offset in range(total):
            credential = accounts[(start + offset) % total]
            if credential.eligible:
                return credential
        raise PoolExhausted()

    def _expire_rate_limits(self) -> None:
        now = self._clock()
        expired = False
        for credential in self._state.accounts:
            reset_at = credential.rate_limit_reset_at
            if credential.rate_limited and reset_at is not None and reset_at <= now:
                credential.rate_limited = False
                credential.rate_limit_reset_at = None
                expired = True
                logger.info("pool_rate_limit_cleared account=%s", credential.login)
        if expired:
            self._changed()

    # Reporting

    def report_success(self, account_id: str) -> None:
        credential = self._require(account_id)
        credential.request_count += 1
        credential.last_used = self._clock()
        self._changed(eligibility=False)

    def report_rate_limited(self, account_id: str, reset_at: float | None) -> None:
        credential = self._require(account_id)
        credential.rate_limited = True
        credential.rate_limit_reset_at = reset_at
        logger.warning(
            "pool_account_rate_limited account=%s reset_at=%s",
            credential.login,
            _iso(reset_at),
        )
        self._changed()

    def report_error(self, account_id: str, message: str) -> None:
        credential = self._require(account_id)
        credential.error_count += 1
        credential.last_error = message
        self._changed(eligibility=False)

    def report_auth_failure(self, account_id: str, message: str = "Authentication failed") -> None:
        credential = self._require(account_id)
        credential.error_count += 1
        credential.last_error = message
        credential.active = False
        logger.error("pool_account_auth_failed account=%s", credential.login)
        self._changed()

    def pause(self, account_id: str) -> bool:
        return self._set_flag(account_id, paused=True)

    def resume(self, account_id: str) -> bool:
        return self._set_flag(account_id, paused=False)

    def deactivate(self, account_id: str) -> bool:
        return self._set_flag(account_id, active=False)

    def set_login(self, account_id: str, login: str) -> None:
        credential = self._require(account_id)
        if credential.login != login:
            credential.login = login
            self._changed(eligibility=False)

    async def refresh_upstream_token(self, credential: Credential) -> UpstreamToken:
        if self._token_exchanger is None:
            raise RuntimeError("credential pool has no token exchanger configured")
        return await self._token_exchanger(credential.token)

    # Status

    def status(self) -> dict[str, Any]:
        accounts = self._state.accounts
        current = self.current()
        return {
            "enabled": self.enabled,
            "strategy": self.strategy,
            "current_account": current.id if current is not None else None,
            "total_accounts": len(accounts),
            "active_accounts": len([c for c in accounts if c.active and not c.rate_limited]),
            "eligible_accounts": len(self.eligible()),
        }

    def accounts_status(self) -> list[dict[str, Any]]:
        return [
            {
                "id": c.id,
                "login": c.login,
                "active": c.active,
                "paused": c.paused,
                "rate_limited": c.rate_limited,
                "rate_limit_reset_at": _iso(c.rate_limit_reset_at),
                "request_count": c.request_count,
                "error_count": c.error_count,
                "last_used": _iso(c.last_used),
                "last_error": c.last_error,
            }
            for c in self._state.accounts
        ]

    # Persistence

    def to_document(self) -> dict[str, Any]:
        return {
            "accounts": [c.to_dict() for c in self._state.accounts],
            "current_index": self._state.current_index,
            "sticky_account_id": self._state.sticky_account_id,
            "last_selected_id": self._state.last_selected_id,
            "config": {"enabled": self.enabled, "strategy": self.strategy},
        }

    def load(self) -> None:
        if self._store is None:
            return
        try:
            payload = self._store.load(default=None)
            if payload is None:
                logger.debug("pool_state_load path=%s result=missing", self._store.path)
                return
            self._state = _parse_pool_document(payload)
        except (ConfigInvalid, ValueError, TypeError, OSError) as exc:
            logger.warning(
                "pool_state_invalid path=%s error=%s fallback=defaults",
                self._store.path,
                exc,
            )
            self._state = PoolState()
        self.invalidate_eligible()
        logger.debug("pool_state_load accounts=%d", len(self._state.accounts))

    def flush(self) -> bool:
        if self._store is None:
            return False
        return self._writer.flush()

    async def start(self) -> None:
        if self._store is not None:
            await self._writer.start()

    async def stop(self) -> None:
        await self._writer.stop()

    def _write_document(self, document: dict[str, Any]) -> None:
        if self._store is not None:
            self._store.write(document)

    def _changed(self, *, eligibility: bool = True) -> None:
        if eligibility:
            self.invalidate_eligible()
        self._writer.request()

    def _set_flag(self, account_id: str, **flags: bool) -> bool:
        credential = self.get(account_id)
        if credential is None:
            return False
        for name, value in flags.items():
            setattr(credential, name, value)
        self._changed()
        return True

    def _require(self, account_id: str) -> Credential:
        credential = self.get(account_id)
        if credential is None:
            raise KeyError(f"unknown account: {account_id}")
        return credential

    def _find_by_token(self, token: str) -> Credential | None:
        for credential in self._state.accounts:
            if credential.token == token:
                return credential
        return None


def _parse_pool_document(payload: Any) -> PoolState:
    if not isinstance(payload, dict):
        raise ConfigInvalid("pool state document must be an object")
    raw_accounts = payload.get("accounts") or []
    if not isinstance(raw_accounts, list):
        raise ConfigInvalid("pool state accounts must be a list")
    accounts: list[Credential] = []
    for raw in raw_accounts:
        if not isinstance(raw, dict):
            raise ConfigInvalid("pool state account must be an object")
        accounts.append(Credential.from_dict(raw))
    return PoolState(
        accounts=accounts,
        current_index=int(payload.get("current_index") or 0),
        sticky_account_id=payload.get("sticky_account_id"),
        last_selected_id=payload.get("last_selected_id"),
    )


def _optional_float(value: Any) -> float | None:
    if value is None:
        return None
    return float(value)


def _iso(epoch: float | None) -> str | None:
    if epoch is None:
        return None
    return datetime.fromtimestamp(epoch, tz=timezone.utc).isoformat()
