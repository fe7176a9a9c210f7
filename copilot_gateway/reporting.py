from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal

HealthStatus = Literal["healthy", "degraded", "unhealthy"]


def overall_health(*, pool_enabled: bool, eligible: int, total: int) -> HealthStatus:
    if pool_enabled and eligible == 0:
        return "unhealthy"
    if pool_enabled and eligible < total / 2:
        return "degraded"
    return "healthy"


def build_health_report(
    *, pool_status: dict[str, Any], cache_stats: dict[str, Any], uptime_seconds: float
) -> dict[str, Any]:
    eligible = int(pool_status.get("eligible_accounts") or 0)
    total = int(pool_status.get("total_accounts") or 0)
    status = overall_health(
        pool_enabled=bool(pool_status.get("enabled")),
        eligible=eligible,
        total=total,
    )
    return {
        "status": status,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "uptime": round(uptime_seconds, 3),
        "checks": {
            "accounts": {
                "status": "ok" if eligible > 0 else "warning",
                "active": eligible,
                "total": total,
            },
            "cache": {
                "status": "ok" if cache_stats.get("enabled") else "disabled",
                "size": cache_stats.get("size", 0),
                "max_size": cache_stats.get("max_size", 0),
            },
        },
    }


def format_accounts_table(
    accounts: list[dict[str, Any]],
    *,
    strategy: str | None = None,
    current_id: str | None = None,
) -> str:
    lines = [
        "┌──────────────────────────────────────────────────────────────────────┐",
        "│                       ACCOUNT LIMITS STATUS                          │",
        "├──────────────────────────────────────────────────────────────────────┤",
    ]
    if strategy:
        current = (current_id or "N/A").ljust(20)
        lines.append(f"│ Strategy: {strategy.ljust(10)} Current: {current}            │")
    lines.extend(
        [
            "├────────────┬────────┬────────────┬──────────┬────────┬──────────────┤",
            "│   Account  │ Active │ Rate Limit │ Requests │ Errors │  Last Error  │",
            "├────────────┼────────┼────────────┼──────────┼────────┼──────────────┤",
        ]
    )
    for account in accounts:
        indicator = "→" if account.get("id") == current_id else " "
        name = (indicator + str(account.get("login") or ""))[:10].ljust(10)
        active = "  ✓   " if account.get("active") else "  ✗   "
        limited = "    ✓     " if account.get("rate_limited") else "    ✗     "
        requests = str(account.get("request_count", 0)).rjust(6).ljust(8)
        errors = str(account.get("error_count", 0)).rjust(4).ljust(6)
        last_error = str(account.get("last_error") or "-")[:12].ljust(12)
        lines.append(f"│ {name} │{active}│{limited}│{requests}│{errors}│ {last_error} │")
    lines.append("└────────────┴────────┴────────────┴──────────┴────────┴──────────────┘")
    return "\n".join(lines)


def format_accounts_simple(
    accounts: list[dict[str, Any]],
    *,
    strategy: str | None = None,
    current_id: str | None = None,
) -> str:
    lines: list[str] = []
    if strategy:
        lines.extend([f"Strategy: {strategy}", f"Current: {current_id or 'N/A'}", ""])
    for account in accounts:
        indicator = "→ " if account.get("id") == current_id else "  "
        if not account.get("active"):
            state = "✗ Inactive"
        elif account.get("paused"):
            state = "⏸ Paused"
        elif account.get("rate_limited"):
            state = "⚠ RATE LIMITED"
        else:
            state = "✓ Active"
        lines.append(
            f"{indicator}{account.get('login')}: {state} | "
            f"Requests: {account.get('request_count', 0)} | Errors: {account.get('error_count', 0)}"
        )
        if account.get("last_error"):
            lines.append(f"    Last error: {account['last_error']}")
        if account.get("rate_limit_reset_at"):
            lines.append(f"    Reset at: {account['rate_limit_reset_at']}")
    return "\n".join(lines)
