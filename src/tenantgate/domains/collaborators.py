"""Interfaces to systems outside the domain components.

Plans come from the account/billing side, notifications are delivered by a
separate service and the tenant settings document keeps a denormalized copy
of the current custom domain. Only the interfaces plus simple in-process
implementations live here.
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

import structlog

from tenantgate.core.config import DEFAULT_PLAN_LIMITS

logger = structlog.get_logger()

DEFAULT_PLAN = "foundation"
ANALYTICS_PLANS = frozenset({"enterprise"})


class PlanPolicy:
    """Custom domain quota per subscription plan. Subdomains are not counted."""

    def __init__(self, limits: dict[str, int] | None = None, default_plan: str = DEFAULT_PLAN) -> None:
        self.limits = dict(limits if limits is not None else DEFAULT_PLAN_LIMITS)
        self.default_plan = default_plan

    def normalize(self, plan: str | None) -> str:
        plan = (plan or "").strip().lower()
        return plan if plan in self.limits else self.default_plan

    def limit_for(self, plan: str | None) -> int:
        return self.limits.get(self.normalize(plan), 0)

    def allows_analytics(self, plan: str | None) -> bool:
        return self.normalize(plan) in ANALYTICS_PLANS


@runtime_checkable
class TenantDirectory(Protocol):
    async def plan_for(self, tenant_id: str) -> str | None: ...


@runtime_checkable
class Notifier(Protocol):
    async def notify(self, tenant_id: str, event: str, payload: dict[str, Any]) -> None: ...


@runtime_checkable
class SettingsStore(Protocol):
    async def set_custom_domain(self, tenant_id: str, domain: str | None) -> None: ...


class StaticTenantDirectory:
    """Tenant plans from a fixed mapping."""

    def __init__(self, plans: dict[str, str] | None = None, default: str = DEFAULT_PLAN) -> None:
        self.plans = dict(plans or {})
        self.default = default

    async def plan_for(self, tenant_id: str) -> str | None:
        return self.plans.get(tenant_id, self.default)


class LoggingNotifier:
    """Notifier that only logs. Keeps a bounded history for inspection."""

    def __init__(self, history: int = 1000) -> None:
        self.sent: list[tuple[str, str, dict[str, Any]]] = []
        self._history = history

    async def notify(self, tenant_id: str, event: str, payload: dict[str, Any]) -> None:
        logger.info("Tenant notification", tenant_id=tenant_id, notification=event, **payload)
        self.sent.append((tenant_id, event, payload))
        if len(self.sent) > self._history:
            del self.sent[0]


class InMemorySettingsStore:
    def __init__(self) -> None:
        self.custom_domains: dict[str, str | None] = {}

    async def set_custom_domain(self, tenant_id: str, domain: str | None) -> None:
        self.custom_domains[tenant_id] = domain


async def safe_notify(
    notifier: Notifier | None, tenant_id: str, event: str, payload: dict[str, Any]
) -> bool:
    """Deliver a notification; delivery failures are logged and never raised."""
    if notifier is None:
        return False
    try:
        await notifier.notify(tenant_id, event, payload)
        return True
    except Exception as e:
        logger.warning(
            "Notification delivery failed",
            tenant_id=tenant_id,
            notification=event,
            error=str(e),
        )
        return False


async def safe_set_custom_domain(
    settings: SettingsStore | None, tenant_id: str, domain: str | None
) -> bool:
    """Best-effort update of the tenant settings denormalization."""
    if settings is None:
        return False
    try:
        await settings.set_custom_domain(tenant_id, domain)
        return True
    except Exception as e:
        logger.warning(
            "Settings update failed",
            tenant_id=tenant_id,
            domain=domain,
            error=str(e),
        )
        return False
