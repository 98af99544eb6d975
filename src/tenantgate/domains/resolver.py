"""Request-path hostname to tenant resolution."""

from __future__ import annotations

import asyncio
import time

import structlog

from tenantgate.domains.cache import DomainCache
from tenantgate.domains.errors import NotFound
from tenantgate.domains.models import MappingStatus
from tenantgate.domains.registry import DomainRegistry
from tenantgate.observability.metrics import RESOLVER_DURATION, RESOLVER_LOOKUPS

logger = structlog.get_logger()


def normalize_hostname(hostname: str) -> str:
    """Lowercase, trim, and drop any port and trailing dot."""
    host = (hostname or "").strip().lower()
    if host.startswith("["):
        return host
    host = host.split(":", 1)[0]
    return host.rstrip(".")


class TenantResolver:
    """Maps an incoming Host header to the tenant that serves it.

    Hot path: answered from the cache when possible. Only ``active``
    mappings resolve; registry trouble resolves to None instead of raising.
    """

    def __init__(
        self,
        registry: DomainRegistry,
        cache: DomainCache,
        base_domain: str = "tenantgate.app",
        lookup_timeout: float = 0.25,
    ) -> None:
        self.registry = registry
        self.cache = cache
        self.base_domain = base_domain.lower().rstrip(".")
        self.lookup_timeout = lookup_timeout

    def _is_platform_root(self, host: str) -> bool:
        return host == self.base_domain or host == f"www.{self.base_domain}"

    def _is_nested_subdomain(self, host: str) -> bool:
        suffix = f".{self.base_domain}"
        return host.endswith(suffix) and "." in host[: -len(suffix)]

    async def _lookup(self, hostname: str) -> tuple[str | None, str | None]:
        """Resolve to (tenant_id, mapping_id), counting one lookup."""
        host = normalize_hostname(hostname)
        if not host or self._is_platform_root(host) or self._is_nested_subdomain(host):
            return None, None

        start = time.perf_counter()
        try:
            entry = self.cache.get(host)
            if entry is not None:
                RESOLVER_LOOKUPS.labels(result="hit").inc()
                return entry.tenant_id, entry.mapping_id

            generation = self.cache.generation(host)
            try:
                mapping = await asyncio.wait_for(
                    self.registry.find_by_name(host), timeout=self.lookup_timeout
                )
            except TimeoutError:
                RESOLVER_LOOKUPS.labels(result="timeout").inc()
                logger.warning("Tenant lookup timed out", host=host, timeout=self.lookup_timeout)
                return None, None
            except Exception as e:
                RESOLVER_LOOKUPS.labels(result="error").inc()
                logger.error("Tenant lookup failed", host=host, error=str(e))
                return None, None

            if mapping is None or mapping.status != MappingStatus.ACTIVE:
                self.cache.set(host, None, generation=generation)
                RESOLVER_LOOKUPS.labels(result="not_found").inc()
                return None, None

            if not self.cache.set(host, mapping.tenant_id, mapping.id, generation=generation):
                logger.debug("Discarded lookup raced by invalidation", host=host)
            RESOLVER_LOOKUPS.labels(result="miss").inc()
            return mapping.tenant_id, mapping.id
        finally:
            RESOLVER_DURATION.observe(time.perf_counter() - start)

    async def resolve_tenant(self, hostname: str) -> str | None:
        """Resolve a hostname to a tenant id.

        Args:
            hostname: Raw Host header value, possibly with a port.

        Returns:
            The tenant id, or None when nothing active serves the host.
        """
        tenant_id, _ = await self._lookup(hostname)
        return tenant_id

    async def resolve_or_raise(self, hostname: str) -> str:
        """Like ``resolve_tenant`` but raises NotFound for unknown hosts."""
        tenant_id = await self.resolve_tenant(hostname)
        if tenant_id is None:
            raise NotFound(
                f"No tenant serves {normalize_hostname(hostname)}",
                details={"host": normalize_hostname(hostname)},
            )
        return tenant_id

    async def mapping_id_for(self, hostname: str) -> str | None:
        """Mapping id behind a resolved host."""
        _, mapping_id = await self._lookup(hostname)
        return mapping_id
