"""Domain registry: the only writer of domain mappings.

Enforces name uniqueness, plan quotas and the status state machine, and
invalidates the resolver cache for a hostname before any mutating call
returns.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import structlog

from tenantgate.domains.cache import DomainCache
from tenantgate.domains.collaborators import PlanPolicy, TenantDirectory
from tenantgate.domains.errors import (
    DomainNotVerified,
    InvalidInput,
    InvalidTransition,
    NotFound,
    StaleWrite,
)
from tenantgate.domains.models import (
    CertificateState,
    CertificateType,
    Clock,
    DomainKind,
    DomainMapping,
    MappingPatch,
    MappingSpec,
    MappingStatus,
    _utc_now,
)
from tenantgate.domains.state import ensure_transition
from tenantgate.domains.storage import MappingStore

logger = structlog.get_logger()


class DomainRegistry:
    """Owns creation, configuration and removal of domain mappings."""

    def __init__(
        self,
        store: MappingStore,
        cache: DomainCache,
        plans: PlanPolicy | None = None,
        tenants: TenantDirectory | None = None,
        clock: Clock = _utc_now,
    ) -> None:
        self.store = store
        self.cache = cache
        self.plans = plans or PlanPolicy()
        self.tenants = tenants
        self.clock = clock

    async def plan_for(self, tenant_id: str) -> str:
        plan = await self.tenants.plan_for(tenant_id) if self.tenants else None
        return self.plans.normalize(plan)

    async def usage(self, tenant_id: str) -> dict[str, Any]:
        """Custom domain usage against the tenant's plan limit."""
        plan = await self.plan_for(tenant_id)
        return {
            "plan": plan,
            "used": await self.count_domains(tenant_id),
            "limit": self.plans.limit_for(plan),
        }

    async def count_domains(self, tenant_id: str, kind: DomainKind = DomainKind.CUSTOM) -> int:
        """Count non-deleting mappings of ``kind`` for a tenant."""
        return await self.store.count_for_tenant(tenant_id, kind)

    async def find_by_name(self, name: str) -> DomainMapping | None:
        """Look up the non-deleting mapping for a normalized hostname."""
        return await self.store.get_by_domain(name)

    async def get_by_id(self, mapping_id: str) -> DomainMapping | None:
        return await self.store.get(mapping_id)

    async def get(self, tenant_id: str, mapping_id: str) -> DomainMapping:
        """Get a tenant's mapping.

        Raises:
            NotFound: Missing, or owned by another tenant.
        """
        mapping = await self.store.get(mapping_id)
        if mapping is None or mapping.tenant_id != tenant_id:
            raise NotFound(f"Domain mapping {mapping_id} not found", details={"id": mapping_id})
        return mapping

    async def list_for_tenant(
        self, tenant_id: str, include_deleting: bool = False
    ) -> list[DomainMapping]:
        return await self.store.list_for_tenant(tenant_id, include_deleting)

    async def list_by_status(self, status: MappingStatus) -> list[DomainMapping]:
        return await self.store.list_all(status)

    async def create(self, tenant_id: str, spec: MappingSpec) -> DomainMapping:
        """Create a mapping in pending_verification.

        Args:
            tenant_id: Owning tenant.
            spec: Normalized creation input.

        Returns:
            The stored mapping.

        Raises:
            QuotaExceeded: Custom domain limit reached for the tenant's plan.
            DomainTaken: The hostname is held by a non-deleting mapping.
        """
        now = self.clock()
        plan = await self.plan_for(tenant_id)
        mapping = DomainMapping(tenant_id=tenant_id, domain=spec.domain, kind=spec.kind)
        mapping.certificate.type = spec.certificate_type
        mapping.certificate.force_https = spec.force_https
        mapping.certificate.auto_renew = (
            spec.auto_renew and spec.certificate_type == CertificateType.MANAGED
        )
        mapping.verification.method = spec.verification_method
        mapping.audit.created_at = now
        mapping.audit.updated_at = now
        mapping.audit.created_by = spec.created_by
        mapping.audit.last_updated_by = spec.created_by
        mapping.audit.metadata = dict(spec.metadata)

        quota = self.plans.limit_for(plan) if spec.kind == DomainKind.CUSTOM else None
        stored = await self.store.insert(mapping, quota_limit=quota, plan=plan)
        self.cache.invalidate(stored.domain)

        logger.info(
            "Domain mapping created",
            tenant_id=tenant_id,
            domain=stored.domain,
            kind=stored.kind.value,
            mapping_id=stored.id,
        )
        return stored

    async def commit(
        self,
        mapping: DomainMapping,
        actor: str | None = None,
        changed: list[str] | None = None,
        expected_version: int | None = None,
    ) -> DomainMapping:
        """Versioned write of a mapping read earlier.

        Raises:
            StaleWrite: The mapping changed since it was read.
        """
        mapping.audit.record_change(changed or [], actor, self.clock())
        stored = await self.store.update(mapping, expected_version)
        self.cache.invalidate(stored.domain)
        return stored

    async def modify(
        self,
        mapping_id: str,
        mutate: Callable[[DomainMapping], bool],
        attempts: int = 3,
    ) -> DomainMapping | None:
        """Re-read, mutate and commit, retrying on StaleWrite.

        ``mutate`` returns False to skip the write. Returns the stored
        mapping, or None if it vanished or the mutation was skipped.
        """
        for attempt in range(attempts):
            mapping = await self.store.get(mapping_id)
            if mapping is None or not mutate(mapping):
                return None
            try:
                return await self.commit(mapping)
            except StaleWrite:
                if attempt == attempts - 1:
                    raise
                logger.debug("Retrying stale mapping write", mapping_id=mapping_id, attempt=attempt)
        return None

    def apply_status(self, mapping: DomainMapping, status: MappingStatus) -> bool:
        ensure_transition(mapping.status, status)
        if mapping.status == status:
            return False
        if mapping.status == MappingStatus.ACTIVE:
            # Certificates stay stored for audit, only the reference is dropped.
            mapping.certificate.current = None
            mapping.certificate.state = CertificateState.NONE
        mapping.status = status
        return True

    async def set_status(
        self, mapping: DomainMapping, status: MappingStatus, actor: str | None = None
    ) -> DomainMapping:
        """Transition a mapping through the state machine and commit it.

        Raises:
            InvalidTransition: The move is not allowed; nothing is written.
        """
        previous = mapping.status
        if not self.apply_status(mapping, status):
            return mapping
        stored = await self.commit(mapping, actor=actor, changed=["status"])
        logger.info(
            "Domain status changed",
            domain=stored.domain,
            tenant_id=stored.tenant_id,
            old=previous.value,
            new=status.value,
        )
        return stored

    async def update_configuration(
        self,
        tenant_id: str,
        mapping_id: str,
        patch: MappingPatch,
        actor: str | None = None,
    ) -> DomainMapping:
        """Apply a configuration patch.

        Raises:
            NotFound: No such mapping for the tenant.
            InvalidTransition: Patch on a deleting mapping or disallowed status change.
            InvalidInput: Auto-renewal requested for a custom certificate.
        """
        mapping = await self.get(tenant_id, mapping_id)
        if mapping.status == MappingStatus.DELETING:
            raise InvalidTransition(
                "Mapping is being deleted",
                current=mapping.status.value,
                attempted="update",
            )

        changed: list[str] = []
        if patch.status is not None and patch.status != mapping.status:
            if patch.status == MappingStatus.DELETING:
                raise InvalidTransition(
                    "Use remove to delete a domain mapping",
                    current=mapping.status.value,
                    attempted=patch.status.value,
                )
            if patch.status == MappingStatus.ACTIVE and mapping.verification.verified_at is None:
                raise DomainNotVerified(
                    "Domain must pass verification before it can be activated",
                    current=mapping.status.value,
                    attempted=patch.status.value,
                )
            self.apply_status(mapping, patch.status)
            changed.append("status")

        if patch.force_https is not None and patch.force_https != mapping.certificate.force_https:
            mapping.certificate.force_https = patch.force_https
            changed.append("force_https")

        if patch.auto_renew is not None:
            if patch.auto_renew and mapping.certificate.type == CertificateType.CUSTOM:
                raise InvalidInput("Auto-renewal is not available for custom certificates")
            if patch.auto_renew != mapping.certificate.auto_renew:
                mapping.certificate.auto_renew = patch.auto_renew
                changed.append("auto_renew")

        if (
            patch.verification_method is not None
            and patch.verification_method != mapping.verification.method
        ):
            mapping.verification.method = patch.verification_method
            changed.append("verification_method")

        if patch.metadata:
            mapping.audit.metadata.update(patch.metadata)
            changed.append("metadata")

        if not changed:
            return mapping

        stored = await self.commit(mapping, actor=actor, changed=changed)
        logger.info(
            "Domain configuration updated",
            domain=stored.domain,
            tenant_id=tenant_id,
            fields=changed,
        )
        return stored

    async def mark_deleting(
        self, tenant_id: str, mapping_id: str, actor: str | None = None
    ) -> tuple[DomainMapping, bool]:
        """Move a mapping to deleting.

        Returns:
            Tuple of (mapping, changed). ``changed`` is False when it was
            already deleting.
        """
        mapping = await self.get(tenant_id, mapping_id)
        if mapping.status == MappingStatus.DELETING:
            return mapping, False
        return await self.set_status(mapping, MappingStatus.DELETING, actor), True

    async def hard_delete(self, mapping: DomainMapping) -> bool:
        deleted = await self.store.delete(mapping.id)
        self.cache.invalidate(mapping.domain)
        if deleted:
            logger.info("Domain mapping deleted", domain=mapping.domain, tenant_id=mapping.tenant_id)
        return deleted

    async def record_access(self, mapping_id: str, requests: int) -> DomainMapping | None:
        """Add to a mapping's request counter and stamp its last access."""
        now = self.clock()

        def _touch(mapping: DomainMapping) -> bool:
            mapping.request_count += requests
            mapping.last_accessed_at = now
            return requests > 0

        return await self.modify(mapping_id, _touch)

    async def domain_stats(self, tenant_id: str) -> dict[str, Any]:
        """Per-tenant summary counts."""
        mappings = await self.list_for_tenant(tenant_id)
        times = [
            m.health.average_response_time_ms
            for m in mappings
            if m.health.average_response_time_ms is not None
        ]
        return {
            "total": len(mappings),
            "active": sum(1 for m in mappings if m.status == MappingStatus.ACTIVE),
            "pending": sum(1 for m in mappings if m.status == MappingStatus.PENDING_VERIFICATION),
            "error": sum(1 for m in mappings if m.status == MappingStatus.ERROR),
            "ssl_enabled": sum(1 for m in mappings if m.certificate.current is not None),
            "average_response_time_ms": round(sum(times) / len(times), 1) if times else None,
            "total_requests": sum(m.request_count for m in mappings),
        }
