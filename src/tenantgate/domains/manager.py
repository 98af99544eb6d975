"""Domain manager: the management operations behind the API and CLI.

Composes the registry, verification workflow, certificate lifecycle,
health checks, analytics and resolver into tenant-facing operations.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Any

import httpx
import structlog

from tenantgate.core.config import TenantgateConfig, get_config
from tenantgate.domains.analytics import DomainAnalytics, TrafficRecorder, insights
from tenantgate.domains.cache import DomainCache
from tenantgate.domains.certificates import (
    CertificateAuthority,
    CertificateLifecycle,
    LocalAuthority,
)
from tenantgate.domains.collaborators import (
    LoggingNotifier,
    Notifier,
    PlanPolicy,
    SettingsStore,
    StaticTenantDirectory,
    TenantDirectory,
    safe_notify,
    safe_set_custom_domain,
)
from tenantgate.domains.errors import (
    DomainTaken,
    InvalidInput,
    NotFound,
    PlanUpgradeRequired,
)
from tenantgate.domains.health import HealthChecker, HealthMonitor, recommendations
from tenantgate.domains.models import (
    RECOMMENDED_TTL,
    CertificateType,
    Clock,
    DomainKind,
    DomainMapping,
    MappingPatch,
    MappingSpec,
    MappingStatus,
    VerificationMethod,
    _utc_now,
)
from tenantgate.domains.registry import DomainRegistry
from tenantgate.domains.resolver import TenantResolver, normalize_hostname
from tenantgate.domains.scheduler import DomainScheduler
from tenantgate.domains.storage import MappingStore
from tenantgate.domains.validation import (
    is_banned_domain,
    suggest_subdomains,
    validate_certificate_bundle,
    validate_domain_name,
    validate_subdomain_label,
    validate_verification_method,
)
from tenantgate.domains.verification import VERIFICATION_FILE_PATH, DNSVerifier
from tenantgate.domains.workflow import VerificationWorkflow
from tenantgate.security.ratelimit import RateLimitConfig, RateLimiter

logger = structlog.get_logger()

PROPAGATION_ESTIMATE = "DNS changes usually propagate within 5 to 30 minutes, occasionally up to 48 hours"


def _parse_enum(enum_cls: Any, raw: Any, field_name: str) -> Any:
    if isinstance(raw, enum_cls):
        return raw
    try:
        return enum_cls(str(raw).strip().lower())
    except ValueError as e:
        allowed = [member.value for member in enum_cls]
        raise InvalidInput(
            f"Invalid {field_name}: {raw}",
            details={"field": field_name, "allowed": allowed},
        ) from e


class DomainManager:
    """Tenant-facing domain operations."""

    def __init__(
        self,
        registry: DomainRegistry,
        workflow: VerificationWorkflow,
        lifecycle: CertificateLifecycle,
        health: HealthChecker,
        analytics: DomainAnalytics,
        resolver: TenantResolver,
        base_domain: str = "tenantgate.app",
        notifier: Notifier | None = None,
        settings: SettingsStore | None = None,
        scheduler: DomainScheduler | None = None,
        clock: Clock = _utc_now,
    ) -> None:
        self.registry = registry
        self.workflow = workflow
        self.lifecycle = lifecycle
        self.health = health
        self.analytics = analytics
        self.resolver = resolver
        self.base_domain = base_domain
        self.notifier = notifier
        self.settings = settings
        self.scheduler = scheduler
        self.clock = clock

    def _normalize_subdomain(self, raw: str) -> str:
        label = (raw or "").strip().lower().rstrip(".")
        suffix = f".{self.base_domain}"
        if label.endswith(suffix):
            label = label[: -len(suffix)]
        normalized, error = validate_subdomain_label(label)
        if error:
            raise InvalidInput(
                error,
                details={"field": "domain", "suggestions": suggest_subdomains(label)},
            )
        return f"{normalized}{suffix}"

    def _normalize_custom(self, raw: str) -> str:
        normalized, error = validate_domain_name(raw)
        if error:
            raise InvalidInput(error, details={"field": "domain"})
        if is_banned_domain(normalized, self.base_domain):
            raise InvalidInput(
                f"{normalized} cannot be used as a custom domain",
                details={"field": "domain"},
            )
        return normalized

    async def add_domain(
        self,
        tenant_id: str,
        domain: str,
        kind: str | DomainKind = DomainKind.CUSTOM,
        certificate_type: str | CertificateType = CertificateType.MANAGED,
        verification_method: str | VerificationMethod | None = None,
        auto_renew: bool = True,
        force_https: bool = True,
        custom_certificate: dict[str, str] | None = None,
        actor: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Register a subdomain or custom domain for a tenant.

        Args:
            tenant_id: Owning tenant.
            domain: Hostname (custom) or label (subdomain).
            kind: ``custom`` or ``subdomain``.
            certificate_type: ``managed`` or ``custom``.
            verification_method: ``dns`` (default), ``file`` or ``email``.
            auto_renew: Renew managed certificates ahead of expiry.
            force_https: Redirect plain HTTP to HTTPS.
            custom_certificate: ``certificate``, ``private_key`` and optional
                ``chain`` PEM strings; required for custom certificates.
            actor: Who is making the change.
            metadata: Free-form audit metadata (source ip, user agent...).

        Returns:
            Dict with the created ``domain`` and its ``setup`` instructions.

        Raises:
            InvalidInput: Malformed domain, method or certificate bundle.
            QuotaExceeded: Plan limit reached.
            DomainTaken: The name is already mapped.
        """
        kind = _parse_enum(DomainKind, kind, "kind")
        certificate_type = _parse_enum(CertificateType, certificate_type, "certificate_type")
        method = validate_verification_method(verification_method)

        if kind == DomainKind.SUBDOMAIN:
            name = self._normalize_subdomain(domain)
            if certificate_type == CertificateType.CUSTOM:
                raise InvalidInput(
                    "Platform subdomains use the platform certificate",
                    details={"field": "certificate_type"},
                )
        else:
            name = self._normalize_custom(domain)

        bundle = None
        if certificate_type == CertificateType.CUSTOM:
            bundle = custom_certificate or {}
            if not bundle.get("certificate") or not bundle.get("private_key"):
                raise InvalidInput(
                    "Custom certificates need both a certificate and a private key",
                    details={"field": "custom_certificate"},
                )
            ok, issues = validate_certificate_bundle(
                bundle["certificate"],
                bundle["private_key"],
                bundle.get("chain"),
                domain=name,
                now=self.clock(),
            )
            if not ok:
                raise InvalidInput("Invalid certificate bundle", details={"issues": issues})

        spec = MappingSpec(
            domain=name,
            kind=kind,
            certificate_type=certificate_type,
            verification_method=method,
            auto_renew=auto_renew,
            force_https=force_https,
            created_by=actor,
            metadata=dict(metadata or {}),
        )
        try:
            mapping = await self.registry.create(tenant_id, spec)
        except DomainTaken as e:
            if kind == DomainKind.SUBDOMAIN:
                e.details["suggestions"] = suggest_subdomains(name.split(".", 1)[0])
            raise

        mapping = await self.workflow.initiate_verification(tenant_id, mapping.id, actor=actor)
        if bundle is not None:
            await self.lifecycle.upload_custom_certificate(
                tenant_id,
                mapping.id,
                bundle["certificate"],
                bundle["private_key"],
                bundle.get("chain"),
                actor=actor,
            )

        if kind == DomainKind.SUBDOMAIN:
            await self.workflow.verify_domain(tenant_id, mapping.id, actor=actor)
        else:
            await safe_set_custom_domain(self.settings, tenant_id, name)

        mapping = await self.registry.get(tenant_id, mapping.id)
        setup = self.setup_instructions(mapping)
        if kind == DomainKind.CUSTOM:
            await safe_notify(self.notifier, tenant_id, "domain.setup_instructions", setup)

        logger.info("Domain added", tenant_id=tenant_id, domain=name, kind=kind.value)
        return {"domain": mapping.to_public_dict(self.clock()), "setup": setup}

    def setup_instructions(self, mapping: DomainMapping) -> dict[str, Any]:
        """DNS records and steps the tenant follows to point the domain here."""
        v = mapping.verification
        if mapping.kind == DomainKind.SUBDOMAIN:
            return {
                "domain": mapping.domain,
                "status": mapping.status.value,
                "records": [],
                "steps": ["Nothing to do: platform subdomains are live immediately"],
            }

        cname_target = self.workflow.verifier.cname_target
        steps = [
            "Sign in to your DNS provider",
            f"Add a CNAME record for {mapping.domain} pointing to {cname_target}",
        ]
        if v.method == VerificationMethod.DNS:
            steps.append(
                f"Add a TXT record at {self.workflow.verifier.challenge_name(mapping.domain)} "
                "with the verification token"
            )
        elif v.method == VerificationMethod.FILE:
            steps.append(f"Serve the verification token at http://{mapping.domain}{VERIFICATION_FILE_PATH}")
        else:
            steps.append("Confirm ownership through the email we sent to the domain contacts")
        steps.append("Run verification once the records are published")

        return {
            "domain": mapping.domain,
            "status": mapping.status.value,
            "method": v.method.value,
            "cname_target": cname_target,
            "verification_token": (
                v.token if not mapping.is_active and v.method != VerificationMethod.EMAIL else None
            ),
            "records": [r.to_dict() for r in v.required_records],
            "recommended_ttl": RECOMMENDED_TTL,
            "propagation": PROPAGATION_ESTIMATE,
            "steps": steps,
        }

    async def get_setup_instructions(self, tenant_id: str, mapping_id: str) -> dict[str, Any]:
        mapping = await self.registry.get(tenant_id, mapping_id)
        return self.setup_instructions(mapping)

    async def list_domains(self, tenant_id: str) -> dict[str, Any]:
        """A tenant's mappings with plan usage and summary statistics."""
        now = self.clock()
        mappings = await self.registry.list_for_tenant(tenant_id)
        return {
            "domains": [m.to_public_dict(now) for m in mappings],
            "usage": await self.registry.usage(tenant_id),
            "stats": await self.registry.domain_stats(tenant_id),
        }

    async def get_domain(self, tenant_id: str, mapping_id: str) -> dict[str, Any]:
        mapping = await self.registry.get(tenant_id, mapping_id)
        data = mapping.to_public_dict(self.clock())
        if mapping.status == MappingStatus.PENDING_VERIFICATION:
            data["setup"] = self.setup_instructions(mapping)
        return data

    async def verify_domain(
        self, tenant_id: str, mapping_id: str, actor: str | None = None
    ) -> dict[str, Any]:
        outcome = await self.workflow.verify_domain(tenant_id, mapping_id, actor=actor)
        return outcome.to_dict()

    async def confirm_email_verification(
        self, tenant_id: str, mapping_id: str, token: str, actor: str | None = None
    ) -> dict[str, Any]:
        if not isinstance(token, str) or not token.strip():
            raise InvalidInput("token is required", details={"field": "token"})
        outcome = await self.workflow.confirm_email_verification(
            tenant_id, mapping_id, token.strip(), actor=actor
        )
        return outcome.to_dict()

    async def update_domain(
        self,
        tenant_id: str,
        mapping_id: str,
        changes: dict[str, Any],
        actor: str | None = None,
    ) -> dict[str, Any]:
        """Apply configuration changes.

        Changing the verification method of a pending mapping issues a new
        challenge for the new method.

        Raises:
            InvalidInput: Unknown field or bad value.
            InvalidTransition: Status change outside the state machine.
        """
        allowed = {"force_https", "auto_renew", "verification_method", "status", "metadata"}
        unknown = sorted(set(changes) - allowed)
        if unknown:
            raise InvalidInput(
                f"Unknown fields: {', '.join(unknown)}",
                details={"fields": unknown, "allowed": sorted(allowed)},
            )
        for flag in ("force_https", "auto_renew"):
            if flag in changes and not isinstance(changes[flag], bool):
                raise InvalidInput(f"{flag} must be true or false", details={"field": flag})
        metadata = changes.get("metadata")
        if metadata is not None and not isinstance(metadata, dict):
            raise InvalidInput("metadata must be an object", details={"field": "metadata"})

        patch = MappingPatch(
            force_https=changes.get("force_https"),
            auto_renew=changes.get("auto_renew"),
            verification_method=(
                validate_verification_method(changes["verification_method"])
                if changes.get("verification_method") is not None
                else None
            ),
            status=(
                _parse_enum(MappingStatus, changes["status"], "status")
                if changes.get("status") is not None
                else None
            ),
            metadata=metadata,
        )
        before = await self.registry.get(tenant_id, mapping_id)
        mapping = await self.registry.update_configuration(tenant_id, mapping_id, patch, actor=actor)

        if (
            patch.verification_method is not None
            and patch.verification_method != before.verification.method
            and mapping.status == MappingStatus.PENDING_VERIFICATION
        ):
            mapping = await self.workflow.initiate_verification(tenant_id, mapping_id, actor=actor)
        return mapping.to_public_dict(self.clock())

    async def remove_domain(
        self, tenant_id: str, mapping_id: str, actor: str | None = None
    ) -> dict[str, Any]:
        """Remove a mapping and clean up after it.

        Idempotent: removing a gone mapping does nothing, and removing one
        left in deleting by an interrupted removal finishes the cleanup.
        """
        try:
            mapping, changed = await self.registry.mark_deleting(tenant_id, mapping_id, actor=actor)
        except NotFound:
            return {"id": mapping_id, "removed": False}
        if not changed:
            logger.info("Resuming interrupted domain removal", tenant_id=tenant_id, domain=mapping.domain)

        await self.lifecycle.cancel_pending(mapping.id)
        revoked = await self.lifecycle.revoke_certificates(mapping)
        if mapping.kind == DomainKind.CUSTOM:
            await self._clear_settings(tenant_id, mapping.domain)
        self.registry.cache.invalidate(mapping.domain)
        self.analytics.recorder.forget(mapping.domain)
        deleted = await self.registry.hard_delete(mapping)
        if deleted:
            await safe_notify(self.notifier, tenant_id, "domain.removed", {"domain": mapping.domain})

        logger.info(
            "Domain removed",
            tenant_id=tenant_id,
            domain=mapping.domain,
            certificates_revoked=revoked,
        )
        return {"id": mapping_id, "domain": mapping.domain, "removed": deleted}

    async def _clear_settings(self, tenant_id: str, removed: str) -> None:
        remaining = [
            m.domain
            for m in await self.registry.list_for_tenant(tenant_id)
            if m.kind == DomainKind.CUSTOM and m.domain != removed
        ]
        await safe_set_custom_domain(self.settings, tenant_id, remaining[0] if remaining else None)

    async def renew_certificate(
        self, tenant_id: str, mapping_id: str, actor: str | None = None
    ) -> dict[str, Any]:
        """Manually renew a managed certificate.

        Raises:
            DomainNotVerified: Mapping is not active.
            InvalidTransition: Subdomain or custom-certificate mapping.
        """
        certificate = await self.lifecycle.renew_managed_certificate(tenant_id, mapping_id, actor=actor)
        data = certificate.to_ref().to_dict()
        data["domain"] = certificate.domain
        data["issued_at"] = certificate.issued_at.isoformat()
        return data

    async def get_health(
        self, tenant_id: str, mapping_id: str, include_http: bool = True
    ) -> dict[str, Any]:
        report = await self.health.run_health_check(tenant_id, mapping_id, include_http=include_http)
        data = report.to_dict()
        data["recommendations"] = recommendations(report)
        return data

    async def get_analytics(
        self, tenant_id: str, mapping_id: str, timeframe: str = "7d"
    ) -> dict[str, Any]:
        """Traffic analytics for a mapping (enterprise plans only).

        Raises:
            PlanUpgradeRequired: The tenant's plan does not include analytics.
            InvalidInput: Unknown timeframe.
        """
        plan = await self.registry.plan_for(tenant_id)
        if not self.registry.plans.allows_analytics(plan):
            raise PlanUpgradeRequired(
                "Domain analytics requires the enterprise plan",
                details={"plan": plan, "feature": "analytics"},
            )
        data = await self.analytics.get_domain_analytics(tenant_id, mapping_id, timeframe)
        data["insights"] = insights(data)
        return data

    async def test_domain(self, tenant_id: str, mapping_id: str) -> dict[str, Any]:
        return await self.health.test_configuration(tenant_id, mapping_id)

    async def resolve_tenant(self, hostname: str) -> str | None:
        return await self.resolver.resolve_tenant(hostname)

    async def record_request(
        self,
        hostname: str,
        status: int,
        response_time_ms: float,
        visitor: str | None = None,
    ) -> bool:
        """Record one served request against the mapping behind ``hostname``."""
        mapping_id = await self.resolver.mapping_id_for(hostname)
        if mapping_id is None:
            return False
        self.analytics.recorder.record(
            normalize_hostname(hostname),
            status,
            response_time_ms,
            visitor=visitor,
            mapping_id=mapping_id,
        )
        return True


def build_manager(
    config: TenantgateConfig | None = None,
    storage_path: str | None = None,
    authority: CertificateAuthority | None = None,
    tenants: TenantDirectory | None = None,
    notifier: Notifier | None = None,
    settings: SettingsStore | None = None,
    clock: Clock = _utc_now,
    http_transport: httpx.AsyncBaseTransport | None = None,
) -> DomainManager:
    """Wire a DomainManager from configuration.

    ``storage_path`` overrides the configured JSON store location; pass an
    empty string for an in-memory store.
    """
    config = config or get_config()
    domains = config.domains
    certs = config.certificates
    health_cfg = config.health
    resolver_cfg = config.resolver

    path = domains.storage_path if storage_path is None else storage_path
    store = MappingStore(path or None)
    cache = DomainCache(
        ttl_seconds=resolver_cfg.cache_ttl_seconds,
        max_entries=resolver_cfg.cache_max_entries,
    )
    if tenants is None:
        tenants = StaticTenantDirectory(domains.tenant_plans, default=domains.default_plan)
    registry = DomainRegistry(
        store,
        cache,
        plans=PlanPolicy(domains.plan_limits),
        tenants=tenants,
        clock=clock,
    )
    notifier = notifier or LoggingNotifier()

    if authority is None:
        limiter = RateLimiter(
            RateLimitConfig(
                limit=certs.authority_rate_limit,
                window_seconds=certs.authority_rate_window_seconds,
            )
        )
        authority = LocalAuthority(validity_days=certs.validity_days, rate_limiter=limiter, clock=clock)

    verifier = DNSVerifier(
        cname_target=domains.cname_target,
        verification_label=domains.verification_label,
        timeout=domains.dns_timeout,
        http_transport=http_transport,
    )
    lifecycle = CertificateLifecycle(
        registry,
        authority,
        clock=clock,
        freshness=timedelta(hours=certs.freshness_hours),
        renewal_horizon=timedelta(days=certs.renewal_horizon_days),
        workers=certs.renewal_workers,
        jitter_seconds=certs.renewal_jitter_seconds,
        retention=timedelta(days=certs.retention_days),
        notifier=notifier,
    )
    workflow = VerificationWorkflow(
        registry,
        verifier,
        lifecycle=lifecycle,
        notifier=notifier,
        clock=clock,
        recheck_cap=timedelta(hours=domains.recheck_cap_hours),
    )
    checker = HealthChecker(
        registry,
        verifier,
        clock=clock,
        http_timeout=health_cfg.http_timeout,
        slow_threshold_ms=health_cfg.slow_threshold_ms,
        expiry_warning_days=health_cfg.expiry_warning_days,
        http_transport=http_transport,
    )
    monitor = HealthMonitor(
        checker,
        notifier=notifier,
        interval=timedelta(minutes=health_cfg.interval_minutes),
        failure_threshold=health_cfg.failure_threshold,
    )
    analytics = DomainAnalytics(registry, TrafficRecorder(clock=clock), clock=clock)
    resolver = TenantResolver(
        registry,
        cache,
        base_domain=domains.base_domain,
        lookup_timeout=resolver_cfg.lookup_timeout,
    )
    scheduler = DomainScheduler(
        workflow,
        lifecycle,
        monitor,
        analytics=analytics,
        clock=clock,
        renewal_interval=timedelta(hours=certs.renewal_interval_hours),
        health_interval=timedelta(minutes=health_cfg.interval_minutes),
    )
    return DomainManager(
        registry,
        workflow,
        lifecycle,
        checker,
        analytics,
        resolver,
        base_domain=domains.base_domain,
        notifier=notifier,
        settings=settings,
        scheduler=scheduler,
        clock=clock,
    )
