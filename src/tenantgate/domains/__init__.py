"""Tenant domain management.

Maps platform subdomains and tenant-owned custom domains to tenants:
- Subdomains (acme.tenantgate.app) are live immediately
- Custom domains are verified by DNS (CNAME + TXT) before they route
- Managed TLS certificates are issued on activation and renewed ahead of expiry
- Health checks, traffic analytics and a cached hostname resolver

Usage:
    from tenantgate.domains import build_manager

    manager = build_manager(storage_path="domains.json")

    result = await manager.add_domain("tenant-1", "shop.example.com")
    print(result["setup"]["records"])

    outcome = await manager.verify_domain("tenant-1", result["domain"]["id"])
    tenant_id = await manager.resolve_tenant("shop.example.com")
"""

from tenantgate.domains.analytics import DomainAnalytics, TrafficRecorder
from tenantgate.domains.cache import DomainCache
from tenantgate.domains.certificates import (
    CertificateAuthority,
    CertificateLifecycle,
    IssuedCertificate,
    LocalAuthority,
)
from tenantgate.domains.errors import DomainError
from tenantgate.domains.health import HealthChecker, HealthMonitor, HealthReport
from tenantgate.domains.manager import DomainManager, build_manager
from tenantgate.domains.models import (
    Certificate,
    CertificateType,
    DomainKind,
    DomainMapping,
    MappingStatus,
    VerificationMethod,
)
from tenantgate.domains.registry import DomainRegistry
from tenantgate.domains.resolver import TenantResolver
from tenantgate.domains.scheduler import DomainScheduler
from tenantgate.domains.storage import MappingStore
from tenantgate.domains.verification import DNSVerifier, DnsEvaluation
from tenantgate.domains.workflow import VerificationOutcome, VerificationWorkflow

__all__ = [
    "DomainManager",
    "build_manager",
    "DomainRegistry",
    "MappingStore",
    "DomainCache",
    "TenantResolver",
    "DNSVerifier",
    "DnsEvaluation",
    "VerificationWorkflow",
    "VerificationOutcome",
    "CertificateAuthority",
    "CertificateLifecycle",
    "IssuedCertificate",
    "LocalAuthority",
    "HealthChecker",
    "HealthMonitor",
    "HealthReport",
    "DomainAnalytics",
    "TrafficRecorder",
    "DomainScheduler",
    "DomainError",
    "DomainMapping",
    "Certificate",
    "DomainKind",
    "MappingStatus",
    "CertificateType",
    "VerificationMethod",
]
