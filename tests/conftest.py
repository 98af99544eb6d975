"""Shared fixtures for tenantgate tests."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from tenantgate.domains.analytics import DomainAnalytics, TrafficRecorder
from tenantgate.domains.cache import DomainCache
from tenantgate.domains.certificates import (
    CertificateAuthority,
    CertificateLifecycle,
    IssuedCertificate,
)
from tenantgate.domains.collaborators import (
    InMemorySettingsStore,
    LoggingNotifier,
    PlanPolicy,
    StaticTenantDirectory,
)
from tenantgate.domains.health import HealthChecker, HealthMonitor
from tenantgate.domains.manager import DomainManager
from tenantgate.domains.models import DnsEvaluationStatus, DnsRecord, VerificationMethod
from tenantgate.domains.registry import DomainRegistry
from tenantgate.domains.resolver import TenantResolver
from tenantgate.domains.storage import MappingStore
from tenantgate.domains.verification import DnsEvaluation, DNSVerifier
from tenantgate.domains.workflow import VerificationWorkflow

CNAME_TARGET = "edge.tenantgate.app"


class FakeClock:
    """Settable UTC clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeAuthority(CertificateAuthority):
    """Authority that records calls and hands out sequential serials."""

    name = "fake-ca"

    def __init__(self, clock: FakeClock, validity_days: int = 90) -> None:
        self.clock = clock
        self.validity = timedelta(days=validity_days)
        self.issued: list[str] = []
        self.revoked: list[str] = []
        self.fail_with: Exception | None = None

    async def issue_certificate(self, domain: str) -> IssuedCertificate:
        if self.fail_with is not None:
            raise self.fail_with
        self.issued.append(domain)
        now = self.clock()
        return IssuedCertificate(
            serial=f"{len(self.issued):04x}",
            issuer=self.name,
            valid_from=now,
            expires_at=now + self.validity,
            certificate_pem="-----BEGIN CERTIFICATE-----\nfake\n-----END CERTIFICATE-----\n",
        )

    async def revoke_certificate(self, serial: str) -> None:
        self.revoked.append(serial)


class StubVerifier(DNSVerifier):
    """Verifier whose DNS answers are set by the test."""

    def __init__(self) -> None:
        super().__init__(cname_target=CNAME_TARGET, timeout=1.0)
        self.status = DnsEvaluationStatus.PENDING
        self.issues = ["CNAME record not found"]
        self.calls = 0

    def publish(self) -> None:
        self.status = DnsEvaluationStatus.VERIFIED
        self.issues = []

    async def evaluate_records(self, domain, expected_token=None):
        self.calls += 1
        verified = self.status == DnsEvaluationStatus.VERIFIED
        observed = [DnsRecord(type="CNAME", name=domain, value=CNAME_TARGET)] if verified else []
        return DnsEvaluation(
            domain=domain,
            status=self.status,
            cname_ok=verified,
            txt_ok=verified if expected_token else None,
            issues=list(self.issues),
            observed_records=observed,
        )

    async def evaluate(self, domain, method, token, email_confirmed=False):
        if method == VerificationMethod.EMAIL:
            return await super().evaluate(domain, method, token, email_confirmed=email_confirmed)
        return await self.evaluate_records(domain, token)


class Env:
    """All domain components wired against fakes."""

    def __init__(self, plans: dict[str, str] | None = None) -> None:
        self.clock = FakeClock()
        self.store = MappingStore(None)
        self.cache = DomainCache(ttl_seconds=60)
        self.tenants = StaticTenantDirectory(plans or {"t1": "premium", "t2": "premium"})
        self.registry = DomainRegistry(
            self.store, self.cache, plans=PlanPolicy(), tenants=self.tenants, clock=self.clock
        )
        self.notifier = LoggingNotifier()
        self.settings = InMemorySettingsStore()
        self.authority = FakeAuthority(self.clock)
        self.verifier = StubVerifier()
        self.lifecycle = CertificateLifecycle(
            self.registry,
            self.authority,
            clock=self.clock,
            jitter_seconds=0,
            notifier=self.notifier,
        )
        self.workflow = VerificationWorkflow(
            self.registry,
            self.verifier,
            lifecycle=self.lifecycle,
            notifier=self.notifier,
            clock=self.clock,
        )
        self.health = HealthChecker(self.registry, self.verifier, clock=self.clock)
        self.monitor = HealthMonitor(self.health, notifier=self.notifier)
        self.analytics = DomainAnalytics(self.registry, TrafficRecorder(clock=self.clock), clock=self.clock)
        self.resolver = TenantResolver(self.registry, self.cache, base_domain="tenantgate.app")
        self.manager = DomainManager(
            self.registry,
            self.workflow,
            self.lifecycle,
            self.health,
            self.analytics,
            self.resolver,
            notifier=self.notifier,
            settings=self.settings,
            clock=self.clock,
        )

    def events(self, name: str) -> list[dict]:
        return [payload for _, event, payload in self.notifier.sent if event == name]


def self_signed_bundle(domain: str, now: datetime, days: int = 60) -> tuple[str, str]:
    """PEM certificate and key for ``domain``, valid from a day before ``now``."""
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domain)])
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=days))
        .add_extension(x509.SubjectAlternativeName([x509.DNSName(domain)]), critical=False)
        .sign(key, hashes.SHA256())
    )
    key_pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()
    return cert.public_bytes(serialization.Encoding.PEM).decode(), key_pem


@pytest.fixture
def env():
    return Env()


@pytest.fixture
def make_env():
    return Env


@pytest.fixture
def cert_bundle():
    return self_signed_bundle


@pytest.fixture
def clock():
    return FakeClock()
