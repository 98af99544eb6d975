"""TLS certificate lifecycle for custom domains.

Managed certificates are requested from a CertificateAuthority once a
mapping is active, reused while fresh, renewed ahead of expiry by a
periodic sweep and revoked when the mapping is removed. Tenants may upload
their own certificate instead; those are stored verbatim and never renewed.

Issuance for one mapping is single-flight: concurrent triggers (verification
success, a manual renew, the sweep) serialize on a per-mapping lock and the
later callers get the certificate the first one obtained.
"""

from __future__ import annotations

import asyncio
import contextlib
import random
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

import structlog
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from tenantgate.domains.collaborators import Notifier, safe_notify
from tenantgate.domains.errors import (
    CertificateAuthorityRateLimited,
    CertificateIssuanceFailed,
    DomainError,
    DomainNotVerified,
    InvalidInput,
    InvalidTransition,
)
from tenantgate.domains.models import (
    Certificate,
    CertificateState,
    CertificateType,
    Clock,
    DomainKind,
    DomainMapping,
    MappingStatus,
    _utc_now,
)
from tenantgate.domains.registry import DomainRegistry
from tenantgate.domains.validation import validate_certificate_bundle
from tenantgate.observability.metrics import CERTIFICATE_OPERATIONS, RENEWAL_SWEEP_DURATION
from tenantgate.security.ratelimit import RateLimiter

logger = structlog.get_logger()


@dataclass
class IssuedCertificate:
    """What an authority hands back for one issuance."""

    serial: str
    issuer: str
    valid_from: datetime
    expires_at: datetime
    certificate_pem: str
    chain_pem: str | None = None


class CertificateAuthority(ABC):
    """Interface to an ACME-style certificate authority.

    Implementations raise CertificateAuthorityRateLimited when throttled and
    CertificateIssuanceFailed(retryable=False) for permanent rejections.
    Anything else is treated as a transient failure.
    """

    name: str = "authority"

    @abstractmethod
    async def issue_certificate(self, domain: str) -> IssuedCertificate: ...

    async def renew_certificate(self, domain: str, previous_serial: str) -> IssuedCertificate:
        return await self.issue_certificate(domain)

    @abstractmethod
    async def revoke_certificate(self, serial: str) -> None: ...


class LocalAuthority(CertificateAuthority):
    """In-process authority signing leaf certificates from a generated root.

    Meant for self-hosted and development deployments. Private keys of the
    leaves it issues stay here; mappings only reference serials.
    """

    def __init__(
        self,
        name: str = "tenantgate local CA",
        validity_days: int = 90,
        rate_limiter: RateLimiter | None = None,
        clock: Clock = _utc_now,
    ) -> None:
        self.name = name
        self.validity = timedelta(days=validity_days)
        self.rate_limiter = rate_limiter
        self.clock = clock
        self._ca_key = ec.generate_private_key(ec.SECP256R1())
        self._ca_cert = self._build_root()
        self.private_keys: dict[str, str] = {}
        self.revoked: dict[str, datetime] = {}

    def _build_root(self) -> x509.Certificate:
        now = self.clock()
        subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, self.name)])
        return (
            x509.CertificateBuilder()
            .subject_name(subject)
            .issuer_name(subject)
            .public_key(self._ca_key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - timedelta(minutes=5))
            .not_valid_after(now + timedelta(days=3650))
            .add_extension(x509.BasicConstraints(ca=True, path_length=0), critical=True)
            .sign(self._ca_key, hashes.SHA256())
        )

    @property
    def root_pem(self) -> str:
        return self._ca_cert.public_bytes(serialization.Encoding.PEM).decode()

    def _sign(self, domain: str) -> IssuedCertificate:
        now = self.clock()
        key = ec.generate_private_key(ec.SECP256R1())
        cert = (
            x509.CertificateBuilder()
            .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domain)]))
            .issuer_name(self._ca_cert.subject)
            .public_key(key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - timedelta(minutes=5))
            .not_valid_after(now + self.validity)
            .add_extension(x509.SubjectAlternativeName([x509.DNSName(domain)]), critical=False)
            .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
            .sign(self._ca_key, hashes.SHA256())
        )
        serial = format(cert.serial_number, "x")
        self.private_keys[serial] = key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        ).decode()
        return IssuedCertificate(
            serial=serial,
            issuer=self.name,
            valid_from=cert.not_valid_before_utc,
            expires_at=cert.not_valid_after_utc,
            certificate_pem=cert.public_bytes(serialization.Encoding.PEM).decode(),
            chain_pem=self.root_pem,
        )

    async def issue_certificate(self, domain: str) -> IssuedCertificate:
        if self.rate_limiter is not None:
            result = await self.rate_limiter.allow(domain)
            if not result.allowed:
                raise CertificateAuthorityRateLimited(
                    f"Issuance rate limit reached for {domain}",
                    retry_after=round(result.reset_after, 1),
                    details={"domain": domain, "limit": result.limit},
                )
        return await asyncio.to_thread(self._sign, domain)

    async def revoke_certificate(self, serial: str) -> None:
        self.revoked[serial] = self.clock()
        self.private_keys.pop(serial, None)


@dataclass
class SweepReport:
    started_at: datetime
    renewed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "renewed": list(self.renewed),
            "skipped": list(self.skipped),
            "failed": dict(self.failed),
        }


class CertificateLifecycle:
    """Issues, renews, revokes and attaches certificates for mappings."""

    def __init__(
        self,
        registry: DomainRegistry,
        authority: CertificateAuthority,
        clock: Clock = _utc_now,
        freshness: timedelta = timedelta(hours=24),
        renewal_horizon: timedelta = timedelta(days=30),
        workers: int = 4,
        jitter_seconds: float = 30.0,
        retention: timedelta = timedelta(days=90),
        notifier: Notifier | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.registry = registry
        self.store = registry.store
        self.authority = authority
        self.clock = clock
        self.freshness = freshness
        self.renewal_horizon = renewal_horizon
        self.workers = workers
        self.jitter_seconds = jitter_seconds
        self.retention = retention
        self.notifier = notifier
        self._sleep = sleep
        self._locks: dict[str, asyncio.Lock] = {}
        self._tasks: dict[str, asyncio.Task[Certificate | None]] = {}

    def _lock_for(self, mapping_id: str) -> asyncio.Lock:
        lock = self._locks.get(mapping_id)
        if lock is None:
            lock = self._locks[mapping_id] = asyncio.Lock()
        return lock

    async def _latest(self, mapping_id: str, cert_type: CertificateType) -> Certificate | None:
        for certificate in await self.store.certificates_for_mapping(mapping_id):
            if (
                certificate.type == cert_type
                and certificate.revoked_at is None
                and certificate.superseded_by is None
            ):
                return certificate
        return None

    @staticmethod
    def _require_managed(mapping: DomainMapping, operation: str) -> None:
        if mapping.kind == DomainKind.SUBDOMAIN:
            raise InvalidTransition(
                "Platform subdomains are served with the platform certificate",
                current=mapping.status.value,
                attempted=operation,
            )
        if mapping.certificate.type == CertificateType.CUSTOM:
            raise InvalidTransition(
                "Domain uses a custom certificate; upload a new one instead",
                current=mapping.status.value,
                attempted=operation,
            )
        if mapping.status != MappingStatus.ACTIVE:
            raise DomainNotVerified(
                "Domain must be verified before a certificate can be issued",
                current=mapping.status.value,
                attempted=operation,
            )

    async def _attach(self, mapping_id: str, certificate: Certificate) -> DomainMapping | None:
        def _set(mapping: DomainMapping) -> bool:
            if mapping.status != MappingStatus.ACTIVE:
                return False
            mapping.certificate.current = certificate.to_ref()
            mapping.certificate.state = CertificateState.ISSUED
            mapping.certificate.last_error = None
            return True

        return await self.registry.modify(mapping_id, _set)

    async def _record_failure(self, mapping_id: str, message: str) -> None:
        def _set(mapping: DomainMapping) -> bool:
            mapping.certificate.state = (
                CertificateState.ISSUED if mapping.certificate.current else CertificateState.NONE
            )
            mapping.certificate.last_error = message
            return True

        await self.registry.modify(mapping_id, _set)

    async def issue_managed_certificate(
        self, tenant_id: str, mapping_id: str, actor: str | None = None
    ) -> Certificate:
        """Obtain a managed certificate for an active mapping.

        Returns the existing certificate when one was issued within the
        freshness window.

        Raises:
            NotFound: No such mapping for the tenant.
            DomainNotVerified: Mapping is not active.
            InvalidTransition: Subdomain or custom-certificate mapping.
            CertificateAuthorityRateLimited: Authority throttled the request.
            CertificateIssuanceFailed: Any other authority failure.
        """
        return await self._obtain(tenant_id, mapping_id, actor, renewal=False)

    async def renew_managed_certificate(
        self, tenant_id: str, mapping_id: str, actor: str | None = None
    ) -> Certificate:
        """Renew the managed certificate; idempotent within the freshness window."""
        return await self._obtain(tenant_id, mapping_id, actor, renewal=True)

    async def _obtain(
        self, tenant_id: str, mapping_id: str, actor: str | None, renewal: bool
    ) -> Certificate:
        operation = "renew" if renewal else "issue"
        async with self._lock_for(mapping_id):
            mapping = await self.registry.get(tenant_id, mapping_id)
            self._require_managed(mapping, f"{operation}_certificate")
            now = self.clock()

            latest = await self._latest(mapping.id, CertificateType.MANAGED)
            if latest is not None and latest.is_fresh(now, self.freshness):
                current = mapping.certificate.current
                if current is None or current.serial != latest.serial:
                    await self._attach(mapping.id, latest)
                CERTIFICATE_OPERATIONS.labels(operation=operation, result="fresh").inc()
                logger.debug("Reusing fresh certificate", domain=mapping.domain, serial=latest.serial)
                return latest

            def _mark_requested(m: DomainMapping) -> bool:
                self._require_managed(m, f"{operation}_certificate")
                m.certificate.state = (
                    CertificateState.RENEWING if m.certificate.current else CertificateState.REQUESTED
                )
                m.certificate.last_requested_at = now
                return True

            await self.registry.modify(mapping.id, _mark_requested)

            try:
                if renewal and latest is not None:
                    issued = await self.authority.renew_certificate(mapping.domain, latest.serial)
                else:
                    issued = await self.authority.issue_certificate(mapping.domain)
            except (CertificateAuthorityRateLimited, CertificateIssuanceFailed) as e:
                await self._record_failure(mapping.id, e.message)
                CERTIFICATE_OPERATIONS.labels(operation=operation, result=e.code).inc()
                logger.warning(
                    "Certificate request refused",
                    domain=mapping.domain,
                    error=e.message,
                    retry_after=e.retry_after,
                )
                raise
            except Exception as e:
                message = f"Certificate authority error: {e}"
                await self._record_failure(mapping.id, message)
                CERTIFICATE_OPERATIONS.labels(operation=operation, result="error").inc()
                logger.error("Certificate request failed", domain=mapping.domain, error=str(e))
                raise CertificateIssuanceFailed(message, retryable=True) from e

            certificate = Certificate(
                serial=issued.serial,
                mapping_id=mapping.id,
                domain=mapping.domain,
                type=CertificateType.MANAGED,
                issuer=issued.issuer,
                valid_from=issued.valid_from,
                expires_at=issued.expires_at,
                issued_at=now,
                certificate_pem=issued.certificate_pem,
                chain_pem=issued.chain_pem,
            )
            await self.store.save_certificate(certificate)
            if latest is not None:
                await self.store.save_certificate(latest.superseded(certificate.serial))
            await self._attach(mapping.id, certificate)

        CERTIFICATE_OPERATIONS.labels(operation=operation, result="ok").inc()
        logger.info(
            "Certificate issued",
            domain=mapping.domain,
            tenant_id=tenant_id,
            serial=certificate.serial,
            expires_at=certificate.expires_at.isoformat(),
            renewal=renewal,
        )
        if renewal:
            await safe_notify(
                self.notifier,
                tenant_id,
                "certificate.renewed",
                {"domain": mapping.domain, "expires_at": certificate.expires_at.isoformat()},
            )
        return certificate

    async def upload_custom_certificate(
        self,
        tenant_id: str,
        mapping_id: str,
        certificate_pem: str,
        private_key_pem: str,
        chain_pem: str | None = None,
        actor: str | None = None,
    ) -> Certificate:
        """Store a tenant-provided certificate bundle for a custom domain.

        The bundle is attached immediately when the mapping is active,
        otherwise on successful verification.

        Raises:
            InvalidInput: The bundle fails validation.
            InvalidTransition: Subdomain or deleting mapping.
        """
        mapping = await self.registry.get(tenant_id, mapping_id)
        if mapping.kind == DomainKind.SUBDOMAIN or mapping.status == MappingStatus.DELETING:
            raise InvalidTransition(
                "Custom certificates can only be attached to custom domains",
                current=mapping.status.value,
                attempted="upload_certificate",
            )

        now = self.clock()
        ok, issues = validate_certificate_bundle(
            certificate_pem, private_key_pem, chain_pem, domain=mapping.domain, now=now
        )
        if not ok:
            CERTIFICATE_OPERATIONS.labels(operation="upload", result="invalid").inc()
            raise InvalidInput("Invalid certificate bundle", details={"issues": issues})

        leaf = x509.load_pem_x509_certificate(certificate_pem.encode())
        certificate = Certificate(
            serial=format(leaf.serial_number, "x"),
            mapping_id=mapping.id,
            domain=mapping.domain,
            type=CertificateType.CUSTOM,
            issuer=leaf.issuer.rfc4514_string(),
            valid_from=leaf.not_valid_before_utc,
            expires_at=leaf.not_valid_after_utc,
            issued_at=now,
            certificate_pem=certificate_pem,
            private_key_pem=private_key_pem,
            chain_pem=chain_pem,
        )

        async with self._lock_for(mapping.id):
            previous = await self._latest(mapping.id, mapping.certificate.type)
            await self.store.save_certificate(certificate)
            if previous is not None and previous.serial != certificate.serial:
                await self.store.save_certificate(previous.superseded(certificate.serial))

            def _switch(m: DomainMapping) -> bool:
                m.certificate.type = CertificateType.CUSTOM
                m.certificate.auto_renew = False
                m.certificate.last_error = None
                if m.status == MappingStatus.ACTIVE:
                    m.certificate.current = certificate.to_ref()
                    m.certificate.state = CertificateState.ISSUED
                else:
                    m.certificate.current = None
                    m.certificate.state = CertificateState.NONE
                return True

            await self.registry.modify(mapping.id, _switch)

        CERTIFICATE_OPERATIONS.labels(operation="upload", result="ok").inc()
        logger.info("Custom certificate stored", domain=mapping.domain, serial=certificate.serial)
        return certificate

    async def attach_custom_certificate(self, mapping_id: str) -> Certificate | None:
        """Attach the latest uploaded custom certificate to an active mapping."""
        certificate = await self._latest(mapping_id, CertificateType.CUSTOM)
        if certificate is None:
            return None
        attached = await self._attach(mapping_id, certificate)
        return certificate if attached else None

    async def revoke_certificates(self, mapping: DomainMapping) -> int:
        """Revoke the mapping's managed certificates. Best effort: failures are logged.

        Returns:
            Number of certificates revoked.
        """
        now = self.clock()
        revoked = 0
        for certificate in await self.store.certificates_for_mapping(mapping.id):
            if (
                certificate.type != CertificateType.MANAGED
                or certificate.revoked_at is not None
                or certificate.expires_at <= now
            ):
                continue
            try:
                await self.authority.revoke_certificate(certificate.serial)
            except Exception as e:
                CERTIFICATE_OPERATIONS.labels(operation="revoke", result="error").inc()
                logger.warning(
                    "Certificate revocation failed",
                    domain=mapping.domain,
                    serial=certificate.serial,
                    error=str(e),
                )
                continue
            await self.store.save_certificate(certificate.revoked(now))
            CERTIFICATE_OPERATIONS.labels(operation="revoke", result="ok").inc()
            revoked += 1
        return revoked

    async def _issue_in_background(self, tenant_id: str, mapping_id: str) -> Certificate | None:
        try:
            return await self.issue_managed_certificate(tenant_id, mapping_id)
        except DomainError as e:
            logger.warning(
                "Background certificate issuance failed; the renewal sweep will retry",
                mapping_id=mapping_id,
                error=e.message,
                code=e.code,
            )
        except Exception as e:
            logger.error("Background certificate issuance crashed", mapping_id=mapping_id, error=str(e))
        return None

    def enqueue_issuance(self, tenant_id: str, mapping_id: str) -> asyncio.Task[Certificate | None]:
        """Start issuance in the background, reusing an in-flight task for the mapping."""
        existing = self._tasks.get(mapping_id)
        if existing is not None and not existing.done():
            return existing

        task = asyncio.create_task(self._issue_in_background(tenant_id, mapping_id))
        self._tasks[mapping_id] = task

        def _forget(done: asyncio.Task[Certificate | None]) -> None:
            if self._tasks.get(mapping_id) is done:
                del self._tasks[mapping_id]

        task.add_done_callback(_forget)
        return task

    async def cancel_pending(self, mapping_id: str) -> bool:
        """Cancel in-flight background issuance for a mapping being removed."""
        task = self._tasks.pop(mapping_id, None)
        self._locks.pop(mapping_id, None)
        if task is None or task.done():
            return False
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        return True

    async def wait_idle(self) -> None:
        """Wait for all background issuance tasks to finish."""
        while pending := [t for t in self._tasks.values() if not t.done()]:
            await asyncio.gather(*pending, return_exceptions=True)

    async def renewal_sweep(self, now: datetime | None = None) -> SweepReport:
        """Renew managed certificates that expire within the renewal horizon.

        Also retries initial issuance for active mappings that never got a
        certificate. A failure for one mapping never aborts the sweep.
        """
        now = now or self.clock()
        report = SweepReport(started_at=now)
        horizon = now + self.renewal_horizon

        due: list[tuple[DomainMapping, bool]] = []
        for mapping in await self.registry.list_by_status(MappingStatus.ACTIVE):
            if mapping.kind != DomainKind.CUSTOM or mapping.certificate.type != CertificateType.MANAGED:
                continue
            current = mapping.certificate.current
            if current is None:
                due.append((mapping, False))
            elif mapping.certificate.auto_renew and current.expires_at <= horizon:
                due.append((mapping, True))
            else:
                report.skipped.append(mapping.domain)

        semaphore = asyncio.Semaphore(self.workers)

        async def _process(mapping: DomainMapping, renewal: bool) -> None:
            async with semaphore:
                if self.jitter_seconds > 0:
                    await self._sleep(random.uniform(0, self.jitter_seconds))
                try:
                    if renewal:
                        await self.renew_managed_certificate(mapping.tenant_id, mapping.id)
                    else:
                        await self.issue_managed_certificate(mapping.tenant_id, mapping.id)
                    report.renewed.append(mapping.domain)
                except DomainError as e:
                    report.failed[mapping.domain] = e.message
                except Exception as e:
                    logger.error("Renewal crashed", domain=mapping.domain, error=str(e))
                    report.failed[mapping.domain] = str(e)

        with RENEWAL_SWEEP_DURATION.time():
            await asyncio.gather(*(_process(m, renewal) for m, renewal in due))

        logger.info(
            "Renewal sweep finished",
            renewed=len(report.renewed),
            skipped=len(report.skipped),
            failed=len(report.failed),
        )
        return report

    async def prune_certificates(self, now: datetime | None = None) -> int:
        """Delete superseded, revoked or orphaned certificates past retention."""
        now = now or self.clock()
        cutoff = now - self.retention
        live_ids = {m.id for m in await self.store.list_all()}
        stale = []
        for certificate in await self.store.list_certificates():
            inactive = (
                certificate.superseded_by is not None
                or certificate.revoked_at is not None
                or certificate.mapping_id not in live_ids
            )
            retired_at = certificate.revoked_at or certificate.expires_at
            if inactive and retired_at < cutoff:
                stale.append(certificate.serial)
        removed = await self.store.delete_certificates(stale)
        if removed:
            logger.info("Pruned certificates", count=removed)
        return removed
