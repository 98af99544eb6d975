"""Domain health checks.

A check runs DNS, SSL, HTTP and performance sub-checks and reports the
worst of them as the overall state. Sub-check failures are captured in the
report rather than raised. Probes run without holding the mapping; only the
cached health fields are written afterwards, never lifecycle state.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

import httpx
import structlog
from cryptography import x509

from tenantgate.domains.collaborators import Notifier, safe_notify
from tenantgate.domains.errors import DomainError, HealthCheckTimeout, StaleWrite
from tenantgate.domains.models import (
    CertificateState,
    CheckState,
    Clock,
    DnsEvaluationStatus,
    DomainKind,
    DomainMapping,
    MappingStatus,
    _utc_now,
)
from tenantgate.domains.registry import DomainRegistry
from tenantgate.domains.validation import certificate_matches_domain
from tenantgate.domains.verification import DNSVerifier
from tenantgate.observability.metrics import HEALTH_CHECKS

logger = structlog.get_logger()

_DNS_STATES = {
    DnsEvaluationStatus.VERIFIED: CheckState.HEALTHY,
    DnsEvaluationStatus.PENDING: CheckState.WARNING,
    DnsEvaluationStatus.ERROR: CheckState.ERROR,
}


@dataclass
class SubCheck:
    state: CheckState
    message: str
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"status": self.state.value, "message": self.message, "details": dict(self.details)}


@dataclass
class HealthReport:
    domain: str
    overall: CheckState
    dns: SubCheck
    ssl: SubCheck
    http: SubCheck
    performance: SubCheck
    checked_at: datetime
    response_time_ms: float | None = None
    issues: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "domain": self.domain,
            "overall": self.overall.value,
            "checks": {
                "dns": self.dns.to_dict(),
                "ssl": self.ssl.to_dict(),
                "http": self.http.to_dict(),
                "performance": self.performance.to_dict(),
            },
            "response_time_ms": self.response_time_ms,
            "issues": list(self.issues),
            "checked_at": self.checked_at.isoformat(),
        }


def recommendations(report: HealthReport) -> list[str]:
    """Actionable advice for every sub-check that is not healthy."""
    advice = []
    if report.dns.state != CheckState.HEALTHY:
        advice.append("Check that the CNAME record still points at the platform edge hostname")
    if report.ssl.state == CheckState.WARNING:
        advice.append("Certificate expires soon; enable auto-renewal or upload a new certificate")
    elif report.ssl.state == CheckState.ERROR:
        advice.append("Renew the certificate or re-verify the domain to request a new one")
    if report.http.state == CheckState.ERROR:
        advice.append("The site is not answering over HTTPS; check the storefront is published")
    elif report.http.state == CheckState.WARNING:
        advice.append("The site answers with client errors; check the homepage is published")
    if report.performance.state == CheckState.WARNING:
        advice.append("Response times are slow; review page size and third-party scripts")
    return advice


class HealthChecker:
    """Runs health checks for a mapping and caches the result on it."""

    def __init__(
        self,
        registry: DomainRegistry,
        verifier: DNSVerifier,
        clock: Clock = _utc_now,
        http_timeout: float = 5.0,
        slow_threshold_ms: float = 5000.0,
        expiry_warning_days: int = 30,
        http_transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.registry = registry
        self.verifier = verifier
        self.clock = clock
        self.http_timeout = http_timeout
        self.slow_threshold_ms = slow_threshold_ms
        self.expiry_warning = timedelta(days=expiry_warning_days)
        self._http_transport = http_transport

    def _client(self, follow_redirects: bool = True) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.http_timeout,
            follow_redirects=follow_redirects,
            transport=self._http_transport,
        )

    async def check_dns(self, mapping: DomainMapping) -> SubCheck:
        if mapping.kind == DomainKind.SUBDOMAIN:
            return SubCheck(CheckState.HEALTHY, "DNS is managed by the platform")
        evaluation = await self.verifier.evaluate_records(mapping.domain)
        state = _DNS_STATES[evaluation.status]
        message = "DNS records are correct" if evaluation.is_verified else "; ".join(evaluation.issues)
        return SubCheck(state, message, {"observed": [r.to_dict() for r in evaluation.observed_records]})

    async def check_ssl(self, mapping: DomainMapping) -> SubCheck:
        if mapping.kind == DomainKind.SUBDOMAIN:
            return SubCheck(CheckState.HEALTHY, "Covered by the platform wildcard certificate")

        current = mapping.certificate.current
        if current is None:
            if mapping.certificate.state in (CertificateState.REQUESTED, CertificateState.RENEWING):
                return SubCheck(CheckState.WARNING, "Certificate issuance in progress")
            return SubCheck(
                CheckState.ERROR,
                mapping.certificate.last_error or "No certificate attached",
            )

        certificate = await self.registry.store.get_certificate(current.serial)
        if certificate is None:
            return SubCheck(CheckState.ERROR, f"Certificate {current.serial} is missing from storage")

        try:
            parsed = x509.load_pem_x509_certificate(certificate.certificate_pem.encode())
        except ValueError:
            return SubCheck(CheckState.ERROR, "Stored certificate could not be parsed")

        now = self.clock()
        expires_at = parsed.not_valid_after_utc
        details = {
            "issuer": certificate.issuer,
            "expires_at": expires_at.isoformat(),
            "days_remaining": max(0, (expires_at - now).days),
        }
        if expires_at <= now:
            return SubCheck(CheckState.ERROR, "Certificate has expired", details)
        if not certificate_matches_domain(parsed, mapping.domain):
            return SubCheck(CheckState.ERROR, f"Certificate does not cover {mapping.domain}", details)
        if expires_at - now <= self.expiry_warning:
            return SubCheck(CheckState.WARNING, f"Certificate expires in {details['days_remaining']} days", details)
        return SubCheck(CheckState.HEALTHY, "Certificate is valid", details)

    async def check_http(self, domain: str) -> tuple[SubCheck, float | None]:
        url = f"https://{domain}/"
        start = time.perf_counter()
        try:
            async with self._client() as client:
                response = await client.get(url)
        except httpx.TimeoutException:
            error = HealthCheckTimeout(f"No response from {url} within {self.http_timeout}s")
            return SubCheck(CheckState.ERROR, error.message, {"code": error.code}), None
        except httpx.HTTPError as e:
            return SubCheck(CheckState.ERROR, f"Request to {url} failed: {e.__class__.__name__}"), None

        elapsed_ms = round((time.perf_counter() - start) * 1000, 1)
        details = {"status_code": response.status_code, "response_time_ms": elapsed_ms}
        if response.status_code >= 500:
            return SubCheck(CheckState.ERROR, f"Server error (HTTP {response.status_code})", details), elapsed_ms
        if response.status_code >= 400:
            return SubCheck(CheckState.WARNING, f"Client error (HTTP {response.status_code})", details), elapsed_ms
        return SubCheck(CheckState.HEALTHY, "Site is reachable", details), elapsed_ms

    def check_performance(self, response_time_ms: float | None) -> SubCheck:
        if response_time_ms is None:
            return SubCheck(CheckState.UNKNOWN, "No response time measured")
        details = {"response_time_ms": response_time_ms, "threshold_ms": self.slow_threshold_ms}
        if response_time_ms > self.slow_threshold_ms:
            return SubCheck(CheckState.WARNING, f"Slow response ({response_time_ms:.0f} ms)", details)
        return SubCheck(CheckState.HEALTHY, f"Response time {response_time_ms:.0f} ms", details)

    async def check_https_redirect(self, domain: str) -> bool | None:
        """True when plain HTTP redirects to HTTPS, None if the probe failed."""
        try:
            async with self._client(follow_redirects=False) as client:
                response = await client.get(f"http://{domain}/")
        except httpx.HTTPError:
            return None
        location = response.headers.get("location", "")
        return response.is_redirect and location.startswith("https://")

    @staticmethod
    def _as_subcheck(result: Any, label: str) -> SubCheck:
        if isinstance(result, DomainError):
            return SubCheck(CheckState.ERROR, result.message, {"code": result.code})
        if isinstance(result, BaseException):
            return SubCheck(CheckState.ERROR, f"{label} check failed: {result}")
        return result

    async def check(self, mapping: DomainMapping, include_http: bool = True) -> HealthReport:
        """Run all sub-checks for a mapping without writing anything."""
        probes = [self.check_dns(mapping), self.check_ssl(mapping)]
        if include_http:
            probes.append(self.check_http(mapping.domain))
        results = await asyncio.gather(*probes, return_exceptions=True)

        dns = self._as_subcheck(results[0], "DNS")
        ssl = self._as_subcheck(results[1], "SSL")
        response_time = None
        if include_http:
            http_result = results[2]
            if isinstance(http_result, tuple):
                http, response_time = http_result
            else:
                http = self._as_subcheck(http_result, "HTTP")
            performance = self.check_performance(response_time)
            overall = CheckState.worst(dns.state, ssl.state, http.state, performance.state)
        else:
            http = SubCheck(CheckState.UNKNOWN, "HTTP probe skipped")
            performance = SubCheck(CheckState.UNKNOWN, "HTTP probe skipped")
            overall = CheckState.worst(dns.state, ssl.state)

        issues = [
            f"{name}: {sub.message}"
            for name, sub in (("dns", dns), ("ssl", ssl), ("http", http), ("performance", performance))
            if sub.state in (CheckState.WARNING, CheckState.ERROR)
        ]
        return HealthReport(
            domain=mapping.domain,
            overall=overall,
            dns=dns,
            ssl=ssl,
            http=http,
            performance=performance,
            checked_at=self.clock(),
            response_time_ms=response_time,
            issues=issues,
        )

    async def _store(self, mapping_id: str, report: HealthReport) -> DomainMapping | None:
        def _apply(mapping: DomainMapping) -> bool:
            h = mapping.health
            h.dns_status = report.dns.state
            h.ssl_status = report.ssl.state
            h.http_status = report.http.state
            h.overall = report.overall
            h.last_checked_at = report.checked_at
            if report.response_time_ms is not None:
                h.average_response_time_ms = (
                    report.response_time_ms
                    if h.average_response_time_ms is None
                    else round(0.8 * h.average_response_time_ms + 0.2 * report.response_time_ms, 1)
                )
            h.checks_total += 1
            if report.overall == CheckState.ERROR:
                h.checks_failed += 1
                h.consecutive_failures += 1
                h.last_downtime_at = report.checked_at
            else:
                h.consecutive_failures = 0
            return True

        try:
            return await self.registry.modify(mapping_id, _apply)
        except StaleWrite:
            logger.warning("Health result not stored after retries", mapping_id=mapping_id)
            return None

    async def run_health_check(
        self, tenant_id: str, mapping_id: str, include_http: bool = True
    ) -> HealthReport:
        """Run a health check and cache the result on the mapping.

        Raises:
            NotFound: No such mapping for the tenant.
        """
        mapping = await self.registry.get(tenant_id, mapping_id)
        report = await self.check(mapping, include_http=include_http)
        await self._store(mapping.id, report)
        HEALTH_CHECKS.labels(overall=report.overall.value).inc()
        logger.debug("Health check finished", domain=mapping.domain, overall=report.overall.value)
        return report

    async def test_configuration(self, tenant_id: str, mapping_id: str) -> dict[str, Any]:
        """Full configuration test: health report, HTTPS redirect and advice."""
        report = await self.run_health_check(tenant_id, mapping_id)
        redirect = await self.check_https_redirect(report.domain)
        advice = recommendations(report)
        if redirect is False:
            advice.append("Plain HTTP is not redirected to HTTPS; enable force HTTPS")
        return {
            "report": report.to_dict(),
            "https_redirect": redirect,
            "recommendations": advice,
            "ready": report.overall in (CheckState.HEALTHY, CheckState.WARNING),
        }


class HealthMonitor:
    """Periodic health sweep over active mappings.

    An active mapping whose checks fail ``failure_threshold`` times in a
    row moves to error and the tenant is notified.
    """

    def __init__(
        self,
        checker: HealthChecker,
        notifier: Notifier | None = None,
        interval: timedelta = timedelta(minutes=60),
        failure_threshold: int = 3,
    ) -> None:
        self.checker = checker
        self.registry = checker.registry
        self.notifier = notifier
        self.interval = interval
        self.failure_threshold = failure_threshold

    async def sweep(self, now: datetime | None = None) -> dict[str, str]:
        now = now or self.checker.clock()
        results: dict[str, str] = {}
        for mapping in await self.registry.list_by_status(MappingStatus.ACTIVE):
            last = mapping.health.last_checked_at
            if last is not None and now - last < self.interval:
                continue
            try:
                report = await self.checker.run_health_check(mapping.tenant_id, mapping.id)
            except DomainError as e:
                results[mapping.domain] = e.code
                continue
            except Exception as e:
                logger.error("Health check crashed", domain=mapping.domain, error=str(e))
                results[mapping.domain] = "error"
                continue
            results[mapping.domain] = report.overall.value
            await self._escalate(mapping.id, report)
        return results

    async def _escalate(self, mapping_id: str, report: HealthReport) -> None:
        mapping = await self.registry.get_by_id(mapping_id)
        if (
            mapping is None
            or mapping.status != MappingStatus.ACTIVE
            or mapping.health.consecutive_failures < self.failure_threshold
        ):
            return
        try:
            mapping = await self.registry.set_status(mapping, MappingStatus.ERROR, actor="health-monitor")
        except StaleWrite:
            logger.info("Mapping changed during escalation; retrying next sweep", mapping_id=mapping_id)
            return
        logger.warning(
            "Domain moved to error after failed health checks",
            domain=mapping.domain,
            consecutive_failures=mapping.health.consecutive_failures,
        )
        await safe_notify(
            self.notifier,
            mapping.tenant_id,
            "domain.health_degraded",
            {"domain": mapping.domain, "issues": list(report.issues)},
        )
