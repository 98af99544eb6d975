"""Verification workflow: drives mappings from pending_verification to active.

A failed check never changes the mapping's status. It records what was
observed and schedules the next automatic recheck (1, 5, 15 and 60 minutes,
then hourly). Rechecks stop once the verification has been pending for the
cap (24 hours by default); the mapping is then flagged as stalled and the
tenant is told. Manual verification stays possible at any time.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

import structlog

from tenantgate.domains.certificates import CertificateLifecycle
from tenantgate.domains.collaborators import Notifier, safe_notify
from tenantgate.domains.errors import (
    DnsNotPropagated,
    DomainError,
    InvalidTransition,
    VerificationFailed,
)
from tenantgate.domains.models import (
    CertificateType,
    Clock,
    DnsEvaluationStatus,
    DnsRecord,
    DomainKind,
    DomainMapping,
    MappingStatus,
    VerificationMethod,
    _utc_now,
)
from tenantgate.domains.registry import DomainRegistry
from tenantgate.domains.verification import DnsEvaluation, DNSVerifier, tokens_match
from tenantgate.observability.metrics import VERIFICATIONS

logger = structlog.get_logger()

RECHECK_SCHEDULE = (60, 300, 900, 3600)


def recheck_delay(attempts: int) -> int:
    """Seconds until the next automatic recheck after ``attempts`` failures."""
    if attempts <= 0:
        return RECHECK_SCHEDULE[0]
    return RECHECK_SCHEDULE[min(attempts, len(RECHECK_SCHEDULE) - 1)]


@dataclass
class VerificationOutcome:
    domain: str
    verified: bool
    status: DnsEvaluationStatus
    mapping_status: MappingStatus
    issues: list[str] = field(default_factory=list)
    suggestions: list[str] = field(default_factory=list)
    observed_records: list[DnsRecord] = field(default_factory=list)
    retry_after_seconds: int | None = None
    propagation_seconds: float | None = None
    certificate_requested: bool = False
    stalled: bool = False

    def raise_for_status(self) -> None:
        """Raise DnsNotPropagated or VerificationFailed for unsuccessful outcomes."""
        if self.verified:
            return
        details = self.to_dict()
        if self.status == DnsEvaluationStatus.ERROR:
            raise VerificationFailed(
                f"DNS records for {self.domain} do not match the required configuration",
                details=details,
            )
        raise DnsNotPropagated(
            f"DNS records for {self.domain} are not visible yet",
            details=details,
            retry_after=self.retry_after_seconds,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "domain": self.domain,
            "verified": self.verified,
            "status": self.status.value,
            "mapping_status": self.mapping_status.value,
            "issues": list(self.issues),
            "suggestions": list(self.suggestions),
            "observed_records": [r.to_dict() for r in self.observed_records],
            "retry_after_seconds": self.retry_after_seconds,
            "propagation_seconds": self.propagation_seconds,
            "certificate_requested": self.certificate_requested,
            "stalled": self.stalled,
        }


def _suggestions(evaluation: DnsEvaluation, verifier: DNSVerifier) -> list[str]:
    suggestions = []
    if not evaluation.cname_ok:
        suggestions.append(
            f"Add a CNAME record for {evaluation.domain} pointing to {verifier.cname_target}"
        )
    if evaluation.txt_ok is False:
        suggestions.append(
            f"Add the TXT record at {verifier.challenge_name(evaluation.domain)} exactly as shown"
        )
    if evaluation.file_ok is False:
        suggestions.append("Serve the verification file with the token as its only content")
    if evaluation.email_ok is False:
        suggestions.append("Open the ownership email sent to the domain contacts and confirm it")
    if evaluation.status == DnsEvaluationStatus.PENDING:
        suggestions.append("DNS changes can take up to 48 hours to propagate; a lower TTL (300) helps")
    if evaluation.status == DnsEvaluationStatus.ERROR:
        suggestions.append("Remove conflicting A, AAAA or CNAME records for this host")
    return suggestions


class VerificationWorkflow:
    """Initiates and evaluates domain ownership verification."""

    def __init__(
        self,
        registry: DomainRegistry,
        verifier: DNSVerifier,
        lifecycle: CertificateLifecycle | None = None,
        notifier: Notifier | None = None,
        clock: Clock = _utc_now,
        recheck_cap: timedelta = timedelta(hours=24),
    ) -> None:
        self.registry = registry
        self.verifier = verifier
        self.lifecycle = lifecycle
        self.notifier = notifier
        self.clock = clock
        self.recheck_cap = recheck_cap

    async def initiate_verification(
        self,
        tenant_id: str,
        mapping_id: str,
        actor: str | None = None,
        method: VerificationMethod | None = None,
        auto_recheck: bool = True,
    ) -> DomainMapping:
        """Issue a fresh challenge and (re)enter pending_verification.

        Raises:
            NotFound: No such mapping for the tenant.
            InvalidTransition: Mapping is active or deleting.
        """
        mapping = await self.registry.get(tenant_id, mapping_id)
        if mapping.status in (MappingStatus.ACTIVE, MappingStatus.DELETING):
            raise InvalidTransition(
                "Verification can only be started for pending or failed domains",
                current=mapping.status.value,
                attempted=MappingStatus.PENDING_VERIFICATION.value,
            )

        now = self.clock()
        verification = mapping.verification
        if method is not None:
            verification.method = method
        if mapping.kind == DomainKind.SUBDOMAIN:
            verification.token = None
            verification.required_records = []
        else:
            verification.token = self.verifier.generate_verification_token()
            verification.required_records = self.verifier.required_records(
                mapping.domain, verification.token, verification.method
            )
        verification.observed_records = []
        verification.last_issues = []
        verification.initiated_at = now
        verification.attempts = 0
        verification.stalled = False
        verification.verified_at = None
        verification.email_confirmed_at = None
        verification.next_check_at = (
            now + timedelta(seconds=recheck_delay(0)) if auto_recheck else None
        )

        if mapping.status == MappingStatus.ERROR:
            self.registry.apply_status(mapping, MappingStatus.PENDING_VERIFICATION)

        stored = await self.registry.commit(mapping, actor=actor, changed=["verification"])
        logger.info(
            "Verification initiated",
            domain=stored.domain,
            tenant_id=tenant_id,
            method=stored.verification.method.value,
        )
        if stored.kind == DomainKind.CUSTOM and stored.verification.method == VerificationMethod.EMAIL:
            await safe_notify(
                self.notifier,
                tenant_id,
                "domain.email_challenge",
                {
                    "domain": stored.domain,
                    "recipients": self.verifier.email_recipients(stored.domain),
                    "token": stored.verification.token,
                },
            )
        return stored

    async def _evaluate(self, mapping: DomainMapping) -> DnsEvaluation:
        if mapping.kind == DomainKind.SUBDOMAIN:
            return DnsEvaluation(
                domain=mapping.domain,
                status=DnsEvaluationStatus.VERIFIED,
                cname_ok=True,
            )
        return await self.verifier.evaluate(
            mapping.domain,
            mapping.verification.method,
            mapping.verification.token,
            email_confirmed=mapping.verification.email_confirmed_at is not None,
        )

    async def verify_domain(
        self, tenant_id: str, mapping_id: str, actor: str | None = None
    ) -> VerificationOutcome:
        """Check the tenant's DNS and activate the mapping on success.

        On success the mapping becomes active, the resolver cache is
        invalidated and managed certificate issuance is queued. On failure
        the status is left unchanged and the next recheck is scheduled.

        Raises:
            NotFound: No such mapping for the tenant.
            InvalidTransition: Mapping is being deleted.
        """
        mapping = await self.registry.get(tenant_id, mapping_id)
        if mapping.status == MappingStatus.DELETING:
            raise InvalidTransition(
                "Mapping is being deleted",
                current=mapping.status.value,
                attempted=MappingStatus.ACTIVE.value,
            )

        if mapping.status == MappingStatus.ACTIVE:
            requested = self._request_certificate(mapping) if mapping.certificate.current is None else False
            return VerificationOutcome(
                domain=mapping.domain,
                verified=True,
                status=DnsEvaluationStatus.VERIFIED,
                mapping_status=mapping.status,
                certificate_requested=requested,
            )

        evaluation = await self._evaluate(mapping)
        VERIFICATIONS.labels(status=evaluation.status.value).inc()
        now = self.clock()

        if evaluation.is_verified:
            return await self._activate(mapping, evaluation, now, actor)
        return await self._record_failure(mapping, evaluation, now, actor)

    async def confirm_email_verification(
        self, tenant_id: str, mapping_id: str, token: str, actor: str | None = None
    ) -> VerificationOutcome:
        """Record the token returned from the ownership email, then verify.

        Raises:
            NotFound: No such mapping for the tenant.
            InvalidTransition: Mapping is not awaiting email verification.
            VerificationFailed: Token does not match the issued challenge.
        """
        mapping = await self.registry.get(tenant_id, mapping_id)
        if (
            mapping.kind != DomainKind.CUSTOM
            or mapping.verification.method != VerificationMethod.EMAIL
            or mapping.status != MappingStatus.PENDING_VERIFICATION
        ):
            raise InvalidTransition(
                "Mapping is not awaiting email verification",
                current=mapping.status.value,
                attempted=MappingStatus.ACTIVE.value,
            )
        issued = mapping.verification.token
        if not issued or not tokens_match(token, issued):
            raise VerificationFailed(
                f"Confirmation token for {mapping.domain} does not match",
                details={"domain": mapping.domain},
            )

        now = self.clock()

        def _confirm(m: DomainMapping) -> bool:
            # A re-initiated challenge invalidates confirmations of the old token.
            if m.verification.token != issued:
                return False
            m.verification.email_confirmed_at = now
            m.audit.last_updated_by = actor
            return True

        if await self.registry.modify(mapping.id, _confirm) is None:
            raise VerificationFailed(
                f"Confirmation token for {mapping.domain} is no longer valid",
                details={"domain": mapping.domain},
            )
        logger.info("Ownership email confirmed", domain=mapping.domain, tenant_id=tenant_id)
        return await self.verify_domain(tenant_id, mapping_id, actor)

    def _request_certificate(self, mapping: DomainMapping) -> bool:
        if self.lifecycle is None or mapping.kind != DomainKind.CUSTOM:
            return False
        if mapping.certificate.type != CertificateType.MANAGED:
            return False
        self.lifecycle.enqueue_issuance(mapping.tenant_id, mapping.id)
        return True

    async def _activate(
        self,
        mapping: DomainMapping,
        evaluation: DnsEvaluation,
        now: datetime,
        actor: str | None,
    ) -> VerificationOutcome:
        initiated_at = mapping.verification.initiated_at

        def _mark_verified(m: DomainMapping) -> bool:
            self.registry.apply_status(m, MappingStatus.ACTIVE)
            m.verification.verified_at = now
            m.verification.last_checked_at = now
            m.verification.observed_records = list(evaluation.observed_records)
            m.verification.last_issues = []
            m.verification.next_check_at = None
            m.verification.stalled = False
            m.audit.last_updated_by = actor
            return True

        stored = await self.registry.modify(mapping.id, _mark_verified)
        if stored is None:
            raise InvalidTransition(
                "Mapping disappeared during verification",
                current=MappingStatus.DELETING.value,
                attempted=MappingStatus.ACTIVE.value,
            )

        propagation = (now - initiated_at).total_seconds() if initiated_at else None
        logger.info(
            "Domain verified",
            domain=stored.domain,
            tenant_id=stored.tenant_id,
            propagation_seconds=propagation,
        )

        requested = self._request_certificate(stored)
        if (
            self.lifecycle is not None
            and stored.kind == DomainKind.CUSTOM
            and stored.certificate.type == CertificateType.CUSTOM
        ):
            await self.lifecycle.attach_custom_certificate(stored.id)

        await safe_notify(
            self.notifier,
            stored.tenant_id,
            "domain.verified",
            {"domain": stored.domain, "propagation_seconds": propagation},
        )
        return VerificationOutcome(
            domain=stored.domain,
            verified=True,
            status=evaluation.status,
            mapping_status=stored.status,
            observed_records=list(evaluation.observed_records),
            propagation_seconds=propagation,
            certificate_requested=requested,
        )

    async def _record_failure(
        self,
        mapping: DomainMapping,
        evaluation: DnsEvaluation,
        now: datetime,
        actor: str | None,
    ) -> VerificationOutcome:
        initiated_at = mapping.verification.initiated_at or now
        became_stalled = False

        def _mark_attempt(m: DomainMapping) -> bool:
            nonlocal became_stalled
            v = m.verification
            v.attempts += 1
            v.last_checked_at = now
            v.observed_records = list(evaluation.observed_records)
            v.last_issues = list(evaluation.issues)
            if v.stalled:
                v.next_check_at = None
                return True
            next_check = now + timedelta(seconds=recheck_delay(v.attempts))
            if next_check - initiated_at > self.recheck_cap:
                v.stalled = True
                v.next_check_at = None
                became_stalled = True
            else:
                v.next_check_at = next_check
            return True

        stored = await self.registry.modify(mapping.id, _mark_attempt) or mapping
        retry_after = (
            int((stored.verification.next_check_at - now).total_seconds())
            if stored.verification.next_check_at
            else None
        )

        logger.info(
            "Domain verification incomplete",
            domain=stored.domain,
            tenant_id=stored.tenant_id,
            status=evaluation.status.value,
            attempts=stored.verification.attempts,
            issues=evaluation.issues,
        )

        if evaluation.status == DnsEvaluationStatus.ERROR:
            await safe_notify(
                self.notifier,
                stored.tenant_id,
                "domain.verification_failed",
                {"domain": stored.domain, "issues": list(evaluation.issues)},
            )
        if became_stalled:
            await safe_notify(
                self.notifier,
                stored.tenant_id,
                "domain.verification_stalled",
                {"domain": stored.domain, "attempts": stored.verification.attempts},
            )

        return VerificationOutcome(
            domain=stored.domain,
            verified=False,
            status=evaluation.status,
            mapping_status=stored.status,
            issues=list(evaluation.issues),
            suggestions=_suggestions(evaluation, self.verifier),
            observed_records=list(evaluation.observed_records),
            retry_after_seconds=retry_after,
            stalled=stored.verification.stalled,
        )

    async def run_due_rechecks(self, now: datetime | None = None) -> dict[str, str]:
        """Verify every pending mapping whose recheck is due.

        Returns:
            Mapping of domain to resulting evaluation status (or error code).
        """
        now = now or self.clock()
        results: dict[str, str] = {}
        for mapping in await self.registry.list_by_status(MappingStatus.PENDING_VERIFICATION):
            v = mapping.verification
            if v.stalled or v.next_check_at is None or v.next_check_at > now:
                continue
            try:
                outcome = await self.verify_domain(mapping.tenant_id, mapping.id)
                results[mapping.domain] = outcome.status.value
            except DomainError as e:
                results[mapping.domain] = e.code
                logger.warning("Verification recheck failed", domain=mapping.domain, error=e.message)
            except Exception as e:
                results[mapping.domain] = "error"
                logger.error("Verification recheck crashed", domain=mapping.domain, error=str(e))
        return results
