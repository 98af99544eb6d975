"""DNS verification for custom domain ownership.

Ownership is proven by DNS records the tenant publishes:
1. CNAME record: routes traffic to the platform edge
2. TXT record: proves ownership with a verification token

Example DNS setup required by the tenant:
    # CNAME record (routes traffic)
    shop.example.com  CNAME  edge.tenantgate.app

    # TXT record (proves ownership)
    _tenantgate-challenge.shop.example.com  TXT  "tenantgate-verify=3f9a..."

The ``file`` method replaces the TXT record with a token served over HTTP
at /.well-known/tenantgate-verification.txt. The ``email`` method sends the
token to the administrative contacts of the domain; it counts only once the
recipient has confirmed it, on top of a correct CNAME.
"""

from __future__ import annotations

import asyncio
import hmac
import secrets
import sys
from dataclasses import dataclass, field
from typing import Any

import aiodns
import httpx
import structlog

from tenantgate.domains.models import (
    RECOMMENDED_TTL,
    DnsEvaluationStatus,
    DnsRecord,
    VerificationMethod,
)

logger = structlog.get_logger()

TOKEN_PREFIX = "tenantgate-verify="
VERIFICATION_FILE_PATH = "/.well-known/tenantgate-verification.txt"
EMAIL_CONTACTS = ("admin", "administrator", "hostmaster", "postmaster", "webmaster")


@dataclass
class DnsEvaluation:
    """Result of comparing published records with the required ones."""

    domain: str
    status: DnsEvaluationStatus
    cname_ok: bool = False
    txt_ok: bool | None = None
    file_ok: bool | None = None
    email_ok: bool | None = None
    issues: list[str] = field(default_factory=list)
    observed_records: list[DnsRecord] = field(default_factory=list)
    timed_out: bool = False

    @property
    def is_verified(self) -> bool:
        return self.status == DnsEvaluationStatus.VERIFIED

    def to_dict(self) -> dict[str, Any]:
        return {
            "domain": self.domain,
            "status": self.status.value,
            "cname_ok": self.cname_ok,
            "txt_ok": self.txt_ok,
            "file_ok": self.file_ok,
            "email_ok": self.email_ok,
            "issues": list(self.issues),
            "observed_records": [r.to_dict() for r in self.observed_records],
            "timed_out": self.timed_out,
        }


@dataclass
class _Lookup:
    values: list[str] = field(default_factory=list)
    failure: str | None = None


def _record_values(result: Any, attr: str) -> list[str]:
    items = result if isinstance(result, list | tuple) else [result]
    values = []
    for item in items:
        value = getattr(item, attr, None)
        if isinstance(value, bytes):
            value = value.decode(errors="replace")
        if value:
            values.append(str(value).strip().strip('"').strip("'"))
    return values


def tokens_match(observed: str, expected: str) -> bool:
    """Constant-time token comparison."""
    return hmac.compare_digest(observed.encode(), expected.encode())


class DNSVerifier:
    """Verifies domain ownership via DNS records.

    Evaluation never raises for resolver trouble: lookup failures and
    timeouts come back as ``pending`` with an explanatory issue.
    """

    def __init__(
        self,
        cname_target: str = "edge.tenantgate.app",
        verification_label: str = "_tenantgate-challenge",
        timeout: float = 3.0,
        http_transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize DNS verifier.

        Args:
            cname_target: Hostname the tenant's CNAME must point to.
            verification_label: Label of the TXT challenge record.
            timeout: Upper bound for one evaluation (seconds).
            http_transport: Optional httpx transport for the file probe.
        """
        self.cname_target = cname_target.lower().rstrip(".")
        self.verification_label = verification_label
        self.timeout = timeout
        self._http_transport = http_transport
        self._resolver: aiodns.DNSResolver | None = None

    def _get_resolver(self) -> aiodns.DNSResolver:
        """Get or create DNS resolver with proper event loop handling."""
        if self._resolver is None:
            if sys.platform == "win32":
                try:
                    loop = asyncio.get_running_loop()
                except RuntimeError:
                    loop = asyncio.new_event_loop()
                self._resolver = aiodns.DNSResolver(loop=loop, timeout=self.timeout)
            else:
                self._resolver = aiodns.DNSResolver(timeout=self.timeout)
        return self._resolver

    def generate_verification_token(self) -> str:
        """Generate an unguessable verification token.

        Returns:
            A token string (e.g., "tenantgate-verify=3f9a...")
        """
        return f"{TOKEN_PREFIX}{secrets.token_hex(16)}"

    def challenge_name(self, domain: str) -> str:
        return f"{self.verification_label}.{domain}"

    def email_recipients(self, domain: str) -> list[str]:
        """Mailboxes the email challenge is delivered to."""
        return [f"{local}@{domain}" for local in EMAIL_CONTACTS]

    def required_records(
        self, domain: str, token: str | None, method: VerificationMethod
    ) -> list[DnsRecord]:
        """DNS records the tenant must publish for ``method``."""
        records = [DnsRecord(type="CNAME", name=domain, value=self.cname_target, ttl=RECOMMENDED_TTL)]
        if method == VerificationMethod.DNS and token:
            records.append(
                DnsRecord(type="TXT", name=self.challenge_name(domain), value=token, ttl=RECOMMENDED_TTL)
            )
        return records

    async def _lookup(self, name: str, record_type: str, attr: str) -> _Lookup:
        resolver = self._get_resolver()
        try:
            result = await resolver.query_dns(name, record_type)
        except aiodns.error.DNSError as e:
            return _Lookup(failure=str(e))
        return _Lookup(values=_record_values(result, attr))

    async def _gather_lookups(self, domain: str, expected_token: str | None) -> tuple[_Lookup, _Lookup | None, _Lookup | None]:
        cname_task = self._lookup(domain, "CNAME", "cname")
        if expected_token:
            txt_task = self._lookup(self.challenge_name(domain), "TXT", "text")
            cname, txt = await asyncio.gather(cname_task, txt_task)
        else:
            cname, txt = await cname_task, None

        addresses = None
        if not cname.values:
            addresses = await self._lookup(domain, "A", "host")
        return cname, txt, addresses

    async def evaluate_records(
        self, domain: str, expected_token: str | None = None
    ) -> DnsEvaluation:
        """Compare published DNS records with the required ones.

        Side-effect free and safe to call repeatedly.

        Args:
            domain: The custom domain.
            expected_token: TXT token to require; None checks the CNAME only.

        Returns:
            ``error`` if anything observed contradicts the requirements,
            ``pending`` if a required record is missing, else ``verified``.
        """
        try:
            cname, txt, addresses = await asyncio.wait_for(
                self._gather_lookups(domain, expected_token), timeout=self.timeout
            )
        except TimeoutError:
            logger.debug("DNS evaluation timed out", domain=domain)
            return DnsEvaluation(
                domain=domain,
                status=DnsEvaluationStatus.PENDING,
                issues=["DNS lookup timed out; records may still be propagating"],
                timed_out=True,
            )

        evaluation = DnsEvaluation(domain=domain, status=DnsEvaluationStatus.VERIFIED)
        mismatch = False
        missing = False

        if cname.values:
            target = cname.values[0].lower().rstrip(".")
            evaluation.observed_records.append(DnsRecord(type="CNAME", name=domain, value=target))
            if target == self.cname_target:
                evaluation.cname_ok = True
            else:
                mismatch = True
                evaluation.issues.append(
                    f"CNAME for {domain} points to {target}; expected {self.cname_target}"
                )
        elif addresses is not None and addresses.values:
            mismatch = True
            for address in addresses.values:
                evaluation.observed_records.append(DnsRecord(type="A", name=domain, value=address))
            evaluation.issues.append(
                f"{domain} resolves to A records ({', '.join(addresses.values)}); "
                f"replace them with a CNAME to {self.cname_target}"
            )
        else:
            missing = True
            evaluation.issues.append(f"CNAME record for {domain} not found")

        if txt is not None and expected_token:
            name = self.challenge_name(domain)
            evaluation.txt_ok = False
            for value in txt.values:
                evaluation.observed_records.append(DnsRecord(type="TXT", name=name, value=value))
                if tokens_match(value, expected_token):
                    evaluation.txt_ok = True
            if not evaluation.txt_ok:
                if txt.values:
                    mismatch = True
                    evaluation.issues.append(f"TXT record at {name} does not contain the verification token")
                else:
                    missing = True
                    evaluation.issues.append(f"TXT record at {name} not found")

        if mismatch:
            evaluation.status = DnsEvaluationStatus.ERROR
        elif missing:
            evaluation.status = DnsEvaluationStatus.PENDING
        return evaluation

    async def probe_verification_file(self, domain: str, token: str) -> tuple[bool, str | None]:
        """Fetch the verification file and compare it with ``token``.

        Returns:
            Tuple of (is_valid, issue).
        """
        url = f"http://{domain}{VERIFICATION_FILE_PATH}"
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout,
                follow_redirects=True,
                transport=self._http_transport,
            ) as client:
                response = await client.get(url)
        except httpx.HTTPError as e:
            return False, f"Could not fetch {url}: {e.__class__.__name__}"

        if response.status_code != 200:
            return False, f"{url} returned HTTP {response.status_code}"
        if tokens_match(response.text.strip(), token):
            return True, None
        return False, f"{url} does not contain the verification token"

    async def evaluate(
        self,
        domain: str,
        method: VerificationMethod,
        token: str | None,
        email_confirmed: bool = False,
    ) -> DnsEvaluation:
        """Evaluate ownership according to the mapping's verification method.

        A CNAME alone never proves ownership: ``file`` also needs the served
        token and ``email`` a confirmed challenge.
        """
        if method == VerificationMethod.DNS:
            return await self.evaluate_records(domain, token)

        evaluation = await self.evaluate_records(domain, None)
        if evaluation.status == DnsEvaluationStatus.ERROR:
            return evaluation

        if method == VerificationMethod.FILE:
            ok, issue = (
                await self.probe_verification_file(domain, token)
                if token
                else (False, "No verification token has been issued")
            )
            evaluation.file_ok = ok
            if not ok:
                evaluation.issues.append(issue or "Verification file not found")
                evaluation.status = DnsEvaluationStatus.PENDING
        elif method == VerificationMethod.EMAIL:
            evaluation.email_ok = email_confirmed
            if not email_confirmed:
                evaluation.issues.append(f"Ownership email for {domain} has not been confirmed yet")
                evaluation.status = DnsEvaluationStatus.PENDING
        return evaluation
