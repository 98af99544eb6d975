"""Data model for domain mappings and certificates.

A DomainMapping binds one hostname to one tenant and carries the
verification, certificate and health state of that binding. Certificates
are stored separately and are immutable once issued: renewal produces a new
Certificate and links the previous one through ``superseded_by``.
"""

from __future__ import annotations

import copy
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

Clock = Callable[[], datetime]

RECOMMENDED_TTL = 300
EXPIRING_SOON_DAYS = 30


def _utc_now() -> datetime:
    """Return current UTC datetime."""
    return datetime.now(UTC)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse_dt(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


class DomainKind(Enum):
    """Whether the hostname lives under the platform domain or is customer owned."""

    SUBDOMAIN = "subdomain"
    CUSTOM = "custom"


class MappingStatus(Enum):
    """Lifecycle status of a domain mapping."""

    PENDING_VERIFICATION = "pending_verification"
    ACTIVE = "active"
    ERROR = "error"
    DELETING = "deleting"


class CertificateType(Enum):
    MANAGED = "managed"
    CUSTOM = "custom"


class CertificateState(Enum):
    NONE = "none"
    REQUESTED = "requested"
    ISSUED = "issued"
    RENEWING = "renewing"
    REVOKED = "revoked"


class VerificationMethod(Enum):
    DNS = "dns"
    FILE = "file"
    EMAIL = "email"


class DnsEvaluationStatus(Enum):
    """Classification of the published DNS records against the required ones."""

    VERIFIED = "verified"
    PENDING = "pending"
    ERROR = "error"


class CheckState(Enum):
    """Outcome of one health sub-check, ordered from best to worst."""

    HEALTHY = "healthy"
    UNKNOWN = "unknown"
    WARNING = "warning"
    ERROR = "error"

    @property
    def severity(self) -> int:
        return _SEVERITY[self]

    @classmethod
    def worst(cls, *states: CheckState) -> CheckState:
        return max(states, key=lambda s: s.severity, default=cls.UNKNOWN)


_SEVERITY = {
    CheckState.HEALTHY: 0,
    CheckState.UNKNOWN: 1,
    CheckState.WARNING: 2,
    CheckState.ERROR: 3,
}


@dataclass
class DnsRecord:
    """A DNS record the tenant must publish (or one we observed)."""

    type: str
    name: str
    value: str
    ttl: int = RECOMMENDED_TTL

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "name": self.name, "value": self.value, "ttl": self.ttl}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DnsRecord:
        return cls(
            type=data["type"],
            name=data["name"],
            value=data["value"],
            ttl=data.get("ttl", RECOMMENDED_TTL),
        )


@dataclass
class CertificateRef:
    """Reference from a mapping to its currently attached certificate."""

    serial: str
    issuer: str
    valid_from: datetime
    expires_at: datetime

    def days_until_expiry(self, now: datetime) -> float:
        return (self.expires_at - now).total_seconds() / 86400

    def to_dict(self) -> dict[str, Any]:
        return {
            "serial": self.serial,
            "issuer": self.issuer,
            "valid_from": self.valid_from.isoformat(),
            "expires_at": self.expires_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CertificateRef:
        return cls(
            serial=data["serial"],
            issuer=data["issuer"],
            valid_from=_parse_dt(data["valid_from"]),
            expires_at=_parse_dt(data["expires_at"]),
        )


@dataclass
class CertificateDescriptor:
    type: CertificateType = CertificateType.MANAGED
    state: CertificateState = CertificateState.NONE
    current: CertificateRef | None = None
    auto_renew: bool = True
    force_https: bool = True
    last_requested_at: datetime | None = None
    last_error: str | None = None

    def ssl_status(self, now: datetime) -> str:
        """Summarize the attached certificate as unknown/active/expiring_soon/expired/error."""
        if self.current is None:
            return "error" if self.last_error else "unknown"
        if self.current.expires_at <= now:
            return "expired"
        if self.current.expires_at - now <= timedelta(days=EXPIRING_SOON_DAYS):
            return "expiring_soon"
        return "active"

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "state": self.state.value,
            "current": self.current.to_dict() if self.current else None,
            "auto_renew": self.auto_renew,
            "force_https": self.force_https,
            "last_requested_at": _iso(self.last_requested_at),
            "last_error": self.last_error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CertificateDescriptor:
        return cls(
            type=CertificateType(data.get("type", "managed")),
            state=CertificateState(data.get("state", "none")),
            current=CertificateRef.from_dict(data["current"]) if data.get("current") else None,
            auto_renew=data.get("auto_renew", True),
            force_https=data.get("force_https", True),
            last_requested_at=_parse_dt(data.get("last_requested_at")),
            last_error=data.get("last_error"),
        )


@dataclass
class VerificationDescriptor:
    method: VerificationMethod = VerificationMethod.DNS
    token: str | None = None
    required_records: list[DnsRecord] = field(default_factory=list)
    observed_records: list[DnsRecord] = field(default_factory=list)
    last_issues: list[str] = field(default_factory=list)
    initiated_at: datetime | None = None
    last_checked_at: datetime | None = None
    verified_at: datetime | None = None
    next_check_at: datetime | None = None
    attempts: int = 0
    stalled: bool = False
    email_confirmed_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "method": self.method.value,
            "token": self.token,
            "required_records": [r.to_dict() for r in self.required_records],
            "observed_records": [r.to_dict() for r in self.observed_records],
            "last_issues": list(self.last_issues),
            "initiated_at": _iso(self.initiated_at),
            "last_checked_at": _iso(self.last_checked_at),
            "verified_at": _iso(self.verified_at),
            "next_check_at": _iso(self.next_check_at),
            "attempts": self.attempts,
            "stalled": self.stalled,
            "email_confirmed_at": _iso(self.email_confirmed_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> VerificationDescriptor:
        return cls(
            method=VerificationMethod(data.get("method", "dns")),
            token=data.get("token"),
            required_records=[DnsRecord.from_dict(r) for r in data.get("required_records", [])],
            observed_records=[DnsRecord.from_dict(r) for r in data.get("observed_records", [])],
            last_issues=list(data.get("last_issues", [])),
            initiated_at=_parse_dt(data.get("initiated_at")),
            last_checked_at=_parse_dt(data.get("last_checked_at")),
            verified_at=_parse_dt(data.get("verified_at")),
            next_check_at=_parse_dt(data.get("next_check_at")),
            attempts=data.get("attempts", 0),
            stalled=data.get("stalled", False),
            email_confirmed_at=_parse_dt(data.get("email_confirmed_at")),
        )


@dataclass
class HealthFields:
    """Cached result of the latest health check plus rolling counters."""

    dns_status: CheckState = CheckState.UNKNOWN
    ssl_status: CheckState = CheckState.UNKNOWN
    http_status: CheckState = CheckState.UNKNOWN
    overall: CheckState = CheckState.UNKNOWN
    last_checked_at: datetime | None = None
    average_response_time_ms: float | None = None
    checks_total: int = 0
    checks_failed: int = 0
    consecutive_failures: int = 0
    last_downtime_at: datetime | None = None

    @property
    def uptime_percent(self) -> float:
        if self.checks_total == 0:
            return 100.0
        return round(100.0 * (self.checks_total - self.checks_failed) / self.checks_total, 2)

    def to_dict(self) -> dict[str, Any]:
        return {
            "dns_status": self.dns_status.value,
            "ssl_status": self.ssl_status.value,
            "http_status": self.http_status.value,
            "overall": self.overall.value,
            "last_checked_at": _iso(self.last_checked_at),
            "average_response_time_ms": self.average_response_time_ms,
            "uptime_percent": self.uptime_percent,
            "checks_total": self.checks_total,
            "checks_failed": self.checks_failed,
            "consecutive_failures": self.consecutive_failures,
            "last_downtime_at": _iso(self.last_downtime_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HealthFields:
        return cls(
            dns_status=CheckState(data.get("dns_status", "unknown")),
            ssl_status=CheckState(data.get("ssl_status", "unknown")),
            http_status=CheckState(data.get("http_status", "unknown")),
            overall=CheckState(data.get("overall", "unknown")),
            last_checked_at=_parse_dt(data.get("last_checked_at")),
            average_response_time_ms=data.get("average_response_time_ms"),
            checks_total=data.get("checks_total", 0),
            checks_failed=data.get("checks_failed", 0),
            consecutive_failures=data.get("consecutive_failures", 0),
            last_downtime_at=_parse_dt(data.get("last_downtime_at")),
        )


@dataclass
class AuditInfo:
    created_at: datetime = field(default_factory=_utc_now)
    updated_at: datetime = field(default_factory=_utc_now)
    created_by: str | None = None
    last_updated_by: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    change_log: list[dict[str, Any]] = field(default_factory=list)

    def record_change(self, fields: list[str], actor: str | None, at: datetime) -> None:
        self.updated_at = at
        self.last_updated_by = actor
        if fields:
            self.change_log.append({"fields": fields, "by": actor, "at": at.isoformat()})

    def to_dict(self) -> dict[str, Any]:
        return {
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "created_by": self.created_by,
            "last_updated_by": self.last_updated_by,
            "metadata": dict(self.metadata),
            "change_log": list(self.change_log),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AuditInfo:
        now = _utc_now()
        return cls(
            created_at=_parse_dt(data.get("created_at")) or now,
            updated_at=_parse_dt(data.get("updated_at")) or now,
            created_by=data.get("created_by"),
            last_updated_by=data.get("last_updated_by"),
            metadata=dict(data.get("metadata", {})),
            change_log=list(data.get("change_log", [])),
        )


@dataclass
class DomainMapping:
    """One hostname bound to one tenant."""

    tenant_id: str
    domain: str
    kind: DomainKind
    status: MappingStatus = MappingStatus.PENDING_VERIFICATION
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    certificate: CertificateDescriptor = field(default_factory=CertificateDescriptor)
    verification: VerificationDescriptor = field(default_factory=VerificationDescriptor)
    health: HealthFields = field(default_factory=HealthFields)
    audit: AuditInfo = field(default_factory=AuditInfo)
    version: int = 0
    request_count: int = 0
    last_accessed_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.status == MappingStatus.ACTIVE

    @property
    def is_custom(self) -> bool:
        return self.kind == DomainKind.CUSTOM

    @property
    def subdomain_label(self) -> str:
        """First label of the hostname (the tenant label for subdomains)."""
        return self.domain.split(".", 1)[0]

    def clone(self) -> DomainMapping:
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "domain": self.domain,
            "kind": self.kind.value,
            "status": self.status.value,
            "certificate": self.certificate.to_dict(),
            "verification": self.verification.to_dict(),
            "health": self.health.to_dict(),
            "audit": self.audit.to_dict(),
            "version": self.version,
            "request_count": self.request_count,
            "last_accessed_at": _iso(self.last_accessed_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DomainMapping:
        """Create from dictionary (JSON deserialization)."""
        return cls(
            id=data["id"],
            tenant_id=data["tenant_id"],
            domain=data["domain"],
            kind=DomainKind(data.get("kind", "custom")),
            status=MappingStatus(data.get("status", "pending_verification")),
            certificate=CertificateDescriptor.from_dict(data.get("certificate", {})),
            verification=VerificationDescriptor.from_dict(data.get("verification", {})),
            health=HealthFields.from_dict(data.get("health", {})),
            audit=AuditInfo.from_dict(data.get("audit", {})),
            version=data.get("version", 0),
            request_count=data.get("request_count", 0),
            last_accessed_at=_parse_dt(data.get("last_accessed_at")),
        )

    def to_public_dict(self, now: datetime | None = None) -> dict[str, Any]:
        """API representation with derived SSL status.

        The token is dropped once active, and always for the email method
        where it is only delivered to the domain contacts.
        """
        now = now or _utc_now()
        data = self.to_dict()
        data["ssl_status"] = self.certificate.ssl_status(now)
        data["uptime_percent"] = self.health.uptime_percent
        if self.is_active or self.verification.method == VerificationMethod.EMAIL:
            data["verification"].pop("token", None)
        return data


@dataclass(frozen=True)
class Certificate:
    """An issued (or uploaded) certificate. Never mutated after issuance."""

    serial: str
    mapping_id: str
    domain: str
    type: CertificateType
    issuer: str
    valid_from: datetime
    expires_at: datetime
    issued_at: datetime
    certificate_pem: str
    private_key_pem: str | None = None
    chain_pem: str | None = None
    superseded_by: str | None = None
    revoked_at: datetime | None = None

    def to_ref(self) -> CertificateRef:
        return CertificateRef(
            serial=self.serial,
            issuer=self.issuer,
            valid_from=self.valid_from,
            expires_at=self.expires_at,
        )

    def is_fresh(self, now: datetime, window: timedelta) -> bool:
        """True if issued within ``window``, still valid and not revoked."""
        return (
            self.revoked_at is None
            and self.expires_at > now
            and now - self.issued_at < window
        )

    def superseded(self, serial: str) -> Certificate:
        return replace(self, superseded_by=serial)

    def revoked(self, at: datetime) -> Certificate:
        return replace(self, revoked_at=at)

    def to_dict(self) -> dict[str, Any]:
        return {
            "serial": self.serial,
            "mapping_id": self.mapping_id,
            "domain": self.domain,
            "type": self.type.value,
            "issuer": self.issuer,
            "valid_from": self.valid_from.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "issued_at": self.issued_at.isoformat(),
            "certificate_pem": self.certificate_pem,
            "private_key_pem": self.private_key_pem,
            "chain_pem": self.chain_pem,
            "superseded_by": self.superseded_by,
            "revoked_at": _iso(self.revoked_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Certificate:
        return cls(
            serial=data["serial"],
            mapping_id=data["mapping_id"],
            domain=data["domain"],
            type=CertificateType(data.get("type", "managed")),
            issuer=data.get("issuer", ""),
            valid_from=_parse_dt(data["valid_from"]),
            expires_at=_parse_dt(data["expires_at"]),
            issued_at=_parse_dt(data["issued_at"]),
            certificate_pem=data.get("certificate_pem", ""),
            private_key_pem=data.get("private_key_pem"),
            chain_pem=data.get("chain_pem"),
            superseded_by=data.get("superseded_by"),
            revoked_at=_parse_dt(data.get("revoked_at")),
        )


@dataclass
class MappingSpec:
    """Input for creating a mapping; ``domain`` must already be normalized."""

    domain: str
    kind: DomainKind = DomainKind.CUSTOM
    certificate_type: CertificateType = CertificateType.MANAGED
    verification_method: VerificationMethod = VerificationMethod.DNS
    auto_renew: bool = True
    force_https: bool = True
    created_by: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class MappingPatch:
    """Configuration fields a tenant may change. None means unchanged."""

    force_https: bool | None = None
    auto_renew: bool | None = None
    verification_method: VerificationMethod | None = None
    status: MappingStatus | None = None
    metadata: dict[str, Any] | None = None

    def is_empty(self) -> bool:
        return all(
            value is None
            for value in (
                self.force_https,
                self.auto_renew,
                self.verification_method,
                self.status,
                self.metadata,
            )
        )
