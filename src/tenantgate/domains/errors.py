"""Typed errors raised by the domain components.

Every error carries a machine-readable ``code``, an HTTP status for the
management API, optional ``details`` and, for transient failures, a
``retry_after`` hint in seconds. Raw resolver, HTTP client and certificate
authority exceptions are translated into these at the component boundary.
"""

from __future__ import annotations

from typing import Any


class DomainError(Exception):
    """Base class for all domain-level errors."""

    code: str = "domain_error"
    status_code: int = 400
    retryable: bool = False

    def __init__(
        self,
        message: str = "",
        *,
        details: dict[str, Any] | None = None,
        retry_after: float | None = None,
        retryable: bool | None = None,
    ) -> None:
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        self.details: dict[str, Any] = details or {}
        self.retry_after = retry_after
        if retryable is not None:
            self.retryable = retryable

    def to_dict(self) -> dict[str, Any]:
        """Convert to the API error body."""
        body: dict[str, Any] = {"error": self.message, "code": self.code}
        if self.details:
            body["details"] = self.details
        if self.retry_after is not None:
            body["retry_after"] = self.retry_after
        body["retryable"] = self.retryable
        return body


class InvalidInput(DomainError):
    code = "invalid_input"
    status_code = 400


class DomainTaken(DomainError):
    code = "domain_taken"
    status_code = 409


class QuotaExceeded(DomainError):
    """Tenant is at its plan's custom domain limit."""

    code = "quota_exceeded"
    status_code = 403

    def __init__(self, message: str = "", *, usage: int, limit: int, plan: str | None = None) -> None:
        super().__init__(
            message or f"Custom domain limit reached ({usage}/{limit})",
            details={"usage": usage, "limit": limit, "plan": plan},
        )
        self.usage = usage
        self.limit = limit
        self.plan = plan


class NotFound(DomainError):
    code = "not_found"
    status_code = 404


class InvalidTransition(DomainError):
    """Operation not permitted from the mapping's current status."""

    code = "invalid_transition"
    status_code = 409

    def __init__(
        self,
        message: str = "",
        *,
        current: str | None = None,
        attempted: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        merged = dict(details or {})
        if current is not None:
            merged["current"] = current
        if attempted is not None:
            merged["attempted"] = attempted
        super().__init__(
            message or f"Cannot move from {current} to {attempted}",
            details=merged,
        )
        self.current = current
        self.attempted = attempted


class DomainNotVerified(InvalidTransition):
    code = "domain_not_verified"


class DnsNotPropagated(DomainError):
    code = "dns_not_propagated"
    status_code = 409
    retryable = True


class VerificationFailed(DomainError):
    code = "verification_failed"
    status_code = 422


class CertificateAuthorityRateLimited(DomainError):
    code = "ca_rate_limited"
    status_code = 429
    retryable = True


class CertificateIssuanceFailed(DomainError):
    code = "certificate_issuance_failed"
    status_code = 502
    retryable = True


class HealthCheckTimeout(DomainError):
    code = "health_check_timeout"
    status_code = 504
    retryable = True


class StaleWrite(DomainError):
    """A versioned write lost a race with a concurrent writer."""

    code = "stale_write"
    status_code = 409
    retryable = True


class PlanUpgradeRequired(DomainError):
    """Feature is not included in the tenant's plan."""

    code = "plan_upgrade_required"
    status_code = 403
