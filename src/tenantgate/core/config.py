"""Configuration types with environment variable support.

All settings can be configured via environment variables with the TENANTGATE_ prefix.
Example: TENANTGATE_RENEWAL_HORIZON_DAYS=21 renews certificates three weeks before expiry.
"""

from __future__ import annotations

import json
import tomllib
from pathlib import Path
from typing import Any

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_PLAN_LIMITS: dict[str, int] = {
    "foundation": 0,
    "growth": 0,
    "premium": 3,
    "enterprise": 10,
}


def load_config_from_file(path: str | Path) -> dict[str, Any]:
    """Load configuration from a YAML or TOML file.

    Args:
        path: Path to the configuration file (.yaml, .yml, or .toml)

    Returns:
        Configuration dictionary

    Raises:
        FileNotFoundError: If the config file doesn't exist
        ValueError: If the config file has encoding errors, invalid syntax, or unsupported format
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    try:
        content = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as e:
        raise ValueError(f"Config file encoding error in {path}: {e}") from e

    try:
        if path.suffix in (".yaml", ".yml"):
            return yaml.safe_load(content) or {}
        elif path.suffix == ".toml":
            return tomllib.loads(content)
        else:
            raise ValueError(f"Unsupported config format: {path.suffix}")
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in {path}: {e}") from e
    except tomllib.TOMLDecodeError as e:
        raise ValueError(f"Invalid TOML in {path}: {e}") from e


_SETTINGS_CONFIG = SettingsConfigDict(
    env_prefix="TENANTGATE_",
    env_file=".env",
    env_file_encoding="utf-8",
    extra="ignore",
)


class DomainSettings(BaseSettings):
    """Domain registry and DNS verification settings.

    - TENANTGATE_BASE_DOMAIN: Platform domain that hosts tenant subdomains
    - TENANTGATE_CNAME_TARGET: Edge hostname customer domains must CNAME to
    - TENANTGATE_VERIFICATION_LABEL: Label prefixed to the domain for the TXT challenge
    - TENANTGATE_TENANT_PLANS: JSON object of tenant id to subscription plan
    - TENANTGATE_DEFAULT_PLAN: Plan for tenants missing from TENANTGATE_TENANT_PLANS
    """

    model_config = _SETTINGS_CONFIG

    base_domain: str = Field(
        default="tenantgate.app",
        description="Platform base domain for tenant subdomains.",
    )
    cname_target: str = Field(
        default="edge.tenantgate.app",
        description="Hostname customer domains must point their CNAME at.",
    )
    verification_label: str = Field(
        default="_tenantgate-challenge",
        description="Label of the TXT ownership record (<label>.<domain>).",
    )
    storage_path: str = Field(
        default="domains.json",
        description="Path to the JSON mapping store.",
    )
    dns_timeout: float = Field(
        default=3.0,
        gt=0,
        description="Timeout for one DNS evaluation (seconds).",
    )
    recheck_cap_hours: int = Field(
        default=24,
        ge=1,
        description="Stop automatic verification rechecks after this many hours.",
    )
    plan_limits: dict[str, int] = Field(
        default_factory=lambda: dict(DEFAULT_PLAN_LIMITS),
        description="Custom domain quota per subscription plan (JSON).",
    )
    tenant_plans: dict[str, str] = Field(
        default_factory=dict,
        description="Subscription plan per tenant id (JSON).",
    )
    default_plan: str = Field(
        default="foundation",
        description="Plan assumed for tenants without an entry in tenant_plans.",
    )

    @field_validator("base_domain", "cname_target")
    @classmethod
    def _normalize_host(cls, value: str) -> str:
        return value.strip().lower().rstrip(".")

    @field_validator("plan_limits", "tenant_plans", mode="before")
    @classmethod
    def _parse_json_mapping(cls, value: Any) -> Any:
        if isinstance(value, str):
            return json.loads(value)
        return value


class CertificateSettings(BaseSettings):
    """Certificate lifecycle settings.

    All durations use the unit named in the field.
    """

    model_config = _SETTINGS_CONFIG

    validity_days: int = Field(default=90, ge=1, description="Managed certificate validity.")
    freshness_hours: int = Field(
        default=24,
        ge=0,
        description="A certificate issued within this window is reused instead of re-requested.",
    )
    renewal_horizon_days: int = Field(
        default=30,
        ge=1,
        description="Renew managed certificates expiring within this many days.",
    )
    renewal_workers: int = Field(default=4, ge=1, description="Concurrent renewals per sweep.")
    renewal_jitter_seconds: float = Field(
        default=30.0,
        ge=0,
        description="Random delay before each renewal call in a sweep.",
    )
    renewal_interval_hours: float = Field(default=12.0, gt=0)
    authority_rate_limit: int = Field(
        default=5,
        ge=1,
        description="Issuances allowed per domain per rate limit window.",
    )
    authority_rate_window_seconds: float = Field(default=3600.0, gt=0)
    retention_days: int = Field(
        default=90,
        ge=1,
        description="Keep superseded or revoked certificates this long for audit.",
    )


class HealthSettings(BaseSettings):
    """Health check settings."""

    model_config = _SETTINGS_CONFIG

    http_timeout: float = Field(default=5.0, gt=0, description="HTTP probe timeout (seconds).")
    slow_threshold_ms: float = Field(
        default=5000.0,
        gt=0,
        description="Response time above which performance is reported as warning.",
    )
    interval_minutes: float = Field(default=60.0, gt=0)
    failure_threshold: int = Field(
        default=3,
        ge=1,
        description="Consecutive failed checks before an active mapping moves to error.",
    )
    expiry_warning_days: int = Field(default=30, ge=1)


class ResolverSettings(BaseSettings):
    """Request path resolver settings."""

    model_config = _SETTINGS_CONFIG

    cache_ttl_seconds: float = Field(default=60.0, gt=0)
    cache_max_entries: int = Field(default=10000, ge=1)
    lookup_timeout: float = Field(
        default=0.25,
        gt=0,
        description="Upper bound for a registry lookup on cache miss (seconds).",
    )


class ServerSettings(BaseSettings):
    """Management API server settings."""

    model_config = _SETTINGS_CONFIG

    bind: str = Field(default="0.0.0.0:8080", description="host:port for the management API.")
    metrics_enabled: bool = True
    scheduler_enabled: bool = True
    log_level: str = "info"
    log_json: bool = False


class TenantgateConfig(BaseSettings):
    """Master configuration combining all settings.

    Use get_config() to get a cached instance.

    Example:
        config = get_config()
        print(config.domains.base_domain)
        print(config.certificates.renewal_horizon_days)
    """

    model_config = _SETTINGS_CONFIG

    @property
    def domains(self) -> DomainSettings:
        """Get domain configuration."""
        return DomainSettings()

    @property
    def certificates(self) -> CertificateSettings:
        """Get certificate configuration."""
        return CertificateSettings()

    @property
    def health(self) -> HealthSettings:
        """Get health check configuration."""
        return HealthSettings()

    @property
    def resolver(self) -> ResolverSettings:
        """Get resolver configuration."""
        return ResolverSettings()

    @property
    def server(self) -> ServerSettings:
        """Get server configuration."""
        return ServerSettings()

    def to_display_dict(self) -> dict[str, Any]:
        """Export current configuration as a nested dictionary for display."""
        return {
            "domains": self.domains.model_dump(),
            "certificates": self.certificates.model_dump(),
            "health": self.health.model_dump(),
            "resolver": self.resolver.model_dump(),
            "server": self.server.model_dump(),
        }


def apply_file_config(path: str | Path) -> dict[str, str]:
    """Translate a YAML/TOML config file into TENANTGATE_ environment entries.

    Nested sections are flattened, so ``certificates: {validity_days: 30}``
    becomes ``TENANTGATE_VALIDITY_DAYS``. Section names are dropped because
    every setting name is unique across sections.

    Returns:
        Mapping of environment variable name to string value.
    """
    flat: dict[str, Any] = {}
    for key, value in load_config_from_file(path).items():
        if isinstance(value, dict) and key != "plan_limits":
            flat.update(value)
        else:
            flat[key] = value

    env: dict[str, str] = {}
    for key, value in flat.items():
        if isinstance(value, dict):
            env[f"TENANTGATE_{key.upper()}"] = json.dumps(value)
        elif isinstance(value, bool):
            env[f"TENANTGATE_{key.upper()}"] = str(value).lower()
        else:
            env[f"TENANTGATE_{key.upper()}"] = str(value)
    return env


_config: TenantgateConfig | None = None


def get_config() -> TenantgateConfig:
    """Get the global configuration instance.

    Returns a cached instance of TenantgateConfig that reads from environment variables.
    To reload config (e.g., in tests), call clear_config() first.
    """
    global _config
    if _config is None:
        _config = TenantgateConfig()
    return _config


def clear_config() -> None:
    """Clear the cached configuration.

    Call this to force reloading of environment variables on next get_config() call.
    """
    global _config
    _config = None
