"""Core."""

from .config import (
    CertificateSettings,
    DomainSettings,
    HealthSettings,
    ResolverSettings,
    ServerSettings,
    TenantgateConfig,
    clear_config,
    get_config,
)
from .logging import configure_logging

__all__ = [
    "CertificateSettings",
    "DomainSettings",
    "HealthSettings",
    "ResolverSettings",
    "ServerSettings",
    "TenantgateConfig",
    "clear_config",
    "configure_logging",
    "get_config",
]
