from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest

RESOLVER_LOOKUPS = Counter(
    "tenantgate_resolver_lookups_total",
    "Hostname to tenant resolutions",
    ["result"],  # hit, miss, not_found, timeout, error
)

RESOLVER_DURATION = Histogram(
    "tenantgate_resolver_duration_seconds",
    "Tenant resolution latency",
    buckets=(0.0005, 0.001, 0.0025, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5),
)

VERIFICATIONS = Counter(
    "tenantgate_verifications_total",
    "Domain verification attempts",
    ["status"],  # verified, pending, error
)

CERTIFICATE_OPERATIONS = Counter(
    "tenantgate_certificate_operations_total",
    "Certificate lifecycle operations",
    ["operation", "result"],  # operation: issue/renew/revoke/upload
)

HEALTH_CHECKS = Counter(
    "tenantgate_health_checks_total",
    "Domain health checks by overall result",
    ["overall"],
)

DOMAIN_MAPPINGS = Gauge(
    "tenantgate_domain_mappings",
    "Domain mappings by status",
    ["status"],
)

RENEWAL_SWEEP_DURATION = Histogram(
    "tenantgate_renewal_sweep_duration_seconds",
    "Duration of one certificate renewal sweep",
    buckets=(0.1, 0.5, 1.0, 5.0, 15.0, 60.0, 300.0, 900.0),
)


def generate_metrics() -> bytes:
    return generate_latest()


def get_content_type() -> str:
    return CONTENT_TYPE_LATEST
