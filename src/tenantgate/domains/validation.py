"""Pure validation helpers for domain names and certificate bundles.

Nothing here performs I/O. Callers get a normalized value back together
with a human readable error, or a list of issues for certificate bundles.
"""

from __future__ import annotations

import re
from datetime import UTC, datetime

import idna
from cryptography import x509
from cryptography.hazmat.primitives.asymmetric import dsa, ec, ed448, ed25519, rsa
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    PublicFormat,
    load_pem_private_key,
)

from tenantgate.domains.errors import InvalidInput
from tenantgate.domains.models import VerificationMethod

MAX_DOMAIN_LENGTH = 253
MAX_LABEL_LENGTH = 63

_LABEL_RE = re.compile(r"^[a-z0-9-]+$")
_SUBDOMAIN_RE = re.compile(r"^[a-z0-9][a-z0-9-]{1,61}[a-z0-9]$")

RESERVED_SUBDOMAINS = frozenset(
    {
        "www", "api", "admin", "support", "help", "mail", "ftp", "blog",
        "news", "shop", "store", "app", "mobile", "dev", "test", "staging",
        "prod", "production", "cdn", "assets", "static", "media", "images",
        "js", "css", "files", "docs", "documentation", "status", "about",
        "contact", "privacy", "terms", "legal", "security", "team", "careers",
    }
)

BANNED_DOMAINS = ("test.com", "temp.com", "localhost", "invalid")

_PEM_CERT_BEGIN = "-----BEGIN CERTIFICATE-----"
_PEM_CERT_END = "-----END CERTIFICATE-----"
_PEM_KEY_RE = re.compile(r"-----BEGIN (?:RSA |EC |ENCRYPTED )?PRIVATE KEY-----")


def validate_domain_name(raw: str | None) -> tuple[str | None, str | None]:
    """Normalize and validate a hostname.

    The result is lowercase ASCII; internationalized names are converted to
    their punycode (``xn--``) form using IDNA 2008 with UTS #46 mapping, so
    deviation characters such as ``ß`` keep their own encoding.

    Args:
        raw: Hostname as entered by the tenant.

    Returns:
        Tuple of (normalized_domain, error). Exactly one of them is None.
    """
    if raw is None or not str(raw).strip():
        return None, "Domain is required"

    domain = str(raw).strip().lower()
    if "://" in domain:
        return None, "Enter the domain without a protocol (http:// or https://)"
    if "/" in domain or "?" in domain or "#" in domain:
        return None, "Enter the domain without a path"
    if domain.endswith("."):
        domain = domain[:-1]
    if "*" in domain:
        return None, "Wildcard domains are not supported"
    if ":" in domain:
        return None, "Enter the domain without a port"
    if any(ch.isspace() for ch in domain):
        return None, "Domain must not contain whitespace"

    if not domain.isascii():
        try:
            domain = idna.encode(domain, uts46=True, transitional=False).decode("ascii")
        except idna.IDNAError:
            return None, "Domain contains characters that cannot be encoded"

    if len(domain) > MAX_DOMAIN_LENGTH:
        return None, f"Domain is too long (max {MAX_DOMAIN_LENGTH} characters)"

    labels = domain.split(".")
    if len(labels) < 2:
        return None, "Domain must include a top-level domain (e.g. .com)"

    for label in labels:
        if not label:
            return None, "Domain contains an empty label"
        if len(label) > MAX_LABEL_LENGTH:
            return None, f"Label '{label}' is too long (max {MAX_LABEL_LENGTH} characters)"
        if not _LABEL_RE.match(label):
            return None, f"Label '{label}' contains invalid characters"
        if label.startswith("-") or label.endswith("-"):
            return None, f"Label '{label}' must not start or end with a hyphen"
        if label[2:4] == "--" and not label.startswith("xn--"):
            return None, f"Label '{label}' has a hyphen in positions 3 and 4"
        if label.startswith("xn--"):
            try:
                idna.decode(label)
            except idna.IDNAError:
                return None, f"Label '{label}' is not valid punycode"

    tld = labels[-1]
    if tld.isdigit():
        return None, "IP addresses are not accepted as domains"
    if len(tld) < 2:
        return None, "Top-level domain must be at least 2 characters"

    return domain, None


def validate_subdomain_label(raw: str | None) -> tuple[str | None, str | None]:
    """Validate a platform subdomain label (the ``acme`` in ``acme.<base>``)."""
    if raw is None or not str(raw).strip():
        return None, "Subdomain is required"
    label = str(raw).strip().lower()
    if len(label) < 3:
        return None, "Subdomain must be at least 3 characters"
    if len(label) > MAX_LABEL_LENGTH:
        return None, f"Subdomain must be at most {MAX_LABEL_LENGTH} characters"
    if not _SUBDOMAIN_RE.match(label):
        return None, "Subdomain may contain letters, numbers and inner hyphens only"
    if label in RESERVED_SUBDOMAINS:
        return None, "This subdomain is reserved"
    return label, None


def suggest_subdomains(label: str, count: int = 5) -> list[str]:
    """Alternative labels to offer when a subdomain is taken or reserved."""
    base = re.sub(r"[^a-z0-9-]", "", label.lower()).strip("-")[:50] or "brand"
    candidates = [f"{base}-{suffix}" for suffix in ("hq", "online", "official", "co", "site")]
    candidates.extend(f"{base}{n}" for n in range(1, 10))
    return [c for c in candidates if c not in RESERVED_SUBDOMAINS][:count]


def is_banned_domain(domain: str, base_domain: str | None = None) -> bool:
    """True for hostnames that may never be mapped as custom domains."""
    banned = list(BANNED_DOMAINS)
    if base_domain:
        banned.append(base_domain)
    return any(domain == b or domain.endswith(f".{b}") for b in banned)


def validate_verification_method(raw: str | VerificationMethod | None) -> VerificationMethod:
    """Parse a verification method, defaulting to DNS.

    Raises:
        InvalidInput: For anything other than dns, file or email.
    """
    if raw is None:
        return VerificationMethod.DNS
    if isinstance(raw, VerificationMethod):
        return raw
    try:
        return VerificationMethod(str(raw).strip().lower())
    except ValueError as e:
        raise InvalidInput(
            f"Unsupported verification method: {raw}",
            details={"allowed": [m.value for m in VerificationMethod]},
        ) from e


def certificate_dns_names(cert: x509.Certificate) -> list[str]:
    """DNS names covered by a certificate (SAN, falling back to the common name)."""
    try:
        san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName)
        names = san.value.get_values_for_type(x509.DNSName)
    except x509.ExtensionNotFound:
        names = [
            attr.value
            for attr in cert.subject.get_attributes_for_oid(x509.NameOID.COMMON_NAME)
            if isinstance(attr.value, str)
        ]
    return [n.lower().rstrip(".") for n in names]


def certificate_matches_domain(cert: x509.Certificate, domain: str) -> bool:
    """Check SAN coverage, allowing single-level wildcards."""
    domain = domain.lower()
    for name in certificate_dns_names(cert):
        if name == domain:
            return True
        if name.startswith("*."):
            suffix = name[1:]
            head, _, rest = domain.partition(".")
            if head and f".{rest}" == suffix:
                return True
    return False


def _public_key_bytes(key: object) -> bytes:
    return key.public_bytes(Encoding.DER, PublicFormat.SubjectPublicKeyInfo)


def validate_certificate_bundle(
    certificate_pem: str | None,
    private_key_pem: str | None,
    chain_pem: str | None = None,
    domain: str | None = None,
    now: datetime | None = None,
) -> tuple[bool, list[str]]:
    """Validate a tenant-supplied certificate bundle.

    Checks PEM framing, that the leaf and key parse, that the key belongs to
    the leaf, that chain entries parse, the validity period and (when
    ``domain`` is given) hostname coverage. The CA chain is not verified.

    Returns:
        Tuple of (is_valid, issues).
    """
    issues: list[str] = []
    now = now or datetime.now(UTC)

    if not certificate_pem or _PEM_CERT_BEGIN not in certificate_pem or _PEM_CERT_END not in certificate_pem:
        issues.append("Invalid certificate format: expected a PEM encoded certificate")
    if not private_key_pem or not _PEM_KEY_RE.search(private_key_pem):
        issues.append("Invalid private key format: expected a PEM encoded private key")
    if chain_pem and _PEM_CERT_BEGIN not in chain_pem:
        issues.append("Invalid certificate chain format")
    if issues:
        return False, issues

    try:
        leaf = x509.load_pem_x509_certificate(certificate_pem.encode())
    except ValueError:
        return False, ["Certificate could not be parsed"]

    try:
        key = load_pem_private_key(private_key_pem.encode(), password=None)
    except (ValueError, TypeError):
        return False, ["Private key could not be parsed (encrypted keys are not supported)"]

    if not isinstance(
        key,
        rsa.RSAPrivateKey | ec.EllipticCurvePrivateKey | ed25519.Ed25519PrivateKey
        | ed448.Ed448PrivateKey | dsa.DSAPrivateKey,
    ):
        issues.append("Unsupported private key type")
    elif _public_key_bytes(key.public_key()) != _public_key_bytes(leaf.public_key()):
        issues.append("Private key does not match the certificate")

    if chain_pem:
        try:
            x509.load_pem_x509_certificates(chain_pem.encode())
        except ValueError:
            issues.append("Certificate chain could not be parsed")

    if leaf.not_valid_after_utc <= now:
        issues.append(f"Certificate expired on {leaf.not_valid_after_utc.date().isoformat()}")
    if leaf.not_valid_before_utc > now:
        issues.append("Certificate is not yet valid")

    if domain and not certificate_matches_domain(leaf, domain):
        issues.append(f"Certificate does not cover {domain}")

    return not issues, issues
