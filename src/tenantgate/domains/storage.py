"""Storage for domain mappings and their certificates.

JSON file-based storage suitable for self-hosted deployments. Pass
``storage_path=None`` to keep everything in memory.

Storage file format (domains.json):
    {
        "mappings": {
            "9f2c...": {
                "id": "9f2c...",
                "tenant_id": "acme",
                "domain": "shop.example.com",
                "kind": "custom",
                "status": "active",
                "version": 4,
                ...
            }
        },
        "certificates": {
            "4a:1f:...": {"serial": "4a:1f:...", "mapping_id": "9f2c...", ...}
        }
    }

Every write carries the version the caller read; a mismatch raises
StaleWrite instead of silently overwriting a concurrent change.
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

import structlog

from tenantgate.domains.errors import DomainTaken, NotFound, QuotaExceeded, StaleWrite
from tenantgate.domains.models import Certificate, DomainKind, DomainMapping, MappingStatus

logger = structlog.get_logger()


class MappingStore:
    """Mapping and certificate storage.

    Serialized via one asyncio lock. Reads return copies, so callers can
    mutate what they get and hand it back through ``update``.
    """

    def __init__(self, storage_path: str | Path | None = "domains.json") -> None:
        """Initialize mapping store.

        Args:
            storage_path: Path to the JSON storage file, or None for memory only.
        """
        self.storage_path = Path(storage_path) if storage_path is not None else None
        self._lock = asyncio.Lock()
        self._mappings: dict[str, DomainMapping] | None = None
        self._certificates: dict[str, Certificate] | None = None

    async def _load(self) -> tuple[dict[str, DomainMapping], dict[str, Certificate]]:
        """Load mappings and certificates from the storage file."""
        if self._mappings is not None and self._certificates is not None:
            return self._mappings, self._certificates

        self._mappings, self._certificates = {}, {}
        if self.storage_path is None or not self.storage_path.exists():
            return self._mappings, self._certificates

        try:
            content = await asyncio.to_thread(self.storage_path.read_text)
            data = json.loads(content)
            self._mappings = {
                mapping_id: DomainMapping.from_dict(item)
                for mapping_id, item in data.get("mappings", {}).items()
            }
            self._certificates = {
                serial: Certificate.from_dict(item)
                for serial, item in data.get("certificates", {}).items()
            }
        except (json.JSONDecodeError, KeyError, ValueError) as e:
            logger.error("Domain storage unreadable", path=str(self.storage_path), error=str(e))
            self._mappings, self._certificates = {}, {}

        return self._mappings, self._certificates

    async def _save(self) -> None:
        """Save mappings and certificates to the storage file."""
        if self.storage_path is None:
            return
        mappings, certificates = await self._load()
        data = {
            "mappings": {mapping_id: m.to_dict() for mapping_id, m in mappings.items()},
            "certificates": {serial: c.to_dict() for serial, c in certificates.items()},
        }
        content = json.dumps(data, indent=2)
        await asyncio.to_thread(self.storage_path.write_text, content)

    @staticmethod
    def _holds_name(mapping: DomainMapping, domain: str) -> bool:
        return mapping.domain == domain and mapping.status != MappingStatus.DELETING

    async def get(self, mapping_id: str) -> DomainMapping | None:
        async with self._lock:
            mappings, _ = await self._load()
            mapping = mappings.get(mapping_id)
            return mapping.clone() if mapping else None

    async def get_by_domain(self, domain: str) -> DomainMapping | None:
        """Get the non-deleting mapping holding ``domain``.

        Args:
            domain: Normalized hostname.

        Returns:
            The mapping if found, None otherwise.
        """
        async with self._lock:
            mappings, _ = await self._load()
            for mapping in mappings.values():
                if self._holds_name(mapping, domain):
                    return mapping.clone()
            return None

    async def list_for_tenant(
        self, tenant_id: str, include_deleting: bool = False
    ) -> list[DomainMapping]:
        async with self._lock:
            mappings, _ = await self._load()
            return [
                m.clone()
                for m in sorted(mappings.values(), key=lambda m: m.audit.created_at)
                if m.tenant_id == tenant_id
                and (include_deleting or m.status != MappingStatus.DELETING)
            ]

    async def list_all(self, status: MappingStatus | None = None) -> list[DomainMapping]:
        async with self._lock:
            mappings, _ = await self._load()
            return [m.clone() for m in mappings.values() if status is None or m.status == status]

    async def count_for_tenant(self, tenant_id: str, kind: DomainKind = DomainKind.CUSTOM) -> int:
        """Count non-deleting mappings of ``kind`` owned by a tenant."""
        async with self._lock:
            mappings, _ = await self._load()
            return self._count(mappings, tenant_id, kind)

    @staticmethod
    def _count(mappings: dict[str, DomainMapping], tenant_id: str, kind: DomainKind) -> int:
        return sum(
            1
            for m in mappings.values()
            if m.tenant_id == tenant_id and m.kind == kind and m.status != MappingStatus.DELETING
        )

    async def insert(
        self,
        mapping: DomainMapping,
        quota_limit: int | None = None,
        plan: str | None = None,
    ) -> DomainMapping:
        """Insert a new mapping after checking quota and name uniqueness.

        Both checks and the write happen under the store lock, so two
        concurrent inserts for the same name cannot both succeed.

        Args:
            mapping: The mapping to insert (version is set to 1).
            quota_limit: Maximum non-deleting mappings of this kind, None for unlimited.
            plan: Plan name reported in QuotaExceeded.

        Raises:
            QuotaExceeded: The tenant is at its limit.
            DomainTaken: Another non-deleting mapping holds the name.
        """
        async with self._lock:
            mappings, _ = await self._load()

            if quota_limit is not None:
                usage = self._count(mappings, mapping.tenant_id, mapping.kind)
                if usage >= quota_limit:
                    raise QuotaExceeded(usage=usage, limit=quota_limit, plan=plan)

            for existing in mappings.values():
                if self._holds_name(existing, mapping.domain):
                    owned = existing.tenant_id == mapping.tenant_id
                    raise DomainTaken(
                        f"Domain {mapping.domain} is already "
                        + ("mapped to this account" if owned else "in use"),
                        details={"domain": mapping.domain, "owned_by_caller": owned},
                    )

            stored = mapping.clone()
            stored.version = 1
            mappings[stored.id] = stored
            await self._save()
            return stored.clone()

    async def update(self, mapping: DomainMapping, expected_version: int | None = None) -> DomainMapping:
        """Write back a mapping read earlier.

        Args:
            mapping: The modified mapping.
            expected_version: Version the caller read; defaults to ``mapping.version``.

        Returns:
            The stored mapping with its incremented version.

        Raises:
            NotFound: The mapping was hard-deleted meanwhile.
            StaleWrite: Somebody else committed since the caller read.
        """
        expected = mapping.version if expected_version is None else expected_version
        async with self._lock:
            mappings, _ = await self._load()
            current = mappings.get(mapping.id)
            if current is None:
                raise NotFound(f"Domain mapping {mapping.id} not found")
            if current.version != expected:
                raise StaleWrite(
                    f"Mapping {mapping.id} changed concurrently",
                    details={"expected": expected, "actual": current.version},
                )
            stored = mapping.clone()
            stored.version = expected + 1
            mappings[stored.id] = stored
            await self._save()
            return stored.clone()

    async def delete(self, mapping_id: str) -> bool:
        """Hard-delete a mapping. Its certificates are kept for audit.

        Returns:
            True if deleted, False if not found.
        """
        async with self._lock:
            mappings, _ = await self._load()
            if mapping_id in mappings:
                del mappings[mapping_id]
                await self._save()
                return True
            return False

    async def save_certificate(self, certificate: Certificate) -> None:
        async with self._lock:
            _, certificates = await self._load()
            certificates[certificate.serial] = certificate
            await self._save()

    async def get_certificate(self, serial: str) -> Certificate | None:
        async with self._lock:
            _, certificates = await self._load()
            return certificates.get(serial)

    async def certificates_for_mapping(self, mapping_id: str) -> list[Certificate]:
        """Certificates ever attached to a mapping, newest first."""
        async with self._lock:
            _, certificates = await self._load()
            return sorted(
                (c for c in certificates.values() if c.mapping_id == mapping_id),
                key=lambda c: c.issued_at,
                reverse=True,
            )

    async def list_certificates(self) -> list[Certificate]:
        async with self._lock:
            _, certificates = await self._load()
            return list(certificates.values())

    async def delete_certificates(self, serials: list[str]) -> int:
        async with self._lock:
            _, certificates = await self._load()
            removed = 0
            for serial in serials:
                if certificates.pop(serial, None) is not None:
                    removed += 1
            if removed:
                await self._save()
            return removed

    def invalidate_cache(self) -> None:
        """Invalidate the in-memory cache.

        Call this after external modifications to the storage file. Has no
        effect for memory-only stores.
        """
        if self.storage_path is not None:
            self._mappings = None
            self._certificates = None
