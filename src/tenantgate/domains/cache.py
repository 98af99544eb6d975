"""Hostname to tenant cache for the request path.

Entries expire after a TTL measured on an injected monotonic clock and are
evicted least-recently-used once ``max_entries`` is reached. Registry
mutations call ``invalidate`` synchronously before they return.

Every invalidation also bumps a per-hostname generation. A resolver takes
the generation before its registry read and passes it back to ``set``, so
a lookup that raced with an invalidation cannot re-cache what it read.
"""

from __future__ import annotations

import threading
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from time import monotonic


@dataclass
class TenantCacheEntry:
    tenant_id: str | None
    mapping_id: str | None
    expires_at: float


class DomainCache:
    """TTL + LRU cache keyed by normalized hostname.

    Negative results (``tenant_id=None``) are cached too, so unknown hosts
    do not hammer the registry.
    """

    def __init__(
        self,
        ttl_seconds: float = 60.0,
        max_entries: int = 10000,
        clock: Callable[[], float] = monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[str, TenantCacheEntry] = OrderedDict()
        self._generations: dict[str, int] = {}
        self._epoch = 0
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, hostname: str) -> TenantCacheEntry | None:
        with self._lock:
            entry = self._entries.get(hostname)
            if entry is None:
                self.misses += 1
                return None
            if entry.expires_at <= self._clock():
                del self._entries[hostname]
                self.misses += 1
                return None
            self._entries.move_to_end(hostname)
            self.hits += 1
            return entry

    def generation(self, hostname: str) -> tuple[int, int]:
        with self._lock:
            return self._epoch, self._generations.get(hostname, 0)

    def set(
        self,
        hostname: str,
        tenant_id: str | None,
        mapping_id: str | None = None,
        generation: tuple[int, int] | None = None,
    ) -> bool:
        """Cache a lookup result.

        Returns False without caching when ``generation`` is given and the
        hostname has been invalidated since it was taken.
        """
        with self._lock:
            current = (self._epoch, self._generations.get(hostname, 0))
            if generation is not None and generation != current:
                return False
            self._entries[hostname] = TenantCacheEntry(
                tenant_id=tenant_id,
                mapping_id=mapping_id,
                expires_at=self._clock() + self.ttl_seconds,
            )
            self._entries.move_to_end(hostname)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)
            return True

    def invalidate(self, hostname: str) -> bool:
        with self._lock:
            self._generations[hostname] = self._generations.get(hostname, 0) + 1
            return self._entries.pop(hostname, None) is not None

    def invalidate_tenant(self, tenant_id: str) -> int:
        with self._lock:
            # In-flight lookups for the tenant may target hosts not cached yet.
            self._epoch += 1
            stale = [h for h, e in self._entries.items() if e.tenant_id == tenant_id]
            for hostname in stale:
                del self._entries[hostname]
            return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._epoch += 1
            self._entries.clear()
            self._generations.clear()

    @property
    def entry_count(self) -> int:
        """Number of cached hostnames (including expired, not yet evicted)."""
        return len(self._entries)
