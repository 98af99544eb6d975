"""Per-domain traffic analytics.

The request layer records one sample per resolved request; reports
aggregate the samples of a timeframe into totals, latency figures and a
zero-filled time series.
"""

from __future__ import annotations

import math
from collections import Counter, defaultdict, deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

import structlog

from tenantgate.domains.errors import InvalidInput
from tenantgate.domains.models import Clock, _utc_now
from tenantgate.domains.registry import DomainRegistry

logger = structlog.get_logger()

# timeframe -> (span, bucket size)
TIMEFRAMES: dict[str, tuple[timedelta, timedelta]] = {
    "24h": (timedelta(hours=24), timedelta(hours=1)),
    "7d": (timedelta(days=7), timedelta(days=1)),
    "30d": (timedelta(days=30), timedelta(days=1)),
    "90d": (timedelta(days=90), timedelta(days=1)),
}


@dataclass(frozen=True)
class TrafficSample:
    timestamp: datetime
    status: int
    response_time_ms: float
    visitor: str | None = None

    @property
    def is_error(self) -> bool:
        return self.status >= 400


class TrafficRecorder:
    """Bounded rolling buffer of traffic samples per domain."""

    def __init__(self, max_samples: int = 50000, clock: Clock = _utc_now) -> None:
        self.max_samples = max_samples
        self.clock = clock
        self._samples: dict[str, deque[TrafficSample]] = defaultdict(
            lambda: deque(maxlen=self.max_samples)
        )
        self._unflushed: Counter[str] = Counter()

    def record(
        self,
        domain: str,
        status: int,
        response_time_ms: float,
        visitor: str | None = None,
        mapping_id: str | None = None,
        at: datetime | None = None,
    ) -> None:
        self._samples[domain].append(
            TrafficSample(
                timestamp=at or self.clock(),
                status=status,
                response_time_ms=response_time_ms,
                visitor=visitor,
            )
        )
        if mapping_id:
            self._unflushed[mapping_id] += 1

    def samples(self, domain: str, since: datetime) -> list[TrafficSample]:
        return [s for s in self._samples.get(domain, ()) if s.timestamp >= since]

    def drain_counts(self) -> dict[str, int]:
        """Request counts per mapping id recorded since the last drain."""
        counts = dict(self._unflushed)
        self._unflushed.clear()
        return counts

    def forget(self, domain: str) -> None:
        self._samples.pop(domain, None)


def _percentile(values: list[float], pct: float) -> float | None:
    if not values:
        return None
    ordered = sorted(values)
    index = max(0, math.ceil(pct / 100 * len(ordered)) - 1)
    return round(ordered[index], 1)


def _bucket_start(at: datetime, bucket: timedelta) -> datetime:
    if bucket >= timedelta(days=1):
        return at.replace(hour=0, minute=0, second=0, microsecond=0)
    return at.replace(minute=0, second=0, microsecond=0)


def insights(analytics: dict[str, Any]) -> list[str]:
    """Short observations about an analytics report."""
    notes = []
    totals = analytics["totals"]
    performance = analytics["performance"]
    if totals["requests"] == 0:
        notes.append("No traffic recorded in this timeframe")
        return notes
    if totals["error_rate"] > 5:
        notes.append(f"Error rate is high ({totals['error_rate']}%)")
    if totals["server_errors"]:
        notes.append(f"{totals['server_errors']} requests failed with server errors")
    p95 = performance["p95_response_time_ms"]
    if p95 is not None and p95 > 3000:
        notes.append(f"Slowest 5% of requests take over {p95 / 1000:.1f}s")
    if performance["uptime_percent"] < 99:
        notes.append(f"Uptime is {performance['uptime_percent']}%")
    return notes


class DomainAnalytics:
    """Builds traffic reports for a tenant's domain mappings."""

    def __init__(
        self,
        registry: DomainRegistry,
        recorder: TrafficRecorder,
        clock: Clock = _utc_now,
    ) -> None:
        self.registry = registry
        self.recorder = recorder
        self.clock = clock

    async def get_domain_analytics(
        self, tenant_id: str, mapping_id: str, timeframe: str = "7d"
    ) -> dict[str, Any]:
        """Aggregate traffic for one mapping.

        Args:
            tenant_id: Owning tenant.
            mapping_id: Mapping to report on.
            timeframe: One of ``24h``, ``7d``, ``30d``, ``90d``.

        Raises:
            InvalidInput: Unknown timeframe.
            NotFound: No such mapping for the tenant.
        """
        if timeframe not in TIMEFRAMES:
            raise InvalidInput(
                f"Unknown timeframe {timeframe!r}",
                details={"allowed": sorted(TIMEFRAMES)},
            )
        mapping = await self.registry.get(tenant_id, mapping_id)
        span, bucket = TIMEFRAMES[timeframe]
        now = self.clock()
        since = now - span
        samples = self.recorder.samples(mapping.domain, since)

        client_errors = sum(1 for s in samples if 400 <= s.status < 500)
        server_errors = sum(1 for s in samples if s.status >= 500)
        errors = client_errors + server_errors
        times = [s.response_time_ms for s in samples]
        top_errors = Counter(s.status for s in samples if s.is_error).most_common(5)

        series: dict[datetime, dict[str, Any]] = {}
        cursor = _bucket_start(since, bucket)
        while cursor <= now:
            series[cursor] = {"timestamp": cursor.isoformat(), "requests": 0, "errors": 0}
            cursor += bucket
        for sample in samples:
            point = series.get(_bucket_start(sample.timestamp, bucket))
            if point is not None:
                point["requests"] += 1
                point["errors"] += int(sample.is_error)

        return {
            "domain": mapping.domain,
            "timeframe": timeframe,
            "period": {"start": since.isoformat(), "end": now.isoformat()},
            "totals": {
                "requests": len(samples),
                "unique_visitors": len({s.visitor for s in samples if s.visitor}),
                "errors": errors,
                "client_errors": client_errors,
                "server_errors": server_errors,
                "error_rate": round(errors / len(samples) * 100, 2) if samples else 0.0,
                "top_errors": [{"status": status, "count": count} for status, count in top_errors],
            },
            "performance": {
                "average_response_time_ms": round(sum(times) / len(times), 1) if times else None,
                "p95_response_time_ms": _percentile(times, 95),
                "uptime_percent": mapping.health.uptime_percent,
            },
            "time_series": list(series.values()),
        }

    async def flush_request_counts(self) -> int:
        """Persist request counters gathered by the recorder.

        Returns:
            Number of mappings updated.
        """
        updated = 0
        for mapping_id, count in self.recorder.drain_counts().items():
            if await self.registry.record_access(mapping_id, count) is not None:
                updated += 1
        if updated:
            logger.debug("Request counts flushed", mappings=updated)
        return updated
