"""Tests for traffic recording and analytics reports."""

from __future__ import annotations

from datetime import timedelta

import pytest

from tenantgate.domains.analytics import TrafficRecorder, insights
from tenantgate.domains.errors import InvalidInput, NotFound
from tenantgate.domains.models import MappingSpec


async def _with_traffic(env):
    mapping = await env.registry.create("t1", MappingSpec(domain="shop.example.com"))
    recorder = env.analytics.recorder
    now = env.clock()
    recorder.record("shop.example.com", 200, 100.0, visitor="a", at=now - timedelta(hours=1))
    recorder.record("shop.example.com", 500, 300.0, visitor="b", at=now - timedelta(hours=2))
    recorder.record("shop.example.com", 404, 200.0, visitor="a", at=now - timedelta(hours=3))
    recorder.record("shop.example.com", 200, 50.0, visitor="c", at=now - timedelta(days=8))
    return mapping


class TestTrafficRecorder:
    def test_buffer_is_bounded(self, clock):
        recorder = TrafficRecorder(max_samples=2, clock=clock)
        for status in (200, 201, 202):
            recorder.record("shop.example.com", status, 10.0)

        statuses = [s.status for s in recorder.samples("shop.example.com", clock() - timedelta(days=1))]
        assert statuses == [201, 202]

    def test_drain_counts_resets(self, clock):
        recorder = TrafficRecorder(clock=clock)
        recorder.record("shop.example.com", 200, 10.0, mapping_id="m1")
        recorder.record("shop.example.com", 200, 10.0, mapping_id="m1")

        assert recorder.drain_counts() == {"m1": 2}
        assert recorder.drain_counts() == {}

    def test_forget(self, clock):
        recorder = TrafficRecorder(clock=clock)
        recorder.record("shop.example.com", 200, 10.0)
        recorder.forget("shop.example.com")
        assert recorder.samples("shop.example.com", clock() - timedelta(days=1)) == []


class TestDomainAnalytics:
    """Tests for report aggregation."""

    @pytest.mark.asyncio
    async def test_totals_for_week(self, env):
        mapping = await _with_traffic(env)

        report = await env.analytics.get_domain_analytics("t1", mapping.id, "7d")

        totals = report["totals"]
        assert totals["requests"] == 3
        assert totals["unique_visitors"] == 2
        assert totals["client_errors"] == 1
        assert totals["server_errors"] == 1
        assert totals["error_rate"] == 66.67
        assert totals["top_errors"] == [{"status": 500, "count": 1}, {"status": 404, "count": 1}]
        assert report["performance"]["average_response_time_ms"] == 200.0
        assert report["performance"]["p95_response_time_ms"] == 300.0
        assert report["performance"]["uptime_percent"] == 100.0

    @pytest.mark.asyncio
    async def test_daily_series_is_zero_filled(self, env):
        mapping = await _with_traffic(env)

        report = await env.analytics.get_domain_analytics("t1", mapping.id, "7d")

        series = report["time_series"]
        assert len(series) == 8
        assert sum(point["requests"] for point in series) == 3
        assert series[-1]["requests"] == 3
        assert all(point["requests"] == 0 for point in series[:-1])

    @pytest.mark.asyncio
    async def test_hourly_series(self, env):
        mapping = await _with_traffic(env)

        report = await env.analytics.get_domain_analytics("t1", mapping.id, "24h")

        series = report["time_series"]
        assert len(series) == 25
        by_hour = {point["timestamp"]: point for point in series}
        eleven = (env.clock() - timedelta(hours=1)).isoformat()
        assert by_hour[eleven]["requests"] == 1
        assert by_hour[eleven]["errors"] == 0

    @pytest.mark.asyncio
    async def test_no_traffic(self, env):
        mapping = await env.registry.create("t1", MappingSpec(domain="shop.example.com"))

        report = await env.analytics.get_domain_analytics("t1", mapping.id, "30d")

        assert report["totals"]["requests"] == 0
        assert report["totals"]["error_rate"] == 0.0
        assert report["performance"]["p95_response_time_ms"] is None
        assert insights(report) == ["No traffic recorded in this timeframe"]

    @pytest.mark.asyncio
    async def test_insights_flag_errors(self, env):
        mapping = await _with_traffic(env)

        report = await env.analytics.get_domain_analytics("t1", mapping.id, "7d")

        notes = insights(report)
        assert any("Error rate" in note for note in notes)
        assert any("server errors" in note for note in notes)

    @pytest.mark.asyncio
    async def test_unknown_timeframe(self, env):
        mapping = await env.registry.create("t1", MappingSpec(domain="shop.example.com"))

        with pytest.raises(InvalidInput) as exc:
            await env.analytics.get_domain_analytics("t1", mapping.id, "1y")
        assert "7d" in exc.value.details["allowed"]

    @pytest.mark.asyncio
    async def test_other_tenant_cannot_read(self, env):
        mapping = await env.registry.create("t1", MappingSpec(domain="shop.example.com"))

        with pytest.raises(NotFound):
            await env.analytics.get_domain_analytics("t2", mapping.id)

    @pytest.mark.asyncio
    async def test_flush_request_counts(self, env):
        mapping = await env.registry.create("t1", MappingSpec(domain="shop.example.com"))
        for _ in range(3):
            env.analytics.recorder.record("shop.example.com", 200, 10.0, mapping_id=mapping.id)
        env.analytics.recorder.record("gone.example.com", 200, 10.0, mapping_id="missing")

        assert await env.analytics.flush_request_counts() == 1

        stored = await env.registry.get("t1", mapping.id)
        assert stored.request_count == 3
        assert stored.last_accessed_at == env.clock()
