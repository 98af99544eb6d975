"""Periodic background jobs for domain maintenance."""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

import structlog

from tenantgate.domains.analytics import DomainAnalytics
from tenantgate.domains.certificates import CertificateLifecycle
from tenantgate.domains.health import HealthMonitor
from tenantgate.domains.models import Clock, MappingStatus, _utc_now
from tenantgate.domains.workflow import VerificationWorkflow
from tenantgate.observability.metrics import DOMAIN_MAPPINGS

logger = structlog.get_logger()


@dataclass
class ScheduledJob:
    name: str
    interval: timedelta
    run: Callable[[datetime], Awaitable[Any]]
    next_run: datetime | None = None
    last_error: str | None = None

    def is_due(self, now: datetime) -> bool:
        return self.next_run is None or self.next_run <= now


class DomainScheduler:
    """Runs verification rechecks, renewals, health sweeps and pruning.

    Due jobs run concurrently, one task per job, and a job still running
    from an earlier tick is not started again. A failing job is logged and
    rescheduled; it never stops the loop.
    """

    def __init__(
        self,
        workflow: VerificationWorkflow,
        lifecycle: CertificateLifecycle,
        monitor: HealthMonitor,
        analytics: DomainAnalytics | None = None,
        clock: Clock = _utc_now,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        recheck_interval: timedelta = timedelta(seconds=60),
        renewal_interval: timedelta = timedelta(hours=12),
        health_interval: timedelta = timedelta(minutes=60),
        prune_interval: timedelta = timedelta(days=1),
        tick_seconds: float = 5.0,
    ) -> None:
        self.workflow = workflow
        self.lifecycle = lifecycle
        self.monitor = monitor
        self.analytics = analytics
        self.registry = workflow.registry
        self.clock = clock
        self._sleep = sleep
        self.tick_seconds = tick_seconds
        self._task: asyncio.Task[None] | None = None
        self._running: dict[str, asyncio.Task[Any]] = {}
        self._shutdown_event = asyncio.Event()

        self.jobs = [
            ScheduledJob("verification_recheck", recheck_interval, self.workflow.run_due_rechecks),
            ScheduledJob("certificate_renewal", renewal_interval, self.lifecycle.renewal_sweep),
            ScheduledJob("health_sweep", health_interval, self.monitor.sweep),
            ScheduledJob("certificate_prune", prune_interval, self.lifecycle.prune_certificates),
            ScheduledJob("mapping_gauges", recheck_interval, self._refresh_gauges),
        ]
        if analytics is not None:
            self.jobs.append(
                ScheduledJob("request_counts", recheck_interval, self._flush_request_counts)
            )

    async def _refresh_gauges(self, now: datetime) -> None:
        for status in MappingStatus:
            mappings = await self.registry.list_by_status(status)
            DOMAIN_MAPPINGS.labels(status=status.value).set(len(mappings))

    async def _flush_request_counts(self, now: datetime) -> int:
        return await self.analytics.flush_request_counts()

    async def _run_job(self, job: ScheduledJob, now: datetime) -> Any:
        try:
            result = await job.run(now)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            job.last_error = str(e)
            logger.error("Scheduled job failed", job=job.name, error=str(e))
            return {"error": str(e)}
        job.last_error = None
        return result

    def _forget(self, name: str, task: asyncio.Task[Any]) -> None:
        if self._running.get(name) is task:
            del self._running[name]

    def dispatch(self, now: datetime | None = None) -> dict[str, asyncio.Task[Any]]:
        """Start every due job that is not still running from an earlier tick.

        Each job gets its own task, so a long health sweep never holds back
        verification rechecks.

        Returns:
            Job name to the task started for it.
        """
        now = now or self.clock()
        started: dict[str, asyncio.Task[Any]] = {}
        for job in self.jobs:
            running = self._running.get(job.name)
            if (running is not None and not running.done()) or not job.is_due(now):
                continue
            job.next_run = now + job.interval
            task = asyncio.create_task(self._run_job(job, now), name=f"tenantgate-{job.name}")
            task.add_done_callback(lambda t, name=job.name: self._forget(name, t))
            self._running[job.name] = task
            started[job.name] = task
        return started

    async def run_pending(self, now: datetime | None = None) -> dict[str, Any]:
        """Run every job that is due at ``now`` and wait for all of them.

        Returns:
            Job name to result (or ``{"error": ...}``) for the jobs that ran.
        """
        started = self.dispatch(now)
        results = await asyncio.gather(*started.values())
        return dict(zip(started, results, strict=True))

    def status(self) -> list[dict[str, Any]]:
        return [
            {
                "name": job.name,
                "interval_seconds": job.interval.total_seconds(),
                "next_run": job.next_run.isoformat() if job.next_run else None,
                "last_error": job.last_error,
            }
            for job in self.jobs
        ]

    async def _loop(self) -> None:
        while not self._shutdown_event.is_set():
            try:
                self.dispatch()
                await self._sleep(self.tick_seconds)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Scheduler error", error=str(e))

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._shutdown_event.clear()
        self._task = asyncio.create_task(self._loop())
        logger.info("Domain scheduler started", jobs=[job.name for job in self.jobs])

    async def stop(self) -> None:
        self._shutdown_event.set()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        jobs = list(self._running.values())
        for task in jobs:
            task.cancel()
        for task in jobs:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._running.clear()
        await self.lifecycle.wait_idle()
        logger.info("Domain scheduler stopped")
