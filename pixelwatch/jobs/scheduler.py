"""
Periodic jobs.

Each ScheduledJob wraps an async callable with:
  - a non-reentrancy guard: a tick that fires while the previous run is
    still going is skipped and logged
  - an error boundary: exceptions and deadline overruns are logged, the
    next tick runs normally

Scheduler registers the jobs on an APScheduler AsyncIOScheduler with fixed
interval triggers. Cadence is fixed in code:

  diagnostics          every 15 min
  event_retry          every 30 min
  analytics_recompute  every 60 min (55 min deadline)
  retention_cleanup    every 24 h
"""

import asyncio
import datetime
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from pixelwatch.config import get_settings
from pixelwatch.services import analytics, retention
from pixelwatch.services.diagnostics import DiagnosticEngine
from pixelwatch.services.events import EventProcessor

import structlog

logger = structlog.get_logger()

DIAGNOSTICS_INTERVAL = datetime.timedelta(minutes=15)
EVENT_RETRY_INTERVAL = datetime.timedelta(minutes=30)
ANALYTICS_INTERVAL = datetime.timedelta(hours=1)
ANALYTICS_DEADLINE = datetime.timedelta(minutes=55)
RETENTION_INTERVAL = datetime.timedelta(hours=24)

# run() outcomes
COMPLETED = "completed"
SKIPPED = "skipped"
FAILED = "failed"
TIMED_OUT = "timed_out"


@dataclass
class ScheduledJob:
    name: str
    interval: datetime.timedelta
    func: Callable[[], Awaitable[Any]]
    timeout: datetime.timedelta | None = None
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False, repr=False)

    @property
    def running(self) -> bool:
        return self._lock.locked()

    async def run(self) -> str:
        if self._lock.locked():
            logger.warning("job_skipped_still_running", job=self.name)
            return SKIPPED

        async with self._lock:
            started = asyncio.get_running_loop().time()
            logger.info("job_started", job=self.name)
            try:
                if self.timeout is not None:
                    result = await asyncio.wait_for(self.func(), timeout=self.timeout.total_seconds())
                else:
                    result = await self.func()
            except asyncio.TimeoutError:
                logger.error("job_timed_out", job=self.name, timeout_seconds=self.timeout.total_seconds())
                return TIMED_OUT
            except Exception as exc:
                logger.exception("job_failed", job=self.name, error=str(exc))
                return FAILED

            elapsed = asyncio.get_running_loop().time() - started
            logger.info("job_completed", job=self.name, duration_seconds=round(elapsed, 3),
                        result=result if isinstance(result, (dict, int)) else None)
            return COMPLETED


class Scheduler:
    """Owns the named jobs and the APScheduler instance that fires them."""

    def __init__(self):
        self._scheduler: AsyncIOScheduler | None = None
        self._jobs: dict[str, ScheduledJob] = {}

    @property
    def jobs(self) -> dict[str, ScheduledJob]:
        return dict(self._jobs)

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def add(self, job: ScheduledJob) -> None:
        if job.name in self._jobs:
            raise ValueError(f"Job '{job.name}' already registered")
        self._jobs[job.name] = job
        if self._scheduler is not None:
            self._register(job)

    def _register(self, job: ScheduledJob) -> None:
        # Overlap is handled by the job's own guard so skipped ticks get logged
        self._scheduler.add_job(
            job.run,
            trigger=IntervalTrigger(seconds=int(job.interval.total_seconds())),
            id=job.name,
            name=job.name,
            max_instances=2,
            coalesce=True,
            replace_existing=True,
        )

    def start(self) -> None:
        if self.running:
            return
        self._scheduler = AsyncIOScheduler(timezone=datetime.timezone.utc)
        for job in self._jobs.values():
            self._register(job)
        self._scheduler.start()
        logger.info("scheduler_started", jobs=sorted(self._jobs))

    def stop(self) -> None:
        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info("scheduler_stopped")
        self._scheduler = None

    async def run_now(self, name: str) -> str:
        try:
            job = self._jobs[name]
        except KeyError:
            raise ValueError(f"Unknown job '{name}'")
        return await job.run()


def build_scheduler(
    processor: EventProcessor,
    engine: DiagnosticEngine,
    session_factory=None,
) -> Scheduler:
    settings = get_settings()

    async def retry_events():
        retried = await processor.reprocess_failed_events(limit=settings.reprocess_batch_limit)
        stale = await processor.process_stale_pending(
            datetime.timedelta(minutes=settings.stale_pending_minutes),
            limit=settings.reprocess_batch_limit,
        )
        return {**retried, "stalePending": stale}

    async def recompute_analytics():
        return await analytics.generate_analytics(session_factory)

    async def cleanup():
        return await retention.cleanup(session_factory)

    scheduler = Scheduler()
    scheduler.add(ScheduledJob("diagnostics", DIAGNOSTICS_INTERVAL, engine.run_all))
    scheduler.add(ScheduledJob("event_retry", EVENT_RETRY_INTERVAL, retry_events))
    scheduler.add(ScheduledJob("analytics_recompute", ANALYTICS_INTERVAL, recompute_analytics,
                               timeout=ANALYTICS_DEADLINE))
    scheduler.add(ScheduledJob("retention_cleanup", RETENTION_INTERVAL, cleanup))
    return scheduler
