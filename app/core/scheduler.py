"""
Background job scheduler for the settlement API.

Wraps an APScheduler AsyncIOScheduler. The scheduler itself knows nothing
about settlement: the pipeline orchestrator registers and removes its own
interval job through add_interval_job / remove_job, so start/stop of the
pipeline never restarts the scheduler.

Scheduler: APScheduler (lightweight, FastAPI-compatible)
"""
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from app.core.metrics import update_db_pool_metrics

logger = logging.getLogger(__name__)

METRICS_JOB_ID = "db_pool_metrics"


class AutomationScheduler:
    """Owns the AsyncIOScheduler lifecycle and job registration."""

    def __init__(self, timezone: str = "UTC"):
        self.timezone = timezone
        self.scheduler: Optional[AsyncIOScheduler] = None
        self.running = False

    async def start(self):
        """Start the scheduler. Must be called from a running event loop."""
        if self.running:
            logger.warning("Scheduler already running")
            return

        logger.info("Starting automation scheduler...")

        self.scheduler = AsyncIOScheduler(
            timezone=self.timezone,
            job_defaults={
                'coalesce': True,  # Combine missed runs into one
                'max_instances': 1,  # Only one instance of each job
                'misfire_grace_time': 300  # 5 minutes grace for misfires
            }
        )

        self._schedule_pool_metrics()

        self.scheduler.start()
        self.running = True

        logger.info("✅ Scheduler started with %d jobs", len(self.scheduler.get_jobs()))
        self._log_scheduled_jobs()

    async def stop(self):
        """Stop the scheduler, waiting for running jobs to finish."""
        if not self.running:
            return

        logger.info("Stopping scheduler...")
        self.scheduler.shutdown(wait=True)
        self.running = False
        logger.info("✅ Scheduler stopped")

    def add_interval_job(
        self,
        job_id: str,
        func: Callable[[], Awaitable[Any]],
        minutes: int,
        name: Optional[str] = None,
    ) -> bool:
        """
        Register (or replace) an interval job.

        Returns:
            False when the scheduler is not running and nothing was scheduled
        """
        if not self.running or self.scheduler is None:
            logger.warning(f"Scheduler not running - cannot schedule '{job_id}'")
            return False

        self.scheduler.add_job(
            func,
            trigger=IntervalTrigger(minutes=minutes, timezone=self.timezone),
            id=job_id,
            name=name or job_id,
            replace_existing=True,
        )
        logger.info(f"Scheduled '{job_id}' every {minutes} minutes")
        return True

    def remove_job(self, job_id: str) -> bool:
        if self.scheduler is None:
            return False
        try:
            self.scheduler.remove_job(job_id)
        except JobLookupError:
            return False
        logger.info(f"Removed scheduled job '{job_id}'")
        return True

    def has_job(self, job_id: str) -> bool:
        return self.scheduler is not None and self.scheduler.get_job(job_id) is not None

    def next_run_time(self, job_id: str) -> Optional[datetime]:
        if self.scheduler is None:
            return None
        job = self.scheduler.get_job(job_id)
        return job.next_run_time if job else None

    def job_count(self) -> int:
        return len(self.scheduler.get_jobs()) if self.scheduler else 0

    def _schedule_pool_metrics(self):
        """
        Schedule: Refresh database pool gauges.

        Frequency: Every minute
        """
        if self.scheduler is None:
            return

        @self.scheduler.scheduled_job(
            trigger=IntervalTrigger(minutes=1, timezone=self.timezone),
            id=METRICS_JOB_ID,
            name='Refresh DB Pool Metrics',
        )
        async def refresh_pool_metrics():
            update_db_pool_metrics()

    def _log_scheduled_jobs(self):
        """Log all scheduled jobs."""
        for job in self.scheduler.get_jobs():
            logger.info(f"  📅 {job.name} (id={job.id}) next run: {job.next_run_time}")
