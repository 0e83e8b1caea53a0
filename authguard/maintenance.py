"""
Maintenance Scheduler.

Runs housekeeping jobs on fixed intervals, off the request path. Each job is a
blocking callable run through ``asyncio.to_thread``; a job that raises is
logged and tried again on its next tick.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from .utils.clock import utcnow

logger = logging.getLogger(__name__)


@dataclass
class MaintenanceJob:
    name: str
    interval: float
    func: Callable[[], Any]
    last_run: Optional[datetime] = None
    last_result: Any = None
    last_error: Optional[str] = None
    run_count: int = 0


@dataclass
class SchedulerStatus:
    running: bool = False
    started_at: Optional[datetime] = None
    jobs: Dict[str, MaintenanceJob] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'running': self.running,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'jobs': {
                name: {
                    'interval_seconds': job.interval,
                    'run_count': job.run_count,
                    'last_run': job.last_run.isoformat() if job.last_run else None,
                    'last_result': job.last_result,
                    'last_error': job.last_error,
                }
                for name, job in self.jobs.items()
            },
        }


def default_jobs(service) -> List[MaintenanceJob]:
    """Housekeeping for a SecurityService."""
    return [
        MaintenanceJob("purge_expired_counters", 5 * 60, service.store.purge_expired),
        MaintenanceJob("decay_suspicious_ips", 60 * 60, service.decay_suspicious_ips),
        MaintenanceJob("deactivate_stale_threats", 60 * 60, service.deactivate_stale_threats),
        MaintenanceJob("mark_overdue_actions", 15 * 60, service.incidents.mark_overdue_actions),
        MaintenanceJob("reload_rules", 10 * 60, service.rule_engine.load_rules),
        MaintenanceJob("purge_closed_incidents", 24 * 60 * 60, service.incidents.purge_closed_incidents),
        MaintenanceJob("cleanup_fraud_history", 24 * 60 * 60, service.fraud.cleanup_old_entries),
    ]


class MaintenanceScheduler:
    """One asyncio task per job, each sleeping its own interval."""

    def __init__(self, jobs: List[MaintenanceJob], clock: Callable[[], datetime] = utcnow):
        self.clock = clock
        self.status = SchedulerStatus(jobs={job.name: job for job in jobs})
        self._tasks: List[asyncio.Task] = []
        self._stop_event: Optional[asyncio.Event] = None

    async def start(self):
        """Start one background task per job."""
        if self.status.running:
            logger.warning("Maintenance scheduler already running")
            return

        logger.info("Starting maintenance scheduler...")
        self._stop_event = asyncio.Event()
        self.status.running = True
        self.status.started_at = self.clock()
        self._tasks = [asyncio.create_task(self._job_loop(job)) for job in self.status.jobs.values()]
        logger.info(f"Maintenance scheduler started with {len(self._tasks)} jobs")

    async def stop(self):
        if not self.status.running:
            return

        logger.info("Stopping maintenance scheduler...")
        self._stop_event.set()
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        self.status.running = False
        logger.info("Maintenance scheduler stopped")

    async def run_job(self, job: MaintenanceJob):
        """Run one job now."""
        try:
            result = await asyncio.to_thread(job.func)
            job.last_result = result
            job.last_error = None
            logger.debug(f"Maintenance job {job.name} finished: {result}")
        except Exception as e:
            logger.error(f"Maintenance job {job.name} error: {e}", exc_info=True)
            job.last_error = str(e)
        job.run_count += 1
        job.last_run = self.clock()

    async def _job_loop(self, job: MaintenanceJob):
        while not self._stop_event.is_set():
            # Wait for next tick or stop signal
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=job.interval)
                break
            except asyncio.TimeoutError:
                pass
            await self.run_job(job)
