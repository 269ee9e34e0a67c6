"""Cron scheduling for the daemon's background jobs."""

import asyncio
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from ..config import validate_cron_expression


logger = structlog.get_logger(__name__)


class JobScheduler:
    """Manages cron-triggered jobs using APScheduler.

    Every job is registered single-flight: APScheduler never starts a second
    instance of a job while one is running, and fires missed meanwhile are
    coalesced into one.
    """

    def __init__(self, misfire_grace_time: int = 30):
        self.scheduler = AsyncIOScheduler()
        self.jobs: Dict[str, Dict[str, Any]] = {}
        self.misfire_grace_time = misfire_grace_time
        self.running = False

    async def start(self):
        """Start the job scheduler."""
        if self.running:
            logger.warning("Scheduler already running")
            return

        self.scheduler.start()
        self.running = True
        logger.info("Job scheduler started", job_count=len(self.jobs))

    async def stop(self):
        """Stop the job scheduler."""
        if not self.running:
            return

        self.scheduler.shutdown(wait=False)
        self.running = False
        logger.info("Job scheduler stopped")

    def add_cron_job(
        self,
        job_id: str,
        func: Callable,
        cron_expression: str,
        args: Optional[tuple] = None,
        kwargs: Optional[Dict[str, Any]] = None,
        description: Optional[str] = None
    ):
        """Add a cron-scheduled job."""
        if job_id in self.jobs:
            logger.warning("Job already exists, replacing", job_id=job_id)
            self.remove_job(job_id)

        # Parse cron expression (format: "minute hour day month day_of_week")
        cron_parts = validate_cron_expression(cron_expression).split()

        trigger = CronTrigger(
            minute=cron_parts[0],
            hour=cron_parts[1],
            day=cron_parts[2],
            month=cron_parts[3],
            day_of_week=cron_parts[4]
        )

        job = self.scheduler.add_job(
            func=func,
            trigger=trigger,
            id=job_id,
            args=args or (),
            kwargs=kwargs or {},
            name=description or job_id,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=self.misfire_grace_time,
        )

        self.jobs[job_id] = {
            "job": job,
            "expression": cron_expression,
            "description": description,
            "added_at": datetime.now(timezone.utc)
        }

        logger.info("Added cron job",
                   job_id=job_id,
                   cron=cron_expression,
                   description=description)

    def remove_job(self, job_id: str) -> bool:
        """Remove a scheduled job."""
        if job_id not in self.jobs:
            logger.warning("Job not found", job_id=job_id)
            return False

        self.scheduler.remove_job(job_id)
        del self.jobs[job_id]
        logger.info("Removed job", job_id=job_id)
        return True

    def get_job_status(self, job_id: str) -> Optional[Dict[str, Any]]:
        """Get status information for a job."""
        if job_id not in self.jobs:
            return None

        job_info = self.jobs[job_id]
        scheduler_job = self.scheduler.get_job(job_id)

        if scheduler_job is None:
            return None

        next_run_time = getattr(scheduler_job, "next_run_time", None)
        return {
            "job_id": job_id,
            "name": scheduler_job.name,
            "cron": job_info["expression"],
            "next_run": next_run_time.isoformat() if next_run_time else None,
            "added_at": job_info["added_at"].isoformat(),
            "description": job_info.get("description"),
        }

    def list_jobs(self) -> List[Dict[str, Any]]:
        """List all scheduled jobs."""
        job_statuses = []
        for job_id in self.jobs:
            status = self.get_job_status(job_id)
            if status:
                job_statuses.append(status)

        return job_statuses

    async def run_job_once(self, job_id: str) -> bool:
        """Run a scheduled job immediately (one-time execution)."""
        if job_id not in self.jobs:
            logger.warning("Job not found", job_id=job_id)
            return False

        scheduler_job = self.jobs[job_id]["job"]
        if asyncio.iscoroutinefunction(scheduler_job.func):
            await scheduler_job.func(*scheduler_job.args, **scheduler_job.kwargs)
        else:
            scheduler_job.func(*scheduler_job.args, **scheduler_job.kwargs)

        logger.info("Executed job manually", job_id=job_id)
        return True
