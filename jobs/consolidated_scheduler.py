"""
Consolidated Background Job Scheduler

Hosts the background verifier: one recurring job that confirms burns, pushes
their payouts through, syncs provider status and reconciles escrows.
"""

import logging
from datetime import datetime

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import Config
from jobs.burn_verification_monitor import run_burn_verification

logger = logging.getLogger(__name__)

VERIFIER_JOB_ID = "burn_verification_monitor"


class ConsolidatedScheduler:
    """Scheduler wrapper; a cycle that overruns its interval is coalesced, never doubled"""

    def __init__(self, interval_seconds: int = None):
        self.interval_seconds = interval_seconds or Config.BURN_VERIFICATION_INTERVAL

        jobstores = {
            'default': MemoryJobStore()
        }
        executors = {
            'default': AsyncIOExecutor()
        }
        job_defaults = {
            'coalesce': True,
            'max_instances': 1,
            'misfire_grace_time': 120
        }

        self.scheduler = AsyncIOScheduler(
            jobstores=jobstores,
            executors=executors,
            job_defaults=job_defaults,
            timezone='UTC'
        )

    def setup_jobs(self):
        """Register the verifier job"""
        self.scheduler.add_job(
            run_burn_verification,
            trigger=IntervalTrigger(
                seconds=self.interval_seconds,
                start_date=datetime.now().replace(microsecond=0),
            ),
            id=VERIFIER_JOB_ID,
            name="🔍 Background Verifier - Burns, Payouts & Escrows",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=60,
            replace_existing=True
        )
        logger.info(f"✅ Background verifier scheduled every {self.interval_seconds} seconds")

    @property
    def running(self) -> bool:
        return self.scheduler.running

    def start(self):
        """Start the scheduler (requires a running event loop)"""
        if self.scheduler.running:
            return
        self.setup_jobs()
        self.scheduler.start()
        job_names = [f"{job.name} ({job.id})" for job in self.scheduler.get_jobs()]
        logger.info(f"📋 Active jobs: {job_names}")

    def stop(self):
        """Stop the scheduler"""
        if not self.scheduler.running:
            return
        self.scheduler.shutdown(wait=False)
        logger.info("📴 Consolidated job scheduler stopped")


_global_scheduler = None


def get_consolidated_scheduler_instance():
    """Get the global consolidated scheduler instance"""
    global _global_scheduler
    if _global_scheduler is None:
        _global_scheduler = ConsolidatedScheduler()
    return _global_scheduler


__all__ = [
    "ConsolidatedScheduler",
    "VERIFIER_JOB_ID",
    "get_consolidated_scheduler_instance",
]
