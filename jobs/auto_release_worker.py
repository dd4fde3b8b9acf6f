"""Background worker that polls the durable release queue and fires due auto-releases"""

import asyncio
import logging
from datetime import datetime
from typing import List, Optional
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore

from config import Config
from services.escrow_query_service import EscrowQueryService
from services.release_scheduler import FiredJob, ReleaseScheduler

logger = logging.getLogger(__name__)


class AutoReleaseWorker:
    """
    APScheduler wrapper around ReleaseScheduler.

    The deadlines themselves live in the release_jobs table, so the in-memory job
    store only holds the polling jobs; nothing is lost when the process restarts.
    """

    def __init__(self, poll_seconds: Optional[int] = None, batch_size: Optional[int] = None):
        self.poll_seconds = poll_seconds or Config.AUTO_RELEASE_POLL_SECONDS
        self.batch_size = batch_size or Config.AUTO_RELEASE_BATCH_SIZE

        job_defaults = {
            'coalesce': True,  # Collapse missed polls into one run
            'max_instances': 1,
            'misfire_grace_time': 120
        }
        self.scheduler = AsyncIOScheduler(
            jobstores={'default': MemoryJobStore()},
            executors={'default': AsyncIOExecutor()},
            job_defaults=job_defaults,
            timezone='UTC'
        )

    def setup_jobs(self):
        self.scheduler.add_job(
            self.process_auto_release,
            trigger=IntervalTrigger(seconds=self.poll_seconds),
            id="process_auto_release",
            name="Process Auto-Release Queue",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self.scheduler.add_job(
            self.report_failed_escrows,
            trigger=IntervalTrigger(hours=1),
            id="report_failed_escrows",
            name="Report Failed Escrows",
            max_instances=1,
            replace_existing=True,
        )

    async def reconcile_on_startup(self, now: Optional[datetime] = None) -> List[FiredJob]:
        """Re-arm missing jobs and fire anything that fell due while the process was down"""
        fired = await asyncio.to_thread(ReleaseScheduler.reconcile, now)
        logger.info(f"🔁 AUTO_RELEASE_RECONCILED: {len(fired)} overdue job(s) fired on startup")
        return fired

    async def process_auto_release(self, now: Optional[datetime] = None) -> List[FiredJob]:
        """Fire due release jobs; database work runs in a worker thread"""
        try:
            return await asyncio.to_thread(ReleaseScheduler.fire_due, now, self.batch_size)
        except Exception as e:
            logger.error(f"❌ Error in process_auto_release: {e}", exc_info=True)
            return []

    async def report_failed_escrows(self) -> int:
        """Failed escrows need manual admin action; keep them visible in the logs"""
        failed = await asyncio.to_thread(EscrowQueryService.failed_escrows)
        if failed:
            logger.warning(
                f"⚠️ FAILED_ESCROWS: {len(failed)} escrow(s) awaiting admin action: "
                f"{[escrow.order_id for escrow in failed[:10]]}"
            )
        return len(failed)

    def start(self):
        """Start the scheduler (must be called from a running event loop)"""
        self.setup_jobs()
        self.scheduler.start()
        jobs = self.scheduler.get_jobs()
        logger.info(f"✅ Auto-release worker started, polling every {self.poll_seconds}s")
        logger.info(f"📋 Registered jobs: {[job.id for job in jobs]}")

    def stop(self):
        """Stop the scheduler"""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("Auto-release worker stopped")
