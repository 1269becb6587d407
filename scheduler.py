# scheduler.py
"""
Background jobs:
  - payment reconciler: asyncio loop task, every POLL_INTERVAL_SECONDS
  - results check: APScheduler cron job, daily at RESULTS_CHECK_HOUR:MINUTE
    in DRAW_TIMEZONE
"""

import asyncio
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from loguru import logger

from config import settings, Settings
from db import rfc3339
from reconciler import PaymentReconciler
from results import ResultsService

RESULTS_JOB_ID = "daily_results_check"


class BackgroundJobs:
    def __init__(self, reconciler: PaymentReconciler, results: ResultsService, cfg: Settings = settings):
        self.reconciler = reconciler
        self.results = results
        self.cfg = cfg
        self.reconciler_task: Optional[asyncio.Task] = None
        self.scheduler = AsyncIOScheduler(timezone=cfg.DRAW_TIMEZONE)

    async def run_results_check(self) -> None:
        """Cron entry point; a failing check is logged and retried next day."""
        try:
            await self.results.check_results()
        except Exception:
            logger.exception("[scheduler] results check failed")

    def start(self) -> None:
        self.reconciler_task = asyncio.create_task(self.reconciler.run_forever())

        self.scheduler.add_job(
            self.run_results_check,
            trigger="cron",
            hour=self.cfg.RESULTS_CHECK_HOUR,
            minute=self.cfg.RESULTS_CHECK_MINUTE,
            timezone=self.cfg.DRAW_TIMEZONE,
            id=RESULTS_JOB_ID,
            name="Daily results check",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self.scheduler.start()
        for job in self.scheduler.get_jobs():
            logger.info(f"[scheduler] job {job.id} next run {getattr(job, 'next_run_time', None)}")

    async def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        if self.reconciler_task is not None:
            self.reconciler_task.cancel()
            try:
                await self.reconciler_task
            except asyncio.CancelledError:
                pass
            self.reconciler_task = None
        logger.info("[scheduler] background jobs stopped")

    def status(self) -> dict:
        job = self.scheduler.get_job(RESULTS_JOB_ID) if self.scheduler.running else None
        next_run = getattr(job, "next_run_time", None) if job else None
        return {
            "schedulerRunning": self.scheduler.running,
            "reconcilerRunning": self.reconciler.is_running,
            "nextResultsCheck": next_run.isoformat() if next_run else None,
            "lastResultsCheck": rfc3339(self.results.last_checked_at),
        }
