"""
APScheduler for the report refresh tick
"""
import logging
from typing import Any, Dict, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from core.pipeline import SKIPPED, ReportPipeline, RunResult

logger = logging.getLogger(__name__)

REFRESH_JOB_ID = "refresh_reports"


class SchedulerService:
    """Scheduler service wrapper"""

    def __init__(self, pipeline: ReportPipeline):
        self.scheduler = AsyncIOScheduler()
        self.pipeline = pipeline
        self.last_result: Optional[RunResult] = None
        self.last_success: Optional[RunResult] = None

    def _register_refresh_jobs(self):
        """Register the every-minute refresh tick; the schedule gate decides if it runs."""
        self.scheduler.add_job(
            self._refresh_reports,
            CronTrigger(minute="*", timezone="UTC"),
            id=REFRESH_JOB_ID,
            name="Refresh hash reports (gated by local schedule)",
            max_instances=1,
            coalesce=True,
        )

    async def _refresh_reports(self):
        await self.run_refresh()

    async def run_refresh(self, force: bool = False) -> RunResult:
        """Run the pipeline once and remember the outcome."""
        result = await self.pipeline.run(force=force)
        if result.status != SKIPPED:
            self.last_result = result
            if result.ok:
                self.last_success = result
        return result

    def _validate_registered_jobs(self):
        """Validate that critical recurring scheduler jobs are present."""
        registered_ids = {job.id for job in self.scheduler.get_jobs()}
        required_ids = {REFRESH_JOB_ID}

        missing_ids = sorted(required_ids - registered_ids)
        if missing_ids:
            logger.error("Scheduler missing critical jobs: %s", ", ".join(missing_ids))
            raise RuntimeError(f"Scheduler missing critical jobs: {', '.join(missing_ids)}")

    def start(self):
        """Start scheduler"""
        if self.scheduler.running:
            logger.info("Scheduler already running")
            return

        existing_jobs = self.scheduler.get_jobs()
        if existing_jobs:
            logger.warning(
                "Clearing %s existing scheduler jobs before registration",
                len(existing_jobs),
            )
            self.scheduler.remove_all_jobs()

        self._register_refresh_jobs()
        self._validate_registered_jobs()

        self.scheduler.start()
        logger.info("Scheduler started with %s jobs", len(self.scheduler.get_jobs()))

    def shutdown(self):
        """Shutdown scheduler"""
        if not self.scheduler.running:
            logger.info("Scheduler already stopped")
            return

        try:
            self.scheduler.shutdown()
            logger.info("Scheduler stopped")
        except Exception as e:
            logger.exception("Scheduler shutdown failed: %s", e)

    def status(self) -> Dict[str, Any]:
        jobs = []
        for job in self.scheduler.get_jobs():
            next_run = getattr(job, "next_run_time", None)
            jobs.append({
                "id": job.id,
                "next_run_time": next_run.isoformat() if next_run else None,
            })
        return {
            "running": bool(self.scheduler.running),
            "jobs": jobs,
            "last_result": self.last_result.to_dict() if self.last_result else None,
            "last_success": self.last_success.to_dict() if self.last_success else None,
        }
