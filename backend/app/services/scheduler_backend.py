"""
APScheduler 实现的 cron 调度器
"""
import logging
from typing import Callable, Dict, List, Optional
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from core.scheduler import CronScheduler

logger = logging.getLogger(__name__)


class APSchedulerBackend(CronScheduler):
    """基于 BackgroundScheduler，任务在 UTC 时区触发"""

    def __init__(self, scheduler: Optional[BackgroundScheduler] = None):
        self._scheduler = scheduler or BackgroundScheduler(timezone="UTC")

    def start(self) -> None:
        if not self._scheduler.running:
            self._scheduler.start()
            logger.info("Scheduler started")

    def shutdown(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")

    def schedule(self, job_id: str, func: Callable[[], object], cron_expression: str) -> None:
        trigger = CronTrigger.from_crontab(cron_expression, timezone="UTC")
        self._scheduler.add_job(func, trigger=trigger, id=job_id, replace_existing=True)
        logger.info(f"Scheduled job {job_id} ({cron_expression})")

    def unschedule(self, job_id: str) -> None:
        try:
            self._scheduler.remove_job(job_id)
        except JobLookupError:
            logger.warning(f"Job not found when removing: {job_id}")

    @staticmethod
    def _describe(job) -> Dict:
        return {
            "id": job.id,
            "name": job.name or job.id,
            "trigger": str(job.trigger),
            "next_run_time": job.next_run_time.isoformat() if job.next_run_time else None,
            "status": "active" if job.next_run_time else "paused",
        }

    def jobs(self) -> List[Dict]:
        return [self._describe(job) for job in self._scheduler.get_jobs()]

    def job(self, job_id: str) -> Optional[Dict]:
        job = self._scheduler.get_job(job_id)
        return self._describe(job) if job else None

    def run_now(self, job_id: str) -> None:
        job = self._scheduler.get_job(job_id)
        if job is None:
            raise ValueError(f"Job not found: {job_id}")
        job.func()
