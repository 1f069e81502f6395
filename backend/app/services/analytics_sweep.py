"""
分析定时任务
按 ANALYTICS_SWEEP_CRON 运行，对 next_calculation 到期的配置执行一次分析
"""
import logging
from typing import Callable, List, Optional
from sqlalchemy.orm import Session
from app.config import settings
from app.database import SessionLocal
from app.services.analytics_service import AnalyticsService
from app.services.runtime import get_clock
from core.scheduler import CronScheduler

logger = logging.getLogger(__name__)

SWEEP_JOB_ID = "allotment_analytics_sweep"


def run_analytics_sweep(session_factory: Callable[[], Session] = SessionLocal) -> List[str]:
    """执行一次分析扫描"""
    db = session_factory()
    try:
        return AnalyticsService(db, get_clock()).sweep()
    finally:
        db.close()


def register_analytics_sweep(scheduler: CronScheduler, cron: Optional[str] = None) -> None:
    """注册分析扫描任务"""
    scheduler.schedule(SWEEP_JOB_ID, run_analytics_sweep, cron or settings.ANALYTICS_SWEEP_CRON)
