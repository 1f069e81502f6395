"""
渠道同步补推任务
按 SYNC_RETRY_CRON 运行，补推退避时间已到的失败推送
"""
import logging
from typing import Any, Callable, Dict, List, Optional
from sqlalchemy.orm import Session
from app.config import settings
from app.database import SessionLocal
from app.services.channel_sync_service import ChannelSyncService
from app.services.runtime import get_clock, get_sync_port
from core.scheduler import CronScheduler

logger = logging.getLogger(__name__)

SYNC_RETRY_JOB_ID = "channel_sync_retry"


def run_sync_retry(session_factory: Callable[[], Session] = SessionLocal) -> List[Dict[str, Any]]:
    """执行一次补推"""
    db = session_factory()
    try:
        retried = ChannelSyncService(db, get_sync_port(), get_clock()).retry_pending()
        if retried:
            logger.info(f"Channel sync retry pushed {len(retried)} pending updates")
        return retried
    finally:
        db.close()


def register_sync_retry(scheduler: CronScheduler, cron: Optional[str] = None) -> None:
    """注册补推任务"""
    scheduler.schedule(SYNC_RETRY_JOB_ID, run_sync_retry, cron or settings.SYNC_RETRY_CRON)
