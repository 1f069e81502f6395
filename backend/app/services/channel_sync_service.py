"""
渠道同步服务
每次推送对每类数据只尝试一次，失败时标记 needs_sync 并立即返回；
失败的 (类型, 区间) 由重试任务按指数退避（上限 10 分钟）补推，
达到最大次数后保持 needs_sync，等待人工强制同步
同步状态不属于版本化文档，不增加版本号
"""
import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple
from sqlalchemy.orm import Session
from app.config import settings
from app.models.allotment import ChannelSyncAttempt
from app.models.schemas import WebhookRequest
from app.security.auth import Caller, ensure_hotel_access
from app.services.inventory_store import InventoryStore, from_db_time
from app.services.mutation import MutationRunner
from core.allotment.change_log import make_entry
from core.allotment.channel_sync import (
    SYNC_KINDS, ChannelSyncPort, ExternalUpdate, apply_external_updates, backoff_delay,
)
from core.allotment.clock import Clock
from core.allotment.models import AllotmentConfig, ChangeAction, Restrictions

logger = logging.getLogger(__name__)


@dataclass
class PendingPush:
    """最近一次推送失败、尚未被后续成功推送覆盖的 (类型, 区间)"""
    kind: str
    start: date
    end: date
    attempts: int
    last_attempt_at: datetime

    @property
    def exhausted(self) -> bool:
        return self.attempts >= settings.SYNC_MAX_ATTEMPTS

    def due_at(self) -> datetime:
        return self.last_attempt_at + timedelta(seconds=backoff_delay(
            self.attempts, settings.SYNC_BACKOFF_BASE_SECONDS, settings.SYNC_BACKOFF_CAP_SECONDS
        ))


def pending_pushes(attempts: Sequence[ChannelSyncAttempt]) -> List[PendingPush]:
    """
    由推送记录（按 id 升序）推算待补推项

    同一 (类型, 区间) 以最后一条记录为准；失败项若之后有同类型、
    区间覆盖它的成功推送，则视为已同步
    """
    latest: Dict[Tuple[str, date, date], Tuple[int, ChannelSyncAttempt]] = {}
    for index, row in enumerate(attempts):
        latest[(row.kind, row.start_date, row.end_date)] = (index, row)

    pending = []
    for (kind, start, end), (index, row) in latest.items():
        if row.success:
            continue
        covered = any(
            later.success and later.kind == kind and later.start_date <= start and later.end_date >= end
            for later in attempts[index + 1:]
        )
        if not covered:
            pending.append(PendingPush(kind, start, end, row.attempt, from_db_time(row.created_at)))
    return sorted(pending, key=lambda p: (p.start, p.kind))


class ChannelSyncService:
    """渠道同步服务"""

    def __init__(self, db: Session, port: ChannelSyncPort, clock: Clock,
                 sleep: Optional[Callable[[float], None]] = None):
        self.db = db
        self.store = InventoryStore(db)
        self.port = port
        self.clock = clock
        self.sleep = sleep

    def _push_kind(self, kind: str, config: AllotmentConfig, start: date, end: date,
                   attempt: int = 1) -> Dict[str, Any]:
        try:
            self.port.push(kind, config, start, end)
        except Exception as e:
            error = f"{e.__class__.__name__}: {e}"
            self.store.record_sync_attempt(
                config.config_id, kind, attempt, False, error, start, end, self.clock.now_utc()
            )
            logger.warning(f"Sync {kind} failed for config {config.config_id} (attempt {attempt}): {error}")
            return {"kind": kind, "success": False, "attempts": attempt, "error": error}

        self.store.record_sync_attempt(
            config.config_id, kind, attempt, True, None, start, end, self.clock.now_utc()
        )
        return {"kind": kind, "success": True, "attempts": attempt, "error": None}

    def _refresh_flag(self, config_id: str, synced: bool) -> List[PendingPush]:
        pending = pending_pushes(self.store.sync_attempts(config_id))
        self.store.set_sync_state(
            config_id, needs_sync=bool(pending), last_sync=self.clock.now_utc() if synced else None,
        )
        return pending

    def push(self, config: AllotmentConfig, start: date, end: date,
             kinds: Sequence[str] = SYNC_KINDS) -> Dict[str, Any]:
        """推送指定区间；全部成功时记录 last_sync，仍有待补推项时保持 needs_sync"""
        results = [self._push_kind(kind, config, start, end) for kind in kinds]
        success = all(r["success"] for r in results)
        pending = self._refresh_flag(config.config_id, synced=success)

        if success:
            logger.info(f"Synced config {config.config_id} {start}..{end} kinds={list(kinds)}")
        if pending:
            logger.warning(f"Config {config.config_id} flagged needs_sync ({len(pending)} pending pushes)")

        return {
            "config_id": config.config_id,
            "start_date": start.isoformat(),
            "end_date": end.isoformat(),
            "success": success,
            "results": results,
            "needs_sync": bool(pending),
        }

    def retry_pending(self) -> List[Dict[str, Any]]:
        """补推到期的失败项（定时任务调用）"""
        now = self.clock.now_utc()
        retried = []
        for row in self.store.list_needs_sync():
            pending = pending_pushes(self.store.sync_attempts(row.id))
            due = [p for p in pending if not p.exhausted and p.due_at() <= now]
            if not due:
                if not pending:
                    self.store.set_sync_state(row.id, needs_sync=False)
                continue

            config = self.store.load_by_id(row.id)
            results = [self._push_kind(p.kind, config, p.start, p.end, attempt=p.attempts + 1) for p in due]
            remaining = self._refresh_flag(row.id, synced=all(r["success"] for r in results))
            if any(p.exhausted for p in remaining):
                logger.warning(f"Config {row.id} exhausted sync retries, waiting for forced sync")
            retried.extend({"config_id": row.id, **r} for r in results)
        return retried

    def auto_sync(self, config: AllotmentConfig, start: date, end: date) -> Optional[Dict[str, Any]]:
        """变更提交后按集成配置自动推送"""
        integration = config.integration
        if not (integration.auto_sync and integration.is_connected):
            return None
        return self.push(config, start, end)

    def list_needs_sync(self, hotel_id: str) -> List[Dict[str, Any]]:
        return [
            {
                "config_id": row.id,
                "room_type_id": row.room_type_id,
                "name": row.name,
                "version": row.version,
                "last_sync": from_db_time(row.last_sync).isoformat() if row.last_sync else None,
            }
            for row in self.store.list_needs_sync(hotel_id)
        ]

    def apply_webhook(self, data: WebhookRequest, caller: Caller) -> Dict[str, Any]:
        """渠道管理器回传的库存变更，绕过规则引擎但仍校验不变量"""
        ensure_hotel_access(caller, data.hotel_id)
        updates = [
            ExternalUpdate(
                date=u.date,
                channel_id=u.channel_id.value,
                allocated=u.allocated,
                sold=u.sold,
                blocked=u.blocked,
                rate=u.rate,
                restrictions=Restrictions(**u.restrictions.model_dump()) if u.restrictions else None,
            )
            for u in data.updates
        ]
        runner = MutationRunner(self.store, self.clock, sleep=self.sleep)

        def mutate(config: AllotmentConfig):
            now = self.clock.now_utc()
            processed = apply_external_updates(config, updates, now)
            dates = sorted({u.date for u in updates})
            changes = {
                "source": "channel_manager",
                "updates": processed,
                "start_date": dates[0].isoformat(),
                "end_date": dates[-1].isoformat(),
            }
            return processed, make_entry(now, ChangeAction.SYNCED, caller.user_id, changes,
                                         reason="渠道管理器回传")

        result = runner.run(lambda: self.store.load(data.hotel_id, data.room_type_id), mutate,
                            caller.user_id, operation="channel_webhook")
        logger.info(f"Applied {result.value} external updates to config {result.config.config_id}")
        return {"config_id": result.config.config_id, "version": result.config.version, "processed": result.value}
