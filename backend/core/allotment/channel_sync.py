"""
core/allotment/channel_sync.py

渠道管理器同步端口 - 引擎只依赖该接口，不直接调用任何具体渠道商

出站: push_allocation / push_rate / push_restrictions
入站: apply_external_updates（webhook），绕过规则引擎但仍校验不变量
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Dict, List, Optional
import logging

from core.allotment.daily_records import ChannelPatch, effective_restrictions, upsert_channel
from core.allotment.errors import AllotmentValidationError
from core.allotment.models import AllotmentConfig, Restrictions

logger = logging.getLogger(__name__)

SYNC_KINDS = ("allocation", "rate", "restrictions")


class ChannelSyncError(Exception):
    """推送失败（可重试）"""


class ChannelSyncPort(ABC):
    """渠道管理器出站接口"""

    @abstractmethod
    def push_allocation(self, config: AllotmentConfig, start: date, end: date) -> None:
        """推送分配与可售数"""

    @abstractmethod
    def push_rate(self, config: AllotmentConfig, start: date, end: date) -> None:
        """推送价格快照"""

    @abstractmethod
    def push_restrictions(self, config: AllotmentConfig, start: date, end: date) -> None:
        """推送限制条件"""

    def push(self, kind: str, config: AllotmentConfig, start: date, end: date) -> None:
        if kind == "allocation":
            self.push_allocation(config, start, end)
        elif kind == "rate":
            self.push_rate(config, start, end)
        elif kind == "restrictions":
            self.push_restrictions(config, start, end)
        else:
            raise ValueError(f"未知同步类型: {kind}")


def allocation_payload(config: AllotmentConfig, start: date, end: date) -> List[Dict[str, Any]]:
    return [
        {
            "date": record.date.isoformat(),
            "channel_id": a.channel_id,
            "allocated": a.allocated,
            "available": a.available,
        }
        for record in config.daily_allotments.between(start, end)
        for a in record.channel_allotments
    ]


def rate_payload(config: AllotmentConfig, start: date, end: date) -> List[Dict[str, Any]]:
    return [
        {"date": record.date.isoformat(), "channel_id": a.channel_id, "rate": a.rate}
        for record in config.daily_allotments.between(start, end)
        for a in record.channel_allotments
    ]


def restrictions_payload(config: AllotmentConfig, start: date, end: date) -> List[Dict[str, Any]]:
    rows = []
    for record in config.daily_allotments.between(start, end):
        for a in record.channel_allotments:
            r = effective_restrictions(config, record.date, a.channel_id)
            rows.append({
                "date": record.date.isoformat(),
                "channel_id": a.channel_id,
                "minimum_stay": r.minimum_stay,
                "maximum_stay": r.maximum_stay,
                "closed_to_arrival": r.closed_to_arrival,
                "closed_to_departure": r.closed_to_departure,
                "stop_sell": r.stop_sell or record.is_blackout,
            })
    return rows


class LoggingChannelSyncPort(ChannelSyncPort):
    """未接入渠道管理器时的默认实现：只记录推送内容"""

    def push_allocation(self, config: AllotmentConfig, start: date, end: date) -> None:
        rows = allocation_payload(config, start, end)
        logger.info(f"Push allocation config={config.config_id} {start}..{end} rows={len(rows)}")

    def push_rate(self, config: AllotmentConfig, start: date, end: date) -> None:
        rows = rate_payload(config, start, end)
        logger.info(f"Push rate config={config.config_id} {start}..{end} rows={len(rows)}")

    def push_restrictions(self, config: AllotmentConfig, start: date, end: date) -> None:
        rows = restrictions_payload(config, start, end)
        logger.info(f"Push restrictions config={config.config_id} {start}..{end} rows={len(rows)}")


def backoff_delay(attempt: int, base: float, cap: float) -> float:
    """第 attempt 次失败后的等待秒数: min(base * 2^(attempt-1), cap)"""
    return min(base * (2 ** max(attempt - 1, 0)), cap)


@dataclass
class ExternalUpdate:
    """渠道管理器回传的单日单渠道变更"""
    date: date
    channel_id: str
    allocated: Optional[int] = None
    sold: Optional[int] = None
    blocked: Optional[int] = None
    rate: Optional[float] = None
    restrictions: Optional[Restrictions] = None

    def patch(self) -> ChannelPatch:
        return ChannelPatch(
            allocated=self.allocated,
            sold=self.sold,
            blocked=self.blocked,
            rate=self.rate,
            restrictions=self.restrictions,
        )


def apply_external_updates(config: AllotmentConfig, updates: List[ExternalUpdate], now: datetime) -> int:
    """
    按日期升序应用外部更新

    任意一条失败时抛出异常，调用方丢弃整个副本。

    Returns:
        处理的条数
    """
    if not updates:
        raise AllotmentValidationError("更新列表不能为空", errors=[{"field": "updates", "message": "empty"}])
    known = {c.channel_id for c in config.channels}
    errors = [
        {"field": f"updates[{i}].channel_id", "message": f"未配置的渠道: {u.channel_id}"}
        for i, u in enumerate(updates) if u.channel_id not in known
    ]
    if errors:
        raise AllotmentValidationError("外部更新包含未知渠道", errors=errors)

    for update in sorted(updates, key=lambda u: (u.date, u.channel_id)):
        upsert_channel(config, update.date, update.channel_id, update.patch(), now)
    return len(updates)
