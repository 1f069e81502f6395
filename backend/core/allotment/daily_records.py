"""
core/allotment/daily_records.py

每日记录管理 - 定位或创建某日记录，并在每次变更后重建派生字段、校验不变量

不变量（每次成功变更后必须成立）:
- 每个渠道: allocated/sold/blocked >= 0, available = allocated - sold - blocked
- available >= -overbooking_limit（仅允许超售时），否则 available >= 0
- sum(allocated) <= total_inventory + 超售容忍量
- free_stock = total_inventory - sum(allocated)
- total_sold = sum(sold)
- occupancy_rate = total_sold / total_inventory * 100（库存为 0 时为 0）
"""
from dataclasses import asdict, dataclass, fields
from datetime import date, datetime
from typing import Any, Dict, List, Optional
import copy
import logging

from core.allotment.errors import AllotmentValidationError, ClosedError, InvariantViolationError
from core.allotment.models import (
    AllotmentConfig, ChannelAllotment, DailyRecord, DefaultSettings, Restrictions,
)

logger = logging.getLogger(__name__)


@dataclass
class ChannelPatch:
    """渠道配额的部分更新，None 表示不修改"""
    allocated: Optional[int] = None
    sold: Optional[int] = None
    blocked: Optional[int] = None
    rate: Optional[float] = None
    restrictions: Optional[Restrictions] = None

    def is_empty(self) -> bool:
        return all(getattr(self, f.name) is None for f in fields(self))

    def changed_fields(self) -> Dict[str, Any]:
        result = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if value is None:
                continue
            result[f.name] = asdict(value) if isinstance(value, Restrictions) else value
        return result


def ensure_active(config: AllotmentConfig, operation: str) -> None:
    """非 active 状态的配置拒绝一切变更（重新启用除外，由调用方放行）"""
    if not config.is_active():
        raise ClosedError(
            "config_inactive",
            message=f"配额配置状态为 {config.status.value}，不能执行 {operation}",
            config_id=config.config_id,
        )


def get_or_seed(config: AllotmentConfig, day: date) -> DailyRecord:
    """获取某日记录；不存在时按默认库存创建空记录并放入配置"""
    record = config.daily_allotments.get(day)
    if record is None:
        record = DailyRecord(date=day, total_inventory=config.default_settings.total_inventory)
        recompute(record)
        config.daily_allotments.put(record)
    return record


def recompute(record: DailyRecord) -> DailyRecord:
    """重建派生字段"""
    for allotment in record.channel_allotments:
        allotment.available = allotment.allocated - allotment.sold - allotment.blocked
        allotment.overbooking = max(0, -allotment.available)
    total_allocated = record.total_allocated()
    record.total_sold = sum(c.sold for c in record.channel_allotments)
    record.free_stock = record.total_inventory - total_allocated
    if record.total_inventory > 0:
        record.occupancy_rate = round(record.total_sold / record.total_inventory * 100, 2)
    else:
        record.occupancy_rate = 0.0
    return record


def snapshot(record: DailyRecord) -> Dict[str, Any]:
    """用于日志和错误诊断的记录快照"""
    return {
        "date": record.date.isoformat(),
        "total_inventory": record.total_inventory,
        "free_stock": record.free_stock,
        "total_sold": record.total_sold,
        "channels": [
            {
                "channel_id": c.channel_id,
                "allocated": c.allocated,
                "sold": c.sold,
                "blocked": c.blocked,
                "available": c.available,
            }
            for c in record.channel_allotments
        ],
    }


def _violation(record: DailyRecord, invariant: str, message: str) -> InvariantViolationError:
    state = snapshot(record)
    logger.error(f"Invariant {invariant} violated on {record.date}: {message} state={state}")
    return InvariantViolationError(invariant, message, day=record.date, snapshot=state)


def validate(record: DailyRecord, settings: DefaultSettings) -> None:
    """校验不变量，违反时抛出 InvariantViolationError 并指明不变量名"""
    tolerance = settings.overbooking_tolerance()

    if record.total_inventory < 0:
        raise _violation(record, "total_inventory_non_negative", "总库存不能为负")

    seen = set()
    for c in record.channel_allotments:
        if c.channel_id in seen:
            raise _violation(record, "channel_unique", f"渠道 {c.channel_id} 重复")
        seen.add(c.channel_id)
        if c.allocated < 0:
            raise _violation(record, "allocated_non_negative", f"渠道 {c.channel_id} 分配数为负")
        if c.sold < 0:
            raise _violation(record, "sold_non_negative", f"渠道 {c.channel_id} 已售数为负")
        if c.blocked < 0:
            raise _violation(record, "blocked_non_negative", f"渠道 {c.channel_id} 锁定数为负")
        if c.available != c.allocated - c.sold - c.blocked:
            raise _violation(record, "available_derived", f"渠道 {c.channel_id} 可售数与派生值不一致")
        if c.available < -tolerance:
            raise _violation(
                record, "available_within_overbooking",
                f"渠道 {c.channel_id} 可售数 {c.available} 超出超售上限 {tolerance}",
            )

    total_allocated = record.total_allocated()
    if total_allocated > record.total_inventory + tolerance:
        raise _violation(
            record, "allocation_within_inventory",
            f"分配总数 {total_allocated} 超过库存 {record.total_inventory} (+{tolerance})",
        )
    if record.free_stock != record.total_inventory - total_allocated:
        raise _violation(record, "free_stock_derived", "空闲库存与派生值不一致")
    if record.total_sold != sum(c.sold for c in record.channel_allotments):
        raise _violation(record, "total_sold_derived", "总售出与派生值不一致")


def upsert_channel(config: AllotmentConfig, day: date, channel_id: str,
                   patch: ChannelPatch, now: datetime) -> DailyRecord:
    """
    对某日某渠道应用部分更新（不存在则创建），随后重建派生字段并校验

    校验失败时配置保持不变。

    Raises:
        AllotmentValidationError: 补丁为空
        ClosedError: 封房日增加已售
        InvariantViolationError: 变更破坏不变量
    """
    if patch.is_empty():
        raise AllotmentValidationError(
            "至少需要一个更新字段",
            errors=[{"field": "allocated|sold|blocked|rate|restrictions", "message": "empty patch"}],
        )

    current = get_or_seed(config, day)
    record = copy.deepcopy(current)

    allotment = record.channel(channel_id)
    if allotment is None:
        allotment = ChannelAllotment(channel_id=channel_id)
        record.channel_allotments.append(allotment)

    if record.is_blackout and patch.sold is not None and patch.sold > allotment.sold:
        raise ClosedError("blackout", day, message=f"{day.isoformat()} 为封房日，不能增加已售")

    if patch.allocated is not None:
        allotment.allocated = patch.allocated
    if patch.sold is not None:
        allotment.sold = patch.sold
    if patch.blocked is not None:
        allotment.blocked = patch.blocked
    if patch.rate is not None:
        allotment.rate = patch.rate
    if patch.restrictions is not None:
        allotment.restrictions = copy.deepcopy(patch.restrictions)
    allotment.last_updated = now

    recompute(record)
    validate(record, config.default_settings)
    config.daily_allotments.put(record)
    return record


def enforce_total_cap(record: DailyRecord, settings: DefaultSettings) -> Optional[str]:
    """
    分配总数超过库存且不允许超售时，按比例向下取整缩减各渠道分配

    Returns:
        发生缩减时返回警告文本，否则 None
    """
    total_allocated = record.total_allocated()
    if settings.overbooking_allowed or total_allocated <= record.total_inventory:
        return None

    ratio = record.total_inventory / total_allocated
    for allotment in record.channel_allotments:
        allotment.allocated = int(allotment.allocated * ratio)
    recompute(record)
    warning = (
        f"{record.date.isoformat()} 分配总数 {total_allocated} 超过库存 "
        f"{record.total_inventory}，已按比例缩减"
    )
    logger.warning(warning)
    return warning


def effective_restrictions(config: AllotmentConfig, day: date, channel_id: str) -> Restrictions:
    """当日限制快照优先，否则沿用渠道限制"""
    record = config.daily_allotments.get(day)
    if record is not None:
        allotment = record.channel(channel_id)
        if allotment is not None and allotment.restrictions is not None:
            return allotment.restrictions
    channel = config.get_channel(channel_id)
    return channel.restrictions if channel else Restrictions()


def clip(config: AllotmentConfig, start: Optional[date], end: Optional[date]) -> List[DailyRecord]:
    """按闭区间裁剪每日记录（升序）"""
    records = list(config.daily_allotments)
    if start is not None:
        records = [r for r in records if r.date >= start]
    if end is not None:
        records = [r for r in records if r.date <= end]
    return records
