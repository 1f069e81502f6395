"""
core.allotment - 房型配额引擎

按 房型 × 日期 × 渠道 管理库存，纯数据结构 + 纯函数，不做任何 I/O：
- models: 聚合根 AllotmentConfig 及其值对象
- daily_records: 每日记录定位/创建与不变量校验
- reservation: 预订与释放
- rules: 分配规则引擎
- analytics / recommendations: 指标聚合、建议与优化
- change_log: 变更日志
- channel_sync: 渠道管理器同步端口
- serialization: 文档 (JSON) 转换

使用方式:
    >>> from core.allotment import reserve, StayRequest
    >>> result = reserve(config.copy(), StayRequest("direct", d1, d2, 3), now)
"""
from core.allotment.clock import Clock, Deadline, FixedClock, SystemClock, local_today, new_id
from core.allotment.errors import (
    AllotmentError,
    AllotmentValidationError,
    ClosedError,
    DeadlineExceededError,
    InsufficientInventoryError,
    InvariantViolationError,
    NotFoundError,
    StorageUnavailableError,
    VersionConflictError,
)
from core.allotment.models import (
    AllocationRule,
    AllotmentConfig,
    ChangeAction,
    Channel,
    ChannelAllotment,
    ConfigStatus,
    DailyAllotments,
    DailyRecord,
    DefaultSettings,
    Restrictions,
    RuleType,
)
from core.allotment.daily_records import ChannelPatch, get_or_seed, upsert_channel
from core.allotment.reservation import StayRequest, release, reserve
from core.allotment.rules import allocators, apply_rule

__all__ = [
    "Clock", "Deadline", "FixedClock", "SystemClock", "local_today", "new_id",
    "AllotmentError", "AllotmentValidationError", "ClosedError", "DeadlineExceededError",
    "InsufficientInventoryError", "InvariantViolationError", "NotFoundError",
    "StorageUnavailableError", "VersionConflictError",
    "AllocationRule", "AllotmentConfig", "ChangeAction", "Channel", "ChannelAllotment",
    "ConfigStatus", "DailyAllotments", "DailyRecord", "DefaultSettings", "Restrictions", "RuleType",
    "ChannelPatch", "get_or_seed", "upsert_channel",
    "StayRequest", "release", "reserve",
    "allocators", "apply_rule",
]
