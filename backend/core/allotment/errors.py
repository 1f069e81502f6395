"""
core/allotment/errors.py

配额引擎错误类型 - 每个错误携带稳定的 kind 字符串和诊断详情
"""
from datetime import date
from typing import Any, Dict, List, Optional


class AllotmentError(Exception):
    """
    配额引擎错误基类

    Attributes:
        kind: 错误类别（validation / not_found / ...）
        message: 错误描述
        details: 诊断详情
    """

    kind = "error"

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        """转换为字典"""
        payload: Dict[str, Any] = {"kind": self.kind, "detail": self.message}
        for key, value in self.details.items():
            payload[key] = value.isoformat() if isinstance(value, date) else value
        return payload


class AllotmentValidationError(AllotmentError):
    """输入不合法，errors 为字段级诊断 [{"field": ..., "message": ...}]"""

    kind = "validation"

    def __init__(self, message: str, errors: Optional[List[Dict[str, str]]] = None, **details: Any):
        super().__init__(message, errors=errors or [], **details)

    @property
    def errors(self) -> List[Dict[str, str]]:
        return self.details["errors"]


class NotFoundError(AllotmentError):
    kind = "not_found"


class VersionConflictError(AllotmentError):
    kind = "version_conflict"


class ActiveConfigExistsError(AllotmentError):
    """同一酒店同一房型已存在 active 配置"""

    kind = "conflict"


class InsufficientInventoryError(AllotmentError):
    """指定日期可售房量不足"""

    kind = "insufficient_inventory"

    def __init__(self, day: date, channel_id: str, available: int, requested: int):
        super().__init__(
            f"{day.isoformat()} 渠道 {channel_id} 库存不足: 可售 {available}, 请求 {requested}",
            date=day,
            channel_id=channel_id,
            available=available,
            requested=requested,
            gap=requested - available,
        )
        self.day = day


class ClosedError(AllotmentError):
    """限制条件（停售/禁止入住/禁止离店/最短最长入住/封房）禁止该操作"""

    kind = "closed"

    def __init__(self, restriction: str, day: Optional[date] = None, message: Optional[str] = None, **details: Any):
        text = message or f"受限制 {restriction} 禁止操作" + (f" ({day.isoformat()})" if day else "")
        super().__init__(text, restriction=restriction, date=day, **details)
        self.restriction = restriction
        self.day = day


class InvariantViolationError(AllotmentError):
    """变更会破坏每日记录不变量"""

    kind = "invariant_violation"

    def __init__(self, invariant: str, message: str, day: Optional[date] = None,
                 snapshot: Optional[Dict[str, Any]] = None):
        super().__init__(message, invariant=invariant, date=day, snapshot=snapshot or {})
        self.invariant = invariant
        self.day = day


class StorageUnavailableError(AllotmentError):
    kind = "storage_unavailable"


class DeadlineExceededError(AllotmentError):
    kind = "timeout"


__all__ = [
    "AllotmentError",
    "AllotmentValidationError",
    "NotFoundError",
    "VersionConflictError",
    "ActiveConfigExistsError",
    "InsufficientInventoryError",
    "ClosedError",
    "InvariantViolationError",
    "StorageUnavailableError",
    "DeadlineExceededError",
]
