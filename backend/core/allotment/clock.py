"""
core/allotment/clock.py

时钟与截止时间 - 引擎内部不直接调用 datetime.now()
"""
from datetime import date, datetime, time, timedelta, timezone
from typing import Iterator, Protocol
from zoneinfo import ZoneInfo
import uuid

from core.allotment.errors import DeadlineExceededError


class Clock(Protocol):
    """可注入的时间源"""

    def now_utc(self) -> datetime:
        ...


class SystemClock:
    """生产时钟"""

    def now_utc(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock:
    """
    测试时钟 - 返回固定时间，可手动推进

    Example:
        >>> clock = FixedClock(datetime(2023, 6, 1, tzinfo=timezone.utc))
        >>> clock.advance(hours=1)
    """

    def __init__(self, fixed: datetime):
        if fixed.tzinfo is None:
            raise ValueError("FixedClock 需要带时区的时间")
        self._now = fixed

    def now_utc(self) -> datetime:
        return self._now

    def advance(self, **delta) -> None:
        self._now = self._now + timedelta(**delta)


def local_today(clock: Clock, tz_name: str) -> date:
    """酒店所在时区的今天"""
    return clock.now_utc().astimezone(ZoneInfo(tz_name)).date()


def next_local_midnight(clock: Clock, tz_name: str) -> datetime:
    """酒店所在时区下一个零点（UTC 表示）"""
    tz = ZoneInfo(tz_name)
    tomorrow = local_today(clock, tz_name) + timedelta(days=1)
    return datetime.combine(tomorrow, time.min, tzinfo=tz).astimezone(timezone.utc)


def iter_dates(start: date, end: date, inclusive: bool = True) -> Iterator[date]:
    """按升序遍历日期区间"""
    current = start
    while current < end or (inclusive and current == end):
        yield current
        current += timedelta(days=1)


def new_id() -> str:
    """生成不透明的稳定标识"""
    return uuid.uuid4().hex


class Deadline:
    """
    操作截止时间

    Args:
        clock: 时间源
        seconds: 允许的最长耗时
    """

    def __init__(self, clock: Clock, seconds: float):
        self._clock = clock
        self.expires_at = clock.now_utc() + timedelta(seconds=seconds)

    def remaining(self) -> float:
        return (self.expires_at - self._clock.now_utc()).total_seconds()

    def check(self, operation: str = "") -> None:
        if self.remaining() <= 0:
            raise DeadlineExceededError(
                f"操作超时: {operation}" if operation else "操作超时",
                operation=operation,
            )
