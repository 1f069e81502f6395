"""
core/allotment/reservation.py

预订引擎 - 在 [check_in, check_out) 的连续每日记录上预留 / 释放房间

所有日期按升序处理；任意一天失败时不写入任何变更（先在副本上试算，
全部成功后才替换配置中的每日记录）。
"""
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, List, Optional
import copy
import logging

from core.allotment.clock import Deadline, iter_dates
from core.allotment.daily_records import effective_restrictions, ensure_active, recompute, validate
from core.allotment.errors import (
    AllotmentValidationError, ClosedError, InsufficientInventoryError, InvariantViolationError,
)
from core.allotment.models import AllotmentConfig, ChannelAllotment, DailyRecord

logger = logging.getLogger(__name__)


@dataclass
class StayRequest:
    """
    预订/释放请求

    Attributes:
        channel_id: 销售渠道
        check_in: 入住日期（含）
        check_out: 离店日期（不含）
        rooms: 房间数
        booked_on: 下单日期，提供时校验渠道提前预订窗口
    """
    channel_id: str
    check_in: date
    check_out: date
    rooms: int
    booked_on: Optional[date] = None

    @property
    def nights(self) -> int:
        return (self.check_out - self.check_in).days

    def dates(self) -> List[date]:
        return list(iter_dates(self.check_in, self.check_out, inclusive=False))

    def validate(self) -> None:
        errors = []
        if self.rooms < 1:
            errors.append({"field": "rooms", "message": "房间数必须大于 0"})
        if self.check_out <= self.check_in:
            errors.append({"field": "check_out", "message": "离店日期必须晚于入住日期"})
        if errors:
            raise AllotmentValidationError("预订参数不合法", errors=errors)


@dataclass
class DayAllocation:
    """单日处理结果"""
    date: date
    channel_id: str
    rooms: int
    sold: int
    available: int
    overbooking: int
    from_overbooking: int = 0


@dataclass
class ReservationResult:
    request: StayRequest
    allocations: List[DayAllocation] = field(default_factory=list)

    def changes(self) -> Dict[str, Any]:
        """变更日志中记录的字段"""
        return {
            "channel_id": self.request.channel_id,
            "check_in": self.request.check_in.isoformat(),
            "check_out": self.request.check_out.isoformat(),
            "rooms": self.request.rooms,
            "dates": [a.date.isoformat() for a in self.allocations],
        }


def _working_record(config: AllotmentConfig, day: date) -> DailyRecord:
    record = config.daily_allotments.get(day)
    if record is None:
        record = DailyRecord(date=day, total_inventory=config.default_settings.total_inventory)
        return recompute(record)
    return copy.deepcopy(record)


def check_restrictions(config: AllotmentConfig, request: StayRequest) -> None:
    """
    预订前的限制检查

    Raises:
        ClosedError: 配置未启用、渠道未启用、入住天数、提前预订窗口、
            禁止入住/离店、停售或封房
    """
    ensure_active(config, "预订")

    channel = config.get_channel(request.channel_id)
    if channel is None:
        raise AllotmentValidationError(
            f"渠道不存在: {request.channel_id}",
            errors=[{"field": "channel_id", "message": "unknown channel"}],
        )
    if not channel.is_active:
        raise ClosedError("channel_inactive", message=f"渠道 {request.channel_id} 未启用")

    arrival = effective_restrictions(config, request.check_in, request.channel_id)
    if request.nights < arrival.minimum_stay:
        raise ClosedError(
            "minimum_stay", request.check_in,
            message=f"入住 {request.nights} 晚少于最短入住 {arrival.minimum_stay} 晚",
            nights=request.nights,
        )
    if request.nights > arrival.maximum_stay:
        raise ClosedError(
            "maximum_stay", request.check_in,
            message=f"入住 {request.nights} 晚超过最长入住 {arrival.maximum_stay} 晚",
            nights=request.nights,
        )

    if request.booked_on is not None:
        lead_days = (request.check_in - request.booked_on).days
        if lead_days < channel.min_advance_booking or lead_days > channel.max_advance_booking:
            raise ClosedError(
                "advance_booking", request.check_in,
                message=(
                    f"提前 {lead_days} 天预订不在渠道窗口 "
                    f"[{channel.min_advance_booking}, {channel.max_advance_booking}] 内"
                ),
                lead_days=lead_days,
            )

    if arrival.closed_to_arrival:
        raise ClosedError("closed_to_arrival", request.check_in)

    departure = effective_restrictions(config, request.check_out, request.channel_id)
    if departure.closed_to_departure:
        raise ClosedError("closed_to_departure", request.check_out)

    for day in request.dates():
        record = config.daily_allotments.get(day)
        if record is not None and record.is_blackout:
            raise ClosedError("blackout", day)
        if effective_restrictions(config, day, request.channel_id).stop_sell:
            raise ClosedError("stop_sell", day)


def reserve(config: AllotmentConfig, request: StayRequest, now: datetime,
            auto_create: bool = True, deadline: Optional[Deadline] = None) -> ReservationResult:
    """
    预留房间

    成功时 config 中对应日期的记录被替换为更新后的记录；失败时 config 不变。

    Raises:
        AllotmentValidationError / ClosedError / InsufficientInventoryError /
        InvariantViolationError / DeadlineExceededError
    """
    request.validate()
    check_restrictions(config, request)

    tolerance = config.default_settings.overbooking_tolerance()
    result = ReservationResult(request=request)
    staged: List[DailyRecord] = []

    for day in request.dates():
        if deadline is not None:
            deadline.check("reserve")
        record = _working_record(config, day)

        allotment = record.channel(request.channel_id)
        if allotment is None:
            if not auto_create:
                raise ClosedError(
                    "channel_not_allotted", day,
                    message=f"{day.isoformat()} 渠道 {request.channel_id} 没有配额",
                )
            allotment = ChannelAllotment(channel_id=request.channel_id)
            record.channel_allotments.append(allotment)

        if record.total_inventory == 0:
            raise InsufficientInventoryError(day, request.channel_id, 0, request.rooms)

        headroom = allotment.available + tolerance
        if request.rooms > headroom:
            raise InsufficientInventoryError(day, request.channel_id, max(headroom, 0), request.rooms)

        allotment.sold += request.rooms
        allotment.last_updated = now
        recompute(record)
        validate(record, config.default_settings)

        staged.append(record)
        result.allocations.append(DayAllocation(
            date=day,
            channel_id=request.channel_id,
            rooms=request.rooms,
            sold=allotment.sold,
            available=allotment.available,
            overbooking=allotment.overbooking,
        ))

    for record in staged:
        config.daily_allotments.put(record)
    return result


def release(config: AllotmentConfig, request: StayRequest, now: datetime,
            deadline: Optional[Deadline] = None) -> ReservationResult:
    """
    释放房间（取消 / 未到店）

    先冲减当日超售部分，再冲减正常售出；已售不能为负。
    释放不检查停售等限制。
    """
    request.validate()
    if config.get_channel(request.channel_id) is None:
        raise AllotmentValidationError(
            f"渠道不存在: {request.channel_id}",
            errors=[{"field": "channel_id", "message": "unknown channel"}],
        )

    result = ReservationResult(request=request)
    staged: List[DailyRecord] = []

    for day in request.dates():
        if deadline is not None:
            deadline.check("release")
        record = _working_record(config, day)
        allotment = record.channel(request.channel_id)
        sold = allotment.sold if allotment else 0
        if sold < request.rooms:
            message = f"{day.isoformat()} 渠道 {request.channel_id} 已售 {sold}，不能释放 {request.rooms}"
            logger.error(f"Release rejected: {message}")
            raise InvariantViolationError("sold_non_negative", message, day=day)

        from_overbooking = min(request.rooms, allotment.overbooking)
        allotment.sold -= request.rooms
        allotment.last_updated = now
        recompute(record)
        validate(record, config.default_settings)

        staged.append(record)
        result.allocations.append(DayAllocation(
            date=day,
            channel_id=request.channel_id,
            rooms=request.rooms,
            sold=allotment.sold,
            available=allotment.available,
            overbooking=allotment.overbooking,
            from_overbooking=from_overbooking,
        ))

    for record in staged:
        config.daily_allotments.put(record)
    return result
