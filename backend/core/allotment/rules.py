"""
core/allotment/rules.py

分配规则引擎 - 在日期区间上按规则重写各渠道的 allocated（从不修改 sold）

规则类型:
- percentage: allocated = floor(总库存 × 百分比 / 100)，余数留作空闲库存
- fixed: 按固定值分配，超过总库存时截断并记录警告
- priority: 按优先级降序依次分配，受每渠道最小/最大值约束
- dynamic: 调用外部注册的分配函数，不可用时退回 fallback 策略

多个启用规则按 priority 降序评估，第一个条件匹配的规则生效。
"""
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal, ROUND_FLOOR, ROUND_HALF_DOWN
from typing import Any, Callable, Dict, List, Optional, Tuple
import copy
import logging

from core.allotment.clock import Deadline, iter_dates
from core.allotment.daily_records import enforce_total_cap, recompute, validate
from core.allotment.errors import AllotmentValidationError, InvariantViolationError
from core.allotment.models import (
    WEEKDAY_NAMES, AllocationRule, AllotmentConfig, ChannelAllotment, DailyRecord,
    FallbackStrategy, RuleType,
)

logger = logging.getLogger(__name__)

DynamicAllocator = Callable[[AllotmentConfig, DailyRecord, AllocationRule], Dict[str, int]]

HISTORY_DAYS = 30


class DynamicAllocatorRegistry:
    """
    动态分配函数注册表

    Example:
        >>> allocators.register("weekend_boost", my_allocator)
        >>> rule.dynamic_allocator = "weekend_boost"
    """

    def __init__(self):
        self._allocators: Dict[str, DynamicAllocator] = {}

    def register(self, name: str, allocator: DynamicAllocator) -> None:
        self._allocators[name] = allocator
        logger.info(f"Registered dynamic allocator: {name}")

    def unregister(self, name: str) -> None:
        self._allocators.pop(name, None)

    def get(self, name: Optional[str]) -> Optional[DynamicAllocator]:
        if not name:
            return None
        return self._allocators.get(name)

    def names(self) -> List[str]:
        return sorted(self._allocators)


allocators = DynamicAllocatorRegistry()


@dataclass
class DayOutcome:
    """规则在某一天的执行结果: applied / skipped / failed"""
    date: date
    status: str
    allocations: Dict[str, int] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)
    fallback: Optional[str] = None
    error: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date": self.date.isoformat(),
            "status": self.status,
            "allocations": dict(self.allocations),
            "warnings": list(self.warnings),
            "fallback": self.fallback,
            "error": self.error,
        }


# ============== 校验 ==============

def validate_rule(rule: AllocationRule, config: AllotmentConfig) -> None:
    """规则载荷校验，不合法时抛出 AllotmentValidationError"""
    errors = []
    known = {c.channel_id for c in config.channels}

    def check_channels(field_name: str, channel_ids) -> None:
        for channel_id in channel_ids:
            if channel_id not in known:
                errors.append({"field": field_name, "message": f"未配置的渠道: {channel_id}"})

    if rule.rule_type == RuleType.PERCENTAGE:
        check_channels("percentage", rule.percentage)
        if any(v < 0 or v > 100 for v in rule.percentage.values()):
            errors.append({"field": "percentage", "message": "百分比必须在 0-100 之间"})
        if sum(rule.percentage.values()) > 100:
            errors.append({"field": "percentage", "message": "百分比合计不能超过 100"})
    elif rule.rule_type == RuleType.FIXED:
        check_channels("fixed", rule.fixed)
        if any(v < 0 for v in rule.fixed.values()):
            errors.append({"field": "fixed", "message": "固定分配不能为负"})
        if sum(rule.fixed.values()) > config.default_settings.total_inventory:
            errors.append({"field": "fixed", "message": "固定分配合计不能超过总库存"})
    elif rule.rule_type == RuleType.PRIORITY:
        check_channels("priority_list", [p.channel_id for p in rule.priority_list])
        for item in rule.priority_list:
            if item.min_allocation < 0:
                errors.append({"field": "priority_list", "message": f"{item.channel_id} 最小分配不能为负"})
            if item.max_allocation is not None and item.max_allocation < item.min_allocation:
                errors.append({"field": "priority_list", "message": f"{item.channel_id} 最大分配小于最小分配"})
    elif rule.rule_type == RuleType.DYNAMIC:
        if not rule.dynamic_allocator:
            errors.append({"field": "dynamic_allocator", "message": "动态规则必须指定分配函数名"})

    conditions = rule.conditions
    if conditions.start_date and conditions.end_date and conditions.start_date > conditions.end_date:
        errors.append({"field": "conditions", "message": "开始日期不能晚于结束日期"})
    for name in conditions.days_of_week:
        if name not in WEEKDAY_NAMES:
            errors.append({"field": "conditions.days_of_week", "message": f"未知星期: {name}"})

    if errors:
        raise AllotmentValidationError(f"规则 {rule.name} 不合法", errors=errors)


# ============== 条件匹配 ==============

def _prior_day_occupancy(config: AllotmentConfig, day: date) -> float:
    prior = config.daily_allotments.get(day - timedelta(days=1))
    if prior is None or prior.total_inventory == 0:
        return 0.0
    return prior.total_sold / prior.total_inventory * 100


def matches(rule: AllocationRule, config: AllotmentConfig, day: date, today: date) -> bool:
    """规则的所有条件都满足时才作用于该日"""
    c = rule.conditions
    if c.start_date and day < c.start_date:
        return False
    if c.end_date and day > c.end_date:
        return False
    if c.days_of_week and WEEKDAY_NAMES[day.weekday()] not in c.days_of_week:
        return False
    if c.seasonality:
        in_season = any(
            s.tag == c.seasonality and s.start_date <= day <= s.end_date for s in config.seasons
        )
        if not in_season:
            return False
    if c.occupancy_threshold is not None and _prior_day_occupancy(config, day) < c.occupancy_threshold:
        return False
    advance_days = (day - today).days
    if c.advance_booking_min is not None and advance_days < c.advance_booking_min:
        return False
    if c.advance_booking_max is not None and advance_days > c.advance_booking_max:
        return False
    return True


def resolve_rule(config: AllotmentConfig, day: date, today: date) -> Optional[AllocationRule]:
    """按优先级降序返回第一个匹配的启用规则"""
    ordered = sorted(
        (r for r in config.allocation_rules if r.is_active),
        key=lambda r: -r.priority,
    )
    for rule in ordered:
        if matches(rule, config, day, today):
            return rule
    return None


# ============== 分配策略 ==============

def round_percentage(pct: float) -> Decimal:
    """百分比保留两位小数，恰好一半时向下"""
    return Decimal(str(pct)).quantize(Decimal("0.01"), rounding=ROUND_HALF_DOWN)


def allocate_percentage(total: int, percentages: Dict[str, float]) -> Dict[str, int]:
    """floor(total * pct / 100)"""
    return {
        ch: int((total * round_percentage(pct) / 100).to_integral_value(rounding=ROUND_FLOOR))
        for ch, pct in percentages.items()
    }


def allocate_fixed(total: int, fixed: Dict[str, int]) -> Tuple[Dict[str, int], List[str]]:
    result, warnings = {}, []
    for channel_id, value in fixed.items():
        if value > total:
            warnings.append(f"渠道 {channel_id} 固定分配 {value} 超过总库存 {total}，已截断")
            value = total
        result[channel_id] = value
    return result, warnings


def allocate_priority(total: int, rule: AllocationRule) -> Dict[str, int]:
    ordered = sorted(rule.priority_list, key=lambda p: (-p.priority, p.channel_id))
    remaining = total
    result = {}
    for item in ordered:
        cap = item.max_allocation if item.max_allocation is not None else remaining
        amount = min(cap, max(item.min_allocation, remaining), remaining)
        amount = max(amount, 0)
        result[item.channel_id] = amount
        remaining -= amount
    return result


def _weighted(total: int, weights: Dict[str, float]) -> Dict[str, int]:
    weight_sum = sum(weights.values())
    if weight_sum <= 0:
        return _equal(total, list(weights))
    return {ch: int(total * w // weight_sum) for ch, w in weights.items()}


def _equal(total: int, channel_ids: List[str]) -> Dict[str, int]:
    if not channel_ids:
        return {}
    share = total // len(channel_ids)
    return {ch: share for ch in channel_ids}


def _historical_sold(config: AllotmentConfig, day: date, channel_ids: List[str]) -> Dict[str, float]:
    sold = {ch: 0.0 for ch in channel_ids}
    for record in config.daily_allotments.between(day - timedelta(days=HISTORY_DAYS), day - timedelta(days=1)):
        for allotment in record.channel_allotments:
            if allotment.channel_id in sold:
                sold[allotment.channel_id] += allotment.sold
    return sold


def allocate_fallback(config: AllotmentConfig, record: DailyRecord,
                      strategy: FallbackStrategy) -> Dict[str, int]:
    """在启用渠道之间按 fallback 策略分配"""
    active = sorted(c.channel_id for c in config.channels if c.is_active)
    total = record.total_inventory

    if strategy == FallbackStrategy.PRIORITY_BASED:
        weights = {c.channel_id: float(c.priority) for c in config.channels if c.is_active}
        return _weighted(total, weights)
    if strategy == FallbackStrategy.HISTORICAL_PERFORMANCE:
        return _weighted(total, _historical_sold(config, record.date, active))
    if strategy == FallbackStrategy.REVENUE_OPTIMIZATION:
        window = config.analytics.latest_window()
        weights = {ch: 0.0 for ch in active}
        if window is not None:
            for metrics in window.channel_metrics:
                if metrics.channel_id in weights:
                    weights[metrics.channel_id] = metrics.total_revenue
        return _weighted(total, weights)
    return _equal(total, active)


def _run_dynamic(config: AllotmentConfig, record: DailyRecord, rule: AllocationRule,
                 registry: DynamicAllocatorRegistry) -> Tuple[Optional[Dict[str, int]], Optional[str]]:
    allocator = registry.get(rule.dynamic_allocator)
    if allocator is None:
        return None, f"动态分配函数 {rule.dynamic_allocator} 未注册"
    try:
        result = allocator(config, record, rule)
    except Exception as e:
        return None, f"动态分配函数 {rule.dynamic_allocator} 执行失败: {e}"

    known = {c.channel_id for c in config.channels}
    if not isinstance(result, dict) or any(ch not in known for ch in result):
        return None, f"动态分配函数 {rule.dynamic_allocator} 返回了未知渠道"
    if any(not isinstance(v, int) or v < 0 for v in result.values()):
        return None, f"动态分配函数 {rule.dynamic_allocator} 返回了非法数量"
    if sum(result.values()) > record.total_inventory:
        return None, f"动态分配函数 {rule.dynamic_allocator} 分配超过总库存"
    return result, None


def compute_allocations(config: AllotmentConfig, record: DailyRecord, rule: AllocationRule,
                        registry: Optional[DynamicAllocatorRegistry] = None
                        ) -> Tuple[Dict[str, int], List[str], Optional[str]]:
    """
    计算某日各渠道的新 allocated

    Returns:
        (分配结果, 警告列表, 使用的 fallback 策略名或 None)
    """
    total = record.total_inventory
    if rule.rule_type == RuleType.PERCENTAGE:
        return allocate_percentage(total, rule.percentage), [], None
    if rule.rule_type == RuleType.FIXED:
        result, warnings = allocate_fixed(total, rule.fixed)
        for warning in warnings:
            logger.warning(f"Rule {rule.rule_id} on {record.date}: {warning}")
        return result, warnings, None
    if rule.rule_type == RuleType.PRIORITY:
        return allocate_priority(total, rule), [], None

    result, problem = _run_dynamic(config, record, rule, registry or allocators)
    if result is not None:
        return result, [], None
    logger.warning(f"Rule {rule.rule_id} on {record.date}: {problem}, fallback {rule.fallback_rule.value}")
    return allocate_fallback(config, record, rule.fallback_rule), [problem], rule.fallback_rule.value


# ============== 规则应用 ==============

def apply_to_record(config: AllotmentConfig, record: DailyRecord, rule: AllocationRule, now: datetime,
                    registry: Optional[DynamicAllocatorRegistry] = None) -> DayOutcome:
    """
    在记录副本上应用规则；成功时返回 applied 并写回配置，失败时记录不变
    """
    allocations, warnings, fallback = compute_allocations(config, record, rule, registry)
    outcome = DayOutcome(date=record.date, status="applied", warnings=list(warnings), fallback=fallback)

    working = copy.deepcopy(record)
    for channel_id, amount in allocations.items():
        allotment = working.channel(channel_id)
        if allotment is None:
            allotment = ChannelAllotment(channel_id=channel_id)
            working.channel_allotments.append(allotment)
        allotment.allocated = amount
        allotment.last_updated = now

    cap_warning = enforce_total_cap(working, config.default_settings)
    if cap_warning:
        outcome.warnings.append(cap_warning)

    for allotment in working.channel_allotments:
        if allotment.allocated < allotment.sold:
            message = (
                f"{record.date.isoformat()} 渠道 {allotment.channel_id} 分配 {allotment.allocated} "
                f"低于已售 {allotment.sold}"
            )
            logger.error(f"Rule {rule.rule_id} rejected: {message}")
            outcome.status = "failed"
            outcome.error = InvariantViolationError("allocated_not_below_sold", message, day=record.date).to_dict()
            return outcome

    recompute(working)
    try:
        validate(working, config.default_settings)
    except InvariantViolationError as e:
        outcome.status = "failed"
        outcome.error = e.to_dict()
        return outcome

    outcome.allocations = {a.channel_id: a.allocated for a in working.channel_allotments}
    config.daily_allotments.put(working)
    return outcome


def apply_rule(config: AllotmentConfig, rule: AllocationRule, start: date, end: date,
               now: datetime, today: date,
               registry: Optional[DynamicAllocatorRegistry] = None,
               deadline: Optional[Deadline] = None) -> List[DayOutcome]:
    """
    在 [start, end] 上应用规则，返回逐日结果

    条件不匹配的日期为 skipped；破坏不变量的日期为 failed 且保持不变，其余日期继续。
    """
    if start > end:
        raise AllotmentValidationError(
            "开始日期不能晚于结束日期",
            errors=[{"field": "start_date", "message": "start_date > end_date"}],
        )

    outcomes = []
    for day in iter_dates(start, end):
        if deadline is not None:
            deadline.check("apply_rule")
        if not matches(rule, config, day, today):
            outcomes.append(DayOutcome(date=day, status="skipped"))
            continue
        record = config.daily_allotments.get(day)
        if record is None:
            record = recompute(DailyRecord(date=day, total_inventory=config.default_settings.total_inventory))
        outcomes.append(apply_to_record(config, record, rule, now, registry))

    applied = sum(1 for o in outcomes if o.status == "applied")
    failed = sum(1 for o in outcomes if o.status == "failed")
    logger.info(
        f"Rule {rule.rule_id} applied on config {config.config_id}: "
        f"applied={applied} skipped={len(outcomes) - applied - failed} failed={failed}"
    )
    return outcomes


def seed_horizon(config: AllotmentConfig, start: date, days: int, now: datetime, today: date,
                 registry: Optional[DynamicAllocatorRegistry] = None) -> List[DayOutcome]:
    """
    从 start 起创建 days 天的每日记录，并对每天应用第一个匹配的启用规则
    """
    outcomes = []
    for offset in range(days):
        day = start + timedelta(days=offset)
        record = config.daily_allotments.get(day)
        if record is None:
            record = recompute(DailyRecord(date=day, total_inventory=config.default_settings.total_inventory))
            config.daily_allotments.put(record)
        rule = resolve_rule(config, day, today)
        if rule is None:
            outcomes.append(DayOutcome(date=day, status="skipped"))
            continue
        outcomes.append(apply_to_record(config, record, rule, now, registry))
    return outcomes
