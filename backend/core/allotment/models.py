"""
core/allotment/models.py

房型配额数据模型 - 纯值对象，不携带持久化行为

AllotmentConfig 是并发控制单元，独占其渠道、分配规则、每日记录与分析数据。
"""
from bisect import bisect_left, insort
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Dict, Iterator, List, Optional
import copy


# ============== 枚举定义 ==============

class ChannelId(str, Enum):
    """销售渠道（封闭集合）"""
    DIRECT = "direct"
    BOOKING_COM = "booking_com"
    EXPEDIA = "expedia"
    AIRBNB = "airbnb"
    AGODA = "agoda"
    HOTELS_COM = "hotels_com"
    CUSTOM = "custom"


CHANNEL_IDS = frozenset(c.value for c in ChannelId)


class ConfigStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"


class AllocationMethod(str, Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"
    DYNAMIC = "dynamic"


class RuleType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"
    PRIORITY = "priority"
    DYNAMIC = "dynamic"


class FallbackStrategy(str, Enum):
    EQUAL_DISTRIBUTION = "equal_distribution"
    PRIORITY_BASED = "priority_based"
    HISTORICAL_PERFORMANCE = "historical_performance"
    REVENUE_OPTIMIZATION = "revenue_optimization"


class CalculationFrequency(str, Enum):
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"


class ChangeAction(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    ALLOCATED = "allocated"
    RELEASED = "released"
    SYNCED = "synced"


class RecommendationType(str, Enum):
    INCREASE_ALLOCATION = "increase_allocation"
    DECREASE_ALLOCATION = "decrease_allocation"
    ADJUST_RATES = "adjust_rates"
    MODIFY_RESTRICTIONS = "modify_restrictions"
    UPDATE_RULES = "update_rules"


class RecommendationPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AlertType(str, Enum):
    LOW_OCCUPANCY = "low_occupancy"
    HIGH_OCCUPANCY = "high_occupancy"
    CHANNEL_UNDERPERFORMING = "channel_underperforming"
    INVENTORY_IMBALANCE = "inventory_imbalance"
    OVERBOOKING_RISK = "overbooking_risk"


WEEKDAY_NAMES = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


# ============== 渠道 ==============

@dataclass
class Restrictions:
    """渠道限制"""
    minimum_stay: int = 1
    maximum_stay: int = 30
    closed_to_arrival: bool = False
    closed_to_departure: bool = False
    stop_sell: bool = False


@dataclass
class RateModifiers:
    """价格调整（百分比）"""
    weekdays: float = 0.0
    weekends: float = 0.0
    holidays: float = 0.0


@dataclass
class Channel:
    """
    渠道定义

    Attributes:
        channel_id: 渠道ID，配置内唯一
        priority: 0..100，用于分配时的优先级与平局裁决
        commission: 佣金百分比
        markup: 加价百分比
        min_advance_booking / max_advance_booking: 提前预订天数窗口
        cutoff_time: 当日截单时间 "HH:MM"
    """
    channel_id: str
    channel_name: str
    is_active: bool = True
    priority: int = 0
    commission: float = 0.0
    markup: float = 0.0
    min_advance_booking: int = 0
    max_advance_booking: int = 365
    cutoff_time: str = "18:00"
    restrictions: Restrictions = field(default_factory=Restrictions)
    rate_modifiers: RateModifiers = field(default_factory=RateModifiers)


@dataclass
class DefaultSettings:
    total_inventory: int
    default_allocation_method: AllocationMethod = AllocationMethod.PERCENTAGE
    overbooking_allowed: bool = False
    overbooking_limit: int = 0       # 房间数（绝对值）
    release_window: int = 24         # 入住前多少小时自动释放
    auto_release: bool = True
    block_period: int = 0            # 未到店后封锁天数

    def overbooking_tolerance(self) -> int:
        return self.overbooking_limit if self.overbooking_allowed else 0


# ============== 每日记录 ==============

@dataclass
class ChannelAllotment:
    """某日某渠道的配额切片"""
    channel_id: str
    allocated: int = 0
    sold: int = 0
    available: int = 0
    blocked: int = 0
    overbooking: int = 0
    rate: float = 0.0
    restrictions: Optional[Restrictions] = None   # 当日限制快照，None 表示沿用渠道限制
    last_updated: Optional[datetime] = None


@dataclass
class DailyRecord:
    """某一本地日期的库存记录"""
    date: date
    total_inventory: int
    channel_allotments: List[ChannelAllotment] = field(default_factory=list)
    free_stock: int = 0
    total_sold: int = 0
    occupancy_rate: float = 0.0
    is_holiday: bool = False
    is_blackout: bool = False
    notes: Optional[str] = None

    def channel(self, channel_id: str) -> Optional[ChannelAllotment]:
        for allotment in self.channel_allotments:
            if allotment.channel_id == channel_id:
                return allotment
        return None

    def total_allocated(self) -> int:
        return sum(c.allocated for c in self.channel_allotments)


class DailyAllotments:
    """
    按日期排序的每日记录容器

    迭代始终按日期升序；只能通过 put/remove 修改。
    """

    def __init__(self, records: Optional[List[DailyRecord]] = None):
        self._records: Dict[date, DailyRecord] = {}
        self._dates: List[date] = []
        for record in records or []:
            self.put(record)

    def get(self, day: date) -> Optional[DailyRecord]:
        return self._records.get(day)

    def put(self, record: DailyRecord) -> None:
        if record.date not in self._records:
            insort(self._dates, record.date)
        self._records[record.date] = record

    def remove(self, day: date) -> None:
        if day in self._records:
            del self._records[day]
            self._dates.remove(day)

    def between(self, start: date, end: date) -> List[DailyRecord]:
        """闭区间 [start, end] 内的记录"""
        i = bisect_left(self._dates, start)
        result = []
        while i < len(self._dates) and self._dates[i] <= end:
            result.append(self._records[self._dates[i]])
            i += 1
        return result

    def dates(self) -> List[date]:
        return list(self._dates)

    def __contains__(self, day: date) -> bool:
        return day in self._records

    def __iter__(self) -> Iterator[DailyRecord]:
        return iter([self._records[d] for d in self._dates])

    def __len__(self) -> int:
        return len(self._dates)


# ============== 分配规则 ==============

@dataclass
class RuleConditions:
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    days_of_week: List[str] = field(default_factory=list)
    seasonality: Optional[str] = None
    occupancy_threshold: Optional[float] = None
    advance_booking_min: Optional[int] = None
    advance_booking_max: Optional[int] = None


@dataclass
class PriorityAllocation:
    channel_id: str
    priority: int = 0
    min_allocation: int = 0
    max_allocation: Optional[int] = None


@dataclass
class AllocationRule:
    """
    分配规则

    按 rule_type 只读取对应的 payload：
    percentage -> percentage, fixed -> fixed, priority -> priority_list,
    dynamic -> dynamic_allocator（外部注册的函数名）
    """
    rule_id: str
    name: str
    rule_type: RuleType = RuleType.PERCENTAGE
    is_active: bool = True
    priority: int = 0
    conditions: RuleConditions = field(default_factory=RuleConditions)
    percentage: Dict[str, float] = field(default_factory=dict)
    fixed: Dict[str, int] = field(default_factory=dict)
    priority_list: List[PriorityAllocation] = field(default_factory=list)
    dynamic_allocator: Optional[str] = None
    fallback_rule: FallbackStrategy = FallbackStrategy.EQUAL_DISTRIBUTION


@dataclass
class SeasonPeriod:
    tag: str
    start_date: date
    end_date: date


# ============== 分析 ==============

@dataclass
class ChannelMetrics:
    channel_id: str
    total_allocated: int = 0
    total_sold: int = 0
    total_revenue: float = 0.0
    average_rate: float = 0.0
    conversion_rate: float = 0.0
    utilization_rate: float = 0.0
    cancellation_rate: float = 0.0
    no_show_rate: float = 0.0
    lead_time: float = 0.0
    revenue_per_available_room: float = 0.0


@dataclass
class OverallMetrics:
    total_inventory: int = 0
    total_allocated: int = 0
    total_sold: int = 0
    total_revenue: float = 0.0
    average_occupancy_rate: float = 0.0
    average_daily_rate: float = 0.0
    revenue_per_available_room: float = 0.0


@dataclass
class MetricsWindow:
    period_start: date
    period_end: date
    channel_metrics: List[ChannelMetrics] = field(default_factory=list)
    overall_metrics: OverallMetrics = field(default_factory=OverallMetrics)

    def channel(self, channel_id: str) -> Optional[ChannelMetrics]:
        for metrics in self.channel_metrics:
            if metrics.channel_id == channel_id:
                return metrics
        return None


@dataclass
class Recommendation:
    recommendation_type: RecommendationType
    channel_id: Optional[str]
    priority: RecommendationPriority
    impact: str
    confidence: int
    created_at: Optional[datetime] = None


@dataclass
class Alert:
    alert_type: AlertType
    threshold: float
    is_active: bool = True
    last_triggered: Optional[datetime] = None


@dataclass
class Analytics:
    last_calculated: Optional[datetime] = None
    next_calculation: Optional[datetime] = None
    calculation_frequency: CalculationFrequency = CalculationFrequency.DAILY
    windows: List[MetricsWindow] = field(default_factory=list)
    alerts: List[Alert] = field(default_factory=list)
    recommendations: List[Recommendation] = field(default_factory=list)

    def latest_window(self) -> Optional[MetricsWindow]:
        if not self.windows:
            return None
        return max(self.windows, key=lambda w: (w.period_end, w.period_start))


@dataclass
class ChannelManagerIntegration:
    provider: Optional[str] = None
    is_connected: bool = False
    sync_frequency: int = 15     # 分钟
    auto_sync: bool = True


# ============== 变更日志 ==============

@dataclass
class ChangeLogEntry:
    timestamp: datetime
    action: ChangeAction
    user_id: Optional[str] = None
    changes: Dict = field(default_factory=dict)
    reason: Optional[str] = None


# ============== 聚合根 ==============

@dataclass
class AllotmentConfig:
    """
    房型配额配置（聚合根）

    同一 (hotel_id, room_type_id) 最多只有一个 active 配置。
    """
    config_id: str
    hotel_id: str
    room_type_id: str
    name: str
    default_settings: DefaultSettings
    description: Optional[str] = None
    status: ConfigStatus = ConfigStatus.ACTIVE
    timezone: str = "UTC"
    channels: List[Channel] = field(default_factory=list)
    allocation_rules: List[AllocationRule] = field(default_factory=list)
    daily_allotments: DailyAllotments = field(default_factory=DailyAllotments)
    analytics: Analytics = field(default_factory=Analytics)
    integration: ChannelManagerIntegration = field(default_factory=ChannelManagerIntegration)
    seasons: List[SeasonPeriod] = field(default_factory=list)
    version: int = 1
    created_by: Optional[str] = None
    updated_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def get_channel(self, channel_id: str) -> Optional[Channel]:
        for channel in self.channels:
            if channel.channel_id == channel_id:
                return channel
        return None

    def get_rule(self, rule_id: str) -> Optional[AllocationRule]:
        for rule in self.allocation_rules:
            if rule.rule_id == rule_id:
                return rule
        return None

    def is_active(self) -> bool:
        return self.status == ConfigStatus.ACTIVE

    def copy(self) -> "AllotmentConfig":
        """深拷贝 - 变更在副本上进行，成功后才持久化"""
        return copy.deepcopy(self)
