"""
Pydantic 模式定义
用于 API 请求验证，校验后转换为 core.allotment 数据结构
"""
from datetime import date
from typing import Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from core.allotment.models import (
    AlertType, AllocationMethod, CalculationFrequency, ChannelId, ConfigStatus, FallbackStrategy,
    RuleType,
)


# ============== 渠道 Schemas ==============

class RestrictionsSchema(BaseModel):
    minimum_stay: int = Field(default=1, ge=1)
    maximum_stay: int = Field(default=30, ge=1)
    closed_to_arrival: bool = False
    closed_to_departure: bool = False
    stop_sell: bool = False

    @model_validator(mode="after")
    def check_stay(self):
        if self.maximum_stay < self.minimum_stay:
            raise ValueError("maximum_stay 不能小于 minimum_stay")
        return self


class RateModifiersSchema(BaseModel):
    weekdays: float = 0.0
    weekends: float = 0.0
    holidays: float = 0.0


class ChannelSchema(BaseModel):
    channel_id: ChannelId
    channel_name: str = Field(..., max_length=100)
    is_active: bool = True
    priority: int = Field(default=0, ge=0, le=100)
    commission: float = Field(default=0.0, ge=0, le=100)
    markup: float = Field(default=0.0, ge=0)
    min_advance_booking: int = Field(default=0, ge=0)
    max_advance_booking: int = Field(default=365, ge=0)
    cutoff_time: str = Field(default="18:00", pattern=r"^([01]\d|2[0-3]):[0-5]\d$")
    restrictions: RestrictionsSchema = Field(default_factory=RestrictionsSchema)
    rate_modifiers: RateModifiersSchema = Field(default_factory=RateModifiersSchema)

    @model_validator(mode="after")
    def check_advance_window(self):
        if self.max_advance_booking < self.min_advance_booking:
            raise ValueError("max_advance_booking 不能小于 min_advance_booking")
        return self


class DefaultSettingsSchema(BaseModel):
    total_inventory: int = Field(..., ge=0)
    default_allocation_method: AllocationMethod = AllocationMethod.PERCENTAGE
    overbooking_allowed: bool = False
    overbooking_limit: int = Field(default=0, ge=0)
    release_window: int = Field(default=24, ge=0)
    auto_release: bool = True
    block_period: int = Field(default=0, ge=0)


# ============== 规则 Schemas ==============

class RuleConditionsSchema(BaseModel):
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    days_of_week: List[str] = Field(default_factory=list)
    seasonality: Optional[str] = None
    occupancy_threshold: Optional[float] = Field(default=None, ge=0, le=100)
    advance_booking_min: Optional[int] = Field(default=None, ge=0)
    advance_booking_max: Optional[int] = Field(default=None, ge=0)


class PriorityAllocationSchema(BaseModel):
    channel_id: ChannelId
    priority: int = Field(default=0, ge=0, le=100)
    min_allocation: int = Field(default=0, ge=0)
    max_allocation: Optional[int] = Field(default=None, ge=0)


class AllocationRuleSchema(BaseModel):
    rule_id: Optional[str] = None
    name: str = Field(..., max_length=100)
    rule_type: RuleType = RuleType.PERCENTAGE
    is_active: bool = True
    priority: int = 0
    conditions: RuleConditionsSchema = Field(default_factory=RuleConditionsSchema)
    percentage: Dict[ChannelId, float] = Field(default_factory=dict)
    fixed: Dict[ChannelId, int] = Field(default_factory=dict)
    priority_list: List[PriorityAllocationSchema] = Field(default_factory=list)
    dynamic_allocator: Optional[str] = None
    fallback_rule: FallbackStrategy = FallbackStrategy.EQUAL_DISTRIBUTION


class SeasonSchema(BaseModel):
    tag: str = Field(..., max_length=50)
    start_date: date
    end_date: date

    @model_validator(mode="after")
    def check_range(self):
        if self.end_date < self.start_date:
            raise ValueError("end_date 不能早于 start_date")
        return self


class AlertSchema(BaseModel):
    alert_type: AlertType
    threshold: float
    is_active: bool = True


class IntegrationSchema(BaseModel):
    provider: Optional[str] = None
    is_connected: bool = False
    sync_frequency: int = Field(default=15, ge=1)
    auto_sync: bool = True


# ============== 配置 Schemas ==============

def _check_timezone(value: Optional[str]) -> Optional[str]:
    if value is None:
        return value
    try:
        ZoneInfo(value)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValueError(f"未知时区: {value}")
    return value


def _check_unique_channels(channels: Optional[List[ChannelSchema]]) -> None:
    if channels is None:
        return
    ids = [c.channel_id for c in channels]
    if len(ids) != len(set(ids)):
        raise ValueError("渠道ID不能重复")


class AllotmentCreate(BaseModel):
    room_type_id: str = Field(..., min_length=1, max_length=64)
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None
    timezone: Optional[str] = None
    default_settings: DefaultSettingsSchema
    channels: Optional[List[ChannelSchema]] = None
    allocation_rules: Optional[List[AllocationRuleSchema]] = None
    seasons: List[SeasonSchema] = Field(default_factory=list)
    alerts: Optional[List[AlertSchema]] = None
    integration: IntegrationSchema = Field(default_factory=IntegrationSchema)
    calculation_frequency: CalculationFrequency = CalculationFrequency.DAILY

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v):
        return _check_timezone(v)

    @model_validator(mode="after")
    def check_channels(self):
        _check_unique_channels(self.channels)
        return self


class AllotmentUpdate(BaseModel):
    expected_version: Optional[int] = Field(default=None, ge=1)
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = None
    status: Optional[ConfigStatus] = None
    timezone: Optional[str] = None
    default_settings: Optional[DefaultSettingsSchema] = None
    channels: Optional[List[ChannelSchema]] = None
    allocation_rules: Optional[List[AllocationRuleSchema]] = None
    seasons: Optional[List[SeasonSchema]] = None
    alerts: Optional[List[AlertSchema]] = None
    integration: Optional[IntegrationSchema] = None
    calculation_frequency: Optional[CalculationFrequency] = None
    reason: Optional[str] = None

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v):
        return _check_timezone(v)

    @model_validator(mode="after")
    def check_channels(self):
        _check_unique_channels(self.channels)
        return self


# ============== 操作 Schemas ==============

class ApplyRuleRequest(BaseModel):
    rule_id: str
    start_date: date
    end_date: date
    reason: Optional[str] = None


class UpdateAllocationRequest(BaseModel):
    channel_id: ChannelId
    date: date
    allocated: Optional[int] = Field(default=None, ge=0)
    sold: Optional[int] = Field(default=None, ge=0)
    blocked: Optional[int] = Field(default=None, ge=0)
    rate: Optional[float] = Field(default=None, ge=0)
    restrictions: Optional[RestrictionsSchema] = None
    reason: Optional[str] = None


class BookingRequest(BaseModel):
    hotel_id: Optional[str] = None
    room_type_id: str
    channel_id: ChannelId
    check_in: date
    check_out: date
    rooms: int = Field(default=1, ge=1)
    booked_on: Optional[date] = None
    booking_reference: Optional[str] = None
    reason: Optional[str] = None

    @model_validator(mode="after")
    def check_dates(self):
        if self.check_out <= self.check_in:
            raise ValueError("check_out 必须晚于 check_in")
        return self


class SyncRequest(BaseModel):
    start_date: date
    end_date: date
    kinds: List[str] = Field(default_factory=lambda: ["allocation", "rate", "restrictions"])

    @field_validator("kinds")
    @classmethod
    def validate_kinds(cls, v):
        allowed = {"allocation", "rate", "restrictions"}
        unknown = [k for k in v if k not in allowed]
        if unknown or not v:
            raise ValueError(f"kinds 只能是 {sorted(allowed)}")
        return v


class WebhookUpdate(BaseModel):
    date: date
    channel_id: ChannelId
    allocated: Optional[int] = Field(default=None, ge=0)
    sold: Optional[int] = Field(default=None, ge=0)
    blocked: Optional[int] = Field(default=None, ge=0)
    rate: Optional[float] = Field(default=None, ge=0)
    restrictions: Optional[RestrictionsSchema] = None


class WebhookRequest(BaseModel):
    hotel_id: str
    room_type_id: str
    updates: List[WebhookUpdate] = Field(..., min_length=1)

    model_config = ConfigDict(extra="ignore")
