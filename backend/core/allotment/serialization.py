"""
core/allotment/serialization.py

AllotmentConfig 与 JSON 文档之间的转换

日期为酒店时区下的 ISO 日期，时间戳为带时区的 UTC ISO 字符串。
"""
from dataclasses import fields, is_dataclass
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from core.allotment.models import (
    Alert, AlertType, AllocationMethod, AllocationRule, AllotmentConfig, Analytics,
    CalculationFrequency, Channel, ChannelAllotment, ChannelManagerIntegration, ChannelMetrics,
    ConfigStatus, DailyAllotments, DailyRecord, DefaultSettings, FallbackStrategy, MetricsWindow,
    OverallMetrics, PriorityAllocation, RateModifiers, Recommendation, RecommendationPriority,
    RecommendationType, Restrictions, RuleConditions, RuleType, SeasonPeriod,
)


def to_plain(value: Any) -> Any:
    """递归转换为 JSON 兼容结构"""
    if isinstance(value, DailyAllotments):
        return [to_plain(r) for r in value]
    if is_dataclass(value) and not isinstance(value, type):
        return {f.name: to_plain(getattr(value, f.name)) for f in fields(value)}
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: to_plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_plain(v) for v in value]
    return value


def config_to_dict(config: AllotmentConfig) -> Dict[str, Any]:
    return to_plain(config)


# ============== 反序列化 ==============

def _date(value: Optional[str]) -> Optional[date]:
    return date.fromisoformat(value) if value else None


def _datetime(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _pick(cls, data: Dict[str, Any], **overrides) -> Any:
    """只取 dataclass 已声明的字段，忽略多余键"""
    names = {f.name for f in fields(cls)}
    kwargs = {k: v for k, v in data.items() if k in names}
    kwargs.update(overrides)
    return cls(**kwargs)


def restrictions_from_dict(data: Optional[Dict[str, Any]]) -> Optional[Restrictions]:
    if data is None:
        return None
    return _pick(Restrictions, data)


def channel_from_dict(data: Dict[str, Any]) -> Channel:
    return _pick(
        Channel, data,
        restrictions=restrictions_from_dict(data.get("restrictions")) or Restrictions(),
        rate_modifiers=_pick(RateModifiers, data.get("rate_modifiers") or {}),
    )


def settings_from_dict(data: Dict[str, Any]) -> DefaultSettings:
    return _pick(
        DefaultSettings, data,
        default_allocation_method=AllocationMethod(
            data.get("default_allocation_method", AllocationMethod.PERCENTAGE.value)
        ),
    )


def rule_from_dict(data: Dict[str, Any]) -> AllocationRule:
    conditions = data.get("conditions") or {}
    return _pick(
        AllocationRule, data,
        rule_type=RuleType(data.get("rule_type", RuleType.PERCENTAGE.value)),
        conditions=_pick(
            RuleConditions, conditions,
            start_date=_date(conditions.get("start_date")),
            end_date=_date(conditions.get("end_date")),
            days_of_week=list(conditions.get("days_of_week") or []),
        ),
        percentage={k: float(v) for k, v in (data.get("percentage") or {}).items()},
        fixed={k: int(v) for k, v in (data.get("fixed") or {}).items()},
        priority_list=[_pick(PriorityAllocation, p) for p in data.get("priority_list") or []],
        fallback_rule=FallbackStrategy(data.get("fallback_rule", FallbackStrategy.EQUAL_DISTRIBUTION.value)),
    )


def record_from_dict(data: Dict[str, Any]) -> DailyRecord:
    return _pick(
        DailyRecord, data,
        date=date.fromisoformat(data["date"]),
        channel_allotments=[
            _pick(
                ChannelAllotment, a,
                restrictions=restrictions_from_dict(a.get("restrictions")),
                last_updated=_datetime(a.get("last_updated")),
            )
            for a in data.get("channel_allotments") or []
        ],
    )


def window_from_dict(data: Dict[str, Any]) -> MetricsWindow:
    return MetricsWindow(
        period_start=date.fromisoformat(data["period_start"]),
        period_end=date.fromisoformat(data["period_end"]),
        channel_metrics=[_pick(ChannelMetrics, m) for m in data.get("channel_metrics") or []],
        overall_metrics=_pick(OverallMetrics, data.get("overall_metrics") or {}),
    )


def analytics_from_dict(data: Dict[str, Any]) -> Analytics:
    return Analytics(
        last_calculated=_datetime(data.get("last_calculated")),
        next_calculation=_datetime(data.get("next_calculation")),
        calculation_frequency=CalculationFrequency(
            data.get("calculation_frequency", CalculationFrequency.DAILY.value)
        ),
        windows=[window_from_dict(w) for w in data.get("windows") or []],
        alerts=[
            _pick(
                Alert, a,
                alert_type=AlertType(a["alert_type"]),
                last_triggered=_datetime(a.get("last_triggered")),
            )
            for a in data.get("alerts") or []
        ],
        recommendations=[
            _pick(
                Recommendation, r,
                recommendation_type=RecommendationType(r["recommendation_type"]),
                priority=RecommendationPriority(r["priority"]),
                created_at=_datetime(r.get("created_at")),
            )
            for r in data.get("recommendations") or []
        ],
    )


def config_from_dict(data: Dict[str, Any]) -> AllotmentConfig:
    return AllotmentConfig(
        config_id=data["config_id"],
        hotel_id=data["hotel_id"],
        room_type_id=data["room_type_id"],
        name=data["name"],
        description=data.get("description"),
        status=ConfigStatus(data.get("status", ConfigStatus.ACTIVE.value)),
        timezone=data.get("timezone") or "UTC",
        default_settings=settings_from_dict(data["default_settings"]),
        channels=[channel_from_dict(c) for c in data.get("channels") or []],
        allocation_rules=[rule_from_dict(r) for r in data.get("allocation_rules") or []],
        daily_allotments=DailyAllotments([record_from_dict(r) for r in data.get("daily_allotments") or []]),
        analytics=analytics_from_dict(data.get("analytics") or {}),
        integration=_pick(ChannelManagerIntegration, data.get("integration") or {}),
        seasons=[
            SeasonPeriod(tag=s["tag"], start_date=date.fromisoformat(s["start_date"]),
                         end_date=date.fromisoformat(s["end_date"]))
            for s in data.get("seasons") or []
        ],
        version=data.get("version", 1),
        created_by=data.get("created_by"),
        updated_by=data.get("updated_by"),
        created_at=_datetime(data.get("created_at")),
        updated_at=_datetime(data.get("updated_at")),
    )


def record_to_dict(record: DailyRecord) -> Dict[str, Any]:
    return to_plain(record)


def records_to_list(records: List[DailyRecord]) -> List[Dict[str, Any]]:
    return [to_plain(r) for r in records]
