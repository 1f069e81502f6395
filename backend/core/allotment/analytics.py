"""
core/allotment/analytics.py

分析聚合 - 从每日记录计算渠道级与整体指标

同一窗口重复计算结果完全一致；没有数据时返回 0，不做任何估算。
"""
from datetime import date, datetime, timedelta
from typing import Dict, List, Optional
import calendar

from core.allotment.models import (
    Alert, AlertType, AllotmentConfig, Analytics, CalculationFrequency, ChannelMetrics,
    MetricsWindow, OverallMetrics,
)

RETENTION_MONTHS = 12

_FREQUENCY_DELTA = {
    CalculationFrequency.HOURLY: timedelta(hours=1),
    CalculationFrequency.DAILY: timedelta(days=1),
    CalculationFrequency.WEEKLY: timedelta(days=7),
}


def _ratio(numerator: float, denominator: float, scale: float = 1.0) -> float:
    if not denominator:
        return 0.0
    return round(numerator / denominator * scale, 2)


def compute_window(config: AllotmentConfig, start: date, end: date) -> MetricsWindow:
    """计算 [start, end] 的指标窗口"""
    records = config.daily_allotments.between(start, end)

    channel_ids = [c.channel_id for c in config.channels]
    for record in records:
        for allotment in record.channel_allotments:
            if allotment.channel_id not in channel_ids:
                channel_ids.append(allotment.channel_id)

    sums: Dict[str, Dict[str, float]] = {
        ch: {"allocated": 0, "sold": 0, "revenue": 0.0} for ch in channel_ids
    }
    for record in records:
        for allotment in record.channel_allotments:
            bucket = sums[allotment.channel_id]
            bucket["allocated"] += allotment.allocated
            bucket["sold"] += allotment.sold
            bucket["revenue"] += allotment.sold * allotment.rate

    channel_metrics = []
    for channel_id in channel_ids:
        bucket = sums[channel_id]
        allocated, sold, revenue = int(bucket["allocated"]), int(bucket["sold"]), bucket["revenue"]
        conversion = _ratio(sold, allocated, 100)
        channel_metrics.append(ChannelMetrics(
            channel_id=channel_id,
            total_allocated=allocated,
            total_sold=sold,
            total_revenue=round(revenue, 2),
            average_rate=_ratio(revenue, sold),
            conversion_rate=conversion,
            utilization_rate=conversion,
            revenue_per_available_room=_ratio(revenue, allocated),
        ))

    total_allocated = sum(m.total_allocated for m in channel_metrics)
    total_sold = sum(m.total_sold for m in channel_metrics)
    total_revenue = round(sum(sums[ch]["revenue"] for ch in channel_ids), 2)
    overall = OverallMetrics(
        total_inventory=sum(r.total_inventory for r in records),
        total_allocated=total_allocated,
        total_sold=total_sold,
        total_revenue=total_revenue,
        average_occupancy_rate=_ratio(sum(r.occupancy_rate for r in records), len(records)),
        average_daily_rate=_ratio(total_revenue, total_sold),
        revenue_per_available_room=_ratio(total_revenue, total_allocated),
    )
    return MetricsWindow(period_start=start, period_end=end, channel_metrics=channel_metrics, overall_metrics=overall)


def daily_breakdown(config: AllotmentConfig, start: date, end: date) -> List[Dict]:
    """按日分组的指标"""
    rows = []
    for record in config.daily_allotments.between(start, end):
        revenue = sum(a.sold * a.rate for a in record.channel_allotments)
        rows.append({
            "date": record.date.isoformat(),
            "total_inventory": record.total_inventory,
            "total_allocated": record.total_allocated(),
            "total_sold": record.total_sold,
            "free_stock": record.free_stock,
            "occupancy_rate": record.occupancy_rate,
            "total_revenue": round(revenue, 2),
        })
    return rows


def _months_before(day: date, months: int) -> date:
    year, month = day.year, day.month - months
    while month < 1:
        month += 12
        year -= 1
    # 月末日期不存在时取该月最后一天
    return date(year, month, min(day.day, calendar.monthrange(year, month)[1]))


def add_window(analytics: Analytics, window: MetricsWindow, today: date) -> None:
    """保存窗口（同区间覆盖），并淘汰 12 个月之前结束的窗口"""
    cutoff = _months_before(today, RETENTION_MONTHS)
    kept = [
        w for w in analytics.windows
        if w.period_end >= cutoff
        and (w.period_start, w.period_end) != (window.period_start, window.period_end)
    ]
    kept.append(window)
    kept.sort(key=lambda w: (w.period_end, w.period_start))
    analytics.windows = kept


def next_calculation(now: datetime, frequency: CalculationFrequency) -> datetime:
    return now + _FREQUENCY_DELTA[frequency]


def is_due(analytics: Analytics, now: datetime) -> bool:
    return analytics.next_calculation is None or analytics.next_calculation <= now


def _alert_triggered(alert: Alert, window: MetricsWindow, config: AllotmentConfig) -> bool:
    overall = window.overall_metrics
    allocated = [m for m in window.channel_metrics if m.total_allocated > 0]

    if alert.alert_type == AlertType.LOW_OCCUPANCY:
        return overall.average_occupancy_rate < alert.threshold
    if alert.alert_type == AlertType.HIGH_OCCUPANCY:
        return overall.average_occupancy_rate > alert.threshold
    if alert.alert_type == AlertType.CHANNEL_UNDERPERFORMING:
        return any(m.utilization_rate < alert.threshold for m in allocated)
    if alert.alert_type == AlertType.INVENTORY_IMBALANCE:
        if len(allocated) < 2:
            return False
        rates = [m.utilization_rate for m in allocated]
        return max(rates) - min(rates) > alert.threshold
    if alert.alert_type == AlertType.OVERBOOKING_RISK:
        records = config.daily_allotments.between(window.period_start, window.period_end)
        return any(r.occupancy_rate >= alert.threshold for r in records)
    return False


def evaluate_alerts(config: AllotmentConfig, window: MetricsWindow, now: datetime) -> List[Alert]:
    """评估启用的告警，触发的告警写入 last_triggered"""
    triggered = []
    for alert in config.analytics.alerts:
        if alert.is_active and _alert_triggered(alert, window, config):
            alert.last_triggered = now
            triggered.append(alert)
    return triggered


def latest_channel_metrics(config: AllotmentConfig, channel_id: str) -> Optional[ChannelMetrics]:
    window = config.analytics.latest_window()
    return window.channel(channel_id) if window else None
