"""
core/allotment/recommendations.py

建议生成与分配优化

建议规则（按最新分析窗口）:
- 利用率 < 60%: decrease_allocation (medium, 置信度 75)
- 利用率 > 90%: increase_allocation (high, 置信度 85)
- 转化率 < 20%: adjust_rates (medium, 置信度 70)
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from core.allotment.clock import new_id
from core.allotment.models import (
    AllocationRule, AllotmentConfig, MetricsWindow, Recommendation, RecommendationPriority,
    RecommendationType, RuleType,
)
from core.allotment.rules import allocate_percentage

LOW_UTILIZATION = 60.0
HIGH_UTILIZATION = 90.0
LOW_CONVERSION = 20.0

_PRIORITY_ORDER = {
    RecommendationPriority.CRITICAL: 0,
    RecommendationPriority.HIGH: 1,
    RecommendationPriority.MEDIUM: 2,
    RecommendationPriority.LOW: 3,
}


def generate(window: Optional[MetricsWindow], now: datetime) -> List[Recommendation]:
    """根据窗口生成建议列表（整体替换旧建议）"""
    if window is None:
        return []

    recommendations = []
    for metrics in window.channel_metrics:
        if metrics.total_allocated == 0:
            continue
        if metrics.utilization_rate < LOW_UTILIZATION:
            recommendations.append(Recommendation(
                recommendation_type=RecommendationType.DECREASE_ALLOCATION,
                channel_id=metrics.channel_id,
                priority=RecommendationPriority.MEDIUM,
                impact=f"利用率 {metrics.utilization_rate}%，减少分配以提高库存效率",
                confidence=75,
                created_at=now,
            ))
        elif metrics.utilization_rate > HIGH_UTILIZATION:
            recommendations.append(Recommendation(
                recommendation_type=RecommendationType.INCREASE_ALLOCATION,
                channel_id=metrics.channel_id,
                priority=RecommendationPriority.HIGH,
                impact=f"利用率 {metrics.utilization_rate}%，增加分配以获取更多收入",
                confidence=85,
                created_at=now,
            ))
        if metrics.conversion_rate < LOW_CONVERSION:
            recommendations.append(Recommendation(
                recommendation_type=RecommendationType.ADJUST_RATES,
                channel_id=metrics.channel_id,
                priority=RecommendationPriority.MEDIUM,
                impact=f"转化率 {metrics.conversion_rate}%，调整价格以提升转化",
                confidence=70,
                created_at=now,
            ))

    recommendations.sort(key=lambda r: (_PRIORITY_ORDER[r.priority], r.channel_id or ""))
    return recommendations


@dataclass
class OptimizationProposal:
    rule: AllocationRule
    ranking: List[str] = field(default_factory=list)
    projected: Dict[str, int] = field(default_factory=dict)
    equal_share: bool = False


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def optimized_percentages(window: MetricsWindow, active: List[str]) -> Dict[str, float]:
    """
    按收入排名计算百分比

    第一名 30-50%，第二名 25-35%，其余渠道平分剩余部分；合计不超过 100。
    """
    revenue = {ch: 0.0 for ch in active}
    for metrics in window.channel_metrics:
        if metrics.channel_id in revenue:
            revenue[metrics.channel_id] = metrics.total_revenue
    ranking = sorted(active, key=lambda ch: (-revenue[ch], ch))
    total = sum(revenue.values())

    if len(ranking) == 1:
        return {ranking[0]: 100.0}

    result = {}
    top, second = ranking[0], ranking[1]
    result[top] = float(int(_clamp(revenue[top] / total * 100, 30, 50)))
    result[second] = float(int(_clamp(revenue[second] / total * 100, 25, 35)))
    rest = ranking[2:]
    remainder = 100 - result[top] - result[second]
    for channel_id in rest:
        result[channel_id] = float(int(remainder / len(rest)))
    return result


def optimize(config: AllotmentConfig, window: MetricsWindow, now: datetime) -> OptimizationProposal:
    """
    基于收入生成一个未启用的百分比规则，并给出按默认库存的预计分配

    没有任何售出数据时给出等分规则。
    """
    active = sorted(c.channel_id for c in config.channels if c.is_active)
    total_revenue = sum(
        m.total_revenue for m in window.channel_metrics if m.channel_id in active
    )

    if not active:
        percentages: Dict[str, float] = {}
        equal_share = True
    elif total_revenue <= 0:
        share = float(100 // len(active))
        percentages = {ch: share for ch in active}
        equal_share = True
    else:
        percentages = optimized_percentages(window, active)
        equal_share = False

    rule = AllocationRule(
        rule_id=new_id(),
        name=f"Optimized allocation {now.date().isoformat()}",
        rule_type=RuleType.PERCENTAGE,
        is_active=False,
        priority=0,
        percentage=percentages,
    )
    return OptimizationProposal(
        rule=rule,
        ranking=sorted(percentages, key=lambda ch: (-percentages[ch], ch)),
        projected=allocate_percentage(config.default_settings.total_inventory, percentages),
        equal_share=equal_share,
    )
