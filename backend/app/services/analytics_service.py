"""
分析服务 - 指标计算、建议、渠道表现与分配优化
每次分析都是一次 updated 变更：保存窗口、覆盖建议、评估告警
"""
import logging
from datetime import date, timedelta
from typing import Any, Callable, Dict, List, Optional
from sqlalchemy.orm import Session
from app.config import settings
from app.security.auth import Caller
from app.services.allotment_service import check_range, hotel_scope
from app.services.inventory_store import InventoryStore
from app.services.mutation import MutationRunner
from core.allotment import analytics, daily_records, recommendations
from core.allotment.change_log import make_entry
from core.allotment.clock import Clock, local_today
from core.allotment.errors import AllotmentError, AllotmentValidationError
from core.allotment.models import AllotmentConfig, ChangeAction
from core.allotment.serialization import to_plain

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"
OPTIMIZE_WINDOW_DAYS = 7


class AnalyticsService:
    """分析服务"""

    def __init__(self, db: Session, clock: Clock, sleep: Optional[Callable[[float], None]] = None):
        self.db = db
        self.clock = clock
        self.store = InventoryStore(db)
        self.runner = MutationRunner(self.store, clock, sleep=sleep)

    def _analytics_pass(self, config: AllotmentConfig, start: date, end: date) -> Dict[str, Any]:
        """在配置副本上执行一次分析"""
        now = self.clock.now_utc()
        window = analytics.compute_window(config, start, end)
        analytics.add_window(config.analytics, window, local_today(self.clock, config.timezone))
        config.analytics.recommendations = recommendations.generate(window, now)
        triggered = analytics.evaluate_alerts(config, window, now)
        config.analytics.last_calculated = now
        config.analytics.next_calculation = analytics.next_calculation(now, config.analytics.calculation_frequency)
        return {
            "window": to_plain(window),
            "alerts": to_plain(triggered),
            "recommendations": to_plain(config.analytics.recommendations),
        }

    def run(self, config_id: str, caller: Caller, start: date, end: date,
            group_by: str = "channel") -> Dict[str, Any]:
        """计算并保存指定区间的指标"""
        check_range(start, end)
        if group_by not in ("channel", "day"):
            raise AllotmentValidationError(
                "group_by 只能是 channel 或 day",
                errors=[{"field": "group_by", "message": "must be channel or day"}],
            )
        scope = hotel_scope(caller)

        def mutate(config: AllotmentConfig):
            daily_records.ensure_active(config, "analytics")
            payload = self._analytics_pass(config, start, end)
            if group_by == "day":
                payload["days"] = analytics.daily_breakdown(config, start, end)
            entry = make_entry(self.clock.now_utc(), ChangeAction.UPDATED, caller.user_id, {
                "analytics": {"period_start": start.isoformat(), "period_end": end.isoformat()},
            }, reason="计算分析指标")
            return payload, entry

        result = self.runner.run(lambda: self.store.load_by_id(config_id, scope), mutate, caller.user_id,
                                 operation="analytics")
        payload = result.value
        payload.update({"config_id": config_id, "version": result.config.version, "group_by": group_by})
        logger.info(f"Analytics pass for config {config_id} {start}..{end} completed")
        return payload

    def get_recommendations(self, config_id: str, caller: Caller) -> Dict[str, Any]:
        config = self.store.load_by_id(config_id, hotel_scope(caller))
        return {
            "config_id": config_id,
            "last_calculated": config.analytics.last_calculated.isoformat() if config.analytics.last_calculated else None,
            "recommendations": to_plain(config.analytics.recommendations),
        }

    def channel_performance(self, config_id: str, caller: Caller) -> Dict[str, Any]:
        """最新窗口的渠道指标，合并渠道优先级/佣金/状态"""
        config = self.store.load_by_id(config_id, hotel_scope(caller))
        window = config.analytics.latest_window()
        channels = []
        for channel in config.channels:
            metrics = window.channel(channel.channel_id) if window else None
            row = to_plain(metrics) if metrics else {"channel_id": channel.channel_id}
            row.update({
                "channel_name": channel.channel_name,
                "is_active": channel.is_active,
                "priority": channel.priority,
                "commission": channel.commission,
            })
            channels.append(row)
        return {
            "config_id": config_id,
            "period_start": window.period_start.isoformat() if window else None,
            "period_end": window.period_end.isoformat() if window else None,
            "channels": channels,
        }

    def optimize(self, config_id: str, caller: Caller) -> Dict[str, Any]:
        """基于最近 7 天收入追加一个未启用的优化规则"""
        scope = hotel_scope(caller)

        def mutate(config: AllotmentConfig):
            daily_records.ensure_active(config, "optimize")
            today = local_today(self.clock, config.timezone)
            start, end = today - timedelta(days=OPTIMIZE_WINDOW_DAYS), today - timedelta(days=1)
            self._analytics_pass(config, start, end)
            window = analytics.compute_window(config, start, end)
            proposal = recommendations.optimize(config, window, self.clock.now_utc())
            config.allocation_rules.append(proposal.rule)
            entry = make_entry(self.clock.now_utc(), ChangeAction.UPDATED, caller.user_id, {
                "optimized_rule": proposal.rule.rule_id,
                "percentage": proposal.rule.percentage,
            }, reason="生成优化分配规则")
            return proposal, entry

        result = self.runner.run(lambda: self.store.load_by_id(config_id, scope), mutate, caller.user_id,
                                 operation="optimize")
        proposal = result.value
        logger.info(f"Optimized allocation proposed for config {config_id}: rule {proposal.rule.rule_id}")
        return {
            "config_id": config_id,
            "version": result.config.version,
            "rule": to_plain(proposal.rule),
            "ranking": proposal.ranking,
            "projected_allocation": proposal.projected,
            "total_inventory": result.config.default_settings.total_inventory,
            "equal_share": proposal.equal_share,
        }

    def sweep(self) -> List[str]:
        """定时任务：对到期的 active 配置执行分析，返回处理的配置ID"""
        now = self.clock.now_utc()
        processed = []
        for config in self.store.list_active():
            if not analytics.is_due(config.analytics, now):
                continue
            today = local_today(self.clock, config.timezone)
            start = today - timedelta(days=settings.ANALYTICS_DEFAULT_WINDOW_DAYS)
            end = today - timedelta(days=1)

            def mutate(working: AllotmentConfig):
                self._analytics_pass(working, start, end)
                return None, make_entry(now, ChangeAction.UPDATED, SYSTEM_ACTOR, {
                    "analytics": {"period_start": start.isoformat(), "period_end": end.isoformat()},
                }, reason="定时分析")

            config_id = config.config_id
            try:
                self.runner.run(lambda: self.store.load_by_id(config_id), mutate, SYSTEM_ACTOR,
                                operation="analytics_sweep")
            except AllotmentError as e:
                logger.warning(f"Analytics sweep skipped config {config_id}: {e.kind} {e.message}")
                continue
            processed.append(config_id)
        logger.info(f"Analytics sweep processed {len(processed)} configs")
        return processed
