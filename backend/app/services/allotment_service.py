"""
配额配置服务 - 配置的创建/查询/更新/删除、规则应用、手工调整与可售查询
所有变更通过 MutationRunner 执行（乐观并发 + 单条变更日志）
"""
import logging
from datetime import date
from typing import Any, Callable, Dict, List, Optional, Tuple
from sqlalchemy.orm import Session
from app.config import load_allotment_defaults, settings
from app.models.schemas import (
    AllotmentCreate, AllotmentUpdate, ApplyRuleRequest, UpdateAllocationRequest,
)
from app.security.auth import ROLE_ADMIN, Caller
from app.services.channel_sync_service import ChannelSyncService
from app.services.inventory_store import InventoryStore
from app.services.mutation import MutationResult, MutationRunner
from core.allotment import daily_records, rules
from core.allotment.change_log import make_entry
from core.allotment.channel_sync import ChannelSyncPort
from core.allotment.clock import Clock, iter_dates, local_today, new_id
from core.allotment.errors import (
    ActiveConfigExistsError, AllotmentValidationError, NotFoundError,
)
from core.allotment.models import (
    Alert, AlertType, AllocationRule, AllotmentConfig, CalculationFrequency, ChangeAction,
    ChannelManagerIntegration, ConfigStatus, DailyRecord, Restrictions, RuleType, SeasonPeriod,
)
from core.allotment.serialization import (
    channel_from_dict, config_to_dict, record_to_dict, rule_from_dict, settings_from_dict,
)

logger = logging.getLogger(__name__)

MAX_RANGE_DAYS = 366


def hotel_scope(caller: Caller) -> Optional[str]:
    """管理员可跨酒店访问"""
    return None if caller.role == ROLE_ADMIN else caller.hotel_id


def check_range(start: date, end: date, max_days: int = MAX_RANGE_DAYS) -> None:
    if start > end:
        raise AllotmentValidationError(
            "开始日期不能晚于结束日期",
            errors=[{"field": "start_date", "message": "start_date > end_date"}],
        )
    if (end - start).days + 1 > max_days:
        raise AllotmentValidationError(
            f"日期区间不能超过 {max_days} 天",
            errors=[{"field": "end_date", "message": f"range exceeds {max_days} days"}],
        )


class AllotmentService:
    """配额配置服务"""

    def __init__(self, db: Session, clock: Clock, sync_port: ChannelSyncPort,
                 sleep: Optional[Callable[[float], None]] = None):
        self.db = db
        self.clock = clock
        self.store = InventoryStore(db)
        self.runner = MutationRunner(self.store, clock, sleep=sleep)
        self.sync = ChannelSyncService(db, sync_port, clock, sleep=sleep)

    # ============== 展示 ==============

    def present(self, config: AllotmentConfig, start: Optional[date] = None,
                end: Optional[date] = None) -> Dict[str, Any]:
        """配置字典；指定区间时只包含区间内的每日记录"""
        data = config_to_dict(config)
        if start is not None or end is not None:
            data["daily_allotments"] = [
                record_to_dict(r) for r in daily_records.clip(config, start, end)
            ]
        needs_sync, last_sync = self.store.get_sync_state(config.config_id)
        data["needs_sync"] = needs_sync
        data["last_sync"] = last_sync.isoformat() if last_sync else None
        return data

    def summary(self, config: AllotmentConfig) -> Dict[str, Any]:
        return {
            "config_id": config.config_id,
            "hotel_id": config.hotel_id,
            "room_type_id": config.room_type_id,
            "name": config.name,
            "description": config.description,
            "status": config.status.value,
            "version": config.version,
            "total_inventory": config.default_settings.total_inventory,
            "channels": [c.channel_id for c in config.channels if c.is_active],
            "created_at": config.created_at.isoformat() if config.created_at else None,
            "updated_at": config.updated_at.isoformat() if config.updated_at else None,
        }

    # ============== 查询 ==============

    def get(self, config_id: str, caller: Caller) -> AllotmentConfig:
        return self.store.load_by_id(config_id, hotel_scope(caller))

    def get_by_room_type(self, room_type_id: str, caller: Caller) -> AllotmentConfig:
        return self.store.load(caller.hotel_id, room_type_id)

    def list(self, caller: Caller, **filters) -> Tuple[List[AllotmentConfig], int]:
        return self.store.list(caller.hotel_id, **filters)

    def date_range(self, caller: Caller, start: date, end: date,
                   room_type_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """区间查询：返回 active 配置及裁剪后的每日记录"""
        check_range(start, end)
        if room_type_id:
            configs = [self.store.load(caller.hotel_id, room_type_id)]
        else:
            configs, _ = self.store.list(
                caller.hotel_id, status=ConfigStatus.ACTIVE.value, page=1, page_size=1000
            )
        return [self.present(config, start, end) for config in configs]

    def availability(self, caller: Caller, room_type_id: str, start: date, end: date,
                     channel_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """逐日可售；没有记录的日期按默认库存计算"""
        check_range(start, end)
        config = self.store.load(caller.hotel_id, room_type_id)
        tolerance = config.default_settings.overbooking_tolerance()

        result = []
        for day in iter_dates(start, end):
            record = config.daily_allotments.get(day) or daily_records.recompute(
                DailyRecord(date=day, total_inventory=config.default_settings.total_inventory)
            )
            channels = []
            for channel in config.channels:
                if channel_id and channel.channel_id != channel_id:
                    continue
                allotment = record.channel(channel.channel_id)
                restrictions = daily_records.effective_restrictions(config, day, channel.channel_id)
                available = allotment.available if allotment else 0
                open_for_sale = (
                    channel.is_active and not restrictions.stop_sell and not record.is_blackout
                    and record.total_inventory > 0
                )
                channels.append({
                    "channel_id": channel.channel_id,
                    "allocated": allotment.allocated if allotment else 0,
                    "sold": allotment.sold if allotment else 0,
                    "blocked": allotment.blocked if allotment else 0,
                    "available": available,
                    "bookable": max(available + tolerance, 0) if open_for_sale else 0,
                    "closed_to_arrival": restrictions.closed_to_arrival,
                    "closed_to_departure": restrictions.closed_to_departure,
                    "stop_sell": restrictions.stop_sell or record.is_blackout,
                })
            result.append({
                "date": day.isoformat(),
                "total_inventory": record.total_inventory,
                "free_stock": record.free_stock,
                "total_sold": record.total_sold,
                "occupancy_rate": record.occupancy_rate,
                "channels": channels,
            })
        return result

    # ============== 创建 ==============

    def build_config(self, data: AllotmentCreate, caller: Caller) -> AllotmentConfig:
        """根据请求构建新配置，缺省的渠道/规则/告警使用默认定义"""
        defaults = load_allotment_defaults()
        now = self.clock.now_utc()

        if data.channels:
            channels = [channel_from_dict(c.model_dump(mode="json")) for c in data.channels]
        else:
            channels = [channel_from_dict(c) for c in defaults.get("channels", [])]

        config = AllotmentConfig(
            config_id=new_id(),
            hotel_id=caller.hotel_id,
            room_type_id=data.room_type_id,
            name=data.name,
            description=data.description,
            timezone=data.timezone or settings.DEFAULT_TIMEZONE,
            default_settings=settings_from_dict(data.default_settings.model_dump(mode="json")),
            channels=channels,
            integration=ChannelManagerIntegration(**data.integration.model_dump()),
            seasons=[SeasonPeriod(tag=s.tag, start_date=s.start_date, end_date=s.end_date) for s in data.seasons],
            created_by=caller.user_id,
            updated_by=caller.user_id,
            created_at=now,
            updated_at=now,
        )
        config.analytics.calculation_frequency = data.calculation_frequency

        if data.allocation_rules:
            config.allocation_rules = [self._build_rule(r.model_dump(mode="json")) for r in data.allocation_rules]
        else:
            config.allocation_rules = [self._default_rule(config, defaults.get("default_rule") or {})]

        alert_defs = (
            [a.model_dump(mode="json") for a in data.alerts] if data.alerts is not None
            else defaults.get("alerts", [])
        )
        config.analytics.alerts = [
            Alert(alert_type=AlertType(a["alert_type"]), threshold=float(a["threshold"]),
                  is_active=a.get("is_active", True))
            for a in alert_defs
        ]

        for rule in config.allocation_rules:
            rules.validate_rule(rule, config)
        return config

    def _build_rule(self, payload: Dict[str, Any]) -> AllocationRule:
        payload["rule_id"] = payload.get("rule_id") or new_id()
        return rule_from_dict(payload)

    def _default_rule(self, config: AllotmentConfig, definition: Dict[str, Any]) -> AllocationRule:
        """启用渠道等分的百分比规则"""
        active = [c.channel_id for c in config.channels if c.is_active]
        share = float(100 // len(active)) if active else 0.0
        return rule_from_dict({
            "rule_id": new_id(),
            "name": definition.get("name", "Default Percentage Allocation"),
            "rule_type": RuleType.PERCENTAGE.value,
            "is_active": definition.get("is_active", True),
            "priority": definition.get("priority", 1),
            "fallback_rule": definition.get("fallback_rule", "equal_distribution"),
            "percentage": {ch: share for ch in active},
        })

    def create(self, data: AllotmentCreate, caller: Caller) -> AllotmentConfig:
        """创建配置并按首个匹配规则初始化未来若干天的每日记录"""
        config = self.build_config(data, caller)
        now = self.clock.now_utc()
        today = local_today(self.clock, config.timezone)

        try:
            self.store.load(config.hotel_id, config.room_type_id)
        except NotFoundError:
            pass
        else:
            raise ActiveConfigExistsError(
                f"房型 {config.room_type_id} 已存在启用的配额配置",
                room_type_id=config.room_type_id,
            )

        outcomes = rules.seed_horizon(config, today, settings.INITIAL_HORIZON_DAYS, now, today)
        entry = make_entry(now, ChangeAction.CREATED, caller.user_id, {
            "room_type_id": config.room_type_id,
            "total_inventory": config.default_settings.total_inventory,
            "channels": [c.channel_id for c in config.channels],
            "seeded_days": len(outcomes),
        }, reason="创建配额配置")
        self.store.insert(config, [entry])
        logger.info(f"Created allotment config {config.config_id} for room type {config.room_type_id}")
        return config

    # ============== 更新 / 删除 ==============

    def _loader(self, config_id: str, caller: Caller):
        scope = hotel_scope(caller)
        return lambda: self.store.load_by_id(config_id, scope)

    def update(self, config_id: str, data: AllotmentUpdate, caller: Caller) -> AllotmentConfig:
        patch = data.model_dump(exclude_unset=True, exclude={"expected_version", "reason"}, mode="json")
        if not patch:
            raise AllotmentValidationError("没有需要更新的字段", errors=[{"field": "body", "message": "empty"}])

        def mutate(config: AllotmentConfig):
            changed = {}
            # 非启用配置只能在同一次更新中修改状态（重新启用）
            if "status" not in patch:
                daily_records.ensure_active(config, "update_config")
            if "name" in patch:
                config.name = data.name
                changed["name"] = data.name
            if "description" in patch:
                config.description = data.description
                changed["description"] = data.description
            if "status" in patch and data.status is not None:
                config.status = data.status
                changed["status"] = data.status.value
            if "timezone" in patch and data.timezone:
                config.timezone = data.timezone
                changed["timezone"] = data.timezone
            if "channels" in patch and data.channels is not None:
                config.channels = [channel_from_dict(c) for c in patch["channels"]]
                changed["channels"] = [c.channel_id for c in config.channels]
            if "allocation_rules" in patch and data.allocation_rules is not None:
                config.allocation_rules = [self._build_rule(r) for r in patch["allocation_rules"]]
                changed["allocation_rules"] = [r.rule_id for r in config.allocation_rules]
            if "seasons" in patch and data.seasons is not None:
                config.seasons = [
                    SeasonPeriod(tag=s.tag, start_date=s.start_date, end_date=s.end_date) for s in data.seasons
                ]
                changed["seasons"] = patch["seasons"]
            if "alerts" in patch and data.alerts is not None:
                config.analytics.alerts = [
                    Alert(alert_type=a.alert_type, threshold=a.threshold, is_active=a.is_active)
                    for a in data.alerts
                ]
                changed["alerts"] = patch["alerts"]
            if "integration" in patch and data.integration is not None:
                config.integration = ChannelManagerIntegration(**data.integration.model_dump())
                changed["integration"] = patch["integration"]
            if "calculation_frequency" in patch and data.calculation_frequency is not None:
                config.analytics.calculation_frequency = CalculationFrequency(data.calculation_frequency)
                changed["calculation_frequency"] = patch["calculation_frequency"]
            if "default_settings" in patch and data.default_settings is not None:
                self._apply_settings(config, patch["default_settings"])
                changed["default_settings"] = patch["default_settings"]

            for rule in config.allocation_rules:
                rules.validate_rule(rule, config)
            return None, make_entry(self.clock.now_utc(), ChangeAction.UPDATED, caller.user_id,
                                    changed, reason=data.reason)

        result = self.runner.run(
            self._loader(config_id, caller), mutate, caller.user_id,
            expected_version=data.expected_version, operation="update_config",
        )
        logger.info(f"Updated allotment config {config_id} -> v{result.config.version}")
        return result.config

    def _apply_settings(self, config: AllotmentConfig, payload: Dict[str, Any]) -> None:
        """更新默认设置；总库存变化时同步到今天及以后的每日记录并重新校验"""
        new_settings = settings_from_dict(payload)
        inventory_changed = new_settings.total_inventory != config.default_settings.total_inventory
        config.default_settings = new_settings
        today = local_today(self.clock, config.timezone)
        for record in list(config.daily_allotments):
            if inventory_changed and record.date >= today:
                record.total_inventory = new_settings.total_inventory
            if record.date >= today:
                daily_records.recompute(record)
                daily_records.validate(record, new_settings)

    def delete(self, config_id: str, caller: Caller) -> AllotmentConfig:
        """软删除：status = inactive"""
        def mutate(config: AllotmentConfig):
            previous = config.status.value
            config.status = ConfigStatus.INACTIVE
            return None, make_entry(self.clock.now_utc(), ChangeAction.DELETED, caller.user_id,
                                    {"status": {"from": previous, "to": ConfigStatus.INACTIVE.value}},
                                    reason="软删除")

        result = self.runner.run(self._loader(config_id, caller), mutate, caller.user_id, operation="delete_config")
        logger.info(f"Soft-deleted allotment config {config_id}")
        return result.config

    # ============== 规则应用 / 手工调整 ==============

    def apply_rule(self, config_id: str, data: ApplyRuleRequest, caller: Caller) -> MutationResult:
        check_range(data.start_date, data.end_date)
        deadline = self.runner.new_deadline()

        def mutate(config: AllotmentConfig):
            daily_records.ensure_active(config, "apply_rule")
            rule = config.get_rule(data.rule_id)
            if rule is None:
                raise NotFoundError(f"分配规则不存在: {data.rule_id}", rule_id=data.rule_id)
            if not rule.is_active:
                raise AllotmentValidationError(
                    f"分配规则未启用: {rule.name}",
                    errors=[{"field": "rule_id", "message": "rule is inactive"}],
                )
            outcomes = rules.apply_rule(
                config, rule, data.start_date, data.end_date,
                now=self.clock.now_utc(), today=local_today(self.clock, config.timezone),
                deadline=deadline,
            )
            changes = {
                "rule_id": rule.rule_id,
                "start_date": data.start_date.isoformat(),
                "end_date": data.end_date.isoformat(),
                "applied": [o.date.isoformat() for o in outcomes if o.status == "applied"],
                "failed": [o.date.isoformat() for o in outcomes if o.status == "failed"],
            }
            return outcomes, make_entry(self.clock.now_utc(), ChangeAction.UPDATED, caller.user_id,
                                        changes, reason=data.reason or f"应用规则 {rule.name}")

        result = self.runner.run(self._loader(config_id, caller), mutate, caller.user_id,
                                 deadline=deadline, operation="apply_rule")
        self.sync.auto_sync(result.config, data.start_date, data.end_date)
        return result

    def update_allocation(self, config_id: str, data: UpdateAllocationRequest, caller: Caller) -> MutationResult:
        patch = daily_records.ChannelPatch(
            allocated=data.allocated,
            sold=data.sold,
            blocked=data.blocked,
            rate=data.rate,
            restrictions=(
                Restrictions(**data.restrictions.model_dump()) if data.restrictions else None
            ),
        )

        def mutate(config: AllotmentConfig):
            daily_records.ensure_active(config, "update_allocation")
            if config.get_channel(data.channel_id.value) is None:
                raise NotFoundError(f"渠道不存在: {data.channel_id.value}", channel_id=data.channel_id.value)
            record = daily_records.upsert_channel(config, data.date, data.channel_id.value, patch, self.clock.now_utc())
            changes = {"date": data.date.isoformat(), "channel_id": data.channel_id.value, **patch.changed_fields()}
            return record, make_entry(self.clock.now_utc(), ChangeAction.UPDATED, caller.user_id,
                                      changes, reason=data.reason or "手工调整配额")

        result = self.runner.run(self._loader(config_id, caller), mutate, caller.user_id,
                                 operation="update_allocation")
        self.sync.auto_sync(result.config, data.date, data.date)
        return result

    def forced_sync(self, config_id: str, caller: Caller, start: date, end: date,
                    kinds: List[str]) -> Dict[str, Any]:
        check_range(start, end)
        config = self.get(config_id, caller)
        return self.sync.push(config, start, end, kinds)
