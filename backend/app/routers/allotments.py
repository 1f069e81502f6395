"""
房型配额路由
配置管理、规则应用、手工调整、可售查询、分析与导出
领域异常由 app.main 的统一处理器映射为 HTTP 状态码
"""
from datetime import date, datetime
from typing import List, Optional
from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session
from app.database import get_db
from app.models.schemas import (
    AllotmentCreate, AllotmentUpdate, ApplyRuleRequest, SyncRequest, UpdateAllocationRequest,
)
from app.security.auth import Caller, get_current_user, require_manager
from app.security.rate_limit import (
    BUCKET_ALLOCATION, BUCKET_ANALYTICS, BUCKET_BOOKING, rate_limit,
)
from app.services.allotment_service import AllotmentService
from app.services.analytics_service import AnalyticsService
from app.services.export_service import ExportService
from app.services.runtime import get_clock, get_sync_port
from core.allotment.channel_sync import ChannelSyncPort
from core.allotment.clock import Clock
from core.allotment.models import ChangeAction
from core.allotment.serialization import record_to_dict

router = APIRouter(prefix="/allotments", tags=["房型配额"])


def get_allotment_service(
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    sync_port: ChannelSyncPort = Depends(get_sync_port),
) -> AllotmentService:
    return AllotmentService(db, clock, sync_port)


def get_analytics_service(
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> AnalyticsService:
    return AnalyticsService(db, clock)


def _download(content: str, media_type: str, filename: str) -> StreamingResponse:
    return StreamingResponse(
        iter([content]),
        media_type=media_type,
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )


# ============== 配置管理 ==============

@router.post("", status_code=status.HTTP_201_CREATED,
             dependencies=[Depends(rate_limit(BUCKET_ALLOCATION))])
def create_allotment(
    data: AllotmentCreate,
    service: AllotmentService = Depends(get_allotment_service),
    current_user: Caller = Depends(require_manager),
):
    """创建配额配置"""
    config = service.create(data, current_user)
    return service.present(config)


@router.get("")
def list_allotments(
    status_filter: Optional[str] = Query(None, alias="status"),
    room_type_id: Optional[str] = None,
    search: Optional[str] = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    sort_by: str = Query("created_at", pattern="^(created_at|updated_at|name)$"),
    order: str = Query("desc", pattern="^(asc|desc)$"),
    service: AllotmentService = Depends(get_allotment_service),
    current_user: Caller = Depends(get_current_user),
):
    """分页查询配额配置"""
    configs, total = service.list(
        current_user, status=status_filter, room_type_id=room_type_id, search=search,
        page=page, page_size=page_size, sort_by=sort_by, order=order,
    )
    return {
        "total": total,
        "page": page,
        "page_size": page_size,
        "items": [service.summary(c) for c in configs],
    }


@router.get("/needs-sync")
def list_needs_sync(
    service: AllotmentService = Depends(get_allotment_service),
    current_user: Caller = Depends(get_current_user),
):
    """重试耗尽后等待同步的配置"""
    return {"items": service.sync.list_needs_sync(current_user.hotel_id)}


@router.get("/date-range")
def get_date_range(
    start_date: date,
    end_date: date,
    room_type_id: Optional[str] = None,
    service: AllotmentService = Depends(get_allotment_service),
    current_user: Caller = Depends(get_current_user),
):
    """区间查询"""
    items = service.date_range(current_user, start_date, end_date, room_type_id)
    return {"start_date": start_date, "end_date": end_date, "items": items}


@router.get("/availability", dependencies=[Depends(rate_limit(BUCKET_BOOKING))])
def get_availability(
    room_type_id: str,
    start_date: date,
    end_date: date,
    channel_id: Optional[str] = None,
    service: AllotmentService = Depends(get_allotment_service),
    current_user: Caller = Depends(get_current_user),
):
    """逐日可售查询"""
    days = service.availability(current_user, room_type_id, start_date, end_date, channel_id)
    return {"room_type_id": room_type_id, "days": days}


@router.get("/room-type/{room_type_id}")
def get_by_room_type(
    room_type_id: str,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    service: AllotmentService = Depends(get_allotment_service),
    current_user: Caller = Depends(get_current_user),
):
    """按房型获取启用的配置"""
    config = service.get_by_room_type(room_type_id, current_user)
    return service.present(config, start_date, end_date)


@router.get("/{config_id}")
def get_allotment(
    config_id: str,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    service: AllotmentService = Depends(get_allotment_service),
    current_user: Caller = Depends(get_current_user),
):
    """获取配置详情"""
    config = service.get(config_id, current_user)
    return service.present(config, start_date, end_date)


@router.put("/{config_id}", dependencies=[Depends(rate_limit(BUCKET_ALLOCATION))])
def update_allotment(
    config_id: str,
    data: AllotmentUpdate,
    service: AllotmentService = Depends(get_allotment_service),
    current_user: Caller = Depends(require_manager),
):
    """部分更新配置，可携带 expected_version"""
    config = service.update(config_id, data, current_user)
    return service.present(config)


@router.delete("/{config_id}", dependencies=[Depends(rate_limit(BUCKET_ALLOCATION))])
def delete_allotment(
    config_id: str,
    service: AllotmentService = Depends(get_allotment_service),
    current_user: Caller = Depends(require_manager),
):
    """软删除配置"""
    config = service.delete(config_id, current_user)
    return {"message": "配额配置已停用", **service.summary(config)}


# ============== 规则与调整 ==============

@router.post("/{config_id}/apply-rule", dependencies=[Depends(rate_limit(BUCKET_ALLOCATION))])
def apply_rule(
    config_id: str,
    data: ApplyRuleRequest,
    service: AllotmentService = Depends(get_allotment_service),
    current_user: Caller = Depends(require_manager),
):
    """在日期区间内应用分配规则"""
    result = service.apply_rule(config_id, data, current_user)
    outcomes = [o.to_dict() for o in result.value]
    return {
        "config_id": config_id,
        "version": result.config.version,
        "applied": sum(1 for o in result.value if o.status == "applied"),
        "skipped": sum(1 for o in result.value if o.status == "skipped"),
        "failed": sum(1 for o in result.value if o.status == "failed"),
        "outcomes": outcomes,
    }


@router.post("/{config_id}/update-allocation", dependencies=[Depends(rate_limit(BUCKET_ALLOCATION))])
def update_allocation(
    config_id: str,
    data: UpdateAllocationRequest,
    service: AllotmentService = Depends(get_allotment_service),
    current_user: Caller = Depends(get_current_user),
):
    """手工调整某日某渠道配额"""
    result = service.update_allocation(config_id, data, current_user)
    return {
        "config_id": config_id,
        "version": result.config.version,
        "record": record_to_dict(result.value),
    }


@router.post("/{config_id}/optimize", dependencies=[Depends(rate_limit(BUCKET_ALLOCATION))])
def optimize_allocation(
    config_id: str,
    service: AnalyticsService = Depends(get_analytics_service),
    current_user: Caller = Depends(require_manager),
):
    """按近 7 天收入生成优化规则（未启用）"""
    return service.optimize(config_id, current_user)


@router.post("/{config_id}/sync", dependencies=[Depends(rate_limit(BUCKET_ALLOCATION))])
def force_sync(
    config_id: str,
    data: SyncRequest,
    service: AllotmentService = Depends(get_allotment_service),
    current_user: Caller = Depends(require_manager),
):
    """强制推送渠道管理器"""
    return service.forced_sync(config_id, current_user, data.start_date, data.end_date, data.kinds)


# ============== 分析与导出 ==============

@router.get("/{config_id}/analytics", dependencies=[Depends(rate_limit(BUCKET_ANALYTICS))])
def get_analytics(
    config_id: str,
    start_date: date,
    end_date: date,
    group_by: str = Query("channel"),
    service: AnalyticsService = Depends(get_analytics_service),
    current_user: Caller = Depends(get_current_user),
):
    """计算并保存区间指标"""
    return service.run(config_id, current_user, start_date, end_date, group_by)


@router.get("/{config_id}/channel-performance", dependencies=[Depends(rate_limit(BUCKET_ANALYTICS))])
def get_channel_performance(
    config_id: str,
    service: AnalyticsService = Depends(get_analytics_service),
    current_user: Caller = Depends(get_current_user),
):
    return service.channel_performance(config_id, current_user)


@router.get("/{config_id}/recommendations", dependencies=[Depends(rate_limit(BUCKET_ANALYTICS))])
def get_recommendations(
    config_id: str,
    service: AnalyticsService = Depends(get_analytics_service),
    current_user: Caller = Depends(get_current_user),
):
    return service.get_recommendations(config_id, current_user)


@router.get("/{config_id}/change-log", dependencies=[Depends(rate_limit(BUCKET_ANALYTICS))])
def get_change_log(
    config_id: str,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    actions: Optional[List[ChangeAction]] = Query(None),
    format: Optional[str] = Query(None, description="json or csv，指定时以文件下载"),
    db: Session = Depends(get_db),
    current_user: Caller = Depends(get_current_user),
):
    """变更日志查询 / 导出"""
    service = ExportService(db)
    if format:
        return _download(*service.export_change_log(config_id, current_user, format, start, end, actions))
    entries = service.query_change_log(config_id, current_user, start, end, actions)
    return {"config_id": config_id, "count": len(entries), "entries": entries}


@router.get("/{config_id}/export", dependencies=[Depends(rate_limit(BUCKET_ANALYTICS))])
def export_allotment(
    config_id: str,
    format: str = Query("json", description="json or csv"),
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    db: Session = Depends(get_db),
    current_user: Caller = Depends(get_current_user),
):
    """导出每日配额"""
    service = ExportService(db)
    return _download(*service.export_allotments(config_id, current_user, format, start_date, end_date))
