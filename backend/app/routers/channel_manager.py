"""
渠道管理器回调路由
"""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from app.database import get_db
from app.models.schemas import WebhookRequest
from app.security.auth import Caller, require_webhook_caller
from app.security.rate_limit import webhook_rate_limit
from app.services.channel_sync_service import ChannelSyncService
from app.services.runtime import get_clock, get_sync_port
from core.allotment.channel_sync import ChannelSyncPort
from core.allotment.clock import Clock

router = APIRouter(prefix="/channel-manager", tags=["渠道管理器"])


@router.post("/webhook", dependencies=[Depends(webhook_rate_limit)])
def channel_webhook(
    data: WebhookRequest,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    sync_port: ChannelSyncPort = Depends(get_sync_port),
    current_user: Caller = Depends(require_webhook_caller),
):
    """应用渠道管理器回传的库存变更"""
    service = ChannelSyncService(db, sync_port, clock)
    return service.apply_webhook(data, current_user)
