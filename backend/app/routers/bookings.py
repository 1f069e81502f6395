"""
预订路由
预留 / 释放房间，跨多晚原子执行
"""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from app.database import get_db
from app.models.schemas import BookingRequest
from app.security.auth import Caller, get_current_user
from app.security.rate_limit import BUCKET_BOOKING, rate_limit
from app.services.reservation_service import ReservationService
from app.services.runtime import get_clock, get_sync_port
from core.allotment.channel_sync import ChannelSyncPort
from core.allotment.clock import Clock

router = APIRouter(
    prefix="/allotments/bookings",
    tags=["配额预订"],
    dependencies=[Depends(rate_limit(BUCKET_BOOKING))],
)


def get_reservation_service(
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    sync_port: ChannelSyncPort = Depends(get_sync_port),
) -> ReservationService:
    return ReservationService(db, clock, sync_port)


@router.post("/process")
def process_booking(
    data: BookingRequest,
    service: ReservationService = Depends(get_reservation_service),
    current_user: Caller = Depends(get_current_user),
):
    """预留房间"""
    return service.reserve(data, current_user)


@router.post("/release")
def release_booking(
    data: BookingRequest,
    service: ReservationService = Depends(get_reservation_service),
    current_user: Caller = Depends(get_current_user),
):
    """释放房间"""
    return service.release(data, current_user)
