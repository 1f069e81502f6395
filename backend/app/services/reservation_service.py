"""
预订服务 - 预订/释放的编排层
在乐观并发下调用预订引擎，提交后按集成配置推送渠道
"""
import logging
from datetime import timedelta
from typing import Any, Callable, Dict, Optional
from sqlalchemy.orm import Session
from app.config import settings
from app.models.schemas import BookingRequest
from app.security.auth import Caller, ensure_hotel_access
from app.services.channel_sync_service import ChannelSyncService
from app.services.inventory_store import InventoryStore
from app.services.mutation import MutationRunner
from core.allotment import reservation
from core.allotment.change_log import make_entry
from core.allotment.channel_sync import ChannelSyncPort
from core.allotment.clock import Clock
from core.allotment.models import AllotmentConfig, ChangeAction

logger = logging.getLogger(__name__)


class ReservationService:
    """预订服务"""

    def __init__(self, db: Session, clock: Clock, sync_port: ChannelSyncPort,
                 sleep: Optional[Callable[[float], None]] = None):
        self.db = db
        self.clock = clock
        self.store = InventoryStore(db)
        self.runner = MutationRunner(self.store, clock, sleep=sleep)
        self.sync = ChannelSyncService(db, sync_port, clock, sleep=sleep)

    def _stay(self, data: BookingRequest) -> reservation.StayRequest:
        return reservation.StayRequest(
            channel_id=data.channel_id.value,
            check_in=data.check_in,
            check_out=data.check_out,
            rooms=data.rooms,
            booked_on=data.booked_on,
        )

    def _hotel_id(self, data: BookingRequest, caller: Caller) -> str:
        hotel_id = data.hotel_id or caller.hotel_id
        ensure_hotel_access(caller, hotel_id)
        return hotel_id

    def _run(self, data: BookingRequest, caller: Caller, action: ChangeAction) -> Dict[str, Any]:
        hotel_id = self._hotel_id(data, caller)
        stay = self._stay(data)
        deadline = self.runner.new_deadline()

        def mutate(config: AllotmentConfig):
            now = self.clock.now_utc()
            if action == ChangeAction.ALLOCATED:
                result = reservation.reserve(
                    config, stay, now,
                    auto_create=settings.AUTO_CREATE_CHANNEL_ALLOTMENT,
                    deadline=deadline,
                )
            else:
                result = reservation.release(config, stay, now, deadline=deadline)
            changes = result.changes()
            if data.booking_reference:
                changes["booking_reference"] = data.booking_reference
            return result, make_entry(now, action, caller.user_id, changes, reason=data.reason)

        outcome = self.runner.run(
            lambda: self.store.load(hotel_id, data.room_type_id),
            mutate, caller.user_id, deadline=deadline, operation=action.value,
        )
        logger.info(
            f"{action.value} {data.rooms} rooms on {data.channel_id.value} "
            f"{data.check_in}..{data.check_out} config={outcome.config.config_id} v{outcome.config.version}"
        )
        self.sync.auto_sync(outcome.config, data.check_in, data.check_out - timedelta(days=1))

        return {
            "config_id": outcome.config.config_id,
            "version": outcome.config.version,
            "channel_id": stay.channel_id,
            "check_in": stay.check_in.isoformat(),
            "check_out": stay.check_out.isoformat(),
            "rooms": stay.rooms,
            "allocations": [
                {
                    "date": a.date.isoformat(),
                    "sold": a.sold,
                    "available": a.available,
                    "overbooking": a.overbooking,
                    "from_overbooking": a.from_overbooking,
                }
                for a in outcome.value.allocations
            ],
        }

    def reserve(self, data: BookingRequest, caller: Caller) -> Dict[str, Any]:
        """预留房间"""
        return self._run(data, caller, ChangeAction.ALLOCATED)

    def release(self, data: BookingRequest, caller: Caller) -> Dict[str, Any]:
        """释放房间"""
        return self._run(data, caller, ChangeAction.RELEASED)
