# Business Services
from app.services.allotment_service import AllotmentService
from app.services.reservation_service import ReservationService
from app.services.analytics_service import AnalyticsService
from app.services.channel_sync_service import ChannelSyncService
from app.services.export_service import ExportService

__all__ = [
    'AllotmentService', 'ReservationService', 'AnalyticsService',
    'ChannelSyncService', 'ExportService'
]
