# Allotment Models
from app.models.allotment import AllotmentChangeLog, AllotmentConfigRecord, ChannelSyncAttempt

__all__ = ['AllotmentConfigRecord', 'AllotmentChangeLog', 'ChannelSyncAttempt']
