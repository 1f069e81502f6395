"""
运行时依赖 - 时钟与渠道同步端口
测试中通过 app.dependency_overrides 替换
"""
from core.allotment.channel_sync import ChannelSyncPort, LoggingChannelSyncPort
from core.allotment.clock import Clock, SystemClock

_clock: Clock = SystemClock()
_sync_port: ChannelSyncPort = LoggingChannelSyncPort()


def get_clock() -> Clock:
    return _clock


def get_sync_port() -> ChannelSyncPort:
    return _sync_port


def set_sync_port(port: ChannelSyncPort) -> None:
    """接入具体渠道管理器时调用"""
    global _sync_port
    _sync_port = port
