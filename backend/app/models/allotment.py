"""
房型配额持久化模型
配置整体以 JSON 文档保存；version 用于乐观并发控制
同步状态（needs_sync / last_sync）不属于版本化文档
"""
from sqlalchemy import Boolean, Column, Date, DateTime, Index, Integer, JSON, String, Text, text

from app.database import Base


class AllotmentConfigRecord(Base):
    """房型配额配置"""
    __tablename__ = "room_type_allotments"

    id = Column(String(32), primary_key=True)
    hotel_id = Column(String(64), nullable=False, index=True)
    room_type_id = Column(String(64), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    description = Column(Text)
    status = Column(String(20), nullable=False, default="active", index=True)
    version = Column(Integer, nullable=False, default=1)
    timezone = Column(String(64), nullable=False, default="UTC")
    document = Column(JSON, nullable=False)          # 渠道/规则/每日记录/分析
    needs_sync = Column(Boolean, nullable=False, default=False, index=True)
    last_sync = Column(DateTime)
    created_by = Column(String(64))
    updated_by = Column(String(64))
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)

    __table_args__ = (
        # 同一酒店同一房型只允许一个 active 配置
        Index(
            "uq_room_type_allotments_active",
            "hotel_id", "room_type_id",
            unique=True,
            sqlite_where=text("status = 'active'"),
            postgresql_where=text("status = 'active'"),
        ),
    )


class AllotmentChangeLog(Base):
    """配额变更日志（只追加）"""
    __tablename__ = "allotment_change_logs"

    id = Column(Integer, primary_key=True, index=True)
    config_id = Column(String(32), nullable=False)
    timestamp = Column(DateTime, nullable=False)
    user_id = Column(String(64))
    action = Column(String(20), nullable=False)     # created/updated/deleted/allocated/released/synced
    changes = Column(JSON)
    reason = Column(Text)

    __table_args__ = (
        Index("ix_allotment_change_logs_config_ts", "config_id", "timestamp"),
    )


class ChannelSyncAttempt(Base):
    """渠道同步推送记录"""
    __tablename__ = "channel_sync_attempts"

    id = Column(Integer, primary_key=True, index=True)
    config_id = Column(String(32), nullable=False, index=True)
    kind = Column(String(20), nullable=False)       # allocation/rate/restrictions
    attempt = Column(Integer, nullable=False)
    success = Column(Boolean, nullable=False)
    error = Column(Text)
    start_date = Column(Date)
    end_date = Column(Date)
    created_at = Column(DateTime, nullable=False)
