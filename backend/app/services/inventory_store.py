"""
库存存储 - 配额配置的持久化与乐观并发控制
保存 = UPDATE ... WHERE id = :id AND version = :expected，影响 0 行即版本冲突
变更日志与配置保存在同一事务中写入
"""
import logging
from datetime import date, datetime, UTC
from typing import List, Optional, Sequence, Tuple
from sqlalchemy import asc, desc, or_, update
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.orm import Session
from app.models.allotment import AllotmentChangeLog, AllotmentConfigRecord, ChannelSyncAttempt
from core.allotment.errors import (
    ActiveConfigExistsError, NotFoundError, StorageUnavailableError, VersionConflictError,
)
from core.allotment.models import AllotmentConfig, ChangeAction, ChangeLogEntry, ConfigStatus
from core.allotment.serialization import config_from_dict, config_to_dict

logger = logging.getLogger(__name__)

SORT_FIELDS = {
    "created_at": AllotmentConfigRecord.created_at,
    "updated_at": AllotmentConfigRecord.updated_at,
    "name": AllotmentConfigRecord.name,
}


def to_db_time(value: Optional[datetime]) -> Optional[datetime]:
    """数据库中统一保存无时区的 UTC 时间"""
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(UTC).replace(tzinfo=None)
    return value


def from_db_time(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    return value.replace(tzinfo=UTC) if value.tzinfo is None else value


def _is_transient(error: DBAPIError) -> bool:
    return isinstance(error, OperationalError) or bool(getattr(error, "connection_invalidated", False))


def _active_exists(config: AllotmentConfig) -> ActiveConfigExistsError:
    return ActiveConfigExistsError(
        f"房型 {config.room_type_id} 已存在启用的配额配置",
        room_type_id=config.room_type_id,
    )


class InventoryStore:
    """配额配置存储"""

    def __init__(self, db: Session):
        self.db = db

    # ============== 读取 ==============

    def _to_config(self, row: AllotmentConfigRecord) -> AllotmentConfig:
        config = config_from_dict(row.document)
        config.version = row.version
        config.status = ConfigStatus(row.status)
        config.created_at = from_db_time(row.created_at)
        config.updated_at = from_db_time(row.updated_at)
        return config

    def _run_read(self, func):
        try:
            return func()
        except DBAPIError as e:
            if _is_transient(e):
                self.db.rollback()
                raise StorageUnavailableError(f"存储不可用: {e.__class__.__name__}")
            raise

    def load(self, hotel_id: str, room_type_id: str) -> AllotmentConfig:
        """按酒店与房型加载 active 配置"""
        row = self._run_read(lambda: self.db.query(AllotmentConfigRecord).populate_existing().filter(
            AllotmentConfigRecord.hotel_id == hotel_id,
            AllotmentConfigRecord.room_type_id == room_type_id,
            AllotmentConfigRecord.status == ConfigStatus.ACTIVE.value,
        ).first())
        if not row:
            raise NotFoundError(f"房型 {room_type_id} 没有启用的配额配置", room_type_id=room_type_id)
        return self._to_config(row)

    def load_by_id(self, config_id: str, hotel_id: Optional[str] = None) -> AllotmentConfig:
        """按ID加载配置；指定 hotel_id 时只在该酒店内查找"""
        query = self.db.query(AllotmentConfigRecord).populate_existing().filter(AllotmentConfigRecord.id == config_id)
        if hotel_id is not None:
            query = query.filter(AllotmentConfigRecord.hotel_id == hotel_id)
        row = self._run_read(query.first)
        if not row:
            raise NotFoundError(f"配额配置不存在: {config_id}", config_id=config_id)
        return self._to_config(row)

    def list(self, hotel_id: str, status: Optional[str] = None, room_type_id: Optional[str] = None,
             search: Optional[str] = None, page: int = 1, page_size: int = 20,
             sort_by: str = "created_at", order: str = "desc") -> Tuple[List[AllotmentConfig], int]:
        """分页查询，默认按创建时间倒序，ID 作为稳定次序"""
        query = self.db.query(AllotmentConfigRecord).filter(AllotmentConfigRecord.hotel_id == hotel_id)
        if status:
            query = query.filter(AllotmentConfigRecord.status == status)
        if room_type_id:
            query = query.filter(AllotmentConfigRecord.room_type_id == room_type_id)
        if search:
            query = query.filter(or_(
                AllotmentConfigRecord.name.contains(search),
                AllotmentConfigRecord.description.contains(search),
            ))

        direction = asc if order == "asc" else desc
        column = SORT_FIELDS.get(sort_by, AllotmentConfigRecord.created_at)
        total = self._run_read(query.count)
        rows = self._run_read(
            query.order_by(direction(column), direction(AllotmentConfigRecord.id))
            .offset((page - 1) * page_size).limit(page_size).all
        )
        return [self._to_config(row) for row in rows], total

    def list_active(self) -> List[AllotmentConfig]:
        rows = self._run_read(self.db.query(AllotmentConfigRecord).filter(
            AllotmentConfigRecord.status == ConfigStatus.ACTIVE.value
        ).all)
        return [self._to_config(row) for row in rows]

    def list_needs_sync(self, hotel_id: Optional[str] = None) -> List[AllotmentConfigRecord]:
        """hotel_id 为空时返回所有酒店"""
        query = self.db.query(AllotmentConfigRecord).filter(AllotmentConfigRecord.needs_sync.is_(True))
        if hotel_id is not None:
            query = query.filter(AllotmentConfigRecord.hotel_id == hotel_id)
        return self._run_read(query.order_by(AllotmentConfigRecord.updated_at.desc()).all)

    def get_sync_state(self, config_id: str) -> Tuple[bool, Optional[datetime]]:
        row = self._run_read(self.db.query(AllotmentConfigRecord).filter(
            AllotmentConfigRecord.id == config_id
        ).first)
        if not row:
            raise NotFoundError(f"配额配置不存在: {config_id}", config_id=config_id)
        return bool(row.needs_sync), from_db_time(row.last_sync)

    # ============== 写入 ==============

    def _log_rows(self, config_id: str, entries: Sequence[ChangeLogEntry]) -> List[AllotmentChangeLog]:
        return [
            AllotmentChangeLog(
                config_id=config_id,
                timestamp=to_db_time(entry.timestamp),
                user_id=entry.user_id,
                action=entry.action.value,
                changes=entry.changes,
                reason=entry.reason,
            )
            for entry in entries
        ]

    def _commit(self) -> None:
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise
        except DBAPIError as e:
            self.db.rollback()
            if _is_transient(e):
                raise StorageUnavailableError(f"存储不可用: {e.__class__.__name__}")
            raise

    def insert(self, config: AllotmentConfig, entries: Sequence[ChangeLogEntry]) -> int:
        """写入新配置（version = 1）"""
        config.version = 1
        row = AllotmentConfigRecord(
            id=config.config_id,
            hotel_id=config.hotel_id,
            room_type_id=config.room_type_id,
            name=config.name,
            description=config.description,
            status=config.status.value,
            version=config.version,
            timezone=config.timezone,
            document=config_to_dict(config),
            created_by=config.created_by,
            updated_by=config.updated_by,
            created_at=to_db_time(config.created_at),
            updated_at=to_db_time(config.updated_at),
        )
        self.db.add(row)
        self.db.add_all(self._log_rows(config.config_id, entries))
        try:
            self._commit()
        except IntegrityError:
            raise _active_exists(config)
        return config.version

    def save(self, config: AllotmentConfig, expected_version: int,
             entries: Sequence[ChangeLogEntry]) -> int:
        """
        版本校验保存

        Returns:
            新版本号

        Raises:
            VersionConflictError: 存储版本与 expected_version 不一致
            StorageUnavailableError: 数据库暂时不可用
        """
        config.version = expected_version + 1
        try:
            result = self.db.execute(
                update(AllotmentConfigRecord)
                .where(
                    AllotmentConfigRecord.id == config.config_id,
                    AllotmentConfigRecord.version == expected_version,
                )
                .values(
                    name=config.name,
                    description=config.description,
                    status=config.status.value,
                    version=config.version,
                    timezone=config.timezone,
                    document=config_to_dict(config),
                    updated_by=config.updated_by,
                    updated_at=to_db_time(config.updated_at),
                )
                .execution_options(synchronize_session=False)
            )
        except IntegrityError:
            # 重新启用时命中"每房型仅一个启用配置"唯一索引
            self.db.rollback()
            config.version = expected_version
            raise _active_exists(config)
        except DBAPIError as e:
            self.db.rollback()
            config.version = expected_version
            if _is_transient(e):
                raise StorageUnavailableError(f"存储不可用: {e.__class__.__name__}")
            raise

        if result.rowcount != 1:
            self.db.rollback()
            config.version = expected_version
            raise VersionConflictError(
                f"配额配置 {config.config_id} 版本冲突: 期望 {expected_version}",
                config_id=config.config_id,
                expected_version=expected_version,
            )

        self.db.add_all(self._log_rows(config.config_id, entries))
        try:
            self._commit()
        except IntegrityError:
            config.version = expected_version
            raise _active_exists(config)
        return config.version

    # ============== 变更日志 ==============

    def query_log(self, config_id: str, start: Optional[datetime] = None, end: Optional[datetime] = None,
                  actions: Optional[Sequence[ChangeAction]] = None) -> List[ChangeLogEntry]:
        query = self.db.query(AllotmentChangeLog).filter(AllotmentChangeLog.config_id == config_id)
        if start is not None:
            query = query.filter(AllotmentChangeLog.timestamp >= to_db_time(start))
        if end is not None:
            query = query.filter(AllotmentChangeLog.timestamp <= to_db_time(end))
        if actions:
            query = query.filter(AllotmentChangeLog.action.in_([a.value for a in actions]))
        rows = self._run_read(query.order_by(AllotmentChangeLog.timestamp, AllotmentChangeLog.id).all)
        return [
            ChangeLogEntry(
                timestamp=from_db_time(row.timestamp),
                action=ChangeAction(row.action),
                user_id=row.user_id,
                changes=row.changes or {},
                reason=row.reason,
            )
            for row in rows
        ]

    def count_log(self, config_id: str) -> int:
        return self._run_read(
            self.db.query(AllotmentChangeLog).filter(AllotmentChangeLog.config_id == config_id).count
        )

    # ============== 同步状态（不改变版本） ==============

    def record_sync_attempt(self, config_id: str, kind: str, attempt: int, success: bool,
                            error: Optional[str], start: date, end: date, now: datetime) -> None:
        self.db.add(ChannelSyncAttempt(
            config_id=config_id,
            kind=kind,
            attempt=attempt,
            success=success,
            error=error,
            start_date=start,
            end_date=end,
            created_at=to_db_time(now),
        ))
        self._commit()

    def set_sync_state(self, config_id: str, needs_sync: bool, last_sync: Optional[datetime] = None) -> None:
        values = {"needs_sync": needs_sync}
        if last_sync is not None:
            values["last_sync"] = to_db_time(last_sync)
        self.db.execute(
            update(AllotmentConfigRecord)
            .where(AllotmentConfigRecord.id == config_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        self._commit()

    def sync_attempts(self, config_id: str) -> List[ChannelSyncAttempt]:
        return self._run_read(self.db.query(ChannelSyncAttempt).filter(
            ChannelSyncAttempt.config_id == config_id
        ).order_by(ChannelSyncAttempt.id).all)
