"""
Pytest 配置和共享 fixtures
"""
import os

# 测试中不启动定时任务，不落盘
os.environ["ANALYTICS_SWEEP_ENABLED"] = "false"
os.environ["SYNC_RETRY_ENABLED"] = "false"
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

import pytest
from datetime import date, datetime, timedelta, timezone
from unittest.mock import Mock
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from fastapi.testclient import TestClient

from app.database import Base, get_db
from app.models import allotment  # noqa
from app.main import app
from app.security.auth import (
    Caller, ROLE_ADMIN, ROLE_CHANNEL_MANAGER, ROLE_MANAGER, ROLE_STAFF, create_access_token,
)
from app.security.rate_limit import limiter
from app.services.inventory_store import InventoryStore
from app.services.runtime import get_clock, get_sync_port
from core.allotment.change_log import make_entry
from core.allotment.channel_sync import ChannelSyncPort, LoggingChannelSyncPort
from core.allotment.clock import FixedClock
from core.allotment.daily_records import recompute
from core.allotment.models import (
    AllotmentConfig, ChangeAction, Channel, ChannelAllotment, DailyRecord, DefaultSettings,
)

HOTEL_ID = "H1"
ROOM_TYPE_ID = "RT-STD"
NOW = datetime(2023, 6, 1, 9, 0, tzinfo=timezone.utc)


@pytest.fixture(scope="function")
def db_engine():
    """创建内存数据库引擎"""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def db_session(db_engine):
    """创建数据库会话"""
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    session = SessionLocal()
    yield session
    session.close()


@pytest.fixture
def clock():
    """固定在 2023-06-01 09:00 UTC 的时钟"""
    return FixedClock(NOW)


@pytest.fixture
def sync_port():
    """记录调用的渠道同步端口"""
    return Mock(spec=ChannelSyncPort)


@pytest.fixture(autouse=True)
def reset_rate_limiter():
    limiter.reset()
    yield
    limiter.reset()


@pytest.fixture(scope="function")
def client(db_session, clock):
    """创建测试客户端"""
    def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_clock] = lambda: clock
    app.dependency_overrides[get_sync_port] = lambda: LoggingChannelSyncPort()
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


# ============== 认证相关 Fixtures ==============

@pytest.fixture
def manager_caller():
    return Caller(user_id="u-manager", hotel_id=HOTEL_ID, role=ROLE_MANAGER)


@pytest.fixture
def staff_caller():
    return Caller(user_id="u-staff", hotel_id=HOTEL_ID, role=ROLE_STAFF)


@pytest.fixture
def manager_auth_headers():
    """返回经理认证的请求头"""
    return {"Authorization": f"Bearer {create_access_token('u-manager', HOTEL_ID, ROLE_MANAGER)}"}


@pytest.fixture
def staff_auth_headers():
    """返回前台认证的请求头"""
    return {"Authorization": f"Bearer {create_access_token('u-staff', HOTEL_ID, ROLE_STAFF)}"}


@pytest.fixture
def channel_manager_auth_headers():
    """返回渠道管理器认证的请求头"""
    return {"Authorization": f"Bearer {create_access_token('cm-1', HOTEL_ID, ROLE_CHANNEL_MANAGER)}"}


@pytest.fixture
def admin_auth_headers():
    return {"Authorization": f"Bearer {create_access_token('u-admin', 'HQ', ROLE_ADMIN)}"}


@pytest.fixture
def other_hotel_auth_headers():
    """其他酒店经理"""
    return {"Authorization": f"Bearer {create_access_token('u-other', 'H2', ROLE_MANAGER)}"}


# ============== 配置相关 Fixtures ==============

def _build_config(total_inventory=10, channels=("direct",), allocations=None, start=date(2023, 6, 1),
                  days=7, overbooking_allowed=False, overbooking_limit=0, config_id="cfg-1",
                  hotel_id=HOTEL_ID, room_type_id=ROOM_TYPE_ID):
    config = AllotmentConfig(
        config_id=config_id,
        hotel_id=hotel_id,
        room_type_id=room_type_id,
        name="标准间配额",
        default_settings=DefaultSettings(
            total_inventory=total_inventory,
            overbooking_allowed=overbooking_allowed,
            overbooking_limit=overbooking_limit,
        ),
        channels=[
            Channel(channel_id=ch, channel_name=ch, priority=100 - 10 * i)
            for i, ch in enumerate(channels)
        ],
        created_by="u-manager",
        updated_by="u-manager",
        created_at=NOW,
        updated_at=NOW,
    )
    if allocations is None:
        allocations = {channels[0]: total_inventory}
    for offset in range(days):
        record = DailyRecord(
            date=start + timedelta(days=offset),
            total_inventory=total_inventory,
            channel_allotments=[
                ChannelAllotment(channel_id=ch, allocated=n) for ch, n in allocations.items()
            ],
        )
        config.daily_allotments.put(recompute(record))
    return config


@pytest.fixture
def make_config():
    """配额配置构建器：默认 10 间房全部分配给 direct，覆盖 2023-06-01 起 7 天"""
    return _build_config


@pytest.fixture
def persist_config(db_session):
    """写入配置并追加 created 日志"""
    def _persist(config):
        InventoryStore(db_session).insert(
            config, [make_entry(NOW, ChangeAction.CREATED, "u-manager", {"room_type_id": config.room_type_id})]
        )
        return config
    return _persist


@pytest.fixture
def stored_config(make_config, persist_config):
    """已持久化的基准配置"""
    return persist_config(make_config())
