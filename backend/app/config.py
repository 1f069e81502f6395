"""
应用配置
从环境变量 / .env 读取配置
"""
from pathlib import Path
from typing import Any, Dict

import yaml
from pydantic import ConfigDict
from pydantic_settings import BaseSettings

DEFAULTS_FILE = Path(__file__).parent / "allotment_defaults.yaml"


class Settings(BaseSettings):
    """应用设置"""

    # 应用基础配置
    APP_NAME: str = "Allotment Engine"
    DEBUG: bool = False

    # 数据库配置
    DATABASE_URL: str = "sqlite:///./allotments.db"

    # JWT 配置
    SECRET_KEY: str = "your-secret-key-change-in-production"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 480

    # 并发与重试
    VERSION_CONFLICT_RETRIES: int = 3
    STORAGE_RETRY_ATTEMPTS: int = 3
    STORAGE_RETRY_BASE_SECONDS: float = 0.05
    REQUEST_DEADLINE_SECONDS: float = 10.0

    # 配额行为
    AUTO_CREATE_CHANNEL_ALLOTMENT: bool = True
    INITIAL_HORIZON_DAYS: int = 90
    DEFAULT_TIMEZONE: str = "UTC"

    # 限流（每分钟）
    RATE_LIMIT_ALLOCATION_PER_MINUTE: int = 30
    RATE_LIMIT_BOOKING_PER_MINUTE: int = 100
    RATE_LIMIT_ANALYTICS_PER_MINUTE: int = 20
    RATE_LIMIT_WEBHOOK_PER_MINUTE: int = 500

    # 渠道同步
    SYNC_MAX_ATTEMPTS: int = 5
    SYNC_BACKOFF_BASE_SECONDS: float = 1.0
    SYNC_BACKOFF_CAP_SECONDS: float = 600.0
    SYNC_RETRY_ENABLED: bool = True
    SYNC_RETRY_CRON: str = "* * * * *"

    # 分析定时任务
    ANALYTICS_SWEEP_ENABLED: bool = True
    ANALYTICS_SWEEP_CRON: str = "5 * * * *"
    ANALYTICS_DEFAULT_WINDOW_DAYS: int = 30

    model_config = ConfigDict(env_file=".env", case_sensitive=True)


def load_allotment_defaults() -> Dict[str, Any]:
    """读取默认渠道与默认规则定义"""
    with open(DEFAULTS_FILE, "r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


# 全局设置实例
settings = Settings()
