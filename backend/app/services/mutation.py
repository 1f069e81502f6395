"""
变更执行器 - 读取 → 在副本上修改 → 版本校验保存
版本冲突时重新读取并重试，存储不可用时指数退避重试
任何一步失败或超时都不会写入部分变更
"""
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, Tuple
from app.config import settings
from app.services.inventory_store import InventoryStore
from core.allotment.clock import Clock, Deadline
from core.allotment.errors import StorageUnavailableError, VersionConflictError
from core.allotment.models import AllotmentConfig, ChangeLogEntry

logger = logging.getLogger(__name__)


@dataclass
class MutationResult:
    config: AllotmentConfig
    value: Any
    entry: ChangeLogEntry


Mutator = Callable[[AllotmentConfig], Tuple[Any, ChangeLogEntry]]


class MutationRunner:
    """乐观并发变更执行器"""

    def __init__(self, store: InventoryStore, clock: Clock,
                 sleep: Optional[Callable[[float], None]] = None,
                 conflict_retries: Optional[int] = None,
                 storage_attempts: Optional[int] = None,
                 storage_base_seconds: Optional[float] = None):
        self.store = store
        self.clock = clock
        self.sleep = sleep or time.sleep
        self.conflict_retries = settings.VERSION_CONFLICT_RETRIES if conflict_retries is None else conflict_retries
        self.storage_attempts = settings.STORAGE_RETRY_ATTEMPTS if storage_attempts is None else storage_attempts
        self.storage_base_seconds = (
            settings.STORAGE_RETRY_BASE_SECONDS if storage_base_seconds is None else storage_base_seconds
        )

    def new_deadline(self, seconds: Optional[float] = None) -> Deadline:
        return Deadline(self.clock, settings.REQUEST_DEADLINE_SECONDS if seconds is None else seconds)

    def run(self, load: Callable[[], AllotmentConfig], mutate: Mutator, actor: Optional[str],
            deadline: Optional[Deadline] = None, expected_version: Optional[int] = None,
            operation: str = "mutation") -> MutationResult:
        """
        执行一次变更

        Args:
            load: 读取最新配置
            mutate: 在副本上修改，返回 (结果, 变更日志条目)
            actor: 操作人
            deadline: 截止时间
            expected_version: 调用方指定的版本，指定时冲突不重试

        Raises:
            VersionConflictError: 重试耗尽或指定版本不匹配
            StorageUnavailableError: 退避重试耗尽
            DeadlineExceededError: 超时
        """
        deadline = deadline or self.new_deadline()
        conflicts = 0
        storage_failures = 0

        while True:
            deadline.check(operation)
            try:
                current = load()
                if expected_version is not None and current.version != expected_version:
                    raise VersionConflictError(
                        f"配额配置 {current.config_id} 版本冲突: 期望 {expected_version}, 当前 {current.version}",
                        config_id=current.config_id,
                        expected_version=expected_version,
                        current_version=current.version,
                    )

                working = current.copy()
                value, entry = mutate(working)
                working.updated_at = self.clock.now_utc()
                working.updated_by = actor

                deadline.check(operation)
                self.store.save(working, current.version, [entry])
                return MutationResult(config=working, value=value, entry=entry)

            except VersionConflictError:
                if expected_version is not None or conflicts >= self.conflict_retries:
                    logger.warning(f"{operation}: version conflict, giving up after {conflicts} retries")
                    raise
                conflicts += 1
                logger.warning(f"{operation}: version conflict, retry {conflicts}/{self.conflict_retries}")

            except StorageUnavailableError:
                storage_failures += 1
                if storage_failures >= self.storage_attempts:
                    logger.warning(f"{operation}: storage unavailable, giving up after {storage_failures} attempts")
                    raise
                delay = self.storage_base_seconds * (2 ** (storage_failures - 1))
                logger.warning(f"{operation}: storage unavailable, retry in {delay:.2f}s")
                self.sleep(delay)
