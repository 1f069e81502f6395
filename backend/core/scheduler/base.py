"""
周期任务调度接口

配额分析扫描按 cron 表达式周期运行。core 只声明调度能力，
具体实现（APScheduler）在 app.services.scheduler_backend。
"""
from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional


class CronScheduler(ABC):
    """cron 周期任务调度器"""

    @abstractmethod
    def start(self) -> None:
        ...

    @abstractmethod
    def shutdown(self) -> None:
        ...

    @abstractmethod
    def schedule(self, job_id: str, func: Callable[[], object], cron_expression: str) -> None:
        """按五段式 cron 表达式注册任务，同 job_id 覆盖旧任务"""

    @abstractmethod
    def unschedule(self, job_id: str) -> None:
        ...

    @abstractmethod
    def jobs(self) -> List[Dict]:
        """已注册任务：id, name, trigger, next_run_time, status"""

    @abstractmethod
    def job(self, job_id: str) -> Optional[Dict]:
        ...

    @abstractmethod
    def run_now(self, job_id: str) -> None:
        """在当前线程立即执行一次，不影响下次触发时间"""


class SchedulerRegistry:
    """进程内唯一的调度器持有者，lifespan 启动时注册、关闭时清除"""

    _instance: Optional["SchedulerRegistry"] = None

    def __new__(cls) -> "SchedulerRegistry":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._scheduler = None
        return cls._instance

    def register(self, scheduler: CronScheduler) -> None:
        self._scheduler = scheduler

    @property
    def scheduler(self) -> Optional[CronScheduler]:
        return self._scheduler

    def clear(self) -> None:
        self._scheduler = None
