"""
周期任务调度接口
"""
from core.scheduler.base import CronScheduler, SchedulerRegistry

__all__ = ["CronScheduler", "SchedulerRegistry"]
