"""
限流模块
60 秒滑动窗口，按 (桶, IP) 或 (桶, 渠道管理器) 计数
"""
import logging
import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Deque, Dict, Optional, Tuple
from fastapi import Depends, HTTPException, Request, status
from app.config import settings
from app.security.auth import Caller, get_current_user
from core.allotment.clock import Clock, SystemClock

logger = logging.getLogger(__name__)

BUCKET_ALLOCATION = "allocation"
BUCKET_BOOKING = "booking"
BUCKET_ANALYTICS = "analytics"
BUCKET_WEBHOOK = "webhook"


def bucket_limit(bucket: str) -> int:
    """每分钟限额（运行时读取配置）"""
    return {
        BUCKET_ALLOCATION: settings.RATE_LIMIT_ALLOCATION_PER_MINUTE,
        BUCKET_BOOKING: settings.RATE_LIMIT_BOOKING_PER_MINUTE,
        BUCKET_ANALYTICS: settings.RATE_LIMIT_ANALYTICS_PER_MINUTE,
        BUCKET_WEBHOOK: settings.RATE_LIMIT_WEBHOOK_PER_MINUTE,
    }[bucket]


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    limit: int
    retry_after_seconds: float = 0.0


class RateLimiter:
    """滑动窗口限流器"""

    def __init__(self, clock: Optional[Clock] = None, window_seconds: int = 60):
        self._clock = clock or SystemClock()
        self._window = timedelta(seconds=window_seconds)
        self._buckets: Dict[Tuple[str, str], Deque[datetime]] = {}
        self._lock = threading.Lock()
        self._last_sweep: Optional[datetime] = None

    def _sweep(self, now: datetime) -> None:
        """每个窗口周期清理一次窗口内已无请求的键"""
        if self._last_sweep is not None and now - self._last_sweep < self._window:
            return
        cutoff = now - self._window
        for key in [k for k, entries in self._buckets.items() if not entries or entries[-1] <= cutoff]:
            del self._buckets[key]
        self._last_sweep = now

    def check(self, bucket: str, key: str, limit: int) -> RateLimitResult:
        now = self._clock.now_utc()
        with self._lock:
            self._sweep(now)
            entries = self._buckets.setdefault((bucket, key), deque())
            cutoff = now - self._window
            while entries and entries[0] <= cutoff:
                entries.popleft()

            if len(entries) >= limit:
                oldest = entries[0] if entries else now
                retry_after = (oldest + self._window - now).total_seconds()
                return RateLimitResult(
                    allowed=False,
                    remaining=0,
                    limit=limit,
                    retry_after_seconds=max(0.0, retry_after),
                )

            entries.append(now)
            return RateLimitResult(allowed=True, remaining=limit - len(entries), limit=limit)

    def reset(self) -> None:
        """清空计数（用于测试）"""
        with self._lock:
            self._buckets.clear()
            self._last_sweep = None

    def __len__(self) -> int:
        return len(self._buckets)


limiter = RateLimiter()


def _enforce(bucket: str, key: str) -> None:
    result = limiter.check(bucket, key, bucket_limit(bucket))
    if not result.allowed:
        logger.warning(f"Rate limit exceeded: bucket={bucket} key={key} limit={result.limit}/min")
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=f"请求过于频繁，每分钟最多 {result.limit} 次",
            headers={"Retry-After": str(max(1, int(result.retry_after_seconds + 0.999)))},
        )


def rate_limit(bucket: str) -> Callable:
    """按客户端 IP 限流的依赖"""
    async def checker(request: Request):
        client_ip = request.client.host if request.client else "unknown"
        _enforce(bucket, client_ip)
    return checker


async def webhook_rate_limit(current_user: Caller = Depends(get_current_user)):
    """按渠道管理器（调用方用户）限流"""
    _enforce(BUCKET_WEBHOOK, current_user.user_id)
