"""
房型配额引擎主应用入口
"""
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from app.config import settings
from app.database import init_db
from app.routers import allotments, bookings, channel_manager
from core.allotment.errors import AllotmentError
from core.scheduler import SchedulerRegistry

logger = logging.getLogger(__name__)

# 领域异常 kind -> HTTP 状态码
ERROR_STATUS = {
    "validation": 400,
    "not_found": 404,
    "version_conflict": 409,
    "conflict": 409,
    "insufficient_inventory": 409,
    "closed": 409,
    "invariant_violation": 500,
    "storage_unavailable": 503,
    "timeout": 504,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期管理"""
    # 启动时执行
    init_db()

    registry = SchedulerRegistry()
    if settings.ANALYTICS_SWEEP_ENABLED or settings.SYNC_RETRY_ENABLED:
        from app.services.analytics_sweep import register_analytics_sweep
        from app.services.scheduler_backend import APSchedulerBackend
        from app.services.sync_retry import register_sync_retry

        backend = APSchedulerBackend()
        if settings.ANALYTICS_SWEEP_ENABLED:
            register_analytics_sweep(backend)
            logger.info(f"Analytics sweep scheduled: {settings.ANALYTICS_SWEEP_CRON}")
        if settings.SYNC_RETRY_ENABLED:
            register_sync_retry(backend)
            logger.info(f"Channel sync retry scheduled: {settings.SYNC_RETRY_CRON}")
        backend.start()
        registry.register(backend)

    yield

    # 关闭时执行
    scheduler = registry.scheduler
    if scheduler is not None:
        scheduler.shutdown()
        registry.clear()


# 创建应用
app = FastAPI(
    title=settings.APP_NAME,
    description="多渠道房型配额分配、预订与分析",
    version="1.0.0",
    lifespan=lifespan
)

# CORS 配置
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(AllotmentError)
async def allotment_error_handler(request: Request, exc: AllotmentError):
    status_code = ERROR_STATUS.get(exc.kind, 500)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.kind} {exc.message}")
    return JSONResponse(status_code=status_code, content=exc.to_dict())


# 注册路由，预订路由需在 /allotments/{config_id} 之前
app.include_router(bookings.router)
app.include_router(allotments.router)
app.include_router(channel_manager.router)


@app.get("/")
def root():
    """根路径"""
    return {
        "name": settings.APP_NAME,
        "version": "1.0.0",
        "description": "房型配额引擎"
    }


@app.get("/health")
def health_check():
    """健康检查"""
    return {"status": "healthy"}
