"""FastAPI 应用入口"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import Depends, FastAPI, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from piper import __version__
from piper.api.admin import router as admin_router  # 管理员
from piper.api.analytics import router as analytics_router, track_router  # 分析 + 打开/点击追踪
from piper.api.auth import router as auth_router  # 注册/登录
from piper.api.campaigns import router as campaigns_router  # 活动
from piper.api.content import router as content_router  # 内容
from piper.api.newsletters import router as newsletters_router  # 通讯
from piper.api.privacy import router as privacy_router  # 同意/汇出/删除
from piper.api.subscribers import public_router as subscribe_router, router as subscribers_router
from piper.api.users import router as users_router  # 用户资料
from piper.core.config import get_settings
from piper.core.database import close_db, get_db, init_db
from piper.core.errors import register_exception_handlers
from piper.core.logging_setup import configure_logging
from piper.core.redis import close_redis, get_redis

# DDoS 防护中间件
from piper.middleware.endpoint_limit import endpoint_limiter
from piper.middleware.rate_limit import RateLimitMiddleware, cleanup_task
from piper.middleware.request_size import RequestSizeLimitMiddleware
from piper.middleware.security_headers import SecurityHeadersMiddleware

logger = logging.getLogger(__name__)
settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """应用生命周期管理"""
    configure_logging()
    if settings.debug:
        # 开发环境直接建表，生产环境使用 alembic
        await init_db()

    # 启动时 - 启动清理任务
    cleanup_task_handle = asyncio.create_task(cleanup_task(endpoint_limiter))
    logger.info(f"{settings.app_name} {__version__} started")

    yield

    # 关闭时
    cleanup_task_handle.cancel()
    await close_db()
    await close_redis()


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="通讯与订阅者管理 API",
    lifespan=lifespan,
)

# ============ 中间件（后添加的在外层）============

# 1. 请求大小限制（防止大请求体攻击）
app.add_middleware(RequestSizeLimitMiddleware, max_size=settings.max_request_size)

# 2. 全局速率限制（防止暴力请求）
app.add_middleware(
    RateLimitMiddleware,
    max_requests=settings.rate_limit_max_requests,
    window=settings.rate_limit_window,
    enabled=settings.rate_limit_enabled,
)

# 3. 安全响应头 + 请求 ID
app.add_middleware(SecurityHeadersMiddleware)

# 4. CORS 中间件（必须在最外层）
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "Accept-Language", "X-Request-ID"],
    expose_headers=["X-Request-ID", "Retry-After"],
)

# 全局异常处理器
register_exception_handlers(app)

# 注册路由
app.include_router(auth_router)
app.include_router(users_router)
app.include_router(newsletters_router)
app.include_router(subscribers_router)
app.include_router(subscribe_router)
app.include_router(campaigns_router)
app.include_router(content_router)
app.include_router(analytics_router)
app.include_router(track_router)
app.include_router(privacy_router)
app.include_router(admin_router)


@app.get("/health")
@app.get("/api/health")
async def health_check() -> dict:
    """健康检查端点"""
    return {"status": "healthy", "version": settings.app_version}


@app.get("/api/health/detailed")
async def detailed_health_check(db: AsyncSession = Depends(get_db)):
    """组件健康检查：数据库不可用时返回 503，缓存不可用只标记为降级"""
    components = {}

    try:
        await db.execute(text("SELECT 1"))
        components["database"] = {"status": "healthy"}
    except SQLAlchemyError as e:
        logger.error(f"Database health check failed: {e}")
        components["database"] = {"status": "unhealthy"}

    if settings.cache_enabled:
        try:
            client = await get_redis()
            await client.ping()
            components["cache"] = {"status": "healthy"}
        except (RedisError, OSError) as e:
            logger.warning(f"Cache health check failed: {e}")
            components["cache"] = {"status": "degraded"}
    else:
        components["cache"] = {"status": "disabled"}

    healthy = components["database"]["status"] == "healthy"
    return JSONResponse(
        status_code=status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "healthy" if healthy else "unhealthy",
            "version": settings.app_version,
            "components": components,
        },
    )
