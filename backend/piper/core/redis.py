"""Redis 连接配置"""

from typing import Optional

import redis.asyncio as redis
from redis.asyncio import Redis

from piper.core.config import get_settings

settings = get_settings()

# Redis 连接池
_redis_pool: Optional[Redis] = None


async def get_redis() -> Redis:
    """获取 Redis 连接"""
    global _redis_pool
    if _redis_pool is None:
        _redis_pool = redis.from_url(
            settings.redis_url,
            encoding="utf-8",
            decode_responses=True,
            socket_connect_timeout=2,
        )
    return _redis_pool


async def close_redis() -> None:
    """关闭 Redis 连接"""
    global _redis_pool
    if _redis_pool is not None:
        await _redis_pool.aclose()
        _redis_pool = None
