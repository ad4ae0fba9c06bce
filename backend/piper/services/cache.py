"""分析聚合缓存（Redis），不可用时降级为直接计算"""

import json
import logging
from typing import Any, Awaitable, Callable, Optional

from redis.exceptions import RedisError

from piper.core.config import get_settings
from piper.core.redis import get_redis

logger = logging.getLogger(__name__)
settings = get_settings()

CACHE_PREFIX = "piper:cache:"


async def cached(
    key: str,
    compute: Callable[[], Awaitable[Any]],
    ttl: Optional[int] = None,
) -> Any:
    """
    读取缓存，未命中时计算并写入

    Args:
        key: 缓存键（不含前缀）
        compute: 计算函数
        ttl: 过期秒数，默认 settings.cache_ttl_seconds
    """
    if not settings.cache_enabled:
        return await compute()

    full_key = CACHE_PREFIX + key
    try:
        redis = await get_redis()
        raw = await redis.get(full_key)
        if raw is not None:
            return json.loads(raw)
    except RedisError as e:
        logger.warning(f"Cache read failed for {key}, computing directly: {e}")
        return await compute()

    value = await compute()
    try:
        await redis.setex(full_key, ttl or settings.cache_ttl_seconds, json.dumps(value, default=str))
    except RedisError as e:
        logger.warning(f"Cache write failed for {key}: {e}")
    return value


async def invalidate(prefix: str) -> None:
    """删除指定前缀的缓存键"""
    if not settings.cache_enabled:
        return
    try:
        redis = await get_redis()
        async for key in redis.scan_iter(match=f"{CACHE_PREFIX}{prefix}*"):
            await redis.delete(key)
    except RedisError as e:
        logger.warning(f"Cache invalidation failed for {prefix}: {e}")
