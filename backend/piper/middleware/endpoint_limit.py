"""API 端点特定限流装饰器"""

import asyncio
import logging
import time
from collections import defaultdict
from functools import wraps
from typing import Callable, Dict, Tuple

from fastapi import Request

from piper.core.errors import RateLimitError
from piper.middleware.rate_limit import get_client_ip

logger = logging.getLogger(__name__)


class EndpointRateLimiter:
    """端点级别的速率限制器"""

    def __init__(self):
        # (IP, endpoint) -> (请求次数, 窗口开始时间)
        self.requests: Dict[str, Tuple[int, float]] = defaultdict(lambda: (0, time.time()))
        self.lock = asyncio.Lock()

    async def check_limit(
        self,
        ip: str,
        endpoint: str,
        max_requests: int,
        window: int,
    ) -> Tuple[bool, int]:
        """
        检查端点限流

        Returns:
            (是否允许, 需等待秒数)
        """
        async with self.lock:
            key = f"{ip}:{endpoint}"
            current_time = time.time()
            count, start_time = self.requests[key]

            if current_time - start_time > window:
                self.requests[key] = (1, current_time)
                return True, 0

            if count >= max_requests:
                return False, int(window - (current_time - start_time)) + 1

            self.requests[key] = (count + 1, start_time)
            return True, 0

    async def cleanup(self):
        """清理一小时前开始的窗口"""
        async with self.lock:
            current_time = time.time()
            expired = [
                key for key, (_, start_time) in self.requests.items()
                if current_time - start_time > 3600
            ]
            for key in expired:
                del self.requests[key]

    def reset(self) -> None:
        self.requests.clear()


endpoint_limiter = EndpointRateLimiter()


def rate_limit(max_requests: int = 10, window: int = 60):
    """
    端点限流装饰器

    Args:
        max_requests: 时间窗口内最大请求数
        window: 时间窗口（秒）

    Example:
        @router.post("/login")
        @rate_limit(max_requests=10, window=60)
        async def login(request: Request, ...):
            ...
    """
    def decorator(func: Callable):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            request = None
            for arg in args:
                if isinstance(arg, Request):
                    request = arg
                    break

            if not request:
                request = kwargs.get("request")

            if request:
                client_ip = get_client_ip(request)
                allowed, retry_after = await endpoint_limiter.check_limit(
                    client_ip,
                    request.url.path,
                    max_requests,
                    window,
                )

                if not allowed:
                    logger.warning(f"Endpoint rate limit hit: {request.url.path} from {client_ip}")
                    raise RateLimitError(
                        "Too many requests for this operation",
                        retry_after=retry_after,
                    )

            return await func(*args, **kwargs)
        return wrapper
    return decorator
