"""速率限制中间件 - 防止 DDoS 攻击"""

import asyncio
import logging
import time
from collections import defaultdict
from typing import Callable, Dict, Tuple

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from piper.core.config import get_settings
from piper.core.errors import ERROR_CATEGORIES, error_response

logger = logging.getLogger(__name__)


def get_client_ip(request: Request) -> str:
    """
    获取客户端 IP

    直连地址属于可信代理时才采信 X-Forwarded-For，
    从右往左取第一个不是可信代理的地址
    """
    peer = request.client.host if request.client else "unknown"
    trusted = get_settings().trusted_proxies
    forwarded = request.headers.get("X-Forwarded-For")
    if not forwarded or peer not in trusted:
        return peer

    hops = [hop.strip() for hop in forwarded.split(",") if hop.strip()]
    for hop in reversed(hops):
        if hop not in trusted:
            return hop
    return hops[0] if hops else peer


class RateLimiter:
    """基于内存的速率限制器"""

    def __init__(self):
        # IP -> (请求次数, 窗口开始时间)
        self.requests: Dict[str, Tuple[int, float]] = defaultdict(lambda: (0, time.time()))
        # IP -> 封禁到期时间
        self.blocked: Dict[str, float] = {}
        self.lock = asyncio.Lock()

    async def is_allowed(
        self,
        ip: str,
        max_requests: int = 100,
        window: int = 60,
        block_duration: int = 300,
    ) -> Tuple[bool, int, int]:
        """
        检查 IP 是否允许请求

        Args:
            ip: 客户端 IP
            max_requests: 时间窗口内最大请求数
            window: 时间窗口（秒）
            block_duration: 封禁时长（秒）

        Returns:
            (是否允许, 剩余请求数, 需等待秒数)
        """
        async with self.lock:
            current_time = time.time()

            # 检查是否被封禁
            if ip in self.blocked:
                if current_time < self.blocked[ip]:
                    return False, 0, int(self.blocked[ip] - current_time) + 1
                del self.blocked[ip]

            count, start_time = self.requests[ip]

            # 重置窗口
            if current_time - start_time > window:
                self.requests[ip] = (1, current_time)
                return True, max_requests - 1, 0

            if count >= max_requests:
                self.blocked[ip] = current_time + block_duration
                logger.warning(f"IP {ip} exceeded {max_requests} requests/{window}s, blocked for {block_duration}s")
                return False, 0, block_duration

            self.requests[ip] = (count + 1, start_time)
            return True, max_requests - count - 1, 0

    async def cleanup(self):
        """清理过期数据"""
        async with self.lock:
            current_time = time.time()

            expired_ips = [
                ip for ip, (_, start_time) in self.requests.items()
                if current_time - start_time > 3600  # 1小时后清理
            ]
            for ip in expired_ips:
                del self.requests[ip]

            expired_blocks = [
                ip for ip, expire_time in self.blocked.items()
                if current_time > expire_time
            ]
            for ip in expired_blocks:
                del self.blocked[ip]

    def reset(self) -> None:
        self.requests.clear()
        self.blocked.clear()


# 全局限流器实例
rate_limiter = RateLimiter()


class RateLimitMiddleware(BaseHTTPMiddleware):
    """速率限制中间件"""

    def __init__(self, app, max_requests: int = 100, window: int = 60, enabled: bool = True):
        super().__init__(app)
        self.max_requests = max_requests
        self.window = window
        self.enabled = enabled

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if not self.enabled or request.url.path in ("/health", "/api/health"):
            return await call_next(request)

        client_ip = get_client_ip(request)
        allowed, remaining, retry_after = await rate_limiter.is_allowed(
            client_ip,
            self.max_requests,
            self.window,
        )

        # 中间件内抛出的 HTTPException 不会经过异常处理器，直接返回响应
        if not allowed:
            return error_response(
                request,
                ERROR_CATEGORIES["RateLimitError"],
                extra={"retry_after": retry_after},
                headers={"Retry-After": str(retry_after)},
            )

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(self.max_requests)
        response.headers["X-RateLimit-Remaining"] = str(remaining)
        response.headers["X-RateLimit-Reset"] = str(int(time.time() + self.window))
        return response


# 定期清理任务
async def cleanup_task(*limiters):
    """定期清理全局限流器和传入的其他限流器"""
    while True:
        await asyncio.sleep(300)  # 每5分钟清理一次
        for limiter in (rate_limiter, *limiters):
            await limiter.cleanup()
