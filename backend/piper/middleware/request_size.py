"""请求大小限制中间件 - 防止超大请求体"""

from typing import Callable

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from piper.core.errors import ERROR_CATEGORIES, error_response


class RequestSizeLimitMiddleware(BaseHTTPMiddleware):
    """限制请求体大小"""

    def __init__(self, app, max_size: int = 10 * 1024 * 1024):  # 默认 10MB
        super().__init__(app)
        self.max_size = max_size

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        content_length = request.headers.get("content-length")

        if content_length and content_length.isdigit() and int(content_length) > self.max_size:
            return error_response(
                request,
                ERROR_CATEGORIES["PayloadTooLargeError"],
                f"Request body too large. Maximum allowed: {self.max_size / 1024 / 1024:.1f}MB",
            )

        return await call_next(request)
