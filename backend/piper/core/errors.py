"""统一错误处理

领域异常 → HTTP 状态码 / 错误码 / 严重级别 / 恢复建议 的静态映射，
以及注册到 FastAPI 的异常处理器。所有错误响应使用同一结构：

    {"error": {"id", "code", "message", "severity", "timestamp", "path", "suggestions", ...}}
"""

import logging
import secrets
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from piper.core.config import get_settings
from piper.core.i18n import get_locale_from_header, t, t_list
from piper.core.timeutil import utcnow

logger = logging.getLogger(__name__)


class ErrorSeverity(str, Enum):
    """错误严重级别"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass(frozen=True)
class ErrorCategory:
    """错误类别定义"""
    key: str               # i18n 键（errors.<key> / suggestions.<key>）
    status_code: int
    code: str
    severity: ErrorSeverity


# 错误名称 → 类别
ERROR_CATEGORIES: Dict[str, ErrorCategory] = {
    "ValidationError": ErrorCategory("validation", 400, "VALIDATION_ERROR", ErrorSeverity.MEDIUM),
    "AuthenticationError": ErrorCategory("authentication", 401, "AUTHENTICATION_ERROR", ErrorSeverity.HIGH),
    "AuthorizationError": ErrorCategory("authorization", 403, "AUTHORIZATION_ERROR", ErrorSeverity.HIGH),
    "NotFoundError": ErrorCategory("not_found", 404, "NOT_FOUND", ErrorSeverity.LOW),
    "ConflictError": ErrorCategory("conflict", 409, "CONFLICT", ErrorSeverity.MEDIUM),
    "PayloadTooLargeError": ErrorCategory("payload_too_large", 413, "PAYLOAD_TOO_LARGE", ErrorSeverity.MEDIUM),
    "RateLimitError": ErrorCategory("rate_limit", 429, "RATE_LIMIT_EXCEEDED", ErrorSeverity.MEDIUM),
    "DatabaseError": ErrorCategory("database", 500, "DATABASE_ERROR", ErrorSeverity.CRITICAL),
    "ExternalServiceError": ErrorCategory("external_service", 503, "SERVICE_UNAVAILABLE", ErrorSeverity.CRITICAL),
}

DEFAULT_CATEGORY = ErrorCategory("internal_error", 500, "INTERNAL_SERVER_ERROR", ErrorSeverity.HIGH)

# HTTPException 状态码 → 错误名称
STATUS_TO_ERROR_NAME: Dict[int, str] = {
    400: "ValidationError",
    401: "AuthenticationError",
    403: "AuthorizationError",
    404: "NotFoundError",
    405: "NotFoundError",
    409: "ConflictError",
    413: "PayloadTooLargeError",
    422: "ValidationError",
    429: "RateLimitError",
    503: "ExternalServiceError",
}


# ============================================================================
# 领域异常
# ============================================================================

class AppError(Exception):
    """应用异常基类"""

    def __init__(self, message: Optional[str] = None, details: Any = None):
        super().__init__(message or self.__class__.__name__)
        self.message = message
        self.details = details

    @property
    def category(self) -> ErrorCategory:
        for cls in type(self).__mro__:
            if cls.__name__ in ERROR_CATEGORIES:
                return ERROR_CATEGORIES[cls.__name__]
        return DEFAULT_CATEGORY


class ValidationError(AppError):
    def __init__(
        self,
        message: Optional[str] = None,
        validation_errors: Optional[List[Dict[str, Any]]] = None,
    ):
        super().__init__(message, details=validation_errors)
        self.validation_errors = validation_errors or []


class AuthenticationError(AppError):
    pass


class AuthorizationError(AppError):
    pass


class NotFoundError(AppError):
    pass


class ConflictError(AppError):
    pass


class PayloadTooLargeError(AppError):
    pass


class RateLimitError(AppError):
    def __init__(self, message: Optional[str] = None, retry_after: int = 60):
        super().__init__(message)
        self.retry_after = retry_after


class DatabaseError(AppError):
    pass


class ExternalServiceError(AppError):
    pass


# ============================================================================
# 日志节流：同一错误每分钟最多记录 10 次
# ============================================================================

class ErrorLogThrottle:
    """错误日志节流器"""

    def __init__(self, max_per_window: int = 10, window: float = 60.0):
        self.max_per_window = max_per_window
        self.window = window
        self._counts: Dict[str, tuple[int, float]] = {}

    def should_log(self, key: str) -> bool:
        now = time.monotonic()
        count, start = self._counts.get(key, (0, now))
        if now - start >= self.window:
            count, start = 0, now
        if count >= self.max_per_window:
            return False
        self._counts[key] = (count + 1, start)
        return True

    def reset(self) -> None:
        self._counts.clear()


log_throttle = ErrorLogThrottle()


# ============================================================================
# 响应构建
# ============================================================================

def generate_error_id() -> str:
    return f"err_{secrets.token_hex(6)}"


def build_error_body(
    request: Request,
    category: ErrorCategory,
    message: Optional[str] = None,
    extra: Optional[Dict[str, Any]] = None,
    details: Any = None,
) -> Dict[str, Any]:
    """构建统一错误响应体"""
    locale = get_locale_from_header(request.headers.get("Accept-Language"))
    settings = get_settings()

    # 5xx 不向客户端暴露内部信息
    if category.status_code >= 500 or not message:
        message = t(f"errors.{category.key}", locale)

    suggestion_key = category.key if category.key != "internal_error" else "default"
    retry_after = (extra or {}).get("retry_after", 60)

    body: Dict[str, Any] = {
        "id": generate_error_id(),
        "code": category.code,
        "message": message,
        "severity": category.severity.value,
        "timestamp": utcnow().isoformat() + "Z",
        "path": request.url.path,
        "suggestions": t_list(f"suggestions.{suggestion_key}", locale, retry_after=retry_after),
    }
    if extra:
        body.update(extra)
    if settings.debug and details is not None:
        body["details"] = details

    return {"error": body}


def _log_error(request: Request, category: ErrorCategory, exc: BaseException) -> None:
    key = f"{category.code}:{type(exc).__name__}:{request.url.path}"
    if not log_throttle.should_log(key):
        return

    msg = "%s %s -> %s (%s): %s"
    args = (request.method, request.url.path, category.status_code, category.code, exc)
    if category.severity == ErrorSeverity.CRITICAL or category.status_code >= 500:
        logger.error(msg, *args, exc_info=exc)
    elif category.severity == ErrorSeverity.HIGH:
        logger.warning(msg, *args)
    else:
        logger.info(msg, *args)


def error_response(
    request: Request,
    category: ErrorCategory,
    message: Optional[str] = None,
    extra: Optional[Dict[str, Any]] = None,
    details: Any = None,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=category.status_code,
        content=build_error_body(request, category, message, extra, details),
        headers=headers,
    )


# ============================================================================
# 异常处理器
# ============================================================================

async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    category = exc.category
    _log_error(request, category, exc)

    extra: Dict[str, Any] = {}
    headers = None
    if isinstance(exc, ValidationError):
        extra["validation_errors"] = exc.validation_errors
    if isinstance(exc, RateLimitError):
        extra["retry_after"] = exc.retry_after
        headers = {"Retry-After": str(exc.retry_after)}

    return error_response(request, category, exc.message, extra, exc.details, headers)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    name = STATUS_TO_ERROR_NAME.get(exc.status_code)
    category = ERROR_CATEGORIES[name] if name else DEFAULT_CATEGORY
    if category.status_code != exc.status_code:
        category = ErrorCategory(category.key, exc.status_code, category.code, category.severity)

    message = exc.detail if isinstance(exc.detail, str) else None
    _log_error(request, category, exc)
    return error_response(request, category, message, headers=getattr(exc, "headers", None))


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    validation_errors = [
        {
            "field": ".".join(str(p) for p in err.get("loc", ())[1:]) or None,
            "message": err.get("msg"),
            "type": err.get("type"),
        }
        for err in exc.errors()
    ]
    category = ERROR_CATEGORIES["ValidationError"]
    _log_error(request, category, exc)
    return error_response(request, category, extra={"validation_errors": validation_errors})


async def integrity_error_handler(request: Request, exc: IntegrityError) -> JSONResponse:
    category = ERROR_CATEGORIES["ConflictError"]
    _log_error(request, category, exc)
    return error_response(request, category, "Resource already exists")


async def database_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    category = ERROR_CATEGORIES["DatabaseError"]
    _log_error(request, category, exc)
    return error_response(request, category, details=str(exc))


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    _log_error(request, DEFAULT_CATEGORY, exc)
    return error_response(request, DEFAULT_CATEGORY, details=str(exc))


def register_exception_handlers(app: FastAPI) -> None:
    """注册全局异常处理器"""
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(IntegrityError, integrity_error_handler)
    app.add_exception_handler(SQLAlchemyError, database_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
