"""错误响应、中间件与健康检查测试"""

import importlib
import time
import warnings

import pytest
from fastapi import FastAPI, Request
from httpx import ASGITransport, AsyncClient
from pydantic.warnings import PydanticDeprecatedSince20

from piper.core.config import get_settings
from piper.core.errors import (
    ConflictError,
    ErrorLogThrottle,
    RateLimitError,
    register_exception_handlers,
)
from piper.core.i18n import get_locale_from_header
from piper.middleware.endpoint_limit import EndpointRateLimiter
from piper.middleware.rate_limit import RateLimitMiddleware, RateLimiter, get_client_ip
from piper.middleware.request_size import RequestSizeLimitMiddleware


def build_app() -> FastAPI:
    """挂载全局异常处理器的最小应用"""
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/boom")
    async def boom():
        raise RuntimeError("secret connection string")

    @app.get("/conflict")
    async def conflict():
        raise ConflictError("Already exists")

    @app.get("/slow-down")
    async def slow_down():
        raise RateLimitError("Too many requests", retry_after=42)

    @app.post("/echo")
    async def echo(payload: dict):
        return payload

    return app


async def request(app: FastAPI, method: str, url: str, **kwargs):
    transport = ASGITransport(app=app, raise_app_exceptions=False)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        return await client.request(method, url, **kwargs)


class TestHealth:
    async def test_health(self, client):
        for path in ("/health", "/api/health"):
            response = await client.get(path)
            assert response.status_code == 200
            assert response.json()["status"] == "healthy"

    async def test_detailed_health(self, client):
        response = await client.get("/api/health/detailed")

        body = response.json()
        assert response.status_code == 200
        assert body["components"]["database"] == {"status": "healthy"}
        assert body["components"]["cache"] == {"status": "disabled"}


class TestErrorEnvelope:
    async def test_not_found_envelope(self, client, alice):
        response = await client.get(
            "/api/newsletters/00000000-0000-0000-0000-000000000000", headers=alice["headers"]
        )

        error = response.json()["error"]
        assert set(error) >= {"id", "code", "message", "severity", "timestamp", "path", "suggestions"}
        assert error["id"].startswith("err_")
        assert error["severity"] == "low"
        assert error["path"] == "/api/newsletters/00000000-0000-0000-0000-000000000000"
        assert error["suggestions"]

    async def test_request_validation_is_400(self, client):
        response = await client.post("/api/auth/login", json={})

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "VALIDATION_ERROR"
        assert {e["field"] for e in error["validation_errors"]} == {"email", "password"}

    async def test_unknown_route(self, client):
        response = await client.get("/api/nowhere")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NOT_FOUND"

    async def test_localized_messages(self, client):
        response = await client.post("/api/auth/login", json={}, headers={"Accept-Language": "zh-TW,en;q=0.9"})
        assert response.json()["error"]["message"] == "資料驗證失敗"

    async def test_unhandled_error_hides_details(self):
        response = await request(build_app(), "GET", "/boom")

        assert response.status_code == 500
        error = response.json()["error"]
        assert error["code"] == "INTERNAL_SERVER_ERROR"
        assert error["severity"] == "high"
        assert "secret" not in response.text

    async def test_conflict(self):
        response = await request(build_app(), "GET", "/conflict")
        assert response.status_code == 409
        assert response.json()["error"]["message"] == "Already exists"

    async def test_rate_limit_error_sets_retry_after(self):
        response = await request(build_app(), "GET", "/slow-down")

        assert response.status_code == 429
        assert response.headers["Retry-After"] == "42"
        assert response.json()["error"]["retry_after"] == 42
        assert "42" in response.json()["error"]["suggestions"][0]


class TestSecurityHeaders:
    async def test_headers_and_request_id(self, client):
        response = await client.get("/health")

        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Frame-Options"] == "DENY"
        assert len(response.headers["X-Request-ID"]) == 16

    async def test_request_id_is_propagated(self, client):
        response = await client.get("/health", headers={"X-Request-ID": "abc123"})
        assert response.headers["X-Request-ID"] == "abc123"


class TestRequestSize:
    async def test_oversized_body_rejected(self):
        app = build_app()
        app.add_middleware(RequestSizeLimitMiddleware, max_size=16)

        small = await request(app, "POST", "/echo", json={"a": 1})
        large = await request(app, "POST", "/echo", json={"text": "x" * 100})

        assert small.status_code == 200
        assert large.status_code == 413
        assert large.json()["error"]["code"] == "PAYLOAD_TOO_LARGE"


class TestGlobalRateLimit:
    async def test_limiter_blocks_after_max(self):
        limiter = RateLimiter()
        results = [await limiter.is_allowed("1.2.3.4", max_requests=3, window=60) for _ in range(4)]

        assert [allowed for allowed, _, _ in results] == [True, True, True, False]
        assert results[0][1] == 2
        assert results[3][2] == 300

        # 封禁期间继续拒绝，其他 IP 不受影响
        assert (await limiter.is_allowed("1.2.3.4", max_requests=3))[0] is False
        assert (await limiter.is_allowed("5.6.7.8", max_requests=3))[0] is True

    async def test_middleware_returns_429(self):
        app = build_app()
        app.add_middleware(RateLimitMiddleware, max_requests=2, window=60, enabled=True)

        statuses = [(await request(app, "POST", "/echo", json={})).status_code for _ in range(3)]
        limited = await request(app, "POST", "/echo", json={})

        assert statuses == [200, 200, 429]
        assert limited.json()["error"]["code"] == "RATE_LIMIT_EXCEEDED"
        assert int(limited.headers["Retry-After"]) > 0


def make_request(peer: str, forwarded: str = None) -> Request:
    headers = [(b"x-forwarded-for", forwarded.encode())] if forwarded else []
    return Request({"type": "http", "method": "GET", "path": "/", "headers": headers, "client": (peer, 1234)})


class TestClientIp:
    def test_forwarded_for_ignored_from_untrusted_peer(self):
        assert get_client_ip(make_request("203.0.113.5", "1.1.1.1")) == "203.0.113.5"

    def test_trusted_proxy_chain(self, monkeypatch):
        monkeypatch.setattr(get_settings(), "trusted_proxies", ["10.0.0.1", "10.0.0.2"])

        # 最左侧地址由客户端填写，不可信
        request = make_request("10.0.0.1", "6.6.6.6, 198.51.100.4, 10.0.0.2")
        assert get_client_ip(request) == "198.51.100.4"
        assert get_client_ip(make_request("10.0.0.1")) == "10.0.0.1"


class TestEndpointLimiterCleanup:
    async def test_expired_windows_removed(self):
        limiter = EndpointRateLimiter()
        await limiter.check_limit("1.2.3.4", "/api/auth/login", max_requests=10, window=60)
        limiter.requests["9.9.9.9:/api/auth/login"] = (3, time.time() - 7200)

        await limiter.cleanup()

        assert list(limiter.requests) == ["1.2.3.4:/api/auth/login"]


class TestErrorLogThrottle:
    def test_throttles_per_key(self):
        throttle = ErrorLogThrottle(max_per_window=2, window=60)

        assert [throttle.should_log("a") for _ in range(3)] == [True, True, False]
        assert throttle.should_log("b") is True

        throttle.reset()
        assert throttle.should_log("a") is True


@pytest.mark.parametrize("header,expected", [
    (None, "en"),
    ("zh-TW", "zh-TW"),
    ("fr-FR,zh-TW;q=0.8", "zh-TW"),
    ("de", "en"),
])
def test_locale_from_header(header, expected):
    assert get_locale_from_header(header) == expected


@pytest.mark.parametrize("module", [
    "piper.api.admin",
    "piper.api.analytics",
    "piper.api.auth",
    "piper.api.campaigns",
    "piper.api.content",
    "piper.api.newsletters",
    "piper.api.subscribers",
])
def test_response_models_use_current_pydantic_config(module):
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        importlib.reload(importlib.import_module(module))

    assert not [w for w in caught if issubclass(w.category, PydanticDeprecatedSince20)]
