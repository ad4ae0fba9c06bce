"""测试共享夹具

- 内存 SQLite（aiosqlite），每个测试重建表
- 关闭缓存与全局限流，端点限流每个测试重置
- 邮件发送与 Celery 投递队列全部替换为内存记录
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("CACHE_ENABLED", "false")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key-for-piper")
os.environ.setdefault("PUBLIC_BASE_URL", "http://testserver")
os.environ.setdefault("DEBUG", "false")

from typing import Any, Dict, List, Optional  # noqa: E402

import pytest  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy import update  # noqa: E402

from piper.core.database import async_session_maker, drop_db, engine, init_db  # noqa: E402
from piper.core.errors import log_throttle  # noqa: E402
from piper.main import app  # noqa: E402
from piper.middleware.endpoint_limit import endpoint_limiter  # noqa: E402
from piper.middleware.rate_limit import rate_limiter  # noqa: E402
from piper.models.user import User  # noqa: E402
from piper.services.email_service import SEND_OK, email_service  # noqa: E402

PASSWORD = "Str0ng!Pass"


class FakeMailer:
    """记录发出的邮件，按收件人返回预设结果或抛出预设异常"""

    def __init__(self):
        self.sent: List[Dict] = []
        self.results: Dict[str, Any] = {}

    async def deliver(
        self,
        to_email: str,
        subject: str,
        html_content: str,
        text_content: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> str:
        self.sent.append({
            "to": to_email,
            "subject": subject,
            "html": html_content,
            "text": text_content,
            "headers": headers or {},
        })
        result = self.results.get(to_email, SEND_OK)
        if isinstance(result, Exception):
            raise result
        return result

    def to(self, email: str) -> List[Dict]:
        return [m for m in self.sent if m["to"] == email]


# ============================================================================
# 基础设施
# ============================================================================

@pytest.fixture
async def database():
    await init_db()
    yield
    await drop_db()
    await engine.dispose()


@pytest.fixture(autouse=True)
def reset_limiters():
    rate_limiter.reset()
    endpoint_limiter.reset()
    log_throttle.reset()
    yield


@pytest.fixture(autouse=True)
def mailer(monkeypatch) -> FakeMailer:
    fake = FakeMailer()
    monkeypatch.setattr(email_service, "deliver", fake.deliver)
    return fake


@pytest.fixture(autouse=True)
def queued(monkeypatch) -> List[str]:
    """替换 Celery 投递，记录入队的活动 ID"""
    calls: List[str] = []
    monkeypatch.setattr("piper.api.campaigns.queue_campaign_delivery", lambda cid: calls.append(str(cid)))
    return calls


@pytest.fixture
async def db(database):
    async with async_session_maker() as session:
        yield session


@pytest.fixture
async def client(database):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


# ============================================================================
# 用户
# ============================================================================

async def register(client: AsyncClient, email: str, password: str = PASSWORD, **extra) -> dict:
    response = await client.post("/api/auth/register", json={"email": email, "password": password, **extra})
    assert response.status_code == 201, response.text
    return response.json()


def bearer(token: str) -> Dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


async def set_role(email: str, role: str) -> None:
    async with async_session_maker() as session:
        await session.execute(update(User).where(User.email == email).values(role=role))
        await session.commit()


@pytest.fixture
async def alice(client) -> dict:
    data = await register(client, "alice@example.com", display_name="Alice")
    data["headers"] = bearer(data["token"])
    return data


@pytest.fixture
async def bob(client) -> dict:
    data = await register(client, "bob@example.com", display_name="Bob")
    data["headers"] = bearer(data["token"])
    return data


@pytest.fixture
async def newsletter(client, alice) -> dict:
    response = await client.post(
        "/api/newsletters",
        json={
            "title": "Weekly Digest",
            "subject": "This week",
            "content": '<p>Hello readers, visit <a href="https://example.com/post?a=1&amp;b=2">the post</a></p>',
            "sections": [{"heading": "News", "body": "<p>Section body</p>"}],
            "tags": ["Tech"],
        },
        headers=alice["headers"],
    )
    assert response.status_code == 201, response.text
    return response.json()["newsletter"]


async def add_subscriber(client: AsyncClient, headers: dict, email: str, **extra) -> dict:
    payload = {"email": email, "consent_marketing": True, **extra}
    response = await client.post("/api/subscribers", json=payload, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()["subscriber"]
