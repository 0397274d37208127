from __future__ import annotations

import json
import os
from dataclasses import replace
from typing import Any
from urllib.parse import parse_qs

# Settings are read when the app modules are imported
os.environ.setdefault("RELAY_SIGNING_KEY", "test-signing-key-0123456789-abcdefghij")
os.environ.setdefault("RELAY_ENCRYPTION_KEY", "test-encryption-key")
os.environ.setdefault("RELAY_UPSTREAM_BASE_URL", "https://chat.example.com")
os.environ.setdefault("RELAY_INVITE_CODE", "letmein-test")
os.environ.setdefault("RELAY_DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("RELAY_AUTO_MIGRATE", "false")

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from services.relay_service.app.db.base import Base
from services.relay_service.app.dependencies import get_session
from services.relay_service.app.main import create_app
from services.relay_service.app.models import User
from services.relay_service.app.services.upstream import CircuitBreaker, UpstreamClient
from services.relay_service.app.settings import relay_settings

UPSTREAM_BASE_URL = os.environ["RELAY_UPSTREAM_BASE_URL"]
INVITE_CODE = os.environ["RELAY_INVITE_CODE"]


async def no_sleep(_: float) -> None:
    return None


class FakeChatServer:
    """In-process stand-in for the upstream chat API, served through httpx.MockTransport."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.registration: dict[str, Any] = {
            "result": "success",
            "queue_id": "queue-1",
            "last_event_id": 4,
            "unread_msgs": {"count": 2},
        }
        self.register_status = 200
        self.event_batches: list[list[dict[str, Any]]] = []
        self.deleted_queues: list[str] = []
        self.sent_messages: list[dict[str, list[str]]] = []
        self.uploads: list[httpx.Request] = []

    @staticmethod
    def _json(status: int, payload: dict[str, Any]) -> httpx.Response:
        return httpx.Response(status, json=payload)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == "/api/v1/register" and request.method == "POST":
            if self.register_status != 200:
                return self._json(self.register_status, {"result": "error", "msg": "Server error"})
            return self._json(200, self.registration)
        if path == "/api/v1/events" and request.method == "GET":
            if self.event_batches:
                return self._json(200, {"result": "success", "events": self.event_batches.pop(0)})
            return self._json(
                400,
                {"result": "error", "code": "BAD_EVENT_QUEUE_ID", "msg": "Bad event queue id: queue-1"},
            )
        if path == "/api/v1/events" and request.method == "DELETE":
            self.deleted_queues.append(request.url.params["queue_id"])
            return self._json(200, {"result": "success"})
        if path == "/api/v1/users/me/subscriptions":
            return self._json(
                200,
                {"result": "success", "subscriptions": [{"stream_id": 1, "name": "general"}, {"stream_id": 2, "name": "random"}]},
            )
        if path == "/api/v1/users/me/1/topics":
            return self._json(200, {"result": "success", "topics": [{"name": "hello", "max_id": 30}]})
        if path == "/api/v1/streams/1":
            return self._json(200, {"result": "success", "stream": {"stream_id": 1, "subscribers": [10, 11]}})
        if path == "/api/v1/users":
            return self._json(
                200,
                {
                    "result": "success",
                    "members": [
                        {"user_id": 10, "full_name": "Ada", "email": "ada@example.com"},
                        {"user_id": 11, "full_name": "Grace", "email": "grace@example.com"},
                        {"user_id": 12, "full_name": "Other", "email": "other@example.com"},
                    ],
                },
            )
        if path == "/api/v1/messages" and request.method == "GET":
            return self._json(
                200,
                {
                    "result": "success",
                    "messages": [
                        {
                            "id": 30,
                            "sender_full_name": "Ada",
                            "sender_email": "ada@example.com",
                            "timestamp": 1700000000,
                            "rendered_content": "<p>hi</p>",
                        }
                    ],
                },
            )
        if path == "/api/v1/messages" and request.method == "POST":
            self.sent_messages.append(parse_qs(request.content.decode()))
            return self._json(200, {"result": "success", "id": 42})
        if path == "/api/v1/messages/flags":
            form = parse_qs(request.content.decode())
            return self._json(200, {"result": "success", "messages": json.loads(form["messages"][0])})
        if path == "/api/v1/user_uploads" and request.method == "POST":
            self.uploads.append(request)
            return self._json(200, {"result": "success", "uri": "/user_uploads/2/ab/cat.png"})
        if path.startswith("/user_uploads/"):
            return httpx.Response(200, content=b"\x89PNG", headers={"content-type": "image/png"})
        if path == "/api/v1/server_settings":
            return self._json(200, {"result": "success"})
        return self._json(404, {"result": "error", "msg": "Not found"})


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
    await engine.dispose()


@pytest_asyncio.fixture
async def user(session_factory) -> User:
    async with session_factory() as session:
        record = User(email="alice@example.com", hashed_password="not-a-real-hash")
        session.add(record)
        await session.commit()
        return record


@pytest.fixture
def fake_upstream() -> FakeChatServer:
    return FakeChatServer()


def make_upstream_client(server: FakeChatServer, **kwargs: Any) -> UpstreamClient:
    http_client = httpx.AsyncClient(
        transport=httpx.MockTransport(server.handler),
        base_url=UPSTREAM_BASE_URL,
    )
    kwargs.setdefault("breaker", CircuitBreaker())
    kwargs.setdefault("sleep", no_sleep)
    return UpstreamClient(http_client, **kwargs)


@pytest_asyncio.fixture
async def test_app(session_factory, fake_upstream):
    relay_settings.cache_clear()
    app = create_app()
    built = app.state.components.upstream
    upstream = make_upstream_client(fake_upstream)
    app.state.components = replace(app.state.components, upstream=upstream)
    await built.aclose()

    async def override_session() -> AsyncSession:
        session = session_factory()
        try:
            yield session
        finally:
            await session.close()

    app.dependency_overrides[get_session] = override_session
    yield app

    await upstream.aclose()
    relay_settings.cache_clear()


def asgi_client(app) -> AsyncClient:
    transport = ASGITransport(app=app)
    return AsyncClient(transport=transport, base_url="http://testserver")


async def register_and_login(client: AsyncClient, email: str, password: str = "Passw0rd!") -> dict:
    register = await client.post(
        "/api/auth/register",
        json={
            "invite_code": INVITE_CODE,
            "email": email,
            "password": password,
            "upstream_email": "bot@example.com",
            "upstream_token": "upstream-api-key-123",
        },
    )
    assert register.status_code == 200, register.text
    response = await client.post("/api/auth/login", json={"email": email, "password": password})
    assert response.status_code == 200, response.text
    return response.json()


def bearer(tokens: dict) -> dict[str, str]:
    return {"Authorization": f"Bearer {tokens['token']}"}
