"""
Pytest Configuration and Fixtures

Provides fixtures for:
- Database engine and sessions (async SQLite file per test)
- A scripted subscriber endpoint behind httpx.MockTransport
- An in-memory Redis for the drain lock
- A controllable clock for retry timing
- Service context, queue, worker and API test client
- Test data factories and auth tokens
"""
# JWT_SECRET_KEY must be set before importing app: the validator requires it when DEBUG=False
import os
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret-key-for-testing-only-do-not-use-in-production")

import asyncio
from datetime import datetime, timedelta
from typing import AsyncGenerator, Callable, Iterable, List

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.auth import (
    PERMISSION_DELETE,
    PERMISSION_READ,
    PERMISSION_WRITE,
    create_access_token,
)
from app.core.config import Settings
from app.core.context import create_context
from app.db.database import Base, create_engine, create_session_factory, init_models
from app.db.models.webhook_subscription import WebhookSubscription, generate_webhook_secret
from app.domain.services.delivery_queue import SqlDeliveryQueue
from app.domain.services.delivery_worker import DeliveryWorker, DeliveryWorkerPool
from app.main import create_app

ALL_PERMISSIONS = (PERMISSION_READ, PERMISSION_WRITE, PERMISSION_DELETE)
TENANT_A = "tenant-a"


# ============================================================================
# Clock
# ============================================================================

class FakeClock:
    """Callable clock returning naive UTC, advanced by hand"""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 1, 1, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# ============================================================================
# Subscriber endpoint
# ============================================================================

class SubscriberStub:
    """
    Scripted subscriber endpoint.

    ``responses`` is consumed one item per request: an int status code, or a
    callable taking the request and raising a transport error. When empty,
    ``default_status`` is answered.
    """

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.responses: list = []
        self.default_status = 200
        self.response_text = "ok"
        self.delay = 0.0
        self.in_flight = 0
        self.max_in_flight = 0

    def script(self, *outcomes) -> None:
        self.responses.extend(outcomes)

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            outcome = self.responses.pop(0) if self.responses else self.default_status
            if callable(outcome):
                outcome(request)
            return httpx.Response(outcome, text=self.response_text)
        finally:
            self.in_flight -= 1


@pytest.fixture
def subscriber() -> SubscriberStub:
    return SubscriberStub()


@pytest.fixture
async def http_client(subscriber: SubscriberStub) -> AsyncGenerator[httpx.AsyncClient, None]:
    client = httpx.AsyncClient(transport=httpx.MockTransport(subscriber.handler))
    yield client
    await client.aclose()


# ============================================================================
# Redis
# ============================================================================

class FakeRedis:
    """In-memory stand-in for the few Redis commands the drain lock uses"""

    def __init__(self) -> None:
        self.store: dict[str, str] = {}
        self.ttls: dict[str, int] = {}

    async def get(self, key: str) -> str | None:
        return self.store.get(key)

    async def set(self, key: str, value: str, nx: bool = False, ex: int | None = None) -> bool | None:
        if nx and key in self.store:
            return None
        self.store[key] = value
        if ex is not None:
            self.ttls[key] = ex
        return True

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            removed += self.store.pop(key, None) is not None
            self.ttls.pop(key, None)
        return removed

    async def aclose(self) -> None:
        self.store.clear()
        self.ttls.clear()


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


# ============================================================================
# Database
# ============================================================================

@pytest.fixture
def test_settings(tmp_path) -> Settings:
    """A file database: the worker pool needs real concurrent connections"""
    return Settings(
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'webhooks.db'}",
        DEBUG=False,
        JWT_SECRET_KEY=os.environ["JWT_SECRET_KEY"],
        WEBHOOK_CONCURRENCY=10,
        WEBHOOK_MAX_ATTEMPTS=5,
        WEBHOOK_RETRY_BASE_SECONDS=5,
    )


@pytest.fixture
async def async_engine(test_settings: Settings):
    """Create async test database engine"""
    engine = create_engine(test_settings, connect_args={"timeout": 30})
    await init_models(engine)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(async_engine):
    return create_session_factory(async_engine)


@pytest.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests"""
    async with session_factory() as session:
        yield session
        await session.rollback()


# ============================================================================
# Services
# ============================================================================

@pytest.fixture
def service_context(test_settings, async_engine, http_client, fake_redis):
    """Context sharing the test engine, mock HTTP client and in-memory Redis"""
    return create_context(
        test_settings, engine=async_engine, http_client=http_client, redis=fake_redis
    )


@pytest.fixture
def queue(session_factory, test_settings, clock) -> SqlDeliveryQueue:
    return SqlDeliveryQueue(session_factory, test_settings, clock=clock)


@pytest.fixture
def worker(session_factory, http_client, queue, test_settings, clock) -> DeliveryWorker:
    return DeliveryWorker(session_factory, http_client, queue, test_settings, clock=clock)


@pytest.fixture
def pool(queue, worker, test_settings) -> DeliveryWorkerPool:
    return DeliveryWorkerPool(queue, worker, test_settings.WEBHOOK_CONCURRENCY)


@pytest.fixture
async def test_client(service_context):
    """API client against an app bound to the test context"""
    app = create_app(context=service_context)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


# ============================================================================
# Test Data Factories
# ============================================================================

@pytest.fixture
def auth_headers(test_settings) -> Callable[..., dict]:
    """Factory for Authorization headers"""
    def _headers(
        tenant_id: str = TENANT_A,
        user_id: str = "user-1",
        permissions: Iterable[str] = ALL_PERMISSIONS,
    ) -> dict:
        token = create_access_token(user_id, tenant_id, permissions, settings=test_settings)
        return {"Authorization": f"Bearer {token}"}

    return _headers


@pytest.fixture
def subscription_factory(db_session: AsyncSession):
    """Factory for creating subscriptions directly in the database"""
    async def _create(
        tenant_id: str = TENANT_A,
        url: str = "https://hooks.example.com/receive",
        events: list[str] | None = None,
        is_active: bool = True,
        secret: str | None = None,
    ) -> WebhookSubscription:
        subscription = WebhookSubscription(
            tenant_id=tenant_id,
            url=url,
            events=events if events is not None else ["order.created"],
            secret=secret or generate_webhook_secret(),
            is_active=is_active,
            created_by="user-1",
        )
        db_session.add(subscription)
        await db_session.commit()
        await db_session.refresh(subscription)
        return subscription

    return _create
