"""
Service Context

Explicitly constructed handle over the shared clients: the database engine,
its session factory, the outbound HTTP client and Redis. The API builds one in its
lifespan, each Celery task builds its own (bound to the task's event loop),
and both close it on the way out.
"""
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator

import httpx
import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from app.core.config import Settings, settings as default_settings
from app.core.logging import get_logger
from app.core.redis_client import create_redis
from app.db.database import create_engine, create_session_factory

logger = get_logger(__name__)


@dataclass
class ServiceContext:
    settings: Settings
    engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]
    http_client: httpx.AsyncClient
    redis: aioredis.Redis

    async def aclose(self) -> None:
        await self.http_client.aclose()
        await self.redis.aclose()
        await self.engine.dispose()
        logger.info("Service context closed")


def create_http_client(settings: Settings, **kwargs) -> httpx.AsyncClient:
    """HTTP client for subscriber endpoints.

    The timeout bounds every attempt so a hanging endpoint cannot hold a worker
    slot forever. Redirects are not followed: the URL as registered is the URL
    that is logged.
    """
    limits = httpx.Limits(
        max_connections=settings.WEBHOOK_CONCURRENCY,
        max_keepalive_connections=settings.WEBHOOK_CONCURRENCY,
    )
    options = {
        "timeout": httpx.Timeout(settings.WEBHOOK_REQUEST_TIMEOUT_SECONDS),
        "limits": limits,
        "follow_redirects": False,
    }
    options.update(kwargs)
    return httpx.AsyncClient(**options)


def create_context(
    settings: Settings | None = None,
    *,
    engine: AsyncEngine | None = None,
    http_client: httpx.AsyncClient | None = None,
    redis: aioredis.Redis | None = None,
) -> ServiceContext:
    settings = settings or default_settings
    engine = engine or create_engine(settings)
    return ServiceContext(
        settings=settings,
        engine=engine,
        session_factory=create_session_factory(engine),
        http_client=http_client or create_http_client(settings),
        redis=redis or create_redis(settings),
    )


@asynccontextmanager
async def task_context(settings: Settings | None = None) -> AsyncIterator[ServiceContext]:
    """Fresh context for one Celery task run.

    Celery runs each task in its own event loop; pooled connections created on
    a previous loop cannot be reused, so the engine lives only as long as the
    task.
    """
    context = create_context(settings)
    try:
        yield context
    finally:
        await context.aclose()
