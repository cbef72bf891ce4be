from contextlib import asynccontextmanager

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from clubbilling.core.config import Settings
from clubbilling.db.models import Base
from clubbilling.services.container import build_services
from tests.factories import FakeGateway, RecordingSink


@asynccontextmanager
async def noop_lock(name, timeout=30, retry_count=3, retry_delay=0.5, raise_on_fail=True):
    yield True


@pytest.fixture
def test_settings():
    return Settings(
        _env_file=None,
        DB_URL="sqlite+aiosqlite://",
        STRIPE_WEBHOOK_SECRET="whsec_test",
        STRIPE_PRICE_ID_TIER_A="price_a",
        STRIPE_PRICE_ID_TIER_B="price_b",
        STRIPE_PRICE_ID_TIER_C="price_c",
        CRON_TOKEN="cron-secret",
        BILLING_EVAL_ENABLED=False,
        BILLING_EVAL_CONCURRENCY=1,
        ENFORCEMENT_PAGE_SIZE=2,
    )


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def services(test_settings, session_factory, gateway, sink):
    return build_services(test_settings, session_factory, gateway=gateway, sink=sink, lock=noop_lock)


@pytest_asyncio.fixture
async def client(services):
    from clubbilling.main import create_app

    app = create_app(services)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
