"""Service test fixtures — async DB, fake provider APIs, ledger wiring, FastAPI test client.

Invariants:
    - Every test gets a fresh in-memory SQLite database
    - get_db dependency overridden to use test DB session
    - db_manager patched so the readiness check sees the test engine
    - Provider HTTP goes through httpx.MockTransport (FakeProviderApi), never the network
    - app.state wired by hand: ASGITransport does not run the lifespan

Design Decisions:
    - StaticPool: every session shares the single in-memory connection, so concurrent
      ledgers in one test see each other's commits
"""

from decimal import Decimal

import httpx
import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import (
    AsyncSession, create_async_engine, async_sessionmaker,
)
from sqlalchemy.pool import StaticPool

import app.infrastructure.database as db_module
from app.config import Settings
from app.db.base import Base
from app.infrastructure.database import get_db, DatabaseSessionManager
from app.infrastructure.provider_http import ProviderHttpClient
from app.main import app
from app.services.order_events import OrderEventBus, OrderPaid
from app.services.order_ledger import OrderLedger, OrderLocks
from app.services.payment_gateway import build_gateway_registry
from app.services.pricing import StaticPriceList
from tests.services.signed_payloads import (
    ROBOKASSA_LOGIN,
    ROBOKASSA_PASSWORD1,
    ROBOKASSA_PASSWORD2,
    YOOMONEY_RECEIVER,
    YOOMONEY_SECRET,
    YOOMONEY_TOKEN,
    FakeProviderApi,
)


@pytest.fixture
async def test_engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:", echo=False, poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
async def test_session_factory(test_engine):
    return async_sessionmaker(
        test_engine, class_=AsyncSession, expire_on_commit=False,
    )


@pytest.fixture
async def test_db(test_session_factory):
    async with test_session_factory() as session:
        yield session


@pytest.fixture
def settings():
    return Settings(
        robokassa_merchant_login=ROBOKASSA_LOGIN,
        robokassa_password1=ROBOKASSA_PASSWORD1,
        robokassa_password2=ROBOKASSA_PASSWORD2,
        robokassa_test_mode=True,
        yoomoney_receiver=YOOMONEY_RECEIVER,
        yoomoney_notification_secret=YOOMONEY_SECRET,
        yoomoney_api_token=YOOMONEY_TOKEN,
    )


@pytest.fixture
def provider_api():
    return FakeProviderApi()


@pytest.fixture
async def provider_http(provider_api):
    http = ProviderHttpClient(
        httpx.AsyncClient(transport=provider_api.transport),
        max_retries=1, base_delay_ms=1, max_delay_ms=5,
    )
    yield http
    await http.aclose()


@pytest.fixture
def gateways(settings, provider_http):
    return build_gateway_registry(settings, provider_http)


@pytest.fixture
def order_events():
    return OrderEventBus()


@pytest.fixture
def paid_events(order_events):
    """Every OrderPaid published during the test."""
    received: list[OrderPaid] = []

    async def record(event):
        received.append(event)

    order_events.subscribe(OrderPaid, record)
    return received


@pytest.fixture
def order_locks():
    return OrderLocks()


@pytest.fixture
def price_source():
    return StaticPriceList({
        "course-py": Decimal("40.00"),
        "service:consult": Decimal("5.00"),
    })


@pytest.fixture
def ledger(test_db, gateways, order_events, order_locks):
    return OrderLedger(test_db, gateways, order_events, order_locks, status_timeout=1.0)


@pytest.fixture
async def client(
    test_engine, test_session_factory, gateways, order_events, order_locks, price_source,
):
    """FastAPI test client with DB dependency overridden."""
    async def override_get_db():
        async with test_session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db

    original_manager = db_module.db_manager
    fake_manager = DatabaseSessionManager.__new__(DatabaseSessionManager)
    fake_manager.engine = test_engine
    fake_manager.session_factory = test_session_factory
    db_module.db_manager = fake_manager

    app.state.gateways = gateways
    app.state.order_events = order_events
    app.state.order_locks = order_locks
    app.state.price_source = price_source

    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test",
    ) as c:
        yield c

    app.dependency_overrides.clear()
    db_module.db_manager = original_manager
