"""
Pytest configuration and fixtures.
"""
from datetime import timedelta
from typing import Any, AsyncGenerator, Awaitable, Callable
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from stk_reconciliation.api.dependencies import Services, build_services
from stk_reconciliation.api.main import app
from stk_reconciliation.config import Settings
from stk_reconciliation.core.models import Transaction, generate_session_id, utcnow
from stk_reconciliation.core.reconciliation import ReconciliationEngine
from stk_reconciliation.core.referral import ReferralCreditDispatcher
from stk_reconciliation.core.session_cache import InMemorySessionCache
from stk_reconciliation.core.state_machine import ProviderOutcome, Signal
from stk_reconciliation.core.store import SQLAlchemyTransactionStore
from stk_reconciliation.database.connection import build_session_factory
from stk_reconciliation.database.models import Base, Referrer
from stk_reconciliation.integrations.mpesa_client import PushAck


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line("markers", "unit: fast tests without I/O")
    config.addinivalue_line("markers", "integration: tests against a real database")
    config.addinivalue_line("markers", "race: concurrent access scenarios")


@pytest.fixture
def test_settings(tmp_path: Any) -> Settings:
    """Create test settings backed by a throwaway SQLite file."""
    return Settings(
        _env_file=None,
        mpesa_consumer_key="test_key",
        mpesa_consumer_secret="test_secret",
        mpesa_shortcode="174379",
        mpesa_passkey="test_passkey",
        mpesa_callback_url="https://example.test/webhooks/mpesa",
        mpesa_retry_max_attempts=3,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'stk_test.db'}",
        session_cache_backend="memory",
        app_name="stk-reconciliation-test",
        app_env="test",
        log_level="DEBUG",
        sweep_query_interval_seconds=0,
    )


@pytest_asyncio.fixture
async def db_engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine, Any]:
    """Create test database engine with fresh tables."""
    engine = create_async_engine(test_settings.database_url, poolclass=NullPool)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return build_session_factory(db_engine)


@pytest.fixture
def store(session_factory: async_sessionmaker[AsyncSession]) -> SQLAlchemyTransactionStore:
    return SQLAlchemyTransactionStore(session_factory)


@pytest.fixture
def cache() -> InMemorySessionCache:
    return InMemorySessionCache(ttl_seconds=600)


@pytest.fixture
def provider() -> AsyncMock:
    """Mock Daraja client: pushes are accepted, queries say still processing."""
    mock = AsyncMock()
    mock.push.return_value = PushAck(checkout_ref="ws_CO_TEST_001", merchant_ref="mr_001")
    mock.query.return_value = ProviderOutcome(
        signal=Signal.STILL_PROCESSING, result_code="4999"
    )
    return mock


@pytest.fixture
def dispatcher(
    session_factory: async_sessionmaker[AsyncSession], test_settings: Settings
) -> ReferralCreditDispatcher:
    return ReferralCreditDispatcher(session_factory, settings=test_settings)


@pytest.fixture
def engine(
    store: SQLAlchemyTransactionStore,
    cache: InMemorySessionCache,
    dispatcher: ReferralCreditDispatcher,
) -> ReconciliationEngine:
    return ReconciliationEngine(store, cache, dispatcher)


@pytest.fixture
def seed_transaction(
    store: SQLAlchemyTransactionStore,
) -> Callable[..., Awaitable[Transaction]]:
    """
    Insert a transaction directly into the store.

    ``age_seconds`` backdates ``created_at``; other keywords override fields.
    """

    async def _seed(age_seconds: float = 0, **fields: Any) -> Transaction:
        created_at = utcnow() - timedelta(seconds=age_seconds)
        values = {
            "session_id": generate_session_id(),
            "phone": "254712345678",
            "amount": 150,
            "category": "courses-only",
            "checkout_ref": f"ws_CO_{generate_session_id()}",
            "created_at": created_at,
            "updated_at": created_at,
        }
        values.update(fields)
        return await store.create(Transaction(**values))

    return _seed


@pytest_asyncio.fixture
async def referrer(session_factory: async_sessionmaker[AsyncSession]) -> str:
    """Create a referrer and return its code."""
    async with session_factory() as db:
        db.add(Referrer(referral_code="JANE2024", display_name="Jane"))
        await db.commit()
    return "JANE2024"


@pytest_asyncio.fixture
async def services(
    test_settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    provider: AsyncMock,
    cache: InMemorySessionCache,
) -> Services:
    return await build_services(
        test_settings,
        session_factory=session_factory,
        provider=provider,
        cache=cache,
        create_tables=False,
    )


@pytest_asyncio.fixture
async def client(services: Services) -> AsyncGenerator[AsyncClient, Any]:
    """Create test HTTP client wired to the test services."""
    app.state.services = services
    try:
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            yield ac
    finally:
        app.state.services = None
