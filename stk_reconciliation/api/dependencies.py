"""
Service wiring.

``build_services`` assembles the store, cache, provider client and the
handlers that share them. The API keeps one ``Services`` instance on
``app.state``; route dependencies read from it, so tests can install their
own instance or use ``app.dependency_overrides``.
"""
from dataclasses import dataclass, field
from typing import Any, Optional

import structlog
from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from stk_reconciliation.config import Settings, get_settings
from stk_reconciliation.core.intake import IntakeHandler
from stk_reconciliation.core.reconciliation import ReconciliationEngine
from stk_reconciliation.core.redemption import ReceiptRedemption
from stk_reconciliation.core.referral import ReferralCreditDispatcher
from stk_reconciliation.core.session_cache import SessionCache, build_session_cache
from stk_reconciliation.core.status import StatusPoller
from stk_reconciliation.core.store import SQLAlchemyTransactionStore, TransactionStore
from stk_reconciliation.database.connection import close_db, get_session_factory, init_db
from stk_reconciliation.integrations.callback_handler import CallbackHandler
from stk_reconciliation.integrations.mpesa_client import DarajaClient
from stk_reconciliation.monitoring.health import HealthCheck
from stk_reconciliation.workers.sweeper import BulkSyncSweeper

logger = structlog.get_logger(__name__)


@dataclass
class Services:
    """Everything a request or a sweep needs, sharing one store and cache."""

    settings: Settings
    store: TransactionStore
    cache: SessionCache
    provider: Any
    engine: ReconciliationEngine
    dispatcher: ReferralCreditDispatcher
    intake: IntakeHandler
    poller: StatusPoller
    callbacks: CallbackHandler
    redemption: ReceiptRedemption
    sweeper: BulkSyncSweeper
    health: HealthCheck
    owns_database: bool = field(default=False)

    async def close(self) -> None:
        """Release the provider client, the cache and owned connections."""
        close_provider = getattr(self.provider, "close", None)
        if close_provider is not None:
            await close_provider()
        await self.cache.close()
        if self.owns_database:
            await close_db()


async def build_services(
    settings: Optional[Settings] = None,
    *,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    provider: Any = None,
    cache: Optional[SessionCache] = None,
    create_tables: bool = True,
) -> Services:
    """
    Assemble the service graph.

    Args:
        settings: Optional settings (uses global settings if not provided)
        session_factory: Optional session factory (global engine if not provided)
        provider: Optional provider client (a ``DarajaClient`` if not provided)
        cache: Optional session cache (built from settings if not provided)
        create_tables: Create missing tables on the global engine

    Returns:
        Services: Wired services
    """
    settings = settings or get_settings()
    owns_database = session_factory is None
    if owns_database:
        if create_tables:
            await init_db()
        session_factory = get_session_factory()

    store = SQLAlchemyTransactionStore(session_factory)
    cache = cache or build_session_cache(settings)
    provider = provider or DarajaClient(settings)
    dispatcher = ReferralCreditDispatcher(session_factory, settings=settings)
    engine = ReconciliationEngine(store, cache, dispatcher)

    logger.info(
        "services_built",
        cache_backend=type(cache).__name__,
        provider=type(provider).__name__,
    )

    return Services(
        settings=settings,
        store=store,
        cache=cache,
        provider=provider,
        engine=engine,
        dispatcher=dispatcher,
        intake=IntakeHandler(store, cache, provider, engine, settings),
        poller=StatusPoller(store, cache, provider, engine, settings),
        callbacks=CallbackHandler(engine, store, cache),
        redemption=ReceiptRedemption(store, settings),
        sweeper=BulkSyncSweeper(store, provider, engine, dispatcher, settings),
        health=HealthCheck(session_factory, settings),
        owns_database=owns_database,
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_intake_handler(request: Request) -> IntakeHandler:
    return get_services(request).intake


def get_status_poller(request: Request) -> StatusPoller:
    return get_services(request).poller


def get_callback_handler(request: Request) -> CallbackHandler:
    return get_services(request).callbacks


def get_redemption(request: Request) -> ReceiptRedemption:
    return get_services(request).redemption


def get_sweeper(request: Request) -> BulkSyncSweeper:
    return get_services(request).sweeper


def get_store(request: Request) -> TransactionStore:
    return get_services(request).store


def get_health_check(request: Request) -> HealthCheck:
    return get_services(request).health
