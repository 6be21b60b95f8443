"""
Caller-facing status reads with a provider query fallback.

A session still waiting after the poll budget has most likely lost its
callback. The poller then asks the provider directly and applies the answer
through the engine like any other outcome.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional, Protocol

import structlog

from stk_reconciliation.config import Settings, get_settings
from stk_reconciliation.core.exceptions import ProviderError, SessionNotFound
from stk_reconciliation.core.models import Transaction, utcnow
from stk_reconciliation.core.reconciliation import ReconciliationEngine
from stk_reconciliation.core.session_cache import SessionCache
from stk_reconciliation.core.state_machine import ProviderOutcome, ResolvedBy
from stk_reconciliation.core.store import TransactionStore
from stk_reconciliation.monitoring.logging import session_context

logger = structlog.get_logger(__name__)

STAGE_PUSH_ACCEPTED = "push_accepted"
STAGE_CALLBACK_OVERDUE = "callback_overdue"


class QueryProvider(Protocol):
    async def query(self, checkout_ref: str) -> ProviderOutcome:
        ...


@dataclass(frozen=True)
class StatusView:
    """
    Read model returned to callers.

    ``stage`` annotates an unresolved session; it is None once terminal.
    """

    transaction: Transaction
    stage: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = self.transaction.to_public_dict()
        data["stage"] = self.stage
        return data


class StatusPoller:
    """Reads a session and, once overdue, reconciles it with the provider."""

    def __init__(
        self,
        store: TransactionStore,
        cache: SessionCache,
        provider: QueryProvider,
        engine: ReconciliationEngine,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.cache = cache
        self.provider = provider
        self.engine = engine
        self.settings = settings or get_settings()

    def _stage(self, transaction: Transaction, now: datetime) -> Optional[str]:
        if transaction.is_terminal:
            return None
        if transaction.age_seconds(now) >= self.settings.poll_query_budget_seconds:
            return STAGE_CALLBACK_OVERDUE
        return STAGE_PUSH_ACCEPTED

    async def get_status(self, session_id: str) -> StatusView:
        """
        Current view of a session.

        Args:
            session_id: Caller-visible session id

        Returns:
            StatusView: Session fields plus the stage annotation

        Raises:
            SessionNotFound: If neither the store nor the cache knows the session
        """
        transaction = await self.store.get_by_session_id(session_id)
        if transaction is None:
            transaction = await self.cache.get(session_id)
        if transaction is None:
            raise SessionNotFound(f"Session {session_id} not found", session_id=session_id)

        now = utcnow()
        if (
            not transaction.is_terminal
            and transaction.checkout_ref
            and transaction.age_seconds(now) >= self.settings.poll_query_budget_seconds
        ):
            transaction = await self._query_fallback(transaction)

        return StatusView(transaction=transaction, stage=self._stage(transaction, utcnow()))

    async def _query_fallback(self, transaction: Transaction) -> Transaction:
        with session_context(transaction.session_id, transaction.checkout_ref):
            logger.info("status_query_fallback", age_seconds=round(transaction.age_seconds(), 1))

            try:
                outcome = await self.provider.query(transaction.checkout_ref)
            except ProviderError as e:
                logger.warning(
                    "status_query_failed",
                    error=e.message,
                    error_type=type(e).__name__,
                )
                return transaction

            result = await self.engine.apply(transaction, outcome, ResolvedBy.POLL)
        return result.transaction
