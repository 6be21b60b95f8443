"""
Status poller tests: budget gating, provider fallback and stage annotation.
"""
import pytest

from stk_reconciliation.core.exceptions import ProviderUnavailable, SessionNotFound
from stk_reconciliation.core.models import Transaction
from stk_reconciliation.core.state_machine import (
    ProviderOutcome,
    ResolvedBy,
    Signal,
    TransactionStatus,
)
from stk_reconciliation.core.status import StatusPoller


@pytest.fixture
def poller(store, cache, provider, engine, test_settings) -> StatusPoller:
    return StatusPoller(store, cache, provider, engine, test_settings)


class TestStatusPoller:

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_overdue_session_is_queried_and_resolved(
        self, poller, provider, store, seed_transaction
    ) -> None:
        transaction = await seed_transaction(age_seconds=180, checkout_ref="ws_CO_POLL")
        provider.query.return_value = ProviderOutcome(
            Signal.SUCCESS, "0", "The service request is processed successfully."
        )

        view = await poller.get_status(transaction.session_id)

        provider.query.assert_awaited_once_with("ws_CO_POLL")
        assert view.transaction.status is TransactionStatus.COMPLETED
        assert view.stage is None
        durable = await store.get_by_session_id(transaction.session_id)
        assert durable.resolved_by is ResolvedBy.POLL

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_still_processing_reports_overdue_stage(
        self, poller, provider, seed_transaction
    ) -> None:
        transaction = await seed_transaction(age_seconds=180)

        view = await poller.get_status(transaction.session_id)

        provider.query.assert_awaited_once()
        assert view.transaction.status is TransactionStatus.AWAITING_RESULT
        assert view.stage == "callback_overdue"
        assert view.to_dict()["stage"] == "callback_overdue"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_provider_error_leaves_session_pending(
        self, poller, provider, store, seed_transaction
    ) -> None:
        transaction = await seed_transaction(age_seconds=300)
        provider.query.side_effect = ProviderUnavailable("read timeout", operation="query")

        view = await poller.get_status(transaction.session_id)

        assert view.transaction.status is TransactionStatus.AWAITING_RESULT
        durable = await store.get_by_session_id(transaction.session_id)
        assert durable.status is TransactionStatus.AWAITING_RESULT

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_no_query_without_checkout_ref(self, poller, provider, seed_transaction) -> None:
        transaction = await seed_transaction(age_seconds=600, checkout_ref=None)

        view = await poller.get_status(transaction.session_id)

        provider.query.assert_not_awaited()
        assert view.stage == "callback_overdue"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_terminal_session_is_not_queried(
        self, poller, provider, engine, seed_transaction
    ) -> None:
        transaction = await seed_transaction(age_seconds=600)
        await engine.apply(
            transaction, ProviderOutcome(Signal.USER_CANCELLED, "1032"), ResolvedBy.CALLBACK
        )

        view = await poller.get_status(transaction.session_id)

        provider.query.assert_not_awaited()
        assert view.transaction.status is TransactionStatus.CANCELLED
        assert view.to_dict()["result_reason"] == "Request cancelled by user"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_falls_back_to_cache(self, poller, cache) -> None:
        cached = Transaction(
            session_id="sess_cacheonly", phone="254712345678", amount=150, category="courses-only"
        )
        await cache.put(cached)

        view = await poller.get_status("sess_cacheonly")

        assert view.transaction.session_id == "sess_cacheonly"
        assert view.stage == "push_accepted"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_session_raises(self, poller) -> None:
        with pytest.raises(SessionNotFound):
            await poller.get_status("sess_does_not_exist")
