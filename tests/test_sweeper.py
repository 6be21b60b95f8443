"""
Bulk sync sweeper tests.
"""
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from stk_reconciliation.core.exceptions import ProviderUnavailable
from stk_reconciliation.core.models import utcnow
from stk_reconciliation.core.referral import CreditOutcome
from stk_reconciliation.core.state_machine import (
    ProviderOutcome,
    ResolvedBy,
    Signal,
    TransactionStatus,
)
from stk_reconciliation.workers.sweeper import BulkSyncSweeper


@pytest.fixture
def sleep() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def sweeper(store, provider, engine, dispatcher, test_settings, sleep) -> BulkSyncSweeper:
    return BulkSyncSweeper(store, provider, engine, dispatcher, test_settings, sleep=sleep)


class TestBulkSyncSweeper:

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_recent_sessions_are_left_alone(
        self, sweeper, provider, seed_transaction
    ) -> None:
        await seed_transaction(age_seconds=30)

        report = await sweeper.run_once()

        assert report.total == 0
        provider.query.assert_not_awaited()

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unacknowledged_push_expires_without_query(
        self, sweeper, provider, store, seed_transaction
    ) -> None:
        transaction = await seed_transaction(age_seconds=300, checkout_ref=None)

        report = await sweeper.run_once()

        provider.query.assert_not_awaited()
        current = await store.get_by_session_id(transaction.session_id)
        assert current.status is TransactionStatus.EXPIRED
        assert current.result_reason == "push_unacknowledged"
        assert current.resolved_by is ResolvedBy.SWEEP
        assert report.expired_by_deadline == 1
        assert report.failed == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_queries_and_applies_outcomes(
        self, sweeper, provider, store, seed_transaction, sleep
    ) -> None:
        completed = await seed_transaction(age_seconds=900, checkout_ref="ws_CO_S1")
        cancelled = await seed_transaction(age_seconds=600, checkout_ref="ws_CO_S2")
        waiting = await seed_transaction(age_seconds=300, checkout_ref="ws_CO_S3")
        outcomes = {
            "ws_CO_S1": ProviderOutcome(Signal.SUCCESS, "0", receipt_code="QSWEEP0001"),
            "ws_CO_S2": ProviderOutcome(Signal.USER_CANCELLED, "1032"),
            "ws_CO_S3": ProviderOutcome(Signal.STILL_PROCESSING, "500.001.1001"),
        }
        provider.query.side_effect = lambda ref: outcomes[ref]

        report = await sweeper.run_once()

        assert report.total == 3
        assert report.completed == 1
        assert report.failed == 1
        assert report.pending == 1
        assert report.errors == 0
        assert [item["session_id"] for item in report.items] == [
            completed.session_id,
            cancelled.session_id,
            waiting.session_id,
        ]
        assert sleep.await_count == 2
        assert (await store.get_by_session_id(completed.session_id)).receipt_code == "QSWEEP0001"
        assert (
            await store.get_by_session_id(waiting.session_id)
        ).status is TransactionStatus.AWAITING_RESULT

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_provider_errors_are_counted_not_applied(
        self, sweeper, provider, store, seed_transaction
    ) -> None:
        transaction = await seed_transaction(age_seconds=600)
        provider.query.side_effect = ProviderUnavailable("connect timeout", operation="query")

        report = await sweeper.run_once()

        assert report.errors == 1
        assert report.items[0]["error"] == "provider_unavailable"
        current = await store.get_by_session_id(transaction.session_id)
        assert current.status is TransactionStatus.AWAITING_RESULT

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_batch_size_limits_candidates(
        self, store, provider, engine, seed_transaction, test_settings
    ) -> None:
        for age in (400, 500, 600):
            await seed_transaction(age_seconds=age)
        settings = test_settings.model_copy(update={"sweep_batch_size": 2})
        sweeper = BulkSyncSweeper(store, provider, engine, settings=settings, sleep=AsyncMock())

        report = await sweeper.run_once()

        assert report.total == 2

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_credit_retry_pass(
        self, store, provider, engine, seed_transaction, test_settings
    ) -> None:
        transaction = await seed_transaction(referral_code="JANE2024")
        await store.conditional_update(
            transaction.session_id,
            TransactionStatus.AWAITING_RESULT,
            {"status": TransactionStatus.COMPLETED},
        )
        dispatcher = AsyncMock()
        dispatcher.dispatch.return_value = CreditOutcome.SUCCESS
        sweeper = BulkSyncSweeper(
            store, provider, engine, dispatcher, test_settings, sleep=AsyncMock()
        )

        report = await sweeper.run_once()

        assert report.credits_retried == 1
        retried = dispatcher.dispatch.await_args.args[0]
        assert retried.session_id == transaction.session_id

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unowned_codes_do_not_block_credit_retries(
        self, store, provider, engine, dispatcher, seed_transaction, referrer, test_settings
    ) -> None:
        completed_at = utcnow() - timedelta(minutes=30)
        unowned = []
        for _ in range(2):
            transaction = await seed_transaction(referral_code="NOBODY")
            await store.conditional_update(
                transaction.session_id,
                TransactionStatus.AWAITING_RESULT,
                {"status": TransactionStatus.COMPLETED, "updated_at": completed_at},
            )
            unowned.append(transaction.session_id)
        owed = await seed_transaction(referral_code=referrer)
        await store.conditional_update(
            owed.session_id,
            TransactionStatus.AWAITING_RESULT,
            {"status": TransactionStatus.COMPLETED},
        )
        settings = test_settings.model_copy(update={"sweep_batch_size": 2})
        sweeper = BulkSyncSweeper(
            store, provider, engine, dispatcher, settings, sleep=AsyncMock()
        )

        first = await sweeper.run_once()
        second = await sweeper.run_once()

        assert first.credits_retried == 2
        assert second.credits_retried == 1
        assert (await store.get_by_session_id(owed.session_id)).credit_applied is True
        for session_id in unowned:
            current = await store.get_by_session_id(session_id)
            assert current.credit_status == "referrer_not_found"
