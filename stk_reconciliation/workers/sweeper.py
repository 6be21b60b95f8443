"""
Bulk sync sweeper.

Periodically walks unresolved sessions that are past the poll budget,
expires the ones that can no longer be confirmed, queries the provider for
the rest, and retries referral credits that never landed.
"""
import asyncio
import signal
import time
from dataclasses import asdict, dataclass, field
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

import structlog

from stk_reconciliation.config import Settings, get_settings
from stk_reconciliation.core.exceptions import ReconciliationError
from stk_reconciliation.core.models import Transaction, utcnow
from stk_reconciliation.core.reconciliation import ApplyResult, ReconciliationEngine
from stk_reconciliation.core.referral import CreditOutcome, ReferralCreditDispatcher
from stk_reconciliation.core.state_machine import ProviderOutcome, ResolvedBy, TransactionStatus
from stk_reconciliation.core.store import TransactionStore
from stk_reconciliation.monitoring.logging import session_context, setup_logging
from stk_reconciliation.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

REASON_CONFIRMATION_TIMEOUT = "confirmation_timeout"
REASON_PUSH_UNACKNOWLEDGED = "push_unacknowledged"


class QueryProvider(Protocol):
    async def query(self, checkout_ref: str) -> ProviderOutcome:
        ...


@dataclass
class SweepReport:
    """Summary of one sweep."""

    total: int = 0
    completed: int = 0
    failed: int = 0
    pending: int = 0
    errors: int = 0
    expired_by_deadline: int = 0
    credits_retried: int = 0
    items: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class BulkSyncSweeper:
    """
    Reconciles every overdue session in one pass.

    Each item is handled independently; a provider error on one session is
    counted and the sweep moves on.
    """

    def __init__(
        self,
        store: TransactionStore,
        provider: QueryProvider,
        engine: ReconciliationEngine,
        dispatcher: Optional[ReferralCreditDispatcher] = None,
        settings: Optional[Settings] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """
        Initialize sweeper.

        Args:
            store: Durable transaction store
            provider: Client used for status queries
            engine: Reconciliation engine
            dispatcher: Optional referral dispatcher for the credit retry pass
            settings: Optional settings (uses global settings if not provided)
            sleep: Coroutine used to pace provider queries
        """
        self.store = store
        self.provider = provider
        self.engine = engine
        self.dispatcher = dispatcher
        self.settings = settings or get_settings()
        self._sleep = sleep

    async def run_once(self) -> SweepReport:
        """
        Run one sweep.

        Returns:
            SweepReport: Counts and per-item results
        """
        start_time = time.time()
        now = utcnow()
        budget = self.settings.poll_query_budget_seconds
        ceiling = self.settings.confirmation_ceiling_seconds

        candidates = await self.store.list_awaiting(
            created_before=now - timedelta(seconds=budget),
            limit=self.settings.sweep_batch_size,
        )
        report = SweepReport(total=len(candidates))
        logger.info("sweep_started", candidates=len(candidates))

        queried = 0
        for transaction in candidates:
            age = transaction.age_seconds(now)

            if age > ceiling:
                await self._expire(report, transaction, REASON_CONFIRMATION_TIMEOUT)
                continue
            if not transaction.checkout_ref:
                # Every candidate is already past the poll budget
                await self._expire(report, transaction, REASON_PUSH_UNACKNOWLEDGED)
                continue

            if queried:
                await self._sleep(self.settings.sweep_query_interval_seconds)
            queried += 1
            await self._query_and_apply(report, transaction)

        if self.dispatcher is not None:
            report.credits_retried = await self._retry_credits()

        duration = time.time() - start_time
        metrics.record_sweep_run(duration)
        logger.info(
            "sweep_completed",
            total=report.total,
            completed=report.completed,
            failed=report.failed,
            pending=report.pending,
            errors=report.errors,
            expired_by_deadline=report.expired_by_deadline,
            credits_retried=report.credits_retried,
            duration_seconds=round(duration, 3),
        )
        return report

    async def _expire(self, report: SweepReport, transaction: Transaction, reason: str) -> None:
        try:
            with session_context(transaction.session_id, transaction.checkout_ref):
                result = await self.engine.resolve_deadline(transaction, reason, ResolvedBy.SWEEP)
        except ReconciliationError as e:
            self._record_error(report, transaction, e)
            return

        if result.applied:
            report.expired_by_deadline += 1
            report.failed += 1
            report.items.append(_item(result.transaction, "expired", reason=reason))
            metrics.record_sweep_item("expired_by_deadline")
            logger.info(
                "sweep_expired_by_deadline",
                session_id=transaction.session_id,
                reason=reason,
            )
        else:
            self._tally(report, result)

    async def _query_and_apply(self, report: SweepReport, transaction: Transaction) -> None:
        try:
            with session_context(transaction.session_id, transaction.checkout_ref):
                outcome = await self.provider.query(transaction.checkout_ref)
                result = await self.engine.apply(transaction, outcome, ResolvedBy.SWEEP)
        except ReconciliationError as e:
            self._record_error(report, transaction, e)
            return
        self._tally(report, result)

    def _tally(self, report: SweepReport, result: ApplyResult) -> None:
        status = result.transaction.status
        if status is TransactionStatus.COMPLETED:
            report.completed += 1
            label = "completed"
        elif status.is_terminal:
            report.failed += 1
            label = status.value
        else:
            report.pending += 1
            label = "pending"
        report.items.append(_item(result.transaction, label, applied=result.applied))
        metrics.record_sweep_item(label)

    def _record_error(
        self, report: SweepReport, transaction: Transaction, error: ReconciliationError
    ) -> None:
        report.errors += 1
        report.items.append(_item(transaction, "error", error=error.error_code))
        metrics.record_sweep_item("error")
        logger.warning(
            "sweep_item_failed",
            session_id=transaction.session_id,
            error=error.message,
            error_type=type(error).__name__,
        )

    async def _retry_credits(self) -> int:
        """Re-dispatch completed payments whose referral credit never landed."""
        pending = await self.store.list_uncredited_completed(self.settings.sweep_batch_size)
        retried = 0
        for transaction in pending:
            with session_context(transaction.session_id, transaction.checkout_ref):
                outcome = await self.dispatcher.dispatch(transaction)
            retried += 1
            if outcome is not CreditOutcome.SUCCESS:
                logger.warning(
                    "sweep_credit_retry_unsuccessful",
                    session_id=transaction.session_id,
                    outcome=outcome.value,
                )
        return retried


def _item(transaction: Transaction, result: str, **extra: Any) -> Dict[str, Any]:
    item = {
        "session_id": transaction.session_id,
        "status": transaction.status.value,
        "result": result,
    }
    item.update(extra)
    return item


async def start_sweeper_worker(interval_seconds: Optional[float] = None) -> None:
    """
    Start the sweeper worker.

    Runs ``run_once`` every ``interval_seconds`` until SIGINT or SIGTERM.

    Args:
        interval_seconds: Delay between sweeps (default: from settings)
    """
    from stk_reconciliation.api.dependencies import build_services

    setup_logging()
    settings = get_settings()
    interval = interval_seconds or settings.sweep_interval_seconds

    logger.info("sweeper_worker_starting", interval_seconds=interval)

    running = True

    def signal_handler(sig: int, frame: Any) -> None:
        nonlocal running
        logger.info("sweeper_worker_shutdown_signal_received", signal=sig)
        running = False

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    services = await build_services(settings)
    try:
        while running:
            try:
                await services.sweeper.run_once()
            except Exception as e:
                logger.error("sweep_execution_error", error=str(e))
                # Keep sweeping; the next pass retries the same sessions

            # Wait for the next run (with periodic checks for shutdown signal)
            remaining = interval
            while remaining > 0 and running:
                sleep_time = min(remaining, 1.0)
                await asyncio.sleep(sleep_time)
                remaining -= sleep_time
    finally:
        await services.close()
        logger.info("sweeper_worker_stopped")


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(description="STK Push bulk sync sweeper")
    parser.add_argument(
        "--interval", type=float, default=None, help="Seconds between sweeps"
    )
    args = parser.parse_args()

    asyncio.run(start_sweeper_worker(interval_seconds=args.interval))


if __name__ == "__main__":
    main()
