"""
Reconciliation engine for payment session outcomes.

Callbacks, status polls and the bulk sweeper all report provider outcomes
here. The engine turns an outcome into at most one terminal write, guarded
by a conditional update on ``awaiting_result``, so whichever path lands first
decides the session and every later report is a no-op.
"""
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, Optional

import structlog

from stk_reconciliation.core.models import Transaction, next_update_time
from stk_reconciliation.core.session_cache import SessionCache
from stk_reconciliation.core.state_machine import (
    ProviderOutcome,
    ResolvedBy,
    Signal,
    TransactionStatus,
    Transition,
    resolve_transition,
)
from stk_reconciliation.core.store import TransactionStore
from stk_reconciliation.monitoring.metrics import metrics

if TYPE_CHECKING:
    from stk_reconciliation.core.referral import ReferralCreditDispatcher

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ApplyResult:
    """
    Result of ``ReconciliationEngine.apply``.

    ``transaction`` is the durable record after the attempt. ``applied`` is
    True only for the call whose write changed the row.
    """

    transaction: Transaction
    applied: bool


class ReconciliationEngine:
    """
    Single entry point for status changes.

    No caller writes ``status`` directly; intake, callback, poll and sweep
    all go through ``apply`` or ``resolve_deadline``.
    """

    def __init__(
        self,
        store: TransactionStore,
        cache: SessionCache,
        dispatcher: Optional["ReferralCreditDispatcher"] = None,
    ):
        """
        Initialize reconciliation engine.

        Args:
            store: Durable transaction store
            cache: Ephemeral session cache, refreshed after every decision
            dispatcher: Optional referral credit dispatcher, run on completion
        """
        self.store = store
        self.cache = cache
        self.dispatcher = dispatcher
        logger.info("reconciliation_engine_initialized")

    async def apply(
        self,
        transaction: Transaction,
        outcome: ProviderOutcome,
        source: ResolvedBy,
    ) -> ApplyResult:
        """
        Apply a provider outcome to a session.

        Args:
            transaction: Snapshot of the session (may be stale)
            outcome: Structured provider outcome
            source: Call path reporting the outcome

        Returns:
            ApplyResult: Current record and whether this call decided it

        Raises:
            DuplicateReceipt: If the success receipt belongs to another session
        """
        if transaction.is_terminal:
            logger.info(
                "apply_skipped_terminal",
                session_id=transaction.session_id,
                status=transaction.status.value,
                source=source.value,
            )
            metrics.record_apply_noop(source.value, "already_terminal")
            return ApplyResult(transaction=transaction, applied=False)

        transition = resolve_transition(transaction.status, outcome)
        if transition is None:
            reason = "still_processing" if outcome.is_pending else "no_transition"
            if outcome.signal is Signal.UNKNOWN:
                reason = "unmapped_result_code"
            logger.info(
                "apply_no_transition",
                session_id=transaction.session_id,
                signal=outcome.signal.value,
                result_code=outcome.result_code,
                source=source.value,
            )
            metrics.record_apply_noop(source.value, reason)
            return ApplyResult(transaction=transaction, applied=False)

        fields: Dict[str, Any] = {
            "status": transition.status,
            "result_reason": transition.reason,
            "result_code": outcome.result_code,
            "resolved_by": source,
            "updated_at": next_update_time(transaction.updated_at),
        }
        if transition.status is TransactionStatus.COMPLETED and outcome.receipt_code:
            fields["receipt_code"] = outcome.receipt_code

        return await self._decide(transaction, transition, fields, source)

    async def resolve_deadline(
        self,
        transaction: Transaction,
        reason: str,
        source: ResolvedBy = ResolvedBy.SWEEP,
    ) -> ApplyResult:
        """
        Force an unresolved session to ``expired``.

        Used when a session has outlived its confirmation window. Takes the
        same guarded write as ``apply``.
        """
        return await self.force(transaction, TransactionStatus.EXPIRED, reason, source)

    async def force(
        self,
        transaction: Transaction,
        status: TransactionStatus,
        reason: str,
        source: ResolvedBy,
        result_code: Optional[str] = None,
    ) -> ApplyResult:
        """
        Move an unresolved session to ``status`` without a provider outcome.

        For decisions made locally: a push that never reached the customer,
        or a session past its deadline.
        """
        if not status.is_terminal:
            raise ValueError(f"Cannot force non-terminal status {status.value}")
        if transaction.is_terminal:
            metrics.record_apply_noop(source.value, "already_terminal")
            return ApplyResult(transaction=transaction, applied=False)

        transition = Transition(status=status, reason=reason)
        fields: Dict[str, Any] = {
            "status": status,
            "result_reason": reason,
            "result_code": result_code,
            "resolved_by": source,
            "updated_at": next_update_time(transaction.updated_at),
        }
        return await self._decide(transaction, transition, fields, source)

    async def _decide(
        self,
        transaction: Transaction,
        transition: Transition,
        fields: Dict[str, Any],
        source: ResolvedBy,
    ) -> ApplyResult:
        session_id = transaction.session_id
        applied = await self.store.conditional_update(
            session_id, TransactionStatus.AWAITING_RESULT, fields
        )
        current = await self.store.get_by_session_id(session_id) or transaction

        if not applied:
            logger.info(
                "apply_lost_race",
                session_id=session_id,
                attempted_status=transition.status.value,
                current_status=current.status.value,
                resolved_by=current.resolved_by.value if current.resolved_by else None,
                source=source.value,
            )
            metrics.record_apply_noop(source.value, "lost_race")
            return ApplyResult(transaction=current, applied=False)

        logger.info(
            "transaction_resolved",
            session_id=session_id,
            status=current.status.value,
            reason=current.result_reason,
            receipt_code=current.receipt_code,
            source=source.value,
        )
        metrics.record_transition(source.value, current.status.value)

        await self.cache.put(current)
        await self._record_transition(current, source)

        if (
            current.status is TransactionStatus.COMPLETED
            and current.referral_code
            and self.dispatcher is not None
        ):
            await self.dispatcher.dispatch(current)

        return ApplyResult(transaction=current, applied=True)

    async def _record_transition(self, transaction: Transaction, source: ResolvedBy) -> None:
        try:
            await self.store.record_event(
                transaction.session_id,
                "status_changed",
                source.value,
                {
                    "status": transaction.status.value,
                    "result_reason": transaction.result_reason,
                    "result_code": transaction.result_code,
                    "receipt_code": transaction.receipt_code,
                },
            )
        except Exception as e:
            # The transition is already durable; a missing audit row is not fatal
            logger.error(
                "audit_event_write_failed",
                session_id=transaction.session_id,
                error=str(e),
            )
