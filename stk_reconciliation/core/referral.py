"""
Referral commission crediting.

A completed payment that carries a referral code earns the code's owner a
commission. The dispatcher flips the transaction's ``credit_applied`` latch
and writes the ledger entry in the same database transaction: either both
land or neither does, and a second dispatch for the same payment finds the
latch already set.
"""
from enum import Enum
from typing import Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from stk_reconciliation.config import Settings, get_settings
from stk_reconciliation.core.models import Transaction, utcnow
from stk_reconciliation.core.state_machine import TransactionStatus
from stk_reconciliation.core.store import touch_updated_at
from stk_reconciliation.database.connection import get_session_factory
from stk_reconciliation.database.models import ReferralCredit, Referrer, TransactionRow
from stk_reconciliation.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

CREDIT_STATUS_CREDITED = "credited"
CREDIT_STATUS_REFERRER_NOT_FOUND = "referrer_not_found"


class CreditOutcome(str, Enum):
    """Result of one credit attempt."""

    SUCCESS = "success"
    ALREADY_CREDITED = "already_credited"
    NOT_FOUND = "not_found"
    SKIPPED = "skipped"
    ERROR = "error"


class ReferralLedger:
    """
    Referrer balances and per-payment commission rows.

    Runs inside the caller's database session and never commits.
    """

    def __init__(self, commission_rate: float = 0.12):
        self.commission_rate = commission_rate

    def commission_for(self, amount: int) -> int:
        """Commission in whole KES for a payment of ``amount``."""
        return int(round(amount * self.commission_rate))

    async def credit_referrer(
        self,
        db: AsyncSession,
        referral_code: str,
        amount: int,
        transaction_id: str,
    ) -> CreditOutcome:
        """
        Add the commission for one payment to the referrer's balance.

        Args:
            db: Session holding the open transaction
            referral_code: Code the payment was made with
            amount: Payment amount in KES
            transaction_id: Session id of the paying transaction

        Returns:
            CreditOutcome: SUCCESS, or NOT_FOUND if no referrer owns the code
        """
        code = referral_code.strip().upper()
        result = await db.execute(
            select(Referrer).where(Referrer.referral_code == code).with_for_update()
        )
        referrer = result.scalar_one_or_none()
        if referrer is None:
            logger.warning("referrer_not_found", referral_code=code, transaction_id=transaction_id)
            return CreditOutcome.NOT_FOUND

        commission = self.commission_for(amount)
        await db.execute(
            update(Referrer)
            .where(Referrer.id == referrer.id)
            .values(
                balance=Referrer.balance + commission,
                pending_balance=Referrer.pending_balance + commission,
                referral_count=Referrer.referral_count + 1,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        db.add(
            ReferralCredit(
                referrer_id=referrer.id,
                referral_code=code,
                transaction_id=transaction_id,
                payment_amount=amount,
                commission_rate=self.commission_rate,
                commission_amount=commission,
                created_at=utcnow(),
            )
        )
        await db.flush()

        logger.info(
            "referrer_credited",
            referral_code=code,
            transaction_id=transaction_id,
            payment_amount=amount,
            commission_amount=commission,
        )
        return CreditOutcome.SUCCESS


class ReferralCreditDispatcher:
    """
    At-most-once referral credit per completed payment.

    Failed attempts leave the latch unset; the sweeper picks them up through
    ``TransactionStore.list_uncredited_completed``. A code that no referrer
    owns is settled as ``referrer_not_found`` instead, so it never crowds
    retryable payments out of the sweeper batch.
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        ledger: Optional[ReferralLedger] = None,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize dispatcher.

        Args:
            session_factory: Optional session factory (uses the global one if not provided)
            ledger: Optional ledger (built from settings if not provided)
            settings: Optional settings (uses global settings if not provided)
        """
        self.settings = settings or get_settings()
        self.session_factory = session_factory or get_session_factory()
        self.ledger = ledger or ReferralLedger(self.settings.referral_commission_rate)

    async def dispatch(self, transaction: Transaction) -> CreditOutcome:
        """
        Credit the referrer of a completed payment.

        Args:
            transaction: Completed transaction

        Returns:
            CreditOutcome: Result of the attempt; errors are reported, not raised
        """
        session_id = transaction.session_id
        if not transaction.referral_code or transaction.status is not TransactionStatus.COMPLETED:
            metrics.record_referral_credit(CreditOutcome.SKIPPED.value)
            return CreditOutcome.SKIPPED

        commission = self.ledger.commission_for(transaction.amount)
        flip = (
            update(TransactionRow)
            .where(
                TransactionRow.session_id == session_id,
                TransactionRow.status == TransactionStatus.COMPLETED.value,
                TransactionRow.credit_applied.is_(False),
            )
            .values(
                credit_applied=True,
                credit_status=CREDIT_STATUS_CREDITED,
                commission_amount=commission,
            )
            .execution_options(synchronize_session=False)
        )

        async with self.session_factory() as db:
            try:
                result = await db.execute(flip)
                if result.rowcount != 1:
                    await db.rollback()
                    logger.info("referral_already_credited", session_id=session_id)
                    outcome = CreditOutcome.ALREADY_CREDITED
                else:
                    outcome = await self.ledger.credit_referrer(
                        db, transaction.referral_code, transaction.amount, session_id
                    )
                    if outcome is CreditOutcome.SUCCESS:
                        await touch_updated_at(db, session_id)
                        await db.commit()
                    else:
                        await db.rollback()
                        if outcome is CreditOutcome.NOT_FOUND:
                            await self._settle_unowned(db, session_id)
            except Exception as e:
                await db.rollback()
                logger.error(
                    "referral_credit_failed",
                    session_id=session_id,
                    referral_code=transaction.referral_code,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                outcome = CreditOutcome.ERROR

        metrics.record_referral_credit(outcome.value)
        logger.info(
            "referral_dispatch_finished",
            session_id=session_id,
            referral_code=transaction.referral_code,
            outcome=outcome.value,
        )
        return outcome

    async def _settle_unowned(self, db: AsyncSession, session_id: str) -> None:
        """
        Take a payment whose code no referrer owns out of the retry set.

        The latch stays unset, so an explicit dispatch can still credit the
        payment if the referrer is created later.
        """
        result = await db.execute(
            update(TransactionRow)
            .where(
                TransactionRow.session_id == session_id,
                TransactionRow.credit_applied.is_(False),
                TransactionRow.credit_status.is_(None),
            )
            .values(credit_status=CREDIT_STATUS_REFERRER_NOT_FOUND)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            await touch_updated_at(db, session_id)
        await db.commit()
