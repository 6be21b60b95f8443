"""One-time receipt code redemption."""
from datetime import timedelta
from typing import Optional

import structlog

from stk_reconciliation.config import Settings, get_settings
from stk_reconciliation.core.exceptions import (
    AlreadyRedeemed,
    InvalidInput,
    NotCompleted,
    PhoneMismatch,
    ReceiptExpired,
    ReceiptNotFound,
    RedemptionError,
)
from stk_reconciliation.core.intake import normalize_phone
from stk_reconciliation.core.models import Transaction, utcnow
from stk_reconciliation.core.state_machine import TransactionStatus
from stk_reconciliation.core.store import TransactionStore
from stk_reconciliation.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


def normalize_receipt_code(code: str) -> str:
    return "".join((code or "").split()).upper()


class ReceiptRedemption:
    """
    Exchanges a receipt code for access, once.

    The ``used`` flag is flipped with a conditional update, so two
    concurrent redemptions of the same code cannot both succeed.
    """

    def __init__(self, store: TransactionStore, settings: Optional[Settings] = None):
        self.store = store
        self.settings = settings or get_settings()

    async def redeem(self, code: str, phone: Optional[str] = None) -> Transaction:
        """
        Redeem a receipt code.

        Args:
            code: Receipt code as typed by the customer
            phone: Optional phone the payment must belong to

        Returns:
            Transaction: The redeemed transaction

        Raises:
            InvalidInput: If the code is empty
            ReceiptNotFound: If no payment carries the code
            PhoneMismatch: If the code belongs to a different phone
            NotCompleted: If the payment has not completed
            ReceiptExpired: If the code is past its validity window
            AlreadyRedeemed: If the code was already used
        """
        receipt_code = normalize_receipt_code(code)
        if not receipt_code:
            raise InvalidInput("Receipt code is required", field="code")

        try:
            transaction = await self._lookup(receipt_code, phone)
            self._check_redeemable(transaction)

            used_at = utcnow()
            if not await self.store.mark_used(transaction.session_id, used_at):
                raise AlreadyRedeemed(
                    f"Receipt {receipt_code} has already been used",
                    session_id=transaction.session_id,
                )
        except RedemptionError as e:
            metrics.record_redemption(e.error_code)
            logger.info("receipt_redemption_refused", receipt_code=receipt_code, reason=e.error_code)
            raise

        await self.store.record_event(
            transaction.session_id, "receipt_redeemed", "redemption", {"receipt_code": receipt_code}
        )
        metrics.record_redemption("success")
        logger.info(
            "receipt_redeemed",
            receipt_code=receipt_code,
            session_id=transaction.session_id,
        )
        redeemed = await self.store.get_by_session_id(transaction.session_id)
        return redeemed or transaction.model_copy(update={"used": True, "used_at": used_at})

    async def _lookup(self, receipt_code: str, phone: Optional[str]) -> Transaction:
        if phone:
            normalized_phone = normalize_phone(phone)
            transaction = await self.store.get_by_receipt_code(receipt_code, normalized_phone)
            if transaction is not None:
                return transaction
            if await self.store.get_by_receipt_code(receipt_code) is not None:
                raise PhoneMismatch("Receipt code belongs to a different phone number")
        else:
            transaction = await self.store.get_by_receipt_code(receipt_code)
            if transaction is not None:
                return transaction
        raise ReceiptNotFound(f"Receipt {receipt_code} not found")

    def _check_redeemable(self, transaction: Transaction) -> None:
        if transaction.used:
            raise AlreadyRedeemed(
                "Receipt has already been used", session_id=transaction.session_id
            )
        if transaction.status is not TransactionStatus.COMPLETED:
            raise NotCompleted(
                f"Payment is {transaction.status.value}, not completed",
                session_id=transaction.session_id,
            )
        validity = timedelta(days=self.settings.receipt_validity_days)
        if utcnow() - transaction.created_at > validity:
            raise ReceiptExpired(
                f"Receipt is older than {self.settings.receipt_validity_days} days",
                session_id=transaction.session_id,
            )
