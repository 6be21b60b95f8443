"""
Durable transaction store.

``TransactionStore`` documents the operations the reconciliation engine
needs; ``SQLAlchemyTransactionStore`` implements them on the async engine.
Every status change is a single ``UPDATE ... WHERE status = :expected`` and
the affected row count decides who won.
"""
from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from stk_reconciliation.core.exceptions import DuplicateReceipt, ReconciliationError
from stk_reconciliation.core.models import Transaction, next_update_time, utcnow
from stk_reconciliation.core.state_machine import TransactionStatus
from stk_reconciliation.database.connection import get_session_factory
from stk_reconciliation.database.models import TransactionEvent, TransactionRow

logger = structlog.get_logger(__name__)

# Fields fixed at creation; conditional updates may not touch them
IMMUTABLE_FIELDS = frozenset(
    {"session_id", "phone", "amount", "category", "referral_code", "created_at"}
)


class TransactionStore(ABC):
    """Operations the engine requires from durable storage."""

    @abstractmethod
    async def create(self, transaction: Transaction) -> Transaction:
        """Insert a new session record."""

    @abstractmethod
    async def get_by_session_id(self, session_id: str) -> Optional[Transaction]:
        """Look up a session by its caller-visible id."""

    @abstractmethod
    async def get_by_checkout_ref(self, checkout_ref: str) -> Optional[Transaction]:
        """Look up a session by provider checkout reference."""

    @abstractmethod
    async def get_by_receipt_code(
        self, receipt_code: str, phone: Optional[str] = None
    ) -> Optional[Transaction]:
        """Look up a session by receipt code, optionally scoped to a phone."""

    @abstractmethod
    async def conditional_update(
        self,
        session_id: str,
        expected_status: TransactionStatus,
        fields: Mapping[str, Any],
    ) -> bool:
        """Apply ``fields`` only if the current status equals ``expected_status``."""

    @abstractmethod
    async def attach_checkout_ref(
        self,
        session_id: str,
        checkout_ref: str,
        merchant_ref: Optional[str],
        updated_at: datetime,
    ) -> bool:
        """Set the checkout reference once; later calls do nothing."""

    @abstractmethod
    async def list_awaiting(self, created_before: datetime, limit: int) -> List[Transaction]:
        """Unresolved sessions created before ``created_before``, oldest first."""

    @abstractmethod
    async def list_uncredited_completed(self, limit: int) -> List[Transaction]:
        """Completed sessions with a referral code whose credit is still owed."""

    @abstractmethod
    async def mark_used(self, session_id: str, used_at: datetime) -> bool:
        """Flip the one-time redemption latch on a completed session; ``updated_at`` moves forward."""

    @abstractmethod
    async def record_event(
        self,
        session_id: str,
        event_type: str,
        source: str,
        event_data: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Append to the session audit trail."""

    @abstractmethod
    async def list_events(self, session_id: str) -> List[Dict[str, Any]]:
        """Audit trail for a session, oldest first."""


async def touch_updated_at(db: AsyncSession, session_id: str) -> datetime:
    """
    Move ``updated_at`` strictly forward inside an open write transaction.

    Call after a write has locked the row, so the value read here is the
    one this transaction replaces.
    """
    result = await db.execute(
        select(TransactionRow.updated_at).where(TransactionRow.session_id == session_id)
    )
    updated_at = next_update_time(result.scalar_one())
    await db.execute(
        update(TransactionRow)
        .where(TransactionRow.session_id == session_id)
        .values(updated_at=updated_at)
        .execution_options(synchronize_session=False)
    )
    return updated_at


def _column_value(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


def row_to_transaction(row: TransactionRow) -> Transaction:
    """Convert an ORM row to the immutable domain record."""
    return Transaction(
        session_id=row.session_id,
        phone=row.phone,
        amount=row.amount,
        category=row.category,
        status=TransactionStatus(row.status),
        checkout_ref=row.checkout_ref,
        merchant_ref=row.merchant_ref,
        receipt_code=row.receipt_code,
        result_reason=row.result_reason,
        result_code=row.result_code,
        resolved_by=row.resolved_by,
        referral_code=row.referral_code,
        credit_applied=bool(row.credit_applied),
        credit_status=row.credit_status,
        commission_amount=row.commission_amount,
        used=bool(row.used),
        used_at=row.used_at,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


class SQLAlchemyTransactionStore(TransactionStore):
    """
    Transaction store on SQLAlchemy async sessions.

    Each operation runs in its own short session and commits before
    returning, so no caller ever holds a read across a write.
    """

    def __init__(
        self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None
    ):
        """
        Initialize the store.

        Args:
            session_factory: Optional session factory (uses the global one if not provided)
        """
        self.session_factory = session_factory or get_session_factory()

    async def create(self, transaction: Transaction) -> Transaction:
        row = TransactionRow(
            **{
                key: _column_value(value)
                for key, value in transaction.model_dump().items()
            }
        )
        async with self.session_factory() as db:
            db.add(row)
            try:
                await db.commit()
            except IntegrityError as e:
                await db.rollback()
                logger.error(
                    "transaction_create_conflict",
                    session_id=transaction.session_id,
                    error=str(e.orig),
                )
                raise ReconciliationError(
                    f"Transaction {transaction.session_id} conflicts with an existing record",
                    session_id=transaction.session_id,
                )

        logger.info(
            "transaction_created",
            session_id=transaction.session_id,
            status=transaction.status.value,
        )
        return transaction

    async def _get_one(self, *criteria: Any) -> Optional[Transaction]:
        async with self.session_factory() as db:
            result = await db.execute(select(TransactionRow).where(*criteria))
            row = result.scalar_one_or_none()
            return row_to_transaction(row) if row is not None else None

    async def get_by_session_id(self, session_id: str) -> Optional[Transaction]:
        return await self._get_one(TransactionRow.session_id == session_id)

    async def get_by_checkout_ref(self, checkout_ref: str) -> Optional[Transaction]:
        return await self._get_one(TransactionRow.checkout_ref == checkout_ref)

    async def get_by_receipt_code(
        self, receipt_code: str, phone: Optional[str] = None
    ) -> Optional[Transaction]:
        criteria = [TransactionRow.receipt_code == receipt_code]
        if phone is not None:
            criteria.append(TransactionRow.phone == phone)
        return await self._get_one(*criteria)

    async def conditional_update(
        self,
        session_id: str,
        expected_status: TransactionStatus,
        fields: Mapping[str, Any],
    ) -> bool:
        """
        Compare-and-set on ``status``.

        Returns:
            bool: True if this call changed the row. False means another
            writer already moved it; callers must not retry.

        Raises:
            DuplicateReceipt: If the receipt code belongs to another session
        """
        forbidden = IMMUTABLE_FIELDS.intersection(fields)
        if forbidden:
            raise ValueError(f"Immutable fields cannot be updated: {sorted(forbidden)}")

        values = {key: _column_value(value) for key, value in fields.items()}
        values.setdefault("updated_at", utcnow())

        stmt = (
            update(TransactionRow)
            .where(
                TransactionRow.session_id == session_id,
                TransactionRow.status == expected_status.value,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )

        async with self.session_factory() as db:
            try:
                result = await db.execute(stmt)
                await db.commit()
            except IntegrityError as e:
                await db.rollback()
                if "receipt_code" in values:
                    logger.error(
                        "duplicate_receipt_rejected",
                        session_id=session_id,
                        receipt_code=values["receipt_code"],
                    )
                    raise DuplicateReceipt(
                        f"Receipt {values['receipt_code']} is already recorded",
                        session_id=session_id,
                    )
                raise

        applied = result.rowcount == 1
        logger.info(
            "conditional_update",
            session_id=session_id,
            expected_status=expected_status.value,
            new_status=values.get("status"),
            applied=applied,
        )
        return applied

    async def attach_checkout_ref(
        self,
        session_id: str,
        checkout_ref: str,
        merchant_ref: Optional[str],
        updated_at: datetime,
    ) -> bool:
        stmt = (
            update(TransactionRow)
            .where(
                TransactionRow.session_id == session_id,
                TransactionRow.checkout_ref.is_(None),
            )
            .values(
                checkout_ref=checkout_ref,
                merchant_ref=merchant_ref,
                updated_at=updated_at,
            )
            .execution_options(synchronize_session=False)
        )
        async with self.session_factory() as db:
            result = await db.execute(stmt)
            await db.commit()
        return result.rowcount == 1

    async def list_awaiting(self, created_before: datetime, limit: int) -> List[Transaction]:
        stmt = (
            select(TransactionRow)
            .where(
                TransactionRow.status == TransactionStatus.AWAITING_RESULT.value,
                TransactionRow.created_at < created_before,
            )
            .order_by(TransactionRow.created_at.asc())
            .limit(limit)
        )
        async with self.session_factory() as db:
            result = await db.execute(stmt)
            return [row_to_transaction(row) for row in result.scalars().all()]

    async def list_uncredited_completed(self, limit: int) -> List[Transaction]:
        stmt = (
            select(TransactionRow)
            .where(
                TransactionRow.status == TransactionStatus.COMPLETED.value,
                TransactionRow.referral_code.isnot(None),
                TransactionRow.credit_applied.is_(False),
                TransactionRow.credit_status.is_(None),
            )
            .order_by(TransactionRow.updated_at.asc())
            .limit(limit)
        )
        async with self.session_factory() as db:
            result = await db.execute(stmt)
            return [row_to_transaction(row) for row in result.scalars().all()]

    async def mark_used(self, session_id: str, used_at: datetime) -> bool:
        stmt = (
            update(TransactionRow)
            .where(
                TransactionRow.session_id == session_id,
                TransactionRow.status == TransactionStatus.COMPLETED.value,
                TransactionRow.used.is_(False),
            )
            .values(used=True, used_at=used_at)
            .execution_options(synchronize_session=False)
        )
        async with self.session_factory() as db:
            result = await db.execute(stmt)
            if result.rowcount != 1:
                await db.rollback()
                return False
            await touch_updated_at(db, session_id)
            await db.commit()
        return True

    async def record_event(
        self,
        session_id: str,
        event_type: str,
        source: str,
        event_data: Optional[Dict[str, Any]] = None,
    ) -> None:
        event = TransactionEvent(
            session_id=session_id,
            event_type=event_type,
            source=source,
            event_data=event_data or {},
            created_at=utcnow(),
        )
        async with self.session_factory() as db:
            db.add(event)
            await db.commit()

    async def list_events(self, session_id: str) -> List[Dict[str, Any]]:
        stmt = (
            select(TransactionEvent)
            .where(TransactionEvent.session_id == session_id)
            .order_by(TransactionEvent.id.asc())
        )
        async with self.session_factory() as db:
            result = await db.execute(stmt)
            return [
                {
                    "event_type": event.event_type,
                    "source": event.source,
                    "event_data": event.event_data,
                    "created_at": event.created_at.isoformat(),
                }
                for event in result.scalars().all()
            ]
