"""SQLAlchemy database models for STK Push payment sessions."""
from datetime import datetime
from typing import Any, Dict

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from stk_reconciliation.core.models import utcnow

# SQLite only autoincrements INTEGER PRIMARY KEY
BigIntegerPK = BigInteger().with_variant(Integer, "sqlite")


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class TransactionRow(Base):
    """
    Payment session table.

    One row per STK Push session. Status changes only through conditional
    updates keyed on the current status, so the row is its own lock.
    """

    __tablename__ = "transactions"

    session_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    checkout_ref: Mapped[str | None] = mapped_column(String(128), unique=True, nullable=True)
    merchant_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)
    receipt_code: Mapped[str | None] = mapped_column(String(64), unique=True, nullable=True)
    phone: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    category: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    result_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    result_code: Mapped[str | None] = mapped_column(String(32), nullable=True)
    resolved_by: Mapped[str | None] = mapped_column(String(16), nullable=True)
    referral_code: Mapped[str | None] = mapped_column(String(32), nullable=True, index=True)
    credit_applied: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    # NULL while a credit is still owed; "credited" or "referrer_not_found" once settled
    credit_status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    commission_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    used: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    used_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint("amount > 0", name="positive_amount"),
        CheckConstraint(
            "status IN ('awaiting_result', 'completed', 'failed', 'cancelled', 'expired')",
            name="valid_status",
        ),
        CheckConstraint(
            "NOT credit_applied OR status = 'completed'",
            name="credit_only_when_completed",
        ),
        Index("idx_transactions_status_created", "status", "created_at"),
    )

    def __repr__(self) -> str:
        """String representation of TransactionRow."""
        return (
            f"<TransactionRow(session_id={self.session_id}, "
            f"amount={self.amount}, status={self.status})>"
        )


class TransactionEvent(Base):
    """
    Transaction audit trail table.

    Append-only record of intake steps and applied transitions,
    including which path won.
    """

    __tablename__ = "transaction_events"

    id: Mapped[int] = mapped_column(BigIntegerPK, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    source: Mapped[str] = mapped_column(String(16), nullable=False)
    event_data: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (Index("idx_transaction_events_type", "event_type"),)

    def __repr__(self) -> str:
        """String representation of TransactionEvent."""
        return (
            f"<TransactionEvent(id={self.id}, session_id={self.session_id}, "
            f"type={self.event_type})>"
        )


class Referrer(Base):
    """Account that owns a referral code and accrues commission."""

    __tablename__ = "referrers"

    id: Mapped[int] = mapped_column(BigIntegerPK, primary_key=True, autoincrement=True)
    referral_code: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    display_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    balance: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    pending_balance: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    referral_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    def __repr__(self) -> str:
        """String representation of Referrer."""
        return f"<Referrer(code={self.referral_code}, balance={self.balance})>"


class ReferralCredit(Base):
    """
    Referral commission ledger.

    At most one row per transaction; the unique constraint backs up the
    credit latch on the transaction row.
    """

    __tablename__ = "referral_credits"

    id: Mapped[int] = mapped_column(BigIntegerPK, primary_key=True, autoincrement=True)
    referrer_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    referral_code: Mapped[str] = mapped_column(String(32), nullable=False)
    transaction_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    payment_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    commission_rate: Mapped[float] = mapped_column(Float, nullable=False)
    commission_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    def __repr__(self) -> str:
        """String representation of ReferralCredit."""
        return (
            f"<ReferralCredit(transaction_id={self.transaction_id}, "
            f"amount={self.commission_amount})>"
        )
