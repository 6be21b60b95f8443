"""
Domain records for payment sessions.

``Transaction`` is the value passed between the cache, the store and the
engine. It is immutable; every change goes through the store and comes back
as a fresh copy.
"""
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from stk_reconciliation.core.state_machine import ResolvedBy, TransactionStatus


def utcnow() -> datetime:
    """Naive UTC timestamp, the only clock format stored."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def next_update_time(previous: Optional[datetime]) -> datetime:
    """Timestamp for a write that must sort strictly after ``previous``."""
    now = utcnow()
    if previous is not None and now <= previous:
        return previous + timedelta(microseconds=1)
    return now


def generate_session_id() -> str:
    """Fresh caller-visible session handle."""
    return f"sess_{secrets.token_hex(12)}"


class Transaction(BaseModel):
    """A single STK Push payment session."""

    model_config = ConfigDict(frozen=True, use_enum_values=False)

    session_id: str
    phone: str
    amount: int = Field(..., gt=0)
    category: str
    status: TransactionStatus = TransactionStatus.AWAITING_RESULT
    checkout_ref: Optional[str] = None
    merchant_ref: Optional[str] = None
    receipt_code: Optional[str] = None
    result_reason: Optional[str] = None
    result_code: Optional[str] = None
    resolved_by: Optional[ResolvedBy] = None
    referral_code: Optional[str] = None
    credit_applied: bool = False
    credit_status: Optional[str] = None
    commission_amount: int = 0
    used: bool = False
    used_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def age_seconds(self, now: Optional[datetime] = None) -> float:
        """Seconds since the session was created."""
        return ((now or utcnow()) - self.created_at).total_seconds()

    def to_public_dict(self) -> Dict[str, Any]:
        """Fields exposed through the caller-facing read API."""
        return {
            "session_id": self.session_id,
            "status": self.status.value,
            "result_reason": self.result_reason,
            "receipt_code": self.receipt_code,
            "checkout_ref": self.checkout_ref,
            "amount": self.amount,
            "category": self.category,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }
