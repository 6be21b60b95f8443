"""Database package for STK Push reconciliation."""
from .connection import get_session_factory, init_db
from .models import (
    Base,
    ReferralCredit,
    Referrer,
    TransactionEvent,
    TransactionRow,
)

__all__ = [
    "Base",
    "TransactionRow",
    "TransactionEvent",
    "Referrer",
    "ReferralCredit",
    "get_session_factory",
    "init_db",
]
