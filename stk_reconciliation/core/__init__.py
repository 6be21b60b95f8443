"""
Core reconciliation logic.

Only dependency-free modules are re-exported here; import services such as
``core.reconciliation`` or ``core.store`` from their own modules.
"""
from .exceptions import (
    InvalidInput,
    ProviderError,
    ProviderRejected,
    ProviderUnavailable,
    ReconciliationError,
    SessionNotFound,
)
from .models import Transaction
from .state_machine import ProviderOutcome, ResolvedBy, Signal, TransactionStatus

__all__ = [
    "InvalidInput",
    "ProviderError",
    "ProviderOutcome",
    "ProviderRejected",
    "ProviderUnavailable",
    "ReconciliationError",
    "ResolvedBy",
    "SessionNotFound",
    "Signal",
    "Transaction",
    "TransactionStatus",
]
