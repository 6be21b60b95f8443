"""
Payment session state machine.

One non-terminal state (``awaiting_result``) and four terminal states with no
outgoing transitions. Provider result codes are mapped to a canonical
``Signal`` before they reach this module, so nothing here reads free text.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Tuple


class TransactionStatus(str, Enum):
    """Lifecycle status of a payment session."""

    AWAITING_RESULT = "awaiting_result"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self is not TransactionStatus.AWAITING_RESULT


TERMINAL_STATUSES = frozenset(s for s in TransactionStatus if s.is_terminal)


class Signal(str, Enum):
    """Provider-agnostic outcome of a push, callback or status query."""

    SUCCESS = "success"
    USER_CANCELLED = "user_cancelled"
    TIMEOUT = "timeout"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    WRONG_PIN = "wrong_pin"
    FAILURE = "failure"
    STILL_PROCESSING = "still_processing"
    UNKNOWN = "unknown"


class ResolvedBy(str, Enum):
    """Call path that won the terminal write."""

    INTAKE = "intake"
    CALLBACK = "callback"
    POLL = "poll"
    SWEEP = "sweep"


@dataclass(frozen=True)
class ProviderOutcome:
    """
    Structured three-way result from the provider adapter.

    ``signal`` is the only field the engine branches on; ``description`` is
    kept for the human-readable reason.
    """

    signal: Signal
    result_code: Optional[str] = None
    description: Optional[str] = None
    receipt_code: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.signal in SIGNAL_TRANSITIONS

    @property
    def is_pending(self) -> bool:
        return self.signal is Signal.STILL_PROCESSING


@dataclass(frozen=True)
class Transition:
    """Target of an accepted transition."""

    status: TransactionStatus
    reason: str


# Signal -> (terminal status, fallback reason)
SIGNAL_TRANSITIONS: Dict[Signal, Tuple[TransactionStatus, str]] = {
    Signal.SUCCESS: (TransactionStatus.COMPLETED, "Payment completed"),
    Signal.USER_CANCELLED: (TransactionStatus.CANCELLED, "Request cancelled by user"),
    Signal.TIMEOUT: (TransactionStatus.EXPIRED, "Customer could not be reached in time"),
    Signal.INSUFFICIENT_FUNDS: (TransactionStatus.FAILED, "Insufficient funds"),
    Signal.WRONG_PIN: (TransactionStatus.FAILED, "Wrong PIN entered"),
    Signal.FAILURE: (TransactionStatus.FAILED, "Payment failed"),
}


def resolve_transition(
    current: TransactionStatus, outcome: ProviderOutcome
) -> Optional[Transition]:
    """
    Decide where ``outcome`` takes a session currently in ``current``.

    Returns None when no transition applies: the session is already terminal,
    the provider is still processing, or the code was not recognised.
    """
    if current.is_terminal:
        return None

    target = SIGNAL_TRANSITIONS.get(outcome.signal)
    if target is None:
        return None

    status, fallback_reason = target
    reason = (outcome.description or "").strip() or fallback_reason
    return Transition(status=status, reason=reason)
