"""
Exception taxonomy for payment session reconciliation.

Every exception carries a stable error code and the HTTP status the API
surfaces it with. Conditional-update losses are not exceptions: they come
back as ``applied=False`` from the engine.
"""
from typing import Any, Dict, Optional


class ReconciliationError(Exception):
    """Base exception for all reconciliation errors."""

    error_code = "reconciliation_error"
    http_status = 500

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for API responses"""
        return {
            "error": {
                "code": self.error_code,
                "message": self.message,
                "type": self.__class__.__name__,
            }
        }


class InvalidInput(ReconciliationError):
    """Client-correctable input problem, surfaced immediately."""

    error_code = "invalid_input"
    http_status = 400


class SessionNotFound(ReconciliationError):
    """No record exists for the given session id or checkout reference."""

    error_code = "session_not_found"
    http_status = 404


class DuplicateReceipt(ReconciliationError):
    """A receipt code is already attached to another transaction."""

    error_code = "duplicate_receipt"
    http_status = 409


# ============================================================================
# PROVIDER ERRORS
# ============================================================================


class ProviderError(ReconciliationError):
    """Base class for payment provider failures."""

    error_code = "provider_error"
    http_status = 502

    def __init__(
        self,
        message: str,
        operation: str = "unknown",
        provider_code: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(message, operation=operation, provider_code=provider_code)
        self.operation = operation
        self.provider_code = provider_code
        self.original_error = original_error


class ProviderRejected(ProviderError):
    """The provider answered and refused the request."""

    error_code = "provider_rejected"
    http_status = 502


class ProviderUnavailable(ProviderError):
    """
    Transport-level failure or timeout talking to the provider.

    Never a terminal outcome for a session; callers retry.
    """

    error_code = "provider_unavailable"
    http_status = 503


# ============================================================================
# REDEMPTION ERRORS
# ============================================================================


class RedemptionError(ReconciliationError):
    """Base class for receipt redemption refusals."""

    error_code = "redemption_error"
    http_status = 400


class ReceiptNotFound(RedemptionError):
    error_code = "not_found"
    http_status = 404


class PhoneMismatch(RedemptionError):
    error_code = "phone_mismatch"
    http_status = 403


class NotCompleted(RedemptionError):
    error_code = "not_completed"
    http_status = 409


class AlreadyRedeemed(RedemptionError):
    error_code = "already_used"
    http_status = 409


class ReceiptExpired(RedemptionError):
    error_code = "expired"
    http_status = 410
