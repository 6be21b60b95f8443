"""
Daraja result code mapping.

Turns provider result codes into canonical signals. Only codes listed here
can move a session; anything else maps to ``Signal.UNKNOWN`` and is left for
an operator. Descriptions are carried through for display and never matched.
"""
from typing import Any, Dict, Mapping, Optional

import structlog

from stk_reconciliation.core.state_machine import ProviderOutcome, Signal

logger = structlog.get_logger(__name__)

RESULT_CODE_SIGNALS: Dict[str, Signal] = {
    "0": Signal.SUCCESS,
    "1032": Signal.USER_CANCELLED,  # Request cancelled by user
    "1037": Signal.TIMEOUT,  # DS timeout, user cannot be reached
    "1019": Signal.TIMEOUT,  # Transaction has expired
    "1": Signal.INSUFFICIENT_FUNDS,  # The balance is insufficient
    "2001": Signal.WRONG_PIN,  # The initiator information is invalid
    "1025": Signal.FAILURE,  # An error occurred while sending a push request
    # 1001 (subscriber locked by another transaction), 17 (rule limited),
    # 26 (traffic blocking) and 9999 describe provider-side conditions, not
    # the fate of this payment. They stay UNKNOWN and the confirmation
    # ceiling expires the session if nothing definite arrives.
    "4999": Signal.STILL_PROCESSING,  # The transaction is still under processing
}

# Error-envelope codes the query API uses while the customer has not finished
PENDING_ERROR_CODES = frozenset({"500.001.1001"})


def normalize_code(code: Any) -> Optional[str]:
    """Provider codes arrive as ints or strings; compare them as strings."""
    if code is None:
        return None
    text = str(code).strip()
    return text or None


def map_result_code(
    code: Any,
    description: Optional[str] = None,
    receipt_code: Optional[str] = None,
) -> ProviderOutcome:
    """
    Map a Daraja ``ResultCode`` to a canonical outcome.

    Args:
        code: Raw result code
        description: Provider ``ResultDesc``, kept for the reason text
        receipt_code: Receipt extracted from callback metadata, if any

    Returns:
        ProviderOutcome: Structured outcome; unknown codes map to ``Signal.UNKNOWN``
    """
    result_code = normalize_code(code)
    signal = RESULT_CODE_SIGNALS.get(result_code or "", Signal.UNKNOWN)

    if signal is Signal.UNKNOWN:
        logger.warning(
            "unmapped_result_code",
            result_code=result_code,
            description=description,
        )

    return ProviderOutcome(
        signal=signal,
        result_code=result_code,
        description=description,
        receipt_code=receipt_code if signal is Signal.SUCCESS else None,
    )


def outcome_from_query_body(body: Mapping[str, Any]) -> Optional[ProviderOutcome]:
    """
    Interpret an STK query response body.

    Returns:
        Optional[ProviderOutcome]: The outcome, or None when the body is an
        error envelope that is not a known "still processing" marker.
    """
    error_code = normalize_code(body.get("errorCode"))
    if error_code is not None:
        if error_code in PENDING_ERROR_CODES:
            return ProviderOutcome(
                signal=Signal.STILL_PROCESSING,
                result_code=error_code,
                description=body.get("errorMessage"),
            )
        return None

    result_code = normalize_code(body.get("ResultCode"))
    if result_code is None:
        # Query accepted but no result yet
        return ProviderOutcome(
            signal=Signal.STILL_PROCESSING,
            result_code=normalize_code(body.get("ResponseCode")),
            description=body.get("ResponseDescription"),
        )

    return map_result_code(result_code, body.get("ResultDesc"))
