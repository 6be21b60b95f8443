"""
Daraja STK callback handler.

Implements:
- Envelope parsing (``Body.stkCallback``)
- Receipt extraction from callback metadata
- Correlation through the session cache with store fallback
- A bounded log of recent callbacks for operators

The provider retries callbacks it considers undelivered, so every request is
acknowledged, including malformed ones and ones that fail internally.
"""
import time
from collections import deque
from typing import Any, Deque, Dict, List, Optional, Union

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from stk_reconciliation.core.models import Transaction, utcnow
from stk_reconciliation.core.reconciliation import ReconciliationEngine
from stk_reconciliation.core.session_cache import SessionCache
from stk_reconciliation.core.state_machine import ResolvedBy
from stk_reconciliation.core.store import TransactionStore
from stk_reconciliation.integrations.result_codes import map_result_code
from stk_reconciliation.monitoring.logging import session_context
from stk_reconciliation.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

CALLBACK_ACK: Dict[str, Any] = {"ResultCode": 0, "ResultDesc": "Accepted"}


class CallbackItem(BaseModel):
    """One ``CallbackMetadata.Item`` entry."""

    model_config = ConfigDict(extra="allow")

    name: str = Field(alias="Name")
    value: Optional[Union[str, int, float]] = Field(default=None, alias="Value")


class CallbackMetadata(BaseModel):
    model_config = ConfigDict(extra="allow")

    items: List[CallbackItem] = Field(default_factory=list, alias="Item")


class StkCallback(BaseModel):
    """The ``stkCallback`` object Daraja posts on completion."""

    model_config = ConfigDict(extra="allow")

    merchant_request_id: Optional[str] = Field(default=None, alias="MerchantRequestID")
    checkout_request_id: str = Field(alias="CheckoutRequestID")
    result_code: Union[int, str] = Field(alias="ResultCode")
    result_desc: Optional[str] = Field(default=None, alias="ResultDesc")
    metadata: Optional[CallbackMetadata] = Field(default=None, alias="CallbackMetadata")


class CallbackBody(BaseModel):
    model_config = ConfigDict(extra="allow")

    stk_callback: StkCallback = Field(alias="stkCallback")


class CallbackEnvelope(BaseModel):
    model_config = ConfigDict(extra="allow")

    body: CallbackBody = Field(alias="Body")


def extract_receipt(metadata: Optional[CallbackMetadata]) -> Optional[str]:
    """
    Find the receipt number in callback metadata.

    Matches ``MpesaReceiptNumber`` case-insensitively, then falls back to the
    first item whose name contains "receipt".
    """
    if metadata is None:
        return None

    fallback: Optional[str] = None
    for item in metadata.items:
        if item.value in (None, ""):
            continue
        name = item.name.strip().lower()
        if name == "mpesareceiptnumber":
            return str(item.value).strip()
        if fallback is None and "receipt" in name:
            fallback = str(item.value).strip()
    return fallback


class CallbackHandler:
    """
    Applies provider callbacks through the reconciliation engine.
    """

    def __init__(
        self,
        engine: ReconciliationEngine,
        store: TransactionStore,
        cache: SessionCache,
        history_size: int = 50,
    ):
        """
        Initialize callback handler.

        Args:
            engine: Reconciliation engine that owns status changes
            store: Durable transaction store
            cache: Ephemeral session cache
            history_size: Number of callback summaries kept for operators
        """
        self.engine = engine
        self.store = store
        self.cache = cache
        self._recent: Deque[Dict[str, Any]] = deque(maxlen=history_size)

    def recent_callbacks(self) -> List[Dict[str, Any]]:
        """Most recent callback summaries, newest first."""
        return list(reversed(self._recent))

    def _remember(self, **summary: Any) -> None:
        summary["received_at"] = utcnow().isoformat()
        self._recent.append(summary)

    async def _correlate(self, checkout_ref: str) -> Optional[Transaction]:
        """Cache first for the session id, the store for the authoritative copy."""
        cached = await self.cache.get_by_checkout_ref(checkout_ref)
        if cached is not None:
            durable = await self.store.get_by_session_id(cached.session_id)
            if durable is not None:
                return durable
        return await self.store.get_by_checkout_ref(checkout_ref)

    async def handle(self, payload: Any) -> Dict[str, Any]:
        """
        Process one callback delivery.

        Args:
            payload: Decoded JSON body of the provider request

        Returns:
            Dict[str, Any]: Acknowledgement body, always ``CALLBACK_ACK``
        """
        start_time = time.time()

        try:
            envelope = CallbackEnvelope.model_validate(payload)
        except ValidationError as e:
            logger.warning("callback_malformed", error_count=e.error_count())
            self._remember(outcome="malformed")
            metrics.record_callback("malformed", time.time() - start_time)
            return dict(CALLBACK_ACK)

        callback = envelope.body.stk_callback
        checkout_ref = callback.checkout_request_id
        receipt_code = extract_receipt(callback.metadata)
        outcome = map_result_code(callback.result_code, callback.result_desc, receipt_code)

        result = "error"
        with session_context(checkout_ref=checkout_ref):
            logger.info(
                "callback_received",
                result_code=outcome.result_code,
                signal=outcome.signal.value,
                receipt_code=receipt_code,
            )
            try:
                transaction = await self._correlate(checkout_ref)
                if transaction is None:
                    logger.warning("callback_transaction_not_found")
                    result = "not_found"
                else:
                    with session_context(session_id=transaction.session_id):
                        applied = await self.engine.apply(
                            transaction, outcome, ResolvedBy.CALLBACK
                        )
                    result = "applied" if applied.applied else "noop"
                    self._remember(
                        outcome=result,
                        checkout_ref=checkout_ref,
                        session_id=transaction.session_id,
                        result_code=outcome.result_code,
                        result_desc=outcome.description,
                        receipt_code=receipt_code,
                        status=applied.transaction.status.value,
                    )
            except Exception as e:
                logger.error(
                    "callback_processing_error",
                    error=str(e),
                    error_type=type(e).__name__,
                )

        if result in ("not_found", "error"):
            self._remember(
                outcome=result,
                checkout_ref=checkout_ref,
                result_code=outcome.result_code,
                result_desc=outcome.description,
                receipt_code=receipt_code,
            )

        metrics.record_callback(result, time.time() - start_time)
        return dict(CALLBACK_ACK)
