"""
Payment intake.

Validates a purchase request, records the session, and sends the STK Push.
The session is cached before the durable write and the push, so a callback
that arrives before the store has caught up can still be matched.
"""
import re
from dataclasses import dataclass
from typing import Optional, Protocol

import structlog

from stk_reconciliation.config import Settings, get_settings
from stk_reconciliation.core.exceptions import (
    InvalidInput,
    ProviderRejected,
    ProviderUnavailable,
)
from stk_reconciliation.core.models import Transaction, generate_session_id, next_update_time
from stk_reconciliation.core.reconciliation import ReconciliationEngine
from stk_reconciliation.core.session_cache import SessionCache
from stk_reconciliation.core.state_machine import ResolvedBy, TransactionStatus
from stk_reconciliation.core.store import TransactionStore
from stk_reconciliation.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

PHONE_PATTERN = re.compile(r"^254[17]\d{8}$")


class PushProvider(Protocol):
    """The part of the provider client intake needs."""

    async def push(self, phone: str, amount: int, reference: str, description: str):
        ...


@dataclass(frozen=True)
class IntakeResult:
    session_id: str
    checkout_ref: str


def normalize_phone(phone: str) -> str:
    """
    Normalise a Kenyan mobile number to ``2547XXXXXXXX`` / ``2541XXXXXXXX``.

    Accepts ``07...``, ``01...``, ``7...``, ``1...``, ``254...`` and ``+254...``
    with optional spaces or dashes.

    Raises:
        InvalidInput: If the number is not a valid Kenyan mobile number
    """
    digits = re.sub(r"[\s\-()]", "", phone or "")
    if digits.startswith("+"):
        digits = digits[1:]
    if digits.startswith("0"):
        digits = "254" + digits[1:]
    elif len(digits) == 9 and digits[0] in "17":
        digits = "254" + digits

    if not PHONE_PATTERN.match(digits):
        raise InvalidInput(f"Invalid phone number: {phone!r}", field="phone")
    return digits


class IntakeHandler:
    """Creates payment sessions and sends the STK Push prompt."""

    def __init__(
        self,
        store: TransactionStore,
        cache: SessionCache,
        provider: PushProvider,
        engine: ReconciliationEngine,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.cache = cache
        self.provider = provider
        self.engine = engine
        self.settings = settings or get_settings()

    def _resolve_amount(self, category: str, amount: Optional[int]) -> int:
        if amount is None:
            price = self.settings.category_prices.get(category)
            if price is None:
                raise InvalidInput(
                    f"Unknown category {category!r} and no amount given", field="category"
                )
            return price
        if isinstance(amount, bool) or int(amount) != amount or amount <= 0:
            raise InvalidInput("Amount must be a positive whole number of KES", field="amount")
        return int(amount)

    async def initiate(
        self,
        phone: str,
        category: str,
        amount: Optional[int] = None,
        referral_code: Optional[str] = None,
    ) -> IntakeResult:
        """
        Start a payment session.

        Args:
            phone: Customer phone number in any accepted format
            category: Purchased category
            amount: Amount in KES (defaults to the category price)
            referral_code: Optional referral code to credit on completion

        Returns:
            IntakeResult: Session id and provider checkout reference

        Raises:
            InvalidInput: If the request cannot be accepted as given
            ProviderRejected: If the provider refused the push
            ProviderUnavailable: If the provider could not be reached
        """
        category = (category or "").strip()
        if not category:
            raise InvalidInput("Category is required", field="category")
        normalized_phone = normalize_phone(phone)
        resolved_amount = self._resolve_amount(category, amount)
        code = (referral_code or "").strip().upper() or None

        transaction = Transaction(
            session_id=generate_session_id(),
            phone=normalized_phone,
            amount=resolved_amount,
            category=category,
            referral_code=code,
        )
        session_id = transaction.session_id
        log = logger.bind(session_id=session_id)

        await self.cache.put(transaction)
        await self.store.create(transaction)
        await self.store.record_event(
            session_id,
            "session_created",
            ResolvedBy.INTAKE.value,
            {"amount": resolved_amount, "category": category, "referral_code": code},
        )

        try:
            ack = await self.provider.push(
                normalized_phone,
                resolved_amount,
                reference=session_id,
                description=category,
            )
        except ProviderRejected as e:
            await self._fail(transaction, "provider_rejected", e.provider_code)
            metrics.record_session_initiated(category, "rejected", resolved_amount)
            log.warning("stk_push_rejected_at_intake", error=e.message)
            raise
        except ProviderUnavailable as e:
            await self._fail(transaction, "provider_unavailable", e.provider_code)
            metrics.record_session_initiated(category, "unavailable", resolved_amount)
            log.warning("stk_push_unavailable_at_intake", error=e.message)
            raise

        attached = transaction.model_copy(
            update={
                "checkout_ref": ack.checkout_ref,
                "merchant_ref": ack.merchant_ref,
                "updated_at": next_update_time(transaction.updated_at),
            }
        )
        await self.cache.put(attached)
        await self.store.attach_checkout_ref(
            session_id, ack.checkout_ref, ack.merchant_ref, attached.updated_at
        )
        await self.store.record_event(
            session_id,
            "push_accepted",
            ResolvedBy.INTAKE.value,
            {"checkout_ref": ack.checkout_ref, "merchant_ref": ack.merchant_ref},
        )

        metrics.record_session_initiated(category, "accepted", resolved_amount)
        log.info(
            "payment_session_initiated",
            checkout_ref=ack.checkout_ref,
            amount=resolved_amount,
            category=category,
        )
        return IntakeResult(session_id=session_id, checkout_ref=ack.checkout_ref)

    async def _fail(
        self, transaction: Transaction, reason: str, provider_code: Optional[str]
    ) -> None:
        """Close a session whose push never reached the customer."""
        await self.engine.force(
            transaction,
            TransactionStatus.FAILED,
            reason,
            ResolvedBy.INTAKE,
            result_code=provider_code,
        )
