"""
M-Pesa Daraja API client with retry logic and error classification.

Implements:
- OAuth token caching
- STK Push (``push``), never retried automatically
- STK Push query (``query``) with exponential backoff on transport errors
- Circuit breaker pattern
"""
import base64
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from stk_reconciliation.config import Settings, get_settings
from stk_reconciliation.core.exceptions import ProviderRejected, ProviderUnavailable
from stk_reconciliation.core.state_machine import ProviderOutcome
from stk_reconciliation.integrations.result_codes import outcome_from_query_body
from stk_reconciliation.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class PushAck:
    """Provider acknowledgement of an accepted STK Push."""

    checkout_ref: str
    merchant_ref: Optional[str] = None
    customer_message: Optional[str] = None


class CircuitBreaker:
    """
    Circuit breaker for Daraja API calls.

    Stops sending requests for ``timeout`` seconds after
    ``failure_threshold`` consecutive transport failures.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        """
        Initialize circuit breaker.

        Args:
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds before attempting to close circuit
            success_threshold: Successful calls needed to close circuit
        """
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    def before_call(self, operation: str) -> None:
        """
        Check whether a call may proceed.

        Raises:
            ProviderUnavailable: If circuit is open
        """
        if self.state == "open":
            if (
                self.last_failure_time
                and time.time() - self.last_failure_time > self.timeout
            ):
                self._set_state("half_open")
                self.success_count = 0
                logger.info("circuit_breaker_half_open")
            else:
                raise ProviderUnavailable("Circuit breaker is open", operation=operation)

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self._set_state("closed")
                logger.info("circuit_breaker_closed")

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.time()
        if self.failure_count >= self.failure_threshold:
            self._set_state("open")
            logger.warning(
                "circuit_breaker_opened",
                failure_count=self.failure_count,
            )

    def _set_state(self, state: str) -> None:
        self.state = state
        metrics.set_circuit_breaker_state(state)


class DarajaClient:
    """
    Payment provider client for Safaricom Daraja.

    ``push`` raises ``ProviderRejected`` when the API refuses the request and
    ``ProviderUnavailable`` on transport failures or timeouts. ``query``
    returns a structured ``ProviderOutcome`` and raises the same errors when
    no outcome can be read.
    """

    TOKEN_PATH = "/oauth/v1/generate?grant_type=client_credentials"
    PUSH_PATH = "/mpesa/stkpush/v1/processrequest"
    QUERY_PATH = "/mpesa/stkpushquery/v1/query"

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        retry_wait: Optional[wait_base] = None,
    ) -> None:
        """
        Initialize Daraja client.

        Args:
            settings: Optional settings (uses global settings if not provided)
            http_client: Optional HTTP client (created from settings if not provided)
            retry_wait: Optional tenacity wait strategy for retried calls
        """
        self.settings = settings or get_settings()
        self.http_client = http_client or httpx.AsyncClient(
            base_url=self.settings.mpesa_base_url,
            timeout=httpx.Timeout(self.settings.mpesa_timeout_seconds),
        )
        self.retry_wait = retry_wait or wait_exponential(multiplier=0.5, min=0.5, max=4)
        self.circuit_breaker = CircuitBreaker()
        self._token: Optional[str] = None
        self._token_expires_at = 0.0

        logger.info(
            "daraja_client_initialized",
            environment=self.settings.mpesa_environment,
            shortcode=self.settings.mpesa_shortcode,
        )

    @staticmethod
    def _timestamp() -> str:
        return datetime.now().strftime("%Y%m%d%H%M%S")

    def _password(self, timestamp: str) -> str:
        raw = f"{self.settings.mpesa_shortcode}{self.settings.mpesa_passkey}{timestamp}"
        return base64.b64encode(raw.encode("utf-8")).decode("utf-8")

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            retry=retry_if_exception_type(ProviderUnavailable),
            stop=stop_after_attempt(self.settings.mpesa_retry_max_attempts),
            wait=self.retry_wait,
            reraise=True,
        )

    async def _send(
        self,
        operation: str,
        method: str,
        path: str,
        **kwargs: Any,
    ) -> httpx.Response:
        """
        Send one request through the circuit breaker.

        Raises:
            ProviderUnavailable: On transport errors, timeouts or 5xx without a body
        """
        self.circuit_breaker.before_call(operation)
        start_time = time.time()
        try:
            response = await self.http_client.request(method, path, **kwargs)
        except httpx.TransportError as e:
            self.circuit_breaker.on_failure()
            metrics.record_provider_error(operation, "unavailable")
            logger.error(
                "daraja_transport_error",
                operation=operation,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise ProviderUnavailable(
                f"Daraja {operation} request failed: {e}",
                operation=operation,
                original_error=e,
            )

        self.circuit_breaker.on_success()
        metrics.record_provider_call(
            operation, str(response.status_code), time.time() - start_time
        )
        return response

    @staticmethod
    def _json(response: httpx.Response) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}

    async def _access_token(self) -> str:
        """Fetch or reuse the OAuth bearer token."""
        if self._token and time.time() < self._token_expires_at:
            return self._token

        async for attempt in self._retrying():
            with attempt:
                response = await self._send(
                    "token",
                    "GET",
                    self.TOKEN_PATH,
                    auth=(self.settings.mpesa_consumer_key, self.settings.mpesa_consumer_secret),
                )
                if response.status_code >= 500:
                    raise ProviderUnavailable(
                        f"Token endpoint returned {response.status_code}", operation="token"
                    )

        body = self._json(response)
        token = body.get("access_token")
        if response.status_code != 200 or not token:
            metrics.record_provider_error("token", "rejected")
            raise ProviderRejected(
                f"Token request refused with status {response.status_code}",
                operation="token",
                provider_code=body.get("errorCode"),
            )

        # Refresh a minute early
        expires_in = int(body.get("expires_in", 3599))
        self._token = token
        self._token_expires_at = time.time() + max(expires_in - 60, 0)
        return token

    async def push(
        self,
        phone: str,
        amount: int,
        reference: str,
        description: str,
    ) -> PushAck:
        """
        Send an STK Push prompt to ``phone``.

        Args:
            phone: Customer phone in 2547XXXXXXXX format
            amount: Amount in KES
            reference: Account reference shown to the customer
            description: Transaction description

        Returns:
            PushAck: Checkout and merchant references

        Raises:
            ProviderRejected: If the provider refused the push
            ProviderUnavailable: If the provider could not be reached
        """
        token = await self._access_token()
        timestamp = self._timestamp()
        payload = {
            "BusinessShortCode": self.settings.mpesa_shortcode,
            "Password": self._password(timestamp),
            "Timestamp": timestamp,
            "TransactionType": "CustomerPayBillOnline",
            "Amount": int(amount),
            "PartyA": phone,
            "PartyB": self.settings.mpesa_shortcode,
            "PhoneNumber": phone,
            "CallBackURL": self.settings.mpesa_callback_url,
            "AccountReference": reference[:12],
            "TransactionDesc": description[:13],
        }

        logger.info("stk_push_sending", phone=phone, amount=amount, reference=reference)

        response = await self._send(
            "push",
            "POST",
            self.PUSH_PATH,
            json=payload,
            headers={"Authorization": f"Bearer {token}"},
        )
        body = self._json(response)

        if response.status_code >= 500 and not body:
            metrics.record_provider_error("push", "unavailable")
            raise ProviderUnavailable(
                f"STK push returned {response.status_code}", operation="push"
            )

        checkout_ref = body.get("CheckoutRequestID")
        if str(body.get("ResponseCode")) != "0" or not checkout_ref:
            metrics.record_provider_error("push", "rejected")
            provider_code = body.get("errorCode") or body.get("ResponseCode")
            message = (
                body.get("errorMessage")
                or body.get("ResponseDescription")
                or f"HTTP {response.status_code}"
            )
            logger.warning(
                "stk_push_rejected",
                status_code=response.status_code,
                provider_code=provider_code,
                message=message,
            )
            raise ProviderRejected(
                f"STK push rejected: {message}",
                operation="push",
                provider_code=None if provider_code is None else str(provider_code),
            )

        logger.info(
            "stk_push_accepted",
            checkout_ref=checkout_ref,
            merchant_ref=body.get("MerchantRequestID"),
        )
        return PushAck(
            checkout_ref=checkout_ref,
            merchant_ref=body.get("MerchantRequestID"),
            customer_message=body.get("CustomerMessage"),
        )

    async def query(self, checkout_ref: str) -> ProviderOutcome:
        """
        Ask the provider for the current result of a push.

        Args:
            checkout_ref: CheckoutRequestID returned by ``push``

        Returns:
            ProviderOutcome: Terminal, pending or unknown outcome

        Raises:
            ProviderRejected: If the provider refused the query
            ProviderUnavailable: If the provider could not be reached
        """
        token = await self._access_token()

        async for attempt in self._retrying():
            with attempt:
                timestamp = self._timestamp()
                response = await self._send(
                    "query",
                    "POST",
                    self.QUERY_PATH,
                    json={
                        "BusinessShortCode": self.settings.mpesa_shortcode,
                        "Password": self._password(timestamp),
                        "Timestamp": timestamp,
                        "CheckoutRequestID": checkout_ref,
                    },
                    headers={"Authorization": f"Bearer {token}"},
                )
                body = self._json(response)
                if response.status_code >= 500 and not body:
                    raise ProviderUnavailable(
                        f"STK query returned {response.status_code}", operation="query"
                    )

        outcome = outcome_from_query_body(body)
        if outcome is None:
            metrics.record_provider_error("query", "rejected")
            logger.warning(
                "stk_query_rejected",
                checkout_ref=checkout_ref,
                status_code=response.status_code,
                error_code=body.get("errorCode"),
                error_message=body.get("errorMessage"),
            )
            raise ProviderRejected(
                f"STK query rejected: {body.get('errorMessage') or response.status_code}",
                operation="query",
                provider_code=body.get("errorCode"),
            )

        logger.info(
            "stk_query_result",
            checkout_ref=checkout_ref,
            signal=outcome.signal.value,
            result_code=outcome.result_code,
        )
        return outcome

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self.http_client.aclose()
