"""
Daraja client tests against a mocked HTTP transport.
"""
import base64
import json
from typing import Callable, List

import httpx
import pytest
import pytest_asyncio
from tenacity import wait_none

from stk_reconciliation.core.exceptions import ProviderRejected, ProviderUnavailable
from stk_reconciliation.core.state_machine import Signal
from stk_reconciliation.integrations.mpesa_client import CircuitBreaker, DarajaClient

TOKEN_BODY = {"access_token": "sandbox-token", "expires_in": "3599"}


class FakeDaraja:
    """Routes requests to per-path handlers and records them."""

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self.token_calls = 0
        self.push: Callable[[httpx.Request], httpx.Response] = lambda request: httpx.Response(
            200,
            json={
                "MerchantRequestID": "29115-34620561-1",
                "CheckoutRequestID": "ws_CO_191220191020363925",
                "ResponseCode": "0",
                "ResponseDescription": "Success. Request accepted for processing",
                "CustomerMessage": "Success. Request accepted for processing",
            },
        )
        self.query: Callable[[httpx.Request], httpx.Response] = lambda request: httpx.Response(
            200, json={"ResponseCode": "0", "ResultCode": "0", "ResultDesc": "Processed"}
        )

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == "/oauth/v1/generate":
            self.token_calls += 1
            return httpx.Response(200, json=TOKEN_BODY)
        if request.url.path == DarajaClient.PUSH_PATH:
            return self.push(request)
        if request.url.path == DarajaClient.QUERY_PATH:
            return self.query(request)
        return httpx.Response(404)

    def calls_to(self, path: str) -> List[httpx.Request]:
        return [request for request in self.requests if request.url.path == path]


@pytest.fixture
def daraja() -> FakeDaraja:
    return FakeDaraja()


@pytest_asyncio.fixture
async def client(daraja, test_settings):
    settings = test_settings.model_copy(
        update={"mpesa_shortcode": "174379", "mpesa_passkey": "passkey"}
    )
    http_client = httpx.AsyncClient(
        transport=httpx.MockTransport(daraja),
        base_url="https://sandbox.safaricom.co.ke",
    )
    daraja_client = DarajaClient(settings, http_client=http_client, retry_wait=wait_none())
    yield daraja_client
    await daraja_client.close()


class TestPush:

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_accepted_push(self, client, daraja) -> None:
        ack = await client.push("254712345678", 150, "sess_abcdef123456", "courses-only")

        assert ack.checkout_ref == "ws_CO_191220191020363925"
        assert ack.merchant_ref == "29115-34620561-1"

        (request,) = daraja.calls_to(DarajaClient.PUSH_PATH)
        assert request.headers["Authorization"] == "Bearer sandbox-token"
        payload = json.loads(request.content)
        assert payload["Amount"] == 150
        assert payload["PhoneNumber"] == "254712345678"
        assert payload["TransactionType"] == "CustomerPayBillOnline"
        assert payload["AccountReference"] == "sess_abcdef1"
        password = base64.b64decode(payload["Password"]).decode()
        assert password == f"174379passkey{payload['Timestamp']}"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_error_envelope_is_rejected(self, client, daraja) -> None:
        daraja.push = lambda request: httpx.Response(
            400,
            json={
                "requestId": "11728-2929992-1",
                "errorCode": "400.002.02",
                "errorMessage": "Bad Request - Invalid PhoneNumber",
            },
        )

        with pytest.raises(ProviderRejected) as exc_info:
            await client.push("254712345678", 150, "sess_1", "courses-only")

        assert exc_info.value.provider_code == "400.002.02"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_non_zero_response_code_is_rejected(self, client, daraja) -> None:
        daraja.push = lambda request: httpx.Response(
            200, json={"ResponseCode": "1", "ResponseDescription": "Rejected"}
        )

        with pytest.raises(ProviderRejected):
            await client.push("254712345678", 150, "sess_1", "courses-only")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_transport_error_is_unavailable_and_not_retried(self, client, daraja) -> None:
        def timeout(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectTimeout("connect timeout", request=request)

        daraja.push = timeout

        with pytest.raises(ProviderUnavailable):
            await client.push("254712345678", 150, "sess_1", "courses-only")

        assert len(daraja.calls_to(DarajaClient.PUSH_PATH)) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_token_is_cached(self, client, daraja) -> None:
        await client.push("254712345678", 150, "sess_1", "courses-only")
        await client.push("254712345678", 150, "sess_2", "courses-only")

        assert daraja.token_calls == 1


class TestQuery:

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_completed_result(self, client, daraja) -> None:
        outcome = await client.query("ws_CO_1")

        assert outcome.signal is Signal.SUCCESS
        (request,) = daraja.calls_to(DarajaClient.QUERY_PATH)
        assert json.loads(request.content)["CheckoutRequestID"] == "ws_CO_1"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cancelled_result(self, client, daraja) -> None:
        daraja.query = lambda request: httpx.Response(
            200,
            json={"ResponseCode": "0", "ResultCode": "1032", "ResultDesc": "Request cancelled by user"},
        )

        outcome = await client.query("ws_CO_1")

        assert outcome.signal is Signal.USER_CANCELLED
        assert outcome.result_code == "1032"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_still_processing_envelope(self, client, daraja) -> None:
        daraja.query = lambda request: httpx.Response(
            500,
            json={
                "requestId": "ws_CO_1",
                "errorCode": "500.001.1001",
                "errorMessage": "The transaction is being processed",
            },
        )

        outcome = await client.query("ws_CO_1")

        assert outcome.signal is Signal.STILL_PROCESSING
        assert outcome.result_code == "500.001.1001"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_retried_after_empty_server_error(self, client, daraja) -> None:
        responses = iter(
            [
                httpx.Response(503),
                httpx.Response(200, json={"ResultCode": "0", "ResultDesc": "Processed"}),
            ]
        )
        daraja.query = lambda request: next(responses)

        outcome = await client.query("ws_CO_1")

        assert outcome.signal is Signal.SUCCESS
        assert len(daraja.calls_to(DarajaClient.QUERY_PATH)) == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, client, daraja) -> None:
        daraja.query = lambda request: httpx.Response(502)

        with pytest.raises(ProviderUnavailable):
            await client.query("ws_CO_1")

        assert len(daraja.calls_to(DarajaClient.QUERY_PATH)) == 3

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_error_envelope_is_rejected(self, client, daraja) -> None:
        daraja.query = lambda request: httpx.Response(
            400,
            json={"errorCode": "400.002.02", "errorMessage": "Bad Request - Invalid CheckoutRequestID"},
        )

        with pytest.raises(ProviderRejected):
            await client.query("ws_CO_bogus")

        assert len(daraja.calls_to(DarajaClient.QUERY_PATH)) == 1


class TestCircuitBreaker:

    @pytest.mark.unit
    def test_opens_after_threshold(self) -> None:
        breaker = CircuitBreaker(failure_threshold=5, timeout=60)

        for _ in range(4):
            breaker.on_failure()
        breaker.before_call("query")

        breaker.on_failure()
        assert breaker.state == "open"
        with pytest.raises(ProviderUnavailable):
            breaker.before_call("query")

    @pytest.mark.unit
    def test_half_open_then_closed(self) -> None:
        breaker = CircuitBreaker(failure_threshold=1, timeout=0, success_threshold=2)
        breaker.on_failure()
        breaker.last_failure_time -= 1

        breaker.before_call("query")
        assert breaker.state == "half_open"

        breaker.on_success()
        breaker.on_success()
        assert breaker.state == "closed"
